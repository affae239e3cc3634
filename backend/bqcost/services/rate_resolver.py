"""
rate_resolver.py — Project rate override vs. catalogue default rate.

A project may carry several effective-dated versions of its rate table; the
one in force is the latest version whose effective_date is not in the
future. Within that table an override is decided by key presence, so an
explicit override of 0 is honoured.
"""
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from bqcost.models.domain import (
    EffectiveRate,
    ProjectRates,
    RateCategory,
    RateComparison,
    RateSource,
    RateStatistics,
)

_CATEGORIES = (RateCategory.MATERIALS, RateCategory.LABOUR, RateCategory.EQUIPMENT)


def resolve_effective_rate(
    catalogue_id: Optional[str],
    category: RateCategory,
    project_rates: Optional[ProjectRates],
    catalogue_default_rate: Optional[float],
) -> EffectiveRate:
    """Return the rate used for a catalogue entry together with where it came from."""
    overrides = project_rates.for_category(category) if project_rates else {}
    project_rate = overrides.get(catalogue_id) if catalogue_id is not None else None

    if catalogue_id is not None and catalogue_id in overrides:
        rate, source = float(project_rate), RateSource.PROJECT
    elif catalogue_default_rate is not None:
        rate, source = float(catalogue_default_rate), RateSource.CATALOGUE
    else:
        rate, source = 0.0, RateSource.DEFAULT

    return EffectiveRate(
        catalogue_id=catalogue_id or "",
        category=category,
        rate=rate,
        source=source,
        project_rate=project_rate,
        catalogue_rate=catalogue_default_rate,
    )


def resolve_rate(
    catalogue_id: Optional[str],
    category: RateCategory,
    project_rates: Optional[ProjectRates],
    catalogue_default_rate: Optional[float],
) -> float:
    return resolve_effective_rate(
        catalogue_id, category, project_rates, catalogue_default_rate
    ).rate


def select_current_rates(
    project_id: str,
    versions: Iterable[ProjectRates],
    as_of: Optional[datetime] = None,
) -> ProjectRates:
    """
    Pick the version in force at ``as_of`` (default: now, UTC).

    Versions without an effective_date are treated as always effective but
    lose to any dated version. No eligible version yields an empty table.
    """
    as_of = as_of or datetime.now(timezone.utc)
    current: Optional[ProjectRates] = None
    for version in versions:
        eff = version.effective_date
        if eff is not None:
            if _as_aware(eff) > _as_aware(as_of):
                continue
        if current is None or _sort_key(version) > _sort_key(current):
            current = version
    if current is None:
        return ProjectRates(project_id=project_id)
    return current


def rate_statistics(rates: ProjectRates) -> RateStatistics:
    breakdown = {c.value: len(rates.for_category(c)) for c in _CATEGORIES}
    averages = {}
    for c in _CATEGORIES:
        values = list(rates.for_category(c).values())
        averages[c.value] = sum(values) / len(values) if values else 0.0
    return RateStatistics(
        project_id=rates.project_id,
        total_rates=sum(breakdown.values()),
        category_breakdown=breakdown,
        average_rates=averages,
        last_updated=rates.effective_date,
    )


def compare_project_rates(source: ProjectRates, target: ProjectRates) -> List[RateComparison]:
    """Diff two projects' current overrides, category by category."""
    comparisons: List[RateComparison] = []
    for category in _CATEGORIES:
        src = source.for_category(category)
        tgt = target.for_category(category)
        for catalogue_id in sorted(set(src) | set(tgt)):
            source_rate = src.get(catalogue_id)
            target_rate = tgt.get(catalogue_id)
            s = float(source_rate or 0.0)
            t = float(target_rate or 0.0)
            difference = t - s
            pct = (difference / s) * 100 if s > 0 else 0.0

            if source_rate is None:
                action = "add"
            elif target_rate is None:
                action = "remove"
            elif source_rate == target_rate:
                action = "unchanged"
            else:
                action = "update"

            comparisons.append(RateComparison(
                catalogue_id=catalogue_id,
                category=category,
                source_rate=s,
                target_rate=t,
                difference=difference,
                percentage_change=pct,
                action=action,
            ))
    return comparisons


def _as_aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _sort_key(version: ProjectRates):
    eff = version.effective_date
    return (eff is not None, _as_aware(eff) if eff is not None else datetime.min.replace(tzinfo=timezone.utc))
