"""
CostingService — Loads library items and project rates through injected
lookups and prices them with factor_calculator.

Covers:
  - Single-item preview (calculate_item_cost), scaled by quantity
  - Batch calculation (calculate_many) with bounded concurrency, a per-batch
    catalogue cache, per-item error capture and cooperative cancellation

The service holds no process-wide state; callers own its lifecycle.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from bqcost.models.domain import (
    BatchResult,
    BatchSummary,
    CalculationOptions,
    CalculationResult,
    CatalogueEntry,
    LibraryItem,
    ProjectRates,
    RateCategory,
)
from bqcost.services import config
from bqcost.services.errors import (
    CostingError,
    InputValidationError,
    ItemNotFoundError,
    UpstreamLookupError,
)
from bqcost.services.factor_calculator import (
    calculate_item,
    failed_result,
    round_money,
    validate_quantity,
)
from bqcost.services.lookups import CatalogueLookup, FactorLookup, ProjectRateLookup

logger = logging.getLogger("bqcost-costing")

_FACTOR_FIELDS: Tuple[Tuple[str, RateCategory], ...] = (
    ("material_factors", RateCategory.MATERIALS),
    ("labor_factors", RateCategory.LABOUR),
    ("equipment_factors", RateCategory.EQUIPMENT),
)


class CatalogueCache:
    """
    Catalogue entries keyed by (category, catalogue id) for the duration of
    one calculation call. Each id is fetched from the lookup at most once;
    an id that the lookup does not return is remembered as missing.
    """

    def __init__(self, lookup: Optional[CatalogueLookup] = None) -> None:
        self._lookup = lookup
        self._entries: Dict[Tuple[RateCategory, str], Optional[CatalogueEntry]] = {}
        self._lock = asyncio.Lock()
        self.fetches: int = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _unresolved(self, item: LibraryItem) -> Dict[RateCategory, Set[str]]:
        needed: Dict[RateCategory, Set[str]] = {}
        for field, category in _FACTOR_FIELDS:
            for factor in getattr(item, field):
                if factor.catalogue_id is None:
                    continue
                key = (category, factor.catalogue_id)
                if factor.catalogue is not None:
                    self._entries.setdefault(key, factor.catalogue)
                elif key not in self._entries:
                    needed.setdefault(category, set()).add(factor.catalogue_id)
        return needed

    async def attach(self, item: LibraryItem) -> LibraryItem:
        """Return ``item`` with catalogue entries attached from the cache."""
        if self._unresolved(item) and self._lookup is not None:
            async with self._lock:
                # Another item may have fetched these while we waited
                for category, ids in self._unresolved(item).items():
                    found = await self._lookup.get_entries(category, sorted(ids))
                    self.fetches += 1
                    for catalogue_id in ids:
                        self._entries[(category, catalogue_id)] = found.get(catalogue_id)

        update = {}
        for field, category in _FACTOR_FIELDS:
            factors = getattr(item, field)
            if any(f.catalogue is None and f.catalogue_id is not None for f in factors):
                update[field] = [
                    f if f.catalogue is not None or f.catalogue_id is None
                    else f.model_copy(update={"catalogue": self._entries.get((category, f.catalogue_id))})
                    for f in factors
                ]
        return item.model_copy(update=update) if update else item


class CostingService:
    """Prices library items for a project using injected lookups."""

    def __init__(
        self,
        factor_lookup: FactorLookup,
        rate_lookup: ProjectRateLookup,
        catalogue_lookup: Optional[CatalogueLookup] = None,
        max_concurrency: int = config.BATCH_MAX_CONCURRENCY,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.factor_lookup = factor_lookup
        self.rate_lookup = rate_lookup
        self.catalogue_lookup = catalogue_lookup
        self.max_concurrency = max_concurrency

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _load_rates(self, project_id: str, as_of: Optional[datetime] = None) -> ProjectRates:
        try:
            return await self.rate_lookup.get_current_rates(project_id, as_of)
        except CostingError:
            raise
        except Exception as e:
            raise UpstreamLookupError(
                f"Project rate lookup failed for project {project_id}: {e}",
                {"project_id": project_id},
            ) from e

    async def _load_item(self, library_item_id: str, cache: CatalogueCache) -> LibraryItem:
        try:
            item = await self.factor_lookup.get_item(library_item_id)
            if item is None:
                raise ItemNotFoundError(library_item_id)
            return await cache.attach(item)
        except CostingError:
            raise
        except Exception as e:
            raise UpstreamLookupError(
                f"Factor lookup failed for library item {library_item_id}: {e}",
                {"library_item_id": library_item_id},
            ) from e

    # ------------------------------------------------------------------
    # Single item
    # ------------------------------------------------------------------

    async def calculate_item_cost(
        self,
        library_item_id: str,
        project_id: str,
        quantity: float = 1.0,
        options: Optional[CalculationOptions] = None,
        as_of: Optional[datetime] = None,
    ) -> CalculationResult:
        """
        Preview the cost of one item. Raises InputValidationError before any
        lookup, ItemNotFoundError / MissingReferenceError / UpstreamLookupError
        when the item cannot be priced.
        """
        if not library_item_id:
            raise InputValidationError("library_item_id is required", field_name="library_item_id")
        if not project_id:
            raise InputValidationError("project_id is required", field_name="project_id")
        validate_quantity(quantity)
        options = CalculationOptions.parse(options)

        rates = await self._load_rates(project_id, as_of)
        item = await self._load_item(library_item_id, CatalogueCache(self.catalogue_lookup))
        result = calculate_item(item, rates, options, quantity)
        if result.warnings:
            logger.info(
                f"Item {library_item_id} priced with {len(result.warnings)} data-quality warning(s)",
                extra={"project_id": project_id, "library_item_id": library_item_id},
            )
        return result

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_ids(library_item_ids: Sequence[str]) -> List[str]:
        if isinstance(library_item_ids, (str, bytes)) or not library_item_ids:
            raise InputValidationError(
                "library_item_ids must be a non-empty list", field_name="library_item_ids"
            )
        ids = list(library_item_ids)
        if len(ids) > config.BATCH_MAX_ITEMS:
            raise InputValidationError(
                f"At most {config.BATCH_MAX_ITEMS} items per batch, got {len(ids)}",
                field_name="library_item_ids",
            )
        for item_id in ids:
            if not isinstance(item_id, str) or not item_id.strip():
                raise InputValidationError(
                    f"Invalid library item id: {item_id!r}", field_name="library_item_ids"
                )
        return ids

    async def calculate_many(
        self,
        library_item_ids: Sequence[str],
        project_id: str,
        options: Optional[CalculationOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
        as_of: Optional[datetime] = None,
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> BatchResult:
        """
        Price many items independently. One result per requested id, in
        request order; failures carry ``error`` and count as 0 in the summary.
        Setting ``cancel_event`` stops items that have not started yet; their
        results are omitted and ``summary.cancelled`` is set.
        ``progress(done, total)`` is called every BATCH_PROGRESS_INTERVAL
        finished items and once more when the last item finishes.
        """
        ids = self._validate_ids(library_item_ids)
        if not project_id:
            raise InputValidationError("project_id is required", field_name="project_id")
        options = CalculationOptions.parse(options)

        start = time.perf_counter()
        logger.info(
            f"Starting batch calculation for {len(ids)} items",
            extra={"project_id": project_id},
        )

        try:
            rates = await self._load_rates(project_id, as_of)
        except UpstreamLookupError as e:
            logger.error(f"Batch aborted, rate table unavailable: {e}", extra={"project_id": project_id})
            results = [failed_result(item_id, str(e)) for item_id in ids]
            if progress is not None:
                progress(len(ids), len(ids))
            return assemble_batch(project_id, len(ids), results, options, cancelled=False)

        cache = CatalogueCache(self.catalogue_lookup)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        done = 0

        def _finished() -> None:
            nonlocal done
            done += 1
            if progress is not None and (done % config.BATCH_PROGRESS_INTERVAL == 0 or done == len(ids)):
                progress(done, len(ids))

        async def _one(item_id: str) -> Optional[CalculationResult]:
            result = await _price(item_id)
            if result is not None:
                _finished()
            return result

        async def _price(item_id: str) -> Optional[CalculationResult]:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return None
                item: Optional[LibraryItem] = None
                try:
                    item = await self._load_item(item_id, cache)
                    return calculate_item(item, rates, options)
                except CostingError as e:
                    logger.warning(
                        f"Item {item_id} failed: {e.message}",
                        extra={"project_id": project_id, "library_item_id": item_id},
                    )
                    return failed_result(item_id, e.message, item, rates)
                except Exception as e:
                    logger.exception(
                        f"Unexpected error calculating item {item_id}",
                        extra={"project_id": project_id, "library_item_id": item_id},
                    )
                    return failed_result(item_id, str(e), item, rates)

        outcomes = await asyncio.gather(*(_one(item_id) for item_id in ids))
        results = [r for r in outcomes if r is not None]
        cancelled = len(results) < len(ids)

        batch = assemble_batch(project_id, len(ids), results, options, cancelled)
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            f"Batch calculation completed: {batch.summary.items_calculated} successful, "
            f"{batch.summary.items_failed} failed"
            + (" (cancelled)" if cancelled else ""),
            extra={"project_id": project_id, "duration_ms": duration_ms},
        )
        return batch


def assemble_batch(
    project_id: str,
    items_requested: int,
    results: List[CalculationResult],
    options: CalculationOptions,
    cancelled: bool = False,
) -> BatchResult:
    """Summarise per-item results; failed items count as 0 towards the totals."""
    succeeded = [r for r in results if r.error is None]
    total = sum(r.costs.total for r in succeeded)
    summary = BatchSummary(
        items_requested=items_requested,
        items_calculated=len(succeeded),
        items_failed=len(results) - len(succeeded),
        total_cost=round_money(total),
        average_cost_per_item=round_money(total / len(succeeded)) if succeeded else 0.0,
        cancelled=cancelled,
    )
    return BatchResult(
        project_id=project_id,
        results=results,
        summary=summary,
        options_applied=options,
        calculated_at=datetime.now(timezone.utc),
    )
