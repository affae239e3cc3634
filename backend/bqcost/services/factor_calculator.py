"""
factor_calculator.py — The one shared implementation of library item costing.

Covers:
  - Material lines: quantity × (1 + wastage%) × rate
  - Labour lines: (hours / productivity) × crew size × rate
  - Equipment lines: hours × utilization × rate
  - Adjustment pipeline (indirect → overhead → contingency → bulk discount
    → location → seasonal), each step on the running total of the previous ones
  - Result assembly with 2 dp rounding at the presentation boundary only

Used by the interactive preview, the batch job and the price snapshot job.
Everything here is pure: no I/O, no clock, no hidden state.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import List, NamedTuple, Optional, Tuple

from bqcost.models.domain import (
    AdjustmentsApplied,
    CalculationOptions,
    CalculationResult,
    CostBreakdown,
    DataQualityWarning,
    EquipmentFactor,
    FactorDetails,
    FactorLine,
    LaborFactor,
    LibraryItem,
    MaterialFactor,
    ProjectRates,
    RateCategory,
)
from bqcost.services import config
from bqcost.services.errors import InputValidationError, MissingReferenceError
from bqcost.services.rate_resolver import resolve_effective_rate


def round_money(value: float) -> float:
    """Round half away from zero to MONEY_DP places (presentation boundary only)."""
    quantum = Decimal(1).scaleb(-config.MONEY_DP)
    q = Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP)
    return float(q) + 0.0  # normalise -0.0


class AdjustmentTerms(NamedTuple):
    """Unrounded adjustment amounts for one item."""
    direct: float
    indirect: float
    overhead: float
    contingency: float
    bulk_discount: float
    location_adjustment: float
    seasonal_adjustment: float

    @property
    def total(self) -> float:
        return (
            self.direct + self.indirect + self.overhead + self.contingency
            + self.bulk_discount + self.location_adjustment + self.seasonal_adjustment
        )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_quantity(quantity: float) -> None:
    if quantity is None or float(quantity) < 0:
        raise InputValidationError(
            f"Quantity must be zero or positive, got {quantity}", field_name="quantity"
        )


def validate_item(item: LibraryItem) -> None:
    """Reject out-of-range factor values before anything is computed."""
    for f in item.material_factors:
        if f.quantity_per_unit < 0:
            raise InputValidationError(
                f"Material factor {f.id}: quantity_per_unit must not be negative",
                field_name="quantity_per_unit", factor_id=f.id,
            )
        if f.wastage_percentage is not None and not 0 <= f.wastage_percentage <= 100:
            raise InputValidationError(
                f"Material factor {f.id}: wastage_percentage must be within 0-100",
                field_name="wastage_percentage", factor_id=f.id,
            )
    for f in item.labor_factors:
        if f.hours_per_unit < 0:
            raise InputValidationError(
                f"Labour factor {f.id}: hours_per_unit must not be negative",
                field_name="hours_per_unit", factor_id=f.id,
            )
        if f.productivity_factor is not None and f.productivity_factor < 0:
            raise InputValidationError(
                f"Labour factor {f.id}: productivity_factor must not be negative",
                field_name="productivity_factor", factor_id=f.id,
            )
        if f.crew_size is not None and f.crew_size < 0:
            raise InputValidationError(
                f"Labour factor {f.id}: crew_size must not be negative",
                field_name="crew_size", factor_id=f.id,
            )
    for f in item.equipment_factors:
        if f.hours_per_unit < 0:
            raise InputValidationError(
                f"Equipment factor {f.id}: hours_per_unit must not be negative",
                field_name="hours_per_unit", factor_id=f.id,
            )
        if f.utilization_factor is not None and f.utilization_factor < 0:
            raise InputValidationError(
                f"Equipment factor {f.id}: utilization_factor must not be negative",
                field_name="utilization_factor", factor_id=f.id,
            )


# ---------------------------------------------------------------------------
# Per-factor lines
# ---------------------------------------------------------------------------

def _check_catalogue(
    category: RateCategory, factor, warnings: List[DataQualityWarning]
) -> bool:
    """True when the factor can be priced; False when it must be skipped."""
    if factor.catalogue_id is None:
        warnings.append(DataQualityWarning(
            code="missing_catalogue",
            message=f"{category.value} factor {factor.id} has no linked catalogue entry",
            category=category,
            factor_id=factor.id,
        ))
        return False
    if factor.catalogue is None:
        raise MissingReferenceError(category.value, factor.id, factor.catalogue_id)
    if not factor.catalogue.is_active:
        warnings.append(DataQualityWarning(
            code="inactive_catalogue",
            message=(
                f"{category.value} factor {factor.id} references inactive "
                f"catalogue entry {factor.catalogue.code or factor.catalogue_id}"
            ),
            category=category,
            factor_id=factor.id,
            catalogue_id=factor.catalogue_id,
        ))
        return False
    return True


def _defaulted(
    category: RateCategory, factor, field_name: str, value, default: float,
    warnings: List[DataQualityWarning],
) -> None:
    warnings.append(DataQualityWarning(
        code="defaulted_field",
        message=f"{category.value} factor {factor.id}: {field_name} is {value!r}, using {default:g}",
        category=category,
        factor_id=factor.id,
        catalogue_id=factor.catalogue_id,
    ))


def _skipped_line(factor, **fields) -> Tuple[FactorLine, float]:
    cat = factor.catalogue
    line = FactorLine(
        factor_id=factor.id,
        catalogue_id=factor.catalogue_id,
        code=cat.code if cat else None,
        name=cat.name if cat else None,
        skipped=True,
        **fields,
    )
    return line, 0.0


def material_line(
    factor: MaterialFactor,
    rates: Optional[ProjectRates],
    warnings: List[DataQualityWarning],
) -> Tuple[FactorLine, float]:
    """Return the breakdown line and its unrounded cost."""
    category = RateCategory.MATERIALS
    if not _check_catalogue(category, factor, warnings):
        return _skipped_line(
            factor, quantity=factor.quantity_per_unit, wastage=factor.wastage_percentage
        )

    wastage = factor.wastage_percentage
    if wastage is None:
        _defaulted(category, factor, "wastage_percentage", wastage, 0.0, warnings)
        wastage = 0.0

    effective = resolve_effective_rate(
        factor.catalogue_id, category, rates, factor.catalogue.rate
    )
    effective_quantity = factor.quantity_per_unit * (1 + wastage / 100)
    cost = effective_quantity * effective.rate

    return FactorLine(
        factor_id=factor.id,
        catalogue_id=factor.catalogue_id,
        code=factor.catalogue.code,
        name=factor.catalogue.name,
        quantity=factor.quantity_per_unit,
        wastage=wastage,
        effective_quantity=effective_quantity,
        rate=effective.rate,
        rate_source=effective.source,
        cost=round_money(cost),
    ), cost


def labor_line(
    factor: LaborFactor,
    rates: Optional[ProjectRates],
    warnings: List[DataQualityWarning],
) -> Tuple[FactorLine, float]:
    category = RateCategory.LABOUR
    if not _check_catalogue(category, factor, warnings):
        return _skipped_line(
            factor,
            hours=factor.hours_per_unit,
            productivity=factor.productivity_factor,
            crew_size=factor.crew_size,
        )

    # 0 would divide by zero; treated like a missing value
    productivity = factor.productivity_factor
    if not productivity:
        _defaulted(category, factor, "productivity_factor", productivity, config.NEUTRAL_PRODUCTIVITY, warnings)
        productivity = config.NEUTRAL_PRODUCTIVITY
    crew_size = factor.crew_size
    if crew_size is None:
        _defaulted(category, factor, "crew_size", crew_size, config.NEUTRAL_CREW_SIZE, warnings)
        crew_size = config.NEUTRAL_CREW_SIZE

    effective = resolve_effective_rate(
        factor.catalogue_id, category, rates, factor.catalogue.rate
    )
    effective_hours = (factor.hours_per_unit / productivity) * crew_size
    cost = effective_hours * effective.rate

    return FactorLine(
        factor_id=factor.id,
        catalogue_id=factor.catalogue_id,
        code=factor.catalogue.code,
        name=factor.catalogue.name,
        hours=factor.hours_per_unit,
        productivity=productivity,
        crew_size=crew_size,
        effective_hours=effective_hours,
        rate=effective.rate,
        rate_source=effective.source,
        cost=round_money(cost),
    ), cost


def equipment_line(
    factor: EquipmentFactor,
    rates: Optional[ProjectRates],
    warnings: List[DataQualityWarning],
) -> Tuple[FactorLine, float]:
    category = RateCategory.EQUIPMENT
    if not _check_catalogue(category, factor, warnings):
        return _skipped_line(
            factor, hours=factor.hours_per_unit, utilization=factor.utilization_factor
        )

    utilization = factor.utilization_factor
    if utilization is None:
        _defaulted(category, factor, "utilization_factor", utilization, config.NEUTRAL_UTILIZATION, warnings)
        utilization = config.NEUTRAL_UTILIZATION

    effective = resolve_effective_rate(
        factor.catalogue_id, category, rates, factor.catalogue.rate
    )
    effective_hours = factor.hours_per_unit * utilization
    cost = effective_hours * effective.rate

    return FactorLine(
        factor_id=factor.id,
        catalogue_id=factor.catalogue_id,
        code=factor.catalogue.code,
        name=factor.catalogue.name,
        hours=factor.hours_per_unit,
        utilization=utilization,
        effective_hours=effective_hours,
        rate=effective.rate,
        rate_source=effective.source,
        cost=round_money(cost),
    ), cost


# ---------------------------------------------------------------------------
# Adjustment pipeline
# ---------------------------------------------------------------------------

def apply_adjustments(direct_cost: float, options: CalculationOptions) -> AdjustmentTerms:
    """
    Apply the adjustment steps in their fixed order.

    Each step works on the running total after all previous steps; disabled
    steps contribute 0 so later steps need no special-casing.
    """
    indirect = overhead = contingency = 0.0
    bulk_discount = location = seasonal = 0.0

    if options.include_indirect_costs:
        indirect = direct_cost * options.indirect_cost_percentage / 100
    if options.include_overheads:
        overhead = (direct_cost + indirect) * options.overhead_percentage / 100
    if options.include_contingency:
        contingency = (direct_cost + indirect + overhead) * options.contingency_percentage / 100

    running = direct_cost + indirect + overhead + contingency
    if options.bulk_discount_percentage > 0:
        bulk_discount = -running * options.bulk_discount_percentage / 100
        running += bulk_discount
    if options.location_adjustment_factor != 1.0:
        location = running * (options.location_adjustment_factor - 1.0)
        running += location
    if options.seasonal_adjustment_factor != 1.0:
        seasonal = running * (options.seasonal_adjustment_factor - 1.0)

    return AdjustmentTerms(
        direct=direct_cost,
        indirect=indirect,
        overhead=overhead,
        contingency=contingency,
        bulk_discount=bulk_discount,
        location_adjustment=location,
        seasonal_adjustment=seasonal,
    )


def adjustments_applied(options: CalculationOptions) -> AdjustmentsApplied:
    return AdjustmentsApplied(
        indirect=options.include_indirect_costs,
        overhead=options.include_overheads,
        contingency=options.include_contingency,
        bulk_discount=options.bulk_discount_percentage > 0,
        location_adjustment=options.location_adjustment_factor != 1.0,
        seasonal_adjustment=options.seasonal_adjustment_factor != 1.0,
    )


# ---------------------------------------------------------------------------
# Item calculation
# ---------------------------------------------------------------------------

def calculate_item(
    item: LibraryItem,
    rates: Optional[ProjectRates] = None,
    options: Optional[CalculationOptions] = None,
    quantity: float = 1.0,
) -> CalculationResult:
    """
    Price one library item.

    Costs are per unit of the item; ``extended_total`` is the unit total
    multiplied by ``quantity``. Raises InputValidationError for out-of-range
    input and MissingReferenceError when a factor's catalogue entry has been
    deleted. Unlinked or inactive factors are skipped with a warning.
    """
    options = CalculationOptions.parse(options)
    validate_quantity(quantity)
    validate_item(item)

    warnings: List[DataQualityWarning] = []
    material = [material_line(f, rates, warnings) for f in item.material_factors]
    labor = [labor_line(f, rates, warnings) for f in item.labor_factors]
    equipment = [equipment_line(f, rates, warnings) for f in item.equipment_factors]

    material_cost = sum(cost for _, cost in material)
    labor_cost = sum(cost for _, cost in labor)
    equipment_cost = sum(cost for _, cost in equipment)

    terms = apply_adjustments(material_cost + labor_cost + equipment_cost, options)
    total = terms.total

    costs = CostBreakdown(
        material=round_money(material_cost),
        labor=round_money(labor_cost),
        equipment=round_money(equipment_cost),
        direct_total=round_money(terms.direct),
        indirect=round_money(terms.indirect),
        overhead=round_money(terms.overhead),
        contingency=round_money(terms.contingency),
        bulk_discount=round_money(terms.bulk_discount),
        location_adjustment=round_money(terms.location_adjustment),
        seasonal_adjustment=round_money(terms.seasonal_adjustment),
        total=round_money(total),
    )

    return CalculationResult(
        library_item_id=item.id,
        code=item.code,
        name=item.name,
        unit=item.unit,
        quantity=float(quantity),
        costs=costs,
        unit_rate=costs.total,
        extended_total=round_money(total * float(quantity)),
        details=FactorDetails(
            materials=[line for line, _ in material],
            labor=[line for line, _ in labor],
            equipment=[line for line, _ in equipment],
        ),
        rates_used=rates.rate_maps() if rates is not None else {"materials": {}, "labour": {}, "equipment": {}},
        adjustments_applied=adjustments_applied(options),
        warnings=warnings,
    )


def failed_result(
    library_item_id: str,
    error: str,
    item: Optional[LibraryItem] = None,
    rates: Optional[ProjectRates] = None,
    quantity: float = 1.0,
) -> CalculationResult:
    """Zero-cost result carrying an error, for batch reporting."""
    return CalculationResult(
        library_item_id=library_item_id,
        code=item.code if item else "UNKNOWN",
        name=item.name if item else "Unknown Item",
        unit=item.unit if item else "EA",
        quantity=float(quantity),
        rates_used=rates.rate_maps() if rates is not None else {"materials": {}, "labour": {}, "equipment": {}},
        error=error,
    )
