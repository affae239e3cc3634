"""
Domain models for the BQ cost engine — pydantic v2.

Rows coming out of the database are converted into these models at the
lookup boundary (services.repositories), so the calculator never touches raw
row dicts. The only optional numeric fields are the ones with documented
defaults (productivity, crew size, utilization, wastage).
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bqcost.services import config
from bqcost.services.errors import InputValidationError


class RateCategory(str, Enum):
    MATERIALS = "materials"
    LABOUR = "labour"
    EQUIPMENT = "equipment"


class ItemStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    ACTUAL = "actual"


class RateSource(str, Enum):
    PROJECT = "project"
    CATALOGUE = "catalogue"
    DEFAULT = "default"


# ── Catalogue & factors ───────────────────────────────────────────────────────

class CatalogueEntry(BaseModel):
    """A priced material, labour trade or piece of equipment."""
    model_config = ConfigDict(frozen=True)

    id: str
    category: RateCategory
    code: str = ""
    name: str = ""
    unit: str = ""
    rate: float = 0.0
    is_active: bool = True


class MaterialFactor(BaseModel):
    id: str
    catalogue_id: Optional[str] = None
    quantity_per_unit: float = 0.0
    wastage_percentage: Optional[float] = None
    catalogue: Optional[CatalogueEntry] = None


class LaborFactor(BaseModel):
    id: str
    catalogue_id: Optional[str] = None
    hours_per_unit: float = 0.0
    productivity_factor: Optional[float] = None
    crew_size: Optional[float] = None
    catalogue: Optional[CatalogueEntry] = None


class EquipmentFactor(BaseModel):
    id: str
    catalogue_id: Optional[str] = None
    hours_per_unit: float = 0.0
    utilization_factor: Optional[float] = None
    catalogue: Optional[CatalogueEntry] = None


class LibraryItem(BaseModel):
    """A unit of construction work and the factors that build up its cost."""
    id: str
    code: str = ""
    name: str = ""
    unit: str = "EA"
    status: ItemStatus = ItemStatus.DRAFT
    material_factors: List[MaterialFactor] = Field(default_factory=list)
    labor_factors: List[LaborFactor] = Field(default_factory=list)
    equipment_factors: List[EquipmentFactor] = Field(default_factory=list)


# ── Project rates ─────────────────────────────────────────────────────────────

class ProjectRates(BaseModel):
    """One effective-dated version of a project's rate overrides."""
    project_id: str
    materials: Dict[str, float] = Field(default_factory=dict)
    labour: Dict[str, float] = Field(default_factory=dict)
    equipment: Dict[str, float] = Field(default_factory=dict)
    effective_date: Optional[datetime] = None

    def for_category(self, category: RateCategory) -> Dict[str, float]:
        return getattr(self, RateCategory(category).value)

    @property
    def is_empty(self) -> bool:
        return not (self.materials or self.labour or self.equipment)

    def rate_maps(self) -> Dict[str, Dict[str, float]]:
        return {
            "materials": dict(self.materials),
            "labour": dict(self.labour),
            "equipment": dict(self.equipment),
        }


class EffectiveRate(BaseModel):
    catalogue_id: str
    category: RateCategory
    rate: float
    source: RateSource
    project_rate: Optional[float] = None
    catalogue_rate: Optional[float] = None


class RateStatistics(BaseModel):
    project_id: str
    total_rates: int
    category_breakdown: Dict[str, int]
    average_rates: Dict[str, float]
    last_updated: Optional[datetime] = None


class RateComparison(BaseModel):
    catalogue_id: str
    category: RateCategory
    source_rate: float
    target_rate: float
    difference: float
    percentage_change: float
    action: str  # "add" | "update" | "remove" | "unchanged"


# ── Calculation options & results ─────────────────────────────────────────────

class CalculationOptions(BaseModel):
    """Adjustment toggles. Percentages are 0-100; factors are multipliers > 0."""
    model_config = ConfigDict(frozen=True)

    include_indirect_costs: bool = False
    include_overheads: bool = False
    include_contingency: bool = False
    indirect_cost_percentage: float = Field(config.DEFAULT_INDIRECT_COST_PCT, ge=0, le=100)
    overhead_percentage: float = Field(config.DEFAULT_OVERHEAD_PCT, ge=0, le=100)
    contingency_percentage: float = Field(config.DEFAULT_CONTINGENCY_PCT, ge=0, le=100)
    bulk_discount_percentage: float = Field(config.DEFAULT_BULK_DISCOUNT_PCT, ge=0, le=100)
    location_adjustment_factor: float = Field(config.DEFAULT_LOCATION_FACTOR, gt=0)
    seasonal_adjustment_factor: float = Field(config.DEFAULT_SEASONAL_FACTOR, gt=0)

    @classmethod
    def parse(cls, value: "CalculationOptions | dict | None") -> "CalculationOptions":
        """Coerce caller input, turning pydantic errors into InputValidationError."""
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        try:
            return cls.model_validate(value)
        except ValidationError as e:
            first = e.errors()[0]
            field_name = ".".join(str(p) for p in first.get("loc", ())) or None
            raise InputValidationError(
                f"Invalid calculation option: {first.get('msg')}", field_name=field_name
            ) from e


class DataQualityWarning(BaseModel):
    code: str  # "missing_catalogue" | "inactive_catalogue" | "defaulted_field"
    message: str
    category: RateCategory
    factor_id: str
    catalogue_id: Optional[str] = None


class FactorLine(BaseModel):
    factor_id: str
    catalogue_id: Optional[str] = None
    code: Optional[str] = None
    name: Optional[str] = None
    quantity: Optional[float] = None
    hours: Optional[float] = None
    wastage: Optional[float] = None
    productivity: Optional[float] = None
    crew_size: Optional[float] = None
    utilization: Optional[float] = None
    effective_quantity: Optional[float] = None
    effective_hours: Optional[float] = None
    rate: float = 0.0
    rate_source: RateSource = RateSource.DEFAULT
    cost: float = 0.0
    skipped: bool = False


class FactorDetails(BaseModel):
    materials: List[FactorLine] = Field(default_factory=list)
    labor: List[FactorLine] = Field(default_factory=list)
    equipment: List[FactorLine] = Field(default_factory=list)


class CostBreakdown(BaseModel):
    material: float = 0.0
    labor: float = 0.0
    equipment: float = 0.0
    direct_total: float = 0.0
    indirect: float = 0.0
    overhead: float = 0.0
    contingency: float = 0.0
    bulk_discount: float = 0.0
    location_adjustment: float = 0.0
    seasonal_adjustment: float = 0.0
    total: float = 0.0


class AdjustmentsApplied(BaseModel):
    indirect: bool = False
    overhead: bool = False
    contingency: bool = False
    bulk_discount: bool = False
    location_adjustment: bool = False
    seasonal_adjustment: bool = False


class CalculationResult(BaseModel):
    library_item_id: str
    code: str = ""
    name: str = ""
    unit: str = ""
    quantity: float = 1.0
    costs: CostBreakdown = Field(default_factory=CostBreakdown)
    unit_rate: float = 0.0
    extended_total: float = 0.0
    details: FactorDetails = Field(default_factory=FactorDetails)
    rates_used: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    adjustments_applied: AdjustmentsApplied = Field(default_factory=AdjustmentsApplied)
    warnings: List[DataQualityWarning] = Field(default_factory=list)
    error: Optional[str] = None


class BatchSummary(BaseModel):
    items_requested: int = 0
    items_calculated: int = 0
    items_failed: int = 0
    total_cost: float = 0.0
    average_cost_per_item: float = 0.0
    cancelled: bool = False


class BatchResult(BaseModel):
    project_id: str
    results: List[CalculationResult] = Field(default_factory=list)
    summary: BatchSummary = Field(default_factory=BatchSummary)
    options_applied: CalculationOptions = Field(default_factory=CalculationOptions)
    calculated_at: datetime


# ── Snapshots ─────────────────────────────────────────────────────────────────

class ItemPriceData(BaseModel):
    item_code: str
    item_name: str
    unit: str
    unit_price: float
    material_cost: float
    labor_cost: float
    equipment_cost: float
    total_quantity: float
    total_cost: float
    factor_breakdown: FactorDetails


class SnapshotMetadata(BaseModel):
    total_items: int = 0
    items_processed: int = 0
    items_failed: int = 0
    total_value: float = 0.0
    calculation_method: str = config.SNAPSHOT_METHOD_PROJECT
    snapshot_version: str = config.SNAPSHOT_VERSION


class PriceSnapshot(BaseModel):
    project_id: str
    snapshot_date: datetime
    project_rates: ProjectRates
    item_prices: Dict[str, ItemPriceData] = Field(default_factory=dict)
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)


# ── Popularity ────────────────────────────────────────────────────────────────

class UsageEvent(BaseModel):
    library_item_id: str
    project_id: str
    element_id: Optional[str] = None
    quantity: float = 0.0
    created_at: datetime


class PopularityUpdate(BaseModel):
    library_item_id: str
    usage_count_30d: int
    last_used_at: datetime
    popularity_score: float
    commonly_paired_with: List[str] = Field(default_factory=list)
    updated_at: datetime


class PopularityRun(BaseModel):
    updates: List[PopularityUpdate] = Field(default_factory=list)
    purged: int = 0
    usage_records_analyzed: int = 0
    projects_analyzed: int = 0
