"""
Costing error taxonomy.

InputValidationError is raised before any computation starts. Lookup errors
are fatal for the affected item only; batch callers capture them per item.
Data-quality problems are never raised, see models.domain.DataQualityWarning.
"""
from typing import Any, Dict, Optional


class CostingError(Exception):
    """Base class for all cost engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class InputValidationError(CostingError):
    """Caller passed an invalid id list, quantity, percentage or factor value."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        super().__init__(message, {"field_name": field_name, **kwargs})
        self.field_name = field_name


class UpstreamLookupError(CostingError):
    """A catalogue, factor or rate-table read failed."""


class ItemNotFoundError(UpstreamLookupError):
    """The requested library item does not exist."""

    def __init__(self, library_item_id: str):
        super().__init__(
            f"Library item {library_item_id} not found",
            {"library_item_id": library_item_id},
        )
        self.library_item_id = library_item_id


class MissingReferenceError(UpstreamLookupError):
    """A factor points at a catalogue entry that no longer exists."""

    def __init__(self, category: str, factor_id: str, catalogue_id: str):
        super().__init__(
            f"Unable to calculate: {category} factor {factor_id} references "
            f"missing catalogue entry {catalogue_id}",
            {"category": category, "factor_id": factor_id, "catalogue_id": catalogue_id},
        )
        self.category = category
        self.factor_id = factor_id
        self.catalogue_id = catalogue_id
