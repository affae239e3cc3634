"""
SnapshotService — Point-in-time capture of a project's resolved rates and
item prices, for audit and price history.

Prices are computed with factor_calculator (no adjustments) against the rate
table in force at snapshot time. Items that cannot be priced are skipped and
counted; the snapshot is written once, after every item has been processed.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Optional

from bqcost.models.domain import ItemPriceData, PriceSnapshot, SnapshotMetadata
from bqcost.services import config
from bqcost.services.costing_service import CatalogueCache
from bqcost.services.errors import CostingError, InputValidationError, ItemNotFoundError
from bqcost.services.factor_calculator import calculate_item, round_money
from bqcost.services.lookups import (
    CatalogueLookup,
    FactorLookup,
    ProjectRateLookup,
    ProjectUsageLookup,
    SnapshotWriter,
)

logger = logging.getLogger("bqcost-snapshot")


class SnapshotService:

    def __init__(
        self,
        factor_lookup: FactorLookup,
        rate_lookup: ProjectRateLookup,
        usage_lookup: ProjectUsageLookup,
        writer: SnapshotWriter,
        catalogue_lookup: Optional[CatalogueLookup] = None,
    ) -> None:
        self.factor_lookup = factor_lookup
        self.rate_lookup = rate_lookup
        self.usage_lookup = usage_lookup
        self.writer = writer
        self.catalogue_lookup = catalogue_lookup

    async def _item_quantities(self, project_id: str, include_all_items: bool) -> Dict[str, float]:
        if include_all_items:
            ids = await self.factor_lookup.list_item_ids(status="confirmed")
            return {item_id: 1.0 for item_id in ids}
        return await self.usage_lookup.get_item_quantities(project_id)

    async def capture(
        self,
        project_id: str,
        include_all_items: bool = False,
        now: Optional[datetime] = None,
    ) -> PriceSnapshot:
        if not project_id:
            raise InputValidationError("project_id is required", field_name="project_id")

        now = now or datetime.now(timezone.utc)
        start = time.perf_counter()
        rates = await self.rate_lookup.get_current_rates(project_id, now)
        logger.info(
            "Project rates loaded: " + ("using default catalogue rates" if rates.is_empty else "custom rates found"),
            extra={"project_id": project_id},
        )

        quantities = await self._item_quantities(project_id, include_all_items)
        logger.info(f"Processing {len(quantities)} items for price snapshot", extra={"project_id": project_id})

        cache = CatalogueCache(self.catalogue_lookup)
        item_prices: Dict[str, ItemPriceData] = {}
        total_value = 0.0
        failed = 0

        for item_id, total_quantity in quantities.items():
            try:
                item = await self.factor_lookup.get_item(item_id)
                if item is None:
                    raise ItemNotFoundError(item_id)
                item = await cache.attach(item)
                result = calculate_item(item, rates, quantity=total_quantity)
            except CostingError as e:
                logger.warning(
                    f"Skipping item {item_id} in snapshot: {e.message}",
                    extra={"project_id": project_id, "library_item_id": item_id},
                )
                failed += 1
                continue

            item_total = result.extended_total
            item_prices[item_id] = ItemPriceData(
                item_code=item.code,
                item_name=item.name,
                unit=item.unit,
                unit_price=result.costs.direct_total,
                material_cost=result.costs.material,
                labor_cost=result.costs.labor,
                equipment_cost=result.costs.equipment,
                total_quantity=total_quantity,
                total_cost=item_total,
                factor_breakdown=result.details,
            )
            total_value += item_total

        snapshot = PriceSnapshot(
            project_id=project_id,
            snapshot_date=now,
            project_rates=rates,
            item_prices=item_prices,
            metadata=SnapshotMetadata(
                total_items=len(quantities),
                items_processed=len(item_prices),
                items_failed=failed,
                total_value=round_money(total_value),
                calculation_method=(
                    config.SNAPSHOT_METHOD_ALL_ITEMS if include_all_items else config.SNAPSHOT_METHOD_PROJECT
                ),
            ),
        )
        await self.writer.write(snapshot)

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            f"Price snapshot completed: {len(item_prices)} items, total {snapshot.metadata.total_value}",
            extra={"project_id": project_id, "duration_ms": duration_ms},
        )
        return snapshot
