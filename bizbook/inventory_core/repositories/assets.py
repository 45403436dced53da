"""
Asset repository.

Asset tags are monotonic (`A-000001`, `A-000002`, ...) and unique.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..errors import NotFoundError
from ..schema.entities import ASSET
from ..schema.types import now_iso
from ..transactions.handles import TransactionHandle
from .base import BaseRepository

TAG_PREFIX = "A-"


class AssetRepository(BaseRepository):
    """Assets, with tag generation and maintenance history."""

    entity = ASSET

    async def next_asset_tag(self, txn: Optional[TransactionHandle] = None) -> str:
        tagged = await self.find_all(
            {"assetTag": {"$gte": TAG_PREFIX, "$lt": TAG_PREFIX + "~"}}, None, txn
        )
        highest = 0
        for asset in tagged:
            tail = asset["assetTag"][len(TAG_PREFIX):]
            if tail.isdigit():
                highest = max(highest, int(tail))
        return f"{TAG_PREFIX}{highest + 1:06d}"

    async def create(self, data: Dict[str, Any], txn: Optional[TransactionHandle] = None) -> dict:
        if not data.get("assetTag"):
            data = {**data, "assetTag": await self.next_asset_tag(txn)}
        if data.get("currentValue") is None and data.get("initialCost") is not None:
            data = {**data, "currentValue": data["initialCost"]}
        return await super().create(data, txn)

    async def find_by_category(self, category: str) -> List[dict]:
        return await self.find_all({"category": category})

    async def find_by_purchase(
        self, purchase_id: str, txn: Optional[TransactionHandle] = None
    ) -> List[dict]:
        return await self.find_all({"purchaseId": purchase_id}, None, txn)

    async def add_maintenance_record(
        self,
        asset_id: str,
        entry: Dict[str, Any],
        txn: Optional[TransactionHandle] = None,
    ) -> dict:
        """Append a maintenance entry and move lastMaintenance forward."""
        asset = await self.find_by_id(asset_id, txn)
        if asset is None:
            raise NotFoundError("Asset", asset_id)
        history = list(asset.get("maintenanceHistory") or [])
        entry = {"date": now_iso(), **entry}
        history.append(entry)
        patch: Dict[str, Any] = {"maintenanceHistory": history}
        schedule = asset.get("maintenanceSchedule")
        if schedule:
            patch["maintenanceSchedule"] = {**schedule, "lastMaintenance": entry["date"]}
        return await self.update(asset_id, patch, txn, expected={"updatedAt": asset["updatedAt"]})
