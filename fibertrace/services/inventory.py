"""Field inventory items: stock levels, adjustments and low-stock reporting."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from fibertrace.models.enums import StockStatus
from fibertrace.schemas.records import Actor, InventoryItem
from fibertrace.services import change_tracking
from fibertrace.services.errors import ValidationError


def id_domain(fields: Mapping[str, Any]) -> str:
    return "inventory_item"


def _check_bounds(item: InventoryItem) -> None:
    if item.maximum_stock is not None and item.minimum_stock > item.maximum_stock:
        raise ValidationError("minimum_stock", "must not exceed maximum_stock")


def create(
    fields: Mapping[str, Any],
    *,
    record_id: str,
    actor: Actor | str,
    now: datetime | None = None,
    origin_device: str | None = None,
) -> InventoryItem:
    item = change_tracking.new_record(
        InventoryItem, fields, record_id=record_id, actor=actor, now=now, origin_device=origin_device
    )
    _check_bounds(item)
    return item


def update(
    item: InventoryItem,
    patch: Mapping[str, Any],
    *,
    actor: Actor | str,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
    reason: str | None = None,
) -> InventoryItem:
    updated = change_tracking.apply_changes(item, patch, actor, reason, now=now, history_limit=history_limit)
    _check_bounds(updated)
    return updated


def stock_status(item: InventoryItem) -> StockStatus:
    if item.current_stock == 0:
        return StockStatus.out_of_stock
    if item.current_stock <= item.minimum_stock:
        return StockStatus.low_stock
    if item.maximum_stock is not None and item.current_stock > item.maximum_stock:
        return StockStatus.overstocked
    return StockStatus.in_stock


def adjust_stock(
    item: InventoryItem,
    delta: int,
    actor: Actor | str,
    reason: str | None = None,
    *,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
) -> InventoryItem:
    """Add (or with a negative delta, draw down) stock as a tracked change."""
    new_stock = item.current_stock + delta
    if new_stock < 0:
        raise ValidationError(
            "current_stock", f"only {item.current_stock} {item.unit} of {item.name} in stock"
        )
    return change_tracking.apply_change(
        item,
        "current_stock",
        new_stock,
        actor,
        reason or ("Stock received" if delta >= 0 else "Stock used"),
        now=now,
        history_limit=history_limit,
    )


def restock(
    item: InventoryItem,
    quantity: int,
    actor: Actor | str,
    *,
    now: datetime | None = None,
    history_limit: int | None = change_tracking.DEFAULT_HISTORY_LIMIT,
) -> InventoryItem:
    if quantity <= 0:
        raise ValidationError("quantity", "restock quantity must be positive")
    return change_tracking.apply_changes(
        item,
        {
            "current_stock": item.current_stock + quantity,
            "last_restocked_at": now or datetime.now(UTC),
        },
        actor,
        "Restocked",
        now=now,
        history_limit=history_limit,
    )


def low_stock_items(items: Iterable[InventoryItem]) -> list[InventoryItem]:
    return [
        item
        for item in items
        if not item.deleted and stock_status(item) in (StockStatus.out_of_stock, StockStatus.low_stock)
    ]


def get_inventory_stats(items: Iterable[InventoryItem]) -> dict[str, Any]:
    by_status = {status.value: 0 for status in StockStatus}
    by_category: dict[str, int] = {}
    total = 0
    unsynced = 0
    for item in items:
        if item.deleted:
            continue
        total += 1
        by_status[stock_status(item).value] += 1
        by_category[item.category] = by_category.get(item.category, 0) + 1
        if not item.synced:
            unsynced += 1
    return {"total": total, "by_status": by_status, "by_category": by_category, "unsynced": unsynced}
