from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_transfer.models import Item, StockLevelStatus, StoreInventory

CRITICAL_RATIO = Decimal('0.5')
OPTIMAL_RATIO = Decimal('2')
OVERSTOCK_RATIO = Decimal('3')


def is_low_stock(quantity: int, safety_stock_level: int) -> bool:
    return quantity <= safety_stock_level


def stock_level_status(quantity: int, safety_stock_level: int) -> StockLevelStatus:
    if quantity == 0:
        return StockLevelStatus.OUT_OF_STOCK
    if quantity <= safety_stock_level * CRITICAL_RATIO:
        return StockLevelStatus.CRITICAL
    if quantity <= safety_stock_level:
        return StockLevelStatus.LOW
    if quantity <= safety_stock_level * OPTIMAL_RATIO:
        return StockLevelStatus.OPTIMAL
    return StockLevelStatus.EXCESS


def store_inventory_summary(db: Session, *, store_id: int) -> dict:
    rows = db.execute(
        select(StoreInventory, Item.unit_price)
        .join(Item, Item.id == StoreInventory.item_id)
        .where(StoreInventory.store_id == store_id)
    ).all()

    summary = {
        'total_items': len(rows),
        'total_value': Decimal('0.00'),
        'available_value': Decimal('0.00'),
        'reserved_value': Decimal('0.00'),
        'low_stock_count': 0,
        'critical_stock_count': 0,
        'out_of_stock_count': 0,
        'overstocked_count': 0,
    }
    for row, unit_price in rows:
        price = unit_price or Decimal('0.00')
        summary['total_value'] += price * row.quantity
        summary['available_value'] += price * row.available_quantity
        summary['reserved_value'] += price * row.reserved_quantity
        if is_low_stock(row.quantity, row.safety_stock_level):
            summary['low_stock_count'] += 1
        if row.quantity <= row.safety_stock_level * CRITICAL_RATIO:
            summary['critical_stock_count'] += 1
        if row.quantity == 0:
            summary['out_of_stock_count'] += 1
        if row.quantity > row.safety_stock_level * OVERSTOCK_RATIO:
            summary['overstocked_count'] += 1
    return summary
