from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import func, select

from stock_transfer.db import build_engine, create_session_factory
from stock_transfer.models import Base, BatchMovement, Item, Store, StoreInventory
from stock_transfer.services.counter_cache_service import COUNTER_NAMES


class DatabaseTestCase(unittest.TestCase):
    """Fresh in-memory SQLite schema per test."""

    def setUp(self) -> None:
        self.engine = build_engine('sqlite://')
        Base.metadata.create_all(self.engine)
        self.db = create_session_factory(self.engine)()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def add_store(self, code: str, *, active: bool = True) -> Store:
        store = Store(code=code, name=f'Store {code}', active=active)
        self.db.add(store)
        self.db.commit()
        return store

    def add_item(self, sku: str, *, unit_price: str = '1.00') -> Item:
        item = Item(sku=sku, name=f'Item {sku}', unit_price=Decimal(unit_price))
        self.db.add(item)
        self.db.commit()
        return item

    def counters(self, store_id: int) -> dict[str, int]:
        row = self.db.execute(
            select(*[getattr(Store, name) for name in COUNTER_NAMES]).where(Store.id == store_id)
        ).one()
        return dict(zip(COUNTER_NAMES, row))

    def inventory(self, store_id: int, item_id: int) -> tuple[int, int] | None:
        row = self.db.execute(
            select(StoreInventory.quantity, StoreInventory.reserved_quantity).where(
                StoreInventory.store_id == store_id,
                StoreInventory.item_id == item_id,
            )
        ).one_or_none()
        return tuple(row) if row is not None else None

    def movement_count(self) -> int:
        return int(self.db.execute(select(func.count(BatchMovement.id))).scalar_one())
