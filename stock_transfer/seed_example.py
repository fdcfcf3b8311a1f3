from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import select

from stock_transfer.db import SessionLocal, engine
from stock_transfer.models import Base, Item, Store, StoreType
from stock_transfer.services.batch_service import receive_stock
from stock_transfer.services.ledger_service import get_inventory


def seed() -> None:
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        warehouse = db.execute(select(Store).where(Store.code == 'WH-01')).scalar_one_or_none()
        if not warehouse:
            warehouse = Store(code='WH-01', name='Central Warehouse', store_type=StoreType.WAREHOUSE, active=True)
            db.add(warehouse)

        downtown = db.execute(select(Store).where(Store.code == 'PH-01')).scalar_one_or_none()
        if not downtown:
            downtown = Store(code='PH-01', name='Downtown Pharmacy', store_type=StoreType.PHARMACY, active=True)
            db.add(downtown)

        item = db.execute(select(Item).where(Item.sku == 'AMOX-500')).scalar_one_or_none()
        if not item:
            item = Item(sku='AMOX-500', name='Amoxicillin 500mg', unit_price=Decimal('4.25'))
            db.add(item)

        db.commit()

        if get_inventory(db, store_id=warehouse.id, item_id=item.id) is None:
            today = date.today()
            db.rollback()
            receive_stock(db, store_id=warehouse.id, item_id=item.id, quantity=40, expires_on=today + timedelta(days=20))
            receive_stock(db, store_id=warehouse.id, item_id=item.id, quantity=60, expires_on=today + timedelta(days=200))
            receive_stock(db, store_id=warehouse.id, item_id=item.id, quantity=25)

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed complete')
