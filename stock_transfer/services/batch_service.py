from __future__ import annotations

import logging
import secrets
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_transfer.config import settings
from stock_transfer.db import atomic
from stock_transfer.errors import NotFoundError, ValidationError
from stock_transfer.models import Batch, BatchMovement, LedgerOperation, StockLedgerEntry
from stock_transfer.services.batch_allocator import (
    AllocationPlan,
    apply_plan,
    located_quantities,
    plan_allocation,
    revalidate_plan,
)
from stock_transfer.services.ledger_service import (
    apply_movement,
    ensure_item,
    ensure_store,
    lock_or_create_inventory,
)
from stock_transfer.services.locking import lock_inventory

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def generate_lot_code(today: date | None = None) -> str:
    stamp = (today or date.today()).strftime('%Y%m%d')
    return f'BN-{stamp}-{secrets.token_hex(3).upper()}'


def receive_stock(
    db: Session,
    *,
    store_id: int,
    item_id: int,
    quantity: int,
    lot_code: str | None = None,
    expires_on: date | None = None,
    reference: str | None = None,
) -> Batch:
    if quantity <= 0:
        raise ValidationError('Received quantity must be greater than zero', quantity=quantity)
    clean_lot = (lot_code or '').strip() or generate_lot_code()

    with atomic(db):
        ensure_store(db, store_id)
        ensure_item(db, item_id)
        duplicate = db.execute(
            select(Batch.id).where(Batch.item_id == item_id, Batch.lot_code == clean_lot)
        ).scalar_one_or_none()
        if duplicate:
            raise ValidationError('Lot code already exists for this item', item_id=item_id, lot_code=clean_lot)

        row = lock_or_create_inventory(db, store_id=store_id, item_id=item_id)
        batch = Batch(
            item_id=item_id,
            lot_code=clean_lot,
            origin_store_id=store_id,
            quantity=quantity,
            initial_quantity=quantity,
            expires_on=expires_on,
            created_at=_now(),
        )
        db.add(batch)
        db.flush()
        apply_movement(
            db,
            row,
            delta=quantity,
            operation_type=LedgerOperation.RECEIVE,
            reference=reference or f'batch:{batch.id}',
        )
    logger.info('Received %s of item %s at store %s as lot %s', quantity, item_id, store_id, clean_lot)
    return batch


def consume_stock(
    db: Session,
    *,
    store_id: int,
    item_id: int,
    quantity: int,
    reference: str | None = None,
    plan: AllocationPlan | None = None,
) -> StockLedgerEntry:
    """Dispense or ship stock out of the chain, oldest expiry first."""
    if quantity <= 0:
        raise ValidationError('Consumed quantity must be greater than zero', quantity=quantity)
    owns_transaction = not db.in_transaction()
    if plan is None:
        plan = plan_allocation(db, store_id=store_id, item_id=item_id, quantity=quantity)
    elif (plan.store_id, plan.item_id, plan.quantity) != (store_id, item_id, quantity):
        raise ValidationError('Allocation plan does not match the request', store_id=store_id, item_id=item_id)
    if owns_transaction:
        # Close the planning read so the write unit below commits on its own.
        db.rollback()

    with atomic(db):
        row = lock_inventory(db, store_id=store_id, item_id=item_id)
        if row is None:
            raise NotFoundError('Store inventory not found', store_id=store_id, item_id=item_id)
        locked = revalidate_plan(db, plan)
        entry = apply_movement(
            db,
            row,
            delta=-quantity,
            operation_type=LedgerOperation.SHIP,
            reference=reference,
        )
        apply_plan(db, plan, to_store_id=None, locked_batches=locked)
    logger.info('Consumed %s of item %s at store %s', quantity, item_id, store_id)
    return entry


def batch_locations(db: Session, *, batch_id: int) -> dict[int, int]:
    batch = db.get(Batch, batch_id)
    if not batch:
        raise NotFoundError('Batch not found', batch_id=batch_id)
    store_ids = {batch.origin_store_id}
    for from_id, to_id in db.execute(
        select(BatchMovement.from_store_id, BatchMovement.to_store_id).where(BatchMovement.batch_id == batch_id)
    ).all():
        store_ids.add(from_id)
        if to_id is not None:
            store_ids.add(to_id)
    locations = {}
    for store_id in sorted(store_ids):
        qty = located_quantities(db, store_id=store_id, batches=[batch])[batch.id]
        if qty:
            locations[store_id] = qty
    return locations


def expiring_batches(
    db: Session,
    *,
    item_id: int | None = None,
    days: int | None = None,
    today: date | None = None,
) -> list[Batch]:
    window = days if days is not None else settings.expiring_soon_days
    start = today or date.today()
    query = (
        select(Batch)
        .where(
            Batch.quantity > 0,
            Batch.expires_on.is_not(None),
            Batch.expires_on >= start,
            Batch.expires_on < start + timedelta(days=window),
        )
        .order_by(Batch.expires_on.asc(), Batch.id.asc())
    )
    if item_id is not None:
        query = query.where(Batch.item_id == item_id)
    return list(db.execute(query).scalars().all())


def expired_batches(db: Session, *, item_id: int | None = None, today: date | None = None) -> list[Batch]:
    cutoff = today or date.today()
    query = (
        select(Batch)
        .where(Batch.quantity > 0, Batch.expires_on.is_not(None), Batch.expires_on < cutoff)
        .order_by(Batch.expires_on.asc(), Batch.id.asc())
    )
    if item_id is not None:
        query = query.where(Batch.item_id == item_id)
    return list(db.execute(query).scalars().all())


def nearest_expiry(db: Session, *, item_id: int) -> date | None:
    return db.execute(
        select(Batch.expires_on)
        .where(Batch.item_id == item_id, Batch.quantity > 0, Batch.expires_on.is_not(None))
        .order_by(Batch.expires_on.asc())
        .limit(1)
    ).scalar_one_or_none()
