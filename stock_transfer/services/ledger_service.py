from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_transfer.config import settings
from stock_transfer.db import atomic
from stock_transfer.errors import (
    InsufficientAvailableStockError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from stock_transfer.models import Item, LedgerOperation, StockLedgerEntry, Store, StoreInventory
from stock_transfer.services.counter_cache_service import (
    LOW_STOCK_ITEMS_COUNT,
    STORE_INVENTORIES_COUNT,
    bump_counter,
)
from stock_transfer.services.locking import lock_inventory
from stock_transfer.services.stock_level_service import is_low_stock

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_store(db: Session, store_id: int) -> Store:
    store = db.get(Store, store_id)
    if not store:
        raise NotFoundError('Store not found', store_id=store_id)
    return store


def ensure_item(db: Session, item_id: int) -> Item:
    item = db.get(Item, item_id)
    if not item:
        raise NotFoundError('Item not found', item_id=item_id)
    return item


def get_inventory(db: Session, *, store_id: int, item_id: int) -> StoreInventory | None:
    return db.execute(
        select(StoreInventory).where(StoreInventory.store_id == store_id, StoreInventory.item_id == item_id)
    ).scalar_one_or_none()


def create_inventory(
    db: Session,
    *,
    store_id: int,
    item_id: int,
    safety_stock_level: int | None = None,
) -> StoreInventory:
    """Insert an empty holding row; callers hold no lock on it yet."""
    ensure_store(db, store_id)
    ensure_item(db, item_id)
    level = safety_stock_level if safety_stock_level is not None else settings.default_safety_stock_level
    if level < 0:
        raise ValidationError('Safety stock level cannot be negative', safety_stock_level=level)
    row = StoreInventory(
        store_id=store_id,
        item_id=item_id,
        quantity=0,
        reserved_quantity=0,
        safety_stock_level=level,
        last_updated_at=_now(),
    )
    db.add(row)
    db.flush()
    bump_counter(db, store_id=store_id, counter_name=STORE_INVENTORIES_COUNT, delta=1)
    if is_low_stock(0, level):
        bump_counter(db, store_id=store_id, counter_name=LOW_STOCK_ITEMS_COUNT, delta=1)
    return row


def lock_or_create_inventory(db: Session, *, store_id: int, item_id: int) -> StoreInventory:
    row = lock_inventory(db, store_id=store_id, item_id=item_id)
    if row is not None:
        return row
    try:
        with db.begin_nested():
            create_inventory(db, store_id=store_id, item_id=item_id)
    except IntegrityError:
        # Another writer created the row first; lock theirs.
        logger.info('Store inventory store=%s item=%s created concurrently', store_id, item_id)
    return lock_inventory(db, store_id=store_id, item_id=item_id)


def _append_entry(
    db: Session,
    row: StoreInventory,
    *,
    operation_type: LedgerOperation,
    delta: int,
    reserved_delta: int,
    reference: str | None,
    transfer_id: int | None,
) -> StockLedgerEntry:
    previous_quantity = row.quantity
    previous_reserved = row.reserved_quantity
    was_low = is_low_stock(previous_quantity, row.safety_stock_level)

    row.quantity = previous_quantity + delta
    row.reserved_quantity = previous_reserved + reserved_delta
    if delta:
        row.last_updated_at = _now()

    entry = StockLedgerEntry(
        store_id=row.store_id,
        item_id=row.item_id,
        operation_type=operation_type,
        delta=delta,
        reserved_delta=reserved_delta,
        previous_quantity=previous_quantity,
        resulting_quantity=row.quantity,
        previous_reserved_quantity=previous_reserved,
        resulting_reserved_quantity=row.reserved_quantity,
        reference=reference,
        transfer_id=transfer_id,
        created_at=_now(),
    )
    db.add(entry)
    db.flush()

    is_low = is_low_stock(row.quantity, row.safety_stock_level)
    if was_low != is_low:
        bump_counter(db, store_id=row.store_id, counter_name=LOW_STOCK_ITEMS_COUNT, delta=1 if is_low else -1)
    return entry


def apply_movement(
    db: Session,
    row: StoreInventory,
    *,
    delta: int,
    operation_type: LedgerOperation,
    reference: str | None = None,
    transfer_id: int | None = None,
) -> StockLedgerEntry:
    """Quantity change on an already-locked row; the caller owns the atomic unit."""
    if delta == 0:
        raise ValidationError('Movement delta cannot be zero', store_id=row.store_id, item_id=row.item_id)
    resulting = row.quantity + delta
    if resulting < 0:
        raise InsufficientStockError(
            'Insufficient stock',
            store_id=row.store_id,
            item_id=row.item_id,
            quantity=row.quantity,
            requested=-delta,
        )
    if resulting < row.reserved_quantity:
        raise InsufficientAvailableStockError(
            'Insufficient available stock; part of it is reserved',
            store_id=row.store_id,
            item_id=row.item_id,
            available=row.available_quantity,
            reserved=row.reserved_quantity,
            requested=-delta,
        )
    return _append_entry(
        db,
        row,
        operation_type=operation_type,
        delta=delta,
        reserved_delta=0,
        reference=reference,
        transfer_id=transfer_id,
    )


def apply_reservation(
    db: Session,
    row: StoreInventory,
    *,
    quantity: int,
    reference: str | None = None,
    transfer_id: int | None = None,
) -> StockLedgerEntry:
    if quantity <= 0:
        raise ValidationError('Reservation quantity must be greater than zero', quantity=quantity)
    if row.available_quantity < quantity:
        raise InsufficientAvailableStockError(
            'Insufficient available stock',
            store_id=row.store_id,
            item_id=row.item_id,
            available=row.available_quantity,
            requested=quantity,
        )
    return _append_entry(
        db,
        row,
        operation_type=LedgerOperation.TRANSFER_RESERVE,
        delta=0,
        reserved_delta=quantity,
        reference=reference,
        transfer_id=transfer_id,
    )


def apply_release(
    db: Session,
    row: StoreInventory,
    *,
    quantity: int,
    reference: str | None = None,
    transfer_id: int | None = None,
) -> StockLedgerEntry:
    if quantity <= 0:
        raise ValidationError('Release quantity must be greater than zero', quantity=quantity)
    if row.reserved_quantity < quantity:
        raise InvalidStateError(
            'Cannot release more than is reserved',
            store_id=row.store_id,
            item_id=row.item_id,
            reserved=row.reserved_quantity,
            requested=quantity,
        )
    return _append_entry(
        db,
        row,
        operation_type=LedgerOperation.TRANSFER_RELEASE,
        delta=0,
        reserved_delta=-quantity,
        reference=reference,
        transfer_id=transfer_id,
    )


def record_movement(
    db: Session,
    *,
    store_id: int,
    item_id: int,
    delta: int,
    operation_type: LedgerOperation,
    reference: str | None = None,
    transfer_id: int | None = None,
) -> StockLedgerEntry:
    with atomic(db):
        row = lock_inventory(db, store_id=store_id, item_id=item_id)
        if row is None:
            if delta < 0:
                raise NotFoundError(
                    'No stock has ever been received for this item at this store',
                    store_id=store_id,
                    item_id=item_id,
                )
            row = lock_or_create_inventory(db, store_id=store_id, item_id=item_id)
        entry = apply_movement(
            db,
            row,
            delta=delta,
            operation_type=operation_type,
            reference=reference,
            transfer_id=transfer_id,
        )
    logger.info(
        'Ledger %s store=%s item=%s delta=%s -> %s',
        operation_type.value,
        store_id,
        item_id,
        delta,
        entry.resulting_quantity,
    )
    return entry


def reserve(
    db: Session,
    *,
    store_id: int,
    item_id: int,
    quantity: int,
    reference: str | None = None,
    transfer_id: int | None = None,
) -> bool:
    with atomic(db):
        row = lock_inventory(db, store_id=store_id, item_id=item_id)
        if row is None:
            raise InsufficientAvailableStockError(
                'Insufficient available stock',
                store_id=store_id,
                item_id=item_id,
                available=0,
                requested=quantity,
            )
        apply_reservation(db, row, quantity=quantity, reference=reference, transfer_id=transfer_id)
    return True


def release_reservation(
    db: Session,
    *,
    store_id: int,
    item_id: int,
    quantity: int,
    reference: str | None = None,
    transfer_id: int | None = None,
) -> StockLedgerEntry:
    with atomic(db):
        row = lock_inventory(db, store_id=store_id, item_id=item_id)
        if row is None:
            raise InvalidStateError(
                'Nothing is reserved for this item at this store',
                store_id=store_id,
                item_id=item_id,
                reserved=0,
                requested=quantity,
            )
        entry = apply_release(db, row, quantity=quantity, reference=reference, transfer_id=transfer_id)
    return entry


def set_safety_stock_level(db: Session, *, store_id: int, item_id: int, safety_stock_level: int) -> StoreInventory:
    if safety_stock_level < 0:
        raise ValidationError('Safety stock level cannot be negative', safety_stock_level=safety_stock_level)
    with atomic(db):
        row = lock_inventory(db, store_id=store_id, item_id=item_id)
        if row is None:
            raise NotFoundError('Store inventory not found', store_id=store_id, item_id=item_id)
        was_low = is_low_stock(row.quantity, row.safety_stock_level)
        row.safety_stock_level = safety_stock_level
        is_low = is_low_stock(row.quantity, safety_stock_level)
        if was_low != is_low:
            bump_counter(db, store_id=store_id, counter_name=LOW_STOCK_ITEMS_COUNT, delta=1 if is_low else -1)
    return row


def ledger_balance(db: Session, *, store_id: int, item_id: int) -> tuple[int, int]:
    qty, reserved = db.execute(
        select(
            func.coalesce(func.sum(StockLedgerEntry.delta), 0),
            func.coalesce(func.sum(StockLedgerEntry.reserved_delta), 0),
        ).where(StockLedgerEntry.store_id == store_id, StockLedgerEntry.item_id == item_id)
    ).one()
    return int(qty), int(reserved)


def list_ledger_entries(
    db: Session,
    *,
    store_id: int,
    item_id: int | None = None,
    limit: int = 100,
) -> list[StockLedgerEntry]:
    query = select(StockLedgerEntry).where(StockLedgerEntry.store_id == store_id)
    if item_id is not None:
        query = query.where(StockLedgerEntry.item_id == item_id)
    return list(db.execute(query.order_by(StockLedgerEntry.id.desc()).limit(limit)).scalars().all())
