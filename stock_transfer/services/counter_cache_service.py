from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.orm import InstrumentedAttribute, Session
from sqlalchemy.sql.expression import ScalarSelect

from stock_transfer.config import settings
from stock_transfer.db import atomic
from stock_transfer.errors import ConcurrentModificationError, LockTimeoutError, NotFoundError
from stock_transfer.models import InterStoreTransfer, StockLedgerEntry, Store, StoreInventory, TransferStatus
from stock_transfer.services.locking import acquire_store_reconcile_lock, translate_lock_errors

logger = logging.getLogger(__name__)

STORE_INVENTORIES_COUNT = 'store_inventories_count'
PENDING_OUTGOING_TRANSFERS_COUNT = 'pending_outgoing_transfers_count'
PENDING_INCOMING_TRANSFERS_COUNT = 'pending_incoming_transfers_count'
LOW_STOCK_ITEMS_COUNT = 'low_stock_items_count'

COUNTER_NAMES = (
    STORE_INVENTORIES_COUNT,
    PENDING_OUTGOING_TRANSFERS_COUNT,
    PENDING_INCOMING_TRANSFERS_COUNT,
    LOW_STOCK_ITEMS_COUNT,
)

_PENDING_DELTAS = 'pending_counter_deltas'


@dataclass(frozen=True)
class CounterMismatch:
    counter_name: str
    cached_value: int
    actual_value: int


@dataclass(frozen=True)
class LedgerDrift:
    item_id: int
    quantity: int
    ledger_quantity: int
    reserved_quantity: int
    ledger_reserved_quantity: int


def _column(counter_name: str) -> InstrumentedAttribute:
    return getattr(Store, counter_name)


def _actual_subquery(counter_name: str, store_id: int) -> ScalarSelect:
    if counter_name == STORE_INVENTORIES_COUNT:
        stmt = select(func.count(StoreInventory.id)).where(StoreInventory.store_id == store_id)
    elif counter_name == PENDING_OUTGOING_TRANSFERS_COUNT:
        stmt = select(func.count(InterStoreTransfer.id)).where(
            InterStoreTransfer.source_store_id == store_id,
            InterStoreTransfer.status == TransferStatus.PENDING,
        )
    elif counter_name == PENDING_INCOMING_TRANSFERS_COUNT:
        stmt = select(func.count(InterStoreTransfer.id)).where(
            InterStoreTransfer.destination_store_id == store_id,
            InterStoreTransfer.status == TransferStatus.PENDING,
        )
    elif counter_name == LOW_STOCK_ITEMS_COUNT:
        stmt = select(func.count(StoreInventory.id)).where(
            StoreInventory.store_id == store_id,
            StoreInventory.quantity <= StoreInventory.safety_stock_level,
        )
    else:
        raise ValueError(f'Unknown counter {counter_name}')
    return stmt.scalar_subquery()


def _update_store_counters(db: Session, store_id: int, deltas: dict[str, int]) -> None:
    values = {_column(name): _column(name) + delta for name, delta in deltas.items() if delta}
    if not values:
        return
    with translate_lock_errors('store counters', store_id=store_id):
        db.execute(update(Store).where(Store.id == store_id).values(values))


def apply_counter_deltas(db: Session, deltas: dict[tuple[int, str], int]) -> None:
    """Apply ``{(store_id, counter_name): delta}`` one store at a time in id order."""
    by_store: dict[int, dict[str, int]] = {}
    for (store_id, counter_name), delta in deltas.items():
        by_store.setdefault(store_id, {})[counter_name] = delta
    for store_id in sorted(by_store):
        _update_store_counters(db, store_id, by_store[store_id])


@contextmanager
def deferred_counter_updates(db: Session) -> Iterator[None]:
    """Collect counter bumps made inside the block and apply them when it succeeds.

    Store rows are then locked last and in id order, after every inventory and
    batch lock the unit takes. A nested block defers to the outermost one.
    """
    if _PENDING_DELTAS in db.info:
        yield
        return
    pending: dict[tuple[int, str], int] = {}
    db.info[_PENDING_DELTAS] = pending
    try:
        yield
    finally:
        del db.info[_PENDING_DELTAS]
    apply_counter_deltas(db, pending)


def bump_counter(db: Session, *, store_id: int, counter_name: str, delta: int) -> None:
    """Eager incremental update; deferred when inside ``deferred_counter_updates``."""
    if delta == 0:
        return
    if counter_name not in COUNTER_NAMES:
        raise ValueError(f'Unknown counter {counter_name}')
    pending = db.info.get(_PENDING_DELTAS)
    if pending is None:
        _update_store_counters(db, store_id, {counter_name: delta})
        return
    key = (store_id, counter_name)
    pending[key] = pending.get(key, 0) + delta


def _cached_values(db: Session, store_id: int) -> dict[str, int]:
    row = db.execute(
        select(*[_column(name) for name in COUNTER_NAMES]).where(Store.id == store_id)
    ).one_or_none()
    if row is None:
        raise NotFoundError('Store not found', store_id=store_id)
    return dict(zip(COUNTER_NAMES, row))


def _actual_value(db: Session, counter_name: str, store_id: int) -> int:
    return int(db.execute(select(_actual_subquery(counter_name, store_id))).scalar_one())


def counter_cache_stats(db: Session, store_id: int) -> dict[str, dict]:
    cached = _cached_values(db, store_id)
    stats = {}
    for name in COUNTER_NAMES:
        actual = _actual_value(db, name, store_id)
        stats[name] = {'cached': cached[name], 'actual': actual, 'consistent': cached[name] == actual}
    return stats


def check_counter_cache_integrity(db: Session, store_id: int) -> list[CounterMismatch]:
    return [
        CounterMismatch(counter_name=name, cached_value=row['cached'], actual_value=row['actual'])
        for name, row in counter_cache_stats(db, store_id).items()
        if not row['consistent']
    ]


def _fix_once(db: Session, store_id: int) -> list[CounterMismatch]:
    fixed: list[CounterMismatch] = []
    with atomic(db):
        acquire_store_reconcile_lock(db, store_id)
        # Read again under the lock; an earlier check result may already be stale.
        cached = _cached_values(db, store_id)
        for name in COUNTER_NAMES:
            actual = _actual_value(db, name, store_id)
            if cached[name] == actual:
                continue
            column = _column(name)
            with translate_lock_errors('store counters', store_id=store_id):
                db.execute(
                    update(Store)
                    .where(Store.id == store_id)
                    .values({column: _actual_subquery(name, store_id)})
                    .execution_options(synchronize_session='fetch')
                )
            fixed.append(CounterMismatch(counter_name=name, cached_value=cached[name], actual_value=actual))
    return fixed


def fix_counter_cache_integrity(
    db: Session,
    store_id: int,
    *,
    retries: int | None = None,
    backoff_seconds: float | None = None,
) -> list[CounterMismatch]:
    """Overwrite drifted counters with live aggregates; returns what was corrected.

    Lock timeouts and deadlocks are retried a bounded number of times; the
    fix is idempotent. The last error propagates.
    """
    attempts = (retries if retries is not None else settings.reconcile_lock_retries) + 1
    backoff = backoff_seconds if backoff_seconds is not None else settings.reconcile_retry_backoff_seconds
    for attempt in range(1, attempts + 1):
        try:
            fixed = _fix_once(db, store_id)
        except (LockTimeoutError, ConcurrentModificationError) as exc:
            if attempt == attempts:
                raise
            logger.info(
                'Reconcile lock busy for store %s (%s), retry %s/%s',
                store_id,
                exc.message,
                attempt,
                attempts - 1,
            )
            time.sleep(backoff * attempt)
            continue
        for mismatch in fixed:
            logger.warning(
                'Counter cache drift fixed for store %s: %s cached=%s actual=%s',
                store_id,
                mismatch.counter_name,
                mismatch.cached_value,
                mismatch.actual_value,
            )
        return fixed
    return []


def _store_ids(db: Session, *, active_only: bool) -> list[int]:
    query = select(Store.id).order_by(Store.id.asc())
    if active_only:
        query = query.where(Store.active.is_(True))
    return list(db.execute(query).scalars().all())


def check_all_stores(db: Session, *, active_only: bool = False) -> dict[int, list[CounterMismatch]]:
    results = {}
    for store_id in _store_ids(db, active_only=active_only):
        mismatches = check_counter_cache_integrity(db, store_id)
        if mismatches:
            results[store_id] = mismatches
    return results


def fix_all_stores(db: Session, *, active_only: bool = False) -> dict[int, list[CounterMismatch]]:
    results = {}
    owns_transaction = not db.in_transaction()
    store_ids = _store_ids(db, active_only=active_only)
    if owns_transaction:
        # Each store is fixed in its own committed unit.
        db.rollback()
    for store_id in store_ids:
        fixed = fix_counter_cache_integrity(db, store_id)
        if fixed:
            results[store_id] = fixed
    return results


def check_ledger_consistency(db: Session, store_id: int) -> list[LedgerDrift]:
    ledger = {
        item_id: (int(qty or 0), int(reserved or 0))
        for item_id, qty, reserved in db.execute(
            select(
                StockLedgerEntry.item_id,
                func.sum(StockLedgerEntry.delta),
                func.sum(StockLedgerEntry.reserved_delta),
            )
            .where(StockLedgerEntry.store_id == store_id)
            .group_by(StockLedgerEntry.item_id)
        ).all()
    }
    rows = db.execute(select(StoreInventory).where(StoreInventory.store_id == store_id)).scalars().all()
    drifts = []
    for row in rows:
        ledger_qty, ledger_reserved = ledger.get(row.item_id, (0, 0))
        if ledger_qty != row.quantity or ledger_reserved != row.reserved_quantity:
            drifts.append(
                LedgerDrift(
                    item_id=row.item_id,
                    quantity=row.quantity,
                    ledger_quantity=ledger_qty,
                    reserved_quantity=row.reserved_quantity,
                    ledger_reserved_quantity=ledger_reserved,
                )
            )
    return drifts
