from __future__ import annotations

import zlib
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from sqlalchemy import Select, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from stock_transfer.config import settings
from stock_transfer.errors import ConcurrentModificationError, LockTimeoutError
from stock_transfer.models import Batch, InterStoreTransfer, Store, StoreInventory

LOCK_NOT_AVAILABLE = '55P03'
DEADLOCK_DETECTED = '40P01'


def _is_postgres(db: Session) -> bool:
    return db.get_bind().dialect.name == 'postgresql'


def _sqlstate(exc: OperationalError) -> str | None:
    orig = exc.orig
    return getattr(orig, 'sqlstate', None) or getattr(orig, 'pgcode', None)


def apply_lock_timeout(db: Session, timeout_ms: int | None = None) -> None:
    """Bound row-lock waits for the rest of the current transaction."""
    if not _is_postgres(db):
        return
    value = timeout_ms if timeout_ms is not None else settings.lock_timeout_ms
    db.execute(select(func.set_config('lock_timeout', f'{int(value)}ms', True)))


@contextmanager
def translate_lock_errors(target: str, **details) -> Iterator[None]:
    """Turn Postgres lock failures into typed errors; anything else propagates as is."""
    try:
        yield
    except OperationalError as exc:
        code = _sqlstate(exc)
        if code == LOCK_NOT_AVAILABLE:
            raise LockTimeoutError(f'Timed out waiting for lock on {target}', **details) from exc
        if code == DEADLOCK_DETECTED:
            raise ConcurrentModificationError(f'Deadlock detected while locking {target}', **details) from exc
        raise


def _locked(db: Session, stmt: Select, *, target: str, **details):
    apply_lock_timeout(db)
    with translate_lock_errors(target, **details):
        return db.execute(stmt.with_for_update().execution_options(populate_existing=True))


def lock_inventory(db: Session, *, store_id: int, item_id: int) -> StoreInventory | None:
    return _locked(
        db,
        select(StoreInventory).where(StoreInventory.store_id == store_id, StoreInventory.item_id == item_id),
        target='store inventory',
        store_id=store_id,
        item_id=item_id,
    ).scalar_one_or_none()


def lock_inventories(db: Session, pairs: Iterable[tuple[int, int]]) -> dict[tuple[int, int], StoreInventory | None]:
    # Fixed (store_id, item_id) order so two transfers crossing the same stores cannot deadlock.
    return {
        (store_id, item_id): lock_inventory(db, store_id=store_id, item_id=item_id)
        for store_id, item_id in sorted(set(pairs))
    }


def lock_transfer(db: Session, transfer_id: int) -> InterStoreTransfer | None:
    return _locked(
        db,
        select(InterStoreTransfer).where(InterStoreTransfer.id == transfer_id),
        target='transfer',
        transfer_id=transfer_id,
    ).scalar_one_or_none()


def lock_batches(db: Session, batch_ids: Iterable[int]) -> dict[int, Batch]:
    ids = sorted(set(batch_ids))
    if not ids:
        return {}
    rows = _locked(
        db,
        select(Batch).where(Batch.id.in_(ids)).order_by(Batch.id.asc()),
        target='batches',
        batch_ids=ids,
    ).scalars().all()
    return {row.id: row for row in rows}


def acquire_store_reconcile_lock(db: Session, store_id: int) -> None:
    """Per-store mutex held until the current transaction ends.

    Postgres uses a transaction-scoped advisory lock so reconciliation never
    blocks ordinary writers on the store row; other databases fall back to
    locking the store row itself.
    """
    if _is_postgres(db):
        apply_lock_timeout(db)
        key = zlib.crc32(f'counter-cache:{store_id}'.encode('utf-8'))
        with translate_lock_errors('store reconcile lock', store_id=store_id):
            db.execute(select(func.pg_advisory_xact_lock(key)))
        return
    _locked(db, select(Store.id).where(Store.id == store_id), target='store', store_id=store_id)
