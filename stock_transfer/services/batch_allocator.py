"""FEFO batch allocation with a FIFO tiebreak.

Planning only reads. Applying a plan happens later, inside the caller's atomic
unit, after ``revalidate_plan`` has re-read every planned batch under lock. A
plan that went stale in between is rejected, never silently re-planned.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stock_transfer.errors import ConcurrentModificationError, InsufficientBatchStockError, ValidationError
from stock_transfer.models import Batch, BatchMovement
from stock_transfer.services.locking import lock_batches


@dataclass(frozen=True)
class AllocationLine:
    batch_id: int
    lot_code: str
    expires_on: date | None
    quantity: int


@dataclass(frozen=True)
class AllocationPlan:
    store_id: int
    item_id: int
    quantity: int
    lines: tuple[AllocationLine, ...] = field(default_factory=tuple)
    tracked: bool = True

    @property
    def allocated_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)


def _naive_utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.min
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _fefo_key(batch: Batch) -> tuple:
    # No expiry sorts after every dated batch; equal expiry falls back to receipt order.
    created = _naive_utc(batch.created_at)
    if batch.expires_on is None:
        return (1, date.max, created, batch.id)
    return (0, batch.expires_on, created, batch.id)


def sort_fefo(batches: Iterable[Batch]) -> list[Batch]:
    return sorted(batches, key=_fefo_key)


def located_quantities(db: Session, *, store_id: int, batches: list[Batch]) -> dict[int, int]:
    """Quantity of each batch physically at ``store_id``.

    Origin stock, plus movements in, minus movements out (transfers and
    consumption alike).
    """
    ids = [batch.id for batch in batches]
    if not ids:
        return {}
    incoming = dict(
        db.execute(
            select(BatchMovement.batch_id, func.sum(BatchMovement.quantity))
            .where(BatchMovement.batch_id.in_(ids), BatchMovement.to_store_id == store_id)
            .group_by(BatchMovement.batch_id)
        ).all()
    )
    outgoing = dict(
        db.execute(
            select(BatchMovement.batch_id, func.sum(BatchMovement.quantity))
            .where(BatchMovement.batch_id.in_(ids), BatchMovement.from_store_id == store_id)
            .group_by(BatchMovement.batch_id)
        ).all()
    )
    result = {}
    for batch in batches:
        at_origin = batch.initial_quantity if batch.origin_store_id == store_id else 0
        result[batch.id] = at_origin + int(incoming.get(batch.id) or 0) - int(outgoing.get(batch.id) or 0)
    return result


def _item_has_batches(db: Session, item_id: int) -> bool:
    return db.execute(select(Batch.id).where(Batch.item_id == item_id).limit(1)).first() is not None


def plan_allocation(
    db: Session,
    *,
    store_id: int,
    item_id: int,
    quantity: int,
    skip_expired: bool = False,
    today: date | None = None,
) -> AllocationPlan:
    if quantity <= 0:
        raise ValidationError('Allocation quantity must be greater than zero', quantity=quantity)

    if not _item_has_batches(db, item_id):
        return AllocationPlan(store_id=store_id, item_id=item_id, quantity=quantity, tracked=False)

    query = select(Batch).where(Batch.item_id == item_id, Batch.quantity > 0)
    if skip_expired:
        cutoff = today or date.today()
        query = query.where((Batch.expires_on.is_(None)) | (Batch.expires_on >= cutoff))
    candidates = db.execute(query).scalars().all()
    located = located_quantities(db, store_id=store_id, batches=candidates)

    remaining = quantity
    lines: list[AllocationLine] = []
    for batch in sort_fefo(candidates):
        if remaining <= 0:
            break
        available = located.get(batch.id, 0)
        if available <= 0:
            continue
        take = min(available, remaining)
        lines.append(
            AllocationLine(batch_id=batch.id, lot_code=batch.lot_code, expires_on=batch.expires_on, quantity=take)
        )
        remaining -= take

    if remaining > 0:
        raise InsufficientBatchStockError(
            'Insufficient batch stock',
            store_id=store_id,
            item_id=item_id,
            requested=quantity,
            allocatable=quantity - remaining,
        )
    return AllocationPlan(store_id=store_id, item_id=item_id, quantity=quantity, lines=tuple(lines))


def revalidate_plan(db: Session, plan: AllocationPlan) -> dict[int, Batch]:
    """Lock the planned batches and confirm each line is still covered."""
    if not plan.tracked:
        if _item_has_batches(db, plan.item_id):
            raise ConcurrentModificationError(
                'Item started batch tracking after the plan was made',
                store_id=plan.store_id,
                item_id=plan.item_id,
            )
        return {}

    locked = lock_batches(db, [line.batch_id for line in plan.lines])
    located = located_quantities(db, store_id=plan.store_id, batches=list(locked.values()))
    stale = []
    for line in plan.lines:
        have = located.get(line.batch_id, 0)
        if line.batch_id not in locked or have < line.quantity:
            stale.append({'batch_id': line.batch_id, 'planned': line.quantity, 'located': have})
    if stale:
        raise ConcurrentModificationError(
            'Batch stock changed since the allocation was planned',
            store_id=plan.store_id,
            item_id=plan.item_id,
            stale_lines=stale,
        )
    return locked


def apply_plan(
    db: Session,
    plan: AllocationPlan,
    *,
    to_store_id: int | None,
    transfer_id: int | None = None,
    locked_batches: dict[int, Batch] | None = None,
) -> list[BatchMovement]:
    """Write one movement per plan line; ``to_store_id=None`` consumes the stock."""
    movements = []
    for line in plan.lines:
        movement = BatchMovement(
            batch_id=line.batch_id,
            from_store_id=plan.store_id,
            to_store_id=to_store_id,
            quantity=line.quantity,
            transfer_id=transfer_id,
        )
        db.add(movement)
        movements.append(movement)
        if to_store_id is None:
            batch = (locked_batches or {}).get(line.batch_id) or db.get(Batch, line.batch_id)
            # Emptied batches stay as zero-quantity history.
            batch.quantity -= line.quantity
    db.flush()
    return movements
