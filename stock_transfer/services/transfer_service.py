from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from stock_transfer.config import settings
from stock_transfer.db import atomic
from stock_transfer.errors import InsufficientAvailableStockError, InvalidStateError, NotFoundError, ValidationError
from stock_transfer.models import InterStoreTransfer, LedgerOperation, Store, TransferPriority, TransferStatus
from stock_transfer.services.audit_service import log_audit
from stock_transfer.services.batch_allocator import AllocationPlan, apply_plan, plan_allocation, revalidate_plan
from stock_transfer.services.counter_cache_service import (
    PENDING_INCOMING_TRANSFERS_COUNT,
    PENDING_OUTGOING_TRANSFERS_COUNT,
    bump_counter,
    deferred_counter_updates,
)
from stock_transfer.services.ledger_service import (
    apply_movement,
    apply_release,
    apply_reservation,
    ensure_item,
    lock_or_create_inventory,
)
from stock_transfer.services.locking import lock_inventories, lock_inventory, lock_transfer
from stock_transfer.services.notification_service import (
    TRANSFER_APPROVED,
    TRANSFER_CANCELLED,
    TRANSFER_COMPLETED,
    TRANSFER_REJECTED,
    Notifier,
    dispatch_on_commit,
)

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 1000

ALLOWED_TRANSITIONS = {
    TransferStatus.PENDING: {TransferStatus.APPROVED, TransferStatus.REJECTED, TransferStatus.CANCELLED},
    TransferStatus.APPROVED: {TransferStatus.IN_TRANSIT, TransferStatus.CANCELLED},
    TransferStatus.IN_TRANSIT: {TransferStatus.COMPLETED},
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive values for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _clean_reason(reason: str | None, *, field: str = 'reason') -> str:
    clean = (reason or '').strip()
    if not clean:
        raise ValidationError(f'A {field} is required', field=field)
    if len(clean) > MAX_REASON_LENGTH:
        raise ValidationError(
            f'The {field} cannot exceed {MAX_REASON_LENGTH} characters',
            field=field,
            length=len(clean),
        )
    return clean


def _ensure_active_store(db: Session, store_id: int) -> Store:
    store = db.get(Store, store_id)
    if not store:
        raise NotFoundError('Store not found', store_id=store_id)
    if not store.active:
        raise ValidationError('Store is inactive', store_id=store_id)
    return store


def can_transition(current: TransferStatus, target: TransferStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def _require_transition(transfer: InterStoreTransfer, target: TransferStatus) -> None:
    current = transfer.status
    if not can_transition(current, target):
        raise InvalidStateError(
            f'Cannot move transfer from {current.value} to {target.value}',
            transfer_id=transfer.id,
            current_status=current.value,
            attempted_status=target.value,
        )


def _transition(transfer: InterStoreTransfer, target: TransferStatus) -> TransferStatus:
    _require_transition(transfer, target)
    current = transfer.status
    transfer.status = target
    return current


def _lock_existing(db: Session, transfer_id: int) -> InterStoreTransfer:
    transfer = lock_transfer(db, transfer_id)
    if not transfer:
        raise NotFoundError('Transfer not found', transfer_id=transfer_id)
    return transfer


def _adjust_pending_counters(db: Session, transfer: InterStoreTransfer, delta: int) -> None:
    bump_counter(db, store_id=transfer.source_store_id, counter_name=PENDING_OUTGOING_TRANSFERS_COUNT, delta=delta)
    bump_counter(
        db,
        store_id=transfer.destination_store_id,
        counter_name=PENDING_INCOMING_TRANSFERS_COUNT,
        delta=delta,
    )


def _release_reservation(db: Session, transfer: InterStoreTransfer) -> None:
    row = lock_inventory(db, store_id=transfer.source_store_id, item_id=transfer.item_id)
    if row is None:
        raise InvalidStateError(
            'Source inventory for the reservation no longer exists',
            transfer_id=transfer.id,
            store_id=transfer.source_store_id,
            item_id=transfer.item_id,
        )
    apply_release(
        db,
        row,
        quantity=transfer.quantity,
        reference=f'transfer:{transfer.id}',
        transfer_id=transfer.id,
    )


def _payload(transfer: InterStoreTransfer, actor_id: int | None, **extra) -> dict:
    payload = {
        'transfer_id': transfer.id,
        'source_store_id': transfer.source_store_id,
        'destination_store_id': transfer.destination_store_id,
        'item_id': transfer.item_id,
        'quantity': transfer.quantity,
        'status': transfer.status.value,
        'priority': transfer.priority.value,
        'actor_id': actor_id,
    }
    payload.update(extra)
    return payload


def create_transfer(
    db: Session,
    *,
    source_store_id: int,
    destination_store_id: int,
    item_id: int,
    quantity: int,
    requested_by_id: int,
    reason: str,
    priority: TransferPriority = TransferPriority.NORMAL,
    notes: str | None = None,
    requested_delivery_date: date | None = None,
) -> InterStoreTransfer:
    if source_store_id == destination_store_id:
        raise ValidationError(
            'Source and destination stores must differ',
            source_store_id=source_store_id,
            destination_store_id=destination_store_id,
        )
    if quantity <= 0:
        raise ValidationError('Transfer quantity must be greater than zero', quantity=quantity)
    clean_reason = _clean_reason(reason)

    with atomic(db), deferred_counter_updates(db):
        _ensure_active_store(db, source_store_id)
        _ensure_active_store(db, destination_store_id)
        ensure_item(db, item_id)

        row = lock_inventory(db, store_id=source_store_id, item_id=item_id)
        available = row.available_quantity if row is not None else 0
        if available < quantity:
            raise InsufficientAvailableStockError(
                'Insufficient available stock at the source store',
                store_id=source_store_id,
                item_id=item_id,
                available=available,
                requested=quantity,
            )

        transfer = InterStoreTransfer(
            source_store_id=source_store_id,
            destination_store_id=destination_store_id,
            item_id=item_id,
            quantity=quantity,
            status=TransferStatus.PENDING,
            priority=priority,
            requested_by_id=requested_by_id,
            reason=clean_reason,
            notes=notes.strip() if notes and notes.strip() else None,
            requested_delivery_date=requested_delivery_date,
            requested_at=_now(),
        )
        db.add(transfer)
        db.flush()

        apply_reservation(
            db,
            row,
            quantity=quantity,
            reference=f'transfer:{transfer.id}',
            transfer_id=transfer.id,
        )
        _adjust_pending_counters(db, transfer, 1)
        log_audit(
            db,
            actor_id=requested_by_id,
            action='TRANSFER_REQUESTED',
            transfer_id=transfer.id,
            metadata={
                'source_store_id': source_store_id,
                'destination_store_id': destination_store_id,
                'item_id': item_id,
                'quantity': quantity,
                'priority': priority.value,
            },
        )

    logger.info(
        'Transfer %s requested: %s x item %s from store %s to store %s',
        transfer.id,
        quantity,
        item_id,
        source_store_id,
        destination_store_id,
    )
    return transfer


def approve_transfer(
    db: Session,
    *,
    transfer_id: int,
    approver_id: int,
    notifier: Notifier | None = None,
) -> InterStoreTransfer:
    with atomic(db), deferred_counter_updates(db):
        transfer = _lock_existing(db, transfer_id)
        _require_transition(transfer, TransferStatus.APPROVED)
        if approver_id == transfer.requested_by_id and not settings.allow_self_approval:
            raise ValidationError(
                'A transfer cannot be approved by its requester',
                transfer_id=transfer_id,
                approver_id=approver_id,
            )

        row = lock_inventory(db, store_id=transfer.source_store_id, item_id=transfer.item_id)
        reserved = row.reserved_quantity if row is not None else 0
        if reserved < transfer.quantity:
            raise InvalidStateError(
                'Source reservation no longer covers the transfer',
                transfer_id=transfer_id,
                reserved=reserved,
                required=transfer.quantity,
            )

        _transition(transfer, TransferStatus.APPROVED)
        transfer.approved_by_id = approver_id
        transfer.approved_at = _now()
        _adjust_pending_counters(db, transfer, -1)
        log_audit(db, actor_id=approver_id, action='TRANSFER_APPROVED', transfer_id=transfer.id)

    logger.info('Transfer %s approved by %s', transfer.id, approver_id)
    dispatch_on_commit(db, notifier, TRANSFER_APPROVED, _payload(transfer, approver_id))
    return transfer


def reject_transfer(
    db: Session,
    *,
    transfer_id: int,
    approver_id: int,
    reason: str,
    notifier: Notifier | None = None,
) -> InterStoreTransfer:
    clean_reason = _clean_reason(reason, field='rejection reason')
    with atomic(db), deferred_counter_updates(db):
        transfer = _lock_existing(db, transfer_id)
        _transition(transfer, TransferStatus.REJECTED)
        _release_reservation(db, transfer)
        transfer.approved_by_id = approver_id
        transfer.cancellation_reason = clean_reason
        transfer.cancelled_at = _now()
        _adjust_pending_counters(db, transfer, -1)
        log_audit(
            db,
            actor_id=approver_id,
            action='TRANSFER_REJECTED',
            transfer_id=transfer.id,
            metadata={'reason': clean_reason},
        )

    logger.info('Transfer %s rejected by %s', transfer.id, approver_id)
    dispatch_on_commit(db, notifier, TRANSFER_REJECTED, _payload(transfer, approver_id, reason=clean_reason))
    return transfer


def execute_transfer(
    db: Session,
    *,
    transfer_id: int,
    plan: AllocationPlan | None = None,
    notifier: Notifier | None = None,
) -> InterStoreTransfer:
    """Ship an approved transfer and receive it at the destination in one unit.

    The batch plan is made from a plain read (or supplied by the caller from an
    earlier preview). Inside the unit every planned batch is re-read under lock;
    if any line is no longer covered the whole execution fails with
    ``ConcurrentModificationError`` and the transfer stays approved.
    """
    owns_transaction = not db.in_transaction()
    transfer = get_transfer(db, transfer_id=transfer_id)
    if transfer.status != TransferStatus.APPROVED:
        raise InvalidStateError(
            f'Cannot execute a transfer in status {transfer.status.value}',
            transfer_id=transfer_id,
            current_status=transfer.status.value,
            attempted_status=TransferStatus.IN_TRANSIT.value,
        )
    if plan is None:
        plan = plan_allocation(
            db,
            store_id=transfer.source_store_id,
            item_id=transfer.item_id,
            quantity=transfer.quantity,
        )
    elif (plan.store_id, plan.item_id, plan.quantity) != (
        transfer.source_store_id,
        transfer.item_id,
        transfer.quantity,
    ):
        raise ValidationError('Allocation plan does not match the transfer', transfer_id=transfer_id)
    if owns_transaction:
        # Close the planning read so the write unit below commits on its own.
        db.rollback()

    with atomic(db), deferred_counter_updates(db):
        transfer = _lock_existing(db, transfer_id)
        _transition(transfer, TransferStatus.IN_TRANSIT)
        source_key = (transfer.source_store_id, transfer.item_id)
        destination_key = (transfer.destination_store_id, transfer.item_id)
        rows = lock_inventories(db, [source_key, destination_key])

        source = rows[source_key]
        if source is None or source.reserved_quantity < transfer.quantity:
            raise InvalidStateError(
                'Source reservation no longer covers the transfer',
                transfer_id=transfer_id,
                reserved=source.reserved_quantity if source is not None else 0,
                required=transfer.quantity,
            )
        destination = rows[destination_key]
        if destination is None:
            destination = lock_or_create_inventory(
                db,
                store_id=transfer.destination_store_id,
                item_id=transfer.item_id,
            )

        locked_batches = revalidate_plan(db, plan)
        reference = f'transfer:{transfer.id}'
        transfer.shipped_at = _now()
        apply_release(db, source, quantity=transfer.quantity, reference=reference, transfer_id=transfer.id)
        apply_movement(
            db,
            source,
            delta=-transfer.quantity,
            operation_type=LedgerOperation.TRANSFER_COMMIT,
            reference=reference,
            transfer_id=transfer.id,
        )
        apply_movement(
            db,
            destination,
            delta=transfer.quantity,
            operation_type=LedgerOperation.TRANSFER_COMMIT,
            reference=reference,
            transfer_id=transfer.id,
        )
        apply_plan(
            db,
            plan,
            to_store_id=transfer.destination_store_id,
            transfer_id=transfer.id,
            locked_batches=locked_batches,
        )

        _transition(transfer, TransferStatus.COMPLETED)
        transfer.completed_at = _now()
        log_audit(
            db,
            actor_id=transfer.approved_by_id,
            action='TRANSFER_COMPLETED',
            transfer_id=transfer.id,
            metadata={
                'batches': [
                    {'batch_id': line.batch_id, 'lot_code': line.lot_code, 'quantity': line.quantity}
                    for line in plan.lines
                ],
            },
        )

    logger.info(
        'Transfer %s completed: %s x item %s moved in %s batch line(s)',
        transfer.id,
        transfer.quantity,
        transfer.item_id,
        len(plan.lines),
    )
    dispatch_on_commit(db, notifier, TRANSFER_COMPLETED, _payload(transfer, transfer.approved_by_id))
    return transfer


def cancel_transfer(
    db: Session,
    *,
    transfer_id: int,
    reason: str,
    actor_id: int | None = None,
    notifier: Notifier | None = None,
) -> InterStoreTransfer:
    clean_reason = _clean_reason(reason, field='cancellation reason')
    with atomic(db), deferred_counter_updates(db):
        transfer = _lock_existing(db, transfer_id)
        previous = _transition(transfer, TransferStatus.CANCELLED)
        _release_reservation(db, transfer)
        transfer.cancellation_reason = clean_reason
        transfer.cancelled_at = _now()
        if previous == TransferStatus.PENDING:
            _adjust_pending_counters(db, transfer, -1)
        log_audit(
            db,
            actor_id=actor_id,
            action='TRANSFER_CANCELLED',
            transfer_id=transfer.id,
            metadata={'reason': clean_reason, 'previous_status': previous.value},
        )

    logger.info('Transfer %s cancelled (was %s)', transfer.id, previous.value)
    dispatch_on_commit(db, notifier, TRANSFER_CANCELLED, _payload(transfer, actor_id, reason=clean_reason))
    return transfer


def get_transfer(db: Session, *, transfer_id: int) -> InterStoreTransfer:
    transfer = db.get(InterStoreTransfer, transfer_id)
    if not transfer:
        raise NotFoundError('Transfer not found', transfer_id=transfer_id)
    return transfer


def list_transfers(
    db: Session,
    *,
    store_id: int | None = None,
    status: TransferStatus | None = None,
    limit: int = 100,
) -> list[InterStoreTransfer]:
    query = select(InterStoreTransfer)
    if store_id is not None:
        query = query.where(
            or_(
                InterStoreTransfer.source_store_id == store_id,
                InterStoreTransfer.destination_store_id == store_id,
            )
        )
    if status is not None:
        query = query.where(InterStoreTransfer.status == status)
    query = query.order_by(InterStoreTransfer.requested_at.desc(), InterStoreTransfer.id.desc()).limit(limit)
    return list(db.execute(query).scalars().all())


def store_transfer_stats(db: Session, *, store_id: int, since: datetime | None = None) -> dict:
    query = select(InterStoreTransfer).where(
        or_(
            InterStoreTransfer.source_store_id == store_id,
            InterStoreTransfer.destination_store_id == store_id,
        )
    )
    if since is not None:
        query = query.where(InterStoreTransfer.requested_at >= since)
    transfers = db.execute(query).scalars().all()

    stats = {
        'outgoing_count': 0,
        'incoming_count': 0,
        'outgoing_completed': 0,
        'incoming_completed': 0,
        'pending_outgoing': 0,
        'pending_incoming': 0,
        'average_processing_seconds': None,
    }
    durations = []
    for transfer in transfers:
        direction = 'outgoing' if transfer.source_store_id == store_id else 'incoming'
        stats[f'{direction}_count'] += 1
        if transfer.status == TransferStatus.PENDING:
            stats[f'pending_{direction}'] += 1
        if transfer.status == TransferStatus.COMPLETED:
            stats[f'{direction}_completed'] += 1
            if transfer.completed_at and transfer.requested_at:
                elapsed = _as_utc(transfer.completed_at) - _as_utc(transfer.requested_at)
                durations.append(elapsed.total_seconds())
    if durations:
        stats['average_processing_seconds'] = sum(durations) / len(durations)
    return stats


def preview_allocation(db: Session, *, transfer_id: int) -> AllocationPlan:
    transfer = get_transfer(db, transfer_id=transfer_id)
    return plan_allocation(
        db,
        store_id=transfer.source_store_id,
        item_id=transfer.item_id,
        quantity=transfer.quantity,
    )
