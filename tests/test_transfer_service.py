from __future__ import annotations

import unittest
from datetime import date
from unittest.mock import patch

from sqlalchemy import func, select

from stock_transfer.config import settings
from stock_transfer.errors import (
    ConcurrentModificationError,
    InsufficientAvailableStockError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from stock_transfer.models import (
    BatchMovement,
    InterStoreTransfer,
    LedgerOperation,
    StoreInventory,
    TransferPriority,
    TransferStatus,
)
from stock_transfer.services.audit_service import list_transfer_audit
from stock_transfer.services.batch_service import consume_stock, receive_stock
from stock_transfer.services.ledger_service import ledger_balance, record_movement
from stock_transfer.services.transfer_service import (
    approve_transfer,
    cancel_transfer,
    create_transfer,
    execute_transfer,
    get_transfer,
    list_transfers,
    preview_allocation,
    reject_transfer,
    store_transfer_stats,
)
from tests.helpers import DatabaseTestCase

REQUESTER = 100
APPROVER = 200


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def notify(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))


class ExplodingNotifier:
    def notify(self, event: str, payload: dict) -> None:
        raise RuntimeError('mail server down')


class TransferServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.source = self.add_store('SRC')
        self.destination = self.add_store('DST')
        self.item = self.add_item('SKU-1')
        self.early = receive_stock(
            self.db,
            store_id=self.source.id,
            item_id=self.item.id,
            quantity=30,
            expires_on=date(2030, 1, 1),
        )
        self.late = receive_stock(
            self.db,
            store_id=self.source.id,
            item_id=self.item.id,
            quantity=20,
            expires_on=date(2031, 1, 1),
        )
        self.notifier = RecordingNotifier()

    def _create(self, quantity: int, **kwargs) -> InterStoreTransfer:
        params = {
            'source_store_id': self.source.id,
            'destination_store_id': self.destination.id,
            'item_id': self.item.id,
            'quantity': quantity,
            'requested_by_id': REQUESTER,
            'reason': 'Restock for weekend',
        }
        params.update(kwargs)
        return create_transfer(self.db, **params)

    def _approved(self, quantity: int) -> InterStoreTransfer:
        transfer = self._create(quantity)
        return approve_transfer(self.db, transfer_id=transfer.id, approver_id=APPROVER, notifier=self.notifier)

    def _transfer_count(self) -> int:
        return int(self.db.execute(select(func.count(InterStoreTransfer.id))).scalar_one())

    def test_happy_path_moves_stock_and_batches(self) -> None:
        transfer = self._create(20, priority=TransferPriority.URGENT, notes='  ')
        self.assertEqual(transfer.status, TransferStatus.PENDING)
        self.assertIsNone(transfer.notes)
        self.assertEqual(self.inventory(self.source.id, self.item.id), (50, 20))
        self.assertEqual(self.counters(self.source.id)['pending_outgoing_transfers_count'], 1)
        self.assertEqual(self.counters(self.destination.id)['pending_incoming_transfers_count'], 1)

        approve_transfer(self.db, transfer_id=transfer.id, approver_id=APPROVER, notifier=self.notifier)
        self.assertEqual(self.counters(self.source.id)['pending_outgoing_transfers_count'], 0)
        self.assertEqual(self.counters(self.destination.id)['pending_incoming_transfers_count'], 0)

        done = execute_transfer(self.db, transfer_id=transfer.id, notifier=self.notifier)
        self.assertEqual(done.status, TransferStatus.COMPLETED)
        self.assertIsNotNone(done.shipped_at)
        self.assertIsNotNone(done.completed_at)
        self.assertEqual(self.inventory(self.source.id, self.item.id), (30, 0))
        self.assertEqual(self.inventory(self.destination.id, self.item.id), (20, 0))

        movements = self.db.execute(select(BatchMovement)).scalars().all()
        self.assertEqual(len(movements), 1)
        self.assertEqual(movements[0].batch_id, self.early.id)
        self.assertEqual(movements[0].quantity, 20)
        self.assertEqual(movements[0].to_store_id, self.destination.id)
        self.assertEqual(movements[0].transfer_id, transfer.id)

        self.assertEqual(ledger_balance(self.db, store_id=self.source.id, item_id=self.item.id), (30, 0))
        self.assertEqual(ledger_balance(self.db, store_id=self.destination.id, item_id=self.item.id), (20, 0))

        actions = [row['action'] for row in list_transfer_audit(self.db, transfer_id=transfer.id)]
        self.assertEqual(actions, ['TRANSFER_REQUESTED', 'TRANSFER_APPROVED', 'TRANSFER_COMPLETED'])
        self.db.commit()
        self.assertEqual([event for event, _ in self.notifier.events], ['transfer.approved', 'transfer.completed'])
        self.assertEqual(self.notifier.events[-1][1]['transfer_id'], transfer.id)

    def test_destination_row_is_created_with_default_safety_level(self) -> None:
        transfer = self._approved(5)
        execute_transfer(self.db, transfer_id=transfer.id, notifier=self.notifier)
        row = self.db.execute(
            select(StoreInventory).where(
                StoreInventory.store_id == self.destination.id,
                StoreInventory.item_id == self.item.id,
            )
        ).scalar_one()
        self.assertEqual(row.safety_stock_level, settings.default_safety_stock_level)
        self.assertEqual(self.counters(self.destination.id)['store_inventories_count'], 1)

    def test_transfer_spanning_batches_writes_one_movement_per_batch(self) -> None:
        transfer = self._approved(40)
        execute_transfer(self.db, transfer_id=transfer.id, notifier=self.notifier)
        lines = self.db.execute(
            select(BatchMovement.batch_id, BatchMovement.quantity).order_by(BatchMovement.id.asc())
        ).all()
        self.assertEqual([tuple(line) for line in lines], [(self.early.id, 30), (self.late.id, 10)])

    def test_insufficient_stock_persists_nothing(self) -> None:
        with self.assertRaises(InsufficientAvailableStockError) as ctx:
            self._create(60)
        self.assertEqual(ctx.exception.details['available'], 50)
        self.assertEqual(self._transfer_count(), 0)
        self.assertEqual(self.inventory(self.source.id, self.item.id), (50, 0))
        self.assertEqual(self.counters(self.source.id)['pending_outgoing_transfers_count'], 0)

    def test_second_request_cannot_reserve_the_same_stock(self) -> None:
        self._create(30)
        with self.assertRaises(InsufficientAvailableStockError):
            self._create(30)
        self.assertEqual(self._transfer_count(), 1)
        self.assertEqual(self.inventory(self.source.id, self.item.id), (50, 30))

    def test_request_validation(self) -> None:
        with self.assertRaises(ValidationError):
            self._create(5, destination_store_id=self.source.id)
        with self.assertRaises(ValidationError):
            self._create(0)
        with self.assertRaises(ValidationError):
            self._create(5, reason='   ')
        with self.assertRaises(ValidationError):
            self._create(5, reason='x' * 1001)
        with self.assertRaises(NotFoundError):
            self._create(5, destination_store_id=999999)
        closed = self.add_store('OLD', active=False)
        with self.assertRaises(ValidationError):
            self._create(5, destination_store_id=closed.id)
        self.assertEqual(self._transfer_count(), 0)

    def test_self_approval_is_rejected_unless_enabled(self) -> None:
        transfer = self._create(5)
        with self.assertRaises(ValidationError):
            approve_transfer(self.db, transfer_id=transfer.id, approver_id=REQUESTER, notifier=self.notifier)
        self.assertEqual(get_transfer(self.db, transfer_id=transfer.id).status, TransferStatus.PENDING)

        with patch.object(settings, 'allow_self_approval', True):
            approved = approve_transfer(
                self.db,
                transfer_id=transfer.id,
                approver_id=REQUESTER,
                notifier=self.notifier,
            )
        self.assertEqual(approved.status, TransferStatus.APPROVED)

    def test_execute_requires_approval(self) -> None:
        transfer = self._create(5)
        with self.assertRaises(InvalidStateError) as ctx:
            execute_transfer(self.db, transfer_id=transfer.id, notifier=self.notifier)
        self.assertEqual(ctx.exception.details['current_status'], 'PENDING')
        self.assertEqual(self.inventory(self.source.id, self.item.id), (50, 5))

    def test_completed_transfer_cannot_move_again(self) -> None:
        transfer = self._approved(5)
        execute_transfer(self.db, transfer_id=transfer.id, notifier=self.notifier)
        with self.assertRaises(InvalidStateError):
            approve_transfer(self.db, transfer_id=transfer.id, approver_id=APPROVER, notifier=self.notifier)
        with self.assertRaises(InvalidStateError) as ctx:
            cancel_transfer(self.db, transfer_id=transfer.id, reason='too late')
        self.assertEqual(ctx.exception.details['current_status'], 'COMPLETED')
        self.assertEqual(ctx.exception.details['attempted_status'], 'CANCELLED')

    def test_unknown_transfer_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            approve_transfer(self.db, transfer_id=424242, approver_id=APPROVER)
        with self.assertRaises(NotFoundError):
            execute_transfer(self.db, transfer_id=424242)
        with self.assertRaises(NotFoundError):
            cancel_transfer(self.db, transfer_id=424242, reason='gone')

    def test_cancel_pending_releases_reservation_and_counters(self) -> None:
        transfer = self._create(10)
        cancelled = cancel_transfer(
            self.db,
            transfer_id=transfer.id,
            reason='Ordered by mistake',
            actor_id=REQUESTER,
            notifier=self.notifier,
        )
        self.assertEqual(cancelled.status, TransferStatus.CANCELLED)
        self.assertEqual(cancelled.cancellation_reason, 'Ordered by mistake')
        self.assertEqual(self.inventory(self.source.id, self.item.id), (50, 0))
        self.assertEqual(self.counters(self.source.id)['pending_outgoing_transfers_count'], 0)
        self.assertEqual(self.counters(self.destination.id)['pending_incoming_transfers_count'], 0)
        self.db.commit()
        self.assertEqual([event for event, _ in self.notifier.events], ['transfer.cancelled'])

        with self.assertRaises(InvalidStateError):
            cancel_transfer(self.db, transfer_id=transfer.id, reason='again')

    def test_cancel_approved_leaves_pending_counters_alone(self) -> None:
        transfer = self._approved(10)
        cancel_transfer(self.db, transfer_id=transfer.id, reason='Destination closed', notifier=self.notifier)
        self.assertEqual(self.inventory(self.source.id, self.item.id), (50, 0))
        self.assertEqual(self.counters(self.source.id)['pending_outgoing_transfers_count'], 0)
        self.assertEqual(self.counters(self.destination.id)['pending_incoming_transfers_count'], 0)
        self.assertEqual(
            ledger_balance(self.db, store_id=self.source.id, item_id=self.item.id),
            self.inventory(self.source.id, self.item.id),
        )

    def test_reject_pending_releases_reservation(self) -> None:
        transfer = self._create(10)
        rejected = reject_transfer(
            self.db,
            transfer_id=transfer.id,
            approver_id=APPROVER,
            reason='Source needs the stock',
            notifier=self.notifier,
        )
        self.assertEqual(rejected.status, TransferStatus.REJECTED)
        self.assertEqual(rejected.cancellation_reason, 'Source needs the stock')
        self.assertEqual(self.inventory(self.source.id, self.item.id), (50, 0))
        self.assertEqual(self.counters(self.source.id)['pending_outgoing_transfers_count'], 0)
        self.db.commit()
        self.assertEqual([event for event, _ in self.notifier.events], ['transfer.rejected'])

    def test_reject_is_only_allowed_while_pending(self) -> None:
        transfer = self._approved(10)
        with self.assertRaises(InvalidStateError):
            reject_transfer(self.db, transfer_id=transfer.id, approver_id=APPROVER, reason='no')
        self.assertEqual(get_transfer(self.db, transfer_id=transfer.id).status, TransferStatus.APPROVED)

    def test_stale_plan_fails_execution_and_keeps_transfer_approved(self) -> None:
        transfer = self._approved(20)
        plan = preview_allocation(self.db, transfer_id=transfer.id)
        self.assertEqual([(line.batch_id, line.quantity) for line in plan.lines], [(self.early.id, 20)])

        consume_stock(self.db, store_id=self.source.id, item_id=self.item.id, quantity=25)
        movements_before = self.movement_count()

        with self.assertRaises(ConcurrentModificationError):
            execute_transfer(self.db, transfer_id=transfer.id, plan=plan, notifier=self.notifier)
        self.assertEqual(get_transfer(self.db, transfer_id=transfer.id).status, TransferStatus.APPROVED)
        self.assertEqual(self.inventory(self.source.id, self.item.id), (25, 20))
        self.assertEqual(self.movement_count(), movements_before)

        done = execute_transfer(self.db, transfer_id=transfer.id, notifier=self.notifier)
        self.assertEqual(done.status, TransferStatus.COMPLETED)
        self.assertEqual(self.inventory(self.source.id, self.item.id), (5, 0))

    def test_untracked_item_transfers_without_batch_movements(self) -> None:
        loose = self.add_item('SKU-LOOSE')
        record_movement(
            self.db,
            store_id=self.source.id,
            item_id=loose.id,
            delta=10,
            operation_type=LedgerOperation.RECEIVE,
        )
        transfer = self._create(4, item_id=loose.id)
        approve_transfer(self.db, transfer_id=transfer.id, approver_id=APPROVER, notifier=self.notifier)
        execute_transfer(self.db, transfer_id=transfer.id, notifier=self.notifier)
        self.assertEqual(self.inventory(self.destination.id, loose.id), (4, 0))
        self.assertEqual(self.movement_count(), 0)

    def test_failing_notifier_does_not_undo_the_transition(self) -> None:
        transfer = self._create(5)
        with self.assertLogs('stock_transfer.services.notification_service', level='ERROR'):
            approved = approve_transfer(
                self.db,
                transfer_id=transfer.id,
                approver_id=APPROVER,
                notifier=ExplodingNotifier(),
            )
            self.db.commit()
        self.assertEqual(approved.status, TransferStatus.APPROVED)

    def test_notifications_wait_for_the_callers_commit(self) -> None:
        transfer = self._create(5)
        self.assertEqual(self.inventory(self.source.id, self.item.id), (50, 5))
        approve_transfer(self.db, transfer_id=transfer.id, approver_id=APPROVER, notifier=self.notifier)
        self.assertEqual(self.notifier.events, [])

        self.db.rollback()
        self.assertEqual(self.notifier.events, [])
        self.assertEqual(get_transfer(self.db, transfer_id=transfer.id).status, TransferStatus.PENDING)

        approve_transfer(self.db, transfer_id=transfer.id, approver_id=APPROVER, notifier=self.notifier)
        self.assertEqual(self.notifier.events, [])
        self.db.commit()
        self.assertEqual([event for event, _ in self.notifier.events], ['transfer.approved'])

    def test_listing_and_stats(self) -> None:
        first = self._approved(5)
        execute_transfer(self.db, transfer_id=first.id, notifier=self.notifier)
        self._create(3)

        self.assertEqual(len(list_transfers(self.db, store_id=self.source.id)), 2)
        pending = list_transfers(self.db, store_id=self.destination.id, status=TransferStatus.PENDING)
        self.assertEqual(len(pending), 1)

        stats = store_transfer_stats(self.db, store_id=self.source.id)
        self.assertEqual(stats['outgoing_count'], 2)
        self.assertEqual(stats['outgoing_completed'], 1)
        self.assertEqual(stats['pending_outgoing'], 1)
        self.assertEqual(stats['incoming_count'], 0)
        self.assertIsNotNone(stats['average_processing_seconds'])

        incoming = store_transfer_stats(self.db, store_id=self.destination.id)
        self.assertEqual(incoming['incoming_count'], 2)
        self.assertEqual(incoming['pending_incoming'], 1)


if __name__ == '__main__':
    unittest.main()
