from __future__ import annotations

import logging
from functools import lru_cache
from typing import Protocol

from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session, SessionTransaction

from stock_transfer.config import settings

logger = logging.getLogger(__name__)

TRANSFER_APPROVED = 'transfer.approved'
TRANSFER_REJECTED = 'transfer.rejected'
TRANSFER_COMPLETED = 'transfer.completed'
TRANSFER_CANCELLED = 'transfer.cancelled'

_PENDING_NOTIFICATIONS = 'pending_notifications'


class Notifier(Protocol):
    def notify(self, event: str, payload: dict) -> None: ...


class LoggingNotifier:
    def notify(self, event: str, payload: dict) -> None:
        logger.info('notification %s %s', event, payload)


class NullNotifier:
    def notify(self, event: str, payload: dict) -> None:
        return None


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    backend = settings.notification_backend.strip().lower()
    if backend == 'none':
        return NullNotifier()
    return LoggingNotifier()


def dispatch(notifier: Notifier | None, event: str, payload: dict) -> None:
    """Fire-and-forget delivery after the transition has committed.

    The transition already happened, so a failing dispatcher is logged and
    never turned into an error for the caller, and never retried here.
    """
    target = notifier if notifier is not None else get_notifier()
    try:
        target.notify(event, payload)
    except Exception:
        logger.exception('Notification dispatch failed for %s (transfer %s)', event, payload.get('transfer_id'))


def _send_pending(session: Session) -> None:
    # after_commit also fires on SAVEPOINT release; wait for the outermost commit.
    if session.get_nested_transaction() is not None:
        return
    for notifier, event_name, payload in session.info.pop(_PENDING_NOTIFICATIONS, []):
        dispatch(notifier, event_name, payload)


def _drop_pending(session: Session, previous_transaction: SessionTransaction) -> None:
    if previous_transaction.parent is None and session.info.pop(_PENDING_NOTIFICATIONS, None):
        logger.info('Dropped queued notifications; the transaction rolled back')


def dispatch_on_commit(db: Session, notifier: Notifier | None, event_name: str, payload: dict) -> None:
    """Dispatch once the caller's transaction commits.

    With no transaction open the unit has already committed and delivery is
    immediate. Otherwise the notification waits for the outermost commit and is
    dropped if that transaction rolls back.
    """
    if not db.in_transaction():
        dispatch(notifier, event_name, payload)
        return
    if not sa_event.contains(db, 'after_commit', _send_pending):
        sa_event.listen(db, 'after_commit', _send_pending)
        sa_event.listen(db, 'after_soft_rollback', _drop_pending)
    db.info.setdefault(_PENDING_NOTIFICATIONS, []).append((notifier, event_name, payload))
