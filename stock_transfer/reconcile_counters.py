from __future__ import annotations

import argparse
import logging
import time

from sqlalchemy import select

from stock_transfer.config import settings
from stock_transfer.db import SessionLocal
from stock_transfer.models import Store
from stock_transfer.services.counter_cache_service import (
    CounterMismatch,
    check_all_stores,
    check_counter_cache_integrity,
    check_ledger_consistency,
    fix_all_stores,
    fix_counter_cache_integrity,
)

logger = logging.getLogger(__name__)


def _store_id_for_code(db, code: str) -> int:
    store_id = db.execute(select(Store.id).where(Store.code == code.strip())).scalar_one_or_none()
    if store_id is None:
        raise SystemExit(f'Unknown store code: {code}')
    return store_id


def reconcile(*, store_code: str | None, fix: bool, active_only: bool) -> dict[int, list[CounterMismatch]]:
    with SessionLocal() as db:
        if store_code:
            store_id = _store_id_for_code(db, store_code)
            if fix:
                db.rollback()
                found = fix_counter_cache_integrity(db, store_id)
            else:
                found = check_counter_cache_integrity(db, store_id)
            results = {store_id: found} if found else {}
            drifts = check_ledger_consistency(db, store_id)
            for drift in drifts:
                logger.warning(
                    'Ledger drift store=%s item=%s quantity=%s ledger=%s reserved=%s ledger_reserved=%s',
                    store_id,
                    drift.item_id,
                    drift.quantity,
                    drift.ledger_quantity,
                    drift.reserved_quantity,
                    drift.ledger_reserved_quantity,
                )
        elif fix:
            results = fix_all_stores(db, active_only=active_only)
        else:
            results = check_all_stores(db, active_only=active_only)
        db.commit()
    return results


def _print_results(results: dict[int, list[CounterMismatch]], *, fix: bool) -> None:
    verb = 'fixed' if fix else 'mismatched'
    for store_id, mismatches in sorted(results.items()):
        for mismatch in mismatches:
            print(
                f'store={store_id} {mismatch.counter_name} {verb}: '
                f'cached={mismatch.cached_value} actual={mismatch.actual_value}'
            )
    total = sum(len(mismatches) for mismatches in results.values())
    print(f'Counter cache {"fix" if fix else "check"} complete: stores={len(results)}, counters={total}')


def main() -> None:
    parser = argparse.ArgumentParser(description='Check or repair cached per-store counters.')
    parser.add_argument('command', choices=('check', 'fix'), help='Report drift only, or overwrite drifted counters.')
    parser.add_argument('--store-code', help='Limit to a single store by code.')
    parser.add_argument('--active-only', action='store_true', help='Skip inactive stores when scanning all stores.')
    parser.add_argument('--loop', action='store_true', help='Keep running on an interval instead of once.')
    parser.add_argument(
        '--interval',
        type=int,
        default=settings.reconcile_interval_seconds,
        help='Seconds between passes when --loop is set.',
    )
    args = parser.parse_args()

    logging.basicConfig(level=settings.log_level.upper(), format='%(asctime)s %(levelname)s %(name)s %(message)s')
    fix = args.command == 'fix'
    while True:
        results = reconcile(store_code=args.store_code, fix=fix, active_only=args.active_only)
        _print_results(results, fix=fix)
        if not args.loop:
            break
        time.sleep(max(1, args.interval))


if __name__ == '__main__':
    main()
