#!/usr/bin/env python3
"""
Diagnose a seller's scan state and scan lock, with recovery recommendations.

Usage: python scripts/diagnose_scan.py USER_ID [--force-unlock]
"""

import argparse
import asyncio
from datetime import datetime, timedelta
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from stocksync.config import settings
from stocksync.db.cursor_store import CursorStore
from stocksync.db.models import ScanStatus
from stocksync.db.session import AsyncSessionLocal
from stocksync.worker.scan_lock import ScanLockManager, lock_key


async def diagnose(user_id: int, force_unlock: bool) -> None:
    lock_manager = ScanLockManager()
    try:
        lock_info = await lock_manager.get_lock_info(user_id)
        if force_unlock and lock_info:
            await lock_manager.force_unlock(user_id)
    finally:
        await lock_manager.close()

    async with AsyncSessionLocal() as db:
        store = CursorStore(db)
        state = await store.get_scan_state(user_id)
        last_full_sync = await store.get_last_full_sync(user_id)

    print("Scan Diagnosis")
    print("==============")
    print(f"LOCK_KEY: {lock_key(user_id)}")
    print("")

    if not lock_info:
        print("Lock: none")
    else:
        print("Lock: present" + (" (cleared)" if force_unlock else ""))
        print(f"  run_id: {lock_info.get('run_id')}")
        print(f"  started_at: {lock_info.get('started_at')}")
        print(f"  ttl_seconds: {lock_info.get('ttl_seconds')}")
    print("")

    if state is None:
        print("Scan state: none (next /sync/next starts a new scan)")
    else:
        for key, value in state.to_dict().items():
            print(f"  {key}: {value}")
        print(f"  cursorIssuedAt: {state.cursor_issued_at}")
    print(f"Last full sync: {last_full_sync or 'never'}")

    print("")
    print("Recommendations")
    print("----------------")
    if state is not None and state.cursor_issued_at:
        age = datetime.utcnow() - state.cursor_issued_at
        if age > timedelta(seconds=settings.scan_cursor_ttl_seconds):
            print("- Stored cursor is stale; the next step restarts the scan.")
    if state is not None and state.status == ScanStatus.ACTIVE and state.total_known:
        remaining = max(0, state.total_known - state.processed_count)
        print(f"- Scan in progress, about {remaining} items left.")
    if lock_info and not force_unlock:
        print("- Lock held. If no step is running, rerun with --force-unlock.")
    if state is None or state.status == ScanStatus.COMPLETED:
        print("- No issues detected.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("user_id", type=int)
    parser.add_argument("--force-unlock", action="store_true")
    args = parser.parse_args()
    asyncio.run(diagnose(args.user_id, args.force_unlock))
