"""List proposals whose effects failed to execute, for manual reconciliation.

For each EXECUTION_FAILED proposal, prints the latest execution log: which
effects were applied, which one failed and why, and how many were never
attempted. Read-only; changes nothing.

Usage:
    python scripts/list_failed_executions.py

    # Only one band:
    python scripts/list_failed_executions.py --band <band_id>
"""

from __future__ import annotations

import asyncio
import os
import sys

from bandgov.db.engine import create_engine, get_session
from bandgov.db.repository import Repository


async def main(band_id: str | None = None) -> int:
    """Print failed executions. Returns how many proposals need attention."""
    db_url = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///bandgov.db")
    engine = create_engine(db_url)

    async with get_session(engine) as session:
        repo = Repository(session)
        failed = await repo.get_proposals_by_status("EXECUTION_FAILED")
        if band_id:
            failed = [p for p in failed if p.band_id == band_id]

        if not failed:
            print("No failed executions.")
            await engine.dispose()
            return 0

        for proposal in failed:
            log = await repo.get_latest_execution_log(proposal.id)
            print(f"\n[{proposal.id[:8]}] {proposal.title!r} band={proposal.band_id}")
            if log is None:
                print("  (no execution log)")
                continue

            submitted = log.effects_submitted or []
            attempted = log.effects_executed or []
            applied = [e for e in attempted if "error" not in e]
            print(f"  status={log.status} at={log.created_at:%Y-%m-%d %H:%M} "
                  f"by={log.executed_by_id or 'system'}")
            for entry in attempted:
                marker = "FAILED " if "error" in entry else "applied"
                print(f"    {marker} {entry.get('type')}: "
                      f"{entry.get('error') or entry.get('result')}")
            remaining = submitted[len(attempted):]
            for entry in remaining:
                print(f"    pending {entry.get('type')}: {entry.get('payload')}")
            print(f"  applied={len(applied)} not_attempted={len(remaining)} "
                  f"error={log.error_message!r}")

    await engine.dispose()
    print(f"\n{len(failed)} proposal(s) need manual reconciliation.")
    return len(failed)


if __name__ == "__main__":
    band = None
    if "--band" in sys.argv:
        idx = sys.argv.index("--band")
        if idx + 1 >= len(sys.argv):
            print("--band requires a band id", file=sys.stderr)
            sys.exit(2)
        band = sys.argv[idx + 1]
    count = asyncio.run(main(band))
    sys.exit(1 if count else 0)
