"""CLI helper for pushing locally queued bale and app-state writes to Supabase."""

from __future__ import annotations

import sys
from typing import Dict

from archery_core.store import SessionPersistence


def _format_summary(stats: Dict[str, object]) -> str:
    synced = stats.get("synced", 0)
    remaining = stats.get("remaining", 0)
    errors = stats.get("errors", [])
    lines = [f"Pending writes: {synced} synced, {remaining} remaining"]
    if isinstance(errors, list):
        for item in errors:
            lines.append(f"  - {item}")
    return "\n".join(lines)


def main() -> int:
    persistence = SessionPersistence()
    try:
        summary = persistence.sync_pending()
    except RuntimeError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    print(_format_summary(summary))
    return 1 if summary.get("errors") else 0


if __name__ == "__main__":
    raise SystemExit(main())
