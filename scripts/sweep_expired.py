#!/usr/bin/env python3
"""Delete expired refresh tokens, sessions, reset tokens and rate-limit windows.

Intended for cron or a systemd timer:

    */15 * * * * cd /srv/storefront-auth && python scripts/sweep_expired.py
"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep() -> dict[str, int]:
    from storefront_auth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await runtime.auth.sweep_expired()
    finally:
        await runtime.close()


def main():
    try:
        counts = asyncio.run(sweep())
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    for name, count in sorted(counts.items()):
        print(f"{name}: {count}")


if __name__ == "__main__":
    main()
