"""
Run one reconciliation sweep and print its summary. Meant for cron-style scheduling:
    */3 * * * * cd /srv/mintpad && python scripts/run_reconciliation.py
"""
import asyncio
import json
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "backend"))
from db_models import init_db  # type: ignore  # noqa: E402
from main import auth_settings, build_container  # type: ignore  # noqa: E402


async def main() -> int:
    container = build_container(auth_settings)
    await init_db(container.engine)
    try:
        summary = await container.sweeper.run_once()
    finally:
        await container.close()
    print(json.dumps(summary.as_dict(), indent=2))
    return 1 if summary.aborted else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
