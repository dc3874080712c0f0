# scripts/init_db.py
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


async def main() -> None:
    from db.session import build_engine, init_db_schema, shutdown_engine
    from utils.config import load_settings

    settings = load_settings()
    engine = build_engine(settings.db_url)
    try:
        await init_db_schema(engine)
    finally:
        await shutdown_engine(engine)
    print(f"DB schema created / ensured at {settings.db_url}")


if __name__ == "__main__":
    asyncio.run(main())
