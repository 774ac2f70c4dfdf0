from __future__ import annotations

import asyncio
import json

from maestro.core.logging import configure_logging
from maestro.persistence.db import dispose_engine, get_session_factory
from maestro.services.container import build_services


async def sweep() -> None:
    configure_logging()
    services = build_services(get_session_factory())
    try:
        report = await services.retention.execute_data_deletion()
    finally:
        await dispose_engine()
    print(json.dumps(report.to_dict(), sort_keys=True))


if __name__ == "__main__":
    asyncio.run(sweep())
