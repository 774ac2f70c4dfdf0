from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from maestro.core.config import get_settings
from maestro.core.logging import configure_logging
from maestro.persistence.db import dispose_engine, get_session_factory
from maestro.services.container import build_services


logger = logging.getLogger(__name__)


async def run_retention_sweep(ctx) -> dict:
    # Concurrent workers are serialized by the sweep lease; a skipped run reports lease_acquired=False.
    services = ctx["services"]
    report = await services.retention.execute_data_deletion()
    logger.info("retention_sweep_job job_id=%s report=%s", ctx.get("job_id"), report.to_dict())
    return report.to_dict()


async def _startup(ctx) -> None:
    configure_logging()
    # Fails fast without MASTER_ENCRYPTION_KEY: backups cannot be written without it.
    ctx["services"] = build_services(get_session_factory())


async def _shutdown(ctx) -> None:
    await dispose_engine()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.retention_queue_name
    max_tries = 1
    functions = [run_retention_sweep]
    cron_jobs = [
        cron(
            run_retention_sweep,
            minute=settings.retention_sweep_cron_minute,
            run_at_startup=False,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
