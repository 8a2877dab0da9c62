"""ARQ worker for payments background retries."""

from arq import cron
from libs.common.arq_config import get_redis_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)


async def task_retry_failed_transfers(ctx: dict):
    from services.payments_service.tasks import retry_failed_transfers

    logger.info("Running: retry_failed_transfers")
    await retry_failed_transfers()


class WorkerSettings:
    redis_settings = get_redis_settings()

    functions = [
        task_retry_failed_transfers,
    ]

    cron_jobs = [
        cron(
            task_retry_failed_transfers,
            minute={7, 22, 37, 52},
            run_at_startup=True,
        ),
    ]
