"""Background tasks for the payments service."""

from typing import Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.payments_service.models import TransferStatus
from services.payments_service.services.transfers import (
    list_retryable_transfers,
    retry_transfer,
)
from services.payments_service.stripe_client import StripeClient, build_stripe_clients
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


async def retry_failed_transfers(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    stripe_clients: Optional[dict[str, StripeClient]] = None,
) -> int:
    """Re-attempt Connect transfers whose sessions never got a successful one.

    Retries reuse the session's Stripe idempotency key. Returns how many
    retries succeeded.
    """
    settings = get_settings()
    max_attempts = settings.TRANSFER_RETRY_MAX_ATTEMPTS
    recovered = 0

    async with httpx.AsyncClient(timeout=settings.STRIPE_TIMEOUT_SECONDS) as http:
        clients = stripe_clients
        if clients is None:
            clients = build_stripe_clients(
                settings.stripe_environments(), http_client=http
            )

        async with session_factory() as db:
            pending = await list_retryable_transfers(db, max_attempts=max_attempts)
            for failed in pending:
                client = clients.get(failed.stripe_environment or "")
                if client is None:
                    logger.warning(
                        "No Stripe client for %s, cannot retry transfer for session %s",
                        failed.stripe_environment,
                        failed.session_id,
                    )
                    continue

                row = await retry_transfer(db, client, failed)
                if row.status == TransferStatus.SUCCEEDED:
                    recovered += 1

    if pending:
        logger.info(
            "Retried %d failed transfers, %d succeeded", len(pending), recovered
        )
    return recovered
