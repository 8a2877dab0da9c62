"""Stripe webhook endpoint."""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.payments_service.schemas import WebhookAck
from services.payments_service.services.events import InvalidPayloadError
from services.payments_service.services.fee_handlers import LedgerWriteError
from services.payments_service.services.reconciler import PaymentEventReconciler
from services.payments_service.services.signature import SignatureVerificationError
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/payments", tags=["payments"])
logger = get_logger(__name__)


def get_reconciler(request: Request) -> PaymentEventReconciler:
    """The reconciler built at startup (see ``app.main.lifespan``)."""
    return request.app.state.reconciler


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    reconciler: PaymentEventReconciler = Depends(get_reconciler),
):
    """
    Stripe webhook endpoint (no auth; verified by Stripe-Signature).

    Duplicates and uninteresting events are acknowledged with 200 so Stripe
    stops redelivering them.
    """
    raw = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        result = await reconciler.handle(db, raw, signature)
    except SignatureVerificationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid signature: {e}"
        )
    except InvalidPayloadError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid payload: {e}"
        )
    except LedgerWriteError as e:
        # Rolled back with its marker; Stripe redelivers on 5xx.
        logger.error(str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Ledger update failed",
        )
    except Exception:
        logger.exception("Unexpected error handling Stripe webhook")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error.",
        )

    return WebhookAck(
        received=True,
        message=result.message,
        session_id=result.session_id,
        outcome=result.outcome.value,
    )
