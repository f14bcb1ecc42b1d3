import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_notifier, get_payment_provider
from app.core.db import get_session
from app.services.email_service import Notifier
from app.services.payment_reconciler import handle_event
from app.services.payment_service import PaymentProvider

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    session: AsyncSession = Depends(get_session),
    provider: PaymentProvider = Depends(get_payment_provider),
    notifier: Notifier = Depends(get_notifier),
) -> dict:
    """Acknowledge every well-formed event; only an unreadable or unsigned payload gets a 400."""
    payload = await request.body()
    try:
        event = provider.construct_event(payload, stripe_signature)
    except ValueError as e:
        logger.warning("Webhook error: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Webhook Error: {e}")
    await handle_event(session, event, provider, notifier)
    return {"received": True}
