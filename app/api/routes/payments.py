from fastapi import APIRouter, Depends, status

from app.api.deps import get_current_user, get_payment_provider
from app.api.schemas.appointment import SavedCardPublic, SavedCardsResponse
from app.models.user import User
from app.services.payment_service import PaymentProvider, list_saved_cards, remove_saved_card

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("/methods", response_model=SavedCardsResponse)
async def list_payment_methods(
    current_user: User = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> SavedCardsResponse:
    cards = await list_saved_cards(provider, current_user.payment_customer_reference)
    return SavedCardsResponse(methods=[SavedCardPublic(**vars(c)) for c in cards])


@router.delete("/methods/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_payment_method(
    payment_method_id: str,
    current_user: User = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> None:
    await remove_saved_card(provider, current_user.payment_customer_reference, payment_method_id)
