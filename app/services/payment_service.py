"""Payment provider capability.

Business logic talks to a `PaymentProvider` and branches on its `available` flag, which is
decided once when the provider is built from settings. `StripePaymentProvider` wraps the
Stripe SDK; `DisabledPaymentProvider` stands in when no usable key is configured.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import stripe

from app.core.config import Settings
from app.core.errors import NotFound, PaymentFailed, PaymentUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str | None


@dataclass(frozen=True)
class PaymentResult:
    reference: str
    status: str
    amount_cents: int

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class Settlement:
    captured_cents: int
    authorized_cents: int
    refunded_cents: int = 0

    @property
    def refundable_cents(self) -> int:
        # Captured money is the ceiling; authorization alone only counts when nothing settled.
        ceiling = self.captured_cents if self.captured_cents > 0 else self.authorized_cents
        return max(ceiling - self.refunded_cents, 0)


@dataclass(frozen=True)
class RefundResult:
    id: str
    amount_cents: int
    status: str


@dataclass(frozen=True)
class SavedCard:
    id: str
    brand: str | None
    last4: str | None
    exp_month: int | None
    exp_year: int | None


class PaymentProvider(ABC):
    available: bool = False

    @abstractmethod
    async def create_checkout_session(
        self,
        *,
        amount_cents: int,
        appointment_id: int,
        title: str,
        description: str | None,
        customer_email: str | None,
    ) -> CheckoutSession: ...

    @abstractmethod
    async def charge_saved_method(
        self,
        *,
        amount_cents: int,
        customer_reference: str,
        payment_method_reference: str,
        appointment_id: int,
    ) -> PaymentResult: ...

    @abstractmethod
    async def get_settlement(self, payment_reference: str) -> Settlement: ...

    @abstractmethod
    async def refund(self, payment_reference: str, amount_cents: int) -> RefundResult: ...

    @abstractmethod
    async def ensure_customer(self, email: str, customer_reference: str | None) -> str: ...

    @abstractmethod
    async def attach_payment_method(
        self, customer_reference: str, payment_method_reference: str
    ) -> None: ...

    @abstractmethod
    async def list_payment_methods(self, customer_reference: str) -> list[SavedCard]: ...

    @abstractmethod
    async def detach_payment_method(self, payment_method_reference: str) -> None: ...

    @abstractmethod
    async def payment_method_for_payment(self, payment_reference: str) -> str | None: ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str | None) -> dict: ...


def verify_signature(payload: bytes, signature: str | None, secret: str) -> None:
    if not signature:
        raise ValueError("Missing Stripe-Signature header")
    try:
        stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature, secret)
    except stripe.SignatureVerificationError as e:
        raise ValueError(f"Invalid signature: {e}") from e


def parse_event_payload(payload: bytes) -> dict:
    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid payload: {e}") from e
    if not isinstance(event, dict):
        raise ValueError("Invalid payload: expected a JSON object")
    return event


class DisabledPaymentProvider(PaymentProvider):
    """Used when payments are not configured; every payment operation is refused."""

    available = False

    def __init__(self, webhook_secret: str = "") -> None:
        self._webhook_secret = webhook_secret

    def _refuse(self):
        raise PaymentUnavailable("Payments are not configured")

    async def create_checkout_session(self, **kwargs) -> CheckoutSession:
        self._refuse()

    async def charge_saved_method(self, **kwargs) -> PaymentResult:
        self._refuse()

    async def get_settlement(self, payment_reference: str) -> Settlement:
        self._refuse()

    async def refund(self, payment_reference: str, amount_cents: int) -> RefundResult:
        self._refuse()

    async def ensure_customer(self, email: str, customer_reference: str | None) -> str:
        self._refuse()

    async def attach_payment_method(self, customer_reference: str, payment_method_reference: str) -> None:
        self._refuse()

    async def list_payment_methods(self, customer_reference: str) -> list[SavedCard]:
        return []

    async def detach_payment_method(self, payment_method_reference: str) -> None:
        self._refuse()

    async def payment_method_for_payment(self, payment_reference: str) -> str | None:
        self._refuse()

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        # Events can still be delivered (e.g. replayed by hand) without an API key.
        if self._webhook_secret and signature:
            verify_signature(payload, signature, self._webhook_secret)
        return parse_event_payload(payload)


class StripePaymentProvider(PaymentProvider):
    available = True

    def __init__(
        self, api_key: str, *, webhook_secret: str = "", currency: str = "usd", app_url: str = ""
    ) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._currency = currency
        self._app_url = app_url.rstrip("/")

    async def _call(self, func, *args, **params):
        """Run a blocking SDK call in a worker thread and map SDK errors to domain errors."""
        try:
            return await asyncio.to_thread(func, *args, api_key=self._api_key, **params)
        except (stripe.APIConnectionError, stripe.AuthenticationError) as e:
            logger.warning("Stripe unreachable or misconfigured: %s", e)
            raise PaymentUnavailable("Payment provider is unavailable") from e
        except stripe.StripeError as e:
            logger.warning("Stripe error: %s", e)
            raise PaymentFailed(e.user_message or str(e)) from e

    async def create_checkout_session(
        self,
        *,
        amount_cents: int,
        appointment_id: int,
        title: str,
        description: str | None,
        customer_email: str | None,
    ) -> CheckoutSession:
        product_data = {"name": title}
        if description:
            product_data["description"] = description
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": self._currency,
                        "product_data": product_data,
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "client_reference_id": str(appointment_id),
            "success_url": f"{self._app_url}/booking/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self._app_url}/booking/cancel",
            "metadata": {"appointment_id": str(appointment_id)},
        }
        if customer_email:
            params["customer_email"] = customer_email
        session = await self._call(stripe.checkout.Session.create, **params)
        return CheckoutSession(id=session.id, url=session.url)

    async def charge_saved_method(
        self,
        *,
        amount_cents: int,
        customer_reference: str,
        payment_method_reference: str,
        appointment_id: int,
    ) -> PaymentResult:
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=self._currency,
            customer=customer_reference,
            payment_method=payment_method_reference,
            confirm=True,
            off_session=True,
            metadata={"appointment_id": str(appointment_id)},
            # Keyed per card: a declined card must not block a retry with another one.
            idempotency_key=f"appointment-{appointment_id}-deposit-{payment_method_reference}",
        )
        return PaymentResult(
            reference=intent.id,
            status=intent.status,
            amount_cents=int(intent.amount_received or 0),
        )

    async def get_settlement(self, payment_reference: str) -> Settlement:
        intent = await self._call(
            stripe.PaymentIntent.retrieve, payment_reference, expand=["latest_charge"]
        )
        charge = intent.get("latest_charge")
        refunded = 0
        if charge is not None and not isinstance(charge, str):
            refunded = int(charge.get("amount_refunded") or 0)
        return Settlement(
            captured_cents=int(intent.get("amount_received") or 0),
            authorized_cents=int(intent.get("amount") or 0),
            refunded_cents=refunded,
        )

    async def refund(self, payment_reference: str, amount_cents: int) -> RefundResult:
        refund = await self._call(
            stripe.Refund.create, payment_intent=payment_reference, amount=amount_cents
        )
        return RefundResult(id=refund.id, amount_cents=int(refund.amount), status=refund.status)

    async def ensure_customer(self, email: str, customer_reference: str | None) -> str:
        if customer_reference:
            return customer_reference
        customer = await self._call(stripe.Customer.create, email=email)
        return customer.id

    async def attach_payment_method(self, customer_reference: str, payment_method_reference: str) -> None:
        await self._call(stripe.PaymentMethod.attach, payment_method_reference, customer=customer_reference)
        await self._call(
            stripe.Customer.modify,
            customer_reference,
            invoice_settings={"default_payment_method": payment_method_reference},
        )

    async def list_payment_methods(self, customer_reference: str) -> list[SavedCard]:
        methods = await self._call(stripe.PaymentMethod.list, customer=customer_reference, type="card")
        cards: list[SavedCard] = []
        for m in methods.data:
            card = m.get("card") or {}
            cards.append(
                SavedCard(
                    id=m.id,
                    brand=card.get("brand"),
                    last4=card.get("last4"),
                    exp_month=card.get("exp_month"),
                    exp_year=card.get("exp_year"),
                )
            )
        return cards

    async def detach_payment_method(self, payment_method_reference: str) -> None:
        await self._call(stripe.PaymentMethod.detach, payment_method_reference)

    async def payment_method_for_payment(self, payment_reference: str) -> str | None:
        intent = await self._call(stripe.PaymentIntent.retrieve, payment_reference)
        pm = intent.get("payment_method")
        if pm is None or isinstance(pm, str):
            return pm
        return pm.get("id")

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        if self._webhook_secret:
            verify_signature(payload, signature, self._webhook_secret)
        return parse_event_payload(payload)


def has_usable_key(key: str | None) -> bool:
    """Reject empty and placeholder keys such as 'sk_test_...'."""
    return bool(key) and len(key) > 20 and "..." not in key


def build_payment_provider(settings: Settings) -> PaymentProvider:
    if has_usable_key(settings.stripe_secret_key):
        logger.info("Payments: Stripe configured")
        return StripePaymentProvider(
            settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            currency=settings.currency,
            app_url=settings.app_url,
        )
    logger.warning("Payments: NOT configured (STRIPE_SECRET_KEY missing or placeholder)")
    return DisabledPaymentProvider(webhook_secret=settings.stripe_webhook_secret)


async def list_saved_cards(provider: PaymentProvider, customer_reference: str | None) -> list[SavedCard]:
    if not customer_reference or not provider.available:
        return []
    return await provider.list_payment_methods(customer_reference)


async def remove_saved_card(
    provider: PaymentProvider, customer_reference: str | None, payment_method_reference: str
) -> None:
    """Detach a card, but only one that belongs to this customer."""
    cards = await list_saved_cards(provider, customer_reference)
    if not any(card.id == payment_method_reference for card in cards):
        raise NotFound("Payment method not found")
    await provider.detach_payment_method(payment_method_reference)
