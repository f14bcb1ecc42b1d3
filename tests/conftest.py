import os
from datetime import datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import app.models  # noqa: E402,F401
from app.api.deps import get_feature_flags, get_notifier, get_payment_provider  # noqa: E402
from app.core.config import FeatureFlags  # noqa: E402
from app.core.db import get_session  # noqa: E402
from app.core.errors import PaymentUnavailable  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.main import app  # noqa: E402
from app.models.appointment import Appointment, AppointmentStatus  # noqa: E402
from app.models.availability import AvailabilityWindow  # noqa: E402
from app.models.service import Service  # noqa: E402
from app.models.user import User, UserRole  # noqa: E402
from app.services.payment_service import (  # noqa: E402
    CheckoutSession,
    PaymentProvider,
    PaymentResult,
    RefundResult,
    SavedCard,
    Settlement,
    parse_event_payload,
)


class FakePaymentProvider(PaymentProvider):
    """In-memory stand-in for the Stripe provider."""

    available = True

    def __init__(self) -> None:
        self.unreachable = False
        self.settlements: dict[str, Settlement] = {}
        self.default_captured = 1000
        self.refunds: list[tuple[str, int]] = []
        self.checkouts: list[dict] = []
        self.charges: list[dict] = []
        self.charge_status = "succeeded"
        self.charge_amount: int | None = None
        self.customers: dict[str, str] = {}
        self.attached: dict[str, list[str]] = {}
        self.payment_methods: dict[str, str] = {}
        self.fail_attach = False

    def _check(self) -> None:
        if self.unreachable:
            raise PaymentUnavailable("Payment provider is unavailable")

    async def create_checkout_session(self, **kwargs) -> CheckoutSession:
        self._check()
        self.checkouts.append(kwargs)
        n = len(self.checkouts)
        return CheckoutSession(id=f"cs_test_{n}", url=f"https://checkout.test/cs_test_{n}")

    async def charge_saved_method(self, **kwargs) -> PaymentResult:
        self._check()
        self.charges.append(kwargs)
        amount = kwargs["amount_cents"] if self.charge_amount is None else self.charge_amount
        reference = f"pi_saved_{len(self.charges)}"
        self.settlements[reference] = Settlement(captured_cents=amount, authorized_cents=amount)
        return PaymentResult(reference=reference, status=self.charge_status, amount_cents=amount)

    async def get_settlement(self, payment_reference: str) -> Settlement:
        self._check()
        base = self.settlements.get(
            payment_reference,
            Settlement(captured_cents=self.default_captured, authorized_cents=self.default_captured),
        )
        refunded = sum(a for ref, a in self.refunds if ref == payment_reference)
        return Settlement(
            captured_cents=base.captured_cents,
            authorized_cents=base.authorized_cents,
            refunded_cents=base.refunded_cents + refunded,
        )

    async def refund(self, payment_reference: str, amount_cents: int) -> RefundResult:
        self._check()
        self.refunds.append((payment_reference, amount_cents))
        return RefundResult(id=f"re_{len(self.refunds)}", amount_cents=amount_cents, status="succeeded")

    async def ensure_customer(self, email: str, customer_reference: str | None) -> str:
        self._check()
        if customer_reference:
            return customer_reference
        return self.customers.setdefault(email, f"cus_{len(self.customers) + 1}")

    async def attach_payment_method(self, customer_reference: str, payment_method_reference: str) -> None:
        self._check()
        if self.fail_attach:
            raise RuntimeError("attach failed")
        self.attached.setdefault(customer_reference, []).append(payment_method_reference)

    async def list_payment_methods(self, customer_reference: str) -> list[SavedCard]:
        self._check()
        return [
            SavedCard(id=pm, brand="visa", last4="4242", exp_month=12, exp_year=2030)
            for pm in self.attached.get(customer_reference, [])
        ]

    async def detach_payment_method(self, payment_method_reference: str) -> None:
        self._check()
        for methods in self.attached.values():
            if payment_method_reference in methods:
                methods.remove(payment_method_reference)

    async def payment_method_for_payment(self, payment_reference: str) -> str | None:
        self._check()
        return self.payment_methods.get(payment_reference, f"pm_for_{payment_reference}")

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        return parse_event_payload(payload)


class RecordingNotifier:
    enabled = True

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    async def send(self, to_email: str, subject: str, body: str) -> None:
        if self.fail:
            raise ConnectionError("SMTP down")
        self.sent.append((to_email, subject, body))


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def flags() -> FeatureFlags:
    return FeatureFlags()


@pytest.fixture
async def client(session_maker, provider, notifier, flags):
    async def _get_session():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_payment_provider] = lambda: provider
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_feature_flags] = lambda: flags
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            yield c
    finally:
        app.dependency_overrides.clear()


async def make_user(session, email="customer@example.com", role=UserRole.USER) -> User:
    user = User(email=email, full_name="Test User", role=role)
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def make_service(session, duration=60, deposit=1000, price=5000, title="Haircut", **kwargs) -> Service:
    service = Service(
        title=title, duration_minutes=duration, price_cents=price, deposit_cents=deposit, **kwargs
    )
    session.add(service)
    await session.commit()
    await session.refresh(service)
    return service


async def make_window(session, start: datetime, end: datetime) -> AvailabilityWindow:
    window = AvailabilityWindow(start_utc=start, end_utc=end)
    session.add(window)
    await session.commit()
    await session.refresh(window)
    return window


async def make_appointment(
    session,
    user: User,
    service: Service,
    start: datetime,
    status=AppointmentStatus.PENDING,
    payment_reference: str | None = None,
) -> Appointment:
    appointment = Appointment(
        user_id=user.id,
        service_id=service.id,
        start_utc=start,
        end_utc=start + timedelta(minutes=service.duration_minutes),
        status=status,
        payment_reference=payment_reference,
    )
    session.add(appointment)
    await session.commit()
    await session.refresh(appointment)
    return appointment


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role.value)}"}
