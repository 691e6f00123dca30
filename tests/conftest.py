import os
import tempfile
from typing import Dict, Iterable, Optional

# must be set before keyshop.server / keyshop.gateway are imported
_TMP = tempfile.mkdtemp(prefix="keyshop-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/server.db")
os.environ["GATEWAY_BACKEND"] = "mock"
os.environ["EVENTS_BACKEND"] = "pg"
os.environ["MOCK_SECRET"] = "test-secret"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "hunter2"

import pytest  # noqa: E402

from keyshop import checkout  # noqa: E402
from keyshop.gateway import MockGateway  # noqa: E402
from keyshop.helpers import payment_signature  # noqa: E402
from keyshop.infra.sql import GatedAsyncSession, make_async_engine  # noqa: E402
from keyshop.model import catalog, keys  # noqa: E402
from keyshop.model.db import Base  # noqa: E402

SECRET = "test-secret"


class FakeGateway(MockGateway):
    """MockGateway whose payment statuses and failures tests can steer."""

    def __init__(self) -> None:
        super().__init__(secret=SECRET)
        self.statuses: Dict[str, str] = {}
        # extra fields reported for a payment, e.g. {"amount": 100}
        self.payments: Dict[str, dict] = {}
        self.intents = []
        self.fetches = []

    async def create_intent(self, amount_minor, currency, receipt, notes):
        intent = await super().create_intent(
            amount_minor, currency, receipt, notes
        )
        self.intents.append({**intent, "receipt": receipt, "notes": notes})
        return intent

    async def fetch_payment(self, payment_id):
        self.fetches.append(payment_id)
        payment = await super().fetch_payment(payment_id)
        payment["status"] = self.statuses.get(payment_id, "captured")
        payment.update(self.payments.get(payment_id, {}))
        return payment


def sign(gateway_order_id: str, payment_id: str) -> str:
    return payment_signature(SECRET, gateway_order_id, payment_id)


@pytest.fixture
async def database(tmp_path):
    d = make_async_engine(f"sqlite:///{tmp_path}/keyshop.db")
    async with d.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield d
    await d.dispose()


@pytest.fixture
async def gdb(database):
    async with database.sessionmaker() as session:
        yield GatedAsyncSession(session=session, gated=database.gated)


@pytest.fixture
def gateway():
    return FakeGateway()


async def seed(
    gdb: GatedAsyncSession,
    name: str = "Vision",
    plans: Optional[Iterable[tuple]] = (("1 Month", 299.0),),
    plan: str = "1 Month",
    key_values: Iterable[str] = ("K1",),
) -> int:
    """Create a brand with plans and some available keys; returns brand id."""
    async with gdb.transaction() as s:
        brand = await catalog.add_brand(s, name, f"{name} suite")
        for plan_name, price in plans or ():
            await catalog.add_plan(s, brand.id, plan_name, price)
        brand_id = brand.id
        values = list(key_values)
        if values:
            await keys.add_keys(s, brand_id, plan, values)
    return brand_id


async def open_intent(gdb: GatedAsyncSession, gateway: FakeGateway,
                      order_id: str, amount: float = 299.0) -> str:
    """Open a payment intent for a pending order; returns its gateway id."""
    intent = await checkout.open_payment_intent(
        gdb, gateway, order_id, amount, "Vision", "1 Month"
    )
    return intent["gatewayOrderId"]
