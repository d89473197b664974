import httpx
import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy.exc import OperationalError

from orderflow.inventory import commands as inventory_commands
from orderflow.order import commands as order_commands
from orderflow.saga.payment import HttpPaymentGateway
from orderflow.shared.config import Settings
from orderflow.shared.resources import Resources, build_order_queue
from orderflow.shared.storage import create_engine_and_sessions, init_schema

STORE_ID = "STORE-001"
COUNTY_ID = "COUNTY-031"

SHIPPING_ADDRESS = {"street": "100 Main St", "city": "Springfield", "state": "IL", "zip": "62701"}


def order_items() -> list[dict]:
    # 2 x 25.00 + 4 x 12.00 = 98.00, tax 7.84, total 105.84
    return [
        {"sku": "WINE-001", "name": "Cabernet Sauvignon", "quantity": 2, "unit_price": 25.00},
        {"sku": "BEER-002", "name": "IPA 6-pack", "quantity": 4, "unit_price": 12.00},
    ]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orderflow.db'}",
        payment_service_url="http://payments.test",
        payment_retry_backoff_seconds=0.0,
        queue_claim_idle_ms=0,
        queue_max_deliveries=3,
        feed_max_attempts=2,
        worker_name="test-worker",
    )


@pytest.fixture
async def database(settings):
    engine, sessions = create_engine_and_sessions(settings)
    await init_schema(engine)
    yield engine, sessions
    await engine.dispose()


@pytest.fixture
def sessions(database):
    return database[1]


@pytest.fixture
async def session(sessions):
    async with sessions() as session:
        yield session


@pytest.fixture
async def redis():
    client = FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def resources(settings, database, redis):
    engine, sessions = database
    return Resources(
        settings=settings,
        engine=engine,
        sessions=sessions,
        redis=redis,
        order_queue=build_order_queue(settings, redis),
    )


@pytest.fixture
def make_order(sessions):
    counter = {"n": 0}

    async def _make(customer_id="CUST-001", items=None, idempotency_key=None, store_id=STORE_ID):
        counter["n"] += 1
        async with sessions() as session:
            result = await order_commands.create_order(
                session,
                customer_id=customer_id,
                store_id=store_id,
                county_id=COUNTY_ID,
                items=items or order_items(),
                shipping_address=SHIPPING_ADDRESS,
                idempotency_key=idempotency_key or f"idem-key-{counter['n']:04d}",
            )
        return result.order

    return _make


@pytest.fixture
def stock(sessions):
    async def _stock(sku, quantity, store_id=STORE_ID):
        async with sessions() as session:
            await inventory_commands.upsert_item(
                session,
                store_id,
                sku,
                product_name=sku.title(),
                quantity_available=quantity,
                unit_cost=5.0,
                reorder_level=1,
            )

    return _stock


@pytest.fixture
async def payment_gateway():
    """MockTransport の handler を渡すと決済クライアントを返す。"""
    clients = []

    def _build(handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return HttpPaymentGateway(client, "http://payments.test", timeout=1.0)

    yield _build
    for client in clients:
        await client.aclose()


def approve(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"approved": True, "transaction_id": "TXN-1", "reason": None})


@pytest.fixture
def break_next_release(monkeypatch):
    """次の release_reservation 呼び出しだけを DB 障害にする。呼び出し記録を返す。"""
    real_release = inventory_commands.release_reservation
    calls = []

    async def _release(session, order_id):
        calls.append(order_id)
        if len(calls) == 1:
            raise OperationalError("UPDATE reservations", {}, Exception("database is locked"))
        return await real_release(session, order_id)

    monkeypatch.setattr(inventory_commands, "release_reservation", _release)
    return calls
