# tests/conftest.py

import uuid

import pytest
from fastapi.testclient import TestClient

from app.notifications.dispatcher import NotificationDispatcher
from app.providers.mock import MockPushGateway, MockSplitGateway
from app.settlement.config import SettlementConfig
from app.settlement.engine import SettlementEngine
from app.settlement.events import SuccessEvent
from main import create_app
from services.metrics import reset_metrics
from tests.fakes import CLEARING_ID, PLATFORM_ID, InMemoryLedgerStore, RecordingNotificationGateway, seed_order


@pytest.fixture(autouse=True)
def _fresh_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def config() -> SettlementConfig:
    return SettlementConfig(platform_account_id=PLATFORM_ID, clearing_account_id=CLEARING_ID)


@pytest.fixture
def store() -> InMemoryLedgerStore:
    s = InMemoryLedgerStore()
    s.add_account(PLATFORM_ID)
    s.add_account(CLEARING_ID)
    return s


@pytest.fixture
def split_gw() -> MockSplitGateway:
    return MockSplitGateway()


@pytest.fixture
def push_gw() -> MockPushGateway:
    return MockPushGateway()


@pytest.fixture
def notifier() -> RecordingNotificationGateway:
    return RecordingNotificationGateway()


@pytest.fixture
def engine(store, config, split_gw, push_gw, notifier) -> SettlementEngine:
    return SettlementEngine(
        store=store,
        connect=store.connect,
        config=config,
        gateways={"split": split_gw, "push": push_gw},
        dispatcher=NotificationDispatcher(notifier),
        sleep=lambda s: None,
    )


@pytest.fixture
def client(engine) -> TestClient:
    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    return TestClient(create_app(engine=engine), raise_server_exceptions=False)


@pytest.fixture
def seller_id(store):
    return uuid.uuid4()


@pytest.fixture
def settled(engine, store, seller_id):
    """
    One completed split-gateway settlement: a single 900 item plus 100 delivery,
    gateway fee 15. Returns (order, result_of_confirm).
    """
    order = seed_order(store, [(seller_id, 900, 1)], delivery_fee_cents=100)
    init = engine.initiate(order.id, gateway="split", delivery_fee_cents=100, buyer_email="buyer@example.com")
    confirm = engine.handle_event(SuccessEvent(reference=init.reference, gateway_fee_cents=15))
    assert confirm.outcome == "success"
    return order, confirm
