# deps/settlement.py
from fastapi import Request

from app.ledger.repository import PostgresLedgerStore
from app.notifications.dispatcher import build_dispatcher
from app.providers.factory import build_gateways
from app.settlement.config import SettlementConfig
from app.settlement.engine import SettlementEngine
from db import get_conn


def build_engine(s) -> SettlementEngine:
    return SettlementEngine(
        store=PostgresLedgerStore(),
        connect=get_conn,
        config=SettlementConfig.from_settings(s),
        gateways=build_gateways(s),
        dispatcher=build_dispatcher(s),
    )


def get_engine(request: Request) -> SettlementEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("Settlement engine not initialised")
    return engine
