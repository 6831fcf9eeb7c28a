# routes/settlements.py
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends

from app.settlement.engine import SettlementEngine, SettlementResult
from deps.settlement import get_engine
from schemas import InitiateSettlementRequest, ResolveReturnRequest, SettlementResponse
from services.settlement_errors import raise_http_from_settlement_error

router = APIRouter(prefix="/v1/settlements", tags=["settlements"])


def _respond(result: SettlementResult, engine: SettlementEngine, background_tasks: BackgroundTasks) -> dict:
    # notifications go out once the unit of work has committed
    background_tasks.add_task(engine.dispatch, result)
    return result.to_dict()


@router.post("/initiate", response_model=SettlementResponse)
def initiate_settlement(
    body: InitiateSettlementRequest,
    background_tasks: BackgroundTasks,
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.initiate(
            body.order_id,
            gateway=body.gateway,
            delivery_fee_cents=body.delivery_fee_cents,
            buyer_email=str(body.buyer_email) if body.buyer_email else None,
            phone=body.phone,
        )
    except Exception as e:
        raise_http_from_settlement_error(e)
    return _respond(result, engine, background_tasks)


@router.get("/{reference}/verify", response_model=SettlementResponse)
def verify_settlement(
    reference: str,
    background_tasks: BackgroundTasks,
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.verify(reference)
    except Exception as e:
        raise_http_from_settlement_error(e)
    return _respond(result, engine, background_tasks)


@router.post("/{transaction_id}/items/{item_id}/refund", response_model=SettlementResponse)
def refund_item(
    transaction_id: UUID,
    item_id: UUID,
    background_tasks: BackgroundTasks,
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.refund_item(transaction_id, item_id)
    except Exception as e:
        raise_http_from_settlement_error(e)
    return _respond(result, engine, background_tasks)


@router.post("/{transaction_id}/items/{item_id}/refund/complete", response_model=SettlementResponse)
def complete_refund(
    transaction_id: UUID,
    item_id: UUID,
    background_tasks: BackgroundTasks,
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.complete_refund(transaction_id, item_id)
    except Exception as e:
        raise_http_from_settlement_error(e)
    return _respond(result, engine, background_tasks)


@router.post("/{transaction_id}/items/{item_id}/return", response_model=SettlementResponse)
def request_return(
    transaction_id: UUID,
    item_id: UUID,
    background_tasks: BackgroundTasks,
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.request_return(transaction_id, item_id)
    except Exception as e:
        raise_http_from_settlement_error(e)
    return _respond(result, engine, background_tasks)


@router.post("/{transaction_id}/items/{item_id}/return/resolve", response_model=SettlementResponse)
def resolve_return(
    transaction_id: UUID,
    item_id: UUID,
    body: ResolveReturnRequest,
    background_tasks: BackgroundTasks,
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.resolve_return(transaction_id, item_id, approve=body.approve)
    except Exception as e:
        raise_http_from_settlement_error(e)
    return _respond(result, engine, background_tasks)


@router.post("/{transaction_id}/items/{item_id}/payout", response_model=SettlementResponse)
def payout_seller(
    transaction_id: UUID,
    item_id: UUID,
    background_tasks: BackgroundTasks,
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.payout(transaction_id, item_id)
    except Exception as e:
        raise_http_from_settlement_error(e)
    return _respond(result, engine, background_tasks)
