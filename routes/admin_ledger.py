# routes/admin_ledger.py
from fastapi import APIRouter, Depends

from app.settlement.engine import SettlementEngine
from deps.settlement import get_engine
from schemas import LedgerIntegrityResponse
from services.ledger_invariants import check_ledger_integrity

router = APIRouter(prefix="/v1/admin/ledger", tags=["admin-ledger"])


@router.get("/integrity", response_model=LedgerIntegrityResponse)
def integrity_check(engine: SettlementEngine = Depends(get_engine)):
    with engine.connect() as conn:
        report = check_ledger_integrity(engine.store, conn)
    return report
