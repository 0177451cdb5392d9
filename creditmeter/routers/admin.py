from fastapi import APIRouter, Depends, Query

from creditmeter.core.audit import log_event
from creditmeter.core.security import require_session_id
from creditmeter.deps import Services, get_services, require_admin

router = APIRouter()


@router.post("/sessions/{uid}/{session_id}/release")
async def admin_release_pending_pair(
    uid: str,
    session_id: str,
    pair: str = Query("plan", pattern="^(plan|evaluate)$"),
    admin_uid: str = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Admin: refund the standing reservation of an abandoned plan/evaluate."""
    session_id = require_session_id(session_id)
    result = await services.ledger.release_pending_pair(uid, session_id, pair)
    await log_event(
        services.store, admin_uid, "pending_pair_released", "generation_session", f"{uid}:{session_id}",
        {"pair": pair, "refunded": result.refunded},
    )
    return {"refunded": result.refunded, "balance": result.balance}


@router.post("/purchases/recover-consumption")
async def admin_recover_consumption(
    limit: int = Query(50, ge=1, le=500),
    admin_uid: str = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Admin: retry store-side consumption for credited purchases."""
    recovered = await services.purchases.recover_pending_consumption(limit=limit)
    return {"recovered": recovered}
