import orjson
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from creditmeter.core.security import require_session_id
from creditmeter.deps import Services, get_current_uid, get_services
from creditmeter.routers.schemas import EstimateRequest, GenerateRequest, camelize
from creditmeter.services.gateway import StreamEvent, validate_action

router = APIRouter()


def sse_frame(event: StreamEvent) -> bytes:
    if event.event == "keepalive":
        return b": keep-alive\n\n"
    data = orjson.dumps(camelize(event.data)).decode()
    return f"event: {event.event}\ndata: {data}\n\n".encode()


@router.post("/estimate")
async def estimate_cost(
    body: EstimateRequest,
    uid: str = Depends(get_current_uid),
    services: Services = Depends(get_services),
):
    """Quote the credits an action would cost; no balance change."""
    estimate = await services.gateway.estimate(body.action, body.prompt_payload.to_payload())
    return camelize(estimate)


@router.post("/generate")
async def generate(
    body: GenerateRequest,
    uid: str = Depends(get_current_uid),
    services: Services = Depends(get_services),
):
    outcome = await services.gateway.generate(uid, body.action, body.session_id, body.prompt_payload.to_payload())
    return camelize(outcome)


@router.post("/generate/stream")
async def generate_stream(
    body: GenerateRequest,
    uid: str = Depends(get_current_uid),
    services: Services = Depends(get_services),
):
    """Server-sent events: status, thought, output, complete or error, with comment keep-alives."""
    action = validate_action(body.action)
    session_id = require_session_id(body.session_id)
    events = services.gateway.stream(uid, action, session_id, body.prompt_payload.to_payload())

    async def frames():
        async for event in events:
            yield sse_frame(event)

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/balance")
async def get_balance(uid: str = Depends(get_current_uid), services: Services = Depends(get_services)):
    """Return current credit balance, creating a zero balance on first call."""
    balance = await services.ledger.get_balance(uid)
    return {
        "balance": balance.balance,
        "debt": balance.debt,
        "hasNegativeBalance": balance.has_negative_balance,
        "totalPurchased": balance.total_purchased,
        "totalConsumed": balance.total_consumed,
    }


@router.get("/ledger")
async def get_ledger(
    uid: str = Depends(get_current_uid),
    services: Services = Depends(get_services),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for the caller (newest first)."""
    entries = await services.ledger.list_entries(uid, limit=limit, offset=offset)
    out = [
        {
            "id": e.id,
            "amount": e.amount,
            "balanceAfter": e.balance_after,
            "reason": e.reason,
            "action": e.action,
            "sessionId": e.session_id,
            "referenceId": e.reference_id,
            "createdAt": e.created_at.isoformat(),
        }
        for e in entries
    ]
    return {"entries": out, "limit": limit, "offset": offset}
