from fastapi import APIRouter, Depends

from creditmeter.deps import Services, get_current_uid, get_services
from creditmeter.routers.schemas import VerifyPurchaseRequest, camelize

router = APIRouter()


@router.post("/verify")
async def verify_purchase(
    body: VerifyPurchaseRequest,
    uid: str = Depends(get_current_uid),
    services: Services = Depends(get_services),
):
    """Verify a Play purchase and credit it once (safe to retry with the same token)."""
    outcome = await services.purchases.credit_from_purchase(uid, body.purchase_token, body.product_id)
    return camelize(outcome)
