from fastapi import APIRouter, Depends

from creditmeter.deps import Services, get_current_uid, get_services

router = APIRouter()


@router.delete("")
async def delete_account(uid: str = Depends(get_current_uid), services: Services = Depends(get_services)):
    """Delete the caller's purchases, sessions, ledger, balance and identity."""
    deleted = await services.accounts.delete_account(uid)
    return {"deleted": deleted}
