"""Shared FastAPI dependencies and the service container."""

import asyncio
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, Header, Request

from creditmeter.core.config import Settings, get_settings
from creditmeter.core.exceptions import PermissionDeniedError
from creditmeter.core.logging import bind_uid
from creditmeter.core.security import bearer_token, verify_app_check_token, verify_firebase_id_token
from creditmeter.integrations.gemini import GeminiGenerationClient, GenerationClient
from creditmeter.integrations.identity import FirebaseIdentityAdmin, IdentityAdmin
from creditmeter.integrations.play_store import PlayStoreVerifier, PurchaseVerifier
from creditmeter.services.accounts import AccountService
from creditmeter.services.gateway import GenerationGateway
from creditmeter.services.ledger import CreditLedger
from creditmeter.services.pricing import PricingCurve
from creditmeter.services.purchases import PurchaseCreditor
from creditmeter.store.base import LedgerStore, get_store


@dataclass
class Services:
    store: LedgerStore
    ledger: CreditLedger
    gateway: GenerationGateway
    purchases: PurchaseCreditor
    accounts: AccountService


def build_services(
    settings: Settings | None = None,
    *,
    store: LedgerStore | None = None,
    client: GenerationClient | None = None,
    verifier: PurchaseVerifier | None = None,
    identity: IdentityAdmin | None = None,
) -> Services:
    """Wire the services; collaborators not passed in are built from settings."""
    settings = settings or get_settings()
    pricing = PricingCurve.from_settings(settings)
    pricing.validate()
    store = store or get_store()
    ledger = CreditLedger(store, pricing)
    client = client or GeminiGenerationClient(settings.gemini_api_key, settings.gemini_model)
    verifier = verifier or PlayStoreVerifier(settings.android_package_name)
    identity = identity or FirebaseIdentityAdmin(settings.firebase_project_id)
    return Services(
        store=store,
        ledger=ledger,
        gateway=GenerationGateway(ledger, client, settings),
        purchases=PurchaseCreditor(store, verifier, settings.credit_packs, decimals=pricing.decimals),
        accounts=AccountService(store, identity),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_claims(
    authorization: str | None = Header(None),
    x_firebase_appcheck: str | None = Header(None, alias="X-Firebase-AppCheck"),
) -> dict[str, Any]:
    """Dependency: verify the bearer ID token (and App Check when required), return claims."""
    token = bearer_token(authorization)
    settings = get_settings()
    if settings.app_check_required or x_firebase_appcheck:
        await asyncio.to_thread(verify_app_check_token, x_firebase_appcheck)
    claims = await asyncio.to_thread(verify_firebase_id_token, token)
    bind_uid(claims["sub"])
    return claims


async def get_current_uid(claims: dict[str, Any] = Depends(get_current_claims)) -> str:
    return claims["sub"]


async def require_admin(claims: dict[str, Any] = Depends(get_current_claims)) -> str:
    """Dependency: require the `admin` custom claim."""
    if claims.get("admin") is not True:
        raise PermissionDeniedError("Admin only")
    return claims["sub"]
