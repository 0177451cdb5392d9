"""Google Play Developer API: verify and consume one-time product purchases."""

import asyncio
from dataclasses import dataclass
from typing import Protocol

import google.auth
from googleapiclient.discovery import build

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"

PURCHASE_STATE_PURCHASED = 0
CONSUMPTION_STATE_CONSUMED = 1


@dataclass
class StorePurchase:
    purchase_state: int
    consumption_state: int = 0
    order_id: str | None = None
    obfuscated_account_id: str | None = None

    @property
    def completed(self) -> bool:
        return self.purchase_state == PURCHASE_STATE_PURCHASED

    @property
    def consumed(self) -> bool:
        return self.consumption_state == CONSUMPTION_STATE_CONSUMED


class PurchaseVerifier(Protocol):
    async def get_purchase(self, product_id: str, purchase_token: str) -> StorePurchase: ...

    async def consume(self, product_id: str, purchase_token: str) -> None: ...


class PlayStoreVerifier:
    def __init__(self, package_name: str, credentials=None):
        self.package_name = package_name
        self._credentials = credentials
        self._service = None

    def _products(self):
        if self._service is None:
            creds = self._credentials
            if creds is None:
                creds, _ = google.auth.default(scopes=[ANDROID_PUBLISHER_SCOPE])
            self._service = build("androidpublisher", "v3", credentials=creds, cache_discovery=False)
        return self._service.purchases().products()

    async def get_purchase(self, product_id: str, purchase_token: str) -> StorePurchase:
        request = self._products().get(
            packageName=self.package_name,
            productId=product_id,
            token=purchase_token,
        )
        data = await asyncio.to_thread(request.execute)
        return StorePurchase(
            purchase_state=int(data.get("purchaseState", -1)),
            consumption_state=int(data.get("consumptionState", 0)),
            order_id=data.get("orderId"),
            obfuscated_account_id=data.get("obfuscatedExternalAccountId"),
        )

    async def consume(self, product_id: str, purchase_token: str) -> None:
        request = self._products().consume(
            packageName=self.package_name,
            productId=product_id,
            token=purchase_token,
        )
        await asyncio.to_thread(request.execute)
