"""Firebase Auth user deletion through the Identity Toolkit API."""

import asyncio
from typing import Protocol

import google.auth
from googleapiclient.discovery import build

IDENTITY_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]


class IdentityAdmin(Protocol):
    async def delete_user(self, uid: str) -> None: ...


class FirebaseIdentityAdmin:
    def __init__(self, project_id: str, credentials=None):
        self.project_id = project_id
        self._credentials = credentials
        self._service = None

    def _accounts(self):
        if self._service is None:
            creds = self._credentials
            if creds is None:
                creds, _ = google.auth.default(scopes=IDENTITY_SCOPES)
            self._service = build("identitytoolkit", "v1", credentials=creds, cache_discovery=False)
        return self._service.projects().accounts()

    async def delete_user(self, uid: str) -> None:
        request = self._accounts().delete(
            targetProjectId=self.project_id,
            body={"localId": uid, "targetProjectId": self.project_id},
        )
        await asyncio.to_thread(request.execute)
