# PUBLIC_INTERFACE
"""
Per-tenant credential storage.

- Exactly one credential per tenant; `upsert` creates or overwrites atomically.
- `InMemoryCredentialStore` for tests and local development (ephemeral).
- `MongoCredentialStore` for production; tokens are encrypted at rest.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

from .errors import InvalidCredentialError, NotFoundError
from .expiry import utcnow
from .logging import get_logger
from .models import Credential
from .security import SecretBox
from .settings import Settings

logger = get_logger(__name__)

COLLECTION_NAME = "bitrix_credentials"


class CredentialStore(ABC):
    """The only component allowed to mutate credential state."""

    @abstractmethod
    async def find(self, tenant_id: str) -> Optional[Credential]:
        """Return the stored credential for a tenant, or None."""
        raise NotImplementedError

    @abstractmethod
    async def upsert(
        self,
        tenant_id: str,
        *,
        access_token: str,
        refresh_token: Optional[str],
        expires_in_seconds: int,
        provider_domain: str,
        now: Optional[datetime] = None,
    ) -> Credential:
        """Create or overwrite the tenant's credential; issued_at becomes `now`."""
        raise NotImplementedError

    # PUBLIC_INTERFACE
    async def get(self, tenant_id: str) -> Credential:
        """Return the stored credential or raise NotFoundError."""
        credential = await self.find(tenant_id)
        if credential is None:
            raise NotFoundError(tenant_id)
        return credential


class InMemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._store: Dict[str, Credential] = {}

    async def find(self, tenant_id: str) -> Optional[Credential]:
        with self._lock:
            credential = self._store.get(tenant_id)
            return credential.model_copy() if credential else None

    async def upsert(
        self,
        tenant_id: str,
        *,
        access_token: str,
        refresh_token: Optional[str],
        expires_in_seconds: int,
        provider_domain: str,
        now: Optional[datetime] = None,
    ) -> Credential:
        issued_at = now or utcnow()
        with self._lock:
            existing = self._store.get(tenant_id)
            # validate fully before swapping in, so a bad write leaves the old record intact
            credential = Credential(
                tenant_id=tenant_id,
                provider_domain=provider_domain,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_in_seconds=expires_in_seconds,
                issued_at=issued_at,
                created_at=existing.created_at if existing else issued_at,
            )
            self._store[tenant_id] = credential
        logger.info(
            "Credential stored",
            extra={"tenant_id": tenant_id, "provider_domain": provider_domain, "is_new": existing is None},
        )
        return credential.model_copy()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


class MongoCredentialStore(CredentialStore):
    """Credential store over a motor collection; one document per tenant keyed by `_id`."""

    def __init__(self, collection: Any, secret_box: SecretBox):
        self.collection = collection
        self.secret_box = secret_box

    def _to_credential(self, doc: Dict[str, Any]) -> Credential:
        access_token = self.secret_box.decrypt(doc.get("access_token"))
        if access_token is None:
            raise InvalidCredentialError(
                f"Stored access token for tenant '{doc['_id']}' is unreadable",
                details={"tenant_id": doc["_id"]},
            )
        return Credential(
            tenant_id=doc["_id"],
            provider_domain=doc["provider_domain"],
            access_token=access_token,
            refresh_token=self.secret_box.decrypt(doc.get("refresh_token")),
            expires_in_seconds=int(doc["expires_in_seconds"]),
            issued_at=doc["issued_at"],
            created_at=doc.get("created_at") or doc["issued_at"],
        )

    async def find(self, tenant_id: str) -> Optional[Credential]:
        doc = await self.collection.find_one({"_id": tenant_id})
        if not doc:
            return None
        return self._to_credential(doc)

    async def upsert(
        self,
        tenant_id: str,
        *,
        access_token: str,
        refresh_token: Optional[str],
        expires_in_seconds: int,
        provider_domain: str,
        now: Optional[datetime] = None,
    ) -> Credential:
        issued_at = now or utcnow()
        # Validate before touching the database
        Credential(
            tenant_id=tenant_id,
            provider_domain=provider_domain,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in_seconds=expires_in_seconds,
            issued_at=issued_at,
        )
        doc = await self.collection.find_one_and_update(
            {"_id": tenant_id},
            {
                "$set": {
                    "provider_domain": provider_domain,
                    "access_token": self.secret_box.encrypt(access_token),
                    "refresh_token": self.secret_box.encrypt(refresh_token),
                    "expires_in_seconds": int(expires_in_seconds),
                    "issued_at": issued_at,
                },
                "$setOnInsert": {"created_at": issued_at},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Credential stored", extra={"tenant_id": tenant_id, "provider_domain": provider_domain})
        return self._to_credential(doc)


# PUBLIC_INTERFACE
def build_credential_store(settings: Settings) -> CredentialStore:
    """Create the configured credential store backend."""
    if settings.store.CREDENTIAL_STORE == "mongo":
        from .db import get_database

        collection = get_database(settings)[COLLECTION_NAME]
        return MongoCredentialStore(collection, SecretBox(settings.security.ENCRYPTION_KEY))
    return InMemoryCredentialStore()
