from __future__ import annotations

import copy
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import pytest
from pydantic import ValidationError
from pymongo import ReturnDocument

from crm_connector_backend.core.credential_store import InMemoryCredentialStore, MongoCredentialStore
from crm_connector_backend.core.errors import InvalidCredentialError, NotFoundError
from crm_connector_backend.core.security import SecretBox

from conftest import DOMAIN, NOW, seed


class FakeCollection:
    """Enough of a motor collection for the credential store."""

    def __init__(self):
        self.docs: Dict[str, Dict[str, Any]] = {}

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        doc = self.docs.get(query["_id"])
        return copy.deepcopy(doc) if doc else None

    async def find_one_and_update(self, query, update, upsert=False, return_document=ReturnDocument.BEFORE):
        key = query["_id"]
        doc = self.docs.get(key)
        if doc is None:
            assert upsert
            doc = {"_id": key, **update.get("$setOnInsert", {})}
        doc.update(update["$set"])
        self.docs[key] = doc
        assert return_document is ReturnDocument.AFTER
        return copy.deepcopy(doc)


@pytest.mark.asyncio
async def test_memory_store_find_and_get(store):
    assert await store.find("T1") is None
    with pytest.raises(NotFoundError) as exc:
        await store.get("T1")
    assert exc.value.http_status == 404

    await seed(store)
    credential = await store.get("T1")
    assert credential.access_token == "old-access"
    assert credential.provider_domain == DOMAIN
    assert credential.issued_at == NOW
    assert len(store) == 1


@pytest.mark.asyncio
async def test_memory_store_overwrite_keeps_created_at(store):
    await seed(store)
    later = NOW + timedelta(hours=1)
    updated = await seed(store, access_token="a2", refresh_token="r2", issued_at=later)

    assert updated.access_token == "a2"
    assert updated.issued_at == later
    assert updated.created_at == NOW
    assert len(store) == 1


@pytest.mark.asyncio
async def test_memory_store_rejects_invalid_write_without_touching_record(store):
    await seed(store)
    with pytest.raises(ValidationError):
        await seed(store, access_token="broken", expires_in_seconds=-1)
    assert (await store.get("T1")).access_token == "old-access"


@pytest.mark.asyncio
async def test_memory_store_returns_copies(store):
    await seed(store)
    credential = await store.get("T1")
    credential.access_token = "mutated"
    assert (await store.get("T1")).access_token == "old-access"


def test_credential_repr_hides_tokens():
    from crm_connector_backend.core.models import Credential

    credential = Credential(tenant_id="T1", provider_domain=DOMAIN, access_token="secret-a", refresh_token="secret-r", expires_in_seconds=3600)
    assert "secret" not in repr(credential)
    assert "secret" not in str(credential)


@pytest.mark.asyncio
async def test_mongo_store_encrypts_tokens_at_rest():
    collection = FakeCollection()
    mongo = MongoCredentialStore(collection, SecretBox("unit-test-key"))

    credential = await mongo.upsert(
        "T1",
        access_token="plain-access",
        refresh_token="plain-refresh",
        expires_in_seconds=3600,
        provider_domain=DOMAIN,
        now=NOW,
    )
    raw = collection.docs["T1"]
    assert raw["access_token"] != "plain-access"
    assert raw["refresh_token"] != "plain-refresh"
    assert raw["created_at"] == NOW
    assert credential.access_token == "plain-access"

    later = NOW + timedelta(minutes=50)
    await mongo.upsert(
        "T1",
        access_token="next-access",
        refresh_token="next-refresh",
        expires_in_seconds=3600,
        provider_domain=DOMAIN,
        now=later,
    )
    loaded = await mongo.get("T1")
    assert loaded.access_token == "next-access"
    assert loaded.refresh_token == "next-refresh"
    assert loaded.issued_at == later
    assert loaded.created_at == NOW


@pytest.mark.asyncio
async def test_mongo_store_unreadable_token_is_invalid_credential():
    collection = FakeCollection()
    await MongoCredentialStore(collection, SecretBox("key-one")).upsert(
        "T1", access_token="a", refresh_token="r", expires_in_seconds=3600, provider_domain=DOMAIN, now=NOW
    )
    with pytest.raises(InvalidCredentialError):
        await MongoCredentialStore(collection, SecretBox("key-two")).get("T1")


@pytest.mark.asyncio
async def test_mongo_store_missing_tenant():
    mongo = MongoCredentialStore(FakeCollection(), SecretBox("k"))
    assert await mongo.find("nobody") is None


@pytest.mark.asyncio
async def test_memory_store_upsert_with_info_logging(store, caplog):
    caplog.set_level(logging.INFO, logger="crm_connector_backend.core.credential_store")

    await seed(store)
    await seed(store, access_token="a2")

    records = [r for r in caplog.records if r.getMessage() == "Credential stored"]
    assert [r.is_new for r in records] == [True, False]
    assert (await store.get("T1")).access_token == "a2"
