import os

from cryptography.fernet import Fernet

# Settings are read at import time
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("HASHING_SECRET", "test-hashing-secret-" + "x" * 16)

import copy  # noqa: E402
import re  # noqa: E402
from collections import defaultdict  # noqa: E402
from contextlib import asynccontextmanager  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402

from app.auth.verify import auth_dependency, current_tenant_id  # noqa: E402
from app.config import SyncConfig  # noqa: E402
from app.db.helpers import DatabaseError  # noqa: E402
from app.features.mail_sync.domain.records import to_iso  # noqa: E402
from app.features.mail_sync.repository.document_store import DocumentStore  # noqa: E402
from app.security.encryption import encrypt_token  # noqa: E402

_SETTINGS_PATH = re.compile(r"^tenant/([^/]+)/settings$")


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store with the same merge semantics as the Postgres backend."""

    def __init__(self):
        self.collections: dict[str, dict[str, dict]] = defaultdict(dict)
        self.reads = 0
        self.writes = 0
        self.lookups = 0
        self.failing_paths: set[str] = set()
        self.locks: list[str] = []

    def docs(self, collection_path: str) -> dict[str, dict]:
        return self.collections.get(collection_path, {})

    async def get_document(self, collection_path, doc_id):
        self.reads += 1
        doc = self.collections.get(collection_path, {}).get(doc_id)
        if doc is None:
            return None
        return {**copy.deepcopy(doc), "id": doc_id}

    async def merge_by_natural_key(
        self, collection_path, natural_key, fields, *, defaults=None, increments=None, maximums=None
    ):
        self.writes += 1
        if any(collection_path.startswith(p) for p in self.failing_paths):
            raise DatabaseError(f"simulated failure writing {collection_path}", operation="merge")

        increments = {k: v for k, v in (increments or {}).items() if v}
        maximums = {k: v for k, v in (maximums or {}).items() if v is not None}
        collection = self.collections[collection_path]
        existing = collection.get(natural_key)

        if existing is None:
            collection[natural_key] = copy.deepcopy(
                {**(defaults or {}), **fields, **increments, **maximums}
            )
            return True

        merged = {**(defaults or {}), **existing, **fields}
        for key, amount in increments.items():
            merged[key] = (existing.get(key) or 0) + amount
        for key, value in maximums.items():
            current = existing.get(key)
            merged[key] = value if current is None else max(current, value)
        collection[natural_key] = copy.deepcopy(merged)
        return False

    async def update_if(self, collection_path, doc_id, fields, *, field, allowed, increments=None):
        self.writes += 1
        existing = self.collections.get(collection_path, {}).get(doc_id)
        if existing is None or existing.get(field) not in set(allowed):
            return False

        merged = {**existing, **fields}
        for key, amount in (increments or {}).items():
            merged[key] = (existing.get(key) or 0) + amount
        self.collections[collection_path][doc_id] = copy.deepcopy(merged)
        return True

    async def find_by_field(self, collection_path, field, value):
        self.reads += 1
        self.lookups += 1
        for doc_id, doc in self.collections.get(collection_path, {}).items():
            if doc.get(field) == value:
                return {**copy.deepcopy(doc), "id": doc_id}
        return None

    async def list_documents(
        self, collection_path, *, where=None, order_by=None, descending=False, limit=None
    ):
        self.reads += 1
        docs = [
            {**copy.deepcopy(doc), "id": doc_id}
            for doc_id, doc in self.collections.get(collection_path, {}).items()
            if all(doc.get(k) == v for k, v in (where or {}).items())
        ]
        if order_by:
            docs.sort(key=lambda d: (d.get(order_by) or "", d["id"]), reverse=descending)
        return docs[:limit] if limit is not None else docs

    async def delete_documents(self, collection_path, doc_ids):
        collection = self.collections.get(collection_path, {})
        deleted = 0
        for doc_id in doc_ids:
            if collection.pop(doc_id, None) is not None:
                deleted += 1
        return deleted

    async def list_tenants_with_credentials(self):
        tenants = []
        for path, docs in self.collections.items():
            match = _SETTINGS_PATH.match(path)
            if match and "credential" in docs:
                tenants.append(match.group(1))
        return sorted(tenants)

    async def lock(self, key):
        self.locks.append(key)

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy(self.collections)
        try:
            yield self
        except BaseException:
            self.collections = snapshot
            raise


async def seed_credential(
    store: DocumentStore,
    tenant_id: str,
    *,
    access_token: str | None = "cached-access",
    expires_in_seconds: int = 3600,
    scope: str = "https://www.googleapis.com/auth/gmail.readonly https://www.googleapis.com/auth/calendar.readonly",
    account_email: str | None = "me@example.com",
    refresh_token: str = "refresh-1",
) -> None:
    fields = {
        "refreshToken": encrypt_token(refresh_token),
        "expiresAt": to_iso(datetime.now(UTC) + timedelta(seconds=expires_in_seconds)),
        "scope": scope,
        "accountEmail": account_email,
    }
    if access_token:
        fields["accessToken"] = encrypt_token(access_token)
    await store.merge_credential(tenant_id, fields)


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def sync_config():
    return SyncConfig(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://app.example.com/auth/google/done",
        page_size=50,
        retry_ceiling=3,
        backoff_base_seconds=1.0,
        backoff_max_seconds=30.0,
    )


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override
        app.dependency_overrides[current_tenant_id] = lambda: "user-123"

    return _apply
