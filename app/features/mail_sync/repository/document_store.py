"""
Storage interface consumed by the sync pipeline.

A hierarchical, per-tenant document store. Every write is a merge keyed
by the document's natural key; nothing here reads before writing.

Backends implement the primitives (documents, listing, transactions);
the credential, sync job and cursor helpers are built on top of them.
"""

from abc import ABC, abstractmethod
from collections.abc import Collection, Mapping
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from typing import Any

from app.features.mail_sync.domain import StoredCursor
from app.features.mail_sync.domain.models import parse_timestamp
from app.features.mail_sync.domain.records import to_iso

from .paths import CREDENTIAL_DOC_ID, cursor_doc_id, settings_path, sync_jobs_path

Document = dict[str, Any]


class DocumentStore(ABC):
    # --- primitives ----------------------------------------------------

    @abstractmethod
    async def get_document(self, collection_path: str, doc_id: str) -> Document | None:
        """Return the document (with an ``id`` key) or None."""

    @abstractmethod
    async def merge_by_natural_key(
        self,
        collection_path: str,
        natural_key: str,
        fields: Mapping[str, Any],
        *,
        defaults: Mapping[str, Any] | None = None,
        increments: Mapping[str, int] | None = None,
        maximums: Mapping[str, Any] | None = None,
    ) -> bool:
        """
        Upsert without a precondition read.

        ``fields`` overwrite, ``defaults`` are only written when the key is
        absent, ``increments`` add to numeric counters and ``maximums`` keep
        the larger of the stored and the given value (None is ignored).

        Returns True when the document was created by this call.
        """

    @abstractmethod
    async def update_if(
        self,
        collection_path: str,
        doc_id: str,
        fields: Mapping[str, Any],
        *,
        field: str,
        allowed: Collection[Any],
        increments: Mapping[str, int] | None = None,
    ) -> bool:
        """
        Merge into an existing document only while ``field`` holds one of
        ``allowed``. The check is part of the write.

        Returns False when the document is missing or the guard failed.
        """

    @abstractmethod
    async def find_by_field(
        self, collection_path: str, field: str, value: Any
    ) -> Document | None:
        """Return the first document whose ``field`` equals ``value``."""

    @abstractmethod
    async def list_documents(
        self,
        collection_path: str,
        *,
        where: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]: ...

    @abstractmethod
    async def delete_documents(self, collection_path: str, doc_ids: list[str]) -> int: ...

    @abstractmethod
    async def list_tenants_with_credentials(self) -> list[str]: ...

    @abstractmethod
    async def lock(self, key: str) -> None:
        """Hold an exclusive lock on ``key`` until the current transaction ends."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager["DocumentStore"]:
        """Async context manager yielding a store bound to one transaction."""

    # --- credentials ---------------------------------------------------

    async def get_credential(self, tenant_id: str) -> Document | None:
        return await self.get_document(settings_path(tenant_id), CREDENTIAL_DOC_ID)

    async def merge_credential(self, tenant_id: str, fields: Mapping[str, Any]) -> None:
        await self.merge_by_natural_key(settings_path(tenant_id), CREDENTIAL_DOC_ID, fields)

    # --- sync jobs -----------------------------------------------------

    async def merge_sync_job(
        self,
        tenant_id: str,
        job_id: str,
        fields: Mapping[str, Any],
        *,
        increments: Mapping[str, int] | None = None,
    ) -> None:
        await self.merge_by_natural_key(
            sync_jobs_path(tenant_id), job_id, fields, increments=increments
        )

    async def update_sync_job_if_status(
        self,
        tenant_id: str,
        job_id: str,
        statuses: Collection[str],
        fields: Mapping[str, Any],
        *,
        increments: Mapping[str, int] | None = None,
    ) -> bool:
        return await self.update_if(
            sync_jobs_path(tenant_id),
            job_id,
            fields,
            field="status",
            allowed=statuses,
            increments=increments,
        )

    async def get_sync_job(self, tenant_id: str, job_id: str) -> Document | None:
        return await self.get_document(sync_jobs_path(tenant_id), job_id)

    async def list_sync_jobs(
        self, tenant_id: str, *, source: str | None = None, limit: int | None = 20
    ) -> list[Document]:
        """Newest first."""
        return await self.list_documents(
            sync_jobs_path(tenant_id),
            where={"source": source} if source else None,
            order_by="createdAt",
            descending=True,
            limit=limit,
        )

    async def list_sync_jobs_with_status(
        self, tenant_id: str, source: str, statuses: Collection[str]
    ) -> list[Document]:
        jobs: list[Document] = []
        for status in statuses:
            jobs += await self.list_documents(
                sync_jobs_path(tenant_id), where={"source": source, "status": status}
            )
        return jobs

    async def delete_sync_jobs(self, tenant_id: str, job_ids: list[str]) -> int:
        if not job_ids:
            return 0
        return await self.delete_documents(sync_jobs_path(tenant_id), job_ids)

    # --- cursors -------------------------------------------------------

    async def get_cursor(self, tenant_id: str, source: str) -> StoredCursor | None:
        doc = await self.get_document(settings_path(tenant_id), cursor_doc_id(source))
        if doc is None:
            return None
        return StoredCursor(
            value=doc.get("cursor"), updated_at=parse_timestamp(doc.get("cursorUpdatedAt"))
        )

    async def set_cursor(self, tenant_id: str, source: str, cursor: str | None) -> None:
        await self.merge_by_natural_key(
            settings_path(tenant_id),
            cursor_doc_id(source),
            {"cursor": cursor, "cursorUpdatedAt": to_iso(datetime.now(UTC))},
        )

    async def clear_cursor(self, tenant_id: str, source: str) -> None:
        await self.set_cursor(tenant_id, source, None)
