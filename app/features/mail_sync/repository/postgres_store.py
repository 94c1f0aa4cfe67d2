"""
PostgreSQL implementation of the document store.

All documents live in a single ``documents`` table keyed by
(collection_path, doc_id) with a JSONB body. Merges are one
``INSERT ... ON CONFLICT DO UPDATE`` statement each, so a write never
needs a read first and concurrent writers converge.
"""

import re
from collections.abc import AsyncIterator, Collection, Mapping
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.db.pool import get_db_transaction
from app.infrastructure.observability.logging import get_logger

from .document_store import Document, DocumentStore

logger = get_logger(__name__)

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        collection_path TEXT NOT NULL,
        doc_id TEXT NOT NULL,
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (collection_path, doc_id)
    )
    """,
    # Contact resolution looks up by primary address within a tenant
    """
    CREATE INDEX IF NOT EXISTS documents_primary_email_idx
        ON documents (collection_path, (data -> 'primaryEmail'))
    """,
    """
    CREATE INDEX IF NOT EXISTS documents_credential_idx
        ON documents (doc_id) WHERE doc_id = 'credential'
    """,
)


class DocumentStoreError(DatabaseError):
    """More specific exception for document store failures."""


def _field(name: str) -> str:
    if not _FIELD_NAME.match(name):
        raise DocumentStoreError(f"Unsupported field name: {name!r}", operation="query")
    return name


def _row_to_document(row: dict | None) -> Document | None:
    if not row:
        return None
    return {**row["data"], "id": row["doc_id"]}


def _merged_data_expression(
    fields: Mapping[str, Any],
    defaults: Mapping[str, Any],
    increments: Mapping[str, int],
    maximums: Mapping[str, Any],
) -> tuple[str, list[Any]]:
    """SQL for the stored document after a merge, with its parameters."""
    expr = "%s::jsonb || documents.data || %s::jsonb"
    params: list[Any] = [Jsonb(dict(defaults)), Jsonb(dict(fields))]

    for key, amount in increments.items():
        expr = (
            f"jsonb_set({expr}, ARRAY[%s::text], "
            f"to_jsonb(COALESCE((documents.data ->> %s)::numeric, 0) + %s::numeric))"
        )
        params += [key, key, amount]

    for key, value in maximums.items():
        expr = (
            f"jsonb_set({expr}, ARRAY[%s::text], "
            f"GREATEST(documents.data -> %s, %s::jsonb))"
        )
        params += [key, key, Jsonb(value)]

    return expr, params


def build_merge_statement(
    collection_path: str,
    natural_key: str,
    fields: Mapping[str, Any],
    defaults: Mapping[str, Any],
    increments: Mapping[str, int],
    maximums: Mapping[str, Any],
) -> tuple[str, list[Any]]:
    """
    Compose the upsert for merge_by_natural_key.

    On insert the document is defaults | fields | increments | maximums.
    On conflict: defaults under the stored data, fields over it, then each
    increment/maximum applied against the stored value.
    """
    inserted = {**defaults, **fields, **increments, **maximums}
    update_expr, update_params = _merged_data_expression(fields, defaults, increments, maximums)

    query = f"""
        INSERT INTO documents (collection_path, doc_id, data)
        VALUES (%s, %s, %s)
        ON CONFLICT (collection_path, doc_id) DO UPDATE
        SET data = {update_expr},
            updated_at = NOW()
        RETURNING (xmax = 0) AS inserted
    """
    params = [collection_path, natural_key, Jsonb(inserted), *update_params]
    return query, params


def build_guarded_update(
    collection_path: str,
    doc_id: str,
    fields: Mapping[str, Any],
    field: str,
    allowed: list[str],
    increments: Mapping[str, int],
) -> tuple[str, list[Any]]:
    """Compose the UPDATE for update_if; it matches no row when the guard fails."""
    update_expr, update_params = _merged_data_expression(fields, {}, increments, {})
    query = f"""
        UPDATE documents
        SET data = {update_expr},
            updated_at = NOW()
        WHERE collection_path = %s AND doc_id = %s
          AND documents.data ->> '{_field(field)}' = ANY(%s)
        RETURNING doc_id
    """
    params = [*update_params, collection_path, doc_id, allowed]
    return query, params


class PostgresDocumentStore(DocumentStore):
    """Document store backed by the shared psycopg pool."""

    def __init__(self, connection: psycopg.AsyncConnection | None = None):
        self._connection = connection

    @classmethod
    async def ensure_schema(cls) -> None:
        """Create the documents table and indexes if missing."""
        for statement in SCHEMA_STATEMENTS:
            await execute_query(statement)
        logger.info("Document store schema ensured")

    @with_db_retry(max_retries=2, base_delay=0.1)
    async def get_document(self, collection_path: str, doc_id: str) -> Document | None:
        row = await fetch_one(
            "SELECT doc_id, data FROM documents WHERE collection_path = %s AND doc_id = %s",
            (collection_path, doc_id),
            connection=self._connection,
        )
        return _row_to_document(row)

    @with_db_retry(max_retries=2, base_delay=0.1)
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
        query, params = build_merge_statement(
            collection_path,
            natural_key,
            fields,
            defaults or {},
            {k: v for k, v in (increments or {}).items() if v},
            {k: v for k, v in (maximums or {}).items() if v is not None},
        )
        row = await fetch_one(query, tuple(params), connection=self._connection)
        if not row:
            raise DocumentStoreError(
                f"Upsert returned no row for {collection_path}/{natural_key}",
                operation="merge",
            )
        return bool(row["inserted"])

    @with_db_retry(max_retries=2, base_delay=0.1)
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
        query, params = build_guarded_update(
            collection_path,
            doc_id,
            fields,
            field,
            [str(value) for value in allowed],
            {k: v for k, v in (increments or {}).items() if v},
        )
        row = await fetch_one(query, tuple(params), connection=self._connection)
        return row is not None

    @with_db_retry(max_retries=2, base_delay=0.1)
    async def find_by_field(
        self, collection_path: str, field: str, value: Any
    ) -> Document | None:
        row = await fetch_one(
            f"""
            SELECT doc_id, data FROM documents
            WHERE collection_path = %s AND data -> '{_field(field)}' = %s::jsonb
            ORDER BY created_at
            LIMIT 1
            """,
            (collection_path, Jsonb(value)),
            connection=self._connection,
        )
        return _row_to_document(row)

    async def list_documents(
        self,
        collection_path: str,
        *,
        where: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        clauses = ["collection_path = %s"]
        params: list[Any] = [collection_path]
        for key, value in (where or {}).items():
            clauses.append(f"data -> '{_field(key)}' = %s::jsonb")
            params.append(Jsonb(value))

        query = f"SELECT doc_id, data FROM documents WHERE {' AND '.join(clauses)}"
        if order_by:
            direction = "DESC" if descending else "ASC"
            query += f" ORDER BY data ->> '{_field(order_by)}' {direction}, doc_id {direction}"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)

        rows = await fetch_all(query, tuple(params), connection=self._connection)
        return [_row_to_document(row) for row in rows]

    async def delete_documents(self, collection_path: str, doc_ids: list[str]) -> int:
        return await execute_query(
            "DELETE FROM documents WHERE collection_path = %s AND doc_id = ANY(%s)",
            (collection_path, list(doc_ids)),
            connection=self._connection,
        )

    async def list_tenants_with_credentials(self) -> list[str]:
        rows = await fetch_all(
            """
            SELECT split_part(collection_path, '/', 2) AS tenant_id
            FROM documents
            WHERE doc_id = 'credential' AND collection_path LIKE %s
            ORDER BY 1
            """,
            ("tenant/%/settings",),
            connection=self._connection,
        )
        return [row["tenant_id"] for row in rows]

    async def lock(self, key: str) -> None:
        if self._connection is None:
            raise DocumentStoreError("Locks are only held inside a transaction", operation="lock")
        await fetch_one(
            "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0)) AS locked",
            (key,),
            connection=self._connection,
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["PostgresDocumentStore"]:
        if self._connection is not None:
            # Already inside a transaction; psycopg nests as a savepoint
            async with self._connection.transaction():
                yield self
            return

        try:
            async with await get_db_transaction() as conn:
                yield PostgresDocumentStore(connection=conn)
        except psycopg.Error as e:
            logger.error("Document store transaction failed", error=str(e))
            raise DocumentStoreError(f"Transaction failed: {e}", operation="transaction") from e
