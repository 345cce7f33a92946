"""
Meeting request persistence.

The store is a narrow document repository: get, create, query, and a single
`update` that applies a MeetingRequestUpdate to the current stored document
under a compare-and-set on the expected prior status.
"""

import asyncio
from typing import Protocol

from psycopg.types.json import Jsonb

from stina.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from stina.db.pool import DatabasePoolManager
from stina.errors import (
    ConcurrentModificationError,
    MeetingRequestNotFoundError,
    ValidationError,
)
from stina.infrastructure.observability.logging import get_logger
from stina.models.domain.meeting_request_domain import (
    MeetingRequest,
    MeetingRequestFilters,
    MeetingRequestStatus,
    MeetingRequestUpdate,
    apply_update,
    validate_invariants,
)

logger = get_logger(__name__)


class MeetingRequestRepository(Protocol):
    async def get(self, meeting_request_id: str) -> MeetingRequest | None: ...

    async def create(self, request: MeetingRequest) -> MeetingRequest: ...

    async def update(
        self,
        meeting_request_id: str,
        update: MeetingRequestUpdate,
        expected_status: MeetingRequestStatus | None = None,
    ) -> MeetingRequest: ...

    async def query(self, filters: MeetingRequestFilters) -> list[MeetingRequest]: ...


def _check_expected_status(
    current: MeetingRequest, expected_status: MeetingRequestStatus | None
) -> None:
    if expected_status is not None and current.status != expected_status:
        raise ConcurrentModificationError(current.id, expected_status, current.status)


class InMemoryMeetingRequestRepository:
    """Process-local store. The lock is held only around synchronous bookkeeping."""

    def __init__(self):
        self._documents: dict[str, MeetingRequest] = {}
        self._lock = asyncio.Lock()

    async def get(self, meeting_request_id: str) -> MeetingRequest | None:
        stored = self._documents.get(meeting_request_id)
        return stored.model_copy(deep=True) if stored else None

    async def create(self, request: MeetingRequest) -> MeetingRequest:
        validate_invariants(request)
        async with self._lock:
            if request.id in self._documents:
                raise ValidationError(f"Meeting request {request.id} already exists", field="id")
            self._documents[request.id] = request.model_copy(deep=True)
        return request.model_copy(deep=True)

    async def update(
        self,
        meeting_request_id: str,
        update: MeetingRequestUpdate,
        expected_status: MeetingRequestStatus | None = None,
    ) -> MeetingRequest:
        async with self._lock:
            current = self._documents.get(meeting_request_id)
            if current is None:
                raise MeetingRequestNotFoundError(meeting_request_id)
            _check_expected_status(current, expected_status)
            updated = apply_update(current, update)
            self._documents[meeting_request_id] = updated
        return updated.model_copy(deep=True)

    async def query(self, filters: MeetingRequestFilters) -> list[MeetingRequest]:
        matches = [r for r in self._documents.values() if filters.matches(r)]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        page = matches[filters.offset : filters.offset + filters.limit]
        return [r.model_copy(deep=True) for r in page]


class PostgresMeetingRequestRepository:
    """JSONB document store on the shared psycopg pool."""

    def __init__(self, db_pool: DatabasePoolManager):
        self.db_pool = db_pool

    @with_db_retry(max_retries=2)
    async def get(self, meeting_request_id: str) -> MeetingRequest | None:
        row = await fetch_one(
            self.db_pool,
            "SELECT document FROM meeting_requests WHERE id = %s",
            (meeting_request_id,),
        )
        return MeetingRequest.from_document(row["document"]) if row else None

    @with_db_retry(max_retries=2)
    async def create(self, request: MeetingRequest) -> MeetingRequest:
        validate_invariants(request)
        affected = await execute_query(
            self.db_pool,
            """
            INSERT INTO meeting_requests (id, status, creator_email, document, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO NOTHING
            """,
            (
                request.id,
                request.status.value,
                request.creator.email,
                Jsonb(request.to_document()),
                request.created_at,
                request.updated_at,
            ),
        )
        if affected == 0:
            raise ValidationError(f"Meeting request {request.id} already exists", field="id")

        logger.info(
            "Meeting request stored",
            meeting_request_id=request.id,
            status=request.status.value,
        )
        return request

    @with_db_retry(max_retries=2)
    async def update(
        self,
        meeting_request_id: str,
        update: MeetingRequestUpdate,
        expected_status: MeetingRequestStatus | None = None,
    ) -> MeetingRequest:
        async with self.db_pool.transaction() as conn:
            row = await fetch_one(
                self.db_pool,
                "SELECT document FROM meeting_requests WHERE id = %s FOR UPDATE",
                (meeting_request_id,),
                connection=conn,
            )
            if row is None:
                raise MeetingRequestNotFoundError(meeting_request_id)

            current = MeetingRequest.from_document(row["document"])
            _check_expected_status(current, expected_status)
            updated = apply_update(current, update)

            await execute_query(
                self.db_pool,
                """
                UPDATE meeting_requests
                SET status = %s, document = %s, updated_at = %s
                WHERE id = %s
                """,
                (
                    updated.status.value,
                    Jsonb(updated.to_document()),
                    updated.updated_at,
                    meeting_request_id,
                ),
                connection=conn,
            )

        return updated

    @with_db_retry(max_retries=2)
    async def query(self, filters: MeetingRequestFilters) -> list[MeetingRequest]:
        clauses: list[str] = []
        params: list = []

        if filters.statuses:
            clauses.append("status = ANY(%s)")
            params.append([s.value for s in filters.statuses])
        if filters.creator_email:
            clauses.append("lower(creator_email) = %s")
            params.append(filters.creator_email.strip().lower())
        if filters.participant:
            clauses.append(
                "EXISTS (SELECT 1 FROM jsonb_array_elements(document->'participants') p "
                "WHERE lower(p->>'email') = %s)"
            )
            params.append(filters.participant.strip().lower())
        if filters.urgency:
            clauses.append("document->'metadata'->>'urgency' = %s")
            params.append(filters.urgency.value)
        if filters.created_from:
            clauses.append("created_at >= %s")
            params.append(filters.created_from)
        if filters.created_to:
            clauses.append("created_at <= %s")
            params.append(filters.created_to)
        if filters.thread_id:
            clauses.append("document->'communications' @> %s")
            params.append(Jsonb([{"thread_id": filters.thread_id}]))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"""
            SELECT document FROM meeting_requests
            {where}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
        """
        params.extend([filters.limit, filters.offset])

        rows = await fetch_all(self.db_pool, query, tuple(params))
        return [MeetingRequest.from_document(row["document"]) for row in rows]
