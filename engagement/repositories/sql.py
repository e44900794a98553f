"""SQLAlchemy-backed authoritative engagement store.

Every mutation runs in a single transaction together with its
``applied_operations`` marker, so a record change and its idempotency
bookkeeping commit or roll back as one.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from engagement.challenges.schemas import Acceptance, Review, Submission
from engagement.infrastructure.database.models import (
    AcceptanceRow,
    AppliedOperationRow,
    Base,
    ConsistencyRepairRow,
    ReviewRow,
    SubmissionRow,
)
from engagement.infrastructure.database.session import (
    create_session_factory,
    create_tables,
    get_db_session,
    verify_connection,
)
from engagement.repositories.base import (
    EngagementMutation,
    EngagementSnapshot,
    EngagementStore,
    check_preconditions,
)
from engagement.repositories.exceptions import RepositoryError, StoreConnectionError
from engagement.shared.schemas.base import ReviewStatus
from engagement.shared.utils.datetime_utils import ensure_utc, next_timestamp
from engagement.shared.utils.logging import get_logger

logger = get_logger(__name__)


def _row_data(row: Base) -> dict[str, Any]:
    """Column values of a row with datetimes normalized to UTC."""
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, datetime):
            value = ensure_utc(value)
        data[column.key] = value
    return data


def _to_acceptance(row: AcceptanceRow) -> Acceptance:
    return Acceptance.model_validate(_row_data(row))


def _to_submission(row: SubmissionRow) -> Submission:
    return Submission.model_validate(_row_data(row))


def _to_review(row: ReviewRow) -> Review:
    return Review.model_validate(_row_data(row))


def _acceptance_row(acceptance: Acceptance, updated_at: datetime) -> AcceptanceRow:
    return AcceptanceRow(
        id=acceptance.id,
        username=acceptance.username,
        challenge_id=acceptance.challenge_id,
        status=acceptance.status.value,
        committed_date=acceptance.committed_date,
        accepted_at=acceptance.accepted_at,
        updated_at=updated_at,
        withdrawn_at=acceptance.withdrawn_at,
        withdrawn_by=acceptance.withdrawn_by,
    )


def _submission_row(submission: Submission, updated_at: datetime) -> SubmissionRow:
    data = submission.model_dump(exclude={"submitted", "supporting_docs", "updated_at"})
    return SubmissionRow(
        **data,
        supporting_docs=[d.model_dump() for d in submission.supporting_docs],
        updated_at=updated_at,
    )


def _review_row(review: Review, updated_at: datetime) -> ReviewRow:
    data = review.model_dump(exclude={"status", "updated_at"})
    return ReviewRow(**data, status=review.status.value, updated_at=updated_at)


class SqlEngagementStore(EngagementStore):
    """Engagement store over an async SQLAlchemy engine."""

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory or create_session_factory(engine)
        self._last_stamp: datetime | None = None

    async def create_schema(self) -> None:
        await create_tables(self._engine)

    # ===========================================
    # READS
    # ===========================================

    async def get_acceptance(self, acceptance_id: str) -> Acceptance | None:
        async with get_db_session(self._session_factory) as session:
            row = await session.get(AcceptanceRow, acceptance_id)
            return _to_acceptance(row) if row else None

    async def list_acceptances(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
    ) -> list[Acceptance]:
        query = select(AcceptanceRow)
        if username is not None:
            query = query.where(AcceptanceRow.username == username)
        if challenge_id is not None:
            query = query.where(AcceptanceRow.challenge_id == challenge_id)
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(query.order_by(AcceptanceRow.accepted_at))
            return [_to_acceptance(row) for row in result.scalars().all()]

    async def get_submission(self, acceptance_id: str) -> Submission | None:
        async with get_db_session(self._session_factory) as session:
            row = await session.get(SubmissionRow, acceptance_id)
            return _to_submission(row) if row else None

    async def list_submissions(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
    ) -> list[Submission]:
        query = select(SubmissionRow)
        if username is not None:
            query = query.where(SubmissionRow.username == username)
        if challenge_id is not None:
            query = query.where(SubmissionRow.challenge_id == challenge_id)
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(query.order_by(SubmissionRow.submitted_at))
            return [_to_submission(row) for row in result.scalars().all()]

    async def get_review(self, acceptance_id: str) -> Review | None:
        async with get_db_session(self._session_factory) as session:
            row = await session.get(ReviewRow, acceptance_id)
            return _to_review(row) if row else None

    async def list_reviews(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
        status: ReviewStatus | None = None,
    ) -> list[Review]:
        query = select(ReviewRow)
        if username is not None:
            query = query.where(ReviewRow.username == username)
        if challenge_id is not None:
            query = query.where(ReviewRow.challenge_id == challenge_id)
        if status is not None:
            query = query.where(ReviewRow.status == status.value)
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(query.order_by(ReviewRow.updated_at))
            return [_to_review(row) for row in result.scalars().all()]

    async def snapshot(self, username: str | None = None) -> EngagementSnapshot:
        return EngagementSnapshot(
            acceptances=await self.list_acceptances(username=username),
            submissions=await self.list_submissions(username=username),
            reviews=await self.list_reviews(username=username),
        )

    async def list_repairs(self, username: str | None = None) -> list[dict[str, Any]]:
        """Audit entries of consistency repairs."""
        query = select(ConsistencyRepairRow).order_by(ConsistencyRepairRow.id)
        if username is not None:
            query = query.where(ConsistencyRepairRow.username == username)
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(query)
            return [_row_data(row) for row in result.scalars().all()]

    # ===========================================
    # WRITES
    # ===========================================

    async def apply(self, mutation: EngagementMutation) -> EngagementSnapshot:
        touched = mutation.acceptance_ids
        try:
            async with get_db_session(self._session_factory) as session:
                async with session.begin():
                    already = await session.get(AppliedOperationRow, mutation.operation_id)
                    if already is None:
                        await self._write(session, mutation)
                    else:
                        logger.debug(
                            "mutation_already_applied",
                            operation_id=mutation.operation_id,
                        )
                return await self._load_touched(session, touched)
        except OperationalError as e:
            raise StoreConnectionError("Database unavailable") from e
        except IntegrityError as e:
            raise RepositoryError(
                "Mutation violates a database constraint",
                {"operation_id": mutation.operation_id},
            ) from e

    async def _write(self, session: AsyncSession, mutation: EngagementMutation) -> None:
        rows = await session.execute(
            select(AcceptanceRow)
            .where(AcceptanceRow.username == mutation.username)
            .with_for_update()
        )
        user_acceptances = [_to_acceptance(r) for r in rows.scalars().all()]
        stored = {a.id: a for a in user_acceptances}
        foreign = set(mutation.expected_statuses) - set(stored)
        if foreign:
            others = await session.execute(select(AcceptanceRow).where(AcceptanceRow.id.in_(list(foreign))))
            stored.update((r.id, _to_acceptance(r)) for r in others.scalars().all())
        check_preconditions(mutation, stored, user_acceptances)

        self._last_stamp = next_timestamp(self._last_stamp)
        stamp = self._last_stamp

        if mutation.deleted_submissions:
            await session.execute(
                delete(SubmissionRow).where(
                    SubmissionRow.acceptance_id.in_(mutation.deleted_submissions)
                )
            )
        if mutation.deleted_reviews:
            await session.execute(
                delete(ReviewRow).where(ReviewRow.acceptance_id.in_(mutation.deleted_reviews))
            )
        for acceptance in mutation.acceptances:
            await session.merge(_acceptance_row(acceptance, stamp))
        for submission in mutation.submissions:
            await session.merge(_submission_row(submission, stamp))
        for review in mutation.reviews:
            await session.merge(_review_row(review, stamp))

        session.add(AppliedOperationRow(
            operation_id=mutation.operation_id,
            kind=mutation.kind.value,
            username=mutation.username,
        ))
        if mutation.audit is not None:
            session.add(ConsistencyRepairRow(
                operation_id=mutation.operation_id,
                username=mutation.username,
                challenge_id=mutation.challenge_id,
                details=mutation.audit,
            ))

    async def _load_touched(
        self,
        session: AsyncSession,
        acceptance_ids: set[str],
    ) -> EngagementSnapshot:
        if not acceptance_ids:
            return EngagementSnapshot()
        ids = list(acceptance_ids)
        acceptances = await session.execute(select(AcceptanceRow).where(AcceptanceRow.id.in_(ids)))
        submissions = await session.execute(
            select(SubmissionRow).where(SubmissionRow.acceptance_id.in_(ids))
        )
        reviews = await session.execute(select(ReviewRow).where(ReviewRow.acceptance_id.in_(ids)))
        return EngagementSnapshot(
            acceptances=[_to_acceptance(r) for r in acceptances.scalars().all()],
            submissions=[_to_submission(r) for r in submissions.scalars().all()],
            reviews=[_to_review(r) for r in reviews.scalars().all()],
        )

    async def ping(self) -> bool:
        try:
            await verify_connection(self._engine)
        except OperationalError:
            logger.warning("database_ping_failed")
            return False
        return True

    async def close(self) -> None:
        await self._engine.dispose()


__all__ = ["SqlEngagementStore"]
