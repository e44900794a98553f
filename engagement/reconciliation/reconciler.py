"""Write-through reconciliation between the local cache and the authority.

Every mutation is applied to the local cache first, without awaiting, so
reads immediately reflect it. The same mutation is then pushed to the
authoritative store with retries and a per-attempt timeout. Exhausted
retries park the mutation in the outbox; it is replayed in order on the
next connectivity check, background sync, or ``reload()``. The background
sync also pulls every cached user so changes made elsewhere show up.

Remote wins: whatever the authority returns for the touched records
overwrites the local copy, except for records still owned by another
parked mutation and records the authority has already reported at a newer
``updated_at`` than the reply carries.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import Field

from engagement.config import EngagementSettings
from engagement.infrastructure.events import ChangeNotifier, EngagementEvent
from engagement.infrastructure.scheduler import PeriodicScheduler
from engagement.reconciliation.outbox import Outbox, PendingOperation
from engagement.repositories.base import (
    EngagementMutation,
    EngagementSnapshot,
    EngagementStore,
)
from engagement.repositories.exceptions import RemoteRejectedError
from engagement.repositories.memory import InMemoryEngagementStore
from engagement.repositories.resilience import (
    RetryConfig,
    call_with_timeout,
    retry_call,
    sanitize_error_for_logging,
)
from engagement.shared.schemas.base import (
    MUTATION_CHANGE_KINDS,
    BaseSchema,
    ChangeKind,
    SyncState,
)
from engagement.shared.utils.datetime_utils import utcnow
from engagement.shared.utils.logging import get_logger

logger = get_logger(__name__)

PullHook = Callable[[str], Awaitable[Any]]


class LocalCacheState(BaseSchema):
    """Persisted form of the local cache, its outbox and confirmed versions."""

    snapshot: EngagementSnapshot = Field(default_factory=EngagementSnapshot)
    pending: list[PendingOperation] = Field(default_factory=list)
    confirmed: dict[str, datetime] = Field(default_factory=dict)
    saved_at: datetime = Field(default_factory=utcnow)


class Reconciler:
    """Presents one logical store over a local cache and a remote authority."""

    def __init__(
        self,
        local: InMemoryEngagementStore,
        remote: EngagementStore,
        notifier: ChangeNotifier | None = None,
        retry_config: RetryConfig | None = None,
        timeout: float | None = 5.0,
        outbox: Outbox | None = None,
        sync_interval: float = 30.0,
    ) -> None:
        self._local = local
        self._remote = remote
        self._notifier = notifier or ChangeNotifier()
        self._retry_config = retry_config or RetryConfig()
        self._timeout = timeout
        self._outbox = outbox or Outbox()
        self._sync_interval = sync_interval
        self._flush_lock = asyncio.Lock()
        self._scheduler: PeriodicScheduler | None = None
        self._confirmed: dict[str, datetime] = {}
        self._pull_hooks: list[PullHook] = []

    @classmethod
    def from_settings(
        cls,
        local: InMemoryEngagementStore,
        remote: EngagementStore,
        settings: EngagementSettings,
        notifier: ChangeNotifier | None = None,
    ) -> "Reconciler":
        return cls(
            local=local,
            remote=remote,
            notifier=notifier,
            retry_config=RetryConfig.from_settings(settings),
            timeout=settings.remote_timeout_seconds,
            sync_interval=settings.sync_interval_seconds,
        )

    @property
    def local(self) -> InMemoryEngagementStore:
        return self._local

    @property
    def remote(self) -> EngagementStore:
        return self._remote

    @property
    def notifier(self) -> ChangeNotifier:
        return self._notifier

    @property
    def outbox(self) -> Outbox:
        return self._outbox

    def is_unsynced(self, acceptance_id: str) -> bool:
        """Whether a local record still awaits a successful remote write."""
        return self._outbox.is_unsynced(acceptance_id)

    # ===========================================
    # WRITE-THROUGH
    # ===========================================

    async def apply(self, mutation: EngagementMutation) -> SyncState:
        """Apply a mutation locally, then push it to the authority.

        Returns:
            SYNCED if the authority accepted it, PENDING if it was parked

        Raises:
            RemoteRejectedError: If the authority refused the write. The
                touched records are refreshed from the authority first.
        """
        self._local.apply_now(mutation)
        logger.info(
            "mutation_applied_locally",
            operation_id=mutation.operation_id,
            kind=mutation.kind.value,
            username=mutation.username,
            challenge_id=mutation.challenge_id,
        )

        if self._outbox.has_pending(mutation.username):
            return await self._apply_behind_pending(mutation)

        try:
            remote_records = await retry_call(
                lambda: self._remote.apply(mutation),
                config=self._retry_config,
                timeout=self._timeout,
                operation=f"push_{mutation.kind.value}",
            )
        except self._retry_config.retryable_exceptions as e:
            self._outbox.park(
                mutation,
                attempts=self._retry_config.max_attempts,
                error=sanitize_error_for_logging(e),
            )
            logger.warning(
                "sync_deferred",
                operation_id=mutation.operation_id,
                username=mutation.username,
                challenge_id=mutation.challenge_id,
                pending_count=len(self._outbox),
            )
            self._emit(mutation, MUTATION_CHANGE_KINDS[mutation.kind], SyncState.PENDING)
            return SyncState.PENDING
        except RemoteRejectedError:
            await self._handle_rejection(mutation)
            raise

        self._merge_remote(mutation, remote_records)
        self._emit(mutation, MUTATION_CHANGE_KINDS[mutation.kind], SyncState.SYNCED)
        return SyncState.SYNCED

    async def _apply_behind_pending(self, mutation: EngagementMutation) -> SyncState:
        """Queue a mutation after the user's parked ones and replay them all."""
        self._outbox.park(mutation)
        _, rejected = await self._flush(mutation.username)

        if mutation.operation_id in rejected:
            raise RemoteRejectedError(
                f"Authority rejected operation '{mutation.operation_id}'"
            )
        if mutation.operation_id in self._outbox:
            logger.warning(
                "sync_deferred",
                operation_id=mutation.operation_id,
                username=mutation.username,
                challenge_id=mutation.challenge_id,
                reason="earlier_operations_pending",
                pending_count=len(self._outbox),
            )
            self._emit(mutation, MUTATION_CHANGE_KINDS[mutation.kind], SyncState.PENDING)
            return SyncState.PENDING

        self._emit(mutation, MUTATION_CHANGE_KINDS[mutation.kind], SyncState.SYNCED)
        return SyncState.SYNCED

    def _merge_remote(self, mutation: EngagementMutation, remote_records: EngagementSnapshot) -> None:
        """Overwrite local records with the authority's, sparing unsynced ones."""
        touched = mutation.acceptance_ids - self._outbox.unsynced_acceptance_ids()
        touched = self._current_ids(touched, remote_records)
        if not touched:
            return

        local_records = self._local.snapshot_now().for_acceptances(touched)
        if _differs(local_records, remote_records.for_acceptances(touched)):
            logger.warning(
                "remote_overrode_local",
                operation_id=mutation.operation_id,
                username=mutation.username,
                challenge_id=mutation.challenge_id,
            )
        self._local.overwrite(touched, remote_records)
        self._confirm(touched, remote_records)

    def _current_ids(self, acceptance_ids: set[str], remote_records: EngagementSnapshot) -> set[str]:
        """Drop ids whose remote records are older than ones already confirmed.

        Replies can arrive out of order; a late one must not roll back a
        newer state the authority has already reported.
        """
        versions = remote_records.versions()
        stale = set()
        for acceptance_id in acceptance_ids:
            confirmed = self._confirmed.get(acceptance_id)
            version = versions.get(acceptance_id)
            if confirmed is not None and (version is None or version < confirmed):
                stale.add(acceptance_id)
        if stale:
            logger.info("stale_remote_reply_ignored", acceptance_ids=sorted(stale))
        return acceptance_ids - stale

    def _confirm(self, acceptance_ids: set[str], remote_records: EngagementSnapshot) -> None:
        versions = remote_records.versions()
        for acceptance_id in acceptance_ids:
            if acceptance_id in versions:
                self._confirmed[acceptance_id] = versions[acceptance_id]
            else:
                self._confirmed.pop(acceptance_id, None)

    async def _handle_rejection(self, mutation: EngagementMutation) -> None:
        logger.error(
            "remote_rejected_mutation",
            operation_id=mutation.operation_id,
            username=mutation.username,
            challenge_id=mutation.challenge_id,
        )
        touched = mutation.acceptance_ids - self._outbox.unsynced_acceptance_ids()
        try:
            remote_view = await call_with_timeout(
                lambda: self._remote.snapshot(mutation.username), self._timeout
            )
        except self._retry_config.retryable_exceptions as e:
            logger.warning(
                "rejection_refresh_failed",
                operation_id=mutation.operation_id,
                error_msg=sanitize_error_for_logging(e),
            )
            return
        touched = self._current_ids(touched, remote_view)
        self._local.overwrite(touched, remote_view)
        self._confirm(touched, remote_view)
        self._emit(mutation, ChangeKind.RECONCILED, SyncState.SYNCED)

    # ===========================================
    # OUTBOX REPLAY
    # ===========================================

    async def flush_pending(self, username: str | None = None) -> int:
        """Replay parked mutations in order, one attempt each.

        Stops at the first transient failure so later mutations never
        overtake earlier ones.

        Returns:
            Number of mutations the authority accepted
        """
        synced, _ = await self._flush(username)
        return synced

    async def _flush(self, username: str | None) -> tuple[int, set[str]]:
        async with self._flush_lock:
            synced = 0
            rejected: set[str] = set()
            for operation in self._outbox.pending(username):
                mutation = operation.mutation
                try:
                    remote_records = await call_with_timeout(
                        lambda: self._remote.apply(mutation), self._timeout
                    )
                except self._retry_config.retryable_exceptions as e:
                    self._outbox.record_attempt(
                        operation.operation_id, 1, sanitize_error_for_logging(e)
                    )
                    logger.warning(
                        "pending_sync_failed",
                        operation_id=operation.operation_id,
                        attempts=operation.attempts + 1,
                        remaining=len(self._outbox),
                    )
                    break
                except RemoteRejectedError:
                    self._outbox.remove(operation.operation_id)
                    rejected.add(operation.operation_id)
                    await self._handle_rejection(mutation)
                    continue

                self._outbox.remove(operation.operation_id)
                self._merge_remote(mutation, remote_records)
                synced += 1
                logger.info(
                    "pending_sync_succeeded",
                    operation_id=operation.operation_id,
                    username=mutation.username,
                    challenge_id=mutation.challenge_id,
                )
                self._emit(mutation, ChangeKind.RECONCILED, SyncState.SYNCED)

            return synced, rejected

    async def check_connectivity(self) -> bool:
        """Ping the authority and, when reachable, replay the outbox."""
        try:
            reachable = await call_with_timeout(self._remote.ping, self._timeout)
        except self._retry_config.retryable_exceptions as e:
            logger.warning("connectivity_check_failed", error_msg=sanitize_error_for_logging(e))
            return False

        if not reachable:
            logger.warning("connectivity_check_failed", error_msg="Remote store unreachable")
            return False

        if len(self._outbox):
            synced = await self.flush_pending()
            logger.info("connectivity_restored", synced=synced, remaining=len(self._outbox))
        return True

    # ===========================================
    # PULL
    # ===========================================

    async def reload(self, username: str) -> EngagementSnapshot:
        """Replace a user's local records with the authority's snapshot.

        Parked mutations are flushed first; records still owned by a
        mutation that could not be flushed are kept as they are locally,
        and so are records the authority has already confirmed newer.

        Raises:
            TransientStoreError: If the authority cannot be read
        """
        await self.flush_pending(username)

        remote_view = await retry_call(
            lambda: self._remote.snapshot(username),
            config=self._retry_config,
            timeout=self._timeout,
            operation="reload",
        )
        remote_view = remote_view.for_user(username)
        unsynced = self._outbox.unsynced_acceptance_ids(username)
        before = self._local.snapshot_now(username)
        candidates = set(before.versions()) | set(remote_view.versions())
        current = self._current_ids(candidates - unsynced, remote_view)
        keep = candidates - current
        self._local.replace_user(username, remote_view, keep)
        self._confirm(current, remote_view)
        after = self._local.snapshot_now(username)

        logger.info(
            "local_cache_reloaded",
            username=username,
            acceptances=len(remote_view.acceptances),
            kept_unsynced=len(unsynced),
            kept_newer=len(keep - unsynced),
        )

        challenge_ids = {a.challenge_id for a in before.acceptances}
        challenge_ids.update(a.challenge_id for a in after.acceptances)
        for challenge_id in sorted(challenge_ids):
            if not _differs(_for_challenge(before, challenge_id), _for_challenge(after, challenge_id)):
                continue
            self._notifier.publish(EngagementEvent(
                username=username,
                challenge_id=challenge_id,
                kind=ChangeKind.RELOADED,
                sync_state=SyncState.PENDING if unsynced else SyncState.SYNCED,
            ))

        return after

    def add_pull_hook(self, hook: PullHook) -> None:
        """Run ``hook(username)`` after each background pull of a user."""
        self._pull_hooks.append(hook)

    async def sync_once(self) -> bool:
        """Replay the outbox, then pull every cached user from the authority.

        Returns:
            False if the authority was unreachable or a pull failed
        """
        if not await self.check_connectivity():
            return False

        for username in self._local.known_usernames():
            try:
                await self.reload(username)
            except self._retry_config.retryable_exceptions as e:
                logger.warning(
                    "background_pull_failed",
                    username=username,
                    error_msg=sanitize_error_for_logging(e),
                )
                return False
            for hook in self._pull_hooks:
                await hook(username)
        return True

    # ===========================================
    # BACKGROUND LOOP
    # ===========================================

    async def start(self) -> None:
        """Sync once now, then keep syncing every ``sync_interval`` seconds."""
        if self._scheduler is not None:
            return
        self._scheduler = PeriodicScheduler()
        self._scheduler.register("engagement_sync", self._sync_interval, self.sync_once)
        await self._scheduler.run_once("engagement_sync")
        await self._scheduler.start()

    async def stop(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()
            self._scheduler = None

    # ===========================================
    # PERSISTENCE
    # ===========================================

    def save_state(self, path: str | Path) -> None:
        """Write the local cache and outbox to a JSON file."""
        state = LocalCacheState(
            snapshot=self._local.snapshot_now(),
            pending=self._outbox.pending(),
            confirmed=self._confirmed,
        )
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(state.model_dump_json(indent=2))
        logger.info("local_cache_saved", path=str(target), pending=len(state.pending))

    def load_state(self, path: str | Path) -> bool:
        """Restore the local cache and outbox from a JSON file.

        Returns:
            False if the file does not exist
        """
        source = Path(path)
        if not source.exists():
            return False
        state = LocalCacheState.model_validate_json(source.read_text())
        self._local.load(state.snapshot)
        self._outbox = Outbox(state.pending)
        self._confirmed = dict(state.confirmed)
        logger.info(
            "local_cache_loaded",
            path=str(source),
            acceptances=len(state.snapshot.acceptances),
            pending=len(state.pending),
        )
        return True

    def _emit(self, mutation: EngagementMutation, kind: ChangeKind, sync_state: SyncState) -> None:
        self._notifier.publish(EngagementEvent(
            username=mutation.username,
            challenge_id=mutation.challenge_id,
            kind=kind,
            sync_state=sync_state,
            operation_id=mutation.operation_id,
        ))


def _differs(local: EngagementSnapshot, remote: EngagementSnapshot) -> bool:
    """Compare two record sets ignoring ``updated_at`` stamps."""

    def normalize(snapshot: EngagementSnapshot) -> dict[str, list[dict]]:
        return {
            "acceptances": sorted(
                (a.model_dump(mode="json", exclude={"updated_at"}) for a in snapshot.acceptances),
                key=lambda d: d["id"],
            ),
            "submissions": sorted(
                (s.model_dump(mode="json", exclude={"updated_at"}) for s in snapshot.submissions),
                key=lambda d: d["acceptance_id"],
            ),
            "reviews": sorted(
                (r.model_dump(mode="json", exclude={"updated_at"}) for r in snapshot.reviews),
                key=lambda d: d["acceptance_id"],
            ),
        }

    return normalize(local) != normalize(remote)



def _for_challenge(snapshot: EngagementSnapshot, challenge_id: str) -> EngagementSnapshot:
    return EngagementSnapshot(
        acceptances=[a for a in snapshot.acceptances if a.challenge_id == challenge_id],
        submissions=[s for s in snapshot.submissions if s.challenge_id == challenge_id],
        reviews=[r for r in snapshot.reviews if r.challenge_id == challenge_id],
    )

__all__ = ["LocalCacheState", "Reconciler"]
