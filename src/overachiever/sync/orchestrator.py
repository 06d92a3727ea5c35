"""Drives one ticket through fetch, delta, persistence and notification.

Each provider call is individually gated by the shared RateLimiter and
carries its own deadline. Game-level fetches run concurrently up to the
configured fan-out. A failed game is recorded on the result; only a failed
library fetch or a failed write ends the ticket early.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError

from overachiever.provider.client import ProviderClient, ProviderError
from overachiever.provider.models import LibraryEntry, SchemaEntry, UnlockEntry
from overachiever.sync import delta as delta_computer
from overachiever.sync import history_store, state_store
from overachiever.sync.errors import (
    PersistenceFailure,
    ProviderRejected,
    ProviderUnavailable,
    QuotaExceeded,
    ScanCancelled,
    ScanFailed,
    SyncError,
)
from overachiever.sync.models import (
    AchievementSnapshot,
    GameFailure,
    GameSnapshot,
    ScanResult,
    ScanTicket,
    TicketState,
    UserSnapshot,
    utcnow,
)
from overachiever.sync.rate_limiter import Permit, RateLimiter

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from overachiever.sync.state_store import CachedSchema

logger = structlog.get_logger()

T = TypeVar("T")


class EventSink(Protocol):
    async def publish(self, user_id: int, event: dict[str, Any]) -> int: ...


@dataclass
class _GameOutcome:
    entry: LibraryEntry
    achievements: list[AchievementSnapshot] | None = None
    schema: list[SchemaEntry] | None = None
    failure: GameFailure | None = None


@dataclass
class _Plan:
    fetch: list[LibraryEntry] = field(default_factory=list)
    carry: list[LibraryEntry] = field(default_factory=list)


def build_achievements(schema: list[SchemaEntry], unlocks: list[UnlockEntry]) -> list[AchievementSnapshot]:
    """Join schema and unlock state in schema declaration order.

    Unlock entries for keys the schema does not declare are dropped.
    """
    by_key = {u.achievement_key: u for u in unlocks}
    achievements = []
    for entry in schema:
        unlock = by_key.get(entry.achievement_key)
        unlocked = bool(unlock and unlock.unlocked)
        achievements.append(
            AchievementSnapshot(
                key=entry.achievement_key,
                name=entry.name,
                unlocked=unlocked,
                unlock_time=unlock.unlock_time if unlocked and unlock else None,
                description=entry.description,
                icon=entry.icon,
                icon_gray=entry.icon_gray,
            )
        )
    return achievements


class SyncOrchestrator:
    """Runs scans. One instance serves every ticket in the process."""

    def __init__(
        self,
        provider: ProviderClient,
        limiter: RateLimiter,
        hub: EventSink,
        sessions: Callable[[], AsyncSession],
        *,
        fanout: int = 4,
        call_timeout: float = 15.0,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
        schema_ttl: timedelta = timedelta(hours=168),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.provider = provider
        self.limiter = limiter
        self.hub = hub
        self.sessions = sessions
        self.fanout = max(1, fanout)
        self.call_timeout = call_timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self.schema_ttl = schema_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def emit(self, ticket: ScanTicket, event_type: str, payload: dict[str, Any]) -> None:
        await self.hub.publish(
            ticket.user_id,
            {"ticket_id": ticket.id, "type": event_type, "payload": payload},
        )

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _acquire(self, ticket: ScanTicket) -> Permit:
        """Wait for one unit of quota, giving up as soon as the ticket is cancelled."""
        if ticket.cancel_requested:
            raise ScanCancelled(ticket.id)

        acquire = asyncio.ensure_future(self.limiter.acquire(1))
        cancelled = asyncio.ensure_future(ticket.cancelled.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not acquire.done():
                acquire.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await acquire

        if acquire.cancelled():
            raise ScanCancelled(ticket.id)
        permit = acquire.result()
        if ticket.cancel_requested:
            self.limiter.release_early(permit)
            raise ScanCancelled(ticket.id)
        return permit

    async def call(
        self,
        ticket: ScanTicket,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        game_id: int | None = None,
    ) -> T:
        """One logical provider call with quota, deadline and retry.

        Raises:
            ProviderUnavailable: A retryable failure outlived every attempt.
            ProviderRejected: The provider refused the call.
            QuotaExceeded: No quota within the limiter's wait bound.
            ScanCancelled: The ticket was cancelled while waiting.
        """
        attempt = 0
        while True:
            attempt += 1
            await self._acquire(ticket)
            try:
                return await asyncio.wait_for(fn(*args), timeout=self.call_timeout)
            except asyncio.TimeoutError as e:
                error: Exception = e
            except ProviderError as e:
                if not e.retryable:
                    raise ProviderRejected(f"{e.kind}: {e}") from e
                error = e

            if attempt >= self.retry_attempts:
                raise ProviderUnavailable(f"{type(error).__name__} after {attempt} attempts: {error}") from error

            delay = self.retry_backoff * (2 ** (attempt - 1))
            logger.warning(
                "provider_call_retry",
                ticket_id=ticket.id,
                call=getattr(fn, "__name__", "call"),
                game_id=game_id,
                attempt=attempt,
                delay=delay,
                error=str(error) or type(error).__name__,
            )
            await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _is_fresh(self, before: GameSnapshot, cached: CachedSchema | None, now: datetime) -> bool:
        if cached is not None:
            reference = cached.cached_at
        elif before.achievements_total == 0:
            # Games without achievements leave no schema rows behind
            reference = before.last_sync
        else:
            return False
        return reference is not None and now - reference <= self.schema_ttl

    def plan(
        self,
        library: list[LibraryEntry],
        previous: UserSnapshot | None,
        cache: dict[int, CachedSchema],
        force: bool,
        now: datetime,
    ) -> _Plan:
        """Split the library into games to fetch and games to carry over."""
        plan = _Plan()
        stored = previous.games if previous is not None else {}
        for entry in library:
            before = stored.get(entry.game_id)
            if force or before is None or before.achievements is None:
                plan.fetch.append(entry)
            elif not self._is_fresh(before, cache.get(entry.game_id), now):
                plan.fetch.append(entry)
            elif entry.playtime_minutes is not None and entry.playtime_minutes != before.playtime_minutes:
                plan.fetch.append(entry)
            elif entry.last_played is not None and entry.last_played != before.last_played:
                plan.fetch.append(entry)
            else:
                plan.carry.append(entry)
        return plan

    # ------------------------------------------------------------------
    # Per-game work
    # ------------------------------------------------------------------

    async def _scan_game(
        self,
        ticket: ScanTicket,
        entry: LibraryEntry,
        cached: CachedSchema | None,
        now: datetime,
    ) -> _GameOutcome:
        outcome = _GameOutcome(entry=entry)
        try:
            if cached is not None and not ticket.force and now - cached.cached_at <= self.schema_ttl:
                schema = cached.entries
            else:
                schema = await self.call(ticket, self.provider.fetch_schema, entry.game_id, game_id=entry.game_id)
                outcome.schema = schema

            unlocks: list[UnlockEntry] = []
            if schema:
                unlocks = await self.call(
                    ticket, self.provider.fetch_unlocks, ticket.user_id, entry.game_id, game_id=entry.game_id
                )
            outcome.achievements = build_achievements(schema, unlocks)
        except (ProviderUnavailable, ProviderRejected, QuotaExceeded) as e:
            logger.warning(
                "scan_game_failed",
                ticket_id=ticket.id,
                user_id=ticket.user_id,
                game_id=entry.game_id,
                kind=e.kind,
                error=str(e),
            )
            outcome.failure = GameFailure(entry.game_id, entry.name, e.kind, str(e))
        return outcome

    async def _fetch_games(
        self,
        ticket: ScanTicket,
        entries: list[LibraryEntry],
        cache: dict[int, CachedSchema],
        now: datetime,
    ) -> list[_GameOutcome]:
        semaphore = asyncio.Semaphore(self.fanout)

        async def worker(entry: LibraryEntry) -> _GameOutcome | None:
            async with semaphore:
                if ticket.cancel_requested:
                    return None
                try:
                    outcome = await self._scan_game(ticket, entry, cache.get(entry.game_id), now)
                except ScanCancelled:
                    return None
                ticket.games_done += 1
                await self.emit(
                    ticket,
                    "progress",
                    {
                        "games_done": ticket.games_done,
                        "games_total": ticket.games_total,
                        "game_id": entry.game_id,
                        "ok": outcome.failure is None,
                    },
                )
                return outcome

        tasks = [asyncio.create_task(worker(e)) for e in entries]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # Stop the siblings of a failed worker
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        if ticket.cancel_requested:
            raise ScanCancelled(ticket.id)
        return [r for r in results if r is not None]

    # ------------------------------------------------------------------
    # Ticket lifecycle
    # ------------------------------------------------------------------

    async def _load(self, user_id: int, game_ids: list[int]) -> tuple[UserSnapshot | None, dict[int, CachedSchema]]:
        try:
            async with self.sessions() as db:
                previous = await state_store.load_user_snapshot(db, user_id)
                cache = await state_store.load_schema_cache(db, game_ids)
        except SQLAlchemyError as e:
            raise ScanFailed(TicketState.FETCHING_ACHIEVEMENTS.value, PersistenceFailure(str(e))) from e
        return previous, cache

    async def run(self, ticket: ScanTicket) -> ScanResult:
        """Run ``ticket`` to ``done``.

        Raises:
            ScanFailed: The library fetch or the final write failed.
            ScanCancelled: Cancellation was requested during a fetch stage.
        """
        started_at = self._clock()
        ticket.games_done = 0
        log = logger.bind(ticket_id=ticket.id, user_id=ticket.user_id)

        ticket.advance(TicketState.FETCHING_GAMES)
        try:
            library = await self.call(ticket, self.provider.fetch_library, ticket.user_id)
        except ScanCancelled:
            raise
        except SyncError as e:
            raise ScanFailed(TicketState.FETCHING_GAMES.value, e) from e

        ticket.advance(TicketState.FETCHING_ACHIEVEMENTS)
        now = self._clock()
        previous, cache = await self._load(ticket.user_id, [e.game_id for e in library])
        plan = self.plan(library, previous, cache, ticket.force, now)
        ticket.games_total = len(library)
        ticket.games_done = len(plan.carry)
        log.info("scan_fetching", games=len(library), fetch=len(plan.fetch), carry=len(plan.carry), force=ticket.force)
        if plan.carry:
            # Carried games need no provider calls and report as one step
            await self.emit(
                ticket,
                "progress",
                {"games_done": ticket.games_done, "games_total": ticket.games_total, "carried": len(plan.carry)},
            )

        outcomes = await self._fetch_games(ticket, plan.fetch, cache, now)

        ticket.advance(TicketState.COMPUTING)
        fetched_at = self._clock()
        stored = previous.games if previous is not None else {}
        current = UserSnapshot(user_id=ticket.user_id, taken_at=fetched_at)
        by_id = {o.entry.game_id: o for o in outcomes}
        for entry in library:
            outcome = by_id.get(entry.game_id)
            before = stored.get(entry.game_id)
            if outcome is None:
                achievements = before.achievements if before is not None else None
                last_sync = before.last_sync if before is not None else None
            else:
                achievements = outcome.achievements
                last_sync = fetched_at if outcome.failure is None else None
            current.games[entry.game_id] = GameSnapshot(
                game_id=entry.game_id,
                name=entry.name,
                playtime_minutes=entry.playtime_minutes,
                last_played=entry.last_played,
                icon_url=entry.icon_url,
                achievements=achievements,
                last_sync=last_sync,
            )

        delta = delta_computer.compute(previous, current)
        merged = delta_computer.apply(previous, current)
        failures = [o.failure for o in outcomes if o.failure is not None]
        scanned = [o.entry.game_id for o in outcomes if o.failure is None]
        summary = history_store.summarize(merged, fetched_at, unresolved_ids=[f.game_id for f in failures])

        result = ScanResult(
            ticket_id=ticket.id,
            user_id=ticket.user_id,
            status=TicketState.DONE.value,
            started_at=started_at,
            finished_at=fetched_at,
            games_total=len(library),
            games_skipped=len(plan.carry),
            scanned_game_ids=scanned,
            failures=failures,
            delta=delta,
        )

        ticket.advance(TicketState.PERSISTING)
        schemas = {o.entry.game_id: o.schema for o in outcomes if o.schema is not None}
        try:
            async with self.sessions() as db:
                await state_store.save_schemas(db, schemas, fetched_at)
                await state_store.save_user_snapshot(db, merged, scanned, fetched_at)
                result.snapshot = await history_store.append(db, summary)
                await history_store.record_run(db, ticket, result)
                await db.commit()
        except SQLAlchemyError as e:
            log.error("scan_persist_failed", error=str(e))
            raise ScanFailed(TicketState.PERSISTING.value, PersistenceFailure(str(e))) from e

        ticket.advance(TicketState.NOTIFYING)
        await self.emit(ticket, "result", result.to_payload())
        ticket.advance(TicketState.DONE)
        log.info(
            "scan_completed",
            games_total=result.games_total,
            games_scanned=result.games_scanned,
            games_failed=len(failures),
            new_unlocks=len(delta.unlocked),
        )
        return result
