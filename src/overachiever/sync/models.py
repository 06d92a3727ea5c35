"""Domain records for the sync engine: snapshots, tickets and results."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from overachiever.sync.delta import Delta


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AchievementSnapshot:
    key: str
    name: str
    unlocked: bool
    unlock_time: datetime | None = None
    unlock_time_estimated: bool = False
    description: str | None = None
    icon: str = ""
    icon_gray: str = ""


@dataclass
class GameSnapshot:
    """State of one game. ``achievements`` is None while unknown or unresolved."""

    game_id: int
    name: str
    playtime_minutes: int | None = None
    last_played: datetime | None = None
    icon_url: str | None = None
    achievements: list[AchievementSnapshot] | None = None
    last_sync: datetime | None = None

    @property
    def achievements_total(self) -> int | None:
        return None if self.achievements is None else len(self.achievements)

    @property
    def achievements_unlocked(self) -> int | None:
        if self.achievements is None:
            return None
        return sum(1 for a in self.achievements if a.unlocked)


@dataclass
class UserSnapshot:
    """Full per-user state at a point in time. ``games`` keeps provider order."""

    user_id: int
    taken_at: datetime
    games: dict[int, GameSnapshot] = field(default_factory=dict)


@dataclass(frozen=True)
class HistorySnapshot:
    """Aggregated progress recorded at the end of a completed scan."""

    user_id: int
    recorded_at: datetime
    total_games: int
    total_achievements: int
    unlocked_achievements: int
    games_with_achievements: int
    avg_completion_percent: float | None
    unresolved_games: int = 0
    id: int | None = None

    def numbers(self) -> tuple[Any, ...]:
        """Everything except identity and timestamp."""
        return (
            self.total_games,
            self.total_achievements,
            self.unlocked_achievements,
            self.games_with_achievements,
            self.avg_completion_percent,
            self.unresolved_games,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "recorded_at": _iso(self.recorded_at),
            "total_games": self.total_games,
            "total_achievements": self.total_achievements,
            "unlocked_achievements": self.unlocked_achievements,
            "games_with_achievements": self.games_with_achievements,
            "avg_completion_percent": self.avg_completion_percent,
            "unresolved_games": self.unresolved_games,
        }


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


class ScanReason(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class TicketState(str, Enum):
    ADMITTED = "admitted"
    FETCHING_GAMES = "fetching_games"
    FETCHING_ACHIEVEMENTS = "fetching_achievements"
    COMPUTING = "computing"
    PERSISTING = "persisting"
    NOTIFYING = "notifying"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


VALID_TRANSITIONS: dict[TicketState, list[TicketState]] = {
    TicketState.ADMITTED: [TicketState.FETCHING_GAMES, TicketState.FAILED, TicketState.CANCELLED],
    TicketState.FETCHING_GAMES: [TicketState.FETCHING_ACHIEVEMENTS, TicketState.FAILED, TicketState.CANCELLED],
    TicketState.FETCHING_ACHIEVEMENTS: [TicketState.COMPUTING, TicketState.FAILED, TicketState.CANCELLED],
    TicketState.COMPUTING: [TicketState.PERSISTING, TicketState.FAILED],
    # Back to ADMITTED when a persistence failure is retried
    TicketState.PERSISTING: [TicketState.NOTIFYING, TicketState.FAILED, TicketState.ADMITTED],
    TicketState.NOTIFYING: [TicketState.DONE, TicketState.FAILED],
    TicketState.DONE: [],
    TicketState.FAILED: [],
    TicketState.CANCELLED: [],
}

TERMINAL_STATES = frozenset({TicketState.DONE, TicketState.FAILED, TicketState.CANCELLED})


def validate_transition(current: TicketState, target: TicketState) -> None:
    """Raise ValueError unless ``current -> target`` is a legal ticket transition."""
    valid = VALID_TRANSITIONS.get(current, [])
    if target not in valid:
        raise ValueError(
            f"Invalid transition: {current.value} -> {target.value}. "
            f"Valid transitions: {[s.value for s in valid]}"
        )


@dataclass
class ScanTicket:
    """One admitted scan. Owned by ScanQueue until handed to the orchestrator."""

    user_id: int
    reason: ScanReason
    force: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: datetime = field(default_factory=utcnow)
    subscribers: set[str] = field(default_factory=set)
    state: TicketState = TicketState.ADMITTED
    games_total: int = 0
    games_done: int = 0
    attempts: int = 0
    cancel_requested: bool = False
    cancelled: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)
    _outcome: asyncio.Future[ScanResult] | None = field(default=None, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def request_cancel(self) -> None:
        """Ask the orchestrator to stop at its next checkpoint."""
        self.cancel_requested = True
        self.cancelled.set()

    def advance(self, target: TicketState) -> None:
        validate_transition(self.state, target)
        self.state = target

    def _future(self) -> asyncio.Future[ScanResult]:
        if self._outcome is None:
            self._outcome = asyncio.get_running_loop().create_future()
        return self._outcome

    def resolve(self, result: ScanResult) -> None:
        future = self._future()
        if not future.done():
            future.set_result(result)

    async def wait(self) -> ScanResult:
        """Wait for the final result. Every coalesced caller gets the same object."""
        return await asyncio.shield(self._future())

    def status(self) -> dict[str, Any]:
        return {
            "ticket_id": self.id,
            "user_id": self.user_id,
            "reason": self.reason.value,
            "force": self.force,
            "state": self.state.value,
            "enqueued_at": _iso(self.enqueued_at),
            "games_done": self.games_done,
            "games_total": self.games_total,
            "subscribers": len(self.subscribers),
        }


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GameFailure:
    game_id: int
    name: str
    kind: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"game_id": self.game_id, "name": self.name, "kind": self.kind, "message": self.message}


@dataclass
class ScanResult:
    """Final outcome of a ticket, shared by all coalesced requesters."""

    ticket_id: str
    user_id: int
    status: str
    started_at: datetime
    finished_at: datetime
    games_total: int = 0
    games_skipped: int = 0
    scanned_game_ids: list[int] = field(default_factory=list)
    failures: list[GameFailure] = field(default_factory=list)
    delta: Delta | None = None
    snapshot: HistorySnapshot | None = None
    error_kind: str | None = None
    error_stage: str | None = None
    error_message: str | None = None

    @property
    def games_scanned(self) -> int:
        return len(self.scanned_game_ids)

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "games_total": self.games_total,
            "games_scanned": self.games_scanned,
            "scanned_game_ids": self.scanned_game_ids,
            "games_skipped": self.games_skipped,
            "games_failed": len(self.failures),
            "failures": [f.to_dict() for f in self.failures],
            "delta": self.delta.to_dict() if self.delta is not None else None,
            "snapshot": self.snapshot.to_dict() if self.snapshot is not None else None,
            "error_kind": self.error_kind,
            "error_stage": self.error_stage,
        }
