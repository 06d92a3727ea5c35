"""Change detection between two snapshots of a user's library.

``compute`` reports what changed; ``apply`` produces the state that gets
persisted. Both treat the provider as monotonic for unlocks and playtime:
a regression is recorded as an anomaly and never applied.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from overachiever.sync.models import AchievementSnapshot, GameSnapshot, UserSnapshot

logger = structlog.get_logger()


class AnomalyKind(str, Enum):
    NEGATIVE_PLAYTIME = "negative_playtime"
    RELOCKED_ACHIEVEMENT = "relocked_achievement"


@dataclass(frozen=True)
class NewGame:
    game_id: int
    name: str


@dataclass(frozen=True)
class PlaytimeChange:
    """Playtime growth for one game. ``delta`` is never negative."""

    game_id: int
    previous: int
    current: int
    delta: int
    anomalous: bool = False


@dataclass(frozen=True)
class NewUnlock:
    game_id: int
    achievement_key: str
    name: str
    unlock_time: datetime
    estimated: bool = False


@dataclass(frozen=True)
class TotalsChange:
    game_id: int
    previous_total: int
    current_total: int


@dataclass(frozen=True)
class Anomaly:
    kind: AnomalyKind
    game_id: int
    achievement_key: str | None = None
    detail: str = ""


@dataclass
class Delta:
    new_games: list[NewGame] = field(default_factory=list)
    playtime_changes: list[PlaytimeChange] = field(default_factory=list)
    unlocked: list[NewUnlock] = field(default_factory=list)
    totals_changed: list[TotalsChange] = field(default_factory=list)
    anomalies: list[Anomaly] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """True when nothing progressed. Anomalies alone do not count as change."""
        return not (
            self.new_games
            or any(not c.anomalous for c in self.playtime_changes)
            or self.unlocked
            or self.totals_changed
        )

    def to_dict(self) -> dict[str, Any]:
        def _row(item: Any) -> dict[str, Any]:
            row = asdict(item)
            for key, value in row.items():
                if isinstance(value, datetime):
                    row[key] = value.isoformat()
                elif isinstance(value, Enum):
                    row[key] = value.value
            return row

        return {
            "new_games": [_row(g) for g in self.new_games],
            "playtime_changes": [_row(c) for c in self.playtime_changes],
            "unlocked": [_row(u) for u in self.unlocked],
            "totals_changed": [_row(t) for t in self.totals_changed],
            "anomalies": [_row(a) for a in self.anomalies],
        }


def compute(previous: UserSnapshot | None, current: UserSnapshot) -> Delta:
    """Compare a freshly fetched snapshot with the last persisted one.

    Unlocks are ordered by unlock time; ties (including every estimated
    unlock, which all carry the fetch time) fall back to library order and
    then schema declaration order.
    """
    delta = Delta()
    fetched_at = current.taken_at
    previous_games = previous.games if previous is not None else {}
    ordered_unlocks: list[tuple[datetime, int, int, NewUnlock]] = []

    for game_index, game in enumerate(current.games.values()):
        before = previous_games.get(game.game_id)
        if before is None:
            delta.new_games.append(NewGame(game.game_id, game.name))
        else:
            change = _playtime_change(before, game)
            if change is not None:
                delta.playtime_changes.append(change)
                if change.anomalous:
                    delta.anomalies.append(
                        Anomaly(
                            AnomalyKind.NEGATIVE_PLAYTIME,
                            game.game_id,
                            detail=f"{change.previous} -> {change.current}",
                        )
                    )
            if (
                before.achievements_total is not None
                and game.achievements_total is not None
                and before.achievements_total != game.achievements_total
            ):
                delta.totals_changed.append(
                    TotalsChange(game.game_id, before.achievements_total, game.achievements_total)
                )

        if game.achievements is None:
            continue
        known = {a.key: a for a in before.achievements} if before and before.achievements else {}
        for position, ach in enumerate(game.achievements):
            was = known.get(ach.key)
            if ach.unlocked and not (was and was.unlocked):
                estimated = ach.unlock_time is None
                when = fetched_at if estimated else ach.unlock_time
                unlock = NewUnlock(game.game_id, ach.key, ach.name, when, estimated)
                ordered_unlocks.append((when, game_index, position, unlock))
            elif was is not None and was.unlocked and not ach.unlocked:
                delta.anomalies.append(
                    Anomaly(
                        AnomalyKind.RELOCKED_ACHIEVEMENT,
                        game.game_id,
                        achievement_key=ach.key,
                        detail="provider reports a previously unlocked achievement as locked",
                    )
                )

    ordered_unlocks.sort(key=lambda item: (item[0], item[1], item[2]))
    delta.unlocked = [item[3] for item in ordered_unlocks]

    for anomaly in delta.anomalies:
        logger.warning(
            "data_anomaly",
            user_id=current.user_id,
            kind=anomaly.kind.value,
            game_id=anomaly.game_id,
            achievement_key=anomaly.achievement_key,
            detail=anomaly.detail,
        )
    return delta


def _playtime_change(before: GameSnapshot, after: GameSnapshot) -> PlaytimeChange | None:
    if before.playtime_minutes is None or after.playtime_minutes is None:
        return None
    if after.playtime_minutes > before.playtime_minutes:
        return PlaytimeChange(
            after.game_id,
            before.playtime_minutes,
            after.playtime_minutes,
            after.playtime_minutes - before.playtime_minutes,
        )
    if after.playtime_minutes < before.playtime_minutes:
        return PlaytimeChange(after.game_id, before.playtime_minutes, after.playtime_minutes, 0, anomalous=True)
    return None


def apply(previous: UserSnapshot | None, current: UserSnapshot) -> UserSnapshot:
    """Merge ``current`` onto ``previous`` without ever regressing progress.

    - an unlocked achievement stays unlocked, keeping its first unlock time
    - a new unlock without a provider timestamp gets the fetch time, flagged estimated
    - playtime never decreases; absent fields keep the stored value
    - games with unresolved achievements keep their stored achievements
    - games missing from the library response are retained
    """
    fetched_at = current.taken_at
    previous_games = previous.games if previous is not None else {}
    merged: dict[int, GameSnapshot] = {}

    for game in current.games.values():
        before = previous_games.get(game.game_id)
        merged[game.game_id] = _merge_game(before, game, fetched_at)

    for game_id, before in previous_games.items():
        if game_id not in merged:
            merged[game_id] = before

    return UserSnapshot(user_id=current.user_id, taken_at=fetched_at, games=merged)


def _merge_game(before: GameSnapshot | None, game: GameSnapshot, fetched_at: datetime) -> GameSnapshot:
    if before is None:
        achievements = (
            [_stamp(a, None, fetched_at) for a in game.achievements] if game.achievements is not None else None
        )
        return replace(game, achievements=achievements)

    playtime = game.playtime_minutes
    if playtime is None or (before.playtime_minutes is not None and playtime < before.playtime_minutes):
        playtime = before.playtime_minutes

    if game.achievements is None:
        achievements = before.achievements
        last_sync = before.last_sync
    else:
        known = {a.key: a for a in before.achievements or []}
        achievements = [_stamp(a, known.get(a.key), fetched_at) for a in game.achievements]
        last_sync = game.last_sync

    return replace(
        game,
        playtime_minutes=playtime,
        last_played=game.last_played or before.last_played,
        icon_url=game.icon_url or before.icon_url,
        achievements=achievements,
        last_sync=last_sync,
    )


def _stamp(ach: AchievementSnapshot, was: AchievementSnapshot | None, fetched_at: datetime) -> AchievementSnapshot:
    if was is not None and was.unlocked:
        if was.unlock_time_estimated and ach.unlocked and ach.unlock_time is not None:
            # The provider has since supplied the real timestamp
            return ach
        return replace(
            ach,
            unlocked=True,
            unlock_time=was.unlock_time,
            unlock_time_estimated=was.unlock_time_estimated,
        )
    if ach.unlocked and ach.unlock_time is None:
        return replace(ach, unlock_time=fetched_at, unlock_time_estimated=True)
    if not ach.unlocked:
        return replace(ach, unlock_time=None, unlock_time_estimated=False)
    return ach
