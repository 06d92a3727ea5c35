"""Unit tests for HistorySnapshot aggregation."""

from __future__ import annotations

from datetime import datetime, timezone

from overachiever.sync.history_store import summarize
from overachiever.sync.models import AchievementSnapshot, GameSnapshot, UserSnapshot

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _game(game_id: int, unlocked: int, total: int | None) -> GameSnapshot:
    achievements = None
    if total is not None:
        achievements = [AchievementSnapshot(key=f"A{i}", name=f"A{i}", unlocked=i < unlocked) for i in range(total)]
    return GameSnapshot(game_id=game_id, name=str(game_id), achievements=achievements)


def _snap(*games: GameSnapshot) -> UserSnapshot:
    return UserSnapshot(user_id=1, taken_at=T0, games={g.game_id: g for g in games})


def test_games_without_achievements_excluded_from_average() -> None:
    summary = summarize(_snap(_game(1, 1, 2), _game(2, 0, 0)))
    assert summary.total_games == 2
    assert summary.total_achievements == 2
    assert summary.unlocked_achievements == 1
    assert summary.games_with_achievements == 1
    assert summary.avg_completion_percent == 50.0
    assert summary.recorded_at == T0


def test_average_is_mean_of_ratios_not_ratio_of_sums() -> None:
    summary = summarize(_snap(_game(1, 1, 1), _game(2, 0, 3)))
    assert summary.total_achievements == 4
    assert summary.unlocked_achievements == 1
    assert summary.avg_completion_percent == 50.0


def test_no_achievements_anywhere_gives_null_average() -> None:
    summary = summarize(_snap(_game(1, 0, 0)))
    assert summary.avg_completion_percent is None
    assert summary.games_with_achievements == 0


def test_unknown_and_failed_games_are_unresolved() -> None:
    summary = summarize(_snap(_game(1, 2, 2), _game(2, 0, None), _game(3, 1, 4)), unresolved_ids=[3])
    assert summary.total_games == 1
    assert summary.unresolved_games == 2
    assert summary.total_achievements == 2
    assert summary.avg_completion_percent == 100.0


def test_average_rounded() -> None:
    summary = summarize(_snap(_game(1, 1, 3)))
    assert summary.avg_completion_percent == 33.3333
