"""Per-period leaderboards built on the best-two rule.

A user's period total is the sum of their two highest scores in that
period. The two scores live in a bounded, descending ``BestTwo`` value;
entries are versioned rows, so two concurrent folds for the same
(game, user, period) cannot both write from the same stale read: the
loser gets ``StaleDataError`` (or ``IntegrityError`` on a racing insert)
and its unit of work is retried from scratch by ``run_in_transaction``.
"""
import heapq
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ggza.clock import PERIOD_TYPES, current_period_key, period_keys, utcnow
from ggza.errors import InvalidInputError, NotFoundError
from ggza.models import Game, LeaderboardEntry, User

logger = logging.getLogger(__name__)

BEST_OF = 2


@dataclass(frozen=True)
class BestTwo:
    """Top-k (k=2) scores, highest first."""

    scores: tuple[int, ...] = ()

    @classmethod
    def of(cls, values: Iterable[int]) -> "BestTwo":
        return cls(tuple(heapq.nlargest(BEST_OF, values)))

    def merge(self, score: int) -> "BestTwo":
        return BestTwo.of((*self.scores, score))

    @property
    def total(self) -> int:
        return sum(self.scores)


def _running_average(previous_avg: int, previous_count: int, new_value: int) -> int:
    return round((previous_avg * previous_count + new_value) / (previous_count + 1))


def fold_into_entry(
    db: Session,
    *,
    game_id: int,
    user_id: int,
    period_type: str,
    period_key: str,
    points: int,
    time_ms: int,
    now: datetime,
) -> LeaderboardEntry:
    entry = db.execute(
        select(LeaderboardEntry).where(
            LeaderboardEntry.game_id == game_id,
            LeaderboardEntry.user_id == user_id,
            LeaderboardEntry.period_type == period_type,
            LeaderboardEntry.period_key == period_key,
        )
    ).scalar_one_or_none()

    if entry is None:
        entry = LeaderboardEntry(
            game_id=game_id,
            user_id=user_id,
            period_type=period_type,
            period_key=period_key,
            total_points=points,
            best_score=points,
            quizzes_played=1,
            best_two_scores=[points],
            average_time_ms=time_ms,
            achieved_at=now,
        )
        db.add(entry)
        db.flush()
        return entry

    best = BestTwo.of(entry.best_two_scores or []).merge(points)
    if best.total != entry.total_points:
        entry.achieved_at = now
    entry.best_two_scores = list(best.scores)
    entry.total_points = best.total
    entry.best_score = max(entry.best_score or 0, points)
    entry.average_time_ms = _running_average(entry.average_time_ms or 0, entry.quizzes_played, time_ms)
    entry.quizzes_played = entry.quizzes_played + 1
    db.flush()
    return entry


def record_score(
    db: Session,
    *,
    game_id: int,
    user_id: int,
    points: int,
    time_ms: int,
    scored_at: datetime,
    year: Optional[int] = None,
    week_number: Optional[int] = None,
    now: datetime | None = None,
) -> list[LeaderboardEntry]:
    """Fold one new score into the weekly, monthly and all-time entries.

    Must run inside the caller's unit of work together with the score row.
    """
    now = now or utcnow()
    keys = period_keys(scored_at, year=year, week_number=week_number)
    entries = [
        fold_into_entry(
            db,
            game_id=game_id,
            user_id=user_id,
            period_type=period_type,
            period_key=keys[period_type],
            points=points,
            time_ms=time_ms,
            now=now,
        )
        for period_type in PERIOD_TYPES
    ]
    logger.info(
        "Folded score %s (time=%sms) for user %s into game %s periods %s",
        points,
        time_ms,
        user_id,
        game_id,
        ", ".join(keys[p] for p in PERIOD_TYPES),
    )
    return entries


def get_leaderboard(
    db: Session,
    game_slug: str,
    period_type: str = "weekly",
    period_key: Optional[str] = None,
    *,
    limit: int = 100,
    now: datetime | None = None,
):
    if period_type not in PERIOD_TYPES:
        raise InvalidInputError(f"period_type must be one of {', '.join(PERIOD_TYPES)}")
    game = db.query(Game).filter(Game.slug == game_slug).first()
    if not game:
        raise NotFoundError("Game not found")

    period_key = period_key or current_period_key(period_type, now or utcnow())
    rows = db.execute(
        select(LeaderboardEntry, User.username)
        .join(User, User.id == LeaderboardEntry.user_id)
        .where(
            LeaderboardEntry.game_id == game.id,
            LeaderboardEntry.period_type == period_type,
            LeaderboardEntry.period_key == period_key,
        )
        .order_by(
            LeaderboardEntry.total_points.desc(),
            LeaderboardEntry.average_time_ms.asc(),
            LeaderboardEntry.achieved_at.asc(),
            LeaderboardEntry.id.asc(),
        )
        .limit(limit)
    ).all()

    return {
        "game": game.slug,
        "period_type": period_type,
        "period_key": period_key,
        "entries": [
            {
                "rank": idx,
                "user_id": entry.user_id,
                "username": username,
                "total_points": entry.total_points,
                "best_score": entry.best_score,
                "quizzes_played": entry.quizzes_played,
                "best_two_scores": list(entry.best_two_scores or []),
                "average_time_ms": entry.average_time_ms,
            }
            for idx, (entry, username) in enumerate(rows, start=1)
        ],
    }
