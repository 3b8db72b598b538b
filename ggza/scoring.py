import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ggza import config
from ggza.clock import local_day, utcnow
from ggza.leaderboard import record_score
from ggza.levels import grant_xp
from ggza.missions import advance_missions, record_quiz_progress
from ggza.models import Attempt, QuizInstance, Response, Score, UserStreak

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class Tally:
    correct: int
    answered: int
    total_time_ms: int

    @property
    def average_time_ms(self) -> float:
        return self.total_time_ms / self.answered if self.answered else 0.0


def tally(responses: Iterable[Response]) -> Tally:
    correct = answered = total_time = 0
    for response in responses:
        answered += 1
        correct += int(bool(response.is_correct))
        total_time += response.response_time_ms or 0
    return Tally(correct=correct, answered=answered, total_time_ms=total_time)


def live_points(correct: int, points_per_correct: Optional[int]) -> int:
    return correct * (points_per_correct or config.LIVE_POINTS_PER_CORRECT)


def live_completion_xp(correct: int) -> int:
    return config.QUIZ_COMPLETION_XP + correct * config.QUIZ_CORRECT_ANSWER_XP


def placement_xp(rank: Optional[int]) -> int:
    if not rank:
        return 0
    if rank in config.PLACEMENT_XP:
        return config.PLACEMENT_XP[rank]
    return config.TOP_TEN_XP if rank <= 10 else 0


def practice_xp(correct: int) -> int:
    # participation bonus is paid even on a blank run
    return correct * config.PRACTICE_XP_PER_CORRECT + config.PRACTICE_COMPLETION_BONUS


def streak_multiplier(current_streak: int) -> float:
    if current_streak >= 7:
        return 2.0
    if current_streak >= 3:
        return 1.5
    return 1.0


def daily_xp(xp_reward: int, correct: int, current_streak: int) -> int:
    base = xp_reward + correct * config.DAILY_XP_PER_CORRECT
    return round_half_up(base * streak_multiplier(current_streak))


def flash_xp(
    *,
    xp_reward: int,
    bonus_xp: int,
    bonus_threshold_ms: int,
    correct: int,
    question_count: int,
    average_time_ms: float,
) -> tuple[int, bool]:
    """Return (xp, speed_bonus_earned).

    The bonus needs a perfect run under the threshold, and the whole reward,
    bonus included, is scaled by accuracy.
    """
    if question_count <= 0:
        return 0, False
    got_bonus = correct == question_count and average_time_ms <= bonus_threshold_ms
    reward = xp_reward + (bonus_xp if got_bonus else 0)
    return round_half_up(reward * (correct / question_count)), got_bonus


# ---------------------------------------------------------------------------
# Live quiz scores
# ---------------------------------------------------------------------------


def _live_responses(db: Session, instance_id: int, user_id: int) -> list[Response]:
    return (
        db.query(Response)
        .join(Attempt, Attempt.id == Response.attempt_id)
        .filter(Attempt.instance_id == instance_id, Attempt.user_id == user_id)
        .all()
    )


def find_score(db: Session, instance_id: int, user_id: int) -> Optional[Score]:
    return db.execute(
        select(Score).where(Score.instance_id == instance_id, Score.user_id == user_id)
    ).scalar_one_or_none()


def ensure_scored(
    db: Session, instance: QuizInstance, user_id: int, now: datetime | None = None
) -> tuple[Optional[Score], bool]:
    """Return the user's score for a live instance, creating it once if missing.

    Shared by attempt completion, batch scoring at quiz end and the results
    read path. A newly created score is folded into the leaderboards in the
    same unit of work; an existing one is returned untouched. Returns
    ``(None, False)`` when the user has no responses.
    """
    now = now or utcnow()
    existing = find_score(db, instance.id, user_id)
    if existing:
        return existing, False

    responses = _live_responses(db, instance.id, user_id)
    if not responses:
        return None, False

    counts = tally(responses)
    score = Score(
        instance_id=instance.id,
        user_id=user_id,
        total_points=live_points(counts.correct, instance.points_per_correct),
        correct_answers=counts.correct,
        total_questions=instance.question_count,
        total_time_ms=counts.total_time_ms,
    )
    db.add(score)
    db.flush()

    record_score(
        db,
        game_id=instance.game_id,
        user_id=user_id,
        points=score.total_points,
        time_ms=score.total_time_ms,
        scored_at=instance.scheduled_at or now,
        year=instance.year,
        week_number=instance.week_number,
        now=now,
    )
    logger.info(
        "Scored user %s on quiz %s: %s points, %s correct, %sms",
        user_id,
        instance.id,
        score.total_points,
        score.correct_answers,
        score.total_time_ms,
    )
    return score, True


def rerank_instance(db: Session, instance_id: int) -> list[Score]:
    """Assign ranks 1..N over every score of the instance.

    Always a full pass: points desc, total time asc, then score id so that
    exact ties keep the order in which the scores were recorded.
    """
    scores = (
        db.execute(
            select(Score)
            .where(Score.instance_id == instance_id)
            .order_by(Score.total_points.desc(), Score.total_time_ms.asc(), Score.id.asc())
            .with_for_update()
        )
        .scalars()
        .all()
    )
    for rank, score in enumerate(scores, start=1):
        score.rank = rank
    db.flush()
    return scores


def batch_score_instance(db: Session, instance: QuizInstance, now: datetime | None = None) -> list[Score]:
    """Score every participant of a finished live quiz, rank them, pay placements."""
    now = now or utcnow()
    participant_ids = (
        db.execute(
            select(Attempt.user_id)
            .join(Response, Response.attempt_id == Attempt.id)
            .where(Attempt.instance_id == instance.id)
            .distinct()
        )
        .scalars()
        .all()
    )

    created = 0
    for user_id in participant_ids:
        _, was_created = ensure_scored(db, instance, user_id, now)
        created += int(was_created)

    ranked = rerank_instance(db, instance.id)
    for score in ranked:
        if score.placement_xp_awarded:
            continue
        amount = placement_xp(score.rank)
        if amount:
            grant_xp(
                db,
                score.user_id,
                amount,
                reason=f"Quiz placement #{score.rank}",
                source_type="placement",
                source_id=instance.id,
            )
        if score.rank == 1:
            advance_missions(db, score.user_id, "win_quiz", game_id=instance.game_id, now=now)
        score.placement_xp_awarded = True
    db.flush()

    logger.info(
        "Batch scored quiz %s: %s participants, %s new scores",
        instance.id,
        len(participant_ids),
        created,
    )
    return ranked


# ---------------------------------------------------------------------------
# Daily streaks
# ---------------------------------------------------------------------------


def get_streak(db: Session, user_id: int, game_id: int) -> Optional[UserStreak]:
    return db.execute(
        select(UserStreak).where(UserStreak.user_id == user_id, UserStreak.game_id == game_id)
    ).scalar_one_or_none()


def live_streak(streak: Optional[UserStreak], challenge_day) -> int:
    """Current streak as seen from ``challenge_day``; a gap means it is already broken."""
    if not streak or streak.last_completed_on is None:
        return 0
    if streak.last_completed_on >= challenge_day - timedelta(days=1):
        return streak.current_streak
    return 0


def advance_streak(
    db: Session, user_id: int, game_id: int, challenge_day, *, counts: bool
) -> Optional[UserStreak]:
    streak = get_streak(db, user_id, game_id)
    if not counts:
        return streak

    if streak is None:
        streak = UserStreak(
            user_id=user_id,
            game_id=game_id,
            current_streak=0,
            longest_streak=0,
            total_challenges_completed=0,
        )
        db.add(streak)

    if streak.last_completed_on == challenge_day:
        return streak
    if streak.last_completed_on == challenge_day - timedelta(days=1):
        streak.current_streak = streak.current_streak + 1
    else:
        streak.current_streak = 1
    streak.longest_streak = max(streak.longest_streak or 0, streak.current_streak)
    streak.last_completed_on = challenge_day
    streak.total_challenges_completed = (streak.total_challenges_completed or 0) + 1
    db.flush()
    return streak


# ---------------------------------------------------------------------------
# Per-mode attempt scoring
# ---------------------------------------------------------------------------


def score_attempt(db: Session, attempt: Attempt, instance: QuizInstance, now: datetime) -> Attempt:
    """Compute and persist the outcome of a just-completed attempt.

    Writes the attempt aggregate, any score/leaderboard/streak rows and the
    XP grant. The caller owns the transaction.
    """
    counts = tally(attempt.responses)
    attempt.correct_answers = counts.correct
    attempt.total_time_ms = counts.total_time_ms

    if instance.mode == "live":
        score, _ = ensure_scored(db, instance, attempt.user_id, now)
        attempt.points = score.total_points if score else 0
        xp = live_completion_xp(counts.correct)
        reason = f"Quiz completed ({counts.correct} correct)"
        source_type = "quiz"
    elif instance.mode == "daily":
        challenge_day = local_day(instance.scheduled_at)
        current = live_streak(get_streak(db, attempt.user_id, instance.game_id), challenge_day)
        attempt.streak_multiplier = streak_multiplier(current)
        xp = daily_xp(instance.xp_reward, counts.correct, current)
        timely = local_day(now) == challenge_day
        full = counts.answered >= instance.question_count
        advance_streak(db, attempt.user_id, instance.game_id, challenge_day, counts=timely and full)
        reason = f"Daily Challenge: {counts.correct}/{instance.question_count} correct"
        source_type = "daily"
    elif instance.mode == "flash":
        xp, got_bonus = flash_xp(
            xp_reward=instance.xp_reward,
            bonus_xp=instance.bonus_xp,
            bonus_threshold_ms=instance.bonus_xp_threshold_ms,
            correct=counts.correct,
            question_count=instance.question_count,
            average_time_ms=counts.average_time_ms,
        )
        attempt.bonus_earned = got_bonus
        reason = f"Flash Quiz: {counts.correct}/{instance.question_count} correct"
        if got_bonus:
            reason += " + Speed Bonus!"
        source_type = "flash"
    else:
        xp = practice_xp(counts.correct)
        reason = f"Practice session: {counts.correct}/{instance.question_count} correct"
        source_type = "practice"

    grant = grant_xp(db, attempt.user_id, xp, reason=reason, source_type=source_type, source_id=instance.id)
    record_quiz_progress(db, attempt.user_id, instance.game_id, points=attempt.points, now=now)
    attempt.xp_earned = xp
    attempt.total_xp_after = grant.new_total_xp
    attempt.level_after = grant.new_level
    attempt.completed_at = now
    db.flush()
    return attempt
