"""Quiz instance lifecycle and playable views.

Live quizzes move ``scheduled -> live -> completed`` or ``scheduled ->
cancelled`` under admin control. Daily challenges and flash quizzes are
generated lazily on first read for their (game, day) or (game, hour)
bucket; practice runs are private, single-use instances.
"""
import logging
import random
from datetime import datetime, time
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ggza import config
from ggza.attempts import attempt_result, find_attempt
from ggza.clock import day_key, hour_bucket, local_day, to_utc, utcnow
from ggza.database import run_in_transaction
from ggza.errors import ConflictError, ContentUnavailableError, InvalidInputError, NotFoundError
from ggza.identity import Identity, require_admin, require_verified
from ggza.models import (
    QUIZ_STATUSES,
    Attempt,
    Game,
    Question,
    QuestionAssignment,
    QuizInstance,
    Score,
    User,
)
from ggza.scoring import batch_score_instance, ensure_scored, find_score, get_streak, live_streak, rerank_instance
from ggza.shuffle import apply_permutation, generate_permutation

logger = logging.getLogger(__name__)

# question sampling; tests swap this for a seeded Random
_rng = random.SystemRandom()

TRANSITIONS = {
    "scheduled": ("live", "cancelled"),
    "live": ("completed",),
}
TERMINAL_STATUSES = ("completed", "cancelled")


def get_game(db: Session, slug: str) -> Game:
    game = db.execute(select(Game).where(Game.slug == slug, Game.is_active.is_(True))).scalar_one_or_none()
    if not game:
        raise NotFoundError("Game not found")
    return game


def active_pool(
    db: Session, game_id: int, *, difficulty: Optional[str] = None, exclude: Sequence[int] = ()
) -> list[int]:
    stmt = select(Question.id).where(Question.game_id == game_id, Question.is_active.is_(True))
    if difficulty:
        stmt = stmt.where(Question.difficulty == difficulty)
    if exclude:
        stmt = stmt.where(Question.id.not_in(list(exclude)))
    return list(db.execute(stmt.order_by(Question.id)).scalars().all())


def sample_questions(pool: Sequence[int], count: int) -> list[int]:
    return _rng.sample(list(pool), min(len(pool), count))


def attach_questions(db: Session, instance: QuizInstance, question_ids: Sequence[int], *, start: int = 1) -> list[QuestionAssignment]:
    """Create assignments numbered from ``start``, each with its own answer shuffle."""
    assignments = [
        QuestionAssignment(
            instance_id=instance.id,
            question_id=question_id,
            order_index=start + offset,
            permutation=generate_permutation(),
        )
        for offset, question_id in enumerate(question_ids)
    ]
    db.add_all(assignments)
    db.flush()
    return assignments


def instance_summary(instance: QuizInstance) -> dict:
    return {
        "id": instance.id,
        "game": instance.game.slug,
        "mode": instance.mode,
        "status": instance.status,
        "title": instance.title,
        "description": instance.description,
        "period_key": instance.period_key,
        "question_count": instance.question_count,
        "time_per_question": instance.time_per_question,
        "points_per_correct": instance.points_per_correct,
        "prize_pool": instance.prize_pool,
        "xp_reward": instance.xp_reward,
        "bonus_xp": instance.bonus_xp,
        "bonus_xp_threshold_ms": instance.bonus_xp_threshold_ms,
        "week_number": instance.week_number,
        "year": instance.year,
        "is_monthly_final": instance.is_monthly_final,
        "scheduled_at": instance.scheduled_at,
        "started_at": instance.started_at,
        "ended_at": instance.ended_at,
    }


def display_questions(instance: QuizInstance) -> list[dict]:
    """Questions as the player sees them: options in shuffled order, no answer."""
    return [
        {
            "question_id": assignment.question_id,
            "order": assignment.order_index,
            "question_text": assignment.question.question_text,
            "options": apply_permutation(assignment.question.options, assignment.permutation),
            "difficulty": assignment.question.difficulty,
            "category": assignment.question.category,
            "time_limit": instance.time_per_question,
        }
        for assignment in instance.assignments
    ]


# ---------------------------------------------------------------------------
# Live quiz state machine
# ---------------------------------------------------------------------------


def _assignment_count(db: Session, instance_id: int) -> int:
    return db.execute(
        select(func.count(QuestionAssignment.id)).where(QuestionAssignment.instance_id == instance_id)
    ).scalar_one()


def transition_instance(
    db: Session, identity: Identity, instance_id: int, target: str, now: datetime | None = None
) -> dict:
    require_admin(identity)
    if target not in QUIZ_STATUSES:
        raise InvalidInputError(f"status must be one of {', '.join(QUIZ_STATUSES)}")
    now = now or utcnow()

    def _transition(session: Session) -> dict:
        instance = session.execute(
            select(QuizInstance).where(QuizInstance.id == instance_id).with_for_update()
        ).scalar_one_or_none()
        if not instance or instance.mode != "live":
            raise NotFoundError("Quiz not found")

        current = instance.status
        if current in TERMINAL_STATUSES:
            raise ConflictError(f"Quiz is already {current}; no further status changes are allowed")
        if target not in TRANSITIONS.get(current, ()):
            raise ConflictError(f"Cannot move quiz from {current} to {target}")

        if target == "live":
            have = _assignment_count(session, instance.id)
            if have < instance.question_count:
                raise ConflictError(
                    f"Quiz needs {instance.question_count} questions but only has {have} "
                    f"(add {instance.question_count - have} more)"
                )
            instance.started_at = now
        elif target == "completed":
            instance.ended_at = now

        instance.status = target
        session.flush()

        ranked = batch_score_instance(session, instance, now) if target == "completed" else []
        logger.info("Quiz %s moved %s -> %s by user %s", instance.id, current, target, identity.user_id)
        return {
            "id": instance.id,
            "previous_status": current,
            "status": target,
            "scored_participants": len(ranked),
        }

    return run_in_transaction(db, _transition)


# ---------------------------------------------------------------------------
# Daily challenge and flash quiz generation
# ---------------------------------------------------------------------------


def _bucket(mode: str, now: datetime) -> tuple[str, datetime]:
    if mode == "daily":
        start = to_utc(datetime.combine(local_day(now), time.min))
        return day_key(now), start
    if mode == "flash":
        key, start, _ = hour_bucket(now)
        return key, start
    raise InvalidInputError(f"{mode} quizzes are not generated on demand")


def _ephemeral_defaults(mode: str, game: Game, key: str) -> dict:
    if mode == "daily":
        return {
            "title": f"{game.display_name} Daily Challenge",
            "description": f"Daily challenge for {key}",
            "question_count": config.DAILY_QUESTION_COUNT,
            "time_per_question": config.DAILY_TIME_PER_QUESTION,
            "xp_reward": config.DAILY_XP_REWARD,
        }
    return {
        "title": f"{game.display_name} Flash Quiz",
        "description": f"Flash quiz for {key}:00",
        "question_count": config.FLASH_QUESTION_COUNT,
        "time_per_question": config.FLASH_TIME_PER_QUESTION,
        "xp_reward": config.FLASH_XP_REWARD,
        "bonus_xp": config.FLASH_BONUS_XP,
        "bonus_xp_threshold_ms": config.FLASH_BONUS_THRESHOLD_MS,
    }


def _find_bucket_instance(db: Session, game_id: int, mode: str, key: str) -> Optional[QuizInstance]:
    return db.execute(
        select(QuizInstance).where(
            QuizInstance.game_id == game_id,
            QuizInstance.mode == mode,
            QuizInstance.period_key == key,
        )
    ).scalar_one_or_none()


def get_or_create_ephemeral(db: Session, game_slug: str, mode: str, now: datetime | None = None) -> QuizInstance:
    """Return the (game, bucket) instance for ``mode``, generating it on first read.

    A small pool shrinks the question count; an empty pool creates nothing.
    Concurrent first reads race on the bucket's unique key and the loser
    re-reads the winner's instance.
    """
    now = now or utcnow()
    key, scheduled_at = _bucket(mode, now)

    def _generate(session: Session) -> QuizInstance:
        game = get_game(session, game_slug)
        existing = _find_bucket_instance(session, game.id, mode, key)
        if existing:
            return existing

        defaults = _ephemeral_defaults(mode, game, key)
        pool = active_pool(session, game.id)
        if not pool:
            raise ContentUnavailableError(f"No questions available for {game.display_name}")
        picked = sample_questions(pool, defaults["question_count"])
        defaults["question_count"] = len(picked)

        instance = QuizInstance(
            game_id=game.id,
            mode=mode,
            status="live",
            period_key=key,
            scheduled_at=scheduled_at,
            started_at=now,
            **defaults,
        )
        session.add(instance)
        session.flush()
        attach_questions(session, instance, picked)
        logger.info("Generated %s quiz %s for %s bucket %s with %s questions", mode, instance.id, game.slug, key, len(picked))
        return instance

    return run_in_transaction(db, _generate)


def get_playable(db: Session, identity: Identity, game_slug: str, mode: str, now: datetime | None = None) -> dict:
    """Today's daily challenge or this hour's flash quiz, with the caller's progress."""
    require_verified(identity)
    now = now or utcnow()
    instance = get_or_create_ephemeral(db, game_slug, mode, now)
    attempt = find_attempt(db, identity.user_id, instance.id)

    payload = {"instance": instance_summary(instance)}
    if mode == "daily":
        streak = get_streak(db, identity.user_id, instance.game_id)
        payload["current_streak"] = live_streak(streak, local_day(instance.scheduled_at))
        payload["longest_streak"] = streak.longest_streak if streak else 0

    if attempt and attempt.completed_at is not None:
        payload.update(status="completed", attempt_id=attempt.id, result=attempt_result(attempt, instance))
        return payload

    payload.update(
        status="in_progress" if attempt else "ready",
        attempt_id=attempt.id if attempt else None,
        questions=display_questions(instance),
    )
    return payload


# ---------------------------------------------------------------------------
# Practice
# ---------------------------------------------------------------------------


def start_practice(
    db: Session, identity: Identity, game_slug: str, count: Optional[int] = None, now: datetime | None = None
) -> dict:
    """Open a private practice instance plus its attempt. Unverified users may practice."""
    count = count or config.PRACTICE_QUESTION_COUNT
    if not 1 <= count <= config.PRACTICE_MAX_QUESTIONS:
        raise InvalidInputError(f"count must be between 1 and {config.PRACTICE_MAX_QUESTIONS}")
    now = now or utcnow()

    def _start(session: Session):
        game = get_game(session, game_slug)
        pool = active_pool(session, game.id)
        if not pool:
            raise ContentUnavailableError(f"No questions available for {game.display_name}")
        picked = sample_questions(pool, count)

        instance = QuizInstance(
            game_id=game.id,
            mode="practice",
            status="live",
            title=f"{game.display_name} Practice",
            owner_id=identity.user_id,
            question_count=len(picked),
            time_per_question=config.PRACTICE_TIME_PER_QUESTION,
            scheduled_at=now,
            started_at=now,
        )
        session.add(instance)
        session.flush()
        attach_questions(session, instance, picked)

        attempt = Attempt(user_id=identity.user_id, instance_id=instance.id, started_at=now)
        session.add(attempt)
        session.flush()
        logger.info("User %s started practice %s on %s with %s questions", identity.user_id, instance.id, game.slug, len(picked))
        return {
            "status": "in_progress",
            "attempt_id": attempt.id,
            "instance": instance_summary(instance),
            "questions": display_questions(instance),
        }

    return run_in_transaction(db, _start)


# ---------------------------------------------------------------------------
# Live quiz play view and results
# ---------------------------------------------------------------------------


def _live_quiz(db: Session, quiz_id: int) -> QuizInstance:
    instance = db.get(QuizInstance, quiz_id)
    if not instance or instance.mode != "live":
        raise NotFoundError("Quiz not found")
    return instance


def _score_dict(score: Score) -> dict:
    return {
        "total_points": score.total_points,
        "correct_answers": score.correct_answers,
        "total_questions": score.total_questions,
        "total_time_ms": score.total_time_ms,
        "rank": score.rank,
    }


def get_live_quiz(db: Session, identity: Identity, quiz_id: int) -> dict:
    require_verified(identity)
    instance = _live_quiz(db, quiz_id)
    summary = instance_summary(instance)

    score = db.execute(
        select(Score).where(Score.instance_id == instance.id, Score.user_id == identity.user_id)
    ).scalar_one_or_none()
    if score:
        return {"status": "completed", "instance": summary, "score": _score_dict(score)}
    if instance.status != "live":
        return {"status": instance.status, "instance": summary}

    attempt = find_attempt(db, identity.user_id, instance.id)
    return {
        "status": "live",
        "instance": summary,
        "attempt_id": attempt.id if attempt else None,
        "questions": display_questions(instance),
    }


def get_quiz_results(db: Session, identity: Identity, quiz_id: int, now: datetime | None = None) -> dict:
    """The caller's score and, after the quiz ends, the standings.

    A missing score is synthesized once, but only when the answers are final:
    the quiz has completed or the caller's attempt is closed. While a live
    attempt is still open the stored score (normally none) is returned as is.
    """
    require_verified(identity)
    now = now or utcnow()

    def _results(session: Session) -> dict:
        instance = _live_quiz(session, quiz_id)
        if instance.status in ("scheduled", "cancelled"):
            return {"status": instance.status, "score": None, "standings": []}

        attempt = find_attempt(session, identity.user_id, instance.id)
        if instance.status == "completed" or (attempt and attempt.completed_at is not None):
            score, created = ensure_scored(session, instance, identity.user_id, now)
        else:
            score, created = find_score(session, instance.id, identity.user_id), False
        if created:
            logger.info("Recovered missing score for user %s on quiz %s", identity.user_id, instance.id)
            if instance.status == "completed":
                rerank_instance(session, instance.id)

        standings = []
        if instance.status == "completed":
            rows = session.execute(
                select(Score, User.username)
                .join(User, User.id == Score.user_id)
                .where(Score.instance_id == instance.id)
                .order_by(Score.rank.asc(), Score.id.asc())
            ).all()
            standings = [
                {"user_id": row.user_id, "username": username, **_score_dict(row)} for row, username in rows
            ]

        return {
            "status": instance.status,
            "score": _score_dict(score) if score else None,
            "standings": standings,
        }

    return run_in_transaction(db, _results)
