import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ggza.clock import day_key, hour_bucket, utcnow
from ggza.database import run_in_transaction
from ggza.errors import ConflictError, DataIntegrityError, InvalidInputError, NotFoundError
from ggza.identity import Identity, require_verified
from ggza.models import Attempt, Question, QuestionAssignment, QuizInstance, Response
from ggza.scoring import score_attempt
from ggza.shuffle import OPTION_COUNT, displayed_index_of, resolve_selection

logger = logging.getLogger(__name__)


def find_attempt(db: Session, user_id: int, instance_id: int) -> Optional[Attempt]:
    return db.execute(
        select(Attempt).where(Attempt.user_id == user_id, Attempt.instance_id == instance_id)
    ).scalar_one_or_none()


def _find_response(db: Session, attempt_id: int, assignment_id: int) -> Optional[Response]:
    return db.execute(
        select(Response).where(Response.attempt_id == attempt_id, Response.assignment_id == assignment_id)
    ).scalar_one_or_none()


def _owned_attempt(db: Session, identity: Identity, attempt_id: int, *, lock: bool = False) -> Attempt:
    stmt = select(Attempt).where(Attempt.id == attempt_id)
    if lock:
        stmt = stmt.with_for_update()
    attempt = db.execute(stmt).scalar_one_or_none()
    if not attempt or attempt.user_id != identity.user_id:
        raise NotFoundError("Attempt not found")
    return attempt


def _check_access(identity: Identity, instance: QuizInstance) -> None:
    if instance.mode == "practice":
        if instance.owner_id != identity.user_id:
            raise NotFoundError("Practice session not found")
    else:
        require_verified(identity)


def attempt_result(attempt: Attempt, instance: QuizInstance) -> dict:
    """Completion aggregate rebuilt from stored fields only, so replays match exactly."""
    return {
        "attempt_id": attempt.id,
        "instance_id": instance.id,
        "mode": instance.mode,
        "correct_answers": attempt.correct_answers,
        "total_questions": instance.question_count,
        "total_time_ms": attempt.total_time_ms,
        "score": attempt.points,
        "xp_earned": attempt.xp_earned,
        "speed_bonus": attempt.bonus_earned,
        "streak_multiplier": attempt.streak_multiplier,
        "new_total_xp": attempt.total_xp_after,
        "new_level": attempt.level_after,
        "completed_at": attempt.completed_at,
    }


def _bucket_is_current(instance: QuizInstance, now: datetime) -> bool:
    if instance.mode == "daily":
        return instance.period_key == day_key(now)
    if instance.mode == "flash":
        return instance.period_key == hour_bucket(now)[0]
    return True


def start_attempt(db: Session, identity: Identity, instance_id: int, now: datetime | None = None) -> Attempt:
    """Return the caller's attempt on the instance, creating it on first call.

    Two racing starts both pass the lookup; the unique (user, instance)
    constraint rejects the second insert and the retry finds the winner.
    """
    now = now or utcnow()

    def _start(session: Session) -> Attempt:
        instance = session.get(QuizInstance, instance_id)
        if not instance:
            raise NotFoundError("Quiz not found")
        _check_access(identity, instance)

        existing = find_attempt(session, identity.user_id, instance.id)
        if existing:
            return existing
        if instance.status != "live":
            raise ConflictError(f"Quiz is {instance.status}; attempts can only be started while it is live")
        if not _bucket_is_current(instance, now):
            raise ConflictError(f"This {instance.mode} quiz ({instance.period_key}) has ended")

        attempt = Attempt(user_id=identity.user_id, instance_id=instance.id, started_at=now)
        session.add(attempt)
        session.flush()
        logger.info("User %s started attempt %s on %s quiz %s", identity.user_id, attempt.id, instance.mode, instance.id)
        return attempt

    return run_in_transaction(db, _start)


def _grading(response: Response, assignment: QuestionAssignment, *, already_answered: bool) -> dict:
    return {
        "question_id": assignment.question_id,
        "correct": response.is_correct,
        "correct_displayed_index": displayed_index_of(assignment.question.correct_index, assignment.permutation),
        "already_answered": already_answered,
    }


def record_response(
    db: Session,
    identity: Identity,
    attempt_id: int,
    question_id: int,
    selected_index: Optional[int],
    elapsed_ms: int,
    now: datetime | None = None,
) -> dict:
    """Grade and store one answer. ``selected_index`` is in displayed order; None is a timeout."""
    if selected_index is not None and not 0 <= selected_index < OPTION_COUNT:
        raise InvalidInputError(f"selected_index must be between 0 and {OPTION_COUNT - 1}")
    now = now or utcnow()

    def _record(session: Session) -> dict:
        attempt = _owned_attempt(session, identity, attempt_id, lock=True)
        instance = attempt.instance
        assignment = session.execute(
            select(QuestionAssignment).where(
                QuestionAssignment.instance_id == instance.id,
                QuestionAssignment.question_id == question_id,
            )
        ).scalar_one_or_none()
        if not assignment:
            raise NotFoundError("Question not found in this quiz")

        if attempt.completed_at is not None:
            raise ConflictError("Attempt already completed")
        if instance.status != "live":
            raise ConflictError(f"Quiz is {instance.status}; responses are closed")

        existing = _find_response(session, attempt.id, assignment.id)
        if existing:
            logger.info("Duplicate response for attempt %s question %s; returning first grading", attempt.id, question_id)
            return _grading(existing, assignment, already_answered=True)

        try:
            is_correct = resolve_selection(selected_index, assignment.permutation, assignment.question.correct_index)
        except DataIntegrityError:
            logger.error(
                "Cannot grade assignment %s (quiz %s, question %s): stored permutation %r is invalid",
                assignment.id,
                instance.id,
                question_id,
                assignment.permutation,
            )
            raise

        response = Response(
            attempt_id=attempt.id,
            assignment_id=assignment.id,
            selected_index=selected_index,
            is_correct=is_correct,
            # ceiling only; a fast (even zero) report is taken as is
            response_time_ms=min(int(elapsed_ms), instance.time_limit_ms),
            created_at=now,
        )
        session.add(response)
        # versioned write; a completion committed since our read fails this flush
        attempt.answered_count += 1
        session.flush()
        session.execute(
            update(Question)
            .where(Question.id == assignment.question_id)
            .values(
                times_used=Question.times_used + 1,
                times_correct=Question.times_correct + (1 if is_correct else 0),
            )
        )
        return _grading(response, assignment, already_answered=False)

    return run_in_transaction(db, _record)


def complete_attempt(db: Session, identity: Identity, attempt_id: int, now: datetime | None = None) -> dict:
    now = now or utcnow()

    def _complete(session: Session) -> dict:
        attempt = _owned_attempt(session, identity, attempt_id, lock=True)
        instance = attempt.instance
        if attempt.completed_at is not None:
            logger.info("Attempt %s already completed; returning stored result", attempt.id)
            return attempt_result(attempt, instance)

        if instance.status == "cancelled":
            raise ConflictError("Quiz was cancelled; attempts are not scored")
        if instance.mode == "live" and not attempt.responses:
            raise InvalidInputError("No responses found for this attempt")

        score_attempt(session, attempt, instance, now)
        logger.info(
            "Completed attempt %s on %s quiz %s: %s/%s correct, %s XP",
            attempt.id,
            instance.mode,
            instance.id,
            attempt.correct_answers,
            instance.question_count,
            attempt.xp_earned,
        )
        return attempt_result(attempt, instance)

    return run_in_transaction(db, _complete)
