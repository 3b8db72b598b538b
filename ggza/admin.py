import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from ggza import config
from ggza.clock import local_day
from ggza.database import run_in_transaction
from ggza.errors import ConflictError, ContentUnavailableError, InvalidInputError, NotFoundError
from ggza.identity import Identity, require_admin
from ggza.models import DIFFICULTIES, MISSION_TYPES, QUIZ_STATUSES, REQUIREMENT_TYPES, Game, Mission, Question, QuizInstance
from ggza.sessions import active_pool, attach_questions, instance_summary, sample_questions
from ggza.shuffle import OPTION_COUNT

logger = logging.getLogger(__name__)

LIST_LIMIT = 50


def _as_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def _question_dict(question: Question) -> dict:
    return {
        "id": question.id,
        "game_id": question.game_id,
        "question_text": question.question_text,
        "options": list(question.options),
        "correct_index": question.correct_index,
        "difficulty": question.difficulty,
        "category": question.category,
        "explanation": question.explanation,
        "is_active": question.is_active,
        "times_used": question.times_used,
        "times_correct": question.times_correct,
    }


# ---------------------------------------------------------------------------
# Question bank
# ---------------------------------------------------------------------------


def validate_question(options: Sequence[str], correct_index: int, difficulty: str) -> list[str]:
    cleaned = [str(option).strip() for option in options]
    if len(cleaned) != OPTION_COUNT:
        raise InvalidInputError(f"A question needs exactly {OPTION_COUNT} options")
    if any(not option for option in cleaned):
        raise InvalidInputError("Options must not be empty")
    if len({option.lower() for option in cleaned}) != OPTION_COUNT:
        raise InvalidInputError("Options must be distinct")
    if not 0 <= correct_index < OPTION_COUNT:
        raise InvalidInputError(f"correct_index must be between 0 and {OPTION_COUNT - 1}")
    if difficulty not in DIFFICULTIES:
        raise InvalidInputError(f"difficulty must be one of {', '.join(DIFFICULTIES)}")
    return cleaned


def create_question(
    db: Session,
    identity: Identity,
    *,
    game_id: int,
    question_text: str,
    options: Sequence[str],
    correct_index: int,
    difficulty: str = "medium",
    category: Optional[str] = None,
    explanation: Optional[str] = None,
) -> dict:
    require_admin(identity)
    if not question_text.strip():
        raise InvalidInputError("question_text is required")
    cleaned = validate_question(options, correct_index, difficulty)
    if not db.get(Game, game_id):
        raise NotFoundError("Game not found")

    question = Question(
        game_id=game_id,
        question_text=question_text.strip(),
        options=cleaned,
        correct_index=correct_index,
        difficulty=difficulty,
        category=category,
        explanation=explanation,
    )
    db.add(question)
    db.commit()
    db.refresh(question)
    logger.info("Question %s added to game %s by user %s", question.id, game_id, identity.user_id)
    return _question_dict(question)


def deactivate_question(db: Session, identity: Identity, question_id: int) -> dict:
    require_admin(identity)
    question = db.get(Question, question_id)
    if not question:
        raise NotFoundError("Question not found")
    question.is_active = False
    db.commit()
    db.refresh(question)
    logger.info("Question %s deactivated by user %s", question_id, identity.user_id)
    return _question_dict(question)


# ---------------------------------------------------------------------------
# Missions
# ---------------------------------------------------------------------------


def create_mission(
    db: Session,
    identity: Identity,
    *,
    slug: str,
    title: str,
    mission_type: str,
    requirement_type: str,
    requirement_value: int = 1,
    xp_reward: int = 0,
    description: Optional[str] = None,
    icon: Optional[str] = None,
    game_id: Optional[int] = None,
    sort_order: int = 0,
) -> dict:
    require_admin(identity)
    if not slug.strip() or not title.strip():
        raise InvalidInputError("slug and title are required")
    if mission_type not in MISSION_TYPES:
        raise InvalidInputError(f"mission_type must be one of {', '.join(MISSION_TYPES)}")
    if requirement_type not in REQUIREMENT_TYPES:
        raise InvalidInputError(f"requirement_type must be one of {', '.join(REQUIREMENT_TYPES)}")
    if requirement_value < 1 or xp_reward < 0:
        raise InvalidInputError("requirement_value must be positive and xp_reward not negative")
    if game_id is not None and not db.get(Game, game_id):
        raise NotFoundError("Game not found")
    if db.execute(select(Mission.id).where(Mission.slug == slug.strip())).first():
        raise ConflictError(f"Mission {slug.strip()!r} already exists")

    mission = Mission(
        slug=slug.strip(),
        title=title.strip(),
        description=description,
        mission_type=mission_type,
        requirement_type=requirement_type,
        requirement_value=requirement_value,
        xp_reward=xp_reward,
        icon=icon,
        game_id=game_id,
        sort_order=sort_order,
    )
    db.add(mission)
    db.commit()
    db.refresh(mission)
    logger.info("Mission %s (%s) created by user %s", mission.slug, mission_type, identity.user_id)
    return {
        "id": mission.id,
        "slug": mission.slug,
        "title": mission.title,
        "mission_type": mission.mission_type,
        "requirement_type": mission.requirement_type,
        "requirement_value": mission.requirement_value,
        "xp_reward": mission.xp_reward,
        "game_id": mission.game_id,
        "is_active": mission.is_active,
    }


# ---------------------------------------------------------------------------
# Live quiz scheduling
# ---------------------------------------------------------------------------


def _find_week_quiz(db: Session, game_id: int, year: int, week_number: int) -> Optional[QuizInstance]:
    return db.execute(
        select(QuizInstance).where(
            QuizInstance.game_id == game_id,
            QuizInstance.mode == "live",
            QuizInstance.year == year,
            QuizInstance.week_number == week_number,
        )
    ).scalar_one_or_none()


def create_quiz(
    db: Session,
    identity: Identity,
    *,
    game_id: int,
    title: str,
    scheduled_at: datetime,
    description: Optional[str] = None,
    question_count: int = config.LIVE_QUESTION_COUNT,
    time_per_question: int = config.LIVE_TIME_PER_QUESTION,
    points_per_correct: int = config.LIVE_POINTS_PER_CORRECT,
    prize_pool: float = config.LIVE_PRIZE_POOL,
    week_number: Optional[int] = None,
    year: Optional[int] = None,
    is_monthly_final: bool = False,
) -> dict:
    """Schedule a live quiz; a game gets at most one per ISO week."""
    require_admin(identity)
    if not title.strip():
        raise InvalidInputError("title is required")
    if question_count < 1 or time_per_question < 1:
        raise InvalidInputError("question_count and time_per_question must be positive")
    if points_per_correct < 0:
        raise InvalidInputError("points_per_correct must not be negative")
    scheduled_at = _as_naive_utc(scheduled_at)
    if week_number is None or year is None:
        iso_year, iso_week, _ = local_day(scheduled_at).isocalendar()
        year = year or iso_year
        week_number = week_number or iso_week

    def _create(session: Session) -> dict:
        game = session.get(Game, game_id)
        if not game:
            raise NotFoundError("Game not found")
        if _find_week_quiz(session, game.id, year, week_number):
            raise ConflictError(f"A quiz already exists for {game.display_name} in week {week_number}, {year}")

        instance = QuizInstance(
            game_id=game.id,
            mode="live",
            status="scheduled",
            title=title.strip(),
            description=description,
            question_count=question_count,
            time_per_question=time_per_question,
            points_per_correct=points_per_correct,
            prize_pool=prize_pool,
            week_number=week_number,
            year=year,
            is_monthly_final=is_monthly_final,
            scheduled_at=scheduled_at,
        )
        session.add(instance)
        session.flush()
        logger.info("Live quiz %s scheduled for %s week %s/%s", instance.id, game.slug, week_number, year)
        return instance_summary(instance)

    return run_in_transaction(db, _create)


def _editable_quiz(db: Session, quiz_id: int) -> QuizInstance:
    instance = db.get(QuizInstance, quiz_id)
    if not instance or instance.mode != "live":
        raise NotFoundError("Quiz not found")
    if instance.status != "scheduled":
        raise ConflictError(f"Questions can only be changed while the quiz is scheduled (it is {instance.status})")
    return instance


def _assigned_ids(instance: QuizInstance) -> list[int]:
    return [assignment.question_id for assignment in instance.assignments]


def quiz_questions(db: Session, identity: Identity, quiz_id: int) -> dict:
    """Admin view: assignments in order with the canonical answer."""
    require_admin(identity)
    instance = db.get(QuizInstance, quiz_id)
    if not instance or instance.mode != "live":
        raise NotFoundError("Quiz not found")
    return {
        "quiz": instance_summary(instance),
        "assigned": len(instance.assignments),
        "questions": [
            {"order": assignment.order_index, **_question_dict(assignment.question)}
            for assignment in instance.assignments
        ],
    }


def add_questions(db: Session, identity: Identity, quiz_id: int, question_ids: Sequence[int]) -> dict:
    require_admin(identity)
    if not question_ids:
        raise InvalidInputError("question_ids must not be empty")
    requested = list(dict.fromkeys(question_ids))

    def _add(session: Session) -> int:
        instance = _editable_quiz(session, quiz_id)
        found = session.execute(
            select(Question.id).where(
                Question.id.in_(requested),
                Question.game_id == instance.game_id,
                Question.is_active.is_(True),
            )
        ).scalars().all()
        missing = sorted(set(requested) - set(found))
        if missing:
            raise NotFoundError(f"Questions not found for this game: {missing}")
        already = sorted(set(requested) & set(_assigned_ids(instance)))
        if already:
            raise ConflictError(f"Questions already in this quiz: {already}")

        attach_questions(session, instance, requested, start=len(instance.assignments) + 1)
        return len(requested)

    added = run_in_transaction(db, _add)
    logger.info("Added %s questions to quiz %s", added, quiz_id)
    return quiz_questions(db, identity, quiz_id)


def auto_select_questions(
    db: Session, identity: Identity, quiz_id: int, *, count: Optional[int] = None, difficulty: Optional[str] = None
) -> dict:
    """Top the quiz up to ``count`` (default: its question count) with random unused questions."""
    require_admin(identity)
    if difficulty is not None and difficulty not in DIFFICULTIES:
        raise InvalidInputError(f"difficulty must be one of {', '.join(DIFFICULTIES)}")

    def _auto(session: Session) -> int:
        instance = _editable_quiz(session, quiz_id)
        assigned = _assigned_ids(instance)
        target = count or instance.question_count
        needed = target - len(assigned)
        if needed <= 0:
            return 0
        pool = active_pool(session, instance.game_id, difficulty=difficulty, exclude=assigned)
        if not pool:
            raise ContentUnavailableError("No unused questions available for this game")
        picked = sample_questions(pool, needed)
        attach_questions(session, instance, picked, start=len(assigned) + 1)
        return len(picked)

    added = run_in_transaction(db, _auto)
    logger.info("Auto-selected %s questions for quiz %s", added, quiz_id)
    return quiz_questions(db, identity, quiz_id)


def remove_questions(db: Session, identity: Identity, quiz_id: int, question_ids: Sequence[int]) -> dict:
    require_admin(identity)
    doomed = set(question_ids)

    def _remove(session: Session) -> int:
        instance = _editable_quiz(session, quiz_id)
        keep = [a for a in instance.assignments if a.question_id not in doomed]
        removed = len(instance.assignments) - len(keep)
        instance.assignments = keep
        session.flush()
        for order, assignment in enumerate(keep, start=1):
            assignment.order_index = order
        session.flush()
        return removed

    removed = run_in_transaction(db, _remove)
    logger.info("Removed %s questions from quiz %s", removed, quiz_id)
    return quiz_questions(db, identity, quiz_id)


def clear_questions(db: Session, identity: Identity, quiz_id: int) -> dict:
    require_admin(identity)

    def _clear(session: Session) -> int:
        instance = _editable_quiz(session, quiz_id)
        removed = len(instance.assignments)
        instance.assignments = []
        session.flush()
        return removed

    removed = run_in_transaction(db, _clear)
    logger.info("Cleared %s questions from quiz %s", removed, quiz_id)
    return quiz_questions(db, identity, quiz_id)


def list_quizzes(
    db: Session, identity: Identity, *, game_id: Optional[int] = None, status: Optional[str] = None
) -> list[dict]:
    require_admin(identity)
    if status is not None and status not in QUIZ_STATUSES:
        raise InvalidInputError(f"status must be one of {', '.join(QUIZ_STATUSES)}")
    stmt = select(QuizInstance).where(QuizInstance.mode == "live")
    if game_id is not None:
        stmt = stmt.where(QuizInstance.game_id == game_id)
    if status is not None:
        stmt = stmt.where(QuizInstance.status == status)
    rows = db.execute(stmt.order_by(QuizInstance.scheduled_at.desc(), QuizInstance.id.desc()).limit(LIST_LIMIT)).scalars().all()
    return [{**instance_summary(row), "assigned": len(row.assignments)} for row in rows]
