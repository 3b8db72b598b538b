"""Mission catalog and per-period progress.

Progress rows are keyed on (user, mission, period key). Daily missions reset
every canonical day, weekly ones every ISO week and achievements never. The
reward itself is paid by ``levels.claim_mission``.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ggza.clock import day_key, utcnow, week_key
from ggza.errors import InvalidInputError
from ggza.models import REQUIREMENT_TYPES, Mission, UserMission

logger = logging.getLogger(__name__)

ACHIEVEMENT_KEY = "achievement"


def mission_period_key(mission_type: str, now: datetime) -> str:
    if mission_type == "daily":
        return f"daily_{day_key(now)}"
    if mission_type == "weekly":
        return f"week_{week_key(now)}"
    return ACHIEVEMENT_KEY


def period_keys(now: datetime) -> dict[str, str]:
    return {"daily": mission_period_key("daily", now), "weekly": mission_period_key("weekly", now)}


def active_missions(db: Session, requirement_type: Optional[str] = None) -> list[Mission]:
    stmt = select(Mission).where(Mission.is_active.is_(True))
    if requirement_type is not None:
        stmt = stmt.where(Mission.requirement_type == requirement_type)
    return db.execute(stmt.order_by(Mission.sort_order.asc(), Mission.id.asc())).scalars().all()


def find_user_mission(db: Session, user_id: int, mission_id: int, period_key: str) -> Optional[UserMission]:
    return db.execute(
        select(UserMission).where(
            UserMission.user_id == user_id,
            UserMission.mission_id == mission_id,
            UserMission.period_key == period_key,
        )
    ).scalar_one_or_none()


def _mission_dict(mission: Mission, period_key: str, progress: Optional[UserMission]) -> dict:
    return {
        "id": mission.id,
        "slug": mission.slug,
        "title": mission.title,
        "description": mission.description,
        "icon": mission.icon,
        "xp_reward": mission.xp_reward,
        "requirement_type": mission.requirement_type,
        "requirement_value": mission.requirement_value,
        "period_key": period_key,
        "progress": progress.progress if progress else 0,
        "completed": progress.completed if progress else False,
        "claimed": progress.claimed if progress else False,
        "completed_at": progress.completed_at if progress else None,
    }


def list_missions(db: Session, user_id: int, now: datetime | None = None) -> dict:
    """Every active mission with the user's progress for the current period."""
    now = now or utcnow()
    missions = active_missions(db)
    keys = {mission_period_key(t, now) for t in ("daily", "weekly", "achievement")}
    rows = db.execute(
        select(UserMission).where(UserMission.user_id == user_id, UserMission.period_key.in_(keys))
    ).scalars().all()
    progress = {(row.mission_id, row.period_key): row for row in rows}

    grouped = {"daily": [], "weekly": [], "achievement": []}
    for mission in missions:
        key = mission_period_key(mission.mission_type, now)
        grouped[mission.mission_type].append(_mission_dict(mission, key, progress.get((mission.id, key))))

    return {
        "daily": grouped["daily"],
        "weekly": grouped["weekly"],
        "achievements": grouped["achievement"],
        "period_keys": period_keys(now),
    }


def advance_missions(
    db: Session,
    user_id: int,
    requirement_type: str,
    amount: int = 1,
    *,
    game_id: Optional[int] = None,
    now: datetime | None = None,
) -> list[dict]:
    """Add ``amount`` to every matching mission the user has not finished yet.

    Does not commit. A progress row created by a racing caller surfaces as an
    IntegrityError and a concurrent bump as a StaleDataError; both are left to
    the caller's ``run_in_transaction``.
    """
    if requirement_type not in REQUIREMENT_TYPES:
        raise InvalidInputError(f"Unknown requirement type {requirement_type!r}")
    if amount <= 0:
        return []
    now = now or utcnow()

    updated = []
    for mission in active_missions(db, requirement_type):
        if mission.game_id and game_id and mission.game_id != game_id:
            continue
        key = mission_period_key(mission.mission_type, now)
        row = find_user_mission(db, user_id, mission.id, key)
        if row is None:
            row = UserMission(user_id=user_id, mission_id=mission.id, period_key=key, progress=0)
            db.add(row)
        elif row.completed:
            continue

        row.progress += amount
        just_completed = row.progress >= mission.requirement_value
        if just_completed:
            row.completed = True
            row.completed_at = now
            logger.info("User %s completed mission %s (%s)", user_id, mission.slug, key)
        updated.append(
            {
                "mission_id": mission.id,
                "slug": mission.slug,
                "progress": row.progress,
                "required": mission.requirement_value,
                "just_completed": just_completed,
            }
        )
    db.flush()
    return updated


def record_quiz_progress(
    db: Session, user_id: int, game_id: int, *, points: int = 0, now: datetime | None = None
) -> list[dict]:
    """Mission progress for one finished attempt: a play, plus any points scored."""
    updated = advance_missions(db, user_id, "play_quiz", game_id=game_id, now=now)
    updated += advance_missions(db, user_id, "score_points", points, game_id=game_id, now=now)
    return updated
