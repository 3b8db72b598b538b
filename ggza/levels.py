import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ggza import config
from ggza.clock import local_day, utcnow
from ggza.database import run_in_transaction
from ggza.errors import ConflictError, InvalidInputError, NotFoundError
from ggza.missions import advance_missions
from ggza.models import User, UserMission, XPTransaction

logger = logging.getLogger(__name__)

XP_SOURCE_TYPES = ("quiz", "daily", "flash", "practice", "placement", "claim", "mission", "admin")


class LevelThreshold(NamedTuple):
    level: int
    xp_required: int
    title: str
    color: str


LEVEL_THRESHOLDS = (
    LevelThreshold(1, 0, "Rookie", "#9CA3AF"),
    LevelThreshold(2, 100, "Rookie", "#9CA3AF"),
    LevelThreshold(3, 250, "Rookie", "#9CA3AF"),
    LevelThreshold(4, 500, "Apprentice", "#60A5FA"),
    LevelThreshold(5, 850, "Apprentice", "#60A5FA"),
    LevelThreshold(6, 1300, "Apprentice", "#60A5FA"),
    LevelThreshold(7, 1900, "Competitor", "#34D399"),
    LevelThreshold(8, 2700, "Competitor", "#34D399"),
    LevelThreshold(9, 3700, "Competitor", "#34D399"),
    LevelThreshold(10, 5000, "Expert", "#A78BFA"),
    LevelThreshold(11, 6500, "Expert", "#A78BFA"),
    LevelThreshold(12, 8500, "Expert", "#A78BFA"),
    LevelThreshold(13, 11000, "Master", "#F59E0B"),
    LevelThreshold(14, 14000, "Master", "#F59E0B"),
    LevelThreshold(15, 18000, "Master", "#F59E0B"),
    LevelThreshold(16, 23000, "Grandmaster", "#EF4444"),
    LevelThreshold(17, 29000, "Grandmaster", "#EF4444"),
    LevelThreshold(18, 36000, "Grandmaster", "#EF4444"),
    LevelThreshold(19, 45000, "Legend", "#FFD700"),
    LevelThreshold(20, 55000, "Legend", "#FFD700"),
    LevelThreshold(21, 70000, "Champion", "#FF6B6B"),
    LevelThreshold(22, 90000, "Champion", "#FF6B6B"),
    LevelThreshold(23, 115000, "Champion", "#FF6B6B"),
    LevelThreshold(24, 145000, "Immortal", "#00D9FF"),
    LevelThreshold(25, 200000, "Immortal", "#00D9FF"),
)


@dataclass(frozen=True)
class LevelInfo:
    level: int
    title: str
    color: str
    current_level_floor: int
    next_level_floor: Optional[int]
    progress_percent: float

    def to_dict(self):
        return asdict(self)


def level_for(xp: int) -> LevelInfo:
    """Map cumulative XP onto the ladder. Pure; grant and read paths both use it."""
    current_idx = 0
    for idx in range(len(LEVEL_THRESHOLDS) - 1, -1, -1):
        if xp >= LEVEL_THRESHOLDS[idx].xp_required:
            current_idx = idx
            break

    current = LEVEL_THRESHOLDS[current_idx]
    nxt = LEVEL_THRESHOLDS[current_idx + 1] if current_idx + 1 < len(LEVEL_THRESHOLDS) else None
    if nxt is None:
        progress = 100.0
    else:
        span = nxt.xp_required - current.xp_required
        progress = round(max(0, xp - current.xp_required) / span * 100, 2)

    return LevelInfo(
        level=current.level,
        title=current.title,
        color=current.color,
        current_level_floor=current.xp_required,
        next_level_floor=nxt.xp_required if nxt else None,
        progress_percent=progress,
    )


@dataclass
class XPGrant:
    amount: int
    new_total_xp: int
    new_level: int
    leveled_up: bool


def grant_xp(
    db: Session,
    user_id: int,
    amount: int,
    *,
    reason: str,
    source_type: str,
    source_id: Optional[str] = None,
) -> XPGrant:
    """Append a ledger row and move the user's xp/level together.

    Does not commit: callers fold this into their own unit of work so the
    grant lands with the score or attempt that earned it.
    """
    if source_type not in XP_SOURCE_TYPES:
        raise InvalidInputError(f"Unknown XP source type {source_type!r}")

    old_level = db.execute(select(User.level).where(User.id == user_id)).scalar_one_or_none()
    if old_level is None:
        raise NotFoundError("User not found")

    db.add(
        XPTransaction(
            user_id=user_id,
            amount=amount,
            reason=reason,
            source_type=source_type,
            source_id=str(source_id) if source_id is not None else None,
        )
    )
    # increment in SQL so concurrent grants cannot overwrite each other
    db.execute(update(User).where(User.id == user_id).values(xp=User.xp + amount))
    new_xp = db.execute(select(User.xp).where(User.id == user_id)).scalar_one()
    new_level = level_for(new_xp).level
    db.execute(update(User).where(User.id == user_id).values(level=new_level))
    db.flush()

    logger.info("Granted %s XP to user %s (%s); total=%s level=%s", amount, user_id, reason, new_xp, new_level)
    return XPGrant(amount=amount, new_total_xp=new_xp, new_level=new_level, leveled_up=new_level > old_level)


def _claim_streak(user: User, now: datetime) -> tuple[bool, int]:
    today = local_day(now)
    if user.last_daily_claim is not None:
        last_day = local_day(user.last_daily_claim)
        if last_day == today:
            return False, user.streak_days
        if last_day == today - timedelta(days=1):
            return True, user.streak_days + 1
    return True, 1


def _claim_amount(streak: int) -> tuple[int, int]:
    bonus = min(streak * config.DAILY_CLAIM_STREAK_BONUS_PER_DAY, config.DAILY_CLAIM_MAX_STREAK_BONUS)
    return config.DAILY_CLAIM_XP + bonus, bonus


def daily_reward_status(db: Session, user_id: int, now: datetime | None = None):
    now = now or utcnow()
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    can_claim, potential_streak = _claim_streak(user, now)
    potential_xp, _ = _claim_amount(potential_streak)
    return {
        "can_claim": can_claim,
        "current_streak": user.streak_days,
        "potential_streak": potential_streak if can_claim else user.streak_days,
        "potential_xp": potential_xp if can_claim else 0,
        "last_claim": user.last_daily_claim,
    }


def claim_daily_reward(db: Session, user_id: int, now: datetime | None = None):
    now = now or utcnow()

    def _claim(session: Session):
        user = session.execute(select(User).where(User.id == user_id).with_for_update()).scalar_one_or_none()
        if not user:
            raise NotFoundError("User not found")
        can_claim, streak = _claim_streak(user, now)
        if not can_claim:
            raise ConflictError("Daily reward already claimed today")

        amount, bonus = _claim_amount(streak)
        user.streak_days = streak
        user.last_daily_claim = now
        grant = grant_xp(
            session,
            user_id,
            amount,
            reason=f"Daily reward ({streak} day streak)",
            source_type="claim",
        )
        advance_missions(session, user_id, "daily_claim", now=now)
        return {
            "xp_gained": amount,
            "base_xp": config.DAILY_CLAIM_XP,
            "streak_bonus": bonus,
            "new_streak": streak,
            "total_xp": grant.new_total_xp,
            "level": grant.new_level,
        }

    return run_in_transaction(db, _claim)


def xp_summary(db: Session, user_id: int, *, limit: int = 10):
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    recent = (
        db.query(XPTransaction)
        .filter(XPTransaction.user_id == user_id)
        .order_by(XPTransaction.created_at.desc(), XPTransaction.id.desc())
        .limit(limit)
        .all()
    )
    return {
        "xp": user.xp,
        "level": level_for(user.xp).to_dict(),
        "streak_days": user.streak_days,
        "last_daily_claim": user.last_daily_claim,
        "recent_transactions": [
            {
                "amount": t.amount,
                "reason": t.reason,
                "source_type": t.source_type,
                "source_id": t.source_id,
                "created_at": t.created_at,
            }
            for t in recent
        ],
    }


def claim_mission(db: Session, user_id: int, mission_id: int, period_key: str, now: datetime | None = None):
    """Pay a completed mission's reward once; a second claim is a conflict."""
    now = now or utcnow()

    def _claim(session: Session):
        row = session.execute(
            select(UserMission)
            .where(
                UserMission.user_id == user_id,
                UserMission.mission_id == mission_id,
                UserMission.period_key == period_key,
            )
            .with_for_update()
        ).scalar_one_or_none()
        if not row:
            raise NotFoundError("Mission not found")
        if not row.completed:
            raise InvalidInputError("Mission not completed")
        if row.claimed:
            raise ConflictError("Mission reward already claimed")

        row.claimed = True
        row.claimed_at = now
        # versioned; a racing claim fails here before any XP moves
        session.flush()
        mission = row.mission
        grant = grant_xp(
            session,
            user_id,
            mission.xp_reward,
            reason=f"Mission: {mission.title}",
            source_type="mission",
            source_id=mission.id,
        )
        return {
            "mission_id": mission.id,
            "period_key": period_key,
            "xp_gained": mission.xp_reward,
            "total_xp": grant.new_total_xp,
            "level": grant.new_level,
        }

    return run_in_transaction(db, _claim)
