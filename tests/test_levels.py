from datetime import datetime

import pytest

from ggza.errors import ConflictError, InvalidInputError, NotFoundError
from ggza.levels import (
    LEVEL_THRESHOLDS,
    claim_daily_reward,
    daily_reward_status,
    grant_xp,
    level_for,
    xp_summary,
)
from ggza.models import User, XPTransaction


def test_level_for_bottom_of_ladder():
    info = level_for(0)
    assert info.level == 1
    assert info.title == "Rookie"
    assert info.current_level_floor == 0
    assert info.next_level_floor == 100
    assert info.progress_percent == 0.0


def test_level_for_interpolates_progress():
    info = level_for(175)
    assert info.level == 2
    assert info.next_level_floor == 250
    assert info.progress_percent == 50.0


def test_level_for_exact_threshold_moves_up():
    assert level_for(4999).level == 9
    assert level_for(5000).level == 10
    assert level_for(5000).title == "Expert"


def test_level_for_top_tier():
    info = level_for(250_000)
    assert info.level == 25
    assert info.title == "Immortal"
    assert info.next_level_floor is None
    assert info.progress_percent == 100.0


def test_level_is_monotonic_in_xp():
    previous = level_for(0).level
    for xp in range(0, 210_000, 97):
        level = level_for(xp).level
        assert level >= previous
        previous = level


def test_thresholds_strictly_ascending():
    required = [t.xp_required for t in LEVEL_THRESHOLDS]
    assert required == sorted(required)
    assert len(set(required)) == len(required)


def test_grant_xp_moves_xp_and_level_together(db, make_user):
    user = make_user()

    grant = grant_xp(db, user.id, 260, reason="Quiz completed", source_type="quiz", source_id=42)
    db.commit()

    db.refresh(user)
    assert grant.new_total_xp == 260
    assert grant.new_level == 3
    assert grant.leveled_up is True
    assert user.xp == 260
    assert user.level == level_for(user.xp).level
    ledger = db.query(XPTransaction).filter(XPTransaction.user_id == user.id).all()
    assert [(t.amount, t.source_type, t.source_id) for t in ledger] == [(260, "quiz", "42")]


def test_grant_xp_rejects_unknown_source(db, make_user):
    user = make_user()
    with pytest.raises(InvalidInputError):
        grant_xp(db, user.id, 10, reason="?", source_type="lottery")


def test_grant_xp_unknown_user(db):
    with pytest.raises(NotFoundError):
        grant_xp(db, 999, 10, reason="?", source_type="admin")


def test_daily_claim_uses_canonical_day(db, make_user):
    user = make_user()
    # 23:30 UTC is already the next morning on the canonical clock
    first = claim_daily_reward(db, user.id, now=datetime(2025, 3, 12, 23, 30))
    assert first["new_streak"] == 1
    assert first["xp_gained"] == 20
    assert first["streak_bonus"] == 5

    with pytest.raises(ConflictError):
        claim_daily_reward(db, user.id, now=datetime(2025, 3, 13, 10, 0))

    second = claim_daily_reward(db, user.id, now=datetime(2025, 3, 14, 8, 0))
    assert second["new_streak"] == 2
    assert second["xp_gained"] == 25
    assert second["total_xp"] == 45


def test_daily_claim_streak_resets_after_gap_and_bonus_caps(db, make_user):
    user = make_user()
    user.streak_days = 20
    user.last_daily_claim = datetime(2025, 3, 11, 9, 0)
    db.commit()

    capped = claim_daily_reward(db, user.id, now=datetime(2025, 3, 12, 9, 0))
    assert capped["new_streak"] == 21
    assert capped["streak_bonus"] == 50
    assert capped["xp_gained"] == 65

    reset = claim_daily_reward(db, user.id, now=datetime(2025, 3, 20, 9, 0))
    assert reset["new_streak"] == 1
    assert reset["xp_gained"] == 20


def test_daily_reward_status(db, make_user):
    user = make_user()
    now = datetime(2025, 3, 12, 9, 0)

    before = daily_reward_status(db, user.id, now=now)
    assert before["can_claim"] is True
    assert before["potential_xp"] == 20

    claim_daily_reward(db, user.id, now=now)
    after = daily_reward_status(db, user.id, now=now)
    assert after["can_claim"] is False
    assert after["potential_xp"] == 0
    assert after["current_streak"] == 1


def test_xp_summary_lists_newest_first(db, make_user):
    user = make_user()
    grant_xp(db, user.id, 10, reason="first", source_type="practice")
    grant_xp(db, user.id, 20, reason="second", source_type="practice")
    db.commit()

    summary = xp_summary(db, user.id)

    assert summary["xp"] == 30
    assert summary["level"]["level"] == 1
    assert [t["reason"] for t in summary["recent_transactions"]] == ["second", "first"]
    assert db.get(User, user.id).level == 1
