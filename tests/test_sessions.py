import random
from datetime import datetime

import pytest
from sqlalchemy import select

import ggza.sessions
from ggza.admin import (
    add_questions,
    auto_select_questions,
    clear_questions,
    create_question,
    create_quiz,
    deactivate_question,
    list_quizzes,
    remove_questions,
)
from ggza.attempts import complete_attempt, record_response, start_attempt
from ggza.errors import ConflictError, ContentUnavailableError, ForbiddenError, InvalidInputError
from ggza.models import LeaderboardEntry, QuestionAssignment, QuizInstance, Score
from ggza.sessions import (
    get_live_quiz,
    get_or_create_ephemeral,
    get_playable,
    get_quiz_results,
    start_practice,
    transition_instance,
)

NOW = datetime(2025, 3, 12, 10, 0)


def _assignment_count(db, instance_id):
    return db.query(QuestionAssignment).filter(QuestionAssignment.instance_id == instance_id).count()


# Ephemeral generation


def test_scarce_pool_shrinks_daily_challenge(db, game, make_questions):
    make_questions(game, 3)

    instance = get_or_create_ephemeral(db, "valorant", "daily", now=NOW)

    assert instance.question_count == 3
    assert _assignment_count(db, instance.id) == 3
    assert instance.status == "live"
    assert instance.period_key == "2025-03-12"


def test_empty_pool_creates_nothing(db, game):
    with pytest.raises(ContentUnavailableError):
        get_or_create_ephemeral(db, "valorant", "daily", now=NOW)
    assert db.query(QuizInstance).count() == 0


def test_inactive_questions_are_not_drawn(db, game, make_questions, admin):
    questions = make_questions(game, 2)
    deactivate_question(db, admin, questions[0].id)

    instance = get_or_create_ephemeral(db, "valorant", "flash", now=NOW)

    assert [a.question_id for a in instance.assignments] == [questions[1].id]


def test_daily_bucket_follows_canonical_day(db, game, make_questions):
    make_questions(game, 10)

    late_evening = get_or_create_ephemeral(db, "valorant", "daily", now=datetime(2025, 3, 12, 21, 59))
    same_day = get_or_create_ephemeral(db, "valorant", "daily", now=datetime(2025, 3, 12, 8, 0))
    after_midnight = get_or_create_ephemeral(db, "valorant", "daily", now=datetime(2025, 3, 12, 22, 1))

    assert late_evening.id == same_day.id
    assert after_midnight.id != late_evening.id
    assert after_midnight.period_key == "2025-03-13"
    assert late_evening.scheduled_at == datetime(2025, 3, 11, 22, 0)


def test_flash_quiz_is_one_per_hour(db, game, make_questions):
    make_questions(game, 8)

    first = get_or_create_ephemeral(db, "valorant", "flash", now=datetime(2025, 3, 12, 10, 5))
    same_hour = get_or_create_ephemeral(db, "valorant", "flash", now=datetime(2025, 3, 12, 10, 55))
    next_hour = get_or_create_ephemeral(db, "valorant", "flash", now=datetime(2025, 3, 12, 11, 0))

    assert first.id == same_hour.id
    assert next_hour.id != first.id
    assert first.period_key == "2025-03-12T12"
    assert first.question_count == 5
    assert first.bonus_xp == 25


def test_racing_generation_reuses_winner(db, game, make_questions, monkeypatch):
    make_questions(game, 10)
    winner = get_or_create_ephemeral(db, "valorant", "daily", now=NOW)

    real_find = ggza.sessions._find_bucket_instance
    misses = []

    def find_after_race(session, game_id, mode, key):
        if not misses:
            misses.append(1)
            return None
        return real_find(session, game_id, mode, key)

    monkeypatch.setattr(ggza.sessions, "_find_bucket_instance", find_after_race)
    loser = get_or_create_ephemeral(db, "valorant", "daily", now=NOW)

    assert loser.id == winner.id
    assert db.query(QuizInstance).filter(QuizInstance.mode == "daily").count() == 1


def test_seeded_sampling_is_reproducible(db, game, make_questions, monkeypatch):
    make_questions(game, 20)

    monkeypatch.setattr(ggza.sessions, "_rng", random.Random(11))
    first = [a.question_id for a in get_or_create_ephemeral(db, "valorant", "daily", now=NOW).assignments]
    monkeypatch.setattr(ggza.sessions, "_rng", random.Random(11))
    second = [a.question_id for a in get_or_create_ephemeral(db, "valorant", "flash", now=NOW).assignments]

    assert len(set(first)) == 10
    assert second == first[:5]


def test_playable_view_hides_answers(db, game, make_questions, player):
    questions = make_questions(game, 4)
    by_id = {q.id: q for q in questions}

    view = get_playable(db, player, "valorant", "daily", now=NOW)

    assert view["status"] == "ready"
    assert view["attempt_id"] is None
    assert view["current_streak"] == 0
    for shown in view["questions"]:
        assert "correct_index" not in shown
        assert "permutation" not in shown
        assert sorted(shown["options"]) == sorted(by_id[shown["question_id"]].options)
        assert shown["time_limit"] == 10


def test_playable_view_reports_completion(db, game, make_questions, player):
    make_questions(game, 4)
    view = get_playable(db, player, "valorant", "flash", now=NOW)
    attempt = start_attempt(db, player, view["instance"]["id"], now=NOW)
    in_progress = get_playable(db, player, "valorant", "flash", now=NOW)
    assert in_progress["status"] == "in_progress"
    assert in_progress["attempt_id"] == attempt.id

    complete_attempt(db, player, attempt.id, now=NOW)
    done = get_playable(db, player, "valorant", "flash", now=NOW)

    assert done["status"] == "completed"
    assert done["result"]["attempt_id"] == attempt.id
    assert "questions" not in done


def test_practice_count_bounds(db, game, make_questions, player):
    make_questions(game, 3)
    with pytest.raises(InvalidInputError):
        start_practice(db, player, "valorant", 31, now=NOW)
    run = start_practice(db, player, "valorant", 30, now=NOW)
    assert run["instance"]["question_count"] == 3


# Live quiz state machine


def test_going_live_needs_enough_questions(db, game, make_questions, make_live_quiz, admin):
    quiz = make_live_quiz(game, make_questions(game, 1), question_count=3, go_live=False)

    with pytest.raises(ConflictError) as excinfo:
        transition_instance(db, admin, quiz.id, "live", now=NOW)

    assert "needs 3 questions but only has 1" in excinfo.value.detail
    assert "add 2 more" in excinfo.value.detail
    db.refresh(quiz)
    assert quiz.status == "scheduled"


def test_lifecycle_transitions(db, game, make_questions, make_live_quiz, admin):
    quiz = make_live_quiz(game, make_questions(game, 2), go_live=False)

    with pytest.raises(ConflictError):
        transition_instance(db, admin, quiz.id, "completed", now=NOW)

    live = transition_instance(db, admin, quiz.id, "live", now=NOW)
    assert (live["previous_status"], live["status"]) == ("scheduled", "live")
    with pytest.raises(ConflictError):
        transition_instance(db, admin, quiz.id, "cancelled", now=NOW)

    done = transition_instance(db, admin, quiz.id, "completed", now=NOW)
    assert done["status"] == "completed"
    db.refresh(quiz)
    assert quiz.started_at == NOW
    assert quiz.ended_at == NOW


@pytest.mark.parametrize("terminal", ["completed", "cancelled"])
def test_terminal_states_reject_every_transition(db, game, make_questions, make_live_quiz, admin, terminal):
    quiz = make_live_quiz(game, make_questions(game, 1), go_live=terminal == "completed")
    transition_instance(db, admin, quiz.id, terminal, now=NOW)

    for target in ("scheduled", "live", "completed", "cancelled"):
        with pytest.raises(ConflictError):
            transition_instance(db, admin, quiz.id, target, now=NOW)


def test_transitions_are_admin_only(db, game, make_questions, make_live_quiz, player):
    quiz = make_live_quiz(game, make_questions(game, 1), go_live=False)

    with pytest.raises(ForbiddenError):
        transition_instance(db, player, quiz.id, "live", now=NOW)


def test_unknown_status_rejected(db, game, make_questions, make_live_quiz, admin):
    quiz = make_live_quiz(game, make_questions(game, 1), go_live=False)
    with pytest.raises(InvalidInputError):
        transition_instance(db, admin, quiz.id, "paused", now=NOW)


# Live play view and results


def test_live_quiz_view_by_status(db, game, make_questions, make_live_quiz, player, admin):
    quiz = make_live_quiz(game, make_questions(game, 2), go_live=False)
    assert get_live_quiz(db, player, quiz.id)["status"] == "scheduled"

    transition_instance(db, admin, quiz.id, "live", now=NOW)
    view = get_live_quiz(db, player, quiz.id)
    assert view["status"] == "live"
    assert len(view["questions"]) == 2
    assert view["instance"]["points_per_correct"] == 10
    assert all("correct_index" not in q for q in view["questions"])


def test_results_mid_quiz_do_not_freeze_a_partial_score(db, game, make_questions, make_live_quiz, player, answer_key):
    questions = make_questions(game, 3)
    quiz = make_live_quiz(game, questions)
    attempt = start_attempt(db, player, quiz.id, now=NOW)
    record_response(db, player, attempt.id, questions[0].id, answer_key(quiz.id, questions[0].id), 1000, now=NOW)

    midway = get_quiz_results(db, player, quiz.id, now=NOW)
    assert midway == {"status": "live", "score": None, "standings": []}
    assert db.query(Score).filter(Score.instance_id == quiz.id).count() == 0

    for question in questions[1:]:
        record_response(db, player, attempt.id, question.id, answer_key(quiz.id, question.id), 1000, now=NOW)
    result = complete_attempt(db, player, attempt.id, now=NOW)

    assert result["correct_answers"] == 3
    assert result["score"] == 30
    assert get_quiz_results(db, player, quiz.id, now=NOW)["score"]["total_points"] == 30
    weekly = db.execute(
        select(LeaderboardEntry).where(
            LeaderboardEntry.user_id == player.user_id, LeaderboardEntry.period_type == "weekly"
        )
    ).scalar_one()
    assert weekly.total_points == 30


def test_results_recover_missing_score_once(
    db, game, make_questions, make_live_quiz, player, answer_key, admin, monkeypatch
):
    questions = make_questions(game, 2)
    quiz = make_live_quiz(game, questions)
    attempt = start_attempt(db, player, quiz.id, now=NOW)
    record_response(db, player, attempt.id, questions[0].id, answer_key(quiz.id, questions[0].id), 1000, now=NOW)

    # quiz ends without its batch scoring pass landing
    monkeypatch.setattr(ggza.sessions, "batch_score_instance", lambda session, instance, now=None: [])
    transition_instance(db, admin, quiz.id, "completed", now=NOW)
    assert db.query(Score).filter(Score.instance_id == quiz.id).count() == 0

    first = get_quiz_results(db, player, quiz.id, now=NOW)
    second = get_quiz_results(db, player, quiz.id, now=NOW)

    assert first["score"]["total_points"] == 10
    assert first["score"]["rank"] == 1
    assert second["score"] == first["score"]
    assert [row["username"] for row in second["standings"]] == ["player"]
    assert db.query(Score).filter(Score.instance_id == quiz.id).count() == 1
    entries = db.execute(select(LeaderboardEntry).where(LeaderboardEntry.user_id == player.user_id)).scalars().all()
    assert {e.period_type: e.quizzes_played for e in entries} == {"weekly": 1, "monthly": 1, "all_time": 1}
    assert get_live_quiz(db, player, quiz.id)["status"] == "completed"


def test_results_for_cancelled_quiz_are_empty(db, game, make_questions, make_live_quiz, player, admin):
    quiz = make_live_quiz(game, make_questions(game, 1), go_live=False)
    transition_instance(db, admin, quiz.id, "cancelled", now=NOW)

    assert get_quiz_results(db, player, quiz.id, now=NOW) == {"status": "cancelled", "score": None, "standings": []}


# Admin question bank and scheduling


def test_create_question_validates_options(db, game, admin):
    common = {"game_id": game.id, "question_text": "Which agent heals?", "correct_index": 1}
    with pytest.raises(InvalidInputError):
        create_question(db, admin, options=["Jett", "Sage", "Omen"], **common)
    with pytest.raises(InvalidInputError):
        create_question(db, admin, options=["Jett", "Sage", "sage", "Omen"], **common)
    with pytest.raises(InvalidInputError):
        create_question(db, admin, options=["Jett", "Sage", " ", "Omen"], **common)
    with pytest.raises(InvalidInputError):
        create_question(db, admin, options=["Jett", "Sage", "Viper", "Omen"], difficulty="insane", **common)

    created = create_question(db, admin, options=["Jett", "Sage", "Viper", "Omen"], **common)
    assert created["correct_index"] == 1
    assert created["is_active"] is True


def test_question_bank_is_admin_only(db, game, player):
    with pytest.raises(ForbiddenError):
        create_question(
            db, player, game_id=game.id, question_text="?", options=["a", "b", "c", "d"], correct_index=0
        )


def test_one_live_quiz_per_game_week(db, game, admin):
    create_quiz(db, admin, game_id=game.id, title="Week 11", scheduled_at=NOW)

    with pytest.raises(ConflictError):
        create_quiz(db, admin, game_id=game.id, title="Again", scheduled_at=datetime(2025, 3, 14, 18, 0))

    other_week = create_quiz(db, admin, game_id=game.id, title="Week 12", scheduled_at=datetime(2025, 3, 19, 18, 0))
    assert (other_week["year"], other_week["week_number"]) == (2025, 12)


def test_question_management_keeps_order_dense(db, game, make_questions, admin):
    questions = make_questions(game, 6)
    quiz = create_quiz(db, admin, game_id=game.id, title="Week 11", scheduled_at=NOW, question_count=5)

    add_questions(db, admin, quiz["id"], [q.id for q in questions[:3]])
    with pytest.raises(ConflictError):
        add_questions(db, admin, quiz["id"], [questions[0].id])

    view = remove_questions(db, admin, quiz["id"], [questions[1].id])
    assert [q["order"] for q in view["questions"]] == [1, 2]
    assert [q["id"] for q in view["questions"]] == [questions[0].id, questions[2].id]

    view = auto_select_questions(db, admin, quiz["id"])
    assert view["assigned"] == 5
    assert [q["order"] for q in view["questions"]] == [1, 2, 3, 4, 5]
    assert len({q["id"] for q in view["questions"]}) == 5

    view = clear_questions(db, admin, quiz["id"])
    assert view["assigned"] == 0


def test_questions_frozen_once_live(db, game, make_questions, make_live_quiz, admin):
    questions = make_questions(game, 2)
    quiz = make_live_quiz(game, questions[:1])

    with pytest.raises(ConflictError):
        add_questions(db, admin, quiz.id, [questions[1].id])
    with pytest.raises(ConflictError):
        clear_questions(db, admin, quiz.id)


def test_auto_select_with_exhausted_pool(db, game, make_questions, admin):
    questions = make_questions(game, 2)
    quiz = create_quiz(db, admin, game_id=game.id, title="Week 11", scheduled_at=NOW, question_count=4)
    add_questions(db, admin, quiz["id"], [q.id for q in questions])

    with pytest.raises(ContentUnavailableError):
        auto_select_questions(db, admin, quiz["id"])


def test_list_quizzes_newest_first(db, game, admin):
    create_quiz(db, admin, game_id=game.id, title="Week 11", scheduled_at=NOW)
    create_quiz(db, admin, game_id=game.id, title="Week 12", scheduled_at=datetime(2025, 3, 19, 18, 0))

    listed = list_quizzes(db, admin, game_id=game.id, status="scheduled")

    assert [q["title"] for q in listed] == ["Week 12", "Week 11"]
    assert listed[0]["assigned"] == 0
