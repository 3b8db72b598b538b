import itertools
import os
import tempfile
from datetime import datetime

os.environ.setdefault("GGZA_DATABASE_URL", f"sqlite:///{os.path.join(tempfile.mkdtemp(), 'ggza-test.db')}")

import pytest
from sqlalchemy import select

from ggza.admin import add_questions, create_quiz
from ggza.database import Base, SessionLocal, engine
from ggza.identity import load_identity
from ggza.models import Game, Question, QuestionAssignment, QuizInstance, User
from ggza.sessions import transition_instance
from ggza.shuffle import displayed_index_of

# Wednesday; 12:00 on the canonical clock
FIXED_NOW = datetime(2025, 3, 12, 10, 0)

_question_numbers = itertools.count(1)


@pytest.fixture()
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def game(db):
    game = Game(slug="valorant", display_name="Valorant", color="#FF4655")
    db.add(game)
    db.commit()
    return game


@pytest.fixture()
def make_user(db):
    numbers = itertools.count(1)

    def _make(username=None, *, verified=True, role="verified"):
        n = next(numbers)
        user = User(
            discord_id=f"discord-{n}",
            username=username or f"player{n}",
            is_verified=verified,
            role=role if verified else "unverified",
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture()
def player(db, make_user):
    return load_identity(db, make_user("player").id)


@pytest.fixture()
def admin(db, make_user):
    return load_identity(db, make_user("admin", role="admin").id)


@pytest.fixture()
def make_questions(db):
    def _make(game, count, *, difficulty="medium"):
        questions = []
        for _ in range(count):
            n = next(_question_numbers)
            questions.append(
                Question(
                    game_id=game.id,
                    question_text=f"Trivia question {n}?",
                    options=[f"{n}-alpha", f"{n}-bravo", f"{n}-charlie", f"{n}-delta"],
                    correct_index=n % 4,
                    difficulty=difficulty,
                )
            )
        db.add_all(questions)
        db.commit()
        return questions

    return _make


@pytest.fixture()
def answer_key(db):
    """Displayed index of the right answer for a question inside an instance."""

    def _correct(instance_id, question_id):
        assignment = db.execute(
            select(QuestionAssignment).where(
                QuestionAssignment.instance_id == instance_id,
                QuestionAssignment.question_id == question_id,
            )
        ).scalar_one()
        return displayed_index_of(assignment.question.correct_index, assignment.permutation)

    return _correct


@pytest.fixture()
def make_live_quiz(db, admin):
    def _make(game, questions, *, go_live=True, now=FIXED_NOW, **overrides):
        overrides.setdefault("question_count", len(questions))
        quiz = create_quiz(
            db,
            admin,
            game_id=game.id,
            title=overrides.pop("title", "Weekly Quiz"),
            scheduled_at=overrides.pop("scheduled_at", now),
            **overrides,
        )
        if questions:
            add_questions(db, admin, quiz["id"], [q.id for q in questions])
        if go_live:
            transition_instance(db, admin, quiz["id"], "live", now=now)
        return db.get(QuizInstance, quiz["id"])

    return _make
