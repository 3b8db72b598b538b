from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ggza.clock import utcnow
from ggza.database import Base

QUIZ_MODES = ("live", "daily", "flash", "practice")
QUIZ_STATUSES = ("scheduled", "live", "completed", "cancelled")
DIFFICULTIES = ("easy", "medium", "hard")
MISSION_TYPES = ("daily", "weekly", "achievement")
REQUIREMENT_TYPES = ("play_quiz", "score_points", "win_quiz", "daily_claim")


class Game(Base):
    __tablename__ = "games"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    slug: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    display_name: Mapped[str] = mapped_column(String(120))
    color: Mapped[str] = mapped_column(String(16), default="#FFFFFF")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    questions = relationship("Question", back_populates="game")
    instances = relationship("QuizInstance", back_populates="game")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    discord_id: Mapped[str] = mapped_column(String(32), unique=True)
    username: Mapped[str] = mapped_column(String(120))
    role: Mapped[str] = mapped_column(String(32), default="unverified")
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    xp: Mapped[int] = mapped_column(Integer, default=0)
    level: Mapped[int] = mapped_column(Integer, default=1)
    streak_days: Mapped[int] = mapped_column(Integer, default=0)
    last_daily_claim: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    xp_transactions = relationship("XPTransaction", back_populates="user")


class Question(Base):
    __tablename__ = "questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    game_id: Mapped[int] = mapped_column(ForeignKey("games.id"), index=True)
    question_text: Mapped[str] = mapped_column(Text)
    options: Mapped[list] = mapped_column(JSON)
    correct_index: Mapped[int] = mapped_column(Integer)
    difficulty: Mapped[str] = mapped_column(String(16), default="medium")
    category: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    times_used: Mapped[int] = mapped_column(Integer, default=0)
    times_correct: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    game = relationship("Game", back_populates="questions")


class QuizInstance(Base):
    """A playable unit: an admin-scheduled live quiz or a generated daily/flash/practice run."""

    __tablename__ = "quiz_instances"
    __table_args__ = (
        UniqueConstraint("game_id", "mode", "period_key", name="uq_instance_bucket"),
        UniqueConstraint("game_id", "mode", "year", "week_number", name="uq_instance_week"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    game_id: Mapped[int] = mapped_column(ForeignKey("games.id"), index=True)
    mode: Mapped[str] = mapped_column(String(16), index=True)
    status: Mapped[str] = mapped_column(String(16), default="scheduled")
    title: Mapped[str] = mapped_column(String(255), default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # daily: YYYY-MM-DD, flash: YYYY-MM-DDTHH; NULL for live and practice
    period_key: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    owner_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    question_count: Mapped[int] = mapped_column(Integer)
    time_per_question: Mapped[int] = mapped_column(Integer)
    points_per_correct: Mapped[int] = mapped_column(Integer, default=10)
    prize_pool: Mapped[float] = mapped_column(Float, default=0)
    xp_reward: Mapped[int] = mapped_column(Integer, default=0)
    bonus_xp: Mapped[int] = mapped_column(Integer, default=0)
    bonus_xp_threshold_ms: Mapped[int] = mapped_column(Integer, default=0)
    week_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_monthly_final: Mapped[bool] = mapped_column(Boolean, default=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    game = relationship("Game", back_populates="instances")
    assignments = relationship(
        "QuestionAssignment",
        back_populates="instance",
        cascade="all, delete-orphan",
        order_by="QuestionAssignment.order_index",
    )
    attempts = relationship("Attempt", back_populates="instance")
    scores = relationship("Score", back_populates="instance")

    @property
    def time_limit_ms(self) -> int:
        return self.time_per_question * 1000


class QuestionAssignment(Base):
    __tablename__ = "question_assignments"
    __table_args__ = (UniqueConstraint("instance_id", "question_id", name="uq_assignment_question"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    instance_id: Mapped[int] = mapped_column(ForeignKey("quiz_instances.id"), index=True)
    question_id: Mapped[int] = mapped_column(ForeignKey("questions.id"), index=True)
    order_index: Mapped[int] = mapped_column(Integer)
    permutation: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    instance = relationship("QuizInstance", back_populates="assignments")
    question = relationship("Question")


class Attempt(Base):
    __tablename__ = "attempts"
    __table_args__ = (UniqueConstraint("user_id", "instance_id", name="uq_attempt_user_instance"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    instance_id: Mapped[int] = mapped_column(ForeignKey("quiz_instances.id"), index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    answered_count: Mapped[int] = mapped_column(Integer, default=0)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    correct_answers: Mapped[int] = mapped_column(Integer, default=0)
    total_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    points: Mapped[int] = mapped_column(Integer, default=0)
    xp_earned: Mapped[int] = mapped_column(Integer, default=0)
    bonus_earned: Mapped[bool] = mapped_column(Boolean, default=False)
    streak_multiplier: Mapped[float] = mapped_column(Float, default=1.0)
    total_xp_after: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    level_after: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    instance = relationship("QuizInstance", back_populates="attempts")
    responses = relationship("Response", back_populates="attempt", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}


class Response(Base):
    __tablename__ = "responses"
    __table_args__ = (UniqueConstraint("attempt_id", "assignment_id", name="uq_response_attempt_assignment"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    attempt_id: Mapped[int] = mapped_column(ForeignKey("attempts.id"), index=True)
    assignment_id: Mapped[int] = mapped_column(ForeignKey("question_assignments.id"), index=True)
    selected_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)
    response_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    attempt = relationship("Attempt", back_populates="responses")
    assignment = relationship("QuestionAssignment")


class Score(Base):
    __tablename__ = "scores"
    __table_args__ = (UniqueConstraint("instance_id", "user_id", name="uq_score_instance_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    instance_id: Mapped[int] = mapped_column(ForeignKey("quiz_instances.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    total_points: Mapped[int] = mapped_column(Integer)
    correct_answers: Mapped[int] = mapped_column(Integer)
    total_questions: Mapped[int] = mapped_column(Integer)
    total_time_ms: Mapped[int] = mapped_column(Integer)
    rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    placement_xp_awarded: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    instance = relationship("QuizInstance", back_populates="scores")


class LeaderboardEntry(Base):
    __tablename__ = "leaderboard_entries"
    __table_args__ = (
        UniqueConstraint("game_id", "user_id", "period_type", "period_key", name="uq_leaderboard_period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    game_id: Mapped[int] = mapped_column(ForeignKey("games.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    period_type: Mapped[str] = mapped_column(String(16))
    period_key: Mapped[str] = mapped_column(String(16), index=True)
    total_points: Mapped[int] = mapped_column(Integer, default=0)
    best_score: Mapped[int] = mapped_column(Integer, default=0)
    quizzes_played: Mapped[int] = mapped_column(Integer, default=0)
    best_two_scores: Mapped[list] = mapped_column(JSON, default=list)
    average_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    achieved_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class UserStreak(Base):
    __tablename__ = "user_streaks"
    __table_args__ = (UniqueConstraint("user_id", "game_id", name="uq_streak_user_game"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    game_id: Mapped[int] = mapped_column(ForeignKey("games.id"), index=True)
    current_streak: Mapped[int] = mapped_column(Integer, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, default=0)
    last_completed_on: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    total_challenges_completed: Mapped[int] = mapped_column(Integer, default=0)


class XPTransaction(Base):
    __tablename__ = "xp_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String(255))
    source_type: Mapped[str] = mapped_column(String(32))
    source_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    user = relationship("User", back_populates="xp_transactions")


class Mission(Base):
    __tablename__ = "missions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    slug: Mapped[str] = mapped_column(String(60), unique=True, index=True)
    title: Mapped[str] = mapped_column(String(120))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mission_type: Mapped[str] = mapped_column(String(16))
    requirement_type: Mapped[str] = mapped_column(String(32), index=True)
    requirement_value: Mapped[int] = mapped_column(Integer, default=1)
    xp_reward: Mapped[int] = mapped_column(Integer, default=0)
    icon: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    # None applies the mission to every game
    game_id: Mapped[Optional[int]] = mapped_column(ForeignKey("games.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)


class UserMission(Base):
    __tablename__ = "user_missions"
    __table_args__ = (UniqueConstraint("user_id", "mission_id", "period_key", name="uq_user_mission_period"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    mission_id: Mapped[int] = mapped_column(ForeignKey("missions.id"), index=True)
    period_key: Mapped[str] = mapped_column(String(32))
    progress: Mapped[int] = mapped_column(Integer, default=0)
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    claimed: Mapped[bool] = mapped_column(Boolean, default=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    mission = relationship("Mission")

    __mapper_args__ = {"version_id_col": version}
