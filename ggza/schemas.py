from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class QuestionCreate(BaseModel):
    game_id: int
    question_text: str = Field(min_length=1)
    options: List[str] = Field(min_length=4, max_length=4)
    correct_index: int = Field(ge=0, le=3)
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    category: Optional[str] = None
    explanation: Optional[str] = None


class QuizCreate(BaseModel):
    game_id: int
    title: str = Field(min_length=1)
    description: Optional[str] = None
    scheduled_at: datetime
    question_count: int = Field(default=30, ge=1, le=100)
    time_per_question: int = Field(default=5, ge=1, le=120)
    points_per_correct: int = Field(default=10, ge=0)
    prize_pool: float = Field(default=1000, ge=0)
    week_number: Optional[int] = Field(default=None, ge=1, le=53)
    year: Optional[int] = None
    is_monthly_final: bool = False


class MissionCreate(BaseModel):
    slug: str = Field(min_length=1, max_length=60)
    title: str = Field(min_length=1)
    mission_type: Literal["daily", "weekly", "achievement"]
    requirement_type: Literal["play_quiz", "score_points", "win_quiz", "daily_claim"]
    requirement_value: int = Field(default=1, ge=1)
    xp_reward: int = Field(default=0, ge=0)
    description: Optional[str] = None
    icon: Optional[str] = None
    game_id: Optional[int] = None
    sort_order: int = 0


class QuizQuestionsUpdate(BaseModel):
    action: Literal["add", "auto_select", "remove", "clear"]
    question_ids: List[int] = Field(default_factory=list)
    count: Optional[int] = Field(default=None, ge=1, le=100)
    difficulty: Optional[Literal["easy", "medium", "hard"]] = None

    @model_validator(mode="after")
    def ids_required_for_add_and_remove(self):
        if self.action in ("add", "remove") and not self.question_ids:
            raise ValueError(f"question_ids are required for {self.action}")
        return self


class StatusUpdate(BaseModel):
    status: Literal["scheduled", "live", "completed", "cancelled"]


class TransitionResult(BaseModel):
    id: int
    previous_status: str
    status: str
    scored_participants: int


class AttemptOut(BaseModel):
    attempt_id: int
    instance_id: int
    started_at: datetime
    completed_at: Optional[datetime] = None


class ResponseIn(BaseModel):
    question_id: int
    # displayed position; null means the countdown ran out
    selected_index: Optional[int] = Field(default=None, ge=0, le=3)
    elapsed_ms: int = 0


class GradingOut(BaseModel):
    question_id: int
    correct: bool
    correct_displayed_index: int
    already_answered: bool


class CompletionOut(BaseModel):
    attempt_id: int
    instance_id: int
    mode: str
    correct_answers: int
    total_questions: int
    total_time_ms: int
    score: int
    xp_earned: int
    speed_bonus: bool
    streak_multiplier: float
    new_total_xp: Optional[int] = None
    new_level: Optional[int] = None
    completed_at: Optional[datetime] = None


class LeaderboardEntryOut(BaseModel):
    rank: int
    user_id: int
    username: str
    total_points: int
    best_score: int
    quizzes_played: int
    best_two_scores: List[int]
    average_time_ms: int


class LeaderboardOut(BaseModel):
    game: str
    period_type: str
    period_key: str
    entries: List[LeaderboardEntryOut]


class DailyClaimOut(BaseModel):
    xp_gained: int
    base_xp: int
    streak_bonus: int
    new_streak: int
    total_xp: int
    level: int


class MissionClaim(BaseModel):
    mission_id: int
    period_key: str = Field(min_length=1)


class MissionClaimOut(BaseModel):
    mission_id: int
    period_key: str
    xp_gained: int
    total_xp: int
    level: int
