import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from ggza import admin, attempts, config, leaderboard, levels, missions, sessions
from ggza.database import Base, engine, get_db
from ggza.errors import GGZAError
from ggza.identity import Identity, load_identity
from ggza.schemas import (
    AttemptOut,
    CompletionOut,
    DailyClaimOut,
    GradingOut,
    LeaderboardOut,
    MissionClaim,
    MissionClaimOut,
    MissionCreate,
    QuestionCreate,
    QuizCreate,
    QuizQuestionsUpdate,
    ResponseIn,
    StatusUpdate,
    TransitionResult,
)

app = FastAPI(title="GGZA Trivia")
logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)


@app.exception_handler(GGZAError)
async def handle_ggza_error(request: Request, exc: GGZAError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def current_identity(
    x_user_id: Optional[int] = Header(default=None),
    db: Session = Depends(get_db),
) -> Identity:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return load_identity(db, x_user_id)
    except GGZAError:
        raise HTTPException(status_code=401, detail="Unknown user")


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


# Playable instances


@app.get("/api/games/{slug}/daily")
def get_daily_challenge(slug: str, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return sessions.get_playable(db, identity, slug, "daily")


@app.get("/api/games/{slug}/flash")
def get_flash_quiz(slug: str, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return sessions.get_playable(db, identity, slug, "flash")


@app.post("/api/games/{slug}/practice")
def start_practice(
    slug: str,
    count: Optional[int] = None,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    return sessions.start_practice(db, identity, slug, count)


@app.get("/api/quizzes/{quiz_id}")
def get_live_quiz(quiz_id: int, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return sessions.get_live_quiz(db, identity, quiz_id)


@app.get("/api/quizzes/{quiz_id}/results")
def get_quiz_results(quiz_id: int, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return sessions.get_quiz_results(db, identity, quiz_id)


# Attempts


@app.post("/api/instances/{instance_id}/attempts", response_model=AttemptOut)
def start_attempt(instance_id: int, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    attempt = attempts.start_attempt(db, identity, instance_id)
    return AttemptOut(
        attempt_id=attempt.id,
        instance_id=attempt.instance_id,
        started_at=attempt.started_at,
        completed_at=attempt.completed_at,
    )


@app.post("/api/attempts/{attempt_id}/responses", response_model=GradingOut)
def submit_response(
    attempt_id: int,
    payload: ResponseIn,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    return attempts.record_response(
        db, identity, attempt_id, payload.question_id, payload.selected_index, payload.elapsed_ms
    )


@app.post("/api/attempts/{attempt_id}/complete", response_model=CompletionOut)
def complete_attempt(attempt_id: int, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return attempts.complete_attempt(db, identity, attempt_id)


# Leaderboards and XP


@app.get("/api/leaderboards/{slug}", response_model=LeaderboardOut)
def get_leaderboard(
    slug: str,
    period_type: str = "weekly",
    period_key: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return leaderboard.get_leaderboard(db, slug, period_type, period_key)


@app.get("/api/xp")
def get_xp_summary(identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return levels.xp_summary(db, identity.user_id)


@app.get("/api/xp/daily")
def get_daily_reward_status(identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return levels.daily_reward_status(db, identity.user_id)


@app.post("/api/xp/daily", response_model=DailyClaimOut)
def claim_daily_reward(identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return levels.claim_daily_reward(db, identity.user_id)


@app.get("/api/missions")
def list_missions(identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return missions.list_missions(db, identity.user_id)


@app.post("/api/missions/claim", response_model=MissionClaimOut)
def claim_mission(payload: MissionClaim, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return levels.claim_mission(db, identity.user_id, payload.mission_id, payload.period_key)


# Admin


@app.post("/api/admin/questions")
def create_question(payload: QuestionCreate, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return admin.create_question(db, identity, **payload.model_dump())


@app.post("/api/admin/questions/{question_id}/deactivate")
def deactivate_question(question_id: int, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return admin.deactivate_question(db, identity, question_id)


@app.post("/api/admin/missions")
def create_mission(payload: MissionCreate, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return admin.create_mission(db, identity, **payload.model_dump())


@app.post("/api/admin/quizzes")
def create_quiz(payload: QuizCreate, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return admin.create_quiz(db, identity, **payload.model_dump())


@app.get("/api/admin/quizzes")
def list_quizzes(
    game_id: Optional[int] = None,
    status: Optional[str] = None,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    return admin.list_quizzes(db, identity, game_id=game_id, status=status)


@app.get("/api/admin/quizzes/{quiz_id}/questions")
def get_quiz_questions(quiz_id: int, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return admin.quiz_questions(db, identity, quiz_id)


@app.post("/api/admin/quizzes/{quiz_id}/questions")
def update_quiz_questions(
    quiz_id: int,
    payload: QuizQuestionsUpdate,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    if payload.action == "add":
        return admin.add_questions(db, identity, quiz_id, payload.question_ids)
    if payload.action == "auto_select":
        return admin.auto_select_questions(db, identity, quiz_id, count=payload.count, difficulty=payload.difficulty)
    if payload.action == "remove":
        return admin.remove_questions(db, identity, quiz_id, payload.question_ids)
    return admin.clear_questions(db, identity, quiz_id)


@app.post("/api/admin/quizzes/{quiz_id}/status", response_model=TransitionResult)
def update_quiz_status(
    quiz_id: int,
    payload: StatusUpdate,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    return sessions.transition_instance(db, identity, quiz_id, payload.status)
