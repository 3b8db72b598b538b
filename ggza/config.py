import os

DATABASE_URL = os.getenv("GGZA_DATABASE_URL", "sqlite:///./ggza.db")
LOG_LEVEL = os.getenv("GGZA_LOG_LEVEL", "INFO")

# Every day/hour/week/month bucket is cut at this offset from UTC (SAST by default).
TZ_OFFSET_HOURS = int(os.getenv("GGZA_TZ_OFFSET_HOURS", "2"))

WRITE_RETRIES = int(os.getenv("GGZA_WRITE_RETRIES", "5"))

ADMIN_ROLES = frozenset({"admin", "community_manager", "quiz_master"})

# Live quizzes
LIVE_QUESTION_COUNT = 30
LIVE_TIME_PER_QUESTION = 5
LIVE_POINTS_PER_CORRECT = 10
LIVE_PRIZE_POOL = 1000

# Daily challenge
DAILY_QUESTION_COUNT = 10
DAILY_TIME_PER_QUESTION = 10
DAILY_XP_REWARD = 100
DAILY_XP_PER_CORRECT = 10

# Flash quiz
FLASH_QUESTION_COUNT = 5
FLASH_TIME_PER_QUESTION = 8
FLASH_XP_REWARD = 50
FLASH_BONUS_XP = 25
FLASH_BONUS_THRESHOLD_MS = 3000

# Practice
PRACTICE_QUESTION_COUNT = 10
PRACTICE_MAX_QUESTIONS = 30
PRACTICE_TIME_PER_QUESTION = 10
PRACTICE_XP_PER_CORRECT = 5
PRACTICE_COMPLETION_BONUS = 25

# XP grants outside the per-mode formulas
QUIZ_COMPLETION_XP = 25
QUIZ_CORRECT_ANSWER_XP = 5
PLACEMENT_XP = {1: 100, 2: 75, 3: 50}
TOP_TEN_XP = 25
DAILY_CLAIM_XP = 15
DAILY_CLAIM_STREAK_BONUS_PER_DAY = 5
DAILY_CLAIM_MAX_STREAK_BONUS = 50
