# backend/config.py
import os

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")

TEXT_MODEL = os.getenv("BRAINPLAY_TEXT_MODEL", "gemini-2.5-flash")
IMAGE_MODEL = os.getenv("BRAINPLAY_IMAGE_MODEL", "gemini-2.5-flash-image")

# Round timing (seconds)
ROUND_SECONDS = _int_env("BRAINPLAY_ROUND_SECONDS", 75)
CAUTION_SECONDS = _int_env("BRAINPLAY_CAUTION_SECONDS", 30)
DANGER_SECONDS = _int_env("BRAINPLAY_DANGER_SECONDS", 10)

# Pointer travel (px) above which a press/release pair is a pan, not a tap
DRAG_THRESHOLD_PX = _int_env("BRAINPLAY_DRAG_THRESHOLD_PX", 5)

# How long a Flask worker waits on the game loop before giving up
REQUEST_TIMEOUT = _int_env("BRAINPLAY_REQUEST_TIMEOUT", 120)

# Sessions untouched for this long are dropped when a new one is created
SESSION_IDLE_SECONDS = _int_env("BRAINPLAY_SESSION_IDLE_SECONDS", 3600)

PORT = _int_env("PORT", 8000)
