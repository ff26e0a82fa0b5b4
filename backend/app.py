# backend/app.py
import logging
import threading
import time
import uuid
from typing import Any, Dict, Optional, Tuple

from flask import Flask, request, jsonify
from flask_cors import CORS
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

import config
from errors import GenerationFailure, InvalidTransition
from game import GameController, to_view
from gemini_service import GeminiPuzzleService
from history import DEFAULT_USER, HistoryStore
from models import (
    ClickRequest,
    GameMode,
    GuessRequest,
    HistoryResponse,
    ModeInfo,
    POINTS_PER_FIND,
    Point,
    SessionRequest,
    StartRoundRequest,
)
from runtime import GameLoop

# --------- LOGGING SETUP (MINIMAL, NON-SENSITIVE) ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("brainplay_backend")

app = Flask(__name__)
CORS(app)

# --- GLOBAL STORES ---
LOOP = GameLoop()
HISTORY = HistoryStore()
SERVICE = GeminiPuzzleService()

SESSIONS: Dict[str, GameController] = {}
SESSION_LAST_SEEN: Dict[str, float] = {}
SESSIONS_LOCK = threading.Lock()


# --- HELPERS ---

def _normalize_session_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Support either sessionId or session_id coming from the frontend."""
    if "sessionId" in data and "session_id" not in data:
        data["session_id"] = data["sessionId"]
    return data


def _payload() -> Dict[str, Any]:
    data = request.get_json(force=True, silent=True) or {}
    return _normalize_session_payload(data)


def _user_id() -> str:
    return (request.headers.get("X-User-Id") or "").strip() or DEFAULT_USER


def _new_session() -> Tuple[str, GameController]:
    session_id = str(uuid.uuid4())
    controller = GameController(
        service=SERVICE,
        history=HISTORY,
        user_id=_user_id(),
        round_seconds=config.ROUND_SECONDS,
        caution_seconds=config.CAUTION_SECONDS,
        danger_seconds=config.DANGER_SECONDS,
        drag_threshold_px=config.DRAG_THRESHOLD_PX,
    )
    _evict_idle_sessions()
    with SESSIONS_LOCK:
        SESSIONS[session_id] = controller
        SESSION_LAST_SEEN[session_id] = time.monotonic()
    logger.info("Session created: session_id=%s user=%s", session_id, controller.user_id)
    return session_id, controller


def _evict_idle_sessions() -> None:
    cutoff = time.monotonic() - config.SESSION_IDLE_SECONDS
    with SESSIONS_LOCK:
        stale = [sid for sid, seen in SESSION_LAST_SEEN.items() if seen < cutoff]
        evicted = [SESSIONS.pop(sid) for sid in stale if sid in SESSIONS]
        for sid in stale:
            del SESSION_LAST_SEEN[sid]

    # Stops any round timer still running for the dropped sessions
    for controller in evicted:
        LOOP.run(controller.close())
    if stale:
        logger.info("Evicted idle sessions: count=%d", len(stale))


def _get_session(session_id: Optional[str]) -> Optional[GameController]:
    if not session_id:
        return None
    with SESSIONS_LOCK:
        controller = SESSIONS.get(session_id)
        if controller is not None:
            SESSION_LAST_SEEN[session_id] = time.monotonic()
        return controller


def _invalid_session(session_id: Optional[str], action: str):
    logger.warning("%s with invalid session_id=%s", action, session_id)
    return jsonify({"error": "INVALID SESSION ID"}), 400


# --- ROUTES ---

@app.errorhandler(Exception)
def handle_error(e):
    code = 500
    if isinstance(e, HTTPException):
        code = e.code
    elif isinstance(e, ValidationError):
        code = 400
    elif isinstance(e, InvalidTransition):
        code = 409
    elif isinstance(e, GenerationFailure):
        code = 502

    if code >= 500:
        logger.exception("Unhandled exception occurred: %s", repr(e))
    else:
        logger.warning("Request rejected (%d): %s", code, repr(e))
    return jsonify({"error": str(e)}), code


@app.route("/api/health", methods=["GET"])
def health():
    logger.debug("Health check ping")
    return jsonify({"status": "operational", "system": "BRAINPLAY"})


@app.route("/api/modes", methods=["GET"])
def modes():
    info = [
        ModeInfo(
            mode=mode,
            points_per_find=POINTS_PER_FIND[mode],
            click_to_find=mode != GameMode.LOGIC,
            round_seconds=config.ROUND_SECONDS,
        ).model_dump(mode="json")
        for mode in GameMode
    ]
    return jsonify(info)


@app.route("/api/start", methods=["POST"])
def start_round():
    req = StartRoundRequest(**_payload())

    if req.session_id:
        controller = _get_session(req.session_id)
        if controller is None:
            return _invalid_session(req.session_id, "Start")
        session_id = req.session_id
        controller.user_id = _user_id()
    else:
        session_id, controller = _new_session()

    try:
        state = LOOP.run(controller.start(req.mode, req.subject))
    except GenerationFailure:
        view = to_view(session_id, controller.state)
        return jsonify({"error": "Failed to generate game. Please try again.", "round": view.model_dump(mode="json")}), 502

    return jsonify(to_view(session_id, state).model_dump(mode="json"))


@app.route("/api/guess", methods=["POST"])
def guess():
    req = GuessRequest(**_payload())
    controller = _get_session(req.session_id)
    if controller is None:
        return _invalid_session(req.session_id, "Guess")

    result = LOOP.run(controller.submit_guess(req.guess))
    return jsonify({
        "result": result.model_dump(mode="json"),
        "round": to_view(req.session_id, controller.state).model_dump(mode="json"),
    })


@app.route("/api/click", methods=["POST"])
def click():
    req = ClickRequest(**_payload())
    controller = _get_session(req.session_id)
    if controller is None:
        return _invalid_session(req.session_id, "Click")

    result = LOOP.run(controller.image_click(Point(x=req.x, y=req.y), req.image, req.press))
    return jsonify({
        "result": result.model_dump(mode="json"),
        "round": to_view(req.session_id, controller.state).model_dump(mode="json"),
    })


@app.route("/api/give-up", methods=["POST"])
def give_up():
    req = SessionRequest(**_payload())
    controller = _get_session(req.session_id)
    if controller is None:
        return _invalid_session(req.session_id, "Give up")

    state = LOOP.run(controller.give_up())
    return jsonify(to_view(req.session_id, state).model_dump(mode="json"))


@app.route("/api/play-again", methods=["POST"])
def play_again():
    req = SessionRequest(**_payload())
    controller = _get_session(req.session_id)
    if controller is None:
        return _invalid_session(req.session_id, "Play again")

    state = LOOP.run(controller.play_again())
    return jsonify(to_view(req.session_id, state).model_dump(mode="json"))


@app.route("/api/state/<session_id>", methods=["GET"])
def round_state(session_id: str):
    controller = _get_session(session_id)
    if controller is None:
        return _invalid_session(session_id, "State")
    return jsonify(to_view(session_id, controller.state).model_dump(mode="json"))


@app.route("/api/history", methods=["GET"])
def history():
    limit = request.args.get("limit", default=50, type=int)
    offset = request.args.get("offset", default=0, type=int)
    user_id = _user_id()

    sessions = HISTORY.fetch_round_history(user_id, limit=limit, offset=offset)
    logger.info("History requested: user=%s limit=%d offset=%d returned=%d", user_id, limit, offset, len(sessions))
    return jsonify(HistoryResponse(sessions=sessions).model_dump(mode="json"))


if __name__ == "__main__":
    logger.info("Starting BrainPlay backend on port %d", config.PORT)
    LOOP.start()
    app.run(host="0.0.0.0", port=config.PORT)
