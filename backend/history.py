# backend/history.py
import itertools
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from models import (
    CompletionStatus,
    GameMode,
    POINTS_PER_FIND,
    PersistResult,
    RoundRecord,
    RoundState,
    RoundSummary,
    StoredAnswer,
    StoredDifference,
)

logger = logging.getLogger("brainplay_history")

DEFAULT_USER = "anonymous"


def record_from_state(state: RoundState, status: CompletionStatus) -> RoundRecord:
    """
    Snapshot a finished round for storage. Click finds are stored as
    the description of the item that was clicked.
    """
    found_items = list(state.found_text_answers)
    by_id = {item.id: item for item in state.answer_key}
    for item_id in sorted(state.found_click_ids):
        item = by_id.get(item_id)
        found_items.append(item.description if item else f"item #{item_id}")

    record = RoundRecord(
        mode=state.mode,
        subject=state.subject,
        score=state.score,
        found_items=found_items,
        time_remaining=state.time_remaining,
        completion_status=status,
        revealed_items=list(state.revealed_items),
    )
    if state.content is not None and state.content.kind == "LOGIC":
        record = record.model_copy(update={
            "logic_question": state.content.question,
            "logic_title": state.content.title,
            "logic_solution": state.logic_solution or state.content.solution,
        })
    return record


class HistoryStore:
    """
    Finished rounds per user, kept in process memory.
    Safe to call from Flask worker threads and the game loop at once.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._rounds: Dict[str, List[RoundSummary]] = {}
        self._ids = itertools.count(1)

    def persist_round(self, user_id: str, record: RoundRecord) -> PersistResult:
        now = datetime.now(timezone.utc)
        points = POINTS_PER_FIND[record.mode]
        if record.revealed_items:
            total_possible = len(record.revealed_items)
        else:
            total_possible = 1 if record.mode == GameMode.LOGIC else 0

        with self._lock:
            session_id = next(self._ids)
            summary = RoundSummary(
                id=session_id,
                user_id=user_id,
                game_mode=record.mode,
                subject=record.subject,
                score=record.score,
                total_possible=total_possible,
                found_count=len(record.found_items),
                created_at=now,
                ended_at=now,
                time_remaining=record.time_remaining,
                completion_status=record.completion_status,
                logic_question=record.logic_question,
                logic_solution=record.logic_solution,
                logic_title=record.logic_title,
                differences=[
                    StoredDifference(
                        difference_id=item.id,
                        description=item.description,
                        box_2d=item.box_2d,
                    )
                    for item in record.revealed_items
                ],
                user_answers=[
                    StoredAnswer(answer_text=answer, points_awarded=points, found_at=now)
                    for answer in record.found_items
                ],
            )
            self._rounds.setdefault(user_id, []).append(summary)

        logger.info(
            "Round persisted: history_id=%d user=%s mode=%s score=%d status=%s",
            session_id,
            user_id,
            record.mode.value,
            record.score,
            record.completion_status.value,
        )
        return PersistResult(success=True, session_id=session_id)

    def fetch_round_history(
        self, user_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[RoundSummary]:
        """Newest first, with revealed items and accepted answers nested."""
        with self._lock:
            rounds = list(self._rounds.get(user_id or DEFAULT_USER, []))
        rounds.reverse()
        offset = max(0, offset)
        limit = max(0, limit)
        return rounds[offset:offset + limit]

    def clear(self) -> None:
        with self._lock:
            self._rounds.clear()
