# backend/graph.py

import logging
from typing import Any, List, Optional, TypedDict

from langgraph.graph import StateGraph, END

from history import record_from_state
from matching import clean_text, match_answers, score_retroactively
from models import CompletionStatus, GameMode, RoundState

# Logger for the reveal workflow
logger = logging.getLogger("brainplay_graph")

TIME_UP_TEXT = "Time's up! The puzzle remains unsolved."


class RevealState(TypedDict, total=False):
    round: RoundState
    user_id: str
    retro_matches: List[str]
    history_id: Optional[int]


# ---------------- Helpers ----------------

def persist_round(history: Any, user_id: str, rnd: RoundState) -> Optional[int]:
    """Write a finished round to history. Failures are logged, never raised."""
    status = rnd.completion_status or CompletionStatus.TIMEOUT
    try:
        result = history.persist_round(user_id, record_from_state(rnd, status))
    except Exception as e:
        logger.error(
            "Persisting round failed: round_id=%d user=%s: %r",
            rnd.round_id,
            user_id,
            e,
            exc_info=True,
        )
        return None

    if not result.success:
        logger.warning(
            "History store refused round: round_id=%d user=%s error=%s",
            rnd.round_id,
            user_id,
            result.error,
        )
        return None
    return result.session_id


async def _fetch_revealed(service: Any, rnd: RoundState):
    content = rnd.content
    if content is None:
        return ()
    if content.kind == "DIFF":
        return await service.list_comparison_differences(content.image_a, content.image_b)
    return await service.list_anomalies(content.image)


# ---------------- LangGraph workflow ----------------

def build_reveal_graph(service: Any, history: Any):
    """
    fetch_answers -> retro_score -> persist for image rounds,
    fetch_answers -> persist for LOGIC rounds.
    """

    async def fetch_answers(state: RevealState) -> RevealState:
        rnd = state["round"]

        if rnd.content is not None and rnd.content.kind == "LOGIC":
            solution = clean_text(rnd.content.solution) or TIME_UP_TEXT
            return {"round": rnd.model_copy(update={"logic_solution": solution})}

        items = tuple(rnd.answer_key)
        if not items:
            try:
                items = tuple(await _fetch_revealed(service, rnd))
            except Exception as e:
                # Reveal failure: the round still ends, just without answers
                logger.error(
                    "Reveal failed: round_id=%d mode=%s: %r",
                    rnd.round_id,
                    rnd.mode.value,
                    e,
                    exc_info=True,
                )
                items = ()

        logger.info(
            "Answers revealed: round_id=%d mode=%s items=%d",
            rnd.round_id,
            rnd.mode.value,
            len(items),
        )
        return {"round": rnd.model_copy(update={"revealed_items": items})}

    def retro_score(state: RevealState) -> RevealState:
        rnd = state["round"]
        if not rnd.revealed_items or not rnd.unconfirmed_answers:
            return {"retro_matches": []}

        # Items found by clicking already scored live
        claimed = rnd.found_click_ids
        points = score_retroactively(rnd.unconfirmed_answers, rnd.revealed_items, rnd.mode, claimed)
        matched = [answer for answer, _ in match_answers(rnd.unconfirmed_answers, rnd.revealed_items, claimed)]
        matched_keys = {a.casefold() for a in matched}
        remaining = tuple(a for a in rnd.unconfirmed_answers if a.casefold() not in matched_keys)

        if points:
            logger.info(
                "Retroactive points awarded: round_id=%d matched=%d points=%d",
                rnd.round_id,
                len(matched),
                points,
            )

        return {
            "round": rnd.model_copy(update={
                "score": rnd.score + points,
                "retro_points": points,
                "found_text_answers": rnd.found_text_answers + tuple(matched),
                "unconfirmed_answers": remaining,
            }),
            "retro_matches": matched,
        }

    def persist(state: RevealState) -> RevealState:
        history_id = persist_round(history, state.get("user_id", ""), state["round"])
        return {"history_id": history_id}

    def route_after_fetch(state: RevealState) -> str:
        if state["round"].mode == GameMode.LOGIC:
            return "persist"
        return "retro_score"

    workflow = StateGraph(RevealState)
    workflow.add_node("fetch_answers", fetch_answers)
    workflow.add_node("retro_score", retro_score)
    workflow.add_node("persist", persist)
    workflow.set_entry_point("fetch_answers")
    workflow.add_conditional_edges(
        "fetch_answers",
        route_after_fetch,
        {"retro_score": "retro_score", "persist": "persist"},
    )
    workflow.add_edge("retro_score", "persist")
    workflow.add_edge("persist", END)
    logger.debug("LangGraph reveal workflow compiled")
    return workflow.compile()
