# backend/game.py
"""
Round lifecycle for one player session.

    idle -> loading -> active -> revealing -> over -> idle
                         |                     ^
                         +---------------------+  (LOGIC solved)

The first half of this module is pure transitions (state in, new state
out). GameController below owns the live RoundState and is the only
thing that replaces it. It runs on a single asyncio loop: every
mutation happens under its lock, and every await on the outside world
happens outside the lock and is re-checked against the round id before
its result is applied.
"""
import asyncio
import itertools
import logging
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

import config
from errors import GenerationFailure, InvalidTransition
from evaluator import check_answers, first_new_correct, split_guesses, tally
from graph import build_reveal_graph, persist_round
from hit_testing import hit_test, is_drag
from history import DEFAULT_USER
from matching import clean_text
from models import (
    ClickResult,
    CompletionStatus,
    EvaluationResult,
    GameMode,
    HitOutcome,
    HitResult,
    ImageBox,
    POINTS_PER_FIND,
    Point,
    RevealedItem,
    RoundContent,
    RoundPhase,
    RoundState,
    RoundView,
    TimerZone,
)
from themes import pick_theme

logger = logging.getLogger("brainplay_game")

Listener = Callable[[str, RoundState], None]


# ---------------- Pure transitions ----------------

def timer_zone(
    time_remaining: int,
    caution_seconds: int = config.CAUTION_SECONDS,
    danger_seconds: int = config.DANGER_SECONDS,
) -> TimerZone:
    if time_remaining <= danger_seconds:
        return TimerZone.DANGER
    if time_remaining <= caution_seconds:
        return TimerZone.CAUTION
    return TimerZone.NORMAL


def begin_loading(
    state: RoundState, round_id: int, mode: GameMode, subject: str, round_seconds: int
) -> RoundState:
    # Fresh state: nothing from the previous round survives
    return RoundState(
        round_id=round_id,
        mode=mode,
        subject=subject,
        phase=RoundPhase.LOADING,
        time_remaining=round_seconds,
    )


def abort_loading(state: RoundState, error: str) -> RoundState:
    return RoundState(
        round_id=state.round_id,
        mode=state.mode,
        subject=state.subject,
        phase=RoundPhase.IDLE,
        error=error,
    )


def activate(
    state: RoundState,
    content: RoundContent,
    answer_key: Sequence[RevealedItem],
    zone: TimerZone = TimerZone.NORMAL,
) -> RoundState:
    return state.model_copy(update={
        "content": content,
        "answer_key": tuple(answer_key),
        "phase": RoundPhase.ACTIVE,
        "zone": zone,
    })


def tick(state: RoundState, zone_of: Callable[[int], TimerZone] = timer_zone) -> RoundState:
    remaining = max(0, state.time_remaining - 1)
    return state.model_copy(update={"time_remaining": remaining, "zone": zone_of(remaining)})


def begin_reveal(state: RoundState, status: CompletionStatus) -> RoundState:
    return state.model_copy(update={"phase": RoundPhase.REVEALING, "completion_status": status})


def finish_reveal(state: RoundState, revealed: RoundState) -> RoundState:
    """Adopt what the reveal workflow worked out and close the round."""
    return state.model_copy(update={
        "phase": RoundPhase.OVER,
        "score": revealed.score,
        "found_text_answers": revealed.found_text_answers,
        "unconfirmed_answers": revealed.unconfirmed_answers,
        "revealed_items": revealed.revealed_items,
        "retro_points": revealed.retro_points,
        "logic_solution": revealed.logic_solution,
    })


def apply_answers(
    state: RoundState, accepted: Iterable[str], points: int, rejected: Iterable[str]
) -> RoundState:
    found = state.found_text_answers + tuple(accepted)
    # Each rejected answer is kept once, case-insensitively, for scoring at reveal
    seen = {a.strip().casefold() for a in found + state.unconfirmed_answers}
    unconfirmed = list(state.unconfirmed_answers)
    for answer in rejected:
        key = answer.strip().casefold()
        if key not in seen:
            seen.add(key)
            unconfirmed.append(answer)
    return state.model_copy(update={
        "score": state.score + points,
        "found_text_answers": found,
        "unconfirmed_answers": tuple(unconfirmed),
    })


def solve_logic(state: RoundState, solution: str) -> RoundState:
    # LOGIC skips the reveal step: the solution is already known here
    return state.model_copy(update={
        "phase": RoundPhase.OVER,
        "logic_solution": solution,
        "completion_status": CompletionStatus.COMPLETED,
    })


def apply_hit(state: RoundState, hit: HitResult) -> Tuple[RoundState, int]:
    """Score a classified click. Returns (new_state, score delta actually applied)."""
    points = POINTS_PER_FIND[state.mode]
    if hit.outcome == HitOutcome.NEW_FIND:
        return state.model_copy(update={
            "score": state.score + points,
            "found_click_ids": state.found_click_ids | {hit.item_id},
        }), points
    if hit.outcome == HitOutcome.MISS:
        new_score = max(0, state.score - points)
        return state.model_copy(update={"score": new_score}), new_score - state.score
    return state, 0


def reset(state: RoundState) -> RoundState:
    return RoundState(round_id=state.round_id, mode=state.mode)


def to_view(session_id: str, state: RoundState) -> RoundView:
    """Public projection: no answer key, and no LOGIC solution before the round is over."""
    view = RoundView(
        session_id=session_id,
        round_id=state.round_id,
        mode=state.mode,
        subject=state.subject,
        phase=state.phase,
        score=state.score,
        time_remaining=state.time_remaining,
        zone=state.zone,
        found_text_answers=list(state.found_text_answers),
        found_click_ids=sorted(state.found_click_ids),
        revealed_items=list(state.revealed_items),
        retro_points=state.retro_points,
        completion_status=state.completion_status,
        error=state.error,
    )
    content = state.content
    updates: dict = {}
    if content is not None and content.kind == "DIFF":
        updates = {"image_a": content.image_a, "image_b": content.image_b}
    elif content is not None and content.kind == "WRONG":
        updates = {"image": content.image}
    elif content is not None and content.kind == "LOGIC":
        updates = {"logic_title": content.title, "logic_question": content.question}
        if state.phase == RoundPhase.OVER:
            updates["logic_solution"] = state.logic_solution
    if state.answer_key:
        updates["total_items"] = len({item.id for item in state.answer_key})
    return view.model_copy(update=updates)


# ---------------- Controller ----------------

class GameController:
    """Owns one session's RoundState and drives it through the lifecycle."""

    def __init__(
        self,
        service: Any,
        history: Any,
        user_id: str = DEFAULT_USER,
        round_seconds: int = config.ROUND_SECONDS,
        caution_seconds: int = config.CAUTION_SECONDS,
        danger_seconds: int = config.DANGER_SECONDS,
        drag_threshold_px: float = config.DRAG_THRESHOLD_PX,
        tick_interval: float = 1.0,
    ):
        self.service = service
        self.history = history
        self.user_id = user_id
        self.round_seconds = round_seconds
        self.caution_seconds = caution_seconds
        self.danger_seconds = danger_seconds
        self.drag_threshold_px = drag_threshold_px
        self.tick_interval = tick_interval

        self.state = RoundState(time_remaining=round_seconds)
        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._round_ids = itertools.count(1)
        self._listeners: List[Listener] = []
        self._reveal_graph = build_reveal_graph(service, history)

    # ---- notifications ----

    def add_listener(self, listener: Listener) -> None:
        """listener(event, state) for 'zone', 'find', 'duplicate', 'miss' and 'phase'."""
        self._listeners.append(listener)

    def _emit(self, event: str) -> None:
        for listener in self._listeners:
            try:
                listener(event, self.state)
            except Exception:
                logger.exception("Listener failed on event=%s", event)

    def _zone(self, remaining: int) -> TimerZone:
        return timer_zone(remaining, self.caution_seconds, self.danger_seconds)

    # ---- timer ----

    def _start_timer(self, round_id: int) -> None:
        self._timer = asyncio.create_task(self._run_timer(round_id))

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    async def _run_timer(self, round_id: int) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            async with self._lock:
                if self.state.round_id != round_id or self.state.phase != RoundPhase.ACTIVE:
                    return
                previous_zone = self.state.zone
                self.state = tick(self.state, self._zone)
                if self.state.zone != previous_zone:
                    logger.info(
                        "Timer zone: round_id=%d zone=%s remaining=%d",
                        round_id,
                        self.state.zone.value,
                        self.state.time_remaining,
                    )
                    self._emit("zone")
                if self.state.time_remaining > 0:
                    continue
                self._timer = None
                self.state = begin_reveal(self.state, CompletionStatus.TIMEOUT)
                self._emit("phase")
            logger.info("Round timed out: round_id=%d", round_id)
            await self._reveal(round_id)
            return

    # ---- start / generation ----

    async def start(self, mode: GameMode, subject: str = "") -> RoundState:
        async with self._lock:
            if self.state.phase in (RoundPhase.ACTIVE, RoundPhase.REVEALING):
                raise InvalidTransition(f"Cannot start a round while {self.state.phase.value}")
            self._cancel_timer()
            subject = (subject or "").strip()
            if not subject and mode != GameMode.LOGIC:
                subject = pick_theme()
            round_id = next(self._round_ids)
            self.state = begin_loading(self.state, round_id, mode, subject, self.round_seconds)
            self._emit("phase")

        logger.info("Round loading: round_id=%d mode=%s subject=%r", round_id, mode.value, subject)

        try:
            content, answer_key = await self._generate(mode, subject)
        except Exception as e:
            async with self._lock:
                if self.state.round_id != round_id:
                    logger.info("Superseded round failed to generate: round_id=%d", round_id)
                    return self.state
                self.state = abort_loading(self.state, "Failed to generate game. Please try again.")
                self._emit("phase")
            logger.warning("Generation failed: round_id=%d mode=%s: %r", round_id, mode.value, e)
            if isinstance(e, GenerationFailure):
                raise
            raise GenerationFailure(str(e)) from e

        async with self._lock:
            if self.state.round_id != round_id:
                # A newer start() took over while we were generating
                logger.info("Discarding stale generation result: round_id=%d", round_id)
                return self.state
            self.state = activate(self.state, content, answer_key, self._zone(self.state.time_remaining))
            self._start_timer(round_id)
            self._emit("phase")
            logger.info(
                "Round active: round_id=%d mode=%s answer_key=%d seconds=%d",
                round_id,
                mode.value,
                len(answer_key),
                self.state.time_remaining,
            )
            return self.state

    async def _generate(self, mode: GameMode, subject: str) -> Tuple[RoundContent, Tuple[RevealedItem, ...]]:
        if mode == GameMode.DIFF:
            content = await self.service.generate_comparison_puzzle(subject)
            key = await self._prefetch(self.service.list_comparison_differences(content.image_a, content.image_b))
        elif mode == GameMode.WRONG:
            content = await self.service.generate_anomaly_puzzle(subject)
            key = await self._prefetch(self.service.list_anomalies(content.image))
        else:
            content = await self.service.generate_logic_puzzle(subject)
            key = ()
        return content, key

    async def _prefetch(self, pending) -> Tuple[RevealedItem, ...]:
        # No answer key just means no click-to-find this round
        try:
            return tuple(await pending)
        except Exception as e:
            logger.warning("Answer key pre-fetch failed; clicks disabled for this round: %r", e)
            return ()

    # ---- reveal ----

    async def _reveal(self, round_id: int) -> None:
        snapshot = self.state
        try:
            result = await self._reveal_graph.ainvoke({"round": snapshot, "user_id": self.user_id})
            revealed = result["round"]
        except Exception as e:
            logger.error("Reveal workflow failed: round_id=%d: %r", round_id, e, exc_info=True)
            revealed = snapshot

        async with self._lock:
            if self.state.round_id != round_id or self.state.phase != RoundPhase.REVEALING:
                return
            self.state = finish_reveal(self.state, revealed)
            self._emit("phase")
            logger.info(
                "Round over: round_id=%d status=%s score=%d retro_points=%d",
                round_id,
                self.state.completion_status.value if self.state.completion_status else "",
                self.state.score,
                self.state.retro_points,
            )

    async def give_up(self) -> RoundState:
        async with self._lock:
            if self.state.phase != RoundPhase.ACTIVE:
                raise InvalidTransition(f"Cannot give up while {self.state.phase.value}")
            self._cancel_timer()
            self.state = begin_reveal(self.state, CompletionStatus.GIVEN_UP)
            round_id = self.state.round_id
            self._emit("phase")
        logger.info("Round given up: round_id=%d", round_id)
        await self._reveal(round_id)
        return self.state

    # ---- guesses ----

    async def submit_guess(self, guess_text: str) -> EvaluationResult:
        async with self._lock:
            state = self.state
            if state.phase != RoundPhase.ACTIVE or state.content is None:
                return EvaluationResult(applied=False, message="The round is not accepting answers.")
            answers = split_guesses(guess_text, state.mode)
            if not answers:
                return EvaluationResult(applied=False, message="Type an answer first.")
            round_id = state.round_id
            found = list(state.found_text_answers)

        verdicts = await check_answers(self.service, state.content, answers, found)

        async with self._lock:
            if self.state.round_id != round_id or self.state.phase != RoundPhase.ACTIVE:
                return EvaluationResult(
                    verdicts=verdicts,
                    applied=False,
                    message="The round ended before your answer was checked.",
                )
            # Tally against the latest accepted answers, not the snapshot
            result, accepted, rejected = tally(verdicts, self.state.found_text_answers, self.state.mode)
            self.state = apply_answers(self.state, accepted, result.points, rejected)
            logger.info(
                "Guess checked: round_id=%d correct=%d duplicate=%d incorrect=%d points=%d score=%d",
                round_id,
                result.counts.correct,
                result.counts.duplicate,
                result.counts.incorrect,
                result.points,
                self.state.score,
            )

            solved = None
            if self.state.mode == GameMode.LOGIC and accepted:
                self._cancel_timer()
                winner = first_new_correct(result)
                solution = clean_text(winner.explanation if winner else "") or clean_text(state.content.solution)
                self.state = solve_logic(self.state, solution)
                self._emit("phase")
                solved = self.state
                result = result.model_copy(update={"round_over": True})

        if solved is not None:
            logger.info("Logic puzzle solved: round_id=%d", round_id)
            persist_round(self.history, self.user_id, solved)
        return result

    # ---- clicks ----

    async def image_click(
        self, click: Point, image: ImageBox, press: Optional[Point] = None
    ) -> ClickResult:
        async with self._lock:
            state = self.state
            if (
                state.phase != RoundPhase.ACTIVE
                or state.mode == GameMode.LOGIC
                or not state.answer_key
                or is_drag(press, click, self.drag_threshold_px)
            ):
                return ClickResult(ignored=True)

            hit = hit_test(click, image, state.answer_key, state.found_click_ids)
            self.state, delta = apply_hit(state, hit)
            result = ClickResult(outcome=hit.outcome, item_id=hit.item_id, points_delta=delta)

            if hit.outcome == HitOutcome.NEW_FIND:
                result.message = f"Found one! +{delta}"
                self._emit("find")
            elif hit.outcome == HitOutcome.DUPLICATE:
                result.message = "Already found that one."
                self._emit("duplicate")
            else:
                result.message = f"Nothing there. {delta}" if delta else "Nothing there."
                self._emit("miss")

            total = len({item.id for item in state.answer_key})
            complete = len(self.state.found_click_ids) >= total
            round_id = state.round_id
            if complete:
                self._cancel_timer()
                self.state = begin_reveal(self.state, CompletionStatus.COMPLETED)
                self._emit("phase")

        if complete:
            logger.info("Every item found by clicking: round_id=%d", round_id)
            await self._reveal(round_id)
            result.round_over = True
        return result

    # ---- replay ----

    async def play_again(self) -> RoundState:
        async with self._lock:
            if self.state.phase not in (RoundPhase.OVER, RoundPhase.IDLE):
                raise InvalidTransition(f"Cannot reset while {self.state.phase.value}")
            self._cancel_timer()
            self.state = reset(self.state).model_copy(update={"time_remaining": self.round_seconds})
            self._emit("phase")
            return self.state

    async def close(self) -> None:
        async with self._lock:
            self._cancel_timer()
