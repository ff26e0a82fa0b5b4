import asyncio
import random

import pytest

from conftest import (
    DEFAULT_ITEMS,
    BrokenHistory,
    FakePuzzleService,
    correct,
    make_controller,
    wait_for_phase,
)
from errors import GenerationFailure, InvalidTransition
from game import apply_hit, tick, timer_zone, to_view
from history import HistoryStore
from models import (
    CompletionStatus,
    GameMode,
    HitOutcome,
    HitResult,
    ImageBox,
    LogicContent,
    Point,
    RoundPhase,
    RoundState,
    TimerZone,
)
from themes import RANDOM_THEMES

FULL = ImageBox(left=0, top=0, width=1000, height=1000)


def _center(item):
    ymin, xmin, ymax, xmax = item.box_2d
    return Point(x=(xmin + xmax) / 2, y=(ymin + ymax) / 2)


def run(coro):
    return asyncio.run(coro)


# ---------- pure transitions ----------

def test_timer_zones():
    assert timer_zone(75, 30, 10) == TimerZone.NORMAL
    assert timer_zone(30, 30, 10) == TimerZone.CAUTION
    assert timer_zone(10, 30, 10) == TimerZone.DANGER
    assert timer_zone(0, 30, 10) == TimerZone.DANGER


def test_tick_never_goes_below_zero():
    state = RoundState(phase=RoundPhase.ACTIVE, time_remaining=0)
    assert tick(state).time_remaining == 0
    assert tick(RoundState(time_remaining=5)).time_remaining == 4


def test_miss_penalty_is_clamped_at_zero():
    state = RoundState(mode=GameMode.WRONG, phase=RoundPhase.ACTIVE, score=1)
    miss = HitResult(outcome=HitOutcome.MISS, rel_x=0, rel_y=0)
    new_state, delta = apply_hit(state, miss)
    assert new_state.score == 0
    assert delta == -1


def test_view_hides_answer_key_and_unsolved_logic_solution():
    content = LogicContent(title="T", question="Q?", solution="secret")
    state = RoundState(mode=GameMode.LOGIC, phase=RoundPhase.ACTIVE, content=content, answer_key=tuple(DEFAULT_ITEMS))
    view = to_view("s1", state).model_dump()
    assert view["logic_solution"] is None
    assert "answer_key" not in view
    assert view["revealed_items"] == []

    over = state.model_copy(update={"phase": RoundPhase.OVER, "logic_solution": "secret"})
    assert to_view("s1", over).logic_solution == "secret"


# ---------- start / loading ----------

def test_start_activates_round_with_prefetched_answers(service):
    async def scenario():
        controller = make_controller(service)
        state = await controller.start(GameMode.DIFF, "  kitchen ")
        await controller.close()
        return state

    state = run(scenario())
    assert state.phase == RoundPhase.ACTIVE
    assert state.subject == "kitchen"
    assert state.score == 0
    assert state.time_remaining == 75
    assert state.content.image_a == "kitchen-A"
    assert [i.id for i in state.answer_key] == [1, 2, 3]
    assert state.revealed_items == ()


def test_empty_subject_gets_a_random_theme(service):
    async def scenario():
        controller = make_controller(service)
        state = await controller.start(GameMode.WRONG, "")
        await controller.close()
        return state

    assert run(scenario()).subject in RANDOM_THEMES


def test_generation_failure_returns_to_idle():
    service = FakePuzzleService(fail_generation=True)
    controller = make_controller(service)

    with pytest.raises(GenerationFailure):
        run(controller.start(GameMode.DIFF, "kitchen"))

    assert controller.state.phase == RoundPhase.IDLE
    assert controller.state.error
    assert controller.state.content is None


def test_answer_key_prefetch_failure_still_starts_round():
    service = FakePuzzleService(fail_listing=True)

    async def scenario():
        controller = make_controller(service)
        state = await controller.start(GameMode.DIFF, "kitchen")
        click = await controller.image_click(_center(DEFAULT_ITEMS[0]), FULL)
        await controller.close()
        return state, click

    state, click = run(scenario())
    assert state.phase == RoundPhase.ACTIVE
    assert state.answer_key == ()
    assert click.ignored


def test_stale_generation_does_not_clobber_newer_round(service):
    async def scenario():
        first_gate, second_gate = asyncio.Event(), asyncio.Event()
        service.generation_gates = [first_gate, second_gate]
        controller = make_controller(service)

        first = asyncio.create_task(controller.start(GameMode.DIFF, "first"))
        for _ in range(5):
            await asyncio.sleep(0)
        second = asyncio.create_task(controller.start(GameMode.DIFF, "second"))
        for _ in range(5):
            await asyncio.sleep(0)

        second_gate.set()
        await second
        first_gate.set()
        await first
        await controller.close()
        return controller.state

    state = run(scenario())
    assert state.round_id == 2
    assert state.subject == "second"
    assert state.content.image_a == "second-A"
    assert state.phase == RoundPhase.ACTIVE


def test_cannot_start_while_active(service):
    async def scenario():
        controller = make_controller(service)
        await controller.start(GameMode.DIFF, "kitchen")
        try:
            await controller.start(GameMode.DIFF, "again")
        finally:
            await controller.close()

    with pytest.raises(InvalidTransition):
        run(scenario())


# ---------- timer ----------

def test_timeout_reveals_and_persists():
    service = FakePuzzleService()
    history = HistoryStore()
    zones = []

    async def scenario():
        controller = make_controller(
            service, history, round_seconds=3, caution_seconds=2, danger_seconds=1, tick_interval=0.01
        )
        controller.add_listener(lambda event, state: zones.append(state.zone) if event == "zone" else None)
        await controller.start(GameMode.DIFF, "kitchen")
        await wait_for_phase(controller, RoundPhase.OVER)
        return controller.state

    state = run(scenario())
    assert state.completion_status == CompletionStatus.TIMEOUT
    assert state.time_remaining == 0
    assert [i.id for i in state.revealed_items] == [1, 2, 3]
    assert zones == [TimerZone.CAUTION, TimerZone.DANGER]

    saved = history.fetch_round_history("anonymous")
    assert len(saved) == 1
    assert saved[0].completion_status == CompletionStatus.TIMEOUT


def test_timer_stops_after_give_up(service):
    async def scenario():
        controller = make_controller(service, round_seconds=50, tick_interval=0.01)
        await controller.start(GameMode.DIFF, "kitchen")
        await asyncio.sleep(0.05)
        await controller.give_up()
        remaining = controller.state.time_remaining
        await asyncio.sleep(0.05)
        return remaining, controller

    remaining, controller = run(scenario())
    assert controller.state.phase == RoundPhase.OVER
    assert controller.state.time_remaining == remaining
    assert controller._timer is None


# ---------- guesses ----------

def test_duplicate_guess_is_idempotent():
    service = FakePuzzleService(verdicts={"red car": correct("There is a red car.")})

    async def scenario():
        controller = make_controller(service)
        await controller.start(GameMode.DIFF, "street")
        first = await controller.submit_guess("red car")
        score_after_first = controller.state.score
        second = await controller.submit_guess("red car")
        await controller.close()
        return first, second, score_after_first, controller.state

    first, second, score_after_first, state = run(scenario())
    assert first.counts.correct == 1
    assert second.verdicts[0].already_found
    assert second.points == 0
    assert state.score == score_after_first == 1
    assert state.found_text_answers == ("red car",)


def test_batch_submission_aggregates():
    service = FakePuzzleService(verdicts={"a": correct(), "b": correct()})

    async def scenario():
        controller = make_controller(service)
        await controller.start(GameMode.DIFF, "street")
        await controller.submit_guess("B")
        before = controller.state.score
        result = await controller.submit_guess("A, B, C")
        await controller.close()
        return before, result, controller.state

    before, result, state = run(scenario())
    assert result.counts.model_dump() == {"correct": 1, "duplicate": 1, "incorrect": 1}
    assert state.score - before == 1
    assert state.found_text_answers == ("B", "A")
    assert state.unconfirmed_answers == ("C",)


def test_correct_logic_answer_ends_round_immediately():
    service = FakePuzzleService(verdicts={"42": correct("**Right**, it is 42.")})
    history = HistoryStore()

    async def scenario():
        controller = make_controller(service, history)
        await controller.start(GameMode.LOGIC, "")
        result = await controller.submit_guess("42")
        return result, controller

    result, controller = run(scenario())
    state = controller.state
    assert result.round_over
    assert state.phase == RoundPhase.OVER
    assert state.completion_status == CompletionStatus.COMPLETED
    assert state.score == 10
    assert state.time_remaining == 75
    assert state.logic_solution == "Right, it is 42."
    assert controller._timer is None

    saved = history.fetch_round_history("anonymous")[0]
    assert saved.logic_question == "How do they all cross?"
    assert saved.logic_solution == "Right, it is 42."


def test_guess_outside_active_round_is_not_applied(service):
    controller = make_controller(service)
    result = run(controller.submit_guess("anything"))
    assert not result.applied
    assert controller.state.score == 0


def test_round_ending_during_verification_drops_result():
    service = FakePuzzleService(verdicts={"red car": correct()})

    async def scenario():
        service.verify_gate = asyncio.Event()
        controller = make_controller(service)
        await controller.start(GameMode.DIFF, "street")
        pending = asyncio.create_task(controller.submit_guess("red car"))
        for _ in range(5):
            await asyncio.sleep(0)
        await controller.give_up()
        service.verify_gate.set()
        return await pending, controller.state

    result, state = run(scenario())
    assert not result.applied
    assert state.phase == RoundPhase.OVER
    assert state.score == 0


def test_verification_failure_keeps_round_going(verification_error):
    service = FakePuzzleService(verdicts={"red car": verification_error})

    async def scenario():
        controller = make_controller(service)
        await controller.start(GameMode.WRONG, "street")
        result = await controller.submit_guess("red car")
        await controller.close()
        return result, controller.state

    result, state = run(scenario())
    assert result.counts.incorrect == 1
    assert state.phase == RoundPhase.ACTIVE


# ---------- give up / reveal ----------

def test_give_up_runs_retroactive_scoring():
    service = FakePuzzleService()
    history = HistoryStore()

    async def scenario():
        controller = make_controller(service, history)
        await controller.start(GameMode.DIFF, "park")
        await controller.submit_guess("tree, spaceship")
        return await controller.give_up()

    state = run(scenario())
    assert state.phase == RoundPhase.OVER
    assert state.completion_status == CompletionStatus.GIVEN_UP
    assert state.retro_points == 1
    assert state.score == 1
    assert "tree" in state.found_text_answers
    assert state.unconfirmed_answers == ("spaceship",)
    assert history.fetch_round_history("anonymous")[0].score == 1


def test_repeated_rejected_answer_scores_once_at_reveal(service):
    async def scenario():
        controller = make_controller(service)
        await controller.start(GameMode.DIFF, "park")
        await controller.submit_guess("tree")
        await controller.submit_guess("Tree")
        unconfirmed = controller.state.unconfirmed_answers
        return unconfirmed, await controller.give_up()

    unconfirmed, state = run(scenario())
    assert unconfirmed == ("tree",)
    assert state.retro_points == 1
    assert state.score == 1
    assert state.found_text_answers == ("tree",)


def test_rephrasing_one_difference_scores_once_at_reveal(service):
    async def scenario():
        controller = make_controller(service)
        await controller.start(GameMode.DIFF, "park")
        await controller.submit_guess("tree, leaves, more leaves")
        return await controller.give_up()

    state = run(scenario())
    assert state.retro_points == 1
    assert state.score == 1


def test_clicked_item_is_not_scored_again_at_reveal(service):
    async def scenario():
        controller = make_controller(service)
        await controller.start(GameMode.WRONG, "park")
        await controller.image_click(_center(DEFAULT_ITEMS[0]), FULL)
        await controller.submit_guess("tree")
        return await controller.give_up()

    state = run(scenario())
    assert state.score == 2
    assert state.retro_points == 0


def test_logic_give_up_shows_generated_solution(service):
    async def scenario():
        controller = make_controller(service)
        await controller.start(GameMode.LOGIC, "")
        return await controller.give_up()

    state = run(scenario())
    assert state.phase == RoundPhase.OVER
    assert state.logic_solution == "The answer is 42."
    assert state.retro_points == 0


def test_reveal_failure_still_ends_round():
    service = FakePuzzleService(fail_listing=True)

    async def scenario():
        controller = make_controller(service)
        await controller.start(GameMode.WRONG, "park")
        await controller.submit_guess("tree")
        return await controller.give_up()

    state = run(scenario())
    assert state.phase == RoundPhase.OVER
    assert state.revealed_items == ()
    assert state.retro_points == 0


def test_persistence_failure_does_not_block_completion(service):
    async def scenario():
        controller = make_controller(service, BrokenHistory())
        await controller.start(GameMode.DIFF, "park")
        return await controller.give_up()

    assert run(scenario()).phase == RoundPhase.OVER


def test_give_up_only_while_active(service):
    controller = make_controller(service)
    with pytest.raises(InvalidTransition):
        run(controller.give_up())


# ---------- clicks ----------

def test_click_find_duplicate_and_miss_scoring():
    service = FakePuzzleService()

    async def scenario():
        controller = make_controller(service)
        await controller.start(GameMode.WRONG, "park")
        results = [
            await controller.image_click(Point(x=990, y=10), FULL),
            await controller.image_click(_center(DEFAULT_ITEMS[0]), FULL),
            await controller.image_click(_center(DEFAULT_ITEMS[0]), FULL),
            await controller.image_click(Point(x=990, y=10), FULL),
        ]
        await controller.close()
        return results, controller.state

    (miss_at_zero, find, dup, miss), state = run(scenario())
    assert miss_at_zero.outcome == HitOutcome.MISS and miss_at_zero.points_delta == 0
    assert find.outcome == HitOutcome.NEW_FIND and find.points_delta == 2
    assert dup.outcome == HitOutcome.DUPLICATE and dup.points_delta == 0
    assert miss.outcome == HitOutcome.MISS and miss.points_delta == -2
    assert state.score == 0
    assert state.found_click_ids == frozenset({1})


def test_score_never_negative_under_random_clicks():
    rng = random.Random(7)

    async def scenario():
        controller = make_controller(FakePuzzleService(items=DEFAULT_ITEMS[:2]))
        await controller.start(GameMode.DIFF, "park")
        scores = []
        for _ in range(200):
            if controller.state.phase != RoundPhase.ACTIVE:
                break
            click = Point(x=rng.uniform(0, 1000), y=rng.uniform(0, 1000))
            await controller.image_click(click, FULL)
            scores.append(controller.state.score)
        await controller.close()
        return scores

    assert all(score >= 0 for score in run(scenario()))


def test_finding_every_item_by_click_completes_round():
    service = FakePuzzleService()
    history = HistoryStore()

    async def scenario():
        controller = make_controller(service, history)
        await controller.start(GameMode.DIFF, "park")
        results = [await controller.image_click(_center(item), FULL) for item in DEFAULT_ITEMS]
        return results, controller

    results, controller = run(scenario())
    state = controller.state
    assert results[-1].round_over
    assert not any(r.round_over for r in results[:-1])
    assert state.phase == RoundPhase.OVER
    assert state.completion_status == CompletionStatus.COMPLETED
    assert state.score == 3
    assert state.time_remaining == 75
    assert controller._timer is None

    saved = history.fetch_round_history("anonymous")[0]
    assert saved.found_count == 3
    assert saved.total_possible == 3


def test_clicks_ignored_for_logic_drags_and_idle(service):
    async def scenario():
        idle = make_controller(service)
        idle_click = await idle.image_click(Point(x=150, y=150), FULL)

        image_round = make_controller(service)
        await image_round.start(GameMode.DIFF, "park")
        drag = await image_round.image_click(Point(x=150, y=150), FULL, press=Point(x=100, y=100))
        await image_round.close()

        logic = make_controller(service)
        await logic.start(GameMode.LOGIC, "")
        logic_click = await logic.image_click(Point(x=150, y=150), FULL)
        await logic.close()
        return idle_click, drag, logic_click, image_round.state

    idle_click, drag, logic_click, image_state = run(scenario())
    assert idle_click.ignored and drag.ignored and logic_click.ignored
    assert image_state.score == 0
    assert image_state.found_click_ids == frozenset()


# ---------- replay ----------

def test_play_again_resets_round(service):
    async def scenario():
        controller = make_controller(service)
        await controller.start(GameMode.DIFF, "park")
        await controller.image_click(_center(DEFAULT_ITEMS[0]), FULL)
        await controller.give_up()
        return await controller.play_again()

    state = run(scenario())
    assert state.phase == RoundPhase.IDLE
    assert state.score == 0
    assert state.found_click_ids == frozenset()
    assert state.revealed_items == ()
    assert state.content is None
    assert state.time_remaining == 75


def test_play_again_not_allowed_mid_round(service):
    async def scenario():
        controller = make_controller(service)
        await controller.start(GameMode.DIFF, "park")
        try:
            await controller.play_again()
        finally:
            await controller.close()

    with pytest.raises(InvalidTransition):
        run(scenario())
