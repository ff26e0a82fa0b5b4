# backend/conftest.py
import asyncio
from typing import Dict, List, Optional, Sequence, Union

import pytest

from errors import GenerationFailure, RevealFailure, VerificationFailure
from game import GameController
from history import HistoryStore
from models import (
    AnomalyContent,
    CheckResult,
    ComparisonContent,
    LogicContent,
    RevealedItem,
    RoundPhase,
)

DEFAULT_ITEMS = [
    RevealedItem(id=1, description="The tree has more leaves", box_2d=(100, 100, 200, 200)),
    RevealedItem(id=2, description="The clock is missing its hands", box_2d=(300, 300, 400, 400)),
    RevealedItem(id=3, description="The cat changed color", box_2d=(600, 600, 700, 700)),
]

Verdict = Union[CheckResult, Exception]


class FakePuzzleService:
    """Stands in for GeminiPuzzleService; answers come from plain dicts."""

    def __init__(
        self,
        items: Optional[Sequence[RevealedItem]] = None,
        verdicts: Optional[Dict[str, Verdict]] = None,
        fail_generation: bool = False,
        fail_listing: bool = False,
        logic_solution: str = "The **answer** is 42.",
    ):
        self.items = list(DEFAULT_ITEMS if items is None else items)
        self.verdicts = {k.casefold(): v for k, v in (verdicts or {}).items()}
        self.fail_generation = fail_generation
        self.fail_listing = fail_listing
        self.logic_solution = logic_solution
        # One event per generate call, consumed in order; generation waits on it
        self.generation_gates: List[asyncio.Event] = []
        self.verify_gate: Optional[asyncio.Event] = None
        self.calls: List[tuple] = []

    async def _generate(self, kind: str, subject: str) -> None:
        self.calls.append((kind, subject))
        if self.generation_gates:
            await self.generation_gates.pop(0).wait()
        if self.fail_generation:
            raise GenerationFailure("model returned no image")

    async def generate_comparison_puzzle(self, subject):
        await self._generate("generate-diff", subject)
        return ComparisonContent(image_a=f"{subject}-A", image_b=f"{subject}-B")

    async def generate_anomaly_puzzle(self, subject):
        await self._generate("generate-wrong", subject)
        return AnomalyContent(image=f"{subject}-IMG")

    async def generate_logic_puzzle(self, topic):
        await self._generate("generate-logic", topic)
        return LogicContent(title="Bridge", question="How do they all cross?", solution=self.logic_solution)

    async def _verdict(self, guess: str, already_found: Sequence[str]) -> CheckResult:
        self.calls.append(("verify", guess))
        if self.verify_gate is not None:
            await self.verify_gate.wait()
        verdict = self.verdicts.get(guess.casefold())
        if isinstance(verdict, Exception):
            raise verdict
        if verdict is None:
            return CheckResult(correct=False, explanation="Look closer.")
        if verdict.correct and guess in already_found:
            return verdict.model_copy(update={"already_found": True})
        return verdict

    async def verify_comparison_guess(self, image_a, image_b, guess, already_found):
        return await self._verdict(guess, already_found)

    async def verify_anomaly_guess(self, image, guess, already_found):
        return await self._verdict(guess, already_found)

    async def verify_logic_guess(self, question, guess):
        return await self._verdict(guess, [])

    async def _list(self, kind: str):
        self.calls.append((kind,))
        if self.fail_listing:
            raise RevealFailure(kind)
        return list(self.items)

    async def list_comparison_differences(self, image_a, image_b):
        return await self._list("get-differences")

    async def list_anomalies(self, image):
        return await self._list("get-errors")


class BrokenHistory:
    def persist_round(self, user_id, record):
        raise ConnectionError("history store is down")


def correct(explanation: str = "Yes!") -> CheckResult:
    return CheckResult(correct=True, explanation=explanation)


def make_controller(service, history=None, **kwargs) -> GameController:
    options = dict(round_seconds=75, caution_seconds=30, danger_seconds=10, tick_interval=60.0)
    options.update(kwargs)
    return GameController(service=service, history=history or HistoryStore(), **options)


async def wait_for_phase(controller: GameController, phase: RoundPhase, timeout: float = 2.0) -> None:
    async def poll():
        while controller.state.phase != phase:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def service():
    return FakePuzzleService()


@pytest.fixture
def history_store():
    return HistoryStore()


@pytest.fixture
def verification_error():
    return VerificationFailure("check-difference")
