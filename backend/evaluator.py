# backend/evaluator.py
import asyncio
import logging
from typing import Any, List, Optional, Sequence, Tuple

from matching import clean_text
from models import (
    AnswerVerdict,
    CheckResult,
    EvaluationCounts,
    EvaluationResult,
    GameMode,
    POINTS_PER_FIND,
    RoundContent,
)

logger = logging.getLogger("brainplay_evaluator")

ALREADY_FOUND_TEXT = "Already discovered!"
CORRECT_TEXT = "Correct answer!"
INCORRECT_TEXT = "Not quite right. Try again."
VERIFY_ERROR_TEXT = "Error verifying answer. Please try again."


def split_guesses(guess_text: str, mode: GameMode) -> List[str]:
    """
    Image modes take a comma-separated batch. LOGIC answers are kept
    whole since a riddle answer can legitimately contain commas.
    """
    text = (guess_text or "").strip()
    if mode == GameMode.LOGIC:
        parts = [text]
    else:
        parts = [p.strip() for p in text.split(",")]
    return [p for p in parts if p]


def _key(answer: str) -> str:
    return answer.strip().casefold()


def is_known_answer(answer: str, found: Sequence[str]) -> bool:
    key = _key(answer)
    return any(_key(f) == key for f in found)


async def _ask_verifier(service: Any, content: RoundContent, answer: str, found: List[str]) -> CheckResult:
    if content.kind == "DIFF":
        return await service.verify_comparison_guess(content.image_a, content.image_b, answer, found)
    if content.kind == "WRONG":
        return await service.verify_anomaly_guess(content.image, answer, found)
    return await service.verify_logic_guess(content.question, answer)


async def check_answers(
    service: Any,
    content: RoundContent,
    answers: Sequence[str],
    found: Sequence[str],
) -> List[AnswerVerdict]:
    """
    Verify every answer concurrently. Results keep submission order.
    Answers already accepted this round never reach the verifier.
    """
    found_list = list(found)

    async def check_one(answer: str) -> AnswerVerdict:
        if is_known_answer(answer, found_list):
            return AnswerVerdict(
                answer=answer,
                correct=True,
                already_found=True,
                explanation=ALREADY_FOUND_TEXT,
            )
        try:
            res = await _ask_verifier(service, content, answer, found_list)
        except Exception as e:
            # Verification failure only costs this one guess
            logger.error("Verification failed: kind=%s: %r", content.kind, e, exc_info=True)
            return AnswerVerdict(
                answer=answer,
                correct=False,
                already_found=False,
                explanation=VERIFY_ERROR_TEXT,
            )
        return AnswerVerdict(
            answer=answer,
            correct=bool(res.correct),
            already_found=bool(res.already_found),
            explanation=clean_text(res.explanation),
        )

    return list(await asyncio.gather(*(check_one(a) for a in answers)))


def tally(
    verdicts: Sequence[AnswerVerdict],
    found: Sequence[str],
    mode: GameMode,
) -> Tuple[EvaluationResult, List[str], List[str]]:
    """
    Fold verdicts into one result against the answers accepted so far.

    Returns (result, accepted, rejected): accepted are the genuinely new
    correct answers in submission order, rejected are the incorrect ones.
    """
    points_each = POINTS_PER_FIND[mode]
    known = {_key(f) for f in found}
    counts = EvaluationCounts()
    accepted: List[str] = []
    rejected: List[str] = []
    final: List[AnswerVerdict] = []

    for v in verdicts:
        key = _key(v.answer)
        if v.already_found or (v.correct and key in known):
            counts.duplicate += 1
            final.append(v.model_copy(update={"already_found": True, "points": 0}))
        elif v.correct:
            counts.correct += 1
            known.add(key)
            accepted.append(v.answer)
            final.append(v.model_copy(update={"points": points_each}))
        else:
            counts.incorrect += 1
            rejected.append(v.answer)
            final.append(v.model_copy(update={"points": 0}))

    points = counts.correct * points_each
    result = EvaluationResult(
        verdicts=final,
        counts=counts,
        points=points,
        message=_summary_message(final, counts, points),
        feedback_type=_feedback_type(counts),
    )
    return result, accepted, rejected


def first_new_correct(result: EvaluationResult) -> Optional[AnswerVerdict]:
    """The canonical explanation when a correct answer ends the round."""
    for v in result.verdicts:
        if v.correct and not v.already_found:
            return v
    return None


def _feedback_type(counts: EvaluationCounts) -> str:
    if counts.correct:
        return "success"
    if counts.duplicate:
        return "info"
    return "error"


def _summary_message(verdicts: Sequence[AnswerVerdict], counts: EvaluationCounts, points: int) -> str:
    if len(verdicts) == 1:
        v = verdicts[0]
        if v.already_found:
            return ALREADY_FOUND_TEXT
        if v.correct:
            return v.explanation or CORRECT_TEXT
        return v.explanation or INCORRECT_TEXT

    parts = []
    if counts.correct:
        parts.append(f"{counts.correct} correct (+{points})")
    if counts.duplicate:
        parts.append(f"{counts.duplicate} already found")
    if counts.incorrect:
        parts.append(f"{counts.incorrect} incorrect")
    return ", ".join(parts) or "Nothing to check."
