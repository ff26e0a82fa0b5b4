# backend/gemini_service.py
import json
import logging
from functools import cached_property
from typing import Any, Dict, List, Sequence

from langchain_core.messages import AIMessage, HumanMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from pydantic import ValidationError

import config
from errors import GenerationFailure, RevealFailure, VerificationFailure
from matching import clean_text
from models import (
    AnomalyContent,
    CheckResult,
    ComparisonContent,
    LogicContent,
    RevealedItem,
)

# Logger for the Gemini / LLM layer
logger = logging.getLogger("brainplay_gemini")

DEFAULT_LOGIC_TOPIC = "random logical thinking"
NO_SOLUTION_TEXT = "No solution available."


# ---------------- Helpers ----------------

def _cleanup_json(text: str) -> str:
    s = text.strip()
    if s.startswith("```"):
        s = s.lstrip("`")
        if s.lower().startswith("json"):
            s = s[4:]
        if s.endswith("```"):
            s = s[:-3]
    return s.strip()


def _message_text(resp: AIMessage) -> str:
    if hasattr(resp, "text") and isinstance(resp.text, str) and resp.text:
        return resp.text
    if isinstance(resp.content, str):
        return resp.content
    parts = []
    for block in resp.content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _parse_json(text: str, context: str) -> Any:
    try:
        return json.loads(_cleanup_json(text))
    except (json.JSONDecodeError, TypeError):
        logger.warning(
            "Failed to parse %s JSON; falling back. Raw length=%d",
            context,
            len(text or ""),
        )
        return None


def _extract_image_base64(resp: AIMessage) -> str:
    """Pull the first inline image out of a Gemini image-model reply."""
    if isinstance(resp.content, str):
        return ""
    for block in resp.content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "image_url":
            url = block.get("image_url")
            if isinstance(url, dict):
                url = url.get("url")
            if isinstance(url, str) and url.startswith("data:") and "," in url:
                return url.split(",", 1)[1]
        if block.get("type") == "image":
            data = block.get("base64") or block.get("data")
            if data:
                return data
    return ""


def _image_part(image_b64: str) -> Dict[str, Any]:
    return {"type": "image_url", "image_url": f"data:image/png;base64,{image_b64}"}


def _text_part(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def _coerce_items(data: Any, key: str) -> List[RevealedItem]:
    """
    Accept {key: [...]} or a bare list and keep only well-formed items.
    Box corners are clamped to the 0-1000 grid and put in min/max order.
    """
    if isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        return []

    items: List[RevealedItem] = []
    for raw in data:
        if not isinstance(raw, dict):
            continue
        box = raw.get("box_2d")
        if not isinstance(box, (list, tuple)) or len(box) != 4:
            continue
        try:
            ymin, xmin, ymax, xmax = (max(0, min(1000, int(v))) for v in box)
            items.append(RevealedItem(
                id=int(raw.get("id", len(items) + 1)),
                description=clean_text(str(raw.get("description", ""))).strip(),
                box_2d=(min(ymin, ymax), min(xmin, xmax), max(ymin, ymax), max(xmin, xmax)),
            ))
        except (TypeError, ValueError, ValidationError):
            logger.debug("Dropping malformed revealed item: %r", raw)
    return items


def _check_result(data: Any) -> CheckResult:
    if not isinstance(data, dict):
        return CheckResult(correct=False, explanation="Verification failed.")
    try:
        result = CheckResult.model_validate(data)
    except ValidationError:
        return CheckResult(correct=False, explanation="Verification failed.")
    return result.model_copy(update={"explanation": clean_text(result.explanation)})


# ---------------- Service ----------------

class GeminiPuzzleService:
    """
    Generation and verification over Gemini. Puzzle generation raises
    GenerationFailure; checks raise VerificationFailure; answer listing
    raises RevealFailure. Malformed replies fall back to safe defaults.
    """

    def __init__(self, text_model: str = config.TEXT_MODEL, image_model: str = config.IMAGE_MODEL):
        self.text_model = text_model
        self.image_model = image_model

    def _llm_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"max_retries": 2}
        if config.GOOGLE_API_KEY:
            kwargs["google_api_key"] = config.GOOGLE_API_KEY
        return kwargs

    @cached_property
    def text_llm(self) -> ChatGoogleGenerativeAI:
        return ChatGoogleGenerativeAI(
            model=self.text_model,
            temperature=0.3,
            response_mime_type="application/json",
            **self._llm_kwargs(),
        )

    @cached_property
    def image_llm(self) -> ChatGoogleGenerativeAI:
        return ChatGoogleGenerativeAI(model=self.image_model, **self._llm_kwargs())

    # ---- low level ----

    async def _ask_json(self, parts: List[Dict[str, Any]], context: str) -> Any:
        resp = await self.text_llm.ainvoke([HumanMessage(content=parts)])
        return _parse_json(_message_text(resp), context)

    async def _draw(self, parts: List[Dict[str, Any]], context: str) -> str:
        try:
            resp = await self.image_llm.ainvoke(
                [HumanMessage(content=parts)],
                generation_config={"response_modalities": ["TEXT", "IMAGE"]},
            )
        except Exception as e:
            logger.error("Image generation error in context=%s: %r", context, e, exc_info=True)
            raise GenerationFailure(f"Image generation failed ({context})") from e

        image = _extract_image_base64(resp)
        if not image:
            logger.warning("Image model returned no image: context=%s", context)
            raise GenerationFailure(f"No image returned ({context})")
        return image

    async def _verify(self, parts: List[Dict[str, Any]], context: str) -> CheckResult:
        try:
            data = await self._ask_json(parts, context)
        except Exception as e:
            logger.error("LLM error in context=%s: %r", context, e, exc_info=True)
            raise VerificationFailure(context) from e
        return _check_result(data)

    async def _list(self, parts: List[Dict[str, Any]], key: str, context: str) -> List[RevealedItem]:
        try:
            data = await self._ask_json(parts, context)
        except Exception as e:
            logger.error("LLM error in context=%s: %r", context, e, exc_info=True)
            raise RevealFailure(context) from e
        items = _coerce_items(data, key)
        logger.info("Answer list fetched: context=%s items=%d", context, len(items))
        return items

    # ---- generation ----

    async def generate_comparison_puzzle(self, subject: str) -> ComparisonContent:
        base_prompt = (
            f"Generate a highly detailed illustration of {subject}. Modern vector art style. "
            "Clean, multiple elements, clear background. NO text, NO watermarks."
        )
        original = await self._draw([_text_part(base_prompt)], context="generate-diff-base")

        modification_prompt = (
            "Edit this image to introduce 6 to 8 clever differences. Avoid simple color swaps. "
            "Add/remove objects, change shapes, alter expressions, change textures. "
            "Range from medium to challenging. NO text."
        )
        modified = await self._draw(
            [_image_part(original), _text_part(modification_prompt)],
            context="generate-diff-modified",
        )
        return ComparisonContent(image_a=original, image_b=modified)

    async def generate_anomaly_puzzle(self, subject: str) -> AnomalyContent:
        prompt = f"""Generate a single, high-quality, professional illustration of {subject}.
The image MUST contain 5 to 7 intentional 'logical errors' or 'surreal glitches'.
Examples of errors: a clock with 13 numbers, a person wearing two different shoes, a shadow pointing the wrong way, gravity-defying liquids, an animal with extra limbs, or a tree with fruit from a different species.
The errors should be subtle and integrated naturally into the artistic style.
NO text labels, NO watermarks. Style: Modern digital painting."""
        image = await self._draw([_text_part(prompt)], context="generate-wrong")
        return AnomalyContent(image=image)

    async def generate_logic_puzzle(self, topic: str) -> LogicContent:
        prompt = f"""Generate a unique, challenging logical puzzle or situational IQ test.
Topic: {topic or DEFAULT_LOGIC_TOPIC}.
The puzzle should have a clear, definitive solution.
Provide a title, the question text, and the detailed solution/explanation.
IMPORTANT: DO NOT USE ANY MARKDOWN FORMATTING (like **bolding**) in the question or solution. Provide clean, raw text only.
Return JSON with keys "title", "question" and "solution"."""
        try:
            data = await self._ask_json([_text_part(prompt)], context="generate-logic")
        except Exception as e:
            logger.error("LLM error in context=generate-logic: %r", e, exc_info=True)
            raise GenerationFailure("Logic puzzle generation failed") from e

        data = data if isinstance(data, dict) else {}
        question = clean_text(str(data.get("question") or "")).strip()
        if not question:
            raise GenerationFailure("Logic puzzle came back without a question")

        return LogicContent(
            title=clean_text(str(data.get("title") or "")).strip() or "Logic Test",
            question=question,
            solution=clean_text(str(data.get("solution") or "")).strip() or NO_SOLUTION_TEXT,
        )

    # ---- verification ----

    async def verify_comparison_guess(
        self, image_a: str, image_b: str, guess: str, already_found: Sequence[str]
    ) -> CheckResult:
        prompt = f"""I have two images with 6 to 8 complex differences.
The user guessed: "{guess}".
Previously found differences: {json.dumps(list(already_found))}.
Check if the user's guess describes an actual difference.
If it describes one of the previously found differences, set alreadyFound to true.
Return JSON with correct (boolean), alreadyFound (boolean) and explanation (string)."""
        parts = [
            _text_part("Image 1 (Original):"),
            _image_part(image_a),
            _text_part("Image 2 (Modified):"),
            _image_part(image_b),
            _text_part(prompt),
        ]
        return await self._verify(parts, context="check-difference")

    async def verify_anomaly_guess(
        self, image: str, guess: str, already_found: Sequence[str]
    ) -> CheckResult:
        prompt = f"""This image contains several intentional logical errors/anomalies.
The user guessed that "{guess}" is wrong with the image.
Previously found errors: {json.dumps(list(already_found))}.

1. Identify all intentional errors in the image.
2. Check if the user's guess accurately identifies one of these errors.
3. Return correct=true if they found a new error.
4. Return alreadyFound=true if they found one that was already listed.
5. If wrong, give a very subtle hint.
Return JSON with correct, alreadyFound and explanation."""
        return await self._verify([_image_part(image), _text_part(prompt)], context="check-wrong")

    async def verify_logic_guess(self, question: str, guess: str) -> CheckResult:
        prompt = f"""Question: "{question}"
User's Answer: "{guess}"

Evaluate if the user's answer is logically correct or sufficiently identifies the solution to the question.
Be reasonable with semantic variations.
IMPORTANT: DO NOT USE ANY MARKDOWN FORMATTING (like **bolding**) in the explanation. Provide clean, raw text only.
Return JSON with correct (boolean) and explanation (string)."""
        return await self._verify([_text_part(prompt)], context="check-logic")

    # ---- answer lists ----

    async def list_comparison_differences(self, image_a: str, image_b: str) -> List[RevealedItem]:
        prompt = """List 6-8 distinct differences between these two images.
Provide id, description (max 15 words), and box_2d [ymin, xmin, ymax, xmax] on a 0-1000 scale.
Return JSON of the form {"differences": [...]}."""
        parts = [
            _text_part("Image 1 (Original):"),
            _image_part(image_a),
            _text_part("Image 2 (Modified):"),
            _image_part(image_b),
            _text_part(prompt),
        ]
        return await self._list(parts, key="differences", context="get-differences")

    async def list_anomalies(self, image: str) -> List[RevealedItem]:
        prompt = """Analyze this image and list all the intentional 'logical errors' or 'anomalies'.
For each error:
1. 'id' (integer)
2. 'description' (short)
3. 'box_2d' [ymin, xmin, ymax, xmax] (0-1000)
Return JSON of the form {"errors": [...]}."""
        return await self._list([_image_part(image), _text_part(prompt)], key="errors", context="get-errors")
