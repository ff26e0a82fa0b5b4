# backend/models.py
from datetime import datetime
from enum import Enum
from typing import Annotated, FrozenSet, List, Literal, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class GameMode(str, Enum):
    DIFF = "DIFF"  # two-image spot the difference
    WRONG = "WRONG"  # single image, find the anomalies
    LOGIC = "LOGIC"  # text riddle


# Points per correct, non-duplicate find
POINTS_PER_FIND = {
    GameMode.DIFF: 1,
    GameMode.WRONG: 2,
    GameMode.LOGIC: 10,
}


class RoundPhase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    ACTIVE = "active"
    REVEALING = "revealing"
    OVER = "over"


class CompletionStatus(str, Enum):
    TIMEOUT = "timeout"
    COMPLETED = "completed"
    GIVEN_UP = "given_up"


class TimerZone(str, Enum):
    NORMAL = "normal"
    CAUTION = "caution"
    DANGER = "danger"


class RevealedItem(BaseModel):
    """One authoritative difference/anomaly. box_2d is [ymin, xmin, ymax, xmax] on a 0-1000 grid."""

    model_config = ConfigDict(frozen=True)

    id: int
    description: str
    box_2d: Tuple[int, int, int, int]


# --- Round content, one variant per mode ---

class ComparisonContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["DIFF"] = "DIFF"
    image_a: str  # base64 png, original
    image_b: str  # base64 png, modified


class AnomalyContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["WRONG"] = "WRONG"
    image: str


class LogicContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["LOGIC"] = "LOGIC"
    title: str
    question: str
    solution: str


RoundContent = Annotated[
    Union[ComparisonContent, AnomalyContent, LogicContent],
    Field(discriminator="kind"),
]


class RoundState(BaseModel):
    """
    The whole live round. Immutable: every transition in game.py
    returns a new copy instead of touching this one.
    """

    model_config = ConfigDict(frozen=True)

    round_id: int = 0
    mode: GameMode = GameMode.DIFF
    subject: str = ""
    content: Optional[RoundContent] = None
    phase: RoundPhase = RoundPhase.IDLE
    score: int = 0
    found_text_answers: Tuple[str, ...] = ()
    found_click_ids: FrozenSet[int] = frozenset()
    # Typed guesses the live verifier did not accept; re-checked at reveal
    unconfirmed_answers: Tuple[str, ...] = ()
    time_remaining: int = 0
    zone: TimerZone = TimerZone.NORMAL
    # Pre-fetched during loading; backs hit-testing, never shown before reveal
    answer_key: Tuple[RevealedItem, ...] = ()
    revealed_items: Tuple[RevealedItem, ...] = ()
    retro_points: int = 0
    logic_solution: Optional[str] = None
    completion_status: Optional[CompletionStatus] = None
    error: Optional[str] = None


# --- Verification / evaluation ---

class CheckResult(BaseModel):
    """Verdict from the external verifier for one guess."""

    model_config = ConfigDict(populate_by_name=True)

    correct: bool = False
    already_found: bool = Field(
        default=False,
        validation_alias=AliasChoices("already_found", "alreadyFound"),
    )
    explanation: str = ""


class AnswerVerdict(BaseModel):
    answer: str
    correct: bool
    already_found: bool
    explanation: str
    points: int = 0


class EvaluationCounts(BaseModel):
    correct: int = 0
    duplicate: int = 0
    incorrect: int = 0


class EvaluationResult(BaseModel):
    verdicts: List[AnswerVerdict] = []
    counts: EvaluationCounts = Field(default_factory=EvaluationCounts)
    points: int = 0
    message: str = ""
    feedback_type: Literal["success", "info", "error"] = "info"
    # False when the round moved on while the verifier was thinking
    applied: bool = True
    round_over: bool = False


# --- Click / hit-testing ---

class Point(BaseModel):
    x: float
    y: float


class ImageBox(BaseModel):
    """Where the image is drawn on screen, in pixels."""

    left: float
    top: float
    width: float = Field(gt=0)
    height: float = Field(gt=0)


class HitOutcome(str, Enum):
    NEW_FIND = "new_find"
    DUPLICATE = "duplicate"
    MISS = "miss"


class HitResult(BaseModel):
    outcome: HitOutcome
    item_id: Optional[int] = None
    rel_x: float
    rel_y: float


class ClickResult(BaseModel):
    ignored: bool = False
    outcome: Optional[HitOutcome] = None
    item_id: Optional[int] = None
    points_delta: int = 0
    message: str = ""
    round_over: bool = False


# --- API requests ---

class StartRoundRequest(BaseModel):
    # We normalize sessionId/session_id in app.py before validation
    session_id: Optional[str] = None
    mode: GameMode = GameMode.DIFF
    subject: str = ""


class SessionRequest(BaseModel):
    session_id: str


class GuessRequest(BaseModel):
    session_id: str
    guess: str


class ClickRequest(BaseModel):
    session_id: str
    x: float
    y: float
    image: ImageBox
    press: Optional[Point] = None


# --- API responses ---

class RoundView(BaseModel):
    """What the browser sees of a RoundState."""

    session_id: str
    round_id: int
    mode: GameMode
    subject: str
    phase: RoundPhase
    score: int
    time_remaining: int
    zone: TimerZone
    found_text_answers: List[str]
    found_click_ids: List[int]
    total_items: Optional[int] = None
    image_a: Optional[str] = None
    image_b: Optional[str] = None
    image: Optional[str] = None
    logic_title: Optional[str] = None
    logic_question: Optional[str] = None
    logic_solution: Optional[str] = None
    revealed_items: List[RevealedItem] = []
    retro_points: int = 0
    completion_status: Optional[CompletionStatus] = None
    error: Optional[str] = None


class ModeInfo(BaseModel):
    mode: GameMode
    points_per_find: int
    click_to_find: bool
    round_seconds: int


# --- History ---

class RoundRecord(BaseModel):
    """Everything persisted about a finished round."""

    mode: GameMode
    subject: str
    score: int
    found_items: List[str]
    time_remaining: int
    completion_status: CompletionStatus
    logic_question: Optional[str] = None
    logic_solution: Optional[str] = None
    logic_title: Optional[str] = None
    revealed_items: List[RevealedItem] = []


class PersistResult(BaseModel):
    success: bool
    session_id: Optional[int] = None
    error: Optional[str] = None


class StoredDifference(BaseModel):
    difference_id: int
    description: str
    box_2d: Tuple[int, int, int, int]


class StoredAnswer(BaseModel):
    answer_text: str
    points_awarded: int
    found_at: datetime


class RoundSummary(BaseModel):
    id: int
    user_id: str
    game_mode: GameMode
    subject: str
    score: int
    total_possible: int
    found_count: int
    created_at: datetime
    ended_at: datetime
    time_remaining: int
    completion_status: CompletionStatus
    logic_question: Optional[str] = None
    logic_solution: Optional[str] = None
    logic_title: Optional[str] = None
    differences: List[StoredDifference] = []
    user_answers: List[StoredAnswer] = []


class HistoryResponse(BaseModel):
    sessions: List[RoundSummary]
