"""Core domain models.

Every piece of model output is turned into one of the DomainEvent variants
below before the game engine sees it; raw dicts never travel further than
the parser. GameState is the only mutable object and is owned by the
session. Pydantic is used for validation and serialisation at every data
boundary.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_AGE = 18
LAST_TURN_AGE = MAX_AGE - 1
RESOURCE_MIN = 0
RESOURCE_MAX = 10
OPTION_SLOTS = 4


def clamp(value: Any, low: int = RESOURCE_MIN, high: int = RESOURCE_MAX) -> int:
    """Coerce to int and clamp into [low, high]."""
    return max(low, min(high, int(value)))


class RequestKind(str, Enum):
    """One request kind per DomainEvent variant the model can be asked for."""

    INITIAL_STATE = "initial_state"
    QUESTION = "question"
    OUTCOME = "outcome"
    ENDING = "ending"
    BANKRUPTCY = "bankruptcy"


class Phase(str, Enum):
    WELCOME = "welcome"
    INITIALIZING = "initializing"
    AWAITING_CHOICE = "awaiting_choice"
    AWAITING_OUTCOME = "awaiting_outcome"
    ENDING = "ending"
    ENDED = "ended"


# ---------------------------------------------------------------------------
# Questions and options
# ---------------------------------------------------------------------------

class Option(BaseModel):
    """One answer to a question. Cost is 0–10; out-of-range costs are clamped."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    text: str
    cost: int = 0
    finance_delta: int | None = Field(default=None, alias="financeDelta")
    marital_delta: int | None = Field(default=None, alias="maritalDelta")
    is_recovery: bool = Field(default=False, alias="isRecovery")

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @field_validator("cost", mode="before")
    @classmethod
    def _clamp_cost(cls, v: Any) -> int:
        return 0 if v is None else clamp(v)

    @field_validator("is_recovery", mode="before")
    @classmethod
    def _none_is_false(cls, v: Any) -> Any:
        return False if v is None else v


class Question(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    text: str = Field(alias="question")
    options: list[Option] = Field(min_length=1)
    is_extreme_event: bool = Field(default=False, alias="isExtremeEvent")

    @field_validator("is_extreme_event", mode="before")
    @classmethod
    def _none_is_false(cls, v: Any) -> Any:
        return False if v is None else v


# ---------------------------------------------------------------------------
# Player / child profiles
# ---------------------------------------------------------------------------

def _normalise_gender(v: Any) -> str:
    text = str(v or "").strip().lower()
    if text.startswith("f") or text in ("woman", "girl", "mother"):
        return "female"
    if text.startswith("m") or text in ("man", "boy", "father"):
        return "male"
    return "nonBinary"


class Player(BaseModel):
    gender: Literal["male", "female", "nonBinary"] = "female"
    age: int = 30

    @field_validator("gender", mode="before")
    @classmethod
    def _gender(cls, v: Any) -> str:
        return _normalise_gender(v)


class Child(BaseModel):
    name: str
    gender: Literal["male", "female"] = "male"
    age: int = 0

    @field_validator("gender", mode="before")
    @classmethod
    def _gender(cls, v: Any) -> str:
        return "female" if _normalise_gender(v) == "female" else "male"


# ---------------------------------------------------------------------------
# Domain events — the only things the parser hands to the engine
# ---------------------------------------------------------------------------

WealthTier = Literal["poor", "middle", "wealthy"]


class InitialState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["initial_state"] = "initial_state"
    player: Player
    child: Child
    player_description: str = Field(default="", alias="playerDescription")
    child_description: str = Field(default="", alias="childDescription")
    wealth_tier: WealthTier | None = Field(default=None, alias="wealthTier")
    finance: int | None = None
    marital: int | None = None
    is_single_parent: bool = Field(default=False, alias="isSingleParent")

    @field_validator("wealth_tier", mode="before")
    @classmethod
    def _known_tier(cls, v: Any) -> Any:
        return v if v in ("poor", "middle", "wealthy") else None

    @field_validator("finance", "marital", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> int | None:
        return None if v is None else clamp(v)

    @field_validator("player_description", "child_description", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class QuestionEvent(BaseModel):
    kind: Literal["question"] = "question"
    question: Question


class Outcome(BaseModel):
    kind: Literal["outcome"] = "outcome"
    text: str
    is_ending: bool = False


class OutcomeWithNextQuestion(BaseModel):
    kind: Literal["outcome_with_next_question"] = "outcome_with_next_question"
    outcome: str
    next_question: Question
    is_ending: bool = False


class Ending(BaseModel):
    kind: Literal["ending"] = "ending"
    child_status_at_18: str
    parent_evaluation: str
    future_outlook: str
    summary_narrative: str = ""
    story_style: str | None = None


class BankruptcyBranch(BaseModel):
    """Outcome of a choice that exhausted the family's money.

    The forced question always offers exactly one zero-cost recovery option.
    """

    kind: Literal["bankruptcy"] = "bankruptcy"
    outcome: str
    forced_single_option: Question

    @field_validator("forced_single_option")
    @classmethod
    def _single_free_option(cls, q: Question) -> Question:
        if len(q.options) != 1:
            raise ValueError("bankruptcy question must have exactly one option")
        if q.options[0].cost != 0:
            raise ValueError("bankruptcy option must cost 0")
        return q


DomainEvent = Annotated[
    Union[
        InitialState,
        QuestionEvent,
        Outcome,
        OutcomeWithNextQuestion,
        Ending,
        BankruptcyBranch,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Game state
# ---------------------------------------------------------------------------

class HistoryEntry(BaseModel):
    age: int = Field(ge=0, le=LAST_TURN_AGE)
    question: str
    choice: str
    outcome: str


class GameState(BaseModel):
    """Everything about one game that must survive a reload.

    finance and marital are clamped into [0, 10] on construction and on every
    assignment.
    """

    model_config = ConfigDict(validate_assignment=True)

    player: Player
    child: Child
    player_description: str = ""
    child_description: str = ""
    wealth_tier: WealthTier | None = None
    special_requirements: str = ""
    age: int = Field(default=0, ge=0, le=MAX_AGE)
    finance: int = 5
    marital: int = 5
    is_single_parent: bool = False
    is_bankrupt: bool = False
    history: list[HistoryEntry] = Field(default_factory=list)
    phase: Phase = Phase.AWAITING_CHOICE

    @field_validator("finance", "marital", mode="before")
    @classmethod
    def _clamp_resource(cls, v: Any) -> int:
        return clamp(v)


class PendingChoice(BaseModel):
    """A choice that was sent to the model but whose outcome has not arrived."""

    question_text: str
    option_id: str
    option_text: str


class Checkpoint(BaseModel):
    state: GameState
    current_question: Question | None = None
    pending_choice: PendingChoice | None = None
    feedback_text: str | None = None
    ending: Ending | None = None


# ---------------------------------------------------------------------------
# Token usage
# ---------------------------------------------------------------------------

class Usage(BaseModel):
    """Token counts reported by the provider for one call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class TokenUsageStats(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    api_calls: int = 0
    estimated_cost: float = 0.0


# ---------------------------------------------------------------------------
# What the UI layer reads
# ---------------------------------------------------------------------------

class SessionView(BaseModel):
    phase: Phase
    state: GameState | None = None
    current_question: Question | None = None
    feedback_text: str | None = None
    renderable_text: str = ""
    is_streaming: bool = False
    error: str | None = None
    ending: Ending | None = None
    last_parse_tier: int | None = None
    pending_choice: PendingChoice | None = None
