"""Resilient decoding of complete model output into domain events.

The model is asked for one JSON object but often returns something close to
one: wrapped in markdown fences, with stray control characters, with the
closing brace written as a bracket, or cut off half way. parse() runs an
ordered list of decode attempts and returns the first that yields a usable
event for the requested kind. It never raises; the last tier is a
hard-coded default.

    1 FENCED      strip ``` fences and whitespace, decode
    2 SANITIZED   drop control characters, trailing ] -> }, strict decode
    3 ASCII_ONLY  printable ASCII only, invalid escapes removed
    4 SPAN        decode the outermost balanced {...} span only
    5 FIELDS      regex out known fields, placeholders for the rest
    6 DEFAULT     safe canned event for the kind

Results from tier 3 onward are flagged ``degraded``; the engine keeps going
but the UI can tell the player the text may read oddly.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from childsim.jsontext import (
    ascii_only,
    balanced_span,
    close_trailing_bracket,
    drop_control_chars,
    drop_trailing_commas,
    object_body,
    option_items,
    read_bool_field,
    read_int_field,
    read_string_field,
    strip_fences,
)
from childsim.models import (
    OPTION_SLOTS,
    BankruptcyBranch,
    Child,
    DomainEvent,
    Ending,
    InitialState,
    Option,
    Outcome,
    OutcomeWithNextQuestion,
    Player,
    Question,
    QuestionEvent,
    RequestKind,
)

logger = logging.getLogger(__name__)


class Tier(IntEnum):
    FENCED = 1
    SANITIZED = 2
    ASCII_ONLY = 3
    SPAN = 4
    FIELDS = 5
    DEFAULT = 6


@dataclass(frozen=True)
class ParseResult:
    event: DomainEvent
    tier: Tier

    @property
    def degraded(self) -> bool:
        return self.tier > Tier.SANITIZED


# ---------------------------------------------------------------------------
# Placeholders and defaults — deliberately artificial so they are easy to spot
# ---------------------------------------------------------------------------

PLACEHOLDER_NAME = "(unnamed)"
PLACEHOLDER_PLAYER_AGE = 30
PLACEHOLDER_PLAYER_DESCRIPTION = "(no description of the parent was received)"
PLACEHOLDER_CHILD_DESCRIPTION = "(no description of the child was received)"
PLACEHOLDER_QUESTION = "(the question did not arrive intact)"
PLACEHOLDER_OUTCOME = "(the outcome did not arrive intact)"
PLACEHOLDER_SECTION = "(this part of the ending did not arrive intact)"

DEFAULT_OPTIONS = [
    Option(id="A", text="Talk it through together", cost=0),
    Option(id="B", text="Spend a little money to help", cost=3),
    Option(id="C", text="Ask family and friends for advice", cost=1),
    Option(id="D", text="Let things take their course", cost=0),
]

DEFAULT_RECOVERY_QUESTION = Question(
    text="The money is gone. What now?",
    options=[
        Option(
            id="A",
            text="Pick up extra work and rebuild the family budget",
            cost=0,
            is_recovery=True,
        )
    ],
)


def _default_event(kind: RequestKind) -> DomainEvent:
    if kind is RequestKind.INITIAL_STATE:
        return InitialState(
            player=Player(gender="female", age=PLACEHOLDER_PLAYER_AGE),
            child=Child(name=PLACEHOLDER_NAME, gender="male"),
            player_description=PLACEHOLDER_PLAYER_DESCRIPTION,
            child_description=PLACEHOLDER_CHILD_DESCRIPTION,
        )
    if kind is RequestKind.QUESTION:
        return QuestionEvent(
            question=Question(
                text="Your child is growing up and needs you again.",
                options=list(DEFAULT_OPTIONS),
            )
        )
    if kind is RequestKind.BANKRUPTCY:
        return BankruptcyBranch(
            outcome="The bills have caught up with the family.",
            forced_single_option=DEFAULT_RECOVERY_QUESTION,
        )
    if kind is RequestKind.ENDING:
        return Ending(
            child_status_at_18="Your child has grown up.",
            parent_evaluation="You did what you could.",
            future_outlook="The road ahead is open.",
        )
    return Outcome(text="Time passes and the family carries on.")


# ---------------------------------------------------------------------------
# Tiers 1–4: whole-text decoders. Each returns a dict or None.
# ---------------------------------------------------------------------------

def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        return None
    return data if isinstance(data, dict) else None


def _sanitize(text: str) -> str:
    return close_trailing_bracket(drop_control_chars(strip_fences(text)))


def _decode_fenced(raw: str) -> dict[str, Any] | None:
    return _loads_object(strip_fences(raw))


def _decode_sanitized(raw: str) -> dict[str, Any] | None:
    return _loads_object(_sanitize(raw))


def _decode_ascii_only(raw: str) -> dict[str, Any] | None:
    return _loads_object(ascii_only(_sanitize(raw)))


def _decode_span(raw: str) -> dict[str, Any] | None:
    span = balanced_span(raw)
    if span is None:
        return None
    body = drop_trailing_commas(drop_control_chars(raw[span[0]:span[1]]))
    data = _loads_object(body)
    if data is None:
        data = _loads_object(ascii_only(body))
    return data


_DECODERS: list[tuple[Tier, Callable[[str], dict[str, Any] | None]]] = [
    (Tier.FENCED, _decode_fenced),
    (Tier.SANITIZED, _decode_sanitized),
    (Tier.ASCII_ONLY, _decode_ascii_only),
    (Tier.SPAN, _decode_span),
]


# ---------------------------------------------------------------------------
# Shape conversion: decoded dict -> event. Raise ValueError/TypeError on a
# shape mismatch so the next tier gets a chance.
# ---------------------------------------------------------------------------

def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _ending_flag(data: dict[str, Any]) -> bool:
    return _first(data, "isEnding", "is_ending", "ending") is True


def _to_question(data: Any) -> Question:
    if not isinstance(data, dict):
        raise TypeError(f"question must be an object, got {type(data).__name__}")
    question = Question.model_validate(data)
    if len(question.options) > OPTION_SLOTS:
        question = question.model_copy(update={"options": question.options[:OPTION_SLOTS]})
    return question


def _to_recovery_question(data: Any) -> Question:
    """Normalise whatever arrived into one zero-cost recovery option."""
    try:
        question = _to_question(data)
    except (ValueError, TypeError):
        return DEFAULT_RECOVERY_QUESTION
    option = question.options[0].model_copy(
        update={"cost": 0, "finance_delta": None, "is_recovery": True}
    )
    return question.model_copy(update={"options": [option]})


def _outcome_text(data: dict[str, Any]) -> str:
    text = data.get("outcome")
    if not isinstance(text, str) or not text.strip():
        raise ValueError("missing outcome text")
    return text


def _convert_initial_state(data: dict[str, Any]) -> DomainEvent:
    return InitialState.model_validate(data)


def _convert_question(data: dict[str, Any]) -> DomainEvent:
    return QuestionEvent(question=_to_question(data))


def _convert_outcome(data: dict[str, Any]) -> DomainEvent:
    text = _outcome_text(data)
    is_ending = _ending_flag(data)
    bundled = _first(data, "nextQuestion", "next_question")
    if bundled is not None:
        try:
            question = _to_question(bundled)
        except (ValueError, TypeError) as e:
            logger.warning("dropping malformed bundled question: %s", e)
        else:
            return OutcomeWithNextQuestion(outcome=text, next_question=question, is_ending=is_ending)
    return Outcome(text=text, is_ending=is_ending)


def _convert_bankruptcy(data: dict[str, Any]) -> DomainEvent:
    text = _outcome_text(data)
    bundled = _first(data, "nextQuestion", "next_question", "question")
    return BankruptcyBranch(outcome=text, forced_single_option=_to_recovery_question(bundled))


_ENDING_FIELDS = {
    "child_status_at_18": ("child_status_at_18", "childStatusAt18"),
    "parent_evaluation": ("parent_evaluation", "parentEvaluation"),
    "future_outlook": ("future_outlook", "futureOutlook"),
    "summary_narrative": ("summary_narrative", "summaryNarrative", "summary"),
    "story_style": ("story_style", "storyStyle"),
}
_REQUIRED_ENDING_FIELDS = ("child_status_at_18", "parent_evaluation", "future_outlook")


def _convert_ending(data: dict[str, Any]) -> DomainEvent:
    values = {name: _first(data, *keys) for name, keys in _ENDING_FIELDS.items()}
    missing = [name for name in _REQUIRED_ENDING_FIELDS if not isinstance(values[name], str)]
    if missing:
        raise ValueError(f"ending is missing {', '.join(missing)}")
    return Ending.model_validate({k: v for k, v in values.items() if v is not None})


_CONVERTERS: dict[RequestKind, Callable[[dict[str, Any]], DomainEvent]] = {
    RequestKind.INITIAL_STATE: _convert_initial_state,
    RequestKind.QUESTION: _convert_question,
    RequestKind.OUTCOME: _convert_outcome,
    RequestKind.BANKRUPTCY: _convert_bankruptcy,
    RequestKind.ENDING: _convert_ending,
}


# ---------------------------------------------------------------------------
# Tier 5: field-level extraction from text that would not decode.
# Each returns None when no known field was found.
# ---------------------------------------------------------------------------

def _field(text: str, key: str) -> str | None:
    found = read_string_field(text, key)
    return found[0] if found else None


def _fields_initial_state(text: str) -> DomainEvent | None:
    player_body = object_body(text, "player") or ""
    child_body = object_body(text, "child") or ""
    player_gender = _field(player_body, "gender")
    player_age = read_int_field(player_body, "age")
    child_name = _field(child_body, "name") or _field(text, "name")
    child_gender = _field(child_body, "gender")
    player_description = _field(text, "playerDescription")
    child_description = _field(text, "childDescription")

    found = (player_gender, player_age, child_name, child_gender, player_description, child_description)
    if all(value is None for value in found):
        return None
    return InitialState(
        player=Player(
            gender=player_gender or "female",
            age=player_age if player_age is not None else PLACEHOLDER_PLAYER_AGE,
        ),
        child=Child(name=child_name or PLACEHOLDER_NAME, gender=child_gender or "male"),
        player_description=player_description or PLACEHOLDER_PLAYER_DESCRIPTION,
        child_description=child_description or PLACEHOLDER_CHILD_DESCRIPTION,
    )


def _fields_options(text: str) -> list[Option]:
    options = [
        Option(id=option_id, text=option_text, cost=cost or 0)
        for option_id, option_text, cost in option_items(text)
    ]
    return options[:OPTION_SLOTS]


def _fields_question(text: str) -> DomainEvent | None:
    question_text = _field(text, "question")
    options = _fields_options(text)
    if question_text is None and not options:
        return None
    return QuestionEvent(
        question=Question(
            text=question_text or PLACEHOLDER_QUESTION,
            options=options or list(DEFAULT_OPTIONS),
        )
    )


def _fields_outcome(text: str) -> DomainEvent | None:
    outcome = _field(text, "outcome")
    if outcome is None:
        return None
    is_ending = bool(read_bool_field(text, "isEnding") or read_bool_field(text, "is_ending"))
    return Outcome(text=outcome, is_ending=is_ending)


def _fields_bankruptcy(text: str) -> DomainEvent | None:
    outcome = _field(text, "outcome")
    if outcome is None:
        return None
    options = _fields_options(text)
    question = DEFAULT_RECOVERY_QUESTION
    if options:
        question = Question(
            text=_field(text, "question") or DEFAULT_RECOVERY_QUESTION.text,
            options=[Option(id=options[0].id, text=options[0].text, cost=0, is_recovery=True)],
        )
    return BankruptcyBranch(outcome=outcome, forced_single_option=question)


def _fields_ending(text: str) -> DomainEvent | None:
    values: dict[str, str] = {}
    for name, keys in _ENDING_FIELDS.items():
        for key in keys:
            value = _field(text, key)
            if value is not None:
                values[name] = value
                break
    if not values:
        return None
    for name in _REQUIRED_ENDING_FIELDS:
        values.setdefault(name, PLACEHOLDER_SECTION)
    return Ending.model_validate(values)


_FIELD_EXTRACTORS: dict[RequestKind, Callable[[str], DomainEvent | None]] = {
    RequestKind.INITIAL_STATE: _fields_initial_state,
    RequestKind.QUESTION: _fields_question,
    RequestKind.OUTCOME: _fields_outcome,
    RequestKind.BANKRUPTCY: _fields_bankruptcy,
    RequestKind.ENDING: _fields_ending,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _result(event: DomainEvent, tier: Tier, kind: RequestKind) -> ParseResult:
    if tier > Tier.SANITIZED:
        logger.warning("degraded parse kind=%s tier=%s", kind.value, tier.name)
    else:
        logger.debug("parsed kind=%s tier=%s", kind.value, tier.name)
    return ParseResult(event=event, tier=tier)


def parse(raw: str | None, kind: RequestKind) -> ParseResult:
    """Turn a complete model response into the event expected for ``kind``.

    Never raises. The returned tier is the first one that produced a usable
    event; tier 6 always succeeds.
    """
    text = raw if isinstance(raw, str) else ""
    convert = _CONVERTERS[kind]

    for tier, decode in _DECODERS:
        data = decode(text)
        if data is None:
            logger.debug("tier %s could not decode kind=%s", tier.name, kind.value)
            continue
        try:
            event = convert(data)
        except (ValueError, TypeError) as e:
            logger.debug("tier %s decoded but shape is wrong for kind=%s: %s", tier.name, kind.value, e)
            continue
        return _result(event, tier, kind)

    try:
        event = _FIELD_EXTRACTORS[kind](strip_fences(text))
    except (ValueError, TypeError) as e:
        logger.debug("field extraction failed kind=%s: %s", kind.value, e)
        event = None
    if event is not None:
        return _result(event, Tier.FIELDS, kind)

    return _result(_default_event(kind), Tier.DEFAULT, kind)
