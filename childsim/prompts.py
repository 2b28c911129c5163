"""Handlebars prompt rendering, one template per request kind.

build_context() flattens the game state into template variables and
build_messages() renders them into a system + user message pair. The
wording only has to get a well-formed JSON object back; the parser copes
with the rest.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pybars

from childsim.llm import ChatMessage
from childsim.models import MAX_AGE, GameState, Option, Question, RequestKind


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} — iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
}


# ── Templates ────────────────────────────────────────────

SYSTEM_TEMPLATE = """\
You narrate an interactive story about raising a child from birth to the age of {{max_age}}.
Write short, concrete scenes. Do not lecture the player.
Answer with a single JSON object and nothing else: no markdown fences, no
control characters, and every quote inside a string escaped.
{{#if special_requirements}}
The player asked for this at the start of the game: {{{special_requirements}}}
{{/if}}"""

STATE_TEMPLATE = """\
Finance: {{finance}}/10. Relationship: {{marital}}/10.{{#if is_single_parent}} The parent is raising the child alone.{{/if}}{{#if is_bankrupt}} The family has been bankrupt.{{/if}}
Parent: {{{player_description}}}
Child: {{{child_name}}}, {{age}} years old. {{{child_description}}}
{{#if history}}
What happened so far:
{{#last history 8}}- Age {{age}}: {{{question}}} They chose: {{{choice}}}. {{{outcome}}}
{{/last}}{{/if}}"""

TEMPLATES: dict[RequestKind, str] = {
    RequestKind.INITIAL_STATE: """\
Invent the family for a new game.
{{#if special_requirements}}Take this request into account: {{{special_requirements}}}
{{/if}}
Reply with:
{"player": {"gender": "male|female|nonBinary", "age": 20-45},
 "child": {"name": "...", "gender": "male|female"},
 "playerDescription": "...", "childDescription": "...",
 "wealthTier": "poor|middle|wealthy"}""",

    RequestKind.QUESTION: """\
{{{state}}}
Write the situation the family faces when the child is {{age}}.
Offer exactly 4 options, each with a cost from 0 to 10 that the family budget will carry.
Reply with:
{"question": "...", "options": [{"id": "A", "text": "...", "cost": 0}, ...], "isExtremeEvent": false}""",

    RequestKind.OUTCOME: """\
{{{state}}}
The question at age {{age}} was: {{{question}}}
The parent chose: {{{choice}}}
Describe what came of it.
{{#if with_next_question}}
Then write the situation for age {{next_age}} with exactly 4 options, each with a cost from 0 to 10.
Reply with:
{"outcome": "...", "nextQuestion": {"question": "...", "options": [{"id": "A", "text": "...", "cost": 0}, ...]}, "isEnding": false}
{{else}}
Reply with:
{"outcome": "...", "isEnding": true}
{{/if}}""",

    RequestKind.BANKRUPTCY: """\
{{{state}}}
The question at age {{age}} was: {{{question}}}
The parent chose: {{{choice}}}
That choice has used up the last of the family's money. Describe the fallout,
then offer a single way back that costs nothing.
Reply with:
{"outcome": "...", "nextQuestion": {"question": "...", "options": [{"id": "A", "text": "...", "cost": 0, "isRecovery": true}]}}""",

    RequestKind.ENDING: """\
{{{state}}}
The child has turned {{max_age}}. Close the story.
Reply with:
{"child_status_at_18": "...", "parent_evaluation": "...", "future_outlook": "...", "summary_narrative": "..."}""",
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def build_context(
    state: GameState | None,
    *,
    question: Question | None = None,
    choice: Option | None = None,
    with_next_question: bool = True,
    special_requirements: str = "",
) -> dict[str, Any]:
    """Assemble template variables from the game state.

    Returns a dict suitable for passing to build_messages().
    """
    ctx: dict[str, Any] = {
        "max_age": MAX_AGE,
        "special_requirements": special_requirements,
    }
    if state is None:
        return ctx

    ctx.update({
        "special_requirements": special_requirements or state.special_requirements,
        "age": state.age,
        "next_age": state.age + 1,
        "finance": state.finance,
        "marital": state.marital,
        "is_single_parent": state.is_single_parent,
        "is_bankrupt": state.is_bankrupt,
        "player_description": state.player_description,
        "child_name": state.child.name,
        "child_description": state.child_description,
        "history": [entry.model_dump() for entry in state.history],
        "with_next_question": with_next_question,
    })
    if question is not None:
        ctx["question"] = question.text
    if choice is not None:
        ctx["choice"] = choice.text
    return ctx


def build_messages(kind: RequestKind, context: dict[str, Any]) -> list[ChatMessage]:
    """Render the system and user messages for one request."""
    ctx = dict(context)
    if "age" in ctx:
        ctx["state"] = render_prompt(STATE_TEMPLATE, ctx)
    return [
        ChatMessage(role="system", content=render_prompt(SYSTEM_TEMPLATE, ctx)),
        ChatMessage(role="user", content=render_prompt(TEMPLATES[kind], ctx)),
    ]
