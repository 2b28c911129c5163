"""Game rules — pure functions over GameState and domain events.

Nothing here talks to the model or the store; the session calls these to
decide what an event does to the state.
"""

from __future__ import annotations

from childsim.models import (
    MAX_AGE,
    RESOURCE_MIN,
    GameState,
    HistoryEntry,
    InitialState,
    Option,
    RequestKind,
)

FINANCE_FLOOR = RESOURCE_MIN
COST_PER_FINANCE_POINT = 3
# Young children cost little; negative finance deltas are waived up to this age.
SUBSIDISED_UNTIL_AGE = 5
RECOVERY_FINANCE = 3
RECOVERY_BONUS = 2

WEALTH_TIER_FINANCE = {"poor": 2, "middle": 5, "wealthy": 8}
DEFAULT_FINANCE = WEALTH_TIER_FINANCE["middle"]
DEFAULT_MARITAL = 5

_PARENT_ROLES = {"male": "father", "female": "mother", "nonBinary": "parent"}
_CHILD_LABELS = {"male": "boy", "female": "girl"}


# ---------------------------------------------------------------------------
# New game
# ---------------------------------------------------------------------------

def new_game_state(event: InitialState, special_requirements: str = "") -> GameState:
    """A fresh GameState at age 0 from the model's initial setup."""
    if event.finance is not None:
        finance = event.finance
    else:
        finance = WEALTH_TIER_FINANCE.get(event.wealth_tier or "", DEFAULT_FINANCE)

    if event.marital is not None:
        marital = event.marital
    else:
        marital = 0 if event.is_single_parent else DEFAULT_MARITAL

    return GameState(
        player=event.player,
        child=event.child.model_copy(update={"age": 0}),
        player_description=event.player_description,
        child_description=event.child_description,
        wealth_tier=event.wealth_tier,
        special_requirements=special_requirements,
        age=0,
        finance=finance,
        marital=marital,
        is_single_parent=event.is_single_parent or marital == 0,
        is_bankrupt=finance == FINANCE_FLOOR,
    )


def intro_narrative(state: GameState) -> str:
    role = _PARENT_ROLES.get(state.player.gender, "parent")
    child = _CHILD_LABELS.get(state.child.gender, "child")
    lines = [f"You are a {role} of {state.player.age}, about to raise {state.child.name}, a newborn {child}."]
    if state.player_description:
        lines.append(state.player_description)
    if state.child_description:
        lines.append(state.child_description)
    return "\n\n".join(lines)


# ---------------------------------------------------------------------------
# Choices
# ---------------------------------------------------------------------------

def finance_delta(option: Option, age: int) -> int:
    """Change in finance caused by picking ``option`` at ``age``."""
    delta = option.finance_delta if option.finance_delta is not None else -(option.cost // COST_PER_FINANCE_POINT)
    if delta < 0 and age <= SUBSIDISED_UNTIL_AGE:
        return 0
    return delta


def apply_choice(state: GameState, option: Option) -> None:
    """Apply the resource effects of a choice to ``state`` in place.

    Finance and marital are clamped by the model. Reaching the finance floor
    latches is_bankrupt; reaching zero marital latches is_single_parent.
    Neither latch is ever cleared here.
    """
    at_floor = state.finance == FINANCE_FLOOR
    finance = state.finance + finance_delta(option, state.age)
    if option.is_recovery and at_floor:
        finance = max(RECOVERY_FINANCE, finance + RECOVERY_BONUS)
    state.finance = finance

    if option.marital_delta:
        state.marital = state.marital + option.marital_delta

    if state.finance == FINANCE_FLOOR:
        state.is_bankrupt = True
    if state.marital == 0:
        state.is_single_parent = True


def preview_choice(state: GameState, option: Option) -> GameState:
    """A copy of ``state`` with the choice applied; ``state`` is untouched."""
    preview = state.model_copy(deep=True)
    apply_choice(preview, option)
    return preview


def outcome_kind(after_choice: GameState) -> RequestKind:
    """Which request resolves a choice, given the state after it."""
    if after_choice.finance == FINANCE_FLOOR:
        return RequestKind.BANKRUPTCY
    return RequestKind.OUTCOME


# ---------------------------------------------------------------------------
# Progression
# ---------------------------------------------------------------------------

def upsert_history(history: list[HistoryEntry], entry: HistoryEntry) -> list[HistoryEntry]:
    """New history with ``entry`` replacing any entry for the same age, sorted by age."""
    kept = [h for h in history if h.age != entry.age]
    kept.append(entry)
    return sorted(kept, key=lambda h: h.age)


def wants_next_question(age: int) -> bool:
    """Whether an outcome at ``age`` should bring the next question with it."""
    return age + 1 < MAX_AGE


def reaches_ending(age: int, ending_flag: bool) -> bool:
    """Whether resolving the turn at ``age`` ends the game."""
    return ending_flag or age + 1 >= MAX_AGE
