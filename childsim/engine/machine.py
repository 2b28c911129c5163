"""Game session — runs the game from the welcome screen to the ending.

Phase flow:
  welcome → initializing          start_game()
  initializing → awaiting_choice  initial state arrives; age 0, no question yet
  awaiting_choice                 fetch_question() / continue_game() loads one
  awaiting_choice → awaiting_outcome
                                  select_option()
  awaiting_outcome → awaiting_choice(age + 1)
                                  outcome arrives, with or without the next
                                  question bundled in
  awaiting_outcome → ending       last turn played, or the model ended the story
  ending → ended                  ending arrives

Every start_game(), resume() and restart() starts a new generation. A reply
that arrives for an older generation is dropped without touching anything;
the game it belonged to no longer exists.

Only one question/choice request runs at a time. A second trigger while one
is in flight is dropped, not queued. The ending is requested at most once per
generation no matter how many paths ask for it.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import Any

from childsim.accounting import TokenAccountant
from childsim.engine import rules
from childsim.extractor import extract
from childsim.llm import ChatMessage, ModelGateway, ModelRequestFailed
from childsim.models import (
    BankruptcyBranch,
    Checkpoint,
    Ending,
    GameState,
    HistoryEntry,
    InitialState,
    Option,
    Outcome,
    OutcomeWithNextQuestion,
    PendingChoice,
    Phase,
    Question,
    QuestionEvent,
    RequestKind,
    SessionView,
    TokenUsageStats,
    Usage,
)
from childsim.parsing import ParseResult, parse
from childsim.prompts import PromptError, build_context, build_messages
from childsim.storage import PersistenceStore

logger = logging.getLogger(__name__)

MISSING_OUTCOME = "(The story of this year got lost on the way. Life goes on.)"

_RECOVERABLE = (ModelRequestFailed, PromptError)


class GameSession:
    """One player's game. Owns the GameState; the UI only reads view()."""

    def __init__(
        self,
        gateway: ModelGateway,
        store: PersistenceStore | None = None,
        *,
        streaming: bool = False,
        accountant: TokenAccountant | None = None,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._streaming = streaming
        self.accountant = accountant or TokenAccountant()

        self.phase = Phase.WELCOME
        self.state: GameState | None = None
        self.current_question: Question | None = None
        self.feedback_text: str | None = None
        self.ending: Ending | None = None
        self.error: str | None = None
        self.renderable_text = ""
        self.is_streaming = False
        self.last_parse_tier: int | None = None

        self._pending_choice: PendingChoice | None = None
        self._generation = 0
        self._in_flight = False
        self._ending_requested = False
        # bumped whenever the accountant is reset; calls sent before that are not counted
        self._usage_epoch = 0

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def view(self) -> SessionView:
        return SessionView(
            phase=self.phase,
            state=self.state,
            current_question=self.current_question,
            feedback_text=self.feedback_text,
            renderable_text=self.renderable_text,
            is_streaming=self.is_streaming,
            error=self.error,
            ending=self.ending,
            last_parse_tier=self.last_parse_tier,
            pending_choice=self._pending_choice,
        )

    def usage(self) -> TokenUsageStats:
        return self.accountant.stats()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _new_generation(self) -> int:
        self._generation += 1
        self._in_flight = False
        self._ending_requested = False
        self.is_streaming = False
        self.renderable_text = ""
        return self._generation

    def _discard_game(self) -> None:
        self.state = None
        self.current_question = None
        self.feedback_text = None
        self.ending = None
        self.error = None
        self.last_parse_tier = None
        self._pending_choice = None

    def _is_current(self, gen: int) -> bool:
        return gen == self._generation

    def _release(self, gen: int) -> None:
        # a superseded request must not clear the new generation's flag
        if self._is_current(gen):
            self._in_flight = False

    def _set_phase(self, phase: Phase) -> None:
        self.phase = phase
        if self.state is not None:
            self.state.phase = phase

    def _checkpoint(self) -> None:
        if self._store is None or self.state is None:
            return
        checkpoint = Checkpoint(
            state=self.state,
            current_question=self.current_question,
            pending_choice=self._pending_choice,
            feedback_text=self.feedback_text,
            ending=self.ending,
        )
        try:
            self._store.save(checkpoint)
        except OSError:
            logger.exception("could not save checkpoint")

    def _clear_store(self) -> None:
        if self._store is None:
            return
        try:
            self._store.clear()
        except OSError:
            logger.exception("could not clear checkpoint")

    async def start_game(self, special_requirements: str = "") -> bool:
        """Throw away any current game and ask the model for a new family."""
        gen = self._new_generation()
        self._discard_game()
        self.accountant.reset()
        self._usage_epoch += 1
        self._clear_store()
        self._set_phase(Phase.INITIALIZING)

        self._in_flight = True
        try:
            result = await self._request(
                gen,
                RequestKind.INITIAL_STATE,
                build_context(None, special_requirements=special_requirements),
            )
        except _RECOVERABLE as e:
            if self._is_current(gen):
                logger.error("initial state request failed: %s", e)
                self.error = f"Could not set up a new game: {e}"
            return False
        finally:
            self._release(gen)

        if result is None:
            return False
        event = result.event
        assert isinstance(event, InitialState)
        # a brand new object; nothing carries over from the previous game
        self.state = rules.new_game_state(event, special_requirements)
        self.feedback_text = rules.intro_narrative(self.state)
        self._set_phase(Phase.AWAITING_CHOICE)
        self._checkpoint()
        logger.info("new game: %s, finance=%d marital=%d", self.state.child.name, self.state.finance, self.state.marital)
        return True

    def resume(self) -> bool:
        """Restore the stored game, if there is one."""
        if self._store is None:
            return False
        checkpoint = self._store.load()
        if checkpoint is None:
            return False

        self._new_generation()
        self._discard_game()
        self.state = checkpoint.state
        self.current_question = checkpoint.current_question
        self.feedback_text = checkpoint.feedback_text
        self.ending = checkpoint.ending
        self._pending_choice = checkpoint.pending_choice

        saved_phase = phase = checkpoint.state.phase
        if phase is Phase.AWAITING_OUTCOME:
            # the outcome never arrived; let the player choose again
            phase = Phase.AWAITING_CHOICE
        elif phase is Phase.INITIALIZING:
            phase = Phase.AWAITING_CHOICE
        elif phase is Phase.ENDED and self.ending is None:
            phase = Phase.ENDING
        self._set_phase(phase)
        if phase is not saved_phase:
            self._checkpoint()
        logger.info("resumed game at age %d (%s)", self.state.age, phase.value)
        return True

    def restart(self) -> None:
        """Back to the welcome screen. Anything in flight is abandoned."""
        self._new_generation()
        self._discard_game()
        self._clear_store()
        self._set_phase(Phase.WELCOME)

    # ------------------------------------------------------------------
    # Player actions
    # ------------------------------------------------------------------

    async def continue_game(self) -> bool:
        """Move on from the feedback screen to whatever comes next."""
        if self.phase is Phase.AWAITING_CHOICE and self.current_question is None:
            return await self.fetch_question()
        if self.phase is Phase.ENDING and self.ending is None:
            return await self.request_ending()
        logger.debug("continue ignored in phase %s", self.phase.value)
        return False

    async def fetch_question(self) -> bool:
        """Ask for the question of the current age."""
        if self._in_flight:
            logger.warning("question requested while another request is in flight; dropped")
            return False
        if self.state is None or self.phase is not Phase.AWAITING_CHOICE or self.current_question is not None:
            logger.warning("no question needed in phase %s", self.phase.value)
            return False

        gen = self._generation
        self._in_flight = True
        try:
            return await self._load_question(gen)
        finally:
            self._release(gen)

    async def select_option(self, option_id: str) -> bool:
        """Resolve the player's answer to the current question."""
        if self._in_flight:
            logger.warning("choice %r made while another request is in flight; dropped", option_id)
            return False
        if self.state is None or self.phase is not Phase.AWAITING_CHOICE or self.current_question is None:
            logger.warning("choice %r ignored in phase %s", option_id, self.phase.value)
            return False
        option = next((o for o in self.current_question.options if o.id == option_id), None)
        if option is None:
            self.error = f"There is no option {option_id!r}"
            return False

        gen = self._generation
        self._in_flight = True
        try:
            await self._resolve_choice(gen, self.current_question, option)
        finally:
            self._release(gen)
        return True

    async def request_ending(self) -> bool:
        """Ask for the ending once the story is over and it has not arrived.

        Only the model's ending flag and the last turn put the game into the
        ending phase; this retries the request after a failure or a reload.
        Only the first of concurrent calls does anything.
        """
        if self.state is None or self.phase is not Phase.ENDING or self.ending is not None:
            logger.warning("ending requested in phase %s; ignored", self.phase.value)
            return False
        if self._in_flight:
            logger.warning("ending requested while another request is in flight; dropped")
            return False
        return await self._enter_ending(self._generation)

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _request(self, gen: int, kind: RequestKind, context: dict[str, Any]) -> ParseResult | None:
        """Send one request and parse the reply; None if superseded meanwhile."""
        messages = build_messages(kind, context)
        epoch = self._usage_epoch
        try:
            if self._streaming:
                text, usage = await self._stream_text(gen, kind, messages)
            else:
                completion = await self._gateway.complete(kind, messages)
                text, usage = completion.text, completion.usage
        except ModelRequestFailed:
            if epoch == self._usage_epoch:
                self.accountant.record(None)
            raise

        # superseded calls are counted too, until the next reset
        if epoch == self._usage_epoch:
            self.accountant.record(usage)
        if text is None or not self._is_current(gen):
            logger.warning(
                "discarding stale %s reply (generation %d, now %d)",
                kind.value, gen, self._generation,
            )
            return None

        self.renderable_text = ""
        result = parse(text, kind)
        self.last_parse_tier = int(result.tier)
        return result

    async def _stream_text(
        self, gen: int, kind: RequestKind, messages: list[ChatMessage]
    ) -> tuple[str | None, Usage | None]:
        buffer = ""
        self.is_streaming = True
        self.renderable_text = ""
        try:
            async with aclosing(self._gateway.stream(kind, messages)) as chunks:
                async for chunk in chunks:
                    if not self._is_current(gen):
                        return None, None
                    if chunk.done:
                        return buffer, chunk.usage
                    buffer += chunk.content
                    self.renderable_text = extract(buffer, kind).renderable_text
        finally:
            if self._is_current(gen):
                self.is_streaming = False
        if not self._is_current(gen):
            return None, None
        raise ModelRequestFailed(f"{kind.value} stream ended without a completion signal")

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def _load_question(self, gen: int) -> bool:
        try:
            result = await self._request(gen, RequestKind.QUESTION, build_context(self.state))
        except _RECOVERABLE as e:
            if self._is_current(gen):
                logger.error("question request failed: %s", e)
                self.error = f"Could not load the next question: {e}"
            return False
        if result is None:
            return False
        if self.phase is not Phase.AWAITING_CHOICE:
            logger.warning("question arrived in phase %s; dropped", self.phase.value)
            return False

        event = result.event
        assert isinstance(event, QuestionEvent)
        self.current_question = event.question
        self.error = None
        self._checkpoint()
        return True

    async def _resolve_choice(self, gen: int, question: Question, option: Option) -> None:
        state = self.state
        assert state is not None
        kind = rules.outcome_kind(rules.preview_choice(state, option))
        context = build_context(
            state,
            question=question,
            choice=option,
            with_next_question=rules.wants_next_question(state.age),
        )
        self._pending_choice = PendingChoice(
            question_text=question.text, option_id=option.id, option_text=option.text,
        )
        self.error = None
        self._set_phase(Phase.AWAITING_OUTCOME)
        self._checkpoint()

        try:
            result = await self._request(gen, kind, context)
        except _RECOVERABLE as e:
            if not self._is_current(gen):
                return
            logger.error("%s request failed: %s", kind.value, e)
            self.error = f"The story could not continue: {e}"
            event: Outcome | OutcomeWithNextQuestion | BankruptcyBranch = Outcome(text=MISSING_OUTCOME)
        else:
            if result is None:
                return
            event = result.event

        await self._apply_outcome(gen, question, option, event)

    async def _apply_outcome(
        self,
        gen: int,
        question: Question,
        option: Option,
        event: Outcome | OutcomeWithNextQuestion | BankruptcyBranch,
    ) -> None:
        state = self.state
        assert state is not None
        age = state.age

        rules.apply_choice(state, option)
        outcome_text = event.text if isinstance(event, Outcome) else event.outcome
        state.history = rules.upsert_history(
            state.history,
            HistoryEntry(age=age, question=question.text, choice=option.text, outcome=outcome_text),
        )
        if isinstance(event, BankruptcyBranch):
            state.is_bankrupt = True

        self.feedback_text = outcome_text
        self.current_question = None
        self._pending_choice = None
        state.age = age + 1

        ending_flag = getattr(event, "is_ending", False)
        if rules.reaches_ending(age, ending_flag):
            if isinstance(event, OutcomeWithNextQuestion):
                logger.info("story ends after age %d; bundled question discarded", age)
            await self._enter_ending(gen)
            return

        if isinstance(event, BankruptcyBranch):
            self.current_question = event.forced_single_option
        elif isinstance(event, OutcomeWithNextQuestion):
            self.current_question = event.next_question
        self._set_phase(Phase.AWAITING_CHOICE)
        self._checkpoint()

        if self.current_question is None:
            # still inside the caller's in-flight window
            await self._load_question(gen)

    async def _enter_ending(self, gen: int) -> bool:
        if self._ending_requested:
            logger.info("ending already requested; duplicate trigger ignored")
            return False
        self._ending_requested = True
        self.current_question = None
        self._set_phase(Phase.ENDING)
        self._checkpoint()

        try:
            result = await self._request(gen, RequestKind.ENDING, build_context(self.state))
        except _RECOVERABLE as e:
            if self._is_current(gen):
                logger.error("ending request failed: %s", e)
                self.error = f"Could not write the ending: {e}"
                self._ending_requested = False
            return False
        if result is None:
            return False

        event = result.event
        assert isinstance(event, Ending)
        self.ending = event
        self.error = None
        self._set_phase(Phase.ENDED)
        self._checkpoint()
        return True
