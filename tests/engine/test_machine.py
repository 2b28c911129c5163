"""Tests for childsim.engine.machine — GameSession driven by StubGateway.

Covers the phase flow, the age-18 and ending-flag paths, bankruptcy,
staleness after restart, the in-flight guard, failure handling, checkpoint
resume and streaming.
"""

import asyncio
import json

import httpx
import pytest

from childsim.engine.machine import MISSING_OUTCOME, GameSession
from childsim.llm import HttpGateway, ModelRequestFailed
from childsim.models import (
    Checkpoint,
    Child,
    GameState,
    Option,
    PendingChoice,
    Phase,
    Player,
    Question,
    RequestKind,
)
from conftest import StubGateway

INITIAL = {
    "player": {"gender": "mother", "age": 31},
    "child": {"name": "Mia", "gender": "girl"},
    "playerDescription": "You run a bakery.",
    "childDescription": "Mia screams at dawn.",
    "wealthTier": "middle",
}
QUESTION = {
    "question": "Mia wants a puppy. What do you do?",
    "options": [
        {"id": "A", "text": "Say no kindly", "cost": 0},
        {"id": "B", "text": "Buy a pedigree puppy", "cost": 9},
    ],
}
ENDING = {
    "child_status_at_18": "Mia is off to study baking in Lyon.",
    "parent_evaluation": "You were there.",
    "future_outlook": "Bright.",
}


def _outcome(text: str = "Mia sulks, then forgets.", *, next_question: bool = True, ending: bool = False) -> dict:
    reply: dict = {"outcome": text, "isEnding": ending}
    if next_question:
        reply["nextQuestion"] = QUESTION
    return reply


def _question() -> Question:
    return Question.model_validate(QUESTION)


def _saved_game(store, *, age: int = 8, finance: int = 5, question: bool = True, phase: Phase = Phase.AWAITING_CHOICE) -> None:
    state = GameState(
        player=Player(gender="female", age=31),
        child=Child(name="Mia", gender="female"),
        age=age,
        finance=finance,
        phase=phase,
    )
    store.save(Checkpoint(state=state, current_question=_question() if question else None, feedback_text="Earlier."))


def _resumed(gateway, store, **kwargs) -> GameSession:
    _saved_game(store, **kwargs)
    session = GameSession(gateway, store)
    assert session.resume()
    return session


async def _until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# ---------------------------------------------------------------------------
# Phase flow
# ---------------------------------------------------------------------------

class TestNewGame:
    async def test_start_game(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.INITIAL_STATE, INITIAL)
        session = GameSession(gateway, store)
        assert session.phase is Phase.WELCOME

        assert await session.start_game("Set by the sea")
        assert session.phase is Phase.AWAITING_CHOICE
        assert session.state.age == 0
        assert session.state.finance == 5
        assert session.state.special_requirements == "Set by the sea"
        assert session.current_question is None
        assert "Mia" in session.feedback_text
        assert store.load().state.child.name == "Mia"

    async def test_first_question_on_continue(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.INITIAL_STATE, INITIAL)
        gateway.queue(RequestKind.QUESTION, QUESTION)
        session = GameSession(gateway, store)
        await session.start_game()

        assert await session.continue_game()
        assert session.current_question.text == QUESTION["question"]
        assert session.last_parse_tier == 1
        assert store.load().current_question is not None

    async def test_start_failure(self, gateway: StubGateway) -> None:
        gateway.queue(RequestKind.INITIAL_STATE, ModelRequestFailed("no route"))
        session = GameSession(gateway)
        assert not await session.start_game()
        assert session.state is None
        assert "no route" in session.error

    async def test_start_resets_usage(self, gateway: StubGateway) -> None:
        gateway.queue(RequestKind.INITIAL_STATE, INITIAL, INITIAL)
        gateway.queue(RequestKind.QUESTION, QUESTION)
        session = GameSession(gateway)
        await session.start_game()
        await session.fetch_question()
        assert session.usage().api_calls == 2

        await session.start_game()
        assert session.usage().api_calls == 1
        assert session.usage().total_tokens == 120

    async def test_full_game(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.INITIAL_STATE, INITIAL)
        gateway.queue(RequestKind.QUESTION, QUESTION)
        gateway.queue(RequestKind.OUTCOME, *[_outcome(f"Year {a}.") for a in range(17)])
        gateway.queue(RequestKind.OUTCOME, _outcome("Year 17.", next_question=False))
        gateway.queue(RequestKind.ENDING, ENDING)
        session = GameSession(gateway, store)

        await session.start_game()
        await session.continue_game()
        for age in range(18):
            assert session.state.age == age
            assert await session.select_option("A")

        assert session.phase is Phase.ENDED
        assert session.state.age == 18
        assert [h.age for h in session.state.history] == list(range(18))
        assert session.ending.child_status_at_18.startswith("Mia")
        assert gateway.count(RequestKind.QUESTION) == 1
        gateway.assert_exhausted()


class TestOutcome:
    async def test_bundled_question(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome("She forgets by lunch."))
        session = _resumed(gateway, store, age=16)

        assert await session.select_option("A")
        assert session.state.age == 17
        assert session.phase is Phase.AWAITING_CHOICE
        assert session.feedback_text == "She forgets by lunch."
        assert session.current_question.text == QUESTION["question"]
        assert session.state.history[-1].choice == "Say no kindly"
        assert gateway.count(RequestKind.QUESTION) == 0

    async def test_standalone_question_when_not_bundled(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome(next_question=False))
        gateway.queue(RequestKind.QUESTION, QUESTION)
        session = _resumed(gateway, store, age=3)

        await session.select_option("A")
        assert session.state.age == 4
        assert session.current_question is not None
        assert gateway.count(RequestKind.QUESTION) == 1

    async def test_last_turn_discards_bundled_question(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome("Graduation."))
        gateway.queue(RequestKind.ENDING, ENDING)
        session = _resumed(gateway, store, age=17)

        await session.select_option("A")
        assert session.phase is Phase.ENDED
        assert session.state.age == 18
        assert session.current_question is None
        assert gateway.count(RequestKind.ENDING) == 1

    async def test_last_turn_asks_for_no_question(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome(next_question=False))
        gateway.queue(RequestKind.ENDING, ENDING)
        session = _resumed(gateway, store, age=17)

        await session.select_option("A")
        outcome_prompt = gateway.messages[0][1].content
        assert "nextQuestion" not in outcome_prompt

    async def test_ending_flag_ends_early(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome("Everything changes.", ending=True))
        gateway.queue(RequestKind.ENDING, ENDING)
        session = _resumed(gateway, store, age=5)

        await session.select_option("A")
        assert session.phase is Phase.ENDED
        assert session.state.age == 6
        assert session.current_question is None

    async def test_flag_and_age_rule_request_one_ending(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome(ending=True))
        gateway.queue(RequestKind.ENDING, ENDING)
        session = _resumed(gateway, store, age=17)

        await session.select_option("A")
        assert not await session.request_ending()
        assert not await session.continue_game()
        assert gateway.count(RequestKind.ENDING) == 1

    async def test_unknown_option(self, gateway: StubGateway, store) -> None:
        session = _resumed(gateway, store)
        assert not await session.select_option("Z")
        assert "Z" in session.error
        assert gateway.calls == []

    async def test_outcome_failure_uses_placeholder(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, ModelRequestFailed("overloaded"))
        gateway.queue(RequestKind.QUESTION, QUESTION)
        session = _resumed(gateway, store, age=9)

        assert await session.select_option("A")
        assert session.feedback_text == MISSING_OUTCOME
        assert session.state.history[-1].outcome == MISSING_OUTCOME
        assert session.state.age == 10
        assert session.phase is Phase.AWAITING_CHOICE
        assert session.current_question is not None
        assert session.usage().api_calls == 2

    async def test_degraded_reply_still_progresses(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.QUESTION, "I'd rather not answer in JSON today.")
        session = _resumed(gateway, store, question=False)

        assert await session.fetch_question()
        assert session.last_parse_tier == 6
        assert len(session.current_question.options) == 4


class TestBankruptcy:
    BROKE = {
        "outcome": "The puppy ate the savings.",
        "nextQuestion": {"question": "What now?", "options": [{"id": "A", "text": "Night shifts", "cost": 5}]},
    }

    async def test_choice_that_empties_finance(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.BANKRUPTCY, self.BROKE)
        session = _resumed(gateway, store, age=8, finance=2)

        await session.select_option("B")
        assert gateway.calls == [RequestKind.BANKRUPTCY]
        assert session.state.finance == 0
        assert session.state.is_bankrupt
        assert session.state.age == 9
        [option] = session.current_question.options
        assert option.cost == 0
        assert option.is_recovery

    async def test_recovery_keeps_latch(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.BANKRUPTCY, self.BROKE)
        gateway.queue(RequestKind.OUTCOME, _outcome("Slowly, things improve."))
        session = _resumed(gateway, store, age=8, finance=2)

        await session.select_option("B")
        await session.select_option("A")
        assert gateway.calls == [RequestKind.BANKRUPTCY, RequestKind.OUTCOME]
        assert session.state.finance == 3
        assert session.state.is_bankrupt
        assert session.state.age == 10

    async def test_subsidised_age_never_goes_broke(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome())
        session = _resumed(gateway, store, age=2, finance=1)

        await session.select_option("B")
        assert gateway.calls == [RequestKind.OUTCOME]
        assert session.state.finance == 1


# ---------------------------------------------------------------------------
# Ending
# ---------------------------------------------------------------------------

class TestEnding:
    async def test_request_from_ending_phase(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.ENDING, ENDING)
        session = _resumed(gateway, store, age=18, question=False, phase=Phase.ENDING)

        assert await session.request_ending()
        assert session.phase is Phase.ENDED
        assert store.load().ending.future_outlook == "Bright."

    @pytest.mark.parametrize("age", [0, 9, 17])
    async def test_refused_while_story_goes_on(self, gateway: StubGateway, store, age) -> None:
        session = _resumed(gateway, store, age=age)

        assert not await session.request_ending()
        assert session.phase is Phase.AWAITING_CHOICE
        assert session.ending is None
        assert gateway.count(RequestKind.ENDING) == 0

    async def test_refused_before_a_game(self, gateway: StubGateway) -> None:
        session = GameSession(gateway)
        assert not await session.request_ending()
        assert gateway.calls == []

    async def test_concurrent_requests_send_one(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.ENDING, ENDING)
        gate = gateway.hold(RequestKind.ENDING)
        session = _resumed(gateway, store, age=18, question=False, phase=Phase.ENDING)

        async def release() -> None:
            await _until(lambda: gateway.count(RequestKind.ENDING) == 1)
            gate.set()

        results = await asyncio.gather(session.request_ending(), session.request_ending(), release())
        assert sorted(results[:2]) == [False, True]
        assert gateway.count(RequestKind.ENDING) == 1

    async def test_failure_then_retry(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome(next_question=False))
        gateway.queue(RequestKind.ENDING, ModelRequestFailed("timed out"), ENDING)
        session = _resumed(gateway, store, age=17)

        await session.select_option("A")
        assert session.phase is Phase.ENDING
        assert "timed out" in session.error
        assert session.ending is None

        assert await session.continue_game()
        assert session.phase is Phase.ENDED
        assert session.error is None
        assert gateway.count(RequestKind.ENDING) == 2

    async def test_refused_while_outcome_in_flight(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome())
        gate = gateway.hold(RequestKind.OUTCOME)
        session = _resumed(gateway, store)

        task = asyncio.create_task(session.select_option("A"))
        await _until(lambda: gateway.count(RequestKind.OUTCOME) == 1)
        assert not await session.request_ending()
        gate.set()
        await task
        assert gateway.count(RequestKind.ENDING) == 0

    async def test_ended_game_ignores_more_requests(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.ENDING, ENDING)
        session = _resumed(gateway, store, age=18, question=False, phase=Phase.ENDING)
        assert await session.request_ending()

        assert not await session.request_ending()
        assert not await session.fetch_question()
        assert not await session.select_option("A")


# ---------------------------------------------------------------------------
# Concurrency and staleness
# ---------------------------------------------------------------------------

class TestInFlightGuard:
    async def test_second_choice_dropped(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome())
        gate = gateway.hold(RequestKind.OUTCOME)
        session = _resumed(gateway, store)

        task = asyncio.create_task(session.select_option("A"))
        await _until(lambda: session.in_flight)
        assert not await session.select_option("A")
        assert not await session.select_option("B")
        assert not await session.fetch_question()
        gate.set()
        assert await task

        assert gateway.count(RequestKind.OUTCOME) == 1
        assert session.state.age == 9
        assert not session.in_flight

    async def test_second_fetch_dropped(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.QUESTION, QUESTION)
        gate = gateway.hold(RequestKind.QUESTION)
        session = _resumed(gateway, store, question=False)

        task = asyncio.create_task(session.fetch_question())
        await _until(lambda: gateway.count(RequestKind.QUESTION) == 1)
        assert not await session.continue_game()
        gate.set()
        assert await task
        assert gateway.count(RequestKind.QUESTION) == 1


class TestStaleness:
    async def test_restart_discards_reply(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.QUESTION, QUESTION)
        gate = gateway.hold(RequestKind.QUESTION)
        session = _resumed(gateway, store, question=False)

        task = asyncio.create_task(session.fetch_question())
        await _until(lambda: gateway.count(RequestKind.QUESTION) == 1)
        before = session.generation
        session.restart()
        assert session.generation == before + 1
        gate.set()

        assert not await task
        assert session.phase is Phase.WELCOME
        assert session.state is None
        assert session.current_question is None
        # the abandoned call still counts until a new game resets the counters
        assert session.usage().api_calls == 1
        assert session.usage().total_tokens == 120
        assert store.load() is None

    async def test_new_game_unaffected_by_old_reply(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome("Old news."))
        gateway.queue(RequestKind.INITIAL_STATE, INITIAL)
        gate = gateway.hold(RequestKind.OUTCOME)
        session = _resumed(gateway, store, age=8)

        task = asyncio.create_task(session.select_option("A"))
        await _until(lambda: gateway.count(RequestKind.OUTCOME) == 1)
        session.restart()
        assert await session.start_game()
        gate.set()
        await task

        assert session.state.age == 0
        assert session.state.history == []
        assert session.feedback_text != "Old news."
        assert session.phase is Phase.AWAITING_CHOICE
        assert not session.in_flight
        assert store.load().state.age == 0
        assert session.usage().api_calls == 1

    async def test_stale_failure_leaves_no_error(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.QUESTION, ModelRequestFailed("late failure"))
        gate = gateway.hold(RequestKind.QUESTION)
        session = _resumed(gateway, store, question=False)

        task = asyncio.create_task(session.fetch_question())
        await _until(lambda: gateway.count(RequestKind.QUESTION) == 1)
        session.restart()
        gate.set()
        await task
        assert session.error is None
        assert session.usage().api_calls == 1
        assert session.usage().total_tokens == 0


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------

class TestQuestionFailure:
    async def test_blocks_until_retried(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.QUESTION, ModelRequestFailed("503"), QUESTION)
        session = _resumed(gateway, store, question=False)

        assert not await session.fetch_question()
        assert session.phase is Phase.AWAITING_CHOICE
        assert session.current_question is None
        assert "503" in session.error
        assert not await session.select_option("A")
        assert session.usage().api_calls == 1

        assert await session.continue_game()
        assert session.current_question is not None
        assert session.error is None


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------

class TestCheckpoint:
    async def test_resume_after_turn(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome("A quiet year."))
        session = _resumed(gateway, store, age=4)
        await session.select_option("A")

        reloaded = GameSession(StubGateway(), store)
        assert reloaded.resume()
        assert reloaded.phase is Phase.AWAITING_CHOICE
        assert reloaded.state.age == 5
        assert reloaded.feedback_text == "A quiet year."
        assert reloaded.current_question == session.current_question

    async def test_resume_mid_outcome_lets_player_choose_again(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome())
        gate = gateway.hold(RequestKind.OUTCOME)
        session = _resumed(gateway, store, age=8, finance=5)

        task = asyncio.create_task(session.select_option("B"))
        await _until(lambda: gateway.count(RequestKind.OUTCOME) == 1)
        saved = store.load()
        assert saved.state.phase is Phase.AWAITING_OUTCOME
        assert saved.pending_choice.option_id == "B"

        reloaded = GameSession(StubGateway(), store)
        assert reloaded.resume()
        assert reloaded.phase is Phase.AWAITING_CHOICE
        assert reloaded.state.age == 8
        assert reloaded.state.finance == 5
        assert reloaded.current_question.text == QUESTION["question"]
        assert reloaded.view().pending_choice.option_id == "B"
        assert store.load().state.phase is Phase.AWAITING_CHOICE

        gate.set()
        await task

    async def test_resume_finished_game(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.ENDING, ENDING)
        session = _resumed(gateway, store, age=18, question=False, phase=Phase.ENDING)
        assert await session.request_ending()

        reloaded = GameSession(StubGateway(), store)
        assert reloaded.resume()
        assert reloaded.phase is Phase.ENDED
        assert reloaded.ending == session.ending

    async def test_finished_checkpoint_without_ending_reopens_ending(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.ENDING, ENDING)
        session = _resumed(gateway, store, age=18, question=False, phase=Phase.ENDED)
        assert session.phase is Phase.ENDING
        assert store.load().state.phase is Phase.ENDING

        assert await session.continue_game()
        assert session.phase is Phase.ENDED

    async def test_pending_choice_cleared_by_next_outcome(self, gateway: StubGateway, store) -> None:
        gateway.queue(RequestKind.OUTCOME, _outcome())
        _saved_game(store, age=8, phase=Phase.AWAITING_OUTCOME)
        saved = store.load()
        saved.pending_choice = PendingChoice(question_text=QUESTION["question"], option_id="A", option_text="Say no kindly")
        store.save(saved)

        session = GameSession(gateway, store)
        assert session.resume()
        assert session.view().pending_choice.option_id == "A"
        await session.select_option("A")
        assert session.view().pending_choice is None
        assert store.load().pending_choice is None

    async def test_resume_without_checkpoint(self, gateway: StubGateway, store) -> None:
        session = GameSession(gateway, store)
        assert not session.resume()
        assert session.phase is Phase.WELCOME

    async def test_resume_without_store(self, gateway: StubGateway) -> None:
        assert not GameSession(gateway).resume()

    async def test_restart_clears_checkpoint(self, gateway: StubGateway, store) -> None:
        session = _resumed(gateway, store)
        session.restart()
        assert store.load() is None
        assert session.view().phase is Phase.WELCOME


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class ObservingGateway(StubGateway):
    """Records what the session shows between stream chunks."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.session: GameSession | None = None
        self.seen: list[tuple[bool, str]] = []

    async def stream(self, kind, messages):
        async for chunk in super().stream(kind, messages):
            yield chunk
            if self.session is not None:
                self.seen.append((self.session.is_streaming, self.session.renderable_text))


class BreakingGateway(StubGateway):
    """Streams the first few chunks of one kind of reply, then fails like a dropped connection."""

    def __init__(self, *args, fail_kind: RequestKind, chunks_before_failure: int = 3, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.fail_kind = fail_kind
        self.chunks_before_failure = chunks_before_failure

    async def stream(self, kind, messages):
        sent = 0
        async for chunk in super().stream(kind, messages):
            if kind is self.fail_kind and sent == self.chunks_before_failure:
                raise ModelRequestFailed("Model backend returned HTTP 502")
            yield chunk
            sent += 1


def _sse_gateway(*events: str) -> HttpGateway:
    body = "".join(f"data: {e}\n\n" for e in events).encode()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    return HttpGateway(base_url="https://api.example.com/v1", transport=httpx.MockTransport(handler))


class TestStreaming:
    async def test_progressive_text(self, store) -> None:
        gateway = ObservingGateway(chunk_size=7)
        gateway.queue(RequestKind.QUESTION, QUESTION)
        _saved_game(store, question=False)
        session = GameSession(gateway, store, streaming=True)
        gateway.session = session
        session.resume()

        assert await session.fetch_question()
        assert all(streaming for streaming, _ in gateway.seen)
        texts = [text for _, text in gateway.seen]
        assert any(text.startswith("Mia wants") for text in texts)
        assert any("B: Buy a pedigree puppy (cost: 9)" in text for text in texts)
        assert not session.is_streaming
        assert session.renderable_text == ""
        assert session.current_question.options[1].cost == 9

    async def test_outcome_failing_mid_stream_uses_placeholder(self, store) -> None:
        gateway = BreakingGateway(fail_kind=RequestKind.OUTCOME, chunk_size=6)
        gateway.queue(RequestKind.OUTCOME, _outcome("This text never finishes arriving."))
        gateway.queue(RequestKind.QUESTION, QUESTION)
        _saved_game(store, age=6)
        session = GameSession(gateway, store, streaming=True)
        session.resume()

        assert await session.select_option("A")
        assert session.feedback_text == MISSING_OUTCOME
        assert session.state.history[-1].outcome == MISSING_OUTCOME
        assert session.state.age == 7
        assert session.phase is Phase.AWAITING_CHOICE
        assert session.current_question.text == QUESTION["question"]
        assert not session.is_streaming
        assert not session.in_flight
        assert session.usage().api_calls == 2

    async def test_malformed_provider_lines_do_not_stall_the_turn(self, store) -> None:
        text = json.dumps(_outcome("A calm year."))
        gateway = _sse_gateway(
            json.dumps({"choices": [{"delta": {"content": text[:20]}}]}),
            json.dumps({"choices": [None]}),
            json.dumps({"choices": [{"delta": {"content": 5}}]}),
            json.dumps({"choices": [{"delta": {"content": text[20:]}, "finish_reason": "stop"}]}),
            "[DONE]",
        )
        _saved_game(store, age=6)
        session = GameSession(gateway, store, streaming=True)
        session.resume()

        assert await session.select_option("A")
        assert session.feedback_text == "A calm year."
        assert session.state.age == 7
        assert session.phase is Phase.AWAITING_CHOICE
        assert session.error is None

    async def test_streamed_turn_matches_completion(self, store) -> None:
        gateway = StubGateway(chunk_size=5)
        gateway.queue(RequestKind.OUTCOME, _outcome("Fine."))
        _saved_game(store, age=3)
        session = GameSession(gateway, store, streaming=True)
        session.resume()

        await session.select_option("A")
        assert session.feedback_text == "Fine."
        assert session.state.age == 4
        assert session.usage().api_calls == 1

    @pytest.mark.parametrize("streaming", [False, True])
    async def test_usage_recorded_per_call(self, store, streaming) -> None:
        gateway = StubGateway()
        gateway.queue(RequestKind.QUESTION, QUESTION)
        _saved_game(store, question=False)
        session = GameSession(gateway, store, streaming=streaming)
        session.resume()
        await session.fetch_question()
        stats = session.usage()
        assert stats.api_calls == 1
        assert stats.prompt_tokens == 100
        assert stats.completion_tokens == 20
