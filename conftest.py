import asyncio
import json
from collections.abc import AsyncIterator

import pytest

from childsim.llm import ChatMessage, Completion, StreamChunk
from childsim.models import RequestKind, Usage
from childsim.storage import CheckpointStore


class StubGateway:
    """Deterministic gateway: queued replies per request kind.

    Replies may be strings, dicts (sent as JSON) or exceptions (raised).
    hold(kind) makes the next calls of that kind wait until the returned
    event is set, which lets tests interleave restarts and duplicate
    triggers with a request that is still in flight.
    """

    def __init__(self, replies: dict[RequestKind, list] | None = None, chunk_size: int = 9) -> None:
        self.replies: dict[RequestKind, list] = {k: list(v) for k, v in (replies or {}).items()}
        self.calls: list[RequestKind] = []
        self.messages: list[list[ChatMessage]] = []
        self.gates: dict[RequestKind, asyncio.Event] = {}
        self.chunk_size = chunk_size

    def queue(self, kind: RequestKind, *replies) -> None:
        self.replies.setdefault(kind, []).extend(replies)

    def hold(self, kind: RequestKind) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[kind] = gate
        return gate

    def count(self, kind: RequestKind) -> int:
        return self.calls.count(kind)

    def assert_exhausted(self) -> None:
        left = {k.value: len(v) for k, v in self.replies.items() if v}
        assert not left, f"unused stub replies: {left}"

    async def _next(self, kind: RequestKind, messages: list[ChatMessage]) -> str:
        self.calls.append(kind)
        self.messages.append(messages)
        gate = self.gates.get(kind)
        if gate is not None:
            await gate.wait()
        queue = self.replies.get(kind)
        if not queue:
            raise AssertionError(f"StubGateway has no reply queued for {kind.value}")
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, str) else json.dumps(reply)

    async def complete(self, kind: RequestKind, messages: list[ChatMessage]) -> Completion:
        text = await self._next(kind, messages)
        return Completion(text=text, usage=Usage(prompt_tokens=100, completion_tokens=20, total_tokens=120))

    async def stream(self, kind: RequestKind, messages: list[ChatMessage]) -> AsyncIterator[StreamChunk]:
        text = await self._next(kind, messages)
        for i in range(0, len(text), self.chunk_size):
            yield StreamChunk(content=text[i:i + self.chunk_size])
            await asyncio.sleep(0)
        yield StreamChunk(done=True, usage=Usage(prompt_tokens=100, completion_tokens=20, total_tokens=120))


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def store(tmp_path) -> CheckpointStore:
    return CheckpointStore(tmp_path / "data")

