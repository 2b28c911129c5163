"""Model gateway — HTTP connection to a chat-completion backend.

The game session talks to the model through the ModelGateway protocol:

    async def complete(self, kind, messages) -> Completion: ...
    def stream(self, kind, messages) -> AsyncIterator[StreamChunk]: ...

`kind` identifies which event the session expects back (initial state,
question, outcome, ending, bankruptcy). Implementations may use it for
logging or routing; the HTTP gateway ignores it beyond logging.

Two implementations are provided:

    HttpGateway  — real HTTP client for OpenAI-compatible chat completions
                   (OpenAI, DeepSeek, Volcengine Ark). Streaming uses SSE.
    DemoGateway  — canned, well-formed replies. Lets the whole game run
                   offline without an API key.

Tests use StubGateway (defined in the test helpers) instead.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, ValidationError

from childsim.models import RequestKind, Usage

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class Completion(BaseModel):
    text: str
    usage: Usage | None = None


class StreamChunk(BaseModel):
    """One increment of a streamed reply. The final chunk has done=True."""

    content: str = ""
    done: bool = False
    usage: Usage | None = None


# ---------------------------------------------------------------------------
# Protocol — every gateway implementation must match these signatures
# ---------------------------------------------------------------------------

class ModelGateway(Protocol):
    async def complete(self, kind: RequestKind, messages: list[ChatMessage]) -> Completion: ...

    def stream(self, kind: RequestKind, messages: list[ChatMessage]) -> AsyncIterator[StreamChunk]: ...


# ---------------------------------------------------------------------------
# HttpGateway — connects to a real provider
# ---------------------------------------------------------------------------

Provider = Literal["openai", "deepseek", "volcengine"]

PROVIDERS: dict[str, dict[str, str]] = {
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
    },
    "deepseek": {
        "base_url": "https://api.deepseek.com/v1",
        "model": "deepseek-chat",
    },
    "volcengine": {
        "base_url": "https://ark.cn-beijing.volces.com/api/v3",
        "model": "deepseek-v3-250324",
    },
}

DONE_MARKER = "[DONE]"


class HttpGateway:
    """Async HTTP client for OpenAI-compatible chat completion APIs.

    POST {base_url}/chat/completions
        {"model": ..., "messages": [...], "stream": bool}
    Response: {"choices": [{"message": {"content": "..."}}], "usage": {...}}
    Streamed: "data: {json}" lines with choices[0].delta.content, then
    "data: [DONE]".

    Args:
        base_url:    Provider base URL, e.g. "https://api.deepseek.com/v1".
        api_key:     Bearer token, or empty string if not required.
        model:       Model identifier sent with every request.
        timeout:     HTTP timeout in seconds. Defaults to 120.
        temperature: Sampling temperature. Defaults to 0.8.
        max_tokens:  Completion budget per request. Defaults to 2048.
        transport:   Optional httpx transport, e.g. httpx.MockTransport in tests.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        model: str = "",
        timeout: float = 120.0,
        temperature: float = 0.8,
        max_tokens: int = 2048,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._transport = transport

    @classmethod
    def for_provider(cls, provider: Provider, api_key: str = "", **kwargs: Any) -> HttpGateway:
        preset = PROVIDERS[provider]
        kwargs.setdefault("model", preset["model"])
        return cls(preset["base_url"], api_key=api_key, **kwargs)

    @property
    def url(self) -> str:
        return f"{self._base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, messages: list[ChatMessage], streaming: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "messages": [m.model_dump() for m in messages],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "stream": streaming,
        }
        if self._model:
            body["model"] = self._model
        if streaming:
            body["stream_options"] = {"include_usage": True}
        return body

    def _parse_usage(self, data: dict[str, Any]) -> Usage | None:
        raw = data.get("usage")
        if not isinstance(raw, dict):
            return None
        try:
            return Usage.model_validate(raw)
        except ValidationError:
            logger.warning("ignoring malformed usage block: %r", raw)
            return None

    def _parse_response(self, data: Any) -> Completion:
        """Extract the completion text and usage from the response body."""
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ModelRequestFailed("Unexpected response format from chat completion backend") from e
        if not isinstance(text, str):
            raise ModelRequestFailed("Chat completion backend returned no text")
        return Completion(text=text, usage=self._parse_usage(data))

    def _transport_error(self, e: httpx.HTTPError) -> ModelRequestFailed:
        if isinstance(e, httpx.ConnectError):
            return ModelRequestFailed(f"Cannot connect to model backend at {self._base_url}")
        if isinstance(e, httpx.HTTPStatusError):
            return ModelRequestFailed(f"Model backend returned HTTP {e.response.status_code}")
        if isinstance(e, httpx.TimeoutException):
            return ModelRequestFailed(f"Model backend timed out after {self._timeout}s")
        return ModelRequestFailed(f"Model backend request failed: {e}")

    async def complete(self, kind: RequestKind, messages: list[ChatMessage]) -> Completion:
        body = self._build_request(messages, streaming=False)
        logger.debug("model call kind=%s url=%s messages=%d", kind.value, self.url, len(messages))

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise self._transport_error(e) from e

        try:
            data = resp.json()
        except ValueError as e:
            raise ModelRequestFailed("Model backend returned a body that is not JSON") from e

        completion = self._parse_response(data)
        logger.debug("model response kind=%s len=%d", kind.value, len(completion.text))
        return completion

    async def stream(self, kind: RequestKind, messages: list[ChatMessage]) -> AsyncIterator[StreamChunk]:
        body = self._build_request(messages, streaming=True)
        logger.debug("model stream kind=%s url=%s messages=%d", kind.value, self.url, len(messages))

        usage: Usage | None = None
        finished = False
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                async with client.stream("POST", self.url, json=body, headers=self._headers()) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        line = line.strip()
                        if not line.startswith("data:"):
                            continue
                        payload = line[len("data:"):].strip()
                        if payload == DONE_MARKER:
                            yield StreamChunk(done=True, usage=usage)
                            return
                        try:
                            data = json.loads(payload)
                        except json.JSONDecodeError:
                            logger.warning("skipping unparseable stream line: %.80s", payload)
                            continue
                        if not isinstance(data, dict):
                            continue
                        usage = self._parse_usage(data) or usage
                        choices = data.get("choices")
                        if not isinstance(choices, list) or not choices:
                            continue
                        choice = choices[0]
                        if not isinstance(choice, dict):
                            logger.warning("skipping stream line with malformed choice: %.80s", payload)
                            continue
                        delta = choice.get("delta")
                        content = delta.get("content") if isinstance(delta, dict) else None
                        if isinstance(content, str) and content:
                            yield StreamChunk(content=content)
                        elif content is not None and not isinstance(content, str):
                            logger.warning("skipping non-text stream content: %.80s", payload)
                        if choice.get("finish_reason"):
                            finished = True
        except httpx.HTTPError as e:
            raise self._transport_error(e) from e

        if not finished:
            raise ModelRequestFailed("Model stream ended before the reply was complete")
        # some providers close the connection without sending [DONE]
        yield StreamChunk(done=True, usage=usage)


# ---------------------------------------------------------------------------
# DemoGateway — canned replies; useful for running the game offline
# ---------------------------------------------------------------------------

_DEMO_QUESTION = {
    "question": "Your child refuses to go to bed and wants one more story. What do you do?",
    "options": [
        {"id": "A", "text": "Read one more story and then turn off the light", "cost": 0},
        {"id": "B", "text": "Buy a glowing night lamp to make bedtime less scary", "cost": 3},
        {"id": "C", "text": "Sign up for a weekend sleep class for parents", "cost": 6},
        {"id": "D", "text": "Let them stay up and see what happens", "cost": 0},
    ],
    "isExtremeEvent": False,
}

DEMO_REPLIES: dict[RequestKind, dict[str, Any]] = {
    RequestKind.INITIAL_STATE: {
        "player": {"gender": "female", "age": 32},
        "child": {"name": "Lily", "gender": "female"},
        "playerDescription": "You work long shifts at a hospital and love bad puns.",
        "childDescription": "Lily was born in spring and already frowns at loud noises.",
        "wealthTier": "middle",
    },
    RequestKind.QUESTION: _DEMO_QUESTION,
    RequestKind.OUTCOME: {
        "outcome": "The evening ends with a yawn, a giggle and a door left half open.",
        "nextQuestion": _DEMO_QUESTION,
        "isEnding": False,
    },
    RequestKind.BANKRUPTCY: {
        "outcome": "The last savings are gone and the fridge is nearly empty.",
        "nextQuestion": {
            "question": "How do you get the family back on its feet?",
            "options": [
                {"id": "A", "text": "Take an extra job for a while", "cost": 0, "isRecovery": True},
            ],
        },
    },
    RequestKind.ENDING: {
        "child_status_at_18": "Lily packs for university with a box of old storybooks.",
        "parent_evaluation": "You were tired, patient and present when it mattered.",
        "future_outlook": "She will be fine, and she knows where home is.",
        "summary_narrative": "Eighteen years of bedtimes, arguments and small victories.",
    },
}


class DemoGateway:
    """Returns canned replies for every request kind. No network calls.

    Lets you click through a whole game without a provider or API key.
    Streaming splits the reply into small chunks so the progressive view
    can be watched too.
    """

    def __init__(self, chunk_size: int = 24) -> None:
        self._chunk_size = chunk_size

    def _reply(self, kind: RequestKind, messages: list[ChatMessage]) -> tuple[str, Usage]:
        text = json.dumps(DEMO_REPLIES[kind], ensure_ascii=False)
        prompt = sum(len(m.content) for m in messages) // 4
        completion = len(text) // 4
        return text, Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)

    async def complete(self, kind: RequestKind, messages: list[ChatMessage]) -> Completion:
        text, usage = self._reply(kind, messages)
        logger.debug("DemoGateway kind=%s len=%d", kind.value, len(text))
        return Completion(text=text, usage=usage)

    async def stream(self, kind: RequestKind, messages: list[ChatMessage]) -> AsyncIterator[StreamChunk]:
        text, usage = self._reply(kind, messages)
        for i in range(0, len(text), self._chunk_size):
            yield StreamChunk(content=text[i:i + self._chunk_size])
        yield StreamChunk(done=True, usage=usage)


# ---------------------------------------------------------------------------
# ModelRequestFailed — raised by HttpGateway for all connection and protocol
# failures
# ---------------------------------------------------------------------------

class ModelRequestFailed(RuntimeError):
    """Raised when the model backend cannot be reached or returns an error."""
