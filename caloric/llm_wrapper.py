# caloric/llm_wrapper.py
"""
Centralized LLM wrapper. Supports OpenAI-compatible (OpenRouter, OpenAI) and
Anthropic backends, plus a deterministic mock for dev/tests.

Every backend returns the same ChatTurn:
  ChatTurn(assistant_text="...", tool_calls=[ToolCall(id, name, arguments_json)], model, response_id)

Messages are OpenAI-style dicts ({role, content, tool_calls?, tool_call_id?});
the Anthropic backend translates them to tool_use / tool_result blocks.

Usage:
  client = make_chat_client(settings)
  turn = await client.complete_turn(messages, tools)
  turn = await client.stream_turn(messages, tools, on_text=print)

Speech-to-text:
  transcriber = make_transcriber(settings)
  text = await transcriber.transcribe(audio_bytes, filename="note.m4a", prompt=None)
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from caloric import monitoring
from caloric.config import Settings

MAX_AUDIO_BYTES = 12 * 1024 * 1024


class LLMError(RuntimeError):
    pass


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = ""

    def to_message(self) -> Dict[str, Any]:
        return {"id": self.id, "type": "function", "function": {"name": self.name, "arguments": self.arguments}}


@dataclass
class ChatTurn:
    assistant_text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    model: Optional[str] = None
    response_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Streaming: incremental decode of chat-completion chunks
# ---------------------------------------------------------------------------
class ToolCallAccumulator:
    """
    Folds streamed chat-completion chunks into one ChatTurn.

    Text deltas are concatenated. Tool-call deltas are merged by `index`: the
    id is taken when present, name and argument fragments are appended.
    """

    def __init__(self):
        self.text_parts: List[str] = []
        self._calls: Dict[int, Dict[str, str]] = {}

    def feed_payload(self, payload: Dict[str, Any]) -> Optional[str]:
        """Merge one decoded chunk; returns the text delta it carried, if any."""
        choices = payload.get("choices") or []
        if not choices:
            return None
        delta = (choices[0] or {}).get("delta") or {}

        text = delta.get("content")
        for call in delta.get("tool_calls") or []:
            self._merge_call(call or {})
        if isinstance(text, str) and text:
            self.text_parts.append(text)
            return text
        return None

    def _merge_call(self, delta_call: Dict[str, Any]):
        index = delta_call.get("index")
        index = index if isinstance(index, int) else 0
        existing = self._calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if delta_call.get("id"):
            existing["id"] = delta_call["id"]
        fn = delta_call.get("function") or {}
        existing["name"] += fn.get("name") or ""
        existing["arguments"] += fn.get("arguments") or ""

    def feed_sse_line(self, raw_line: str) -> Tuple[bool, Optional[str]]:
        """
        Decode one server-sent-event line. Returns (done, text_delta).
        Malformed data lines are skipped.
        """
        line = raw_line.strip()
        if not line.startswith("data:"):
            return False, None
        data = line[5:].strip()
        if not data:
            return False, None
        if data == "[DONE]":
            return True, None
        try:
            payload = json.loads(data)
        except ValueError:
            return False, None
        if not isinstance(payload, dict):
            return False, None
        return False, self.feed_payload(payload)

    def result(self, model: Optional[str] = None, response_id: Optional[str] = None) -> ChatTurn:
        calls = [
            ToolCall(id=c["id"], name=c["name"], arguments=c["arguments"])
            for _, c in sorted(self._calls.items())
            if c["id"] and c["name"]
        ]
        return ChatTurn(assistant_text="".join(self.text_parts), tool_calls=calls,
                        model=model, response_id=response_id)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------
class ChatClient:
    model: str = ""

    async def complete_turn(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> ChatTurn:
        raise NotImplementedError

    async def stream_turn(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]],
                          on_text: Optional[Callable[[str], None]] = None) -> ChatTurn:
        turn = await self.complete_turn(messages, tools)
        if on_text and turn.assistant_text:
            on_text(turn.assistant_text)
        return turn


class OpenAIChatClient(ChatClient):
    """OpenAI chat-completions API, including OpenAI-compatible gateways such as OpenRouter."""

    def __init__(self, api_key: str, model: str, base_url: Optional[str] = None,
                 provider_only: Optional[str] = None, timeout: float = 60.0):
        self.model = model
        self.provider_only = provider_only
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    def _extra_body(self) -> Optional[Dict[str, Any]]:
        if not self.provider_only:
            return None
        return {"provider": {"only": [self.provider_only], "allow_fallbacks": False}}

    async def complete_turn(self, messages, tools) -> ChatTurn:
        try:
            resp = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                tools=tools,
                tool_choice="auto",
                extra_body=self._extra_body(),
            )
        except Exception as e:
            raise LLMError(f"Chat completion failed ({self.model}): {e}") from e

        choices = getattr(resp, "choices", None) or []
        if not choices:
            raise LLMError("Chat completion returned no choices")
        message = choices[0].message
        calls = [
            ToolCall(id=c.id, name=c.function.name, arguments=c.function.arguments or "")
            for c in (message.tool_calls or [])
            if c.id and getattr(c, "function", None) and c.function.name
        ]
        return ChatTurn(assistant_text=message.content or "", tool_calls=calls,
                        model=self.model, response_id=getattr(resp, "id", None))

    async def stream_turn(self, messages, tools, on_text=None) -> ChatTurn:
        acc = ToolCallAccumulator()
        response_id = None
        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                tools=tools,
                tool_choice="auto",
                stream=True,
                extra_body=self._extra_body(),
            )
            async for chunk in stream:
                response_id = response_id or getattr(chunk, "id", None)
                text = acc.feed_payload(chunk.model_dump())
                if text and on_text:
                    on_text(text)
        except Exception as e:
            raise LLMError(f"Chat completion stream failed ({self.model}): {e}") from e
        return acc.result(model=self.model, response_id=response_id)


def _text_blocks(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, list):
        return content
    if isinstance(content, str) and content:
        return [{"type": "text", "text": content}]
    return []


def to_anthropic_request(messages: List[Dict[str, Any]],
                         tools: List[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Translate OpenAI-style history into (system, messages, tools) for the Messages API.
    Tool results become user-side tool_result blocks; same-role neighbours are merged.
    """
    system_parts: List[str] = []
    out: List[Dict[str, Any]] = []

    def push(role: str, blocks: List[Dict[str, Any]]):
        if not blocks:
            return
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(blocks)
        else:
            out.append({"role": role, "content": list(blocks)})

    for m in messages:
        role = m.get("role")
        if role == "system":
            if m.get("content"):
                system_parts.append(m["content"])
        elif role == "user":
            push("user", _text_blocks(m.get("content")))
        elif role == "assistant":
            blocks = _text_blocks(m.get("content"))
            for call in m.get("tool_calls") or []:
                fn = call.get("function") or {}
                try:
                    args = json.loads(fn.get("arguments") or "{}")
                except ValueError:
                    args = {}
                blocks.append({"type": "tool_use", "id": call.get("id"), "name": fn.get("name"),
                               "input": args if isinstance(args, dict) else {}})
            push("assistant", blocks)
        elif role == "tool":
            push("user", [{"type": "tool_result", "tool_use_id": m.get("tool_call_id"),
                           "content": m.get("content") or ""}])

    anthropic_tools = [
        {
            "name": t["function"]["name"],
            "description": t["function"].get("description", ""),
            "input_schema": t["function"].get("parameters", {"type": "object"}),
        }
        for t in tools
    ]
    return "\n".join(system_parts).strip(), out, anthropic_tools


def from_anthropic_response(resp: Any, model: str) -> ChatTurn:
    text = ""
    calls: List[ToolCall] = []
    for block in getattr(resp, "content", None) or []:
        kind = getattr(block, "type", None)
        if kind == "text":
            text += block.text
        elif kind == "tool_use":
            calls.append(ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input or {})))
    return ChatTurn(assistant_text=text, tool_calls=calls, model=model, response_id=getattr(resp, "id", None))


class AnthropicChatClient(ChatClient):
    def __init__(self, api_key: str, model: str, max_tokens: int = 4096, timeout: float = 60.0):
        self.model = model
        self.max_tokens = max_tokens
        self._client = AsyncAnthropic(api_key=api_key, timeout=timeout)

    async def complete_turn(self, messages, tools) -> ChatTurn:
        system, chat_messages, anthropic_tools = to_anthropic_request(messages, tools)
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": chat_messages,
            "tools": anthropic_tools,
            "tool_choice": {"type": "auto"},
        }
        if system:
            kwargs["system"] = system
        try:
            resp = await self._client.messages.create(**kwargs)
        except Exception as e:
            raise LLMError(f"Chat completion failed (anthropic): {e}") from e
        return from_anthropic_response(resp, self.model)


class MockChatClient(ChatClient):
    """
    Deterministic mock used in dev. Echoes the last user message and never calls tools.
    """

    model = "mock"

    async def complete_turn(self, messages, tools) -> ChatTurn:
        user_texts = [m.get("content") or "" for m in messages if m.get("role") == "user"]
        last = user_texts[-1] if user_texts else ""
        return ChatTurn(assistant_text=f"(mock) {last}"[:1000], tool_calls=[],
                        model=self.model, response_id=f"mock-{int(time.time() * 1000)}")


def make_chat_client(settings: Settings) -> ChatClient:
    if settings.mock_llm:
        return MockChatClient()
    if not settings.llm_api_key:
        monitoring.logger.warning("No LLM API key configured; using mock chat backend")
        return MockChatClient()
    if settings.llm_provider == "anthropic":
        return AnthropicChatClient(api_key=settings.llm_api_key, model=settings.agent_model)
    return OpenAIChatClient(
        api_key=settings.llm_api_key,
        model=settings.agent_model,
        base_url=settings.llm_base_url,
        provider_only=settings.llm_provider_only,
    )


# ---------------------------------------------------------------------------
# Speech-to-text
# ---------------------------------------------------------------------------
class TranscriptionError(ValueError):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def check_audio(audio: bytes):
    if not audio:
        raise TranscriptionError("Audio payload is empty", status_code=400)
    if len(audio) > MAX_AUDIO_BYTES:
        raise TranscriptionError("Audio payload exceeds 12MB", status_code=413)


class Transcriber:
    def __init__(self, api_key: str, model: str = "whisper-1", timeout: float = 60.0):
        self.model = model
        self._client = AsyncOpenAI(api_key=api_key, timeout=timeout)

    async def transcribe(self, audio: bytes, filename: str = "audio.m4a", prompt: Optional[str] = None) -> str:
        check_audio(audio)
        kwargs: Dict[str, Any] = {"model": self.model, "file": (filename, audio)}
        if prompt:
            kwargs["prompt"] = prompt
        try:
            resp = await self._client.audio.transcriptions.create(**kwargs)
        except Exception as e:
            raise LLMError(f"Transcription failed ({self.model}): {e}") from e
        return (getattr(resp, "text", "") or "").strip()


class MockTranscriber:
    model = "mock"

    async def transcribe(self, audio: bytes, filename: str = "audio.m4a", prompt: Optional[str] = None) -> str:
        check_audio(audio)
        return f"(mock transcript of {len(audio)} bytes)"


def make_transcriber(settings: Settings):
    if settings.mock_llm:
        return MockTranscriber()
    if not settings.transcribe_api_key:
        monitoring.logger.warning("No OPENAI_API_KEY configured; using mock transcription backend")
        return MockTranscriber()
    return Transcriber(api_key=settings.transcribe_api_key, model=settings.transcribe_model)
