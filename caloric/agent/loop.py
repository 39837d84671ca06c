# caloric/agent/loop.py
"""
AgentService: session start, turn handling and the tool-calling loop.

Turn flow:
  user-message -> append user turn -> run loop
  approval     -> resolve one suggestion; once its batch is fully resolved,
                  append one tool turn with all decisions -> run loop

The loop runs at most MAX_MODEL_TURNS model turns. It stops when the model
returns no tool calls (ready) or a tool pauses for approval
(awaiting-approval). Any failure inside the loop becomes an `error` event
and the session goes back to ready.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from caloric import monitoring
from caloric.agent.prompts import SYSTEM_PROMPT, TOOL_DEFINITIONS
from caloric.agent.sessions import (
    AgentSession,
    AgentStatus,
    ApprovalConflict,
    SessionStore,
    SuggestionNotFound,
)
from caloric.agent.tools import ToolExecutor
from caloric.llm_wrapper import ChatClient, check_audio
from caloric.processors.log_context import (
    build_recent_log_context_prompt,
    build_recent_log_transcription_prompt,
    parse_recent_log_hints,
)
from caloric.schemas import ApprovalAction, UserMessageAction

MAX_MODEL_TURNS = 8


@dataclass
class TurnOutcome:
    status: AgentStatus
    events: List[Dict[str, Any]] = field(default_factory=list)


def _error_message(exc: BaseException) -> str:
    return str(exc).strip() or exc.__class__.__name__


class AgentService:
    def __init__(self, store: SessionStore, executor: ToolExecutor, chat: ChatClient, transcriber=None):
        self.store = store
        self.executor = executor
        self.chat = chat
        self.transcriber = transcriber

    async def start_session(self, user_id: str) -> AgentSession:
        await self.store.prune()
        session = AgentSession.create(
            user_id=user_id,
            history=[{"role": "system", "content": SYSTEM_PROMPT}],
            now=self.store.now(),
        )
        await self.store.put(session)
        monitoring.logger.info("Agent session started", extra={"session_id": session.session_id})
        return session

    async def handle_turn(self, session_id: str, user_id: str,
                          action: Union[UserMessageAction, ApprovalAction]) -> TurnOutcome:
        await self.store.prune()
        session = await self.store.load(session_id, user_id)

        async with session.lock:
            session.last_activity = self.store.now()
            try:
                if isinstance(action, ApprovalAction):
                    return await self._resolve_approval(session, action)
                return await self._user_message(session, action)
            finally:
                session.last_activity = self.store.now()
                await self.store.put(session)

    async def _user_message(self, session: AgentSession, action: UserMessageAction) -> TurnOutcome:
        if session.pending_approvals or session.status == AgentStatus.AWAITING_APPROVAL:
            raise ApprovalConflict("Resolve pending approvals before sending a new message")

        if action.recent_logs is not None:
            session.recent_logs = parse_recent_log_hints(action.recent_logs)
        session.history.append({"role": "user", "content": action.message})
        return await self._run_loop(session)

    async def _resolve_approval(self, session: AgentSession, action: ApprovalAction) -> TurnOutcome:
        batch = session.pending_approvals.get(action.tool_call_id)
        if batch is None:
            raise ApprovalConflict(f"No pending approval for tool call {action.tool_call_id}")
        suggestion = next((s for s in batch if s.suggestion_id == action.suggestion_id), None)
        if suggestion is None:
            raise SuggestionNotFound(f"Suggestion {action.suggestion_id} not found")

        suggestion.resolve(action.approved, action.reason)
        if not all(s.resolved for s in batch):
            session.status = AgentStatus.AWAITING_APPROVAL
            return TurnOutcome(status=session.status)

        del session.pending_approvals[action.tool_call_id]
        session.history.append({
            "role": "tool",
            "tool_call_id": action.tool_call_id,
            "content": json.dumps({"decisions": [s.decision_json() for s in batch]}),
        })
        return await self._run_loop(session)

    def _messages(self, session: AgentSession) -> List[Dict[str, Any]]:
        context = build_recent_log_context_prompt(session.recent_logs)
        if not context:
            return list(session.history)
        return [session.history[0], {"role": "system", "content": context}, *session.history[1:]]

    async def _run_loop(self, session: AgentSession) -> TurnOutcome:
        events: List[Dict[str, Any]] = []
        status = AgentStatus.READY
        try:
            for _ in range(MAX_MODEL_TURNS):
                turn = await self.chat.complete_turn(self._messages(session), TOOL_DEFINITIONS)
                monitoring.inc_agent_turn("tool_calls" if turn.tool_calls else "final")

                has_text = bool(turn.assistant_text.strip())
                if has_text:
                    events.append({"type": "assistant", "text": turn.assistant_text})
                entry: Dict[str, Any] = {"role": "assistant", "content": turn.assistant_text if has_text else None}
                if turn.tool_calls:
                    entry["tool_calls"] = [c.to_message() for c in turn.tool_calls]
                session.history.append(entry)

                if not turn.tool_calls:
                    break

                paused = False
                for call in turn.tool_calls:
                    result = await self.executor.execute(session, call)
                    events.extend(result.events)
                    if result.pause_for_approval:
                        paused = True
                        break
                    session.history.append({
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(result.output or {}),
                    })
                if paused:
                    status = AgentStatus.AWAITING_APPROVAL
                    break
            else:
                monitoring.logger.warning(
                    "Agent loop hit the model turn cap",
                    extra={"session_id": session.session_id, "max_turns": MAX_MODEL_TURNS},
                )
        except Exception as e:
            monitoring.inc_agent_turn("error")
            monitoring.logger.exception("Agent loop failed", extra={"session_id": session.session_id})
            message = _error_message(e)
            events.append({"type": "error", "message": message})
            self._close_open_tool_calls(session, message)
            status = AgentStatus.READY

        session.status = status
        return TurnOutcome(status=status, events=events)

    @staticmethod
    def _close_open_tool_calls(session: AgentSession, message: str):
        """Reply with an error to every tool call of the last assistant entry that has no tool turn yet."""
        answered = set()
        open_ids: List[str] = []
        for entry in reversed(session.history):
            if entry.get("role") == "tool":
                answered.add(entry.get("tool_call_id"))
                continue
            if entry.get("role") == "assistant":
                open_ids = [c["id"] for c in entry.get("tool_calls") or [] if c["id"] not in answered]
            break
        for call_id in open_ids:
            session.history.append({
                "role": "tool",
                "tool_call_id": call_id,
                "content": json.dumps({"error": message}),
            })

    async def transcribe(self, audio: bytes, filename: str = "audio.m4a",
                         session_id: Optional[str] = None, user_id: Optional[str] = None) -> str:
        check_audio(audio)
        prompt = None
        if session_id:
            session = await self.store.load(session_id, user_id or "")
            prompt = build_recent_log_transcription_prompt(session.recent_logs)
        return await self.transcriber.transcribe(audio, filename=filename, prompt=prompt)
