# caloric/agent/sessions.py
"""
Agent session state and the session store.

A session is addressed by (session_id, user_id) together. Sessions live in
memory only and are evicted after an idle period; prune() is called
opportunistically by the agent before session-start and turn requests.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from caloric import monitoring
from caloric.processors.log_context import RecentLogHint
from caloric.processors.meals import Meal
from caloric.schemas import ResultFood

DEFAULT_IDLE_SECONDS = 8 * 3600
REJECTION_REASON = "User rejected this suggestion."


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class AgentError(Exception):
    status_code = 400
    error_code = "E_AGENT"


class SessionNotFound(AgentError):
    status_code = 404
    error_code = "E_SESSION_NOT_FOUND"


class SessionForbidden(AgentError):
    status_code = 403
    error_code = "E_SESSION_FORBIDDEN"


class ApprovalConflict(AgentError):
    status_code = 409
    error_code = "E_APPROVAL_CONFLICT"


class SuggestionNotFound(AgentError):
    status_code = 404
    error_code = "E_SUGGESTION_NOT_FOUND"


# ---------------------------------------------------------------------------
# Session model
# ---------------------------------------------------------------------------
class AgentStatus(str, Enum):
    READY = "ready"
    AWAITING_APPROVAL = "awaiting-approval"


@dataclass(frozen=True)
class ApprovalResolution:
    approved: bool
    reason: Optional[str] = None


@dataclass
class ApprovalSuggestion:
    suggestion_id: str
    result_id: str
    meal: Meal
    portion: float
    reason: str
    food: ResultFood
    resolution: Optional[ApprovalResolution] = None

    @property
    def resolved(self) -> bool:
        return self.resolution is not None

    def resolve(self, approved: bool, reason: Optional[str] = None) -> ApprovalResolution:
        if self.resolution is not None:
            raise ApprovalConflict(f"Suggestion {self.suggestion_id} is already resolved")
        if approved:
            self.resolution = ApprovalResolution(approved=True)
        else:
            self.resolution = ApprovalResolution(approved=False, reason=(reason or "").strip() or REJECTION_REASON)
        return self.resolution

    def to_json(self) -> Dict[str, Any]:
        return {
            "suggestionId": self.suggestion_id,
            "resultId": self.result_id,
            "meal": self.meal.value,
            "portion": self.portion,
            "reason": self.reason,
            "food": self.food.to_json(),
        }

    def decision_json(self) -> Dict[str, Any]:
        out = {
            "suggestionId": self.suggestion_id,
            "resultId": self.result_id,
            "meal": self.meal.value,
            "portion": self.portion,
            "approved": bool(self.resolution and self.resolution.approved),
        }
        if self.resolution is not None and self.resolution.reason:
            out["reason"] = self.resolution.reason
        return out


@dataclass
class AgentSession:
    session_id: str
    user_id: str
    history: List[Dict[str, Any]] = field(default_factory=list)
    result_counter: int = 1
    results: Dict[str, ResultFood] = field(default_factory=dict)
    # tool_call_id -> suggestions awaiting decisions
    pending_approvals: Dict[str, List[ApprovalSuggestion]] = field(default_factory=dict)
    status: AgentStatus = AgentStatus.READY
    last_activity: float = 0.0
    recent_logs: List[RecentLogHint] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @classmethod
    def create(cls, user_id: str, history: List[Dict[str, Any]], now: float) -> "AgentSession":
        return cls(session_id=uuid.uuid4().hex, user_id=user_id, history=history, last_activity=now)

    def next_result_id(self) -> str:
        result_id = f"r{self.result_counter}"
        self.result_counter += 1
        return result_id


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
class SessionStore:
    """Session store interface. Implementations own the idle clock."""

    def now(self) -> float:
        raise NotImplementedError

    async def get(self, session_id: str) -> Optional[AgentSession]:
        raise NotImplementedError

    async def put(self, session: AgentSession):
        raise NotImplementedError

    async def delete(self, session_id: str):
        raise NotImplementedError

    async def prune(self) -> int:
        raise NotImplementedError

    async def load(self, session_id: str, user_id: str) -> AgentSession:
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if session.user_id != user_id:
            raise SessionForbidden("Session belongs to another user")
        return session


class InMemorySessionStore(SessionStore):
    def __init__(self, idle_seconds: float = DEFAULT_IDLE_SECONDS, clock: Callable[[], float] = time.time):
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._sessions: Dict[str, AgentSession] = {}

    def __len__(self):
        return len(self._sessions)

    def now(self) -> float:
        return self._clock()

    async def get(self, session_id: str) -> Optional[AgentSession]:
        return self._sessions.get(session_id)

    async def put(self, session: AgentSession):
        self._sessions[session.session_id] = session
        monitoring.set_active_sessions(len(self._sessions))

    async def delete(self, session_id: str):
        self._sessions.pop(session_id, None)
        monitoring.set_active_sessions(len(self._sessions))

    async def prune(self) -> int:
        cutoff = self.now() - self.idle_seconds
        stale = [sid for sid, s in self._sessions.items() if s.last_activity < cutoff]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            monitoring.inc_sessions_evicted(len(stale))
            monitoring.logger.info("Evicted idle agent sessions", extra={"count": len(stale)})
        monitoring.set_active_sessions(len(self._sessions))
        return len(stale)
