# caloric/schemas.py
from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Upstream + cache records (internal)
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SearchParams:
    query: str
    offset: int
    max_items: int
    country_code: str
    resource_type: str


@dataclass(frozen=True)
class UpstreamResponse:
    status: int
    url: str
    data: Any = None
    text: Optional[str] = None


@dataclass(frozen=True)
class StoredResponse:
    """A cached search or detail row, as read back from the cache."""
    id: int
    status: int
    url: str
    data: Any = None
    text: Optional[str] = None


@dataclass(frozen=True)
class DetailKey:
    food_id: str
    version: str


# Detail resolution outcome. Failures carry status 0 only once serialized.
@dataclass(frozen=True)
class DetailFetched:
    key: DetailKey
    status: int
    url: str
    data: Any = None
    text: Optional[str] = None


@dataclass(frozen=True)
class DetailFailed:
    key: DetailKey
    url: str
    message: str


DetailOutcome = Union[DetailFetched, DetailFailed]

FAILED_DETAIL_STATUS = 0


# ---------------------------------------------------------------------------
# executeSearch payload (camelCase on the wire)
# ---------------------------------------------------------------------------
class SearchPayload(CamelModel):
    status: int
    url: str
    data: Any = None
    text: Optional[str] = None


class DetailPayload(CamelModel):
    food_id: str
    version: str
    status: int
    data: Any = None
    text: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: DetailOutcome) -> "DetailPayload":
        if isinstance(outcome, DetailFailed):
            return cls(
                food_id=outcome.key.food_id,
                version=outcome.key.version,
                status=FAILED_DETAIL_STATUS,
                data=None,
                text=outcome.message,
            )
        return cls(
            food_id=outcome.key.food_id,
            version=outcome.key.version,
            status=outcome.status,
            data=outcome.data,
            text=outcome.text,
        )


class SearchResult(CamelModel):
    search_response_id: int
    search: SearchPayload
    detail_count: int = 0
    details: List[DetailPayload] = []


# ---------------------------------------------------------------------------
# Normalized foods
# ---------------------------------------------------------------------------
class Nutrition(CamelModel):
    calories: Optional[float] = None
    protein: Optional[float] = None
    carbs: Optional[float] = None
    fat: Optional[float] = None
    fiber: Optional[float] = None
    sugars: Optional[float] = None
    sodium_mg: Optional[float] = None
    potassium_mg: Optional[float] = None


class SearchFood(CamelModel):
    id: str
    name: str
    brand: Optional[str] = None
    serving: Optional[str] = None
    nutrition: Optional[Nutrition] = None


class ResultFood(CamelModel):
    """A search hit as seen by the agent, addressed by a session-local result id."""
    result_id: str
    name: str
    brand: Optional[str] = None
    serving: Optional[str] = None
    nutrition: Optional[Nutrition] = None

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Agent HTTP bodies
# ---------------------------------------------------------------------------
class SessionRequest(CamelModel):
    user_id: str = Field(min_length=1)


class UserMessageAction(CamelModel):
    type: Literal["user-message"]
    message: str
    recent_logs: Optional[List[Any]] = None

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("message must not be empty")
        return v


class ApprovalAction(CamelModel):
    type: Literal["approval"]
    tool_call_id: str = Field(min_length=1)
    suggestion_id: str = Field(min_length=1)
    approved: bool
    reason: Optional[str] = None


TurnAction = Annotated[Union[UserMessageAction, ApprovalAction], Field(discriminator="type")]


class TurnRequest(CamelModel):
    session_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    action: TurnAction


class TurnResponse(CamelModel):
    status: str
    events: List[Dict[str, Any]] = []
