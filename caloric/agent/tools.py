# caloric/agent/tools.py
"""
Tool executor for the two agent tools.

  searchFoods(query, limit)                -> {"foods": [...]} + a `search` event
  requestFoodApprovals(suggestions[1..8])  -> pause + an `approval` event

Argument problems never raise out of execute(); they come back as
{"error": "..."} outputs so the model can correct itself. Upstream and
database failures do propagate.
"""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import ConfigDict, Field, ValidationError, field_validator

from caloric import monitoring
from caloric.agent.sessions import AgentSession, ApprovalSuggestion
from caloric.llm_wrapper import ToolCall
from caloric.orchestrator import SearchOrchestrator
from caloric.processors.food_normalizer import map_search_results
from caloric.processors.meals import DEFAULT_MEAL, DEFAULT_PORTION, Meal, normalize_meal, sanitize_portion
from caloric.schemas import CamelModel, ResultFood, SearchParams

SEARCH_COUNTRY_CODE = "US"
SEARCH_RESOURCE_TYPE = "foods"
MAX_UNKNOWN_IDS_REPORTED = 5


class ToolInputError(ValueError):
    pass


class ToolName(str, Enum):
    SEARCH_FOODS = "searchFoods"
    REQUEST_FOOD_APPROVALS = "requestFoodApprovals"


class SearchFoodsArgs(CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    query: str = Field(min_length=2)
    limit: int = Field(default=6, ge=1, le=10)


class SuggestionArgs(CamelModel):
    result_id: str = Field(min_length=1)
    meal: Meal = DEFAULT_MEAL
    portion: float = DEFAULT_PORTION
    reason: str = ""

    @field_validator("meal", mode="before")
    @classmethod
    def _meal(cls, v: Any) -> Meal:
        if v is None:
            return DEFAULT_MEAL
        meal = normalize_meal(v)
        if meal is None:
            raise ValueError(f"unknown meal: {v!r}")
        return meal


class ApprovalRequestArgs(CamelModel):
    suggestions: List[SuggestionArgs] = Field(min_length=1, max_length=8)


@dataclass
class ToolResult:
    output: Optional[Dict[str, Any]] = None
    pause_for_approval: bool = False
    events: List[Dict[str, Any]] = field(default_factory=list)


def parse_tool_arguments(raw: Optional[str]) -> Any:
    """Blank arguments mean {}; anything else must be JSON (ValueError otherwise)."""
    if not raw or not raw.strip():
        return {}
    return json.loads(raw)


def _validate(model, raw: Any, tool: ToolName):
    try:
        return model.model_validate(raw)
    except ValidationError:
        raise ToolInputError(f"Invalid {tool.value} input.")


class ToolExecutor:
    def __init__(self, orchestrator: SearchOrchestrator, new_id: Callable[[], str] = lambda: uuid.uuid4().hex):
        self.orchestrator = orchestrator
        self.new_id = new_id
        self._handlers = {
            ToolName.SEARCH_FOODS: self._search_foods,
            ToolName.REQUEST_FOOD_APPROVALS: self._request_food_approvals,
        }

    async def execute(self, session: AgentSession, call: ToolCall) -> ToolResult:
        try:
            tool = ToolName(call.name)
        except ValueError:
            monitoring.inc_tool_call(call.name, "unknown")
            return ToolResult(output={"error": f"Unknown tool: {call.name}"})

        try:
            raw = parse_tool_arguments(call.arguments)
        except ValueError:
            monitoring.inc_tool_call(tool.value, "rejected")
            return ToolResult(output={"error": "Tool arguments were invalid JSON."})

        try:
            result = await self._handlers[tool](session, call, raw)
        except ToolInputError as e:
            monitoring.inc_tool_call(tool.value, "rejected")
            monitoring.logger.info(
                "Tool input rejected",
                extra={"session_id": session.session_id, "tool": tool.value, "error": str(e)},
            )
            return ToolResult(output={"error": str(e)})

        monitoring.inc_tool_call(tool.value, "paused" if result.pause_for_approval else "ok")
        return result

    async def _search_foods(self, session: AgentSession, call: ToolCall, raw: Any) -> ToolResult:
        args = _validate(SearchFoodsArgs, raw, ToolName.SEARCH_FOODS)
        params = SearchParams(
            query=args.query,
            offset=0,
            max_items=min(20, max(args.limit * 2, 8)),
            country_code=SEARCH_COUNTRY_CODE,
            resource_type=SEARCH_RESOURCE_TYPE,
        )
        result = await self.orchestrator.execute_search(params, include_details=True)

        foods: List[ResultFood] = []
        for food in map_search_results(result)[:args.limit]:
            result_food = ResultFood(
                result_id=session.next_result_id(),
                name=food.name,
                brand=food.brand,
                serving=food.serving,
                nutrition=food.nutrition.model_copy() if food.nutrition else None,
            )
            session.results[result_food.result_id] = result_food
            foods.append(result_food)

        payload = [f.to_json() for f in foods]
        return ToolResult(
            output={"foods": payload},
            events=[{"type": "search", "toolCallId": call.id, "foods": payload}],
        )

    async def _request_food_approvals(self, session: AgentSession, call: ToolCall, raw: Any) -> ToolResult:
        args = _validate(ApprovalRequestArgs, raw, ToolName.REQUEST_FOOD_APPROVALS)

        resolved: List[ApprovalSuggestion] = []
        unknown: List[str] = []
        seen = set()
        for suggestion in args.suggestions:
            result_id = suggestion.result_id.strip()
            food = session.results.get(result_id)
            if food is None:
                unknown.append(result_id or "(empty)")
                continue

            portion = sanitize_portion(suggestion.portion)
            reason = suggestion.reason.strip()
            if not reason:
                continue

            key = (result_id, suggestion.meal, portion)
            if key in seen:
                continue
            seen.add(key)

            resolved.append(ApprovalSuggestion(
                suggestion_id=self.new_id(),
                result_id=result_id,
                meal=suggestion.meal,
                portion=portion,
                reason=reason,
                food=food,
            ))

        if unknown:
            raise ToolInputError("Unknown result IDs: " + ", ".join(unknown[:MAX_UNKNOWN_IDS_REPORTED]))
        if not resolved:
            raise ToolInputError("No valid suggestions to approve.")

        session.pending_approvals[call.id] = resolved
        return ToolResult(
            pause_for_approval=True,
            events=[{
                "type": "approval",
                "toolCallId": call.id,
                "suggestions": [s.to_json() for s in resolved],
            }],
        )
