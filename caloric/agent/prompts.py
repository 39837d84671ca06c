# caloric/agent/prompts.py
from caloric.processors.meals import Meal

SYSTEM_PROMPT = " ".join([
    "You are Caloric's food logging assistant.",
    "Always call searchFoods before suggesting a food entry.",
    "searchFoods returns local result IDs. Only reference those IDs later.",
    "Never send or edit nutrition/name/brand/serving in approval requests.",
    "When ready, call requestFoodApprovals once with one or more suggestions.",
    "Only set resultId, meal, portion, and reason in each suggestion.",
    "Portion should be in quarter increments (0.25).",
    "If the user rejects suggestions, explain briefly and search again.",
])

# OpenAI function-tool format; llm_wrapper translates for Anthropic.
TOOL_DEFINITIONS = [
    {
        "type": "function",
        "function": {
            "name": "searchFoods",
            "description": "Search foods in the app food database.",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "User query for food search."},
                    "limit": {
                        "type": "integer",
                        "minimum": 1,
                        "maximum": 10,
                        "description": "Max number of foods to return.",
                    },
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "requestFoodApprovals",
            "description": (
                "Request user approval for one or more selected food entries "
                "using local result IDs from searchFoods."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "suggestions": {
                        "type": "array",
                        "minItems": 1,
                        "maxItems": 8,
                        "items": {
                            "type": "object",
                            "properties": {
                                "resultId": {"type": "string"},
                                "meal": {"type": "string", "enum": [m.value for m in Meal]},
                                "portion": {"type": "number", "minimum": 0.25},
                                "reason": {"type": "string"},
                            },
                            "required": ["resultId", "meal", "portion", "reason"],
                        },
                    },
                },
                "required": ["suggestions"],
            },
        },
    },
]
