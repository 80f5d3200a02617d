import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from data_client import MODELS, OPERATIONS, WRITE_OPERATIONS, RecordAccessor
from models import MCPTool

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

FILTER_SCHEMA = {
    "type": "object",
    "description": "Field filters: a value for equality, or an object with equals/not/in/contains/gt/gte/lt/lte",
    "additionalProperties": True
}

ORDER_BY_SCHEMA = {
    "oneOf": [
        {"type": "object", "additionalProperties": {"type": "string", "enum": ["asc", "desc"]}},
        {"type": "array", "items": {"type": "object", "additionalProperties": {"type": "string", "enum": ["asc", "desc"]}}}
    ],
    "description": "Sort order, e.g. {\"createdAt\": \"desc\"}"
}

MODEL_FIELDS = {
    "Post": {
        "title": {"type": "string", "description": "Post title"},
        "content": {"type": "string", "description": "Post body"},
        "published": {"type": "boolean", "description": "Whether the post is publicly visible"},
        "viewCount": {"type": "integer", "description": "Number of views"}
    },
    "User": {
        "name": {"type": "string", "description": "Display name"},
        "email": {"type": "string", "description": "Email address"}
    }
}


def _args_schema(model: str, operation: str) -> Dict[str, Any]:
    """JSON schema of the ``args`` object for one model operation"""
    fields = MODEL_FIELDS[model]
    if operation == "findMany":
        properties = {
            "where": FILTER_SCHEMA,
            "orderBy": ORDER_BY_SCHEMA,
            "take": {"type": "integer", "minimum": 0, "maximum": 100, "description": "Maximum records to return"},
            "skip": {"type": "integer", "minimum": 0, "description": "Records to skip"}
        }
        required = []
    elif operation == "createMany":
        row = {"type": "object", "properties": fields, "additionalProperties": False}
        properties = {"data": {"oneOf": [row, {"type": "array", "items": row}]}}
        required = ["data"]
    elif operation == "updateMany":
        properties = {
            "where": FILTER_SCHEMA,
            "data": {"type": "object", "properties": fields, "additionalProperties": False}
        }
        required = ["data"]
    else:
        properties = {"where": FILTER_SCHEMA}
        required = []
    return {"type": "object", "properties": properties, "required": required}


@dataclass
class Tool:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler
    write: bool = False

    def definition(self) -> MCPTool:
        return MCPTool(name=self.name, description=self.description, inputSchema=self.input_schema)


class ToolRegistry:
    """Named operations with typed arguments, bound to one session's user"""

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def add(self, tool: Tool):
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def tools(self) -> List[Tool]:
        return list(self._tools.values())

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def call(self, name: str, arguments: Dict[str, Any]) -> str:
        """Run a tool and return its result as JSON text"""
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(name)
        result = await tool.handler(arguments)
        return json.dumps(result, indent=2, default=str)


def build_tool_registry(accessor: RecordAccessor) -> ToolRegistry:
    """Create the ``<Model>_<operation>`` tools for one authenticated user"""
    registry = ToolRegistry()
    # Named in every description as well as in the server instructions
    current_user = f"The current user id is '{accessor.user_id}'."

    for model in MODELS:
        for operation in OPERATIONS:
            registry.add(Tool(
                name=f"{model}_{operation}",
                description=f"Database API '{operation}' for model '{model}'. {current_user}",
                input_schema={
                    "type": "object",
                    "properties": {"args": _args_schema(model, operation)},
                    "required": ["args"] if operation != "findMany" else []
                },
                handler=_make_handler(accessor, model, operation),
                write=operation in WRITE_OPERATIONS
            ))

    logger.debug(f"Built {len(registry)} tools for user {accessor.user_id}")
    return registry


def _make_handler(accessor: RecordAccessor, model: str, operation: str) -> ToolHandler:
    async def handler(arguments: Dict[str, Any]) -> Any:
        return await accessor.execute(model, operation, arguments.get("args"))
    return handler
