"""Declarative mapping from tool name to argument model and handler."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from mcp.types import Tool
from pydantic import BaseModel, ValidationError

from .errors import InvalidArguments, ToolNotFound

Handler = Callable[[Any, Any], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: Handler

    def to_tool(self) -> Tool:
        return Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.args_model.model_json_schema(),
        )


class ToolRegistry:
    """Tools in registration order."""

    def __init__(self):
        self._tools: dict[str, ToolSpec] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def tool(self, name: str, description: str, args_model: type[BaseModel]):
        """Decorator registering an async handler ``(context, args) -> dict``."""

        def decorator(handler: Handler) -> Handler:
            if name in self._tools:
                raise ValueError(f"Tool already registered: {name}")
            self._tools[name] = ToolSpec(name, description, args_model, handler)
            return handler

        return decorator

    def get(self, name: str) -> ToolSpec:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFound(f"Unknown tool: {name}", tool=name) from None

    def list_tools(self) -> list[Tool]:
        return [spec.to_tool() for spec in self._tools.values()]

    def validate(self, name: str, arguments: dict[str, Any] | None) -> tuple[ToolSpec, BaseModel]:
        """Resolve the tool and validate its arguments against the schema."""
        spec = self.get(name)
        try:
            args = spec.args_model.model_validate(arguments or {})
        except ValidationError as e:
            problems = [
                {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
                for err in e.errors()
            ]
            raise InvalidArguments(
                f"Invalid arguments for {name}: "
                + "; ".join(f"{p['loc'] or '(root)'}: {p['msg']}" for p in problems),
                tool=name,
                problems=problems,
            ) from e
        return spec, args
