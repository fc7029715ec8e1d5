from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar

from pydantic import BaseModel

from helm.core.cancel import CancellationToken

type AskHook = Callable[[str, Sequence[str], dict | None], Awaitable[None]]
type PatternFn = Callable[[dict], list[str]]


def _inline_refs(schema: dict) -> dict:
    """Resolve $ref pointers by inlining definitions from $defs."""
    defs = schema.get("$defs", {})
    if not defs:
        return schema

    def _resolve(node: Any) -> Any:
        if isinstance(node, dict):
            if "$ref" in node:
                ref_name = node["$ref"].rsplit("/", 1)[-1]
                if ref_name in defs:
                    return _resolve(defs[ref_name])
                return node
            return {k: _resolve(v) for k, v in node.items() if k != "$defs"}
        if isinstance(node, list):
            return [_resolve(item) for item in node]
        return node

    return _resolve(schema)


@dataclass(frozen=True)
class ToolOutput:
    output: str
    title: str = ""
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolSpec:
    """What the core knows about a tool: its id, schema and the permission it needs."""

    id: str
    description: str = ""
    parameters: dict = field(default_factory=lambda: {"type": "object", "properties": {}})
    permission: str = ""
    patterns: PatternFn | None = None

    @property
    def permission_id(self) -> str:
        return self.permission or self.id

    def patterns_for(self, args: dict) -> list[str]:
        if self.patterns is None:
            return ["*"]
        return self.patterns(args) or ["*"]

    def to_dict(self) -> dict:
        return {
            "type": "function",
            "function": {"name": self.id, "description": self.description, "parameters": self.parameters},
        }


@dataclass
class ToolContext:
    """Per-call context handed to the executor."""

    session_id: str
    message_id: str
    call_id: str
    cancel: CancellationToken
    ask_hook: AskHook | None = None

    async def ask(self, permission: str, patterns: Sequence[str], metadata: dict | None = None) -> None:
        """Request a further permission mid-execution; raises PermissionDenied when refused."""
        if self.ask_hook is not None:
            await self.ask_hook(permission, patterns, metadata)


class ToolExecutor(ABC):
    @abstractmethod
    async def execute(self, tool_id: str, args: dict, ctx: ToolContext) -> ToolOutput: ...


class Tool(ABC):
    name: str
    description: str
    permission: str | None = None
    input_model: ClassVar[type[BaseModel] | None] = None

    def patterns(self, args: dict) -> list[str]:
        return ["*"]

    @abstractmethod
    async def execute(self, ctx: ToolContext, **kwargs: Any) -> ToolOutput: ...

    def spec(self) -> ToolSpec:
        parameters: dict = {"type": "object", "properties": {}, "required": []}
        if self.input_model is not None:
            json_schema = _inline_refs(self.input_model.model_json_schema())
            parameters["properties"] = json_schema.get("properties", {})
            parameters["required"] = json_schema.get("required", [])
        return ToolSpec(
            id=self.name,
            description=self.description,
            parameters=parameters,
            permission=self.permission or self.name,
            patterns=self.patterns,
        )
