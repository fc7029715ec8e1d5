from pydantic import ValidationError

from helm.tools.base import Tool, ToolContext, ToolExecutor, ToolOutput, ToolSpec


class ToolRegistry(ToolExecutor):
    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def specs(self, names: set[str] | None = None) -> list[ToolSpec]:
        return [tool.spec() for name, tool in self._tools.items() if names is None or name in names]

    async def execute(self, tool_id: str, args: dict, ctx: ToolContext) -> ToolOutput:
        tool = self._tools.get(tool_id)
        if tool is None:
            raise KeyError(f"Unknown tool: {tool_id}")

        if tool.input_model is not None:
            try:
                args = tool.input_model(**args).model_dump()
            except ValidationError as e:
                errors = "; ".join(
                    f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors() if err.get("loc")
                )
                raise ValueError(f"Invalid arguments: {errors}") from e

        return await tool.execute(ctx, **args)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
