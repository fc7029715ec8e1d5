import pytest
from pydantic import BaseModel

from helm.core.cancel import CancellationToken
from helm.permission import PermissionDenied
from helm.tools.base import Tool, ToolContext, ToolOutput, ToolSpec
from helm.tools.registry import ToolRegistry
from tests.conftest import SESSION, BashTool, ListFilesTool


class Location(BaseModel):
    path: str
    line: int = 1


class EditArgs(BaseModel):
    target: Location
    text: str


class EditTool(Tool):
    name = "edit"
    description = "Edit a file"
    input_model = EditArgs

    def patterns(self, args: dict) -> list[str]:
        return [args["target"]["path"]]

    async def execute(self, ctx: ToolContext, target: dict, text: str) -> ToolOutput:
        await ctx.ask("write", [target["path"]])
        return ToolOutput(output=f"wrote {len(text)} chars", title=target["path"])


def context(ask_hook=None) -> ToolContext:
    return ToolContext(
        session_id=SESSION, message_id="msg_1", call_id="c1", cancel=CancellationToken(), ask_hook=ask_hook
    )


class TestSpec:
    def test_schema_inlines_refs(self):
        spec = EditTool().spec()
        target = spec.parameters["properties"]["target"]
        assert "$ref" not in target
        assert target["properties"]["path"]["type"] == "string"
        assert spec.parameters["required"] == ["target", "text"]

    def test_permission_defaults_to_name(self):
        assert BashTool().spec().permission_id == "bash"
        assert ListFilesTool().spec().permission_id == "read"

    def test_patterns(self):
        spec = BashTool().spec()
        assert spec.patterns_for({"command": "git status"}) == ["git status"]
        assert ToolSpec(id="plain").patterns_for({}) == ["*"]

    def test_openai_format(self):
        payload = ListFilesTool().spec().to_dict()
        assert payload["type"] == "function"
        assert payload["function"]["name"] == "list_files"


class TestRegistry:
    @pytest.mark.asyncio
    async def test_execute_validates_and_dispatches(self):
        registry = ToolRegistry([EditTool()])
        output = await registry.execute("edit", {"target": {"path": "a.py"}, "text": "abc"}, context())
        assert output == ToolOutput(output="wrote 3 chars", title="a.py")

    @pytest.mark.asyncio
    async def test_invalid_arguments(self):
        registry = ToolRegistry([EditTool()])
        with pytest.raises(ValueError, match="Invalid arguments"):
            await registry.execute("edit", {"target": {"line": 2}}, context())

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        with pytest.raises(KeyError):
            await ToolRegistry().execute("nope", {}, context())

    @pytest.mark.asyncio
    async def test_context_ask_reaches_hook(self):
        asked = []

        async def hook(permission, patterns, metadata):
            asked.append((permission, list(patterns)))
            raise PermissionDenied(permission, patterns[0], by_user=True)

        registry = ToolRegistry([EditTool()])
        with pytest.raises(PermissionDenied):
            await registry.execute("edit", {"target": {"path": "a.py"}, "text": ""}, context(hook))
        assert asked == [("write", ["a.py"])]

    def test_specs_filter(self):
        registry = ToolRegistry([EditTool(), BashTool()])
        assert [s.id for s in registry.specs({"bash"})] == ["bash"]
        assert len(registry) == 2
        assert "edit" in registry
