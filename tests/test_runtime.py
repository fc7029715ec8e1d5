import logging

import pytest
import structlog

from helm.config import Config
from helm.permission import PermissionAction, PermissionReply, PermissionRule
from helm.runtime import Runtime
from helm.session.models import FinishReason, ToolStatus
from tests.conftest import SESSION, FakeStreamingClient, ListFilesTool, ScriptedPrompt, text_turn, tool_turn


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(data_dir=tmp_path, model="test/model", context_limit=0, approvals_namespace="tests")


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    structlog.reset_defaults()


class TestRuntime:
    @pytest.mark.asyncio
    async def test_prompt_end_to_end(self, config):
        client = FakeStreamingClient(tool_turn("list_files", {"path": "."}), text_turn("three files"))
        runtime = Runtime(
            config,
            client=client,
            tools=[ListFilesTool()],
            ruleset=[PermissionRule(permission="read", action=PermissionAction.ALLOW)],
        )
        await runtime.connect()
        try:
            result = await runtime.loop.prompt(SESSION, "what is here?")
            messages = await runtime.store.list_messages(SESSION)
        finally:
            await runtime.close()

        assert result.finish_reason == FinishReason.STOP
        assert messages[1].tool_parts[0].status == ToolStatus.COMPLETED
        assert client.closed
        assert (config.data_dir / "sessions.db").exists()

    @pytest.mark.asyncio
    async def test_always_approval_survives_restart(self, config):
        prompt = ScriptedPrompt(PermissionReply.ALWAYS)
        runtime = Runtime(config, client=FakeStreamingClient(), prompt=prompt)
        await runtime.connect()
        await runtime.permissions.ask(SESSION, "bash", ["ls"], [])
        await runtime.close()

        restarted = Runtime(config, client=FakeStreamingClient())
        await restarted.connect()
        try:
            assert restarted.permissions.evaluate("bash", "ls", []) == PermissionAction.ALLOW
        finally:
            await restarted.close()

    @pytest.mark.asyncio
    async def test_connect_applies_log_level(self, tmp_path):
        config = Config(data_dir=tmp_path, model="test/model", context_limit=0, log_level="warning")
        runtime = Runtime(config, client=FakeStreamingClient())
        await runtime.connect()
        try:
            wrapper = structlog.get_config()["wrapper_class"]
        finally:
            await runtime.close()

        assert wrapper is structlog.make_filtering_bound_logger(logging.WARNING)
