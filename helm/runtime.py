import aiosqlite
import litellm.llms.custom_httpx.async_client_cleanup as litellm_cleanup

from helm import database
from helm.channel import Channel
from helm.config import Config, get_config
from helm.context.compaction import Compactor
from helm.core.loop import SessionLoop
from helm.core.processor import StreamProcessor
from helm.core.registry import SessionRegistry
from helm.llm.base import StreamingClient
from helm.llm.litellm_client import LiteLLMClient
from helm.logging import configure_logging, get_logger
from helm.permission import ApprovalStore, PermissionEvaluator, PermissionRule, PromptCallback, SqliteApprovalBackend
from helm.session.store import MessageStore, SqliteMessageStore
from helm.tools.base import Tool
from helm.tools.registry import ToolRegistry

_logger = get_logger(__name__)


class Runtime:
    """Wires stores, permissions, processor, compactor and loop from a Config."""

    def __init__(
        self,
        config: Config | None = None,
        *,
        client: StreamingClient | None = None,
        tools: list[Tool] | None = None,
        ruleset: list[PermissionRule] | None = None,
        prompt: PromptCallback | None = None,
        system: list[str] | None = None,
    ):
        self.config = config or get_config()
        self.channel = Channel()
        self.client = client or LiteLLMClient()
        self.tools = ToolRegistry(tools)
        self.ruleset = ruleset or []
        self.prompt = prompt
        self.system = system or []
        self.registry = SessionRegistry()

        self.store: MessageStore | None = None
        self.approvals: ApprovalStore | None = None
        self.permissions: PermissionEvaluator | None = None
        self.loop: SessionLoop | None = None
        self._conn: aiosqlite.Connection | None = None

    @property
    def connected(self) -> bool:
        return self.loop is not None

    async def connect(self) -> None:
        if self.connected:
            return

        configure_logging(self.config.log_level)
        self.config.data_dir.mkdir(parents=True, exist_ok=True)
        self._conn = await database.connect(self.config.sessions_db_path)

        store = SqliteMessageStore(self._conn, self.channel)
        await store.init_schema()
        self.store = store

        backend = SqliteApprovalBackend(self._conn)
        await backend.init_schema()
        self.approvals = ApprovalStore(self.config.approvals_namespace, backend)
        await self.approvals.load()
        self.permissions = PermissionEvaluator(self.approvals, self.prompt)

        compaction = self.config.compaction_policy
        processor = StreamProcessor(
            self.client,
            store,
            self.tools,
            self.permissions,
            model=self.config.model,
            compaction=compaction,
            retry=self.config.retry_policy,
            doom_loop_threshold=self.config.doom_loop_threshold,
            channel=self.channel,
        )
        self.loop = SessionLoop(
            store,
            processor,
            Compactor(store, compaction, self.channel),
            self.tools,
            registry=self.registry,
            ruleset=self.ruleset,
            system=self.system,
            max_steps=self.config.max_steps,
            channel=self.channel,
        )
        _logger.info("Runtime connected (model=%s, db=%s)", self.config.model, self.config.sessions_db_path)

    async def close(self) -> None:
        for session_id in self.registry.active():
            self.registry.cancel(session_id, "runtime closed")
        await self.client.close()
        if self._conn:
            await self._conn.close()
            self._conn = None
        self.loop = None
        await litellm_cleanup.close_litellm_async_clients()
