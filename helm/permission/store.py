import json
from abc import ABC, abstractmethod

import aiosqlite

from helm.logging import get_logger
from helm.permission.models import PermissionRule

_logger = get_logger(__name__)


class ApprovalBackend(ABC):
    """Key-value persistence of approved rules, one list per namespace."""

    @abstractmethod
    async def read(self, namespace: str) -> list[PermissionRule]: ...

    @abstractmethod
    async def write(self, namespace: str, rules: list[PermissionRule]) -> None: ...


SCHEMA = """
CREATE TABLE IF NOT EXISTS approvals (
    namespace TEXT PRIMARY KEY,
    rules TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

SQL_SAVE = """
INSERT OR REPLACE INTO approvals (namespace, rules, updated_at)
VALUES (?, ?, CURRENT_TIMESTAMP)
"""


class SqliteApprovalBackend(ApprovalBackend):
    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn

    async def init_schema(self) -> None:
        await self.conn.executescript(SCHEMA)
        await self.conn.commit()

    async def read(self, namespace: str) -> list[PermissionRule]:
        rows = await self.conn.execute_fetchall("SELECT rules FROM approvals WHERE namespace = ?", (namespace,))
        if not rows:
            return []
        return [PermissionRule.model_validate(r) for r in json.loads(rows[0][0])]

    async def write(self, namespace: str, rules: list[PermissionRule]) -> None:
        payload = json.dumps([r.model_dump(mode="json") for r in rules])
        await self.conn.execute(SQL_SAVE, (namespace, payload))
        await self.conn.commit()


class ApprovalStore:
    """Rules the user marked "always allow". Newest first.

    Lives for the lifetime of the process; written through to the backend when one is set.
    """

    def __init__(self, namespace: str = "default", backend: ApprovalBackend | None = None):
        self.namespace = namespace
        self.backend = backend
        self._rules: list[PermissionRule] = []

    @property
    def rules(self) -> list[PermissionRule]:
        return list(self._rules)

    async def load(self) -> None:
        if not self.backend:
            return
        self._rules = await self.backend.read(self.namespace)
        _logger.debug("Loaded %d approved rules (namespace=%s)", len(self._rules), self.namespace)

    async def add(self, rule: PermissionRule) -> None:
        self._rules = [rule, *(r for r in self._rules if r != rule)]
        await self._persist()

    async def revoke(self, rule: PermissionRule) -> bool:
        if rule not in self._rules:
            return False
        self._rules = [r for r in self._rules if r != rule]
        await self._persist()
        return True

    async def clear(self) -> None:
        self._rules = []
        await self._persist()

    async def _persist(self) -> None:
        if self.backend:
            await self.backend.write(self.namespace, self._rules)
