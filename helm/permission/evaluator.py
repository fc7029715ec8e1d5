import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from fnmatch import fnmatchcase
from weakref import WeakValueDictionary

from helm.logging import get_logger
from helm.permission.models import (
    PermissionAction,
    PermissionDenied,
    PermissionReply,
    PermissionRequest,
    PermissionRule,
)
from helm.permission.store import ApprovalStore

type PromptCallback = Callable[[PermissionRequest], Awaitable[PermissionReply]]

_logger = get_logger(__name__)


def rule_matches(rule: PermissionRule, permission: str, value: str) -> bool:
    if rule.permission != "*" and rule.permission != permission:
        return False
    return fnmatchcase(value, rule.pattern)


def find_rule(permission: str, value: str, *rulesets: Sequence[PermissionRule]) -> PermissionRule | None:
    """Rulesets are read general to specific: a later rule overrides an earlier one."""
    for rules in reversed(rulesets):
        for rule in reversed(rules):
            if rule_matches(rule, permission, value):
                return rule
    return None


def evaluate(
    permission: str,
    value: str,
    ruleset: Sequence[PermissionRule],
    approved: Sequence[PermissionRule] = (),
) -> PermissionAction:
    for rule in approved:
        if rule_matches(rule, permission, value):
            return rule.action
    rule = find_rule(permission, value, ruleset)
    return rule.action if rule else PermissionAction.ASK


def disabled(permissions: Iterable[str], ruleset: Sequence[PermissionRule]) -> set[str]:
    """Permissions denied for every value, whose tools should not be offered to the model.

    Only the last rule naming the permission counts: a narrower allow after a blanket
    deny leaves the tool usable for the values it matches.
    """
    result = set()
    for permission in permissions:
        rule = next((r for r in reversed(ruleset) if r.permission in ("*", permission)), None)
        if rule and rule.pattern == "*" and rule.action == PermissionAction.DENY:
            result.add(permission)
    return result


async def _reject(request: PermissionRequest) -> PermissionReply:
    _logger.warning(
        "No permission prompt configured, rejecting %s for %s", request.permission, request.pattern
    )
    return PermissionReply.REJECT


class PermissionEvaluator:
    def __init__(self, approvals: ApprovalStore | None = None, prompt: PromptCallback | None = None):
        self.approvals = approvals or ApprovalStore()
        self.prompt = prompt or _reject
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()

    def evaluate(self, permission: str, value: str, ruleset: Sequence[PermissionRule]) -> PermissionAction:
        return evaluate(permission, value, ruleset, self.approvals.rules)

    def _lock(self, session_id: str) -> asyncio.Lock:
        # entries live only while a prompt holds or awaits them
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def ask(
        self,
        session_id: str,
        permission: str,
        patterns: Sequence[str],
        ruleset: Sequence[PermissionRule],
        metadata: dict | None = None,
        call_id: str | None = None,
    ) -> None:
        """Return when every pattern is allowed; raise PermissionDenied otherwise.

        Held under a per-session lock so a user sees at most one prompt at a time, and
        every pattern is re-evaluated after the lock is taken so an "always" answer given
        for a concurrent call applies here too.
        """
        async with self._lock(session_id):
            for pattern in patterns:
                match self.evaluate(permission, pattern, ruleset):
                    case PermissionAction.ALLOW:
                        continue
                    case PermissionAction.DENY:
                        raise PermissionDenied(permission, pattern, rule=find_rule(permission, pattern, ruleset))
                    case PermissionAction.ASK:
                        request = PermissionRequest(
                            session_id=session_id,
                            permission=permission,
                            pattern=pattern,
                            metadata=metadata or {},
                            call_id=call_id,
                        )
                        await self._prompt(request)

    async def _prompt(self, request: PermissionRequest) -> None:
        reply = PermissionReply(await self.prompt(request))
        _logger.info("Permission %s for %s: %s", request.permission, request.pattern, reply.value)
        match reply:
            case PermissionReply.REJECT:
                raise PermissionDenied(request.permission, request.pattern, by_user=True)
            case PermissionReply.ONCE:
                return
            case PermissionReply.ALWAYS:
                await self.approvals.add(
                    PermissionRule(
                        permission=request.permission,
                        pattern=request.pattern,
                        action=PermissionAction.ALLOW,
                    )
                )
