from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class PermissionAction(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


class PermissionReply(StrEnum):
    ONCE = "once"
    ALWAYS = "always"
    REJECT = "deny"


class PermissionRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    permission: str  # "*" matches any permission
    pattern: str = "*"
    action: PermissionAction


type Ruleset = list[PermissionRule]


@dataclass(frozen=True)
class PermissionRequest:
    session_id: str
    permission: str
    pattern: str
    metadata: dict = field(default_factory=dict)
    call_id: str | None = None


class PermissionDenied(Exception):
    """A side effect was refused, either by a configured rule or by the user."""

    def __init__(self, permission: str, pattern: str, by_user: bool = False, rule: PermissionRule | None = None):
        self.permission = permission
        self.pattern = pattern
        self.by_user = by_user
        self.rule = rule
        if by_user:
            message = f"User rejected permission {permission!r} for {pattern!r}"
        else:
            message = f"Permission {permission!r} for {pattern!r} is denied by rule {rule!r}"
        super().__init__(message)
