from helm.permission.evaluator import PermissionEvaluator, PromptCallback, disabled, evaluate, find_rule
from helm.permission.models import (
    PermissionAction,
    PermissionDenied,
    PermissionReply,
    PermissionRequest,
    PermissionRule,
    Ruleset,
)
from helm.permission.store import ApprovalBackend, ApprovalStore, SqliteApprovalBackend

__all__ = [
    "ApprovalBackend",
    "ApprovalStore",
    "PermissionAction",
    "PermissionDenied",
    "PermissionEvaluator",
    "PermissionReply",
    "PermissionRequest",
    "PermissionRule",
    "PromptCallback",
    "Ruleset",
    "SqliteApprovalBackend",
    "disabled",
    "evaluate",
    "find_rule",
]
