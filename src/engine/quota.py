# src/engine/quota.py
"""
QuotaGate: role-based limits and capability checks.

Limits come from configuration (roles.yaml); -1 means unlimited. The gate is
pure: callers pass the current usage and get a decision back. The atomic
"count then admit" step lives in the scan manager.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Union

from engine.config import load_roles_config
from engine.errors import AuthorizationError

UNLIMITED = -1

ACTION_SCAN = "scan"
ACTION_AI_REQUEST = "ai_request"
ACTION_REPORT_EXPORT = "report_export"

_ACTION_LIMIT_FIELD = {
    ACTION_SCAN: "scans_per_month",
    ACTION_AI_REQUEST: "ai_requests_per_month",
    ACTION_REPORT_EXPORT: "report_exports",
}

PERMISSION_LABELS = {
    "scan:advanced": "Advanced scanning features",
    "scan:unlimited": "Unlimited scanning",
    "scan:concurrent": "Multiple concurrent scans",
    "scan:priority": "Priority scan queue",
    "ai:advanced": "Advanced AI analysis",
    "ai:premium": "Premium AI models",
    "ai:custom_models": "Custom AI model selection",
    "ai:unlimited_requests": "Unlimited AI requests",
    "report:advanced": "Advanced reporting features",
    "report:export": "Report export functionality",
    "tools:advanced": "Advanced security tools",
    "data:export": "Data export capabilities",
    "data:delete": "Data deletion permissions",
    "admin:users": "User management",
    "admin:system": "System administration",
}


@dataclass(frozen=True)
class RoleQuota:
    role: str
    scans_per_month: int
    concurrent_scans: int
    ai_requests_per_month: int
    report_exports: int
    data_retention_days: int = 30

    def limit_for(self, action: str) -> int:
        field_name = _ACTION_LIMIT_FIELD.get(action)
        if field_name is None:
            raise ValueError(f"Unknown action: {action}")
        return getattr(self, field_name)

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "scansPerMonth": self.scans_per_month,
            "concurrentScans": self.concurrent_scans,
            "aiRequestsPerMonth": self.ai_requests_per_month,
            "reportExports": self.report_exports,
        }


@dataclass(frozen=True)
class RoleConfig:
    role: str
    name: str
    quota: RoleQuota
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    description: str = ""


@dataclass(frozen=True)
class CapabilityDecision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self):
        return self.allowed


class QuotaGate:
    def __init__(self, roles: Dict[str, dict] = None):
        roles = roles if roles is not None else load_roles_config()
        self._roles: Dict[str, RoleConfig] = {}
        for role, raw in roles.items():
            limits = raw.get("limits") or {}
            quota = RoleQuota(
                role=role,
                scans_per_month=int(limits.get("scans_per_month", 0)),
                concurrent_scans=int(limits.get("concurrent_scans", 0)),
                ai_requests_per_month=int(limits.get("ai_requests_per_month", 0)),
                report_exports=int(limits.get("report_exports", 0)),
                data_retention_days=int(limits.get("data_retention_days", 30)),
            )
            self._roles[role] = RoleConfig(
                role=role,
                name=raw.get("name", role.title()),
                quota=quota,
                permissions=frozenset(raw.get("permissions") or []),
                description=raw.get("description", ""),
            )

    @property
    def roles(self) -> List[str]:
        return list(self._roles)

    def get_role_config(self, role: str) -> RoleConfig:
        config = self._roles.get(role)
        if config is None:
            raise AuthorizationError(f"Unknown role: {role}", {"role": role})
        return config

    def get_quota(self, role: str) -> RoleQuota:
        return self.get_role_config(role).quota

    def can_perform_action(self, role: str, action: str, current_usage: int) -> bool:
        limit = self.get_quota(role).limit_for(action)
        return limit == UNLIMITED or current_usage < limit

    def get_remaining_usage(self, role: str, action: str, current_usage: int) -> Union[int, str]:
        limit = self.get_quota(role).limit_for(action)
        if limit == UNLIMITED:
            return "unlimited"
        return max(limit - current_usage, 0)

    def get_usage_percentage(self, role: str, action: str, current_usage: int) -> float:
        limit = self.get_quota(role).limit_for(action)
        if limit == UNLIMITED:
            return 0.0
        if limit == 0:
            return 100.0
        return min(current_usage / limit * 100, 100.0)

    def can_run_concurrently(self, role: str, active_scans: int) -> bool:
        limit = self.get_quota(role).concurrent_scans
        return limit == UNLIMITED or active_scans < limit

    def evaluate_capability(self, role: str, permission: str) -> CapabilityDecision:
        """
        The single allow/deny check used at every privileged entry point.
        """
        config = self._roles.get(role)
        if config is None:
            return CapabilityDecision(False, f"Unknown role: {role}")
        if permission in config.permissions:
            return CapabilityDecision(True)
        return CapabilityDecision(False, self.upgrade_message(role, permission))

    def require(self, role: str, permission: str) -> None:
        decision = self.evaluate_capability(role, permission)
        if not decision.allowed:
            raise AuthorizationError(decision.reason, {"role": role, "permission": permission})

    def upgrade_message(self, role: str, permission: str) -> str:
        if role == "admin" or role not in self._roles:
            return "This feature is not available"
        upgrade_to = next(
            (c.name for c in self._roles.values() if c.role != role and permission in c.permissions),
            None,
        )
        feature = PERMISSION_LABELS.get(permission, "This feature")
        if upgrade_to is None:
            return f"{feature} is not available"
        return f"{feature} requires {upgrade_to} plan. Upgrade to access this feature."

    def usage_summary(self, role: str, scans_this_month: int, active_scans: int) -> dict:
        quota = self.get_quota(role)
        return {
            "role": role,
            "limits": quota.to_dict(),
            "scans": {
                "used": scans_this_month,
                "remaining": self.get_remaining_usage(role, ACTION_SCAN, scans_this_month),
                "percentage": self.get_usage_percentage(role, ACTION_SCAN, scans_this_month),
            },
            "concurrent": {"active": active_scans, "limit": quota.concurrent_scans},
        }
