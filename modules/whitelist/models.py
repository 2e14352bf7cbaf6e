"""Records and value objects shared by the whitelist pipeline."""

from __future__ import annotations

import datetime as dt
import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

__all__ = [
    "AccountType",
    "VERIFIED_ACCOUNT_TYPES",
    "LISTED_ACCOUNT_TYPES",
    "User",
    "ExternalIdentityAccount",
    "PermissionRole",
    "WhitelistEntry",
    "RoleAssignment",
    "RealmSettings",
    "UserView",
    "PublishResult",
    "WhitelistStatistics",
    "utcnow",
]

UTC = dt.timezone.utc


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


class AccountType(str, enum.Enum):
    """Trust tier of a linked external identity."""

    MAIN = "MAIN"
    ALT = "ALT"
    UNVERIFIED = "UNVERIFIED"
    IN_VERIFICATION = "IN_VERIFICATION"

    @property
    def verified(self) -> bool:
        return self in VERIFIED_ACCOUNT_TYPES


VERIFIED_ACCOUNT_TYPES = frozenset({AccountType.MAIN, AccountType.ALT})
# Order matters: preferred account first when one name per user is needed.
LISTED_ACCOUNT_TYPES = (AccountType.MAIN, AccountType.ALT, AccountType.UNVERIFIED)


@dataclass(slots=True)
class User:
    id: int
    discord_id: str
    created_at: dt.datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ExternalIdentityAccount:
    id: int
    user_id: int
    external_id: str
    account_type: AccountType
    display_name: Optional[str] = None
    display_name_updated_at: Optional[dt.datetime] = None

    @property
    def verified(self) -> bool:
        return self.account_type.verified


@dataclass(slots=True)
class PermissionRole:
    """Mapping from an external role (in one realm) to permission tokens."""

    id: int
    realm_id: str
    external_role_id: Optional[str] = None
    permissions: Optional[str] = None
    created_at: dt.datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class WhitelistEntry:
    id: int
    user_id: int
    created_at: dt.datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class RoleAssignment:
    id: int
    whitelist_id: int
    role_id: int
    assigned_by: Optional[str] = None
    assigned_at: dt.datetime = field(default_factory=utcnow)
    expires_at: Optional[dt.datetime] = None

    def is_active(self, now: Optional[dt.datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utcnow())

    def is_expired(self, now: Optional[dt.datetime] = None) -> bool:
        return not self.is_active(now)


@dataclass(slots=True)
class RealmSettings:
    """Per-realm overrides; ``None`` fields fall back to the environment."""

    realm_id: str
    github_owner: Optional[str] = None
    github_repo: Optional[str] = None
    github_branch: Optional[str] = None
    encoded_path: Optional[str] = None
    decoded_path: Optional[str] = None
    xor_key: Optional[str] = None
    github_token: Optional[str] = None
    github_app_id: Optional[str] = None
    github_app_private_key: Optional[str] = None
    github_installation_id: Optional[str] = None
    updated_at: dt.datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class UserView:
    """One generated whitelist row: a single identity account of a user."""

    discord_id: str
    display_name: str
    permissions: List[str]
    account_type: AccountType
    external_id: str
    account_id: int
    created_at: dt.datetime


@dataclass(slots=True)
class PublishResult:
    updated: bool
    commit_sha: Optional[str] = None
    paths: Optional[List[str]] = None
    branch: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(slots=True)
class WhitelistStatistics:
    total_users: int
    total_roles: int
    total_active_assignments: int
    total_expired_assignments: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "totalUsers": self.total_users,
            "totalRoles": self.total_roles,
            "totalActiveAssignments": self.total_active_assignments,
            "totalExpiredAssignments": self.total_expired_assignments,
        }
