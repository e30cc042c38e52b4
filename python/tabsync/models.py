"""Entity records shared by every storage backend.

Records are plain mutable dataclasses: create operations fill in ``id``,
``created_at`` and ``updated_at`` in place. Enums are closed ``str`` enums so
they serialize as their wire value in both the SQL and REST stores.

``from_mapping`` accepts either a SQLAlchemy row mapping or a decoded
PostgREST JSON object; unknown keys are ignored so that extra columns on the
server never break parsing.
"""

from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum as PyEnum
from typing import Any


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime | str | None) -> datetime | None:
    """Coerce a stored timestamp to an aware UTC datetime.

    SQLite hands back naive datetimes and PostgREST hands back ISO strings;
    both are normalized here so comparisons across backends are consistent.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat()


# =============================================================================
# Enums
# =============================================================================


class UserTier(str, PyEnum):
    """Subscription tier of a user, mutated by billing webhooks."""

    free = "free"
    pro = "pro"
    power = "power"


class AuthProvider(str, PyEnum):
    email = "email"
    google = "google"
    github = "github"


class OrgRole(str, PyEnum):
    """Roles a user can have in an organization."""

    owner = "owner"
    admin = "admin"
    member = "member"

    @property
    def can_manage(self) -> bool:
        match self:
            case OrgRole.owner | OrgRole.admin:
                return True
            case OrgRole.member:
                return False


class InvitationStatus(str, PyEnum):
    """Invitation lifecycle.

    States:
        pending: Created, waiting for the invitee
        accepted: Invitee joined the organization (terminal)
        declined: Invitee refused (terminal)
        expired: Past expires_at before being answered (terminal)
    """

    pending = "pending"
    accepted = "accepted"
    declined = "declined"
    expired = "expired"

    @property
    def is_terminal(self) -> bool:
        match self:
            case InvitationStatus.pending:
                return False
            case InvitationStatus.accepted | InvitationStatus.declined | InvitationStatus.expired:
                return True

    def can_transition_to(self, target: "InvitationStatus") -> bool:
        """Only pending invitations move, and only to a terminal status."""
        if self is target:
            return True
        return self is InvitationStatus.pending and target.is_terminal


class SubscriptionStatus(str, PyEnum):
    active = "active"
    canceled = "canceled"
    past_due = "past_due"
    unpaid = "unpaid"
    incomplete = "incomplete"


class _Record:
    """Mixin giving dataclass records mapping conversion."""

    _enums: dict[str, type[PyEnum]] = {}
    _timestamps: tuple[str, ...] = ("created_at", "updated_at")

    @classmethod
    def from_mapping(cls, data: Any) -> Any:
        names = {f.name for f in fields(cls)}
        kwargs = {}
        for key in names:
            if key not in data:
                continue
            value = data[key]
            if key in cls._timestamps:
                value = as_utc(value)
            elif key in cls._enums and value is not None:
                value = cls._enums[key](value)
            kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = isoformat(value)
            elif isinstance(value, PyEnum):
                value = value.value
            out[f.name] = value
        return out


# =============================================================================
# Records
# =============================================================================


@dataclass
class User(_Record):
    """User account. Created on first OAuth login or explicit registration."""

    email: str
    name: str = ""
    avatar: str = ""
    provider: AuthProvider = AuthProvider.email
    tier: UserTier = UserTier.free
    paddle_customer_id: str | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    _enums = {"provider": AuthProvider, "tier": UserTier}


@dataclass
class Organization(_Record):
    name: str
    owner_id: str
    description: str = ""
    avatar: str = ""
    color: str = ""
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class OrganizationMembership(_Record):
    organization_id: str
    user_id: str
    role: OrgRole = OrgRole.member
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    _enums = {"role": OrgRole}


@dataclass
class Space(_Record):
    organization_id: str
    name: str
    description: str = ""
    is_default: bool = False
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    _timestamps = ("created_at", "updated_at", "deleted_at")


@dataclass
class SpacePermission(_Record):
    space_id: str
    user_id: str
    can_edit: bool = False
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Collection(_Record):
    space_id: str
    name: str
    description: str = ""
    color: str = ""
    icon: str = ""
    position: int = 0
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    _timestamps = ("created_at", "updated_at", "deleted_at")


@dataclass
class CollectionItem(_Record):
    collection_id: str
    title: str = ""
    url: str = ""
    fav_icon_url: str = ""
    original_title: str = ""
    ai_generated_title: str = ""
    domain: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    position: int = 0
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    _timestamps = ("created_at", "updated_at", "deleted_at")

    @classmethod
    def from_mapping(cls, data: Any) -> "CollectionItem":
        item = super().from_mapping(data)
        if item.metadata is None:
            item.metadata = {}
        return item


@dataclass
class OrganizationInvitation(_Record):
    organization_id: str
    email: str
    inviter_id: str
    token: str = ""
    status: InvitationStatus = InvitationStatus.pending
    expires_at: datetime | None = None
    accepted_by: str | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    _enums = {"status": InvitationStatus}
    _timestamps = ("created_at", "updated_at", "expires_at")

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at


@dataclass
class TabGroup:
    """One group of tabs inside a snapshot. Tabs are opaque client objects."""

    name: str
    tabs: list[dict[str, Any]] = field(default_factory=list)
    id: str = ""
    color: str | None = None
    description: str | None = None

    @property
    def tab_count(self) -> int:
        return len(self.tabs)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "TabGroup":
        return cls(
            name=data.get("name", ""),
            tabs=list(data.get("tabs") or []),
            id=data.get("id", ""),
            color=data.get("color"),
            description=data.get("description"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "description": self.description,
            "tabs": self.tabs,
        }


@dataclass
class Snapshot:
    user_id: str
    name: str
    tab_groups: list[TabGroup] = field(default_factory=list)
    group_count: int = 0
    tab_count: int = 0
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def recount(self) -> None:
        """Recompute the cached aggregates from tab_groups."""
        self.group_count = len(self.tab_groups)
        self.tab_count = sum(group.tab_count for group in self.tab_groups)

    @classmethod
    def from_mapping(cls, data: Any) -> "Snapshot":
        groups = data.get("tab_groups") if hasattr(data, "get") else data["tab_groups"]
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            tab_groups=[TabGroup.from_mapping(g) for g in (groups or [])],
            group_count=data["group_count"],
            tab_count=data["tab_count"],
            created_at=as_utc(data["created_at"]),
            updated_at=as_utc(data["updated_at"]),
        )


@dataclass(frozen=True)
class SnapshotInfo:
    """Snapshot listing entry (no tab payload)."""

    name: str
    group_count: int
    tab_count: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_mapping(cls, data: Any) -> "SnapshotInfo":
        return cls(
            name=data["name"],
            group_count=data["group_count"],
            tab_count=data["tab_count"],
            created_at=as_utc(data["created_at"]),
            updated_at=as_utc(data["updated_at"]),
        )


@dataclass
class UserSubscription(_Record):
    user_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.active
    paddle_subscription_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    _enums = {"status": SubscriptionStatus}
    _timestamps = (
        "created_at",
        "updated_at",
        "current_period_start",
        "current_period_end",
        "canceled_at",
    )


@dataclass
class AICredits(_Record):
    user_id: str
    credits_total: int = 0
    credits_used: int = 0
    period_start: datetime | None = None
    period_end: datetime | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    _timestamps = ("created_at", "updated_at", "period_start", "period_end")

    @property
    def credits_remaining(self) -> int:
        return max(self.credits_total - self.credits_used, 0)


@dataclass
class UserWithSubscription:
    """A user together with their most recent subscription, if they have one."""

    user: User
    subscription: UserSubscription | None = None

    @property
    def has_active_subscription(self) -> bool:
        return (
            self.subscription is not None
            and self.subscription.status is SubscriptionStatus.active
        )


# =============================================================================
# Partial updates
# =============================================================================


class _Unset:
    """Marker for a field absent from a partial update."""

    _instance: "_Unset | None" = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class CollectionItemPatch:
    """Sparse update for a CollectionItem.

    Every field defaults to UNSET; only fields explicitly given are written.
    Setting a field to None or "" is a real change, not an absence.
    """

    title: str = UNSET
    url: str = UNSET
    fav_icon_url: str = UNSET
    original_title: str = UNSET
    ai_generated_title: str = UNSET
    domain: str = UNSET
    metadata: dict[str, Any] = UNSET
    position: int = UNSET

    @classmethod
    def field_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls))

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "CollectionItemPatch":
        """Build a patch from a loose mapping; unknown names are ignored."""
        allowed = cls.field_names()
        return cls(**{key: value for key, value in data.items() if key in allowed})

    def changes(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }

    @property
    def is_empty(self) -> bool:
        return not self.changes()
