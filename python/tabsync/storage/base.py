"""Storage contract shared by every backend.

Callers obtain a StorageBackend from tabsync.storage.selector (usually through
tabsync.storage.lifecycle) and never depend on a concrete class.

Contract guarantees:
- create_* assigns id and timestamps unless the caller supplied an id, mutates
  the passed record in place, and returns it.
- update_* raises NotFoundError for an unknown id; it never creates.
- Upserts (snapshots, space permissions, memberships, AI credits) are keyed by
  their unique tuple; repeating the call yields one logical row.
- delete_* on spaces, collections and items is a soft delete that also bumps
  updated_at. Deleting a collection cascades to its items.
- list_* excludes soft-deleted rows unless ``since`` is given, in which case
  rows updated or deleted after ``since`` are returned, tombstones included.
- health_check() raises UnavailableError; close() is idempotent.

Every method may block on network I/O.
"""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from tabsync.errors import UnsupportedError
from tabsync.models import (
    AICredits,
    Collection,
    CollectionItem,
    CollectionItemPatch,
    Organization,
    OrganizationInvitation,
    OrganizationMembership,
    Snapshot,
    SnapshotInfo,
    Space,
    SpacePermission,
    TabGroup,
    User,
    UserSubscription,
    UserWithSubscription,
    UserTier,
)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 200


@dataclass(frozen=True)
class BackendConfig:
    """Immutable connection descriptor consumed by the selector.

    Built from Settings.backend_config(); tests construct it directly.
    """

    database_url: str | None = None
    supabase_url: str | None = None
    supabase_key: str | None = None
    connect_timeout_s: int = 5
    pool_size: int = 2
    max_overflow: int = 3
    pool_recycle_s: int = 300
    rest_timeout_s: float = 30.0

    @property
    def has_database(self) -> bool:
        return bool(self.database_url)

    @property
    def has_rest(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def fingerprint(self) -> str:
        """Stable hash of the connection-relevant fields.

        Safe to log: the digest does not reveal the DSN or key.
        """
        raw = "|".join(
            [
                self.database_url or "",
                self.supabase_url or "",
                self.supabase_key or "",
                str(self.connect_timeout_s),
                str(self.pool_size),
                str(self.max_overflow),
                str(self.pool_recycle_s),
                str(self.rest_timeout_s),
            ]
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def resolve_page(page: int | None, page_size: int | None) -> tuple[int, int] | None:
    """Return (limit, offset) for a 1-based page, or None when unpaginated.

    page_size is clamped to 1..MAX_PAGE_SIZE and defaults to DEFAULT_PAGE_SIZE.
    """
    if page is None and page_size is None:
        return None
    page = max(page or 1, 1)
    size = DEFAULT_PAGE_SIZE if page_size is None else min(max(page_size, 1), MAX_PAGE_SIZE)
    return size, (page - 1) * size


class StorageBackend(ABC):
    """Abstract base class for storage backends.

    Subclasses set ``name`` ("sql" or "rest") which is bound into log context.
    Billing operations default to raising UnsupportedError.
    """

    name: str = "abstract"

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_user(self, user: User) -> User:
        """Insert a user. Raises ConflictError on duplicate email."""
        ...

    @abstractmethod
    def get_user_by_id(self, user_id: str) -> User: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> User: ...

    @abstractmethod
    def update_user(self, user: User) -> User:
        """Replace name, avatar, provider, tier and paddle_customer_id."""
        ...

    @abstractmethod
    def get_user_with_subscription(self, user_id: str) -> UserWithSubscription:
        """The user plus their latest subscription (None when they have none).

        Raises NotFoundError only for an unknown user.
        """
        ...

    @abstractmethod
    def update_user_tier(self, user_id: str, tier: UserTier) -> User: ...

    @abstractmethod
    def delete_user(self, user_id: str) -> None:
        """Hard delete. Owned organizations and their data cascade."""
        ...

    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_organization(self, org: Organization) -> Organization:
        """Insert an organization and grant its owner an owner membership."""
        ...

    @abstractmethod
    def get_organization(self, org_id: str) -> Organization: ...

    @abstractmethod
    def update_organization(self, org: Organization) -> Organization: ...

    @abstractmethod
    def list_user_organizations(self, user_id: str) -> list[Organization]:
        """Organizations the user owns or is a member of, newest first."""
        ...

    @abstractmethod
    def add_organization_member(
        self, membership: OrganizationMembership
    ) -> OrganizationMembership:
        """Upsert on (organization_id, user_id); an existing row gets the new role."""
        ...

    @abstractmethod
    def list_organization_members(self, org_id: str) -> list[OrganizationMembership]: ...

    @abstractmethod
    def get_organization_member(self, org_id: str, user_id: str) -> OrganizationMembership: ...

    # -------------------------------------------------------------------------
    # Spaces
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_space(self, space: Space) -> Space: ...

    @abstractmethod
    def get_space(self, space_id: str) -> Space: ...

    @abstractmethod
    def update_space(self, space: Space) -> Space: ...

    @abstractmethod
    def delete_space(self, space_id: str) -> None: ...

    @abstractmethod
    def list_spaces_by_organization(
        self, org_id: str, since: datetime | None = None
    ) -> list[Space]: ...

    @abstractmethod
    def set_space_permission(self, space_id: str, user_id: str, can_edit: bool) -> SpacePermission:
        """Upsert on (space_id, user_id)."""
        ...

    @abstractmethod
    def list_space_permissions(self, space_id: str) -> list[SpacePermission]: ...

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_collection(self, collection: Collection) -> Collection: ...

    @abstractmethod
    def get_collection(self, collection_id: str) -> Collection: ...

    @abstractmethod
    def update_collection(self, collection: Collection) -> Collection: ...

    @abstractmethod
    def delete_collection(self, collection_id: str) -> None:
        """Soft delete the collection and every live item in it."""
        ...

    @abstractmethod
    def list_collections_by_space(
        self,
        space_id: str,
        since: datetime | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> list[Collection]: ...

    # -------------------------------------------------------------------------
    # Collection items
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_collection_item(self, item: CollectionItem) -> CollectionItem:
        """Insert an item, tagging its metadata with the normalized URL."""
        ...

    @abstractmethod
    def get_collection_item(self, item_id: str) -> CollectionItem: ...

    @abstractmethod
    def update_collection_item(self, item: CollectionItem) -> CollectionItem: ...

    @abstractmethod
    def update_collection_item_partial(
        self, item_id: str, patch: CollectionItemPatch
    ) -> CollectionItem:
        """Write only the fields set on ``patch``.

        An empty patch performs no write and leaves updated_at untouched, but
        still raises NotFoundError for an unknown id.
        """
        ...

    @abstractmethod
    def delete_collection_item(self, item_id: str) -> None: ...

    @abstractmethod
    def list_items_by_collection(
        self,
        collection_id: str,
        since: datetime | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> list[CollectionItem]: ...

    @abstractmethod
    def find_collection_item_by_url(self, collection_id: str, url: str) -> CollectionItem | None:
        """Return the live item whose normalized URL matches, or None."""
        ...

    # -------------------------------------------------------------------------
    # Invitations
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_invitation(self, invitation: OrganizationInvitation) -> OrganizationInvitation:
        """Insert an invitation; token and a 14-day expiry are filled if unset."""
        ...

    @abstractmethod
    def get_invitation_by_token(self, token: str) -> OrganizationInvitation: ...

    @abstractmethod
    def list_invitations_by_email(self, email: str) -> list[OrganizationInvitation]: ...

    @abstractmethod
    def update_invitation(self, invitation: OrganizationInvitation) -> OrganizationInvitation:
        """Write status, accepted_by and expires_at.

        Raises InvalidRequestError (E_INVITATION_INVALID) when the stored
        status is terminal and the new status differs.
        """
        ...

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    @abstractmethod
    def save_snapshot(self, user_id: str, name: str, tab_groups: list[TabGroup]) -> Snapshot:
        """Upsert on (user_id, name), replacing tab_groups and recounting."""
        ...

    @abstractmethod
    def list_snapshots(self, user_id: str) -> list[SnapshotInfo]: ...

    @abstractmethod
    def load_snapshot(self, user_id: str, name: str) -> Snapshot: ...

    @abstractmethod
    def delete_snapshot(self, user_id: str, name: str) -> None: ...

    # -------------------------------------------------------------------------
    # Billing
    # -------------------------------------------------------------------------

    def create_subscription(self, subscription: UserSubscription) -> UserSubscription:
        raise UnsupportedError(operation="create_subscription")

    def get_user_subscription(self, user_id: str) -> UserSubscription:
        raise UnsupportedError(operation="get_user_subscription")

    def update_subscription(self, subscription: UserSubscription) -> UserSubscription:
        raise UnsupportedError(operation="update_subscription")

    def cancel_subscription(self, user_id: str) -> UserSubscription:
        raise UnsupportedError(operation="cancel_subscription")

    def get_user_ai_credits(self, user_id: str) -> AICredits:
        raise UnsupportedError(operation="get_user_ai_credits")

    def update_ai_credits(self, credits: AICredits) -> AICredits:
        raise UnsupportedError(operation="update_ai_credits")

    def consume_ai_credits(self, user_id: str, amount: int) -> AICredits:
        raise UnsupportedError(operation="consume_ai_credits")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    def health_check(self) -> None:
        """Lightweight liveness probe. Raises UnavailableError on failure."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release connections. Safe to call more than once."""
        ...

    @property
    @abstractmethod
    def is_closed(self) -> bool: ...
