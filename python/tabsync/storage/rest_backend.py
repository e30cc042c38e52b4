"""REST-store backend (Supabase / PostgREST over httpx).

Every contract call becomes one or more HTTP requests against
``{SUPABASE_URL}/rest/v1/{table}``:
- GET with PostgREST filters (``id=eq.X``) for reads
- POST for inserts, PATCH with filters for updates, DELETE for removals
- ``Prefer: return=representation`` so writes return the affected rows

There are no transactions. Multi-step operations (create organization +
owner membership, collection + item cascade, invitation acceptance) can
partially fail; the secondary failure is logged and raised, never swallowed.

Upserts use PostgREST's native ``on_conflict`` + ``resolution=merge-duplicates``
which is a single INSERT ... ON CONFLICT server-side. If the server reports
that no unique constraint matches (400 / 42P10), this instance switches for
good to PATCH-then-POST emulation. The emulation is not race-free: two
concurrent callers can both miss the PATCH and both POST.

Error mapping:
    transport error / timeout -> UnavailableError
    409                       -> RestConflictError
    other >= 400              -> RestApiError (raw body kept; 5xx flagged unavailable)
"""

import threading
from datetime import datetime
from typing import Any
from uuid import uuid4

import httpx

from tabsync.errors import (
    ConfigurationError,
    InvalidRequestError,
    NotFoundError,
    RestApiError,
    RestConflictError,
    StorageError,
    StorageErrorCode,
    UnavailableError,
)
from tabsync.logging import get_logger, storage_call
from tabsync.models import (
    AICredits,
    Collection,
    CollectionItem,
    CollectionItemPatch,
    InvitationStatus,
    Organization,
    OrganizationInvitation,
    OrganizationMembership,
    OrgRole,
    Snapshot,
    SnapshotInfo,
    Space,
    SpacePermission,
    TabGroup,
    User,
    UserSubscription,
    UserWithSubscription,
    UserTier,
    as_utc,
    isoformat,
    utcnow,
)
from tabsync.services.invitations import apply_invitation_defaults
from tabsync.services.url_normalize import NORMALIZED_URL_KEY, normalize_url, with_normalized_url
from tabsync.storage.base import BackendConfig, StorageBackend, resolve_page

logger = get_logger(__name__)

USER_FIELDS = ("name", "avatar", "provider", "tier", "paddle_customer_id")
ORGANIZATION_FIELDS = ("name", "description", "avatar", "color")
SPACE_FIELDS = ("name", "description", "is_default")
COLLECTION_FIELDS = ("name", "description", "color", "icon", "position")
ITEM_FIELDS = (
    "title",
    "url",
    "fav_icon_url",
    "original_title",
    "ai_generated_title",
    "domain",
    "metadata",
    "position",
)
SNAPSHOT_INFO_COLUMNS = "name,group_count,tab_count,created_at,updated_at"

# PostgreSQL: "there is no unique or exclusion constraint matching the ON CONFLICT specification"
NO_MATCHING_CONSTRAINT = "42P10"


def new_id() -> str:
    return str(uuid4())


def eq(value: Any) -> str:
    if isinstance(value, bool):
        value = str(value).lower()
    return f"eq.{value}"


def in_list(values: list[str]) -> str:
    quoted = ",".join(f'"{value}"' for value in values)
    return f"in.({quoted})"


def visibility_params(since: datetime | None) -> dict[str, str]:
    """PostgREST filter for live rows, or the incremental view after ``since``."""
    if since is None:
        return {"deleted_at": "is.null"}
    cutoff = isoformat(as_utc(since))
    return {"or": f'(updated_at.gt."{cutoff}",deleted_at.gt."{cutoff}")'}


def page_params(page: int | None, page_size: int | None) -> dict[str, str]:
    window = resolve_page(page, page_size)
    if window is None:
        return {}
    limit, offset = window
    return {"limit": str(limit), "offset": str(offset)}


def _fields(record: Any, names: tuple[str, ...]) -> dict[str, Any]:
    data = record.to_dict()
    return {name: data[name] for name in names}


class RestStorageBackend(StorageBackend):
    """StorageBackend over the Supabase PostgREST API.

    Args:
        config: Connection descriptor; supabase_url and supabase_key must be set.
        client: Pre-built httpx client (tests). Owned and closed by the backend.

    Raises:
        ConfigurationError: If the REST descriptor is incomplete.
    """

    name = "rest"

    def __init__(self, config: BackendConfig, *, client: httpx.Client | None = None):
        if not config.has_rest:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required")

        self._rest_url = f"{config.supabase_url.rstrip('/')}/rest/v1"
        self._client = client or httpx.Client(
            base_url=self._rest_url,
            timeout=config.rest_timeout_s,
            headers={
                "apikey": config.supabase_key,
                "Authorization": f"Bearer {config.supabase_key}",
                "Content-Type": "application/json",
                "Prefer": "return=representation",
            },
        )
        self._native_upsert = True
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def native_upsert(self) -> bool:
        """False once the server rejected on_conflict and emulation took over."""
        return self._native_upsert

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def _request(
        self,
        method: str,
        table: str,
        operation: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        entity_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Send one request and return the decoded rows."""
        if self._closed:
            raise UnavailableError("Backend is closed", operation=operation, entity_id=entity_id)

        with storage_call(self.name, operation):
            try:
                response = self._client.request(
                    method, f"/{table}", params=params, json=json, headers=headers
                )
            except httpx.TransportError as exc:
                logger.warning("rest_unavailable", table=table, method=method, error=str(exc))
                raise UnavailableError(
                    f"REST store unreachable: {exc}", operation=operation, entity_id=entity_id
                ) from exc

            if response.status_code == 409:
                raise RestConflictError(response.text, operation=operation, entity_id=entity_id)
            if response.status_code >= 400:
                raise RestApiError(
                    response.status_code, response.text, operation=operation, entity_id=entity_id
                )

            if not response.content:
                return []
            data = response.json()
            return data if isinstance(data, list) else [data]

    def _get_one(
        self, table: str, operation: str, params: dict[str, str], entity_id: str | None = None
    ) -> dict[str, Any]:
        rows = self._request(
            "GET", table, operation, params={"select": "*", **params, "limit": "1"}, entity_id=entity_id
        )
        if not rows:
            raise NotFoundError(f"No {table} row found", operation=operation, entity_id=entity_id)
        return rows[0]

    def _create(self, table: str, operation: str, record: Any) -> Any:
        now = utcnow()
        payload = record.to_dict()
        payload.update(id=record.id or new_id(), created_at=isoformat(now), updated_at=isoformat(now))
        if "deleted_at" in payload:
            payload["deleted_at"] = None

        rows = self._request("POST", table, operation, json=payload, entity_id=payload["id"])
        stored = type(record).from_mapping(rows[0]) if rows else None

        record.id = stored.id if stored else payload["id"]
        record.created_at = stored.created_at if stored else now
        record.updated_at = stored.updated_at if stored else now
        return record

    def _patch(
        self,
        table: str,
        operation: str,
        params: dict[str, str],
        values: dict[str, Any],
        entity_id: str | None = None,
    ) -> list[dict[str, Any]]:
        values = {**values, "updated_at": isoformat(utcnow())}
        return self._request("PATCH", table, operation, params=params, json=values, entity_id=entity_id)

    def _update(self, table: str, operation: str, record: Any, columns: tuple[str, ...]) -> Any:
        rows = self._patch(
            table, operation, {"id": eq(record.id)}, _fields(record, columns), entity_id=record.id
        )
        if not rows:
            raise NotFoundError(
                f"{type(record).__name__} not found", operation=operation, entity_id=record.id
            )
        record.updated_at = as_utc(rows[0].get("updated_at")) or utcnow()
        return record

    def _soft_delete(self, table: str, operation: str, entity_id: str) -> None:
        now = isoformat(utcnow())
        rows = self._request(
            "PATCH",
            table,
            operation,
            params={"id": eq(entity_id), "deleted_at": "is.null"},
            json={"deleted_at": now, "updated_at": now},
            entity_id=entity_id,
        )
        if not rows:
            # Either unknown, or already a tombstone
            self._get_one(table, operation, {"id": eq(entity_id)}, entity_id=entity_id)

    def _upsert(
        self,
        table: str,
        operation: str,
        payload: dict[str, Any],
        keys: tuple[str, ...],
        update_columns: tuple[str, ...],
        entity_id: str | None = None,
    ) -> dict[str, Any]:
        """Insert-or-update keyed on ``keys``; returns the stored row.

        The native path sends only keys + update_columns so the server keeps
        the existing id and created_at on conflict.
        """
        if self._native_upsert:
            body = {column: payload[column] for column in (*keys, *update_columns)}
            try:
                rows = self._request(
                    "POST",
                    table,
                    operation,
                    params={"on_conflict": ",".join(keys)},
                    json=body,
                    headers={"Prefer": "resolution=merge-duplicates,return=representation"},
                    entity_id=entity_id,
                )
            except RestApiError as exc:
                if exc.upstream_status != 400 or NO_MATCHING_CONSTRAINT not in exc.body:
                    raise
                self._native_upsert = False
                logger.warning(
                    "rest_native_upsert_unavailable",
                    table=table,
                    on_conflict=",".join(keys),
                    fallback="patch_then_post",
                )
            else:
                if not rows:
                    # Write accepted but the row is not visible to us (RLS)
                    raise StorageError(
                        StorageErrorCode.E_BACKEND_ERROR,
                        f"Upsert on {table} returned no row",
                        operation=operation,
                        entity_id=entity_id,
                    )
                return rows[0]
        return self._emulated_upsert(table, operation, payload, keys, update_columns, entity_id)

    def _emulated_upsert(
        self,
        table: str,
        operation: str,
        payload: dict[str, Any],
        keys: tuple[str, ...],
        update_columns: tuple[str, ...],
        entity_id: str | None = None,
    ) -> dict[str, Any]:
        """PATCH the keyed row; POST when nothing matched.

        Not atomic: a concurrent POST between the two requests produces either
        a duplicate (no unique constraint) or a 409 (RestConflictError).
        """
        params = {key: eq(payload[key]) for key in keys}
        rows = self._request(
            "PATCH",
            table,
            operation,
            params=params,
            json={column: payload[column] for column in update_columns},
            entity_id=entity_id,
        )
        if rows:
            return rows[0]
        rows = self._request("POST", table, operation, json=payload, entity_id=entity_id)
        return rows[0] if rows else payload

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        user.email = user.email.strip().lower()
        return self._create("users", "create_user", user)

    def get_user_by_id(self, user_id: str) -> User:
        return User.from_mapping(
            self._get_one("users", "get_user_by_id", {"id": eq(user_id)}, entity_id=user_id)
        )

    def get_user_by_email(self, email: str) -> User:
        return User.from_mapping(
            self._get_one("users", "get_user_by_email", {"email": eq(email.strip().lower())})
        )

    def get_user_with_subscription(self, user_id: str) -> UserWithSubscription:
        """Two reads (user, then latest subscription) merged client-side."""
        operation = "get_user_with_subscription"
        user = User.from_mapping(
            self._get_one("users", operation, {"id": eq(user_id)}, entity_id=user_id)
        )
        rows = self._latest_subscription_rows(user_id, operation)
        subscription = UserSubscription.from_mapping(rows[0]) if rows else None
        return UserWithSubscription(user=user, subscription=subscription)

    def update_user(self, user: User) -> User:
        return self._update("users", "update_user", user, USER_FIELDS)

    def update_user_tier(self, user_id: str, tier: UserTier) -> User:
        tier = UserTier(tier)
        rows = self._patch(
            "users", "update_user_tier", {"id": eq(user_id)}, {"tier": tier.value}, entity_id=user_id
        )
        if not rows:
            raise NotFoundError("User not found", operation="update_user_tier", entity_id=user_id)
        logger.info("user_tier_updated", user_id=user_id, tier=tier.value)
        return User.from_mapping(rows[0])

    def delete_user(self, user_id: str) -> None:
        rows = self._request("DELETE", "users", "delete_user", params={"id": eq(user_id)}, entity_id=user_id)
        if not rows:
            raise NotFoundError("User not found", operation="delete_user", entity_id=user_id)

    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------

    def create_organization(self, org: Organization) -> Organization:
        """POST the organization, then the owner membership.

        The pair is not atomic. If the membership insert fails the
        organization exists without an owner membership; that is logged as
        owner_membership_insert_failed and the error is raised.
        """
        self._create("organizations", "create_organization", org)
        now = isoformat(utcnow())
        try:
            self._request(
                "POST",
                "organization_memberships",
                "create_organization",
                json={
                    "id": new_id(),
                    "organization_id": org.id,
                    "user_id": org.owner_id,
                    "role": OrgRole.owner.value,
                    "created_at": now,
                    "updated_at": now,
                },
                entity_id=org.id,
            )
        except StorageError:
            logger.error(
                "owner_membership_insert_failed",
                organization_id=org.id,
                owner_id=org.owner_id,
            )
            raise
        logger.info("organization_created", organization_id=org.id, owner_id=org.owner_id)
        return org

    def get_organization(self, org_id: str) -> Organization:
        return Organization.from_mapping(
            self._get_one("organizations", "get_organization", {"id": eq(org_id)}, entity_id=org_id)
        )

    def update_organization(self, org: Organization) -> Organization:
        return self._update("organizations", "update_organization", org, ORGANIZATION_FIELDS)

    def list_user_organizations(self, user_id: str) -> list[Organization]:
        """Owned fetch + membership fetch + id fetch, merged by id client-side."""
        operation = "list_user_organizations"
        by_id: dict[str, Organization] = {}

        owned = self._request(
            "GET", "organizations", operation, params={"select": "*", "owner_id": eq(user_id)}
        )
        for row in owned:
            by_id[row["id"]] = Organization.from_mapping(row)

        memberships = self._request(
            "GET",
            "organization_memberships",
            operation,
            params={"select": "organization_id", "user_id": eq(user_id)},
        )
        missing = sorted({row["organization_id"] for row in memberships} - by_id.keys())
        if missing:
            for row in self._request(
                "GET", "organizations", operation, params={"select": "*", "id": in_list(missing)}
            ):
                by_id[row["id"]] = Organization.from_mapping(row)

        return sorted(by_id.values(), key=lambda org: org.created_at, reverse=True)

    def add_organization_member(
        self, membership: OrganizationMembership
    ) -> OrganizationMembership:
        now = isoformat(utcnow())
        payload = {
            "id": membership.id or new_id(),
            "organization_id": membership.organization_id,
            "user_id": membership.user_id,
            "role": OrgRole(membership.role).value,
            "created_at": now,
            "updated_at": now,
        }
        row = self._upsert(
            "organization_memberships",
            "add_organization_member",
            payload,
            keys=("organization_id", "user_id"),
            update_columns=("role", "updated_at"),
            entity_id=membership.organization_id,
        )
        stored = OrganizationMembership.from_mapping(row)
        membership.id = stored.id
        membership.role = stored.role
        membership.created_at = stored.created_at
        membership.updated_at = stored.updated_at
        return membership

    def list_organization_members(self, org_id: str) -> list[OrganizationMembership]:
        rows = self._request(
            "GET",
            "organization_memberships",
            "list_organization_members",
            params={"select": "*", "organization_id": eq(org_id), "order": "created_at.asc"},
            entity_id=org_id,
        )
        return [OrganizationMembership.from_mapping(row) for row in rows]

    def get_organization_member(self, org_id: str, user_id: str) -> OrganizationMembership:
        return OrganizationMembership.from_mapping(
            self._get_one(
                "organization_memberships",
                "get_organization_member",
                {"organization_id": eq(org_id), "user_id": eq(user_id)},
                entity_id=org_id,
            )
        )

    # -------------------------------------------------------------------------
    # Spaces
    # -------------------------------------------------------------------------

    def create_space(self, space: Space) -> Space:
        return self._create("spaces", "create_space", space)

    def get_space(self, space_id: str) -> Space:
        return Space.from_mapping(
            self._get_one("spaces", "get_space", {"id": eq(space_id)}, entity_id=space_id)
        )

    def update_space(self, space: Space) -> Space:
        return self._update("spaces", "update_space", space, SPACE_FIELDS)

    def delete_space(self, space_id: str) -> None:
        self._soft_delete("spaces", "delete_space", space_id)

    def list_spaces_by_organization(
        self, org_id: str, since: datetime | None = None
    ) -> list[Space]:
        params = {
            "select": "*",
            "organization_id": eq(org_id),
            **visibility_params(since),
            "order": "created_at.asc",
        }
        rows = self._request(
            "GET", "spaces", "list_spaces_by_organization", params=params, entity_id=org_id
        )
        return [Space.from_mapping(row) for row in rows]

    def set_space_permission(self, space_id: str, user_id: str, can_edit: bool) -> SpacePermission:
        now = isoformat(utcnow())
        row = self._upsert(
            "space_permissions",
            "set_space_permission",
            {
                "id": new_id(),
                "space_id": space_id,
                "user_id": user_id,
                "can_edit": bool(can_edit),
                "created_at": now,
                "updated_at": now,
            },
            keys=("space_id", "user_id"),
            update_columns=("can_edit", "updated_at"),
            entity_id=space_id,
        )
        return SpacePermission.from_mapping(row)

    def list_space_permissions(self, space_id: str) -> list[SpacePermission]:
        rows = self._request(
            "GET",
            "space_permissions",
            "list_space_permissions",
            params={"select": "*", "space_id": eq(space_id), "order": "created_at.asc"},
            entity_id=space_id,
        )
        return [SpacePermission.from_mapping(row) for row in rows]

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    def create_collection(self, collection: Collection) -> Collection:
        return self._create("collections", "create_collection", collection)

    def get_collection(self, collection_id: str) -> Collection:
        return Collection.from_mapping(
            self._get_one(
                "collections", "get_collection", {"id": eq(collection_id)}, entity_id=collection_id
            )
        )

    def update_collection(self, collection: Collection) -> Collection:
        return self._update("collections", "update_collection", collection, COLLECTION_FIELDS)

    def delete_collection(self, collection_id: str) -> None:
        """Best-effort cascade: PATCH the collection, then its live items.

        If the item step fails the collection is already a tombstone while
        its items are not; this is logged as collection_cascade_failed and
        the error is raised.
        """
        operation = "delete_collection"
        now = isoformat(utcnow())
        rows = self._request(
            "PATCH",
            "collections",
            operation,
            params={"id": eq(collection_id), "deleted_at": "is.null"},
            json={"deleted_at": now, "updated_at": now},
            entity_id=collection_id,
        )
        if not rows:
            self._get_one("collections", operation, {"id": eq(collection_id)}, entity_id=collection_id)
            return

        try:
            items = self._request(
                "PATCH",
                "collection_items",
                operation,
                params={"collection_id": eq(collection_id), "deleted_at": "is.null"},
                json={"deleted_at": now, "updated_at": now},
                entity_id=collection_id,
            )
        except StorageError:
            logger.error("collection_cascade_failed", collection_id=collection_id)
            raise
        logger.info("collection_deleted", collection_id=collection_id, item_count=len(items))

    def list_collections_by_space(
        self,
        space_id: str,
        since: datetime | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> list[Collection]:
        params = {
            "select": "*",
            "space_id": eq(space_id),
            **visibility_params(since),
            "order": "position.asc,created_at.asc",
            **page_params(page, page_size),
        }
        rows = self._request(
            "GET", "collections", "list_collections_by_space", params=params, entity_id=space_id
        )
        return [Collection.from_mapping(row) for row in rows]

    # -------------------------------------------------------------------------
    # Collection items
    # -------------------------------------------------------------------------

    def create_collection_item(self, item: CollectionItem) -> CollectionItem:
        item.metadata = with_normalized_url(item.metadata, item.url)
        return self._create("collection_items", "create_collection_item", item)

    def get_collection_item(self, item_id: str) -> CollectionItem:
        return CollectionItem.from_mapping(
            self._get_one(
                "collection_items", "get_collection_item", {"id": eq(item_id)}, entity_id=item_id
            )
        )

    def update_collection_item(self, item: CollectionItem) -> CollectionItem:
        item.metadata = with_normalized_url(item.metadata, item.url)
        return self._update("collection_items", "update_collection_item", item, ITEM_FIELDS)

    def update_collection_item_partial(
        self, item_id: str, patch: CollectionItemPatch
    ) -> CollectionItem:
        operation = "update_collection_item_partial"
        changes = patch.changes()
        if not changes:
            return self.get_collection_item(item_id)

        if "url" in changes or "metadata" in changes:
            current = self.get_collection_item(item_id)
            changes["metadata"] = with_normalized_url(
                changes.get("metadata", current.metadata), changes.get("url", current.url) or ""
            )

        rows = self._patch(
            "collection_items", operation, {"id": eq(item_id)}, changes, entity_id=item_id
        )
        if not rows:
            raise NotFoundError("Collection item not found", operation=operation, entity_id=item_id)
        return CollectionItem.from_mapping(rows[0])

    def delete_collection_item(self, item_id: str) -> None:
        self._soft_delete("collection_items", "delete_collection_item", item_id)

    def list_items_by_collection(
        self,
        collection_id: str,
        since: datetime | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> list[CollectionItem]:
        params = {
            "select": "*",
            "collection_id": eq(collection_id),
            **visibility_params(since),
            "order": "position.asc,created_at.asc",
            **page_params(page, page_size),
        }
        rows = self._request(
            "GET",
            "collection_items",
            "list_items_by_collection",
            params=params,
            entity_id=collection_id,
        )
        return [CollectionItem.from_mapping(row) for row in rows]

    def find_collection_item_by_url(self, collection_id: str, url: str) -> CollectionItem | None:
        operation = "find_collection_item_by_url"
        normalized = normalize_url(url)
        live = {"select": "*", "collection_id": eq(collection_id), "deleted_at": "is.null"}

        rows = self._request(
            "GET",
            "collection_items",
            operation,
            params={
                **live,
                f"metadata->>{NORMALIZED_URL_KEY}": eq(normalized),
                "order": "created_at.asc",
                "limit": "1",
            },
            entity_id=collection_id,
        )
        if rows:
            return CollectionItem.from_mapping(rows[0])

        # Rows written before the tag existed
        rows = self._request(
            "GET",
            "collection_items",
            operation,
            params={**live, "order": "created_at.asc"},
            entity_id=collection_id,
        )
        for row in rows:
            if normalize_url(row.get("url") or "") == normalized:
                return CollectionItem.from_mapping(row)
        return None

    # -------------------------------------------------------------------------
    # Invitations
    # -------------------------------------------------------------------------

    def create_invitation(self, invitation: OrganizationInvitation) -> OrganizationInvitation:
        apply_invitation_defaults(invitation)
        return self._create("organization_invitations", "create_invitation", invitation)

    def get_invitation_by_token(self, token: str) -> OrganizationInvitation:
        return OrganizationInvitation.from_mapping(
            self._get_one("organization_invitations", "get_invitation_by_token", {"token": eq(token)})
        )

    def list_invitations_by_email(self, email: str) -> list[OrganizationInvitation]:
        rows = self._request(
            "GET",
            "organization_invitations",
            "list_invitations_by_email",
            params={
                "select": "*",
                "email": eq(email.strip().lower()),
                "order": "created_at.desc",
            },
        )
        return [OrganizationInvitation.from_mapping(row) for row in rows]

    def update_invitation(self, invitation: OrganizationInvitation) -> OrganizationInvitation:
        """Conditional PATCH: the filter pins the status that was read."""
        operation = "update_invitation"
        target = InvitationStatus(invitation.status)
        current = OrganizationInvitation.from_mapping(
            self._get_one(
                "organization_invitations",
                operation,
                {"id": eq(invitation.id)},
                entity_id=invitation.id,
            )
        )
        if not current.status.can_transition_to(target):
            raise InvalidRequestError(
                f"Invitation is {current.status.value} and cannot become {target.value}",
                code=StorageErrorCode.E_INVITATION_INVALID,
                operation=operation,
                entity_id=invitation.id,
            )

        rows = self._patch(
            "organization_invitations",
            operation,
            {"id": eq(invitation.id), "status": eq(current.status.value)},
            {
                "status": target.value,
                "accepted_by": invitation.accepted_by,
                "expires_at": isoformat(invitation.expires_at),
            },
            entity_id=invitation.id,
        )
        if not rows:
            raise InvalidRequestError(
                "Invitation changed concurrently",
                code=StorageErrorCode.E_INVITATION_INVALID,
                operation=operation,
                entity_id=invitation.id,
            )
        invitation.updated_at = as_utc(rows[0].get("updated_at")) or utcnow()
        return invitation

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def save_snapshot(self, user_id: str, name: str, tab_groups: list[TabGroup]) -> Snapshot:
        snapshot = Snapshot(user_id=user_id, name=name, tab_groups=list(tab_groups))
        snapshot.recount()
        now = isoformat(utcnow())
        row = self._upsert(
            "snapshots",
            "save_snapshot",
            {
                "id": new_id(),
                "user_id": user_id,
                "name": name,
                "tab_groups": [group.to_dict() for group in snapshot.tab_groups],
                "group_count": snapshot.group_count,
                "tab_count": snapshot.tab_count,
                "created_at": now,
                "updated_at": now,
            },
            keys=("user_id", "name"),
            update_columns=("tab_groups", "group_count", "tab_count", "updated_at"),
            entity_id=user_id,
        )
        stored = Snapshot.from_mapping(row)
        logger.info(
            "snapshot_saved",
            user_id=user_id,
            group_count=stored.group_count,
            tab_count=stored.tab_count,
        )
        return stored

    def list_snapshots(self, user_id: str) -> list[SnapshotInfo]:
        rows = self._request(
            "GET",
            "snapshots",
            "list_snapshots",
            params={
                "select": SNAPSHOT_INFO_COLUMNS,
                "user_id": eq(user_id),
                "order": "updated_at.desc",
            },
            entity_id=user_id,
        )
        return [SnapshotInfo.from_mapping(row) for row in rows]

    def load_snapshot(self, user_id: str, name: str) -> Snapshot:
        return Snapshot.from_mapping(
            self._get_one(
                "snapshots", "load_snapshot", {"user_id": eq(user_id), "name": eq(name)}, entity_id=name
            )
        )

    def delete_snapshot(self, user_id: str, name: str) -> None:
        rows = self._request(
            "DELETE",
            "snapshots",
            "delete_snapshot",
            params={"user_id": eq(user_id), "name": eq(name)},
            entity_id=name,
        )
        if not rows:
            raise NotFoundError("Snapshot not found", operation="delete_snapshot", entity_id=name)

    # -------------------------------------------------------------------------
    # Billing (reads only; mutations stay UnsupportedError)
    # -------------------------------------------------------------------------

    def _latest_subscription_rows(self, user_id: str, operation: str) -> list[dict[str, Any]]:
        return self._request(
            "GET",
            "user_subscriptions",
            operation,
            params={
                "select": "*",
                "user_id": eq(user_id),
                "order": "created_at.desc,id.desc",
                "limit": "1",
            },
            entity_id=user_id,
        )

    def get_user_subscription(self, user_id: str) -> UserSubscription:
        rows = self._latest_subscription_rows(user_id, "get_user_subscription")
        if not rows:
            raise NotFoundError(
                "Subscription not found", operation="get_user_subscription", entity_id=user_id
            )
        return UserSubscription.from_mapping(rows[0])

    def get_user_ai_credits(self, user_id: str) -> AICredits:
        return AICredits.from_mapping(
            self._get_one(
                "ai_credits", "get_user_ai_credits", {"user_id": eq(user_id)}, entity_id=user_id
            )
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def health_check(self) -> None:
        """GET the REST root; any transport error or failure status is unavailable."""
        if self._closed:
            raise UnavailableError("Backend is closed", operation="health_check")
        with storage_call(self.name, "health_check"):
            try:
                response = self._client.get("/")
            except httpx.TransportError as exc:
                logger.warning("health_check_failed", error=str(exc))
                raise UnavailableError(operation="health_check") from exc
            if response.status_code >= 400:
                logger.warning("health_check_failed", status_code=response.status_code)
                raise UnavailableError(
                    f"REST health check returned {response.status_code}", operation="health_check"
                )

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            self._client.close()
        logger.info("backend_closed", backend=self.name)

    @property
    def is_closed(self) -> bool:
        return self._closed
