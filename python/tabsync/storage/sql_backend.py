"""Structured-store backend (SQLAlchemy over PostgreSQL, SQLite in tests).

Design points:
- Construction walks the connection strategies in tabsync.db.engine and fails
  with ConfigurationError when none passes the probe.
- Upserts (memberships, space permissions, snapshots, AI credits) are a
  single INSERT ... ON CONFLICT DO UPDATE keyed on the unique tuple, so they
  are atomic under concurrent callers.
- delete_collection runs the collection and item updates in one transaction.
- Partial item updates build the SET clause from the patch only; an empty
  patch skips the write.
- URL lookups match metadata.normalized_url first, then fall back to an O(n)
  scan of the collection's live items.

Driver errors are translated at one seam (``_session``):
    IntegrityError                    -> ConflictError
    OperationalError / InterfaceError -> UnavailableError
    other DBAPIError                  -> StorageError(E_BACKEND_ERROR)
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, aliased

from tabsync.db import (
    AICreditsRow,
    Base,
    CollectionItemRow,
    CollectionRow,
    OrganizationInvitationRow,
    OrganizationMembershipRow,
    OrganizationRow,
    SnapshotRow,
    SpacePermissionRow,
    SpaceRow,
    UserRow,
    UserSubscriptionRow,
    connect_with_strategies,
    create_session_factory,
    transaction,
)
from tabsync.db.engine import probe
from tabsync.errors import (
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    StorageError,
    StorageErrorCode,
    UnavailableError,
    UnsupportedError,
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
    SubscriptionStatus,
    TabGroup,
    User,
    UserSubscription,
    UserWithSubscription,
    UserTier,
    as_utc,
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
    "item_metadata",
    "position",
)
SUBSCRIPTION_FIELDS = (
    "plan_id",
    "paddle_subscription_id",
    "status",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "canceled_at",
)


def new_id() -> str:
    return str(uuid4())


def _attr_key(name: str) -> str:
    return "item_metadata" if name == "metadata" else name


def _column_values(row_cls: type[Base], record: Any) -> dict[str, Any]:
    """Read the record attributes that map onto ``row_cls`` columns."""
    values: dict[str, Any] = {}
    for attr in sa_inspect(row_cls).column_attrs:
        source = "metadata" if attr.key == "item_metadata" else attr.key
        if not hasattr(record, source):
            continue
        value = getattr(record, source)
        if isinstance(value, Enum):
            value = value.value
        values[attr.key] = value
    return values


def _to_record(record_cls: Any, row: Any) -> Any:
    data = {attr.key: getattr(row, attr.key) for attr in sa_inspect(row).mapper.column_attrs}
    if "item_metadata" in data:
        data["metadata"] = data.pop("item_metadata")
    return record_cls.from_mapping(data)


def _visible(stmt: Any, row_cls: Any, since: datetime | None) -> Any:
    """Apply the live-rows filter, or the incremental view when ``since`` is set."""
    if since is None:
        return stmt.where(row_cls.deleted_at.is_(None))
    since = as_utc(since)
    return stmt.where(
        or_(
            row_cls.updated_at > since,
            and_(row_cls.deleted_at.is_not(None), row_cls.deleted_at > since),
        )
    )


def _paginate(stmt: Any, page: int | None, page_size: int | None) -> Any:
    window = resolve_page(page, page_size)
    if window is None:
        return stmt
    limit, offset = window
    return stmt.limit(limit).offset(offset)


class SqlStorageBackend(StorageBackend):
    """StorageBackend over a transactional SQL store.

    Args:
        config: Connection descriptor; database_url must be set.
        create_schema: Run ``metadata.create_all`` after connecting. Intended
            for tests and local development only; production schemas are
            managed outside this package.

    Raises:
        ConfigurationError: If no connection strategy succeeds.
    """

    name = "sql"

    def __init__(self, config: BackendConfig, *, create_schema: bool = False):
        self._engine, self.strategy = connect_with_strategies(config)
        self._session_factory = create_session_factory(self._engine)
        self._close_lock = threading.Lock()
        self._closed = False
        if create_schema:
            Base.metadata.create_all(self._engine)

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    @contextmanager
    def _session(self, operation: str, entity_id: str | None = None) -> Iterator[Session]:
        """Open a session for one contract call and translate driver errors."""
        if self._closed:
            raise UnavailableError("Backend is closed", operation=operation, entity_id=entity_id)
        with storage_call(self.name, operation):
            db = self._session_factory()
            try:
                yield db
            except IntegrityError as exc:
                raise ConflictError(
                    f"Constraint violation: {exc.orig}", operation=operation, entity_id=entity_id
                ) from exc
            except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
                logger.warning("db_unavailable", error=str(exc))
                raise UnavailableError(operation=operation, entity_id=entity_id) from exc
            except DBAPIError as exc:
                if exc.connection_invalidated:
                    raise UnavailableError(operation=operation, entity_id=entity_id) from exc
                raise StorageError(
                    StorageErrorCode.E_BACKEND_ERROR,
                    f"Database error: {exc.orig}",
                    operation=operation,
                    entity_id=entity_id,
                ) from exc
            finally:
                db.close()

    def _insert_stmt(self, db: Session, row_cls: type[Base]) -> Any:
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(row_cls)
        if dialect == "sqlite":
            return sqlite_insert(row_cls)
        raise UnsupportedError(f"Native upsert is not available on dialect {dialect!r}")

    def _upsert(
        self,
        db: Session,
        row_cls: type[Base],
        values: dict[str, Any],
        keys: tuple[str, ...],
        update_columns: tuple[str, ...],
    ) -> None:
        """INSERT ... ON CONFLICT (keys) DO UPDATE SET update_columns."""
        stmt = self._insert_stmt(db, row_cls).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(keys),
            set_={column: stmt.excluded[column] for column in update_columns},
        )
        db.execute(stmt)

    def _create(self, operation: str, row_cls: type[Base], record: Any) -> Any:
        now = utcnow()
        values = _column_values(row_cls, record)
        values.update(id=record.id or new_id(), created_at=now, updated_at=now)
        if "deleted_at" in values:
            values["deleted_at"] = None

        with self._session(operation, values["id"]) as db, transaction(db):
            db.add(row_cls(**values))

        record.id = values["id"]
        record.created_at = now
        record.updated_at = now
        return record

    def _get(self, operation: str, row_cls: type[Base], record_cls: Any, entity_id: str) -> Any:
        with self._session(operation, entity_id) as db:
            row = db.get(row_cls, entity_id)
            if row is None:
                raise NotFoundError(
                    f"{record_cls.__name__} not found", operation=operation, entity_id=entity_id
                )
            return _to_record(record_cls, row)

    def _update(
        self,
        operation: str,
        row_cls: Any,
        record: Any,
        columns: tuple[str, ...],
    ) -> Any:
        now = utcnow()
        values = {
            key: value
            for key, value in _column_values(row_cls, record).items()
            if key in columns
        }
        values["updated_at"] = now

        with self._session(operation, record.id) as db, transaction(db):
            result = db.execute(
                update(row_cls)
                .where(row_cls.id == record.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(
                    f"{type(record).__name__} not found", operation=operation, entity_id=record.id
                )

        record.updated_at = now
        return record

    def _soft_delete(self, operation: str, row_cls: Any, entity_id: str) -> None:
        now = utcnow()
        with self._session(operation, entity_id) as db, transaction(db):
            row = db.get(row_cls, entity_id)
            if row is None:
                raise NotFoundError(operation=operation, entity_id=entity_id)
            if row.deleted_at is not None:
                return
            db.execute(
                update(row_cls)
                .where(row_cls.id == entity_id)
                .values(deleted_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        user.email = user.email.strip().lower()
        return self._create("create_user", UserRow, user)

    def get_user_by_id(self, user_id: str) -> User:
        return self._get("get_user_by_id", UserRow, User, user_id)

    def get_user_by_email(self, email: str) -> User:
        with self._session("get_user_by_email") as db:
            row = db.scalar(select(UserRow).where(UserRow.email == email.strip().lower()))
            if row is None:
                raise NotFoundError("User not found", operation="get_user_by_email")
            return _to_record(User, row)

    def get_user_with_subscription(self, user_id: str) -> UserWithSubscription:
        operation = "get_user_with_subscription"
        candidate = aliased(UserSubscriptionRow)
        latest_id = (
            select(candidate.id)
            .where(candidate.user_id == UserRow.id)
            .order_by(candidate.created_at.desc(), candidate.id.desc())
            .limit(1)
            .correlate(UserRow)
            .scalar_subquery()
        )
        stmt = (
            select(UserRow, UserSubscriptionRow)
            .select_from(UserRow)
            .outerjoin(UserSubscriptionRow, UserSubscriptionRow.id == latest_id)
            .where(UserRow.id == user_id)
        )
        with self._session(operation, user_id) as db:
            result = db.execute(stmt).first()
            if result is None:
                raise NotFoundError("User not found", operation=operation, entity_id=user_id)
            user_row, subscription_row = result
            subscription = None
            if subscription_row is not None:
                subscription = _to_record(UserSubscription, subscription_row)
            return UserWithSubscription(user=_to_record(User, user_row), subscription=subscription)

    def update_user(self, user: User) -> User:
        return self._update("update_user", UserRow, user, USER_FIELDS)

    def update_user_tier(self, user_id: str, tier: UserTier) -> User:
        tier = UserTier(tier)
        with self._session("update_user_tier", user_id) as db, transaction(db):
            result = db.execute(
                update(UserRow)
                .where(UserRow.id == user_id)
                .values(tier=tier.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError("User not found", operation="update_user_tier", entity_id=user_id)
        logger.info("user_tier_updated", user_id=user_id, tier=tier.value)
        return self.get_user_by_id(user_id)

    def delete_user(self, user_id: str) -> None:
        with self._session("delete_user", user_id) as db, transaction(db):
            result = db.execute(delete(UserRow).where(UserRow.id == user_id))
            if result.rowcount == 0:
                raise NotFoundError("User not found", operation="delete_user", entity_id=user_id)

    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------

    def create_organization(self, org: Organization) -> Organization:
        """Insert the organization and its owner membership in one transaction."""
        now = utcnow()
        values = _column_values(OrganizationRow, org)
        values.update(id=org.id or new_id(), created_at=now, updated_at=now)

        with self._session("create_organization", values["id"]) as db, transaction(db):
            db.add(OrganizationRow(**values))
            db.flush()
            db.add(
                OrganizationMembershipRow(
                    id=new_id(),
                    organization_id=values["id"],
                    user_id=org.owner_id,
                    role=OrgRole.owner.value,
                    created_at=now,
                    updated_at=now,
                )
            )

        org.id = values["id"]
        org.created_at = now
        org.updated_at = now
        logger.info("organization_created", organization_id=org.id, owner_id=org.owner_id)
        return org

    def get_organization(self, org_id: str) -> Organization:
        return self._get("get_organization", OrganizationRow, Organization, org_id)

    def update_organization(self, org: Organization) -> Organization:
        return self._update("update_organization", OrganizationRow, org, ORGANIZATION_FIELDS)

    def list_user_organizations(self, user_id: str) -> list[Organization]:
        member_of = select(OrganizationMembershipRow.organization_id).where(
            OrganizationMembershipRow.user_id == user_id
        )
        stmt = (
            select(OrganizationRow)
            .where(or_(OrganizationRow.owner_id == user_id, OrganizationRow.id.in_(member_of)))
            .order_by(OrganizationRow.created_at.desc())
        )
        with self._session("list_user_organizations", user_id) as db:
            return [_to_record(Organization, row) for row in db.scalars(stmt)]

    def add_organization_member(
        self, membership: OrganizationMembership
    ) -> OrganizationMembership:
        now = utcnow()
        role = OrgRole(membership.role)
        values = {
            "id": membership.id or new_id(),
            "organization_id": membership.organization_id,
            "user_id": membership.user_id,
            "role": role.value,
            "created_at": now,
            "updated_at": now,
        }
        with self._session("add_organization_member", membership.organization_id) as db:
            with transaction(db):
                self._upsert(
                    db,
                    OrganizationMembershipRow,
                    values,
                    keys=("organization_id", "user_id"),
                    update_columns=("role", "updated_at"),
                )
            row = db.scalar(
                select(OrganizationMembershipRow).where(
                    OrganizationMembershipRow.organization_id == membership.organization_id,
                    OrganizationMembershipRow.user_id == membership.user_id,
                )
            )
            stored = _to_record(OrganizationMembership, row)

        membership.id = stored.id
        membership.role = stored.role
        membership.created_at = stored.created_at
        membership.updated_at = stored.updated_at
        return membership

    def list_organization_members(self, org_id: str) -> list[OrganizationMembership]:
        stmt = (
            select(OrganizationMembershipRow)
            .where(OrganizationMembershipRow.organization_id == org_id)
            .order_by(OrganizationMembershipRow.created_at)
        )
        with self._session("list_organization_members", org_id) as db:
            return [_to_record(OrganizationMembership, row) for row in db.scalars(stmt)]

    def get_organization_member(self, org_id: str, user_id: str) -> OrganizationMembership:
        with self._session("get_organization_member", org_id) as db:
            row = db.scalar(
                select(OrganizationMembershipRow).where(
                    OrganizationMembershipRow.organization_id == org_id,
                    OrganizationMembershipRow.user_id == user_id,
                )
            )
            if row is None:
                raise NotFoundError(
                    "Membership not found", operation="get_organization_member", entity_id=org_id
                )
            return _to_record(OrganizationMembership, row)

    # -------------------------------------------------------------------------
    # Spaces
    # -------------------------------------------------------------------------

    def create_space(self, space: Space) -> Space:
        return self._create("create_space", SpaceRow, space)

    def get_space(self, space_id: str) -> Space:
        return self._get("get_space", SpaceRow, Space, space_id)

    def update_space(self, space: Space) -> Space:
        return self._update("update_space", SpaceRow, space, SPACE_FIELDS)

    def delete_space(self, space_id: str) -> None:
        self._soft_delete("delete_space", SpaceRow, space_id)

    def list_spaces_by_organization(
        self, org_id: str, since: datetime | None = None
    ) -> list[Space]:
        stmt = _visible(
            select(SpaceRow).where(SpaceRow.organization_id == org_id), SpaceRow, since
        ).order_by(SpaceRow.created_at)
        with self._session("list_spaces_by_organization", org_id) as db:
            return [_to_record(Space, row) for row in db.scalars(stmt)]

    def set_space_permission(self, space_id: str, user_id: str, can_edit: bool) -> SpacePermission:
        now = utcnow()
        values = {
            "id": new_id(),
            "space_id": space_id,
            "user_id": user_id,
            "can_edit": bool(can_edit),
            "created_at": now,
            "updated_at": now,
        }
        with self._session("set_space_permission", space_id) as db:
            with transaction(db):
                self._upsert(
                    db,
                    SpacePermissionRow,
                    values,
                    keys=("space_id", "user_id"),
                    update_columns=("can_edit", "updated_at"),
                )
            row = db.scalar(
                select(SpacePermissionRow).where(
                    SpacePermissionRow.space_id == space_id,
                    SpacePermissionRow.user_id == user_id,
                )
            )
            return _to_record(SpacePermission, row)

    def list_space_permissions(self, space_id: str) -> list[SpacePermission]:
        stmt = (
            select(SpacePermissionRow)
            .where(SpacePermissionRow.space_id == space_id)
            .order_by(SpacePermissionRow.created_at)
        )
        with self._session("list_space_permissions", space_id) as db:
            return [_to_record(SpacePermission, row) for row in db.scalars(stmt)]

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    def create_collection(self, collection: Collection) -> Collection:
        return self._create("create_collection", CollectionRow, collection)

    def get_collection(self, collection_id: str) -> Collection:
        return self._get("get_collection", CollectionRow, Collection, collection_id)

    def update_collection(self, collection: Collection) -> Collection:
        return self._update("update_collection", CollectionRow, collection, COLLECTION_FIELDS)

    def delete_collection(self, collection_id: str) -> None:
        """Soft delete the collection and its live items atomically."""
        now = utcnow()
        with self._session("delete_collection", collection_id) as db, transaction(db):
            row = db.get(CollectionRow, collection_id)
            if row is None:
                raise NotFoundError(
                    "Collection not found", operation="delete_collection", entity_id=collection_id
                )
            if row.deleted_at is not None:
                return
            db.execute(
                update(CollectionRow)
                .where(CollectionRow.id == collection_id)
                .values(deleted_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            item_count = self._soft_delete_items(db, collection_id, now)
        logger.info("collection_deleted", collection_id=collection_id, item_count=item_count)

    def _soft_delete_items(self, db: Session, collection_id: str, now: datetime) -> int:
        """Cascade step of delete_collection; runs inside the caller's transaction."""
        result = db.execute(
            update(CollectionItemRow)
            .where(
                CollectionItemRow.collection_id == collection_id,
                CollectionItemRow.deleted_at.is_(None),
            )
            .values(deleted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def list_collections_by_space(
        self,
        space_id: str,
        since: datetime | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> list[Collection]:
        stmt = _visible(
            select(CollectionRow).where(CollectionRow.space_id == space_id), CollectionRow, since
        ).order_by(CollectionRow.position, CollectionRow.created_at)
        stmt = _paginate(stmt, page, page_size)
        with self._session("list_collections_by_space", space_id) as db:
            return [_to_record(Collection, row) for row in db.scalars(stmt)]

    # -------------------------------------------------------------------------
    # Collection items
    # -------------------------------------------------------------------------

    def create_collection_item(self, item: CollectionItem) -> CollectionItem:
        item.metadata = with_normalized_url(item.metadata, item.url)
        return self._create("create_collection_item", CollectionItemRow, item)

    def get_collection_item(self, item_id: str) -> CollectionItem:
        return self._get("get_collection_item", CollectionItemRow, CollectionItem, item_id)

    def update_collection_item(self, item: CollectionItem) -> CollectionItem:
        item.metadata = with_normalized_url(item.metadata, item.url)
        return self._update("update_collection_item", CollectionItemRow, item, ITEM_FIELDS)

    def update_collection_item_partial(
        self, item_id: str, patch: CollectionItemPatch
    ) -> CollectionItem:
        changes = patch.changes()
        operation = "update_collection_item_partial"

        with self._session(operation, item_id) as db:
            row = db.get(CollectionItemRow, item_id)
            if row is None:
                raise NotFoundError("Collection item not found", operation=operation, entity_id=item_id)
            if not changes:
                return _to_record(CollectionItem, row)

            values = {_attr_key(key): value for key, value in changes.items()}
            if "url" in changes or "metadata" in changes:
                # Keep the normalized-URL tag in step with the stored URL
                metadata = changes.get("metadata", row.item_metadata)
                url = changes.get("url", row.url)
                values["item_metadata"] = with_normalized_url(metadata, url or "")
            values["updated_at"] = utcnow()

            with transaction(db):
                db.execute(
                    update(CollectionItemRow)
                    .where(CollectionItemRow.id == item_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
            db.expire_all()
            return _to_record(CollectionItem, db.get(CollectionItemRow, item_id))

    def delete_collection_item(self, item_id: str) -> None:
        self._soft_delete("delete_collection_item", CollectionItemRow, item_id)

    def list_items_by_collection(
        self,
        collection_id: str,
        since: datetime | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> list[CollectionItem]:
        stmt = _visible(
            select(CollectionItemRow).where(CollectionItemRow.collection_id == collection_id),
            CollectionItemRow,
            since,
        ).order_by(CollectionItemRow.position, CollectionItemRow.created_at)
        stmt = _paginate(stmt, page, page_size)
        with self._session("list_items_by_collection", collection_id) as db:
            return [_to_record(CollectionItem, row) for row in db.scalars(stmt)]

    def find_collection_item_by_url(self, collection_id: str, url: str) -> CollectionItem | None:
        normalized = normalize_url(url)
        live = select(CollectionItemRow).where(
            CollectionItemRow.collection_id == collection_id,
            CollectionItemRow.deleted_at.is_(None),
        )
        with self._session("find_collection_item_by_url", collection_id) as db:
            row = db.scalars(
                live.where(
                    CollectionItemRow.item_metadata[NORMALIZED_URL_KEY].as_string() == normalized
                )
                .order_by(CollectionItemRow.created_at)
                .limit(1)
            ).first()
            if row is not None:
                return _to_record(CollectionItem, row)

            # Rows written before the tag existed
            for row in db.scalars(live.order_by(CollectionItemRow.created_at)):
                if normalize_url(row.url) == normalized:
                    return _to_record(CollectionItem, row)
        return None

    # -------------------------------------------------------------------------
    # Invitations
    # -------------------------------------------------------------------------

    def create_invitation(self, invitation: OrganizationInvitation) -> OrganizationInvitation:
        apply_invitation_defaults(invitation)
        return self._create("create_invitation", OrganizationInvitationRow, invitation)

    def get_invitation_by_token(self, token: str) -> OrganizationInvitation:
        with self._session("get_invitation_by_token") as db:
            row = db.scalar(
                select(OrganizationInvitationRow).where(OrganizationInvitationRow.token == token)
            )
            if row is None:
                raise NotFoundError("Invitation not found", operation="get_invitation_by_token")
            return _to_record(OrganizationInvitation, row)

    def list_invitations_by_email(self, email: str) -> list[OrganizationInvitation]:
        stmt = (
            select(OrganizationInvitationRow)
            .where(OrganizationInvitationRow.email == email.strip().lower())
            .order_by(OrganizationInvitationRow.created_at.desc())
        )
        with self._session("list_invitations_by_email") as db:
            return [_to_record(OrganizationInvitation, row) for row in db.scalars(stmt)]

    def update_invitation(self, invitation: OrganizationInvitation) -> OrganizationInvitation:
        operation = "update_invitation"
        target = InvitationStatus(invitation.status)
        now = utcnow()

        with self._session(operation, invitation.id) as db, transaction(db):
            row = db.get(OrganizationInvitationRow, invitation.id)
            if row is None:
                raise NotFoundError("Invitation not found", operation=operation, entity_id=invitation.id)
            current = InvitationStatus(row.status)
            if not current.can_transition_to(target):
                raise InvalidRequestError(
                    f"Invitation is {current.value} and cannot become {target.value}",
                    code=StorageErrorCode.E_INVITATION_INVALID,
                    operation=operation,
                    entity_id=invitation.id,
                )
            db.execute(
                update(OrganizationInvitationRow)
                .where(OrganizationInvitationRow.id == invitation.id)
                .values(
                    status=target.value,
                    accepted_by=invitation.accepted_by,
                    expires_at=invitation.expires_at,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

        invitation.updated_at = now
        return invitation

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def save_snapshot(self, user_id: str, name: str, tab_groups: list[TabGroup]) -> Snapshot:
        snapshot = Snapshot(user_id=user_id, name=name, tab_groups=list(tab_groups))
        snapshot.recount()
        now = utcnow()
        values = {
            "id": new_id(),
            "user_id": user_id,
            "name": name,
            "tab_groups": [group.to_dict() for group in snapshot.tab_groups],
            "group_count": snapshot.group_count,
            "tab_count": snapshot.tab_count,
            "created_at": now,
            "updated_at": now,
        }

        with self._session("save_snapshot", user_id) as db:
            with transaction(db):
                self._upsert(
                    db,
                    SnapshotRow,
                    values,
                    keys=("user_id", "name"),
                    update_columns=("tab_groups", "group_count", "tab_count", "updated_at"),
                )
            row = db.scalar(
                select(SnapshotRow).where(SnapshotRow.user_id == user_id, SnapshotRow.name == name)
            )
            stored = _to_record(Snapshot, row)

        logger.info(
            "snapshot_saved",
            user_id=user_id,
            group_count=stored.group_count,
            tab_count=stored.tab_count,
        )
        return stored

    def list_snapshots(self, user_id: str) -> list[SnapshotInfo]:
        stmt = (
            select(
                SnapshotRow.name,
                SnapshotRow.group_count,
                SnapshotRow.tab_count,
                SnapshotRow.created_at,
                SnapshotRow.updated_at,
            )
            .where(SnapshotRow.user_id == user_id)
            .order_by(SnapshotRow.updated_at.desc())
        )
        with self._session("list_snapshots", user_id) as db:
            return [SnapshotInfo.from_mapping(row._mapping) for row in db.execute(stmt)]

    def load_snapshot(self, user_id: str, name: str) -> Snapshot:
        with self._session("load_snapshot", user_id) as db:
            row = db.scalar(
                select(SnapshotRow).where(SnapshotRow.user_id == user_id, SnapshotRow.name == name)
            )
            if row is None:
                raise NotFoundError("Snapshot not found", operation="load_snapshot", entity_id=name)
            return _to_record(Snapshot, row)

    def delete_snapshot(self, user_id: str, name: str) -> None:
        with self._session("delete_snapshot", user_id) as db, transaction(db):
            result = db.execute(
                delete(SnapshotRow).where(SnapshotRow.user_id == user_id, SnapshotRow.name == name)
            )
            if result.rowcount == 0:
                raise NotFoundError("Snapshot not found", operation="delete_snapshot", entity_id=name)

    # -------------------------------------------------------------------------
    # Billing
    # -------------------------------------------------------------------------

    def create_subscription(self, subscription: UserSubscription) -> UserSubscription:
        return self._create("create_subscription", UserSubscriptionRow, subscription)

    def get_user_subscription(self, user_id: str) -> UserSubscription:
        with self._session("get_user_subscription", user_id) as db:
            row = db.scalar(
                select(UserSubscriptionRow)
                .where(UserSubscriptionRow.user_id == user_id)
                .order_by(UserSubscriptionRow.created_at.desc(), UserSubscriptionRow.id.desc())
                .limit(1)
            )
            if row is None:
                raise NotFoundError(
                    "Subscription not found", operation="get_user_subscription", entity_id=user_id
                )
            return _to_record(UserSubscription, row)

    def update_subscription(self, subscription: UserSubscription) -> UserSubscription:
        return self._update(
            "update_subscription", UserSubscriptionRow, subscription, SUBSCRIPTION_FIELDS
        )

    def cancel_subscription(self, user_id: str) -> UserSubscription:
        subscription = self.get_user_subscription(user_id)
        subscription.status = SubscriptionStatus.canceled
        subscription.canceled_at = utcnow()
        self.update_subscription(subscription)
        logger.info("subscription_canceled", user_id=user_id, subscription_id=subscription.id)
        return subscription

    def get_user_ai_credits(self, user_id: str) -> AICredits:
        with self._session("get_user_ai_credits", user_id) as db:
            row = db.scalar(select(AICreditsRow).where(AICreditsRow.user_id == user_id))
            if row is None:
                raise NotFoundError(
                    "AI credits not found", operation="get_user_ai_credits", entity_id=user_id
                )
            return _to_record(AICredits, row)

    def update_ai_credits(self, credits: AICredits) -> AICredits:
        """Upsert the credit balance row for credits.user_id."""
        now = utcnow()
        period_start = credits.period_start or now
        values = {
            "id": credits.id or new_id(),
            "user_id": credits.user_id,
            "credits_total": credits.credits_total,
            "credits_used": credits.credits_used,
            "period_start": period_start,
            "period_end": credits.period_end or period_start + timedelta(days=30),
            "created_at": now,
            "updated_at": now,
        }
        with self._session("update_ai_credits", credits.user_id) as db, transaction(db):
            self._upsert(
                db,
                AICreditsRow,
                values,
                keys=("user_id",),
                update_columns=(
                    "credits_total",
                    "credits_used",
                    "period_start",
                    "period_end",
                    "updated_at",
                ),
            )
        return self.get_user_ai_credits(credits.user_id)

    def consume_ai_credits(self, user_id: str, amount: int) -> AICredits:
        """Atomically spend ``amount`` credits.

        Raises:
            InvalidRequestError: If amount is not positive.
            NotFoundError: If the user has no credit row.
            ConflictError: E_INSUFFICIENT_CREDITS when the balance is short.
        """
        operation = "consume_ai_credits"
        if amount <= 0:
            raise InvalidRequestError("amount must be positive", operation=operation)

        with self._session(operation, user_id) as db, transaction(db):
            result = db.execute(
                update(AICreditsRow)
                .where(
                    AICreditsRow.user_id == user_id,
                    AICreditsRow.credits_total - AICreditsRow.credits_used >= amount,
                )
                .values(credits_used=AICreditsRow.credits_used + amount, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                exists = db.scalar(select(AICreditsRow.id).where(AICreditsRow.user_id == user_id))
                if exists is None:
                    raise NotFoundError("AI credits not found", operation=operation, entity_id=user_id)
                raise ConflictError(
                    "Insufficient AI credits",
                    code=StorageErrorCode.E_INSUFFICIENT_CREDITS,
                    operation=operation,
                    entity_id=user_id,
                )
        return self.get_user_ai_credits(user_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def health_check(self) -> None:
        if self._closed:
            raise UnavailableError("Backend is closed", operation="health_check")
        with storage_call(self.name, "health_check"):
            try:
                probe(self._engine)
            except SQLAlchemyError as exc:
                logger.warning("health_check_failed", error=str(exc))
                raise UnavailableError(operation="health_check") from exc

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            self._engine.dispose()
        logger.info("backend_closed", backend=self.name)

    @property
    def is_closed(self) -> bool:
        return self._closed
