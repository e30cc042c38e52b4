"""Database module for the structured store.

Provides engine creation with connection strategies, session management,
transaction helpers, and ORM models.
"""

from tabsync.db.engine import connect_with_strategies, create_db_engine, normalize_database_url
from tabsync.db.models import (
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
)
from tabsync.db.session import create_session_factory, transaction

__all__ = [
    # Engine and session
    "connect_with_strategies",
    "create_db_engine",
    "normalize_database_url",
    "create_session_factory",
    "transaction",
    # Base
    "Base",
    # Models
    "UserRow",
    "OrganizationRow",
    "OrganizationMembershipRow",
    "OrganizationInvitationRow",
    "SpaceRow",
    "SpacePermissionRow",
    "CollectionRow",
    "CollectionItemRow",
    "SnapshotRow",
    "UserSubscriptionRow",
    "AICreditsRow",
]
