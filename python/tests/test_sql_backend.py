"""Tests for the structured-store backend.

These run against a throwaway SQLite file per test. The same contract tests
run against PostgreSQL when TEST_POSTGRES_URL is set (see TestPostgresSmoke).
"""

from datetime import timedelta

import pytest
from sqlalchemy import create_engine, update

from tests.factories import (
    create_test_collection,
    create_test_item,
    create_test_organization,
    create_test_space,
    create_test_user,
    make_tab_groups,
)
from tabsync.db import CollectionItemRow, UserSubscriptionRow, create_session_factory
from tabsync.errors import (
    ConfigurationError,
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    StorageErrorCode,
    UnavailableError,
)
from tabsync.models import (
    AICredits,
    CollectionItemPatch,
    InvitationStatus,
    OrganizationInvitation,
    OrganizationMembership,
    OrgRole,
    SubscriptionStatus,
    User,
    UserSubscription,
    UserTier,
    utcnow,
)
from tabsync.services.url_normalize import NORMALIZED_URL_KEY
from tabsync.storage.base import BackendConfig
from tabsync.storage.sql_backend import SqlStorageBackend


class TestTabSyncScenario:
    """End-to-end walk through the primary flow."""

    def test_user_org_space_and_snapshot_overwrite(self, sql_backend):
        """Saving a snapshot twice under one name keeps one entry with the latest counts."""
        user = sql_backend.create_user(User(email="u1@example.com", name="U1"))
        org = create_test_organization(sql_backend, user, name="o1")

        membership = sql_backend.get_organization_member(org.id, user.id)
        assert membership.role is OrgRole.owner

        space = create_test_space(sql_backend, org, name="s1")
        assert sql_backend.get_space(space.id).organization_id == org.id

        sql_backend.save_snapshot(user.id, "work", make_tab_groups(2, 3))
        listing = sql_backend.list_snapshots(user.id)
        assert [(s.name, s.group_count, s.tab_count) for s in listing] == [("work", 2, 5)]

        sql_backend.save_snapshot(user.id, "work", make_tab_groups(1))
        listing = sql_backend.list_snapshots(user.id)
        assert [(s.name, s.group_count, s.tab_count) for s in listing] == [("work", 1, 1)]

        loaded = sql_backend.load_snapshot(user.id, "work")
        assert len(loaded.tab_groups) == 1
        assert loaded.tab_groups[0].tab_count == 1


class TestUsers:
    """Tests for user operations."""

    def test_create_assigns_id_and_timestamps(self, sql_backend):
        """create_user fills id, created_at and updated_at in place."""
        user = User(email="new@example.com")
        returned = sql_backend.create_user(user)

        assert returned is user
        assert user.id
        assert user.created_at is not None
        assert user.created_at.tzinfo is not None
        assert user.updated_at == user.created_at

    def test_email_is_case_insensitive(self, sql_backend):
        """Emails are stored lowercased and looked up case-insensitively."""
        created = sql_backend.create_user(User(email="  Mixed@Example.COM "))

        assert created.email == "mixed@example.com"
        assert sql_backend.get_user_by_email("MIXED@example.com").id == created.id

    def test_duplicate_email_conflicts(self, sql_backend):
        """A second user with the same email raises ConflictError."""
        sql_backend.create_user(User(email="dup@example.com"))

        with pytest.raises(ConflictError):
            sql_backend.create_user(User(email="dup@example.com"))

    def test_update_user_tier(self, sql_backend):
        """update_user_tier changes only the tier and bumps updated_at."""
        user = create_test_user(sql_backend)

        updated = sql_backend.update_user_tier(user.id, UserTier.pro)

        assert updated.tier is UserTier.pro
        assert updated.name == user.name
        assert updated.updated_at >= user.updated_at

    def test_update_unknown_user_is_not_found(self, sql_backend):
        """update_* never creates a row."""
        with pytest.raises(NotFoundError):
            sql_backend.update_user(User(email="ghost@example.com", id="missing"))
        with pytest.raises(NotFoundError):
            sql_backend.update_user_tier("missing", UserTier.pro)

    def test_delete_user_cascades_to_owned_organizations(self, sql_backend):
        """Hard-deleting a user removes the organizations they own."""
        user = create_test_user(sql_backend)
        org = create_test_organization(sql_backend, user)

        sql_backend.delete_user(user.id)

        with pytest.raises(NotFoundError):
            sql_backend.get_user_by_id(user.id)
        with pytest.raises(NotFoundError):
            sql_backend.get_organization(org.id)

    def test_delete_unknown_user_is_not_found(self, sql_backend):
        with pytest.raises(NotFoundError):
            sql_backend.delete_user("missing")


class TestOrganizations:
    """Tests for organizations and memberships."""

    def test_create_adds_owner_membership(self, sql_backend):
        """create_organization writes the owner membership in the same transaction."""
        owner = create_test_user(sql_backend)
        org = create_test_organization(sql_backend, owner)

        members = sql_backend.list_organization_members(org.id)

        assert [(m.user_id, m.role) for m in members] == [(owner.id, OrgRole.owner)]

    def test_create_with_unknown_owner_leaves_nothing_behind(self, sql_backend):
        """An organization whose owner no longer exists is rejected and not stored."""
        owner = create_test_user(sql_backend)
        sql_backend.delete_user(owner.id)

        with pytest.raises(ConflictError):
            create_test_organization(sql_backend, owner)

        assert sql_backend.list_user_organizations(owner.id) == []

    def test_membership_upsert_keeps_one_row(self, sql_backend):
        """Adding the same member twice updates the role instead of duplicating."""
        owner = create_test_user(sql_backend)
        member = create_test_user(sql_backend)
        org = create_test_organization(sql_backend, owner)

        first = sql_backend.add_organization_member(
            OrganizationMembership(organization_id=org.id, user_id=member.id, role=OrgRole.member)
        )
        second = sql_backend.add_organization_member(
            OrganizationMembership(organization_id=org.id, user_id=member.id, role=OrgRole.admin)
        )

        assert second.id == first.id
        assert second.role is OrgRole.admin
        rows = [m for m in sql_backend.list_organization_members(org.id) if m.user_id == member.id]
        assert len(rows) == 1
        assert rows[0].role is OrgRole.admin

    def test_list_user_organizations_merges_owned_and_member(self, sql_backend):
        """Owned and member-of organizations appear once each, newest first."""
        user = create_test_user(sql_backend)
        other = create_test_user(sql_backend)
        owned = create_test_organization(sql_backend, user, name="owned")
        joined = create_test_organization(sql_backend, other, name="joined")
        create_test_organization(sql_backend, other, name="unrelated")
        sql_backend.add_organization_member(
            OrganizationMembership(organization_id=joined.id, user_id=user.id)
        )

        orgs = sql_backend.list_user_organizations(user.id)

        assert [o.id for o in orgs] == [joined.id, owned.id]

    def test_update_organization(self, sql_backend):
        owner = create_test_user(sql_backend)
        org = create_test_organization(sql_backend, owner)
        org.name = "Renamed"
        org.color = "#ff0000"

        sql_backend.update_organization(org)

        stored = sql_backend.get_organization(org.id)
        assert stored.name == "Renamed"
        assert stored.color == "#ff0000"

    def test_get_organization_member_not_found(self, sql_backend):
        owner = create_test_user(sql_backend)
        org = create_test_organization(sql_backend, owner)

        with pytest.raises(NotFoundError):
            sql_backend.get_organization_member(org.id, "someone-else")


class TestSpaces:
    """Tests for spaces and space permissions."""

    @pytest.fixture
    def org(self, sql_backend):
        return create_test_organization(sql_backend, create_test_user(sql_backend))

    def test_soft_delete_hides_from_default_listing(self, sql_backend, org):
        """Deleted spaces drop out of the listing but stay readable by id."""
        keep = create_test_space(sql_backend, org, name="keep")
        gone = create_test_space(sql_backend, org, name="gone")

        sql_backend.delete_space(gone.id)

        assert [s.id for s in sql_backend.list_spaces_by_organization(org.id)] == [keep.id]
        assert sql_backend.get_space(gone.id).deleted_at is not None

    def test_since_returns_tombstones(self, sql_backend, org):
        """An incremental listing includes spaces deleted after the cutoff."""
        space = create_test_space(sql_backend, org)
        since = utcnow()

        sql_backend.delete_space(space.id)

        changed = sql_backend.list_spaces_by_organization(org.id, since=since)
        assert [s.id for s in changed] == [space.id]
        assert changed[0].deleted_at is not None

    def test_since_excludes_unchanged_rows(self, sql_backend, org):
        create_test_space(sql_backend, org)
        since = utcnow() + timedelta(seconds=1)

        assert sql_backend.list_spaces_by_organization(org.id, since=since) == []

    def test_delete_twice_is_noop(self, sql_backend, org):
        """Deleting an already-deleted space keeps the first deleted_at."""
        space = create_test_space(sql_backend, org)
        sql_backend.delete_space(space.id)
        first = sql_backend.get_space(space.id).deleted_at

        sql_backend.delete_space(space.id)

        assert sql_backend.get_space(space.id).deleted_at == first

    def test_delete_unknown_space_is_not_found(self, sql_backend):
        with pytest.raises(NotFoundError):
            sql_backend.delete_space("missing")

    def test_set_space_permission_upserts(self, sql_backend, org):
        """A second grant for the same user replaces can_edit."""
        space = create_test_space(sql_backend, org)
        user = create_test_user(sql_backend)

        sql_backend.set_space_permission(space.id, user.id, can_edit=False)
        granted = sql_backend.set_space_permission(space.id, user.id, can_edit=True)

        permissions = sql_backend.list_space_permissions(space.id)
        assert len(permissions) == 1
        assert permissions[0].can_edit is True
        assert granted.id == permissions[0].id


class TestCollections:
    """Tests for collections, pagination and the delete cascade."""

    @pytest.fixture
    def space(self, sql_backend):
        org = create_test_organization(sql_backend, create_test_user(sql_backend))
        return create_test_space(sql_backend, org)

    def test_listing_orders_by_position(self, sql_backend, space):
        create_test_collection(sql_backend, space, name="second", position=2)
        create_test_collection(sql_backend, space, name="first", position=1)

        names = [c.name for c in sql_backend.list_collections_by_space(space.id)]

        assert names == ["first", "second"]

    def test_pagination(self, sql_backend, space):
        """page is 1-based; page_size is clamped to 1..200."""
        for position in range(5):
            create_test_collection(sql_backend, space, name=f"c{position}", position=position)

        page_two = sql_backend.list_collections_by_space(space.id, page=2, page_size=2)
        assert [c.name for c in page_two] == ["c2", "c3"]

        clamped_low = sql_backend.list_collections_by_space(space.id, page=1, page_size=0)
        assert [c.name for c in clamped_low] == ["c0"]

        clamped_high = sql_backend.list_collections_by_space(space.id, page=1, page_size=10_000)
        assert len(clamped_high) == 5

        past_end = sql_backend.list_collections_by_space(space.id, page=9, page_size=2)
        assert past_end == []

    def test_delete_cascades_to_items(self, sql_backend, space):
        """Deleting a collection soft-deletes every live item with it."""
        collection = create_test_collection(sql_backend, space)
        items = [
            create_test_item(sql_backend, collection, url=f"https://example.com/{n}")
            for n in range(3)
        ]

        sql_backend.delete_collection(collection.id)

        assert sql_backend.get_collection(collection.id).deleted_at is not None
        for item in items:
            assert sql_backend.get_collection_item(item.id).deleted_at is not None
        assert sql_backend.list_items_by_collection(collection.id) == []

    def test_cascade_is_atomic(self, sql_backend, space, monkeypatch):
        """If the item step fails, the collection is not deleted either."""
        collection = create_test_collection(sql_backend, space)
        item = create_test_item(sql_backend, collection)

        def boom(db, collection_id, now):
            raise RuntimeError("item update failed")

        monkeypatch.setattr(sql_backend, "_soft_delete_items", boom)

        with pytest.raises(RuntimeError):
            sql_backend.delete_collection(collection.id)

        assert sql_backend.get_collection(collection.id).deleted_at is None
        assert sql_backend.get_collection_item(item.id).deleted_at is None

    def test_since_sees_cascaded_items(self, sql_backend, space):
        collection = create_test_collection(sql_backend, space)
        item = create_test_item(sql_backend, collection)
        since = utcnow()

        sql_backend.delete_collection(collection.id)

        changed = sql_backend.list_items_by_collection(collection.id, since=since)
        assert [i.id for i in changed] == [item.id]
        assert changed[0].deleted_at is not None


class TestCollectionItems:
    """Tests for item partial updates and URL lookup."""

    @pytest.fixture
    def collection(self, sql_backend):
        org = create_test_organization(sql_backend, create_test_user(sql_backend))
        return create_test_collection(sql_backend, create_test_space(sql_backend, org))

    def test_create_tags_normalized_url(self, sql_backend, collection):
        item = create_test_item(sql_backend, collection, url="HTTPS://Example.com:443/Path/#frag")

        stored = sql_backend.get_collection_item(item.id)

        assert stored.metadata[NORMALIZED_URL_KEY] == "https://example.com/Path"

    def test_partial_update_touches_only_given_fields(self, sql_backend, collection):
        """Fields absent from the patch keep their stored values."""
        item = create_test_item(
            sql_backend,
            collection,
            title="Old",
            original_title="Original",
            ai_generated_title="AI",
            fav_icon_url="https://example.com/favicon.ico",
            position=4,
        )
        before = sql_backend.get_collection_item(item.id)

        after = sql_backend.update_collection_item_partial(item.id, CollectionItemPatch(title="New"))

        assert after.title == "New"
        assert after.updated_at > before.updated_at
        for name in ("url", "fav_icon_url", "original_title", "ai_generated_title", "domain", "position"):
            assert getattr(after, name) == getattr(before, name)
        assert after.metadata == before.metadata

    def test_partial_update_can_clear_a_field(self, sql_backend, collection):
        """An explicit empty string is a change, not an absence."""
        item = create_test_item(sql_backend, collection, ai_generated_title="AI")

        after = sql_backend.update_collection_item_partial(
            item.id, CollectionItemPatch(ai_generated_title="")
        )

        assert after.ai_generated_title == ""

    def test_partial_url_change_retags(self, sql_backend, collection):
        item = create_test_item(sql_backend, collection, url="https://example.com/a")

        after = sql_backend.update_collection_item_partial(
            item.id, CollectionItemPatch(url="https://EXAMPLE.com/b/")
        )

        assert after.metadata[NORMALIZED_URL_KEY] == "https://example.com/b"

    def test_clearing_url_drops_lookup_tag(self, sql_backend, collection):
        """An item whose URL was cleared no longer matches its old URL."""
        item = create_test_item(sql_backend, collection, url="https://a.com/x")

        after = sql_backend.update_collection_item_partial(item.id, CollectionItemPatch(url=""))

        assert NORMALIZED_URL_KEY not in after.metadata
        assert sql_backend.find_collection_item_by_url(collection.id, "https://a.com/x") is None

    def test_full_update_with_empty_url_drops_lookup_tag(self, sql_backend, collection):
        item = create_test_item(sql_backend, collection, url="https://a.com/x")
        item.url = ""

        sql_backend.update_collection_item(item)

        assert NORMALIZED_URL_KEY not in sql_backend.get_collection_item(item.id).metadata
        assert sql_backend.find_collection_item_by_url(collection.id, "https://a.com/x") is None

    def test_empty_patch_writes_nothing(self, sql_backend, collection):
        """An empty patch returns the stored item with updated_at unchanged."""
        item = create_test_item(sql_backend, collection)
        before = sql_backend.get_collection_item(item.id)

        after = sql_backend.update_collection_item_partial(item.id, CollectionItemPatch())

        assert after.updated_at == before.updated_at
        assert after.title == before.title

    def test_empty_patch_on_unknown_id_is_not_found(self, sql_backend):
        with pytest.raises(NotFoundError):
            sql_backend.update_collection_item_partial("missing", CollectionItemPatch())

    def test_patch_from_mapping_ignores_unknown_names(self, sql_backend, collection):
        item = create_test_item(sql_backend, collection)
        patch = CollectionItemPatch.from_mapping({"title": "T", "collection_id": "other", "bogus": 1})

        after = sql_backend.update_collection_item_partial(item.id, patch)

        assert after.title == "T"
        assert after.collection_id == collection.id

    def test_find_by_url_matches_normalized_form(self, sql_backend, collection):
        item = create_test_item(sql_backend, collection, url="https://example.com/page")

        found = sql_backend.find_collection_item_by_url(collection.id, " HTTPS://example.COM/page/#top")

        assert found is not None
        assert found.id == item.id

    def test_find_by_url_misses(self, sql_backend, collection):
        create_test_item(sql_backend, collection, url="https://example.com/page")

        assert sql_backend.find_collection_item_by_url(collection.id, "https://example.com/other") is None

    def test_find_by_url_skips_deleted_items(self, sql_backend, collection):
        item = create_test_item(sql_backend, collection, url="https://example.com/page")
        sql_backend.delete_collection_item(item.id)

        assert sql_backend.find_collection_item_by_url(collection.id, "https://example.com/page") is None

    def test_find_by_url_falls_back_for_untagged_rows(self, sql_backend, collection):
        """Items stored without the normalized-url tag are still found by scanning."""
        item = create_test_item(sql_backend, collection, url="https://example.com/legacy/")
        with sql_backend._session_factory() as db:
            db.execute(
                update(CollectionItemRow)
                .where(CollectionItemRow.id == item.id)
                .values(item_metadata={})
            )
            db.commit()

        found = sql_backend.find_collection_item_by_url(collection.id, "https://example.com/legacy")

        assert found is not None
        assert found.id == item.id
        assert NORMALIZED_URL_KEY not in found.metadata


class TestInvitations:
    """Tests for invitation persistence and status transitions."""

    @pytest.fixture
    def org(self, sql_backend):
        return create_test_organization(sql_backend, create_test_user(sql_backend))

    def _invite(self, sql_backend, org, email="Invitee@Example.com"):
        return sql_backend.create_invitation(
            OrganizationInvitation(organization_id=org.id, email=email, inviter_id=org.owner_id)
        )

    def test_create_fills_defaults(self, sql_backend, org):
        """New invitations get a token, a 14-day expiry and pending status."""
        invitation = self._invite(sql_backend, org)

        assert invitation.token
        assert invitation.status is InvitationStatus.pending
        assert invitation.email == "invitee@example.com"
        remaining = invitation.expires_at - invitation.created_at
        assert timedelta(days=13, hours=23) < remaining <= timedelta(days=14)

    def test_lookup_by_token_and_email(self, sql_backend, org):
        invitation = self._invite(sql_backend, org)

        assert sql_backend.get_invitation_by_token(invitation.token).id == invitation.id
        listed = sql_backend.list_invitations_by_email("INVITEE@example.com")
        assert [i.id for i in listed] == [invitation.id]

    def test_pending_to_accepted(self, sql_backend, org):
        invitation = self._invite(sql_backend, org)
        invitation.status = InvitationStatus.accepted
        invitation.accepted_by = org.owner_id

        sql_backend.update_invitation(invitation)

        stored = sql_backend.get_invitation_by_token(invitation.token)
        assert stored.status is InvitationStatus.accepted
        assert stored.accepted_by == org.owner_id

    def test_terminal_status_cannot_change(self, sql_backend, org):
        """accepted -> declined is rejected with E_INVITATION_INVALID."""
        invitation = self._invite(sql_backend, org)
        invitation.status = InvitationStatus.accepted
        sql_backend.update_invitation(invitation)

        invitation.status = InvitationStatus.declined
        with pytest.raises(InvalidRequestError) as exc_info:
            sql_backend.update_invitation(invitation)

        assert exc_info.value.code == StorageErrorCode.E_INVITATION_INVALID

    def test_unknown_token_is_not_found(self, sql_backend):
        with pytest.raises(NotFoundError):
            sql_backend.get_invitation_by_token("nope")


class TestSnapshots:
    """Tests for snapshot listing, loading and deletion."""

    def test_listing_is_newest_first(self, sql_backend):
        user = create_test_user(sql_backend)
        sql_backend.save_snapshot(user.id, "older", make_tab_groups(1))
        sql_backend.save_snapshot(user.id, "newer", make_tab_groups(1))

        assert [s.name for s in sql_backend.list_snapshots(user.id)] == ["newer", "older"]

    def test_overwrite_keeps_id_and_created_at(self, sql_backend):
        user = create_test_user(sql_backend)
        first = sql_backend.save_snapshot(user.id, "work", make_tab_groups(2))

        second = sql_backend.save_snapshot(user.id, "work", make_tab_groups(4))

        assert second.id == first.id
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at

    def test_snapshots_are_scoped_per_user(self, sql_backend):
        alice = create_test_user(sql_backend)
        bob = create_test_user(sql_backend)
        sql_backend.save_snapshot(alice.id, "work", make_tab_groups(1))

        assert sql_backend.list_snapshots(bob.id) == []
        with pytest.raises(NotFoundError):
            sql_backend.load_snapshot(bob.id, "work")

    def test_delete(self, sql_backend):
        user = create_test_user(sql_backend)
        sql_backend.save_snapshot(user.id, "work", make_tab_groups(1))

        sql_backend.delete_snapshot(user.id, "work")

        assert sql_backend.list_snapshots(user.id) == []
        with pytest.raises(NotFoundError):
            sql_backend.delete_snapshot(user.id, "work")


class TestBilling:
    """Tests for subscriptions and AI credits."""

    def test_subscription_lifecycle(self, sql_backend):
        user = create_test_user(sql_backend)
        sql_backend.create_subscription(UserSubscription(user_id=user.id, plan_id="pro_monthly"))

        canceled = sql_backend.cancel_subscription(user.id)

        stored = sql_backend.get_user_subscription(user.id)
        assert stored.status is SubscriptionStatus.canceled
        assert stored.canceled_at is not None
        assert canceled.id == stored.id

    def test_missing_subscription_is_not_found(self, sql_backend):
        with pytest.raises(NotFoundError):
            sql_backend.get_user_subscription("missing")

    def test_user_with_latest_subscription(self, sql_backend):
        """The join picks the most recently created subscription."""
        user = create_test_user(sql_backend)
        old = sql_backend.create_subscription(UserSubscription(user_id=user.id, plan_id="pro_monthly"))
        with sql_backend._session_factory() as db:
            db.execute(
                update(UserSubscriptionRow)
                .where(UserSubscriptionRow.id == old.id)
                .values(created_at=utcnow() - timedelta(days=30))
            )
            db.commit()
        sql_backend.create_subscription(UserSubscription(user_id=user.id, plan_id="power_yearly"))

        combined = sql_backend.get_user_with_subscription(user.id)

        assert combined.user.id == user.id
        assert combined.user.email == user.email
        assert combined.subscription.plan_id == "power_yearly"
        assert combined.has_active_subscription

    def test_user_without_subscription(self, sql_backend):
        user = create_test_user(sql_backend)

        combined = sql_backend.get_user_with_subscription(user.id)

        assert combined.user.id == user.id
        assert combined.subscription is None
        assert not combined.has_active_subscription

    def test_user_with_subscription_unknown_user(self, sql_backend):
        with pytest.raises(NotFoundError):
            sql_backend.get_user_with_subscription("missing")

    def test_credits_upsert_and_consume(self, sql_backend):
        user = create_test_user(sql_backend)
        sql_backend.update_ai_credits(AICredits(user_id=user.id, credits_total=10))

        after = sql_backend.consume_ai_credits(user.id, 4)

        assert after.credits_used == 4
        assert after.credits_remaining == 6
        assert after.period_end - after.period_start == timedelta(days=30)

    def test_credits_update_replaces_balance(self, sql_backend):
        user = create_test_user(sql_backend)
        first = sql_backend.update_ai_credits(AICredits(user_id=user.id, credits_total=10))

        second = sql_backend.update_ai_credits(
            AICredits(user_id=user.id, credits_total=50, credits_used=5)
        )

        assert second.id == first.id
        assert second.credits_remaining == 45

    def test_insufficient_credits(self, sql_backend):
        user = create_test_user(sql_backend)
        sql_backend.update_ai_credits(AICredits(user_id=user.id, credits_total=3))

        with pytest.raises(ConflictError) as exc_info:
            sql_backend.consume_ai_credits(user.id, 5)

        assert exc_info.value.code == StorageErrorCode.E_INSUFFICIENT_CREDITS
        assert sql_backend.get_user_ai_credits(user.id).credits_used == 0

    def test_consume_validates_amount_and_owner(self, sql_backend):
        with pytest.raises(InvalidRequestError):
            sql_backend.consume_ai_credits("anyone", 0)
        with pytest.raises(NotFoundError):
            sql_backend.consume_ai_credits("missing", 1)


class TestErrorsAndLifecycle:
    """Tests for error translation, construction and close."""

    def test_not_found_is_not_unavailable(self, sql_backend):
        """An absent row raises NotFoundError, never UnavailableError."""
        with pytest.raises(NotFoundError) as exc_info:
            sql_backend.get_organization("missing")

        assert not isinstance(exc_info.value, UnavailableError)
        assert exc_info.value.operation == "get_organization"
        assert exc_info.value.entity_id == "missing"

    def test_unreachable_store_is_unavailable(self, sql_backend):
        """A store that cannot be opened raises UnavailableError, not NotFoundError."""
        broken = create_engine("sqlite:////nonexistent-dir/tabsync.db")
        sql_backend._engine = broken
        sql_backend._session_factory = create_session_factory(broken)

        with pytest.raises(UnavailableError):
            sql_backend.get_organization("missing")
        with pytest.raises(UnavailableError):
            sql_backend.health_check()

    def test_construction_fails_without_reachable_store(self):
        config = BackendConfig(database_url="sqlite:////nonexistent-dir/tabsync.db")

        with pytest.raises(ConfigurationError):
            SqlStorageBackend(config)

    def test_construction_requires_database_url(self):
        with pytest.raises(ConfigurationError):
            SqlStorageBackend(BackendConfig())

    def test_health_check_passes(self, sql_backend):
        sql_backend.health_check()
        assert sql_backend.strategy == "raw"

    def test_close_is_idempotent(self, sql_backend):
        sql_backend.close()
        sql_backend.close()

        assert sql_backend.is_closed
        with pytest.raises(UnavailableError):
            sql_backend.get_user_by_id("anyone")
        with pytest.raises(UnavailableError):
            sql_backend.health_check()


@pytest.mark.postgres
class TestPostgresSmoke:
    """Dialect-specific paths (JSONB lookup, ON CONFLICT) on real PostgreSQL."""

    def test_snapshot_upsert_and_url_lookup(self, pg_backend):
        user = create_test_user(pg_backend)
        org = create_test_organization(pg_backend, user)
        collection = create_test_collection(pg_backend, create_test_space(pg_backend, org))
        item = create_test_item(pg_backend, collection, url="https://example.com/pg/")

        pg_backend.save_snapshot(user.id, "work", make_tab_groups(2, 3))
        pg_backend.save_snapshot(user.id, "work", make_tab_groups(1))

        assert [(s.group_count, s.tab_count) for s in pg_backend.list_snapshots(user.id)] == [(1, 1)]
        assert pg_backend.find_collection_item_by_url(collection.id, "https://example.com/pg").id == item.id
        pg_backend.delete_user(user.id)
