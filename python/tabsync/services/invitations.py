"""Organization invitation service layer.

Invitation rules:
- Tokens are URL-safe random strings, unique across all invitations
- New invitations expire 14 days after creation unless expires_at is given
- Only pending invitations can be accepted or declined
- A pending invitation past expires_at is persisted as expired, then rejected
- The accepting (or declining) user's email must match the invitation email,
  compared case-insensitively
- Acceptance upserts a member-role membership, then marks the invitation
  accepted; the two writes are not atomic on the REST store, so a failure of
  the second is logged and raised
"""

import secrets
from datetime import datetime, timedelta

from tabsync.errors import ForbiddenError, InvalidRequestError, StorageErrorCode
from tabsync.logging import get_logger
from tabsync.models import (
    InvitationStatus,
    OrganizationInvitation,
    OrganizationMembership,
    OrgRole,
    User,
    utcnow,
)
from tabsync.storage.base import StorageBackend

logger = get_logger(__name__)

INVITATION_TTL = timedelta(days=14)
TOKEN_BYTES = 24


def generate_url_token(n: int = TOKEN_BYTES) -> str:
    """Return an unguessable URL-safe token built from ``n`` random bytes."""
    return secrets.token_urlsafe(n)


def apply_invitation_defaults(
    invitation: OrganizationInvitation, now: datetime | None = None
) -> OrganizationInvitation:
    """Fill token, expiry and status on a new invitation, in place."""
    now = now or utcnow()
    invitation.email = invitation.email.strip().lower()
    if not invitation.token:
        invitation.token = generate_url_token()
    if invitation.expires_at is None:
        invitation.expires_at = now + INVITATION_TTL
    if not invitation.status:
        invitation.status = InvitationStatus.pending
    return invitation


def new_invitation(
    organization_id: str,
    email: str,
    inviter_id: str,
    expires_in: timedelta = INVITATION_TTL,
) -> OrganizationInvitation:
    """Build a pending invitation ready for StorageBackend.create_invitation."""
    return apply_invitation_defaults(
        OrganizationInvitation(
            organization_id=organization_id,
            email=email,
            inviter_id=inviter_id,
            expires_at=utcnow() + expires_in,
        )
    )


def _emails_match(invitation: OrganizationInvitation, user: User) -> bool:
    return invitation.email.strip().lower() == user.email.strip().lower()


def _load_pending(
    backend: StorageBackend, token: str, user: User, operation: str
) -> OrganizationInvitation:
    invitation = backend.get_invitation_by_token(token)

    if invitation.status is not InvitationStatus.pending:
        raise InvalidRequestError(
            f"Invitation is already {invitation.status.value}",
            code=StorageErrorCode.E_INVITATION_INVALID,
            operation=operation,
            entity_id=invitation.id,
        )

    if invitation.is_expired():
        invitation.status = InvitationStatus.expired
        backend.update_invitation(invitation)
        logger.info("invitation_expired", invitation_id=invitation.id)
        raise InvalidRequestError(
            "Invitation has expired",
            code=StorageErrorCode.E_INVITATION_INVALID,
            operation=operation,
            entity_id=invitation.id,
        )

    if not _emails_match(invitation, user):
        raise ForbiddenError(
            "Invitation was issued to a different email address",
            operation=operation,
            entity_id=invitation.id,
        )

    return invitation


def accept_invitation(
    backend: StorageBackend, token: str, user: User
) -> OrganizationMembership:
    """Accept an invitation on behalf of ``user``.

    Raises:
        NotFoundError: Unknown token.
        InvalidRequestError: E_INVITATION_INVALID if not pending or expired.
        ForbiddenError: The user's email does not match the invitation.
    """
    invitation = _load_pending(backend, token, user, "accept_invitation")

    membership = backend.add_organization_member(
        OrganizationMembership(
            organization_id=invitation.organization_id,
            user_id=user.id,
            role=OrgRole.member,
        )
    )

    invitation.status = InvitationStatus.accepted
    invitation.accepted_by = user.id
    try:
        backend.update_invitation(invitation)
    except Exception:
        logger.error(
            "invitation_status_update_failed",
            invitation_id=invitation.id,
            organization_id=invitation.organization_id,
            user_id=user.id,
        )
        raise

    logger.info(
        "invitation_accepted",
        invitation_id=invitation.id,
        organization_id=invitation.organization_id,
        user_id=user.id,
    )
    return membership


def decline_invitation(
    backend: StorageBackend, token: str, user: User
) -> OrganizationInvitation:
    """Decline an invitation; same checks as accept_invitation."""
    invitation = _load_pending(backend, token, user, "decline_invitation")
    invitation.status = InvitationStatus.declined
    backend.update_invitation(invitation)
    logger.info("invitation_declined", invitation_id=invitation.id, user_id=user.id)
    return invitation
