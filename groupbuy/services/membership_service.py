from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from groupbuy.config import Config
from groupbuy.errors import (
    AuthorizationError,
    ConflictError,
    DuplicateRequestError,
    NotFoundError,
    ValidationError,
)
from groupbuy.models import (
    Group,
    GroupInvite,
    GroupJoinRequest,
    GroupMembership,
    InviteStatus,
    JoinRequestStatus,
    Product,
    User,
    utcnow,
)
from groupbuy.observability import increment_counter, record_event

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class GroupMembershipService:
    """Group creation, join requests, invites and the member count that drives discounts."""

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------
    def create_group(
        self,
        creator_id: int,
        name: str,
        description: Optional[str] = None,
        product_id: Optional[int] = None,
        is_private: bool = True,
        member_limit: Optional[int] = None,
    ) -> Group:
        """Create a group and enroll its creator as the first member."""
        if not name or not name.strip():
            raise ValidationError("Group name is required")
        limit = self.config.DEFAULT_GROUP_MEMBER_LIMIT if member_limit is None else member_limit
        if not isinstance(limit, int) or limit < 1:
            raise ValidationError("member_limit must be a positive integer")
        self._get_user(creator_id)
        if product_id is not None:
            product = self.db.query(Product).filter_by(id=product_id).first()
            if product is None:
                raise NotFoundError(f"Product {product_id} not found")
            if not product.is_active or not product.group_order_enabled:
                raise ValidationError("Product is not available for group orders")

        group = Group(
            creator_id=creator_id,
            product_id=product_id,
            name=name.strip(),
            description=description,
            is_private=bool(is_private),
            member_limit=limit,
        )
        try:
            self.db.add(group)
            self.db.flush()
            self.db.add(GroupMembership(group_id=group.id, user_id=creator_id))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise

        increment_counter("groups_created_total")
        record_event("group_created", {"group_id": group.id, "creator_id": creator_id, "product_id": product_id})
        self.logger.info("Group %s created by user %s", group.id, creator_id)
        return group

    def get_group(self, group_id: int) -> Group:
        group = self.db.query(Group).filter_by(id=group_id).first()
        if group is None:
            raise NotFoundError(f"Group {group_id} not found")
        return group

    def current_member_count(self, group_id: int) -> int:
        return (
            self.db.query(func.count(GroupMembership.id))
            .filter(GroupMembership.group_id == group_id)
            .scalar()
        ) or 0

    def list_members(self, group_id: int) -> List[GroupMembership]:
        return (
            self.db.query(GroupMembership)
            .filter_by(group_id=group_id)
            .order_by(GroupMembership.joined_at.asc(), GroupMembership.id.asc())
            .all()
        )

    def is_member(self, group_id: int, user_id: int) -> bool:
        return self._get_membership(group_id, user_id) is not None

    # ------------------------------------------------------------------
    # Joining
    # ------------------------------------------------------------------
    def join_group(
        self, group_id: int, user_id: int, message: Optional[str] = None
    ) -> Tuple[str, Union[GroupMembership, GroupJoinRequest]]:
        """Public groups admit immediately; private ones need the creator's approval."""
        group = self.get_group(group_id)
        if group.is_private:
            return "requested", self.request_join(group_id, user_id, message)

        self._get_user(user_id)
        if self.is_member(group_id, user_id):
            raise DuplicateRequestError("Already a member of this group")
        membership = self._add_member(group, user_id)
        self._commit_membership_writes()
        self._after_member_added(group, user_id, via="direct")
        return "joined", membership

    def request_join(self, group_id: int, user_id: int, message: Optional[str] = None) -> GroupJoinRequest:
        group = self.get_group(group_id)
        self._get_user(user_id)
        if self.is_member(group_id, user_id):
            raise DuplicateRequestError("Already a member of this group")
        if self._pending_request(group_id, user_id) is not None:
            raise DuplicateRequestError("A join request is already pending for this group")

        join_request = GroupJoinRequest(
            group_id=group.id,
            user_id=user_id,
            message=message,
            status=JoinRequestStatus.PENDING,
        )
        try:
            self.db.add(join_request)
            self.db.commit()
        except IntegrityError as exc:
            # A concurrent request for the same group landed first
            self.db.rollback()
            raise DuplicateRequestError("A join request is already pending for this group") from exc
        increment_counter("group_join_requests_total", labels={"status": "pending"})
        self.logger.info("Join request %s created for group %s", join_request.id, group_id)
        return join_request

    def _pending_request(self, group_id: int, user_id: int) -> Optional[GroupJoinRequest]:
        return (
            self.db.query(GroupJoinRequest)
            .filter_by(group_id=group_id, user_id=user_id, status=JoinRequestStatus.PENDING)
            .first()
        )

    def review_join_request(self, request_id: int, reviewer_id: int, decision: str) -> GroupJoinRequest:
        """
        Approve or reject a pending request.

        Approval writes the request status and the membership row in one
        transaction; if either fails nothing is persisted.
        """
        if decision not in ("approve", "reject"):
            raise ValidationError("decision must be 'approve' or 'reject'")

        join_request = self.db.query(GroupJoinRequest).filter_by(id=request_id).first()
        if join_request is None:
            raise NotFoundError(f"Join request {request_id} not found")
        group = self.get_group(join_request.group_id)
        if not group.is_admin(reviewer_id):
            raise AuthorizationError("Only the group admin can review join requests")
        if join_request.status != JoinRequestStatus.PENDING:
            raise ConflictError(f"Join request already {join_request.status.value}")

        join_request.reviewed_by = reviewer_id
        join_request.reviewed_at = utcnow()
        try:
            if decision == "approve":
                join_request.status = JoinRequestStatus.APPROVED
                if not self.is_member(group.id, join_request.user_id):
                    self._add_member(group, join_request.user_id)
            else:
                join_request.status = JoinRequestStatus.REJECTED
            self._commit_membership_writes()
        except Exception:
            self.db.rollback()
            raise

        increment_counter("group_join_requests_total", labels={"status": join_request.status.value})
        if decision == "approve":
            self._after_member_added(group, join_request.user_id, via="request")
        return join_request

    # ------------------------------------------------------------------
    # Leaving
    # ------------------------------------------------------------------
    def leave_group(self, group_id: int, user_id: int) -> None:
        group = self.get_group(group_id)
        if group.is_admin(user_id):
            raise ConflictError("The group admin cannot leave the group")
        membership = self._get_membership(group_id, user_id)
        if membership is None:
            raise NotFoundError("Not a member of this group")
        self._remove_member(membership)
        self.logger.info("User %s left group %s", user_id, group_id)

    def remove_member(self, group_id: int, actor_id: int, user_id: int) -> None:
        group = self.get_group(group_id)
        if not group.is_admin(actor_id):
            raise AuthorizationError("Only the group admin can remove members")
        if group.is_admin(user_id):
            raise ConflictError("The group admin cannot be removed")
        membership = self._get_membership(group_id, user_id)
        if membership is None:
            raise NotFoundError(f"User {user_id} is not a member of group {group_id}")
        self._remove_member(membership)
        self.logger.info("User %s removed from group %s by %s", user_id, group_id, actor_id)

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------
    def invite_members(self, group_id: int, inviter_id: int, emails: Iterable[str]) -> List[GroupInvite]:
        group = self.get_group(group_id)
        if not self.is_member(group_id, inviter_id):
            raise AuthorizationError("Only group members can send invites")

        valid = []
        for email in emails or []:
            if not isinstance(email, str):
                continue
            cleaned = email.strip().lower()
            if _EMAIL_RE.match(cleaned) and cleaned not in valid:
                valid.append(cleaned)
        if not valid:
            raise ValidationError("Please provide at least one valid email address")

        already_pending = {
            invite.invited_email
            for invite in self.db.query(GroupInvite)
            .filter_by(group_id=group.id, status=InviteStatus.PENDING)
            .all()
        }
        invites = []
        for email in valid:
            if email in already_pending:
                continue
            invite = GroupInvite(group_id=group.id, invited_by=inviter_id, invited_email=email)
            self.db.add(invite)
            invites.append(invite)
        self.db.commit()
        increment_counter("group_invites_sent_total", amount=len(invites))
        self.logger.info("%d invite(s) sent for group %s", len(invites), group.id)
        return invites

    def accept_invite(self, invite_id: int, user_id: int) -> GroupMembership:
        invite = self.db.query(GroupInvite).filter_by(id=invite_id).first()
        if invite is None:
            raise NotFoundError(f"Invite {invite_id} not found")
        user = self._get_user(user_id)
        if (user.email or "").strip().lower() != invite.invited_email:
            raise AuthorizationError("This invite was sent to a different email address")
        if invite.status != InviteStatus.PENDING:
            raise ConflictError(f"Invite already {invite.status.value}")
        group = self.get_group(invite.group_id)
        if self.is_member(group.id, user_id):
            raise DuplicateRequestError("Already a member of this group")

        try:
            membership = self._add_member(group, user_id)
            invite.status = InviteStatus.ACCEPTED
            invite.accepted_at = utcnow()
            self._commit_membership_writes()
        except Exception:
            self.db.rollback()
            raise
        self._after_member_added(group, user_id, via="invite")
        return membership

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_user(self, user_id: int) -> User:
        user = self.db.query(User).filter_by(id=user_id).first()
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _get_membership(self, group_id: int, user_id: int) -> Optional[GroupMembership]:
        return self.db.query(GroupMembership).filter_by(group_id=group_id, user_id=user_id).first()

    def _add_member(self, group: Group, user_id: int) -> GroupMembership:
        if self.current_member_count(group.id) >= group.member_limit:
            raise ConflictError(f"Group has reached its member limit of {group.member_limit}")
        membership = GroupMembership(group_id=group.id, user_id=user_id)
        self.db.add(membership)
        self.db.flush()
        return membership

    def _commit_membership_writes(self) -> None:
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateRequestError("Membership already exists for this user")

    def _remove_member(self, membership: GroupMembership) -> None:
        group_id, user_id = membership.group_id, membership.user_id
        self.db.delete(membership)
        self.db.query(GroupJoinRequest).filter_by(
            group_id=group_id, user_id=user_id, status=JoinRequestStatus.PENDING
        ).delete(synchronize_session=False)
        self.db.commit()
        increment_counter("group_members_removed_total")

    def _after_member_added(self, group: Group, user_id: int, via: str) -> None:
        increment_counter("group_members_added_total", labels={"via": via})
        record_event("group_member_added", {"group_id": group.id, "user_id": user_id, "via": via})
        self.logger.info("User %s joined group %s via %s", user_id, group.id, via)
