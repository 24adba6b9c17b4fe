from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    Index,
    UniqueConstraint,
    CheckConstraint,
    Enum as SAEnum,
    text,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
from groupbuy.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_column(enum_cls, name: str):
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )


class UserRole(str, Enum):
    USER = "user"
    VENDOR = "vendor"
    ADMIN = "admin"


class JoinRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class InviteStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REVOKED = "revoked"


class CheckoutSessionStatus(str, Enum):
    PENDING = "pending"
    MEMBER_PAYMENTS = "member_payments"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    # Never stored: reported for open sessions past their expiry
    EXPIRED = "expired"


OPEN_SESSION_STATUSES = (CheckoutSessionStatus.PENDING, CheckoutSessionStatus.MEMBER_PAYMENTS)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class User(Base):
    __tablename__ = 'users'
    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(255))
    role = Column(_enum_column(UserRole, "user_role"), default=UserRole.USER, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    cart_items = relationship("CartItem", back_populates="user", cascade="all, delete-orphan")

    @property
    def is_vendor(self) -> bool:
        return self.role in (UserRole.VENDOR, UserRole.ADMIN)


class Product(Base):
    __tablename__ = 'products'
    id = Column(Integer, primary_key=True, autoincrement=True)
    vendor_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    price = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    group_order_enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    vendor = relationship("User")
    discount_tiers = relationship(
        "DiscountTier",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="DiscountTier.tier_number",
    )


class DiscountTier(Base):
    __tablename__ = 'product_discount_tiers'
    __table_args__ = (
        UniqueConstraint('product_id', 'tier_number', name='uq_discount_tier_number'),
        CheckConstraint('members_required > 0', name='ck_tier_members_positive'),
        CheckConstraint(
            'discount_percentage >= 0 AND discount_percentage <= 100',
            name='ck_tier_discount_range',
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False)
    tier_number = Column(Integer, nullable=False)
    members_required = Column(Integer, nullable=False)
    discount_percentage = Column(Numeric(5, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    product = relationship("Product", back_populates="discount_tiers")


class CartItem(Base):
    __tablename__ = 'cart_items'
    __table_args__ = (
        UniqueConstraint('user_id', 'product_id', name='uq_cart_user_product'),
        CheckConstraint('quantity > 0', name='ck_cart_quantity_positive'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User", back_populates="cart_items")
    product = relationship("Product")


class Group(Base):
    __tablename__ = 'groups'
    id = Column(Integer, primary_key=True, autoincrement=True)
    creator_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    product_id = Column(Integer, ForeignKey('products.id'))
    name = Column(String(255), nullable=False)
    description = Column(Text)
    is_private = Column(Boolean, default=True, nullable=False)
    member_limit = Column(Integer, nullable=False, default=50)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    creator = relationship("User")
    product = relationship("Product")
    memberships = relationship("GroupMembership", back_populates="group", cascade="all, delete-orphan")
    join_requests = relationship("GroupJoinRequest", back_populates="group", cascade="all, delete-orphan")
    invites = relationship("GroupInvite", back_populates="group", cascade="all, delete-orphan")
    checkout_sessions = relationship(
        "CheckoutSession",
        back_populates="group",
        order_by="CheckoutSession.created_at",
    )

    def is_admin(self, user_id: int) -> bool:
        return self.creator_id == user_id


class GroupMembership(Base):
    __tablename__ = 'group_members'
    __table_args__ = (UniqueConstraint('group_id', 'user_id', name='uq_group_member'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey('groups.id'), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    joined_at = Column(DateTime(timezone=True), default=utcnow)

    group = relationship("Group", back_populates="memberships")
    user = relationship("User")


class GroupJoinRequest(Base):
    __tablename__ = 'group_join_requests'
    __table_args__ = (
        # One pending request per user and group
        Index(
            'uq_group_join_request_pending',
            'group_id',
            'user_id',
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey('groups.id'), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    message = Column(Text)
    status = Column(
        _enum_column(JoinRequestStatus, "join_request_status"),
        default=JoinRequestStatus.PENDING,
        nullable=False,
    )
    reviewed_by = Column(Integer, ForeignKey('users.id'))
    reviewed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    group = relationship("Group", back_populates="join_requests")


class GroupInvite(Base):
    __tablename__ = 'group_invites'
    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey('groups.id'), nullable=False)
    invited_by = Column(Integer, ForeignKey('users.id'), nullable=False)
    invited_email = Column(String(255), nullable=False)
    status = Column(
        _enum_column(InviteStatus, "invite_status"),
        default=InviteStatus.PENDING,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=utcnow)
    accepted_at = Column(DateTime(timezone=True))

    group = relationship("Group", back_populates="invites")


class CheckoutSession(Base):
    __tablename__ = 'group_checkout_sessions'
    __table_args__ = (
        # At most one open session per group, enforced by the database
        Index(
            'uq_group_checkout_open_session',
            'group_id',
            unique=True,
            sqlite_where=text("status IN ('pending', 'member_payments')"),
            postgresql_where=text("status IN ('pending', 'member_payments')"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey('groups.id'), nullable=False)
    admin_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    status = Column(
        _enum_column(CheckoutSessionStatus, "checkout_session_status"),
        default=CheckoutSessionStatus.PENDING,
        nullable=False,
    )
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    member_count = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    cancel_reason = Column(String(50))

    group = relationship("Group", back_populates="checkout_sessions")
    line_items = relationship(
        "CheckoutLineItem",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="CheckoutLineItem.id",
    )
    notifications = relationship("CheckoutNotification", back_populates="session", cascade="all, delete-orphan")

    _VALID_TRANSITIONS = {
        CheckoutSessionStatus.PENDING: {
            CheckoutSessionStatus.MEMBER_PAYMENTS,
            CheckoutSessionStatus.COMPLETED,
            CheckoutSessionStatus.CANCELLED,
        },
        CheckoutSessionStatus.MEMBER_PAYMENTS: {
            CheckoutSessionStatus.COMPLETED,
            CheckoutSessionStatus.CANCELLED,
        },
    }

    def can_transition(self, new_status: CheckoutSessionStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(CheckoutSessionStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: CheckoutSessionStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid checkout status transition from {self.status} to {new_status}")
        self.status = new_status

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_SESSION_STATUSES

    def is_expired(self, now=None) -> bool:
        now = now or utcnow()
        return self.is_open and as_utc(self.expires_at) <= now

    def effective_status(self, now=None) -> CheckoutSessionStatus:
        if self.is_expired(now):
            return CheckoutSessionStatus.EXPIRED
        return CheckoutSessionStatus(self.status)

    def line_items_total(self) -> Decimal:
        return sum((Decimal(item.total_price) for item in self.line_items), Decimal("0.00"))


class CheckoutLineItem(Base):
    __tablename__ = 'group_checkout_items'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_checkout_item_quantity_positive'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey('group_checkout_sessions.id'), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    shipping_address = Column(Text)
    payment_status = Column(
        _enum_column(PaymentStatus, "checkout_payment_status"),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    payment_reference = Column(String(255))
    payment_attempts = Column(Integer, nullable=False, default=0)
    paid_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    session = relationship("CheckoutSession", back_populates="line_items")
    product = relationship("Product")
    user = relationship("User")

    # paid is terminal: nothing ever moves a line item out of it
    _VALID_TRANSITIONS = {
        PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
        PaymentStatus.FAILED: {PaymentStatus.PENDING, PaymentStatus.PAID},
    }

    def can_transition(self, new_status: PaymentStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(PaymentStatus(self.payment_status), set())
        return new_status in allowed

    def transition_to(self, new_status: PaymentStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(
                f"Invalid payment status transition from {self.payment_status} to {new_status}"
            )
        self.payment_status = new_status

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def mark_paid(self, payment_reference=None, paid_at=None) -> None:
        self.transition_to(PaymentStatus.PAID)
        self.payment_reference = payment_reference
        self.paid_at = paid_at or utcnow()


class CheckoutNotification(Base):
    __tablename__ = 'group_checkout_notifications'
    __table_args__ = (UniqueConstraint('session_id', 'user_id', name='uq_checkout_notification'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey('group_checkout_sessions.id'), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    read_at = Column(DateTime(timezone=True))

    session = relationship("CheckoutSession", back_populates="notifications")

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    def to_dict(self):
        return {
            "id": self.id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
            "read": self.is_read,
            "read_at": as_utc(self.read_at).isoformat() if self.read_at else None,
        }


class PaymentWebhookEvent(Base):
    """Processor event ids already applied; replays are acknowledged without effect."""

    __tablename__ = 'payment_webhook_events'
    id = Column(Integer, primary_key=True, autoincrement=True)
    processor_event_id = Column(String(255), unique=True, nullable=False)
    event_type = Column(String(255), nullable=False)
    outcome = Column(String(50))
    processed_at = Column(DateTime(timezone=True), default=utcnow)
