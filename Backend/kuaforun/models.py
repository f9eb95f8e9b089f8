import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .core.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls: type[Enum], name: str) -> SAEnum:
    # Persist the lowercase values, not the member names
    return SAEnum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members])


class ShopGender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    UNISEX = "unisex"


class StaffRole(str, Enum):
    OWNER = "owner"
    MANAGER = "manager"
    BARBER = "barber"
    ASSISTANT = "assistant"
    RECEPTION = "reception"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class ModerationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LogLevel(str, Enum):
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"
    TRACE = "trace"


class LogService(str, Enum):
    AUTH = "auth"
    USERS = "users"
    SHOPS = "shops"
    SERVICES = "services"
    BOOKINGS = "bookings"
    NOTIFICATIONS = "notifications"
    LOGGER = "logger"
    GATEWAY = "gateway"
    API = "api"
    SYSTEM = "system"


class Shop(Base):
    __tablename__ = "barber_shops"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    formatted_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    gender: Mapped[ShopGender] = mapped_column(
        _enum(ShopGender, "shop_gender"), nullable=False, default=ShopGender.UNISEX
    )
    latitude: Mapped[float | None] = mapped_column(Numeric(10, 7, asdecimal=False), nullable=True)
    longitude: Mapped[float | None] = mapped_column(Numeric(10, 7, asdecimal=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class ShopHours(Base):
    __tablename__ = "barber_hours"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shop_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("barber_shops.id", ondelete="CASCADE"), nullable=False, index=True
    )
    weekday: Mapped[int] = mapped_column(Integer, nullable=False)  # 0=Sunday
    open_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    close_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    open_24h: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint(
            "shop_id", "weekday", "open_minutes", "close_minutes", name="uq_barber_hours_period"
        ),
    )


class Staff(Base):
    __tablename__ = "shop_staff"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    shop_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("barber_shops.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    role: Mapped[StaffRole] = mapped_column(
        _enum(StaffRole, "staff_role"), nullable=False, default=StaffRole.BARBER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("shop_id", "user_id", name="uq_shop_staff_user"),)


class Service(Base):
    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    shop_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("barber_shops.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    staff_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("shop_staff.id", ondelete="SET NULL"), nullable=True
    )
    shop_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("barber_shops.id", ondelete="CASCADE"), nullable=False, index=True
    )
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus, "booking_status"), nullable=False, default=BookingStatus.PENDING
    )
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_bookings_tenant_staff_date_start", "tenant_id", "staff_id", "booking_date", "start_time"),
        Index(
            "ix_bookings_tenant_staff_date_range",
            "tenant_id",
            "staff_id",
            "booking_date",
            "start_time",
            "end_time",
        ),
    )


class BookingServiceItem(Base):
    __tablename__ = "booking_services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("services.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("booking_id", "service_id", "tenant_id", name="uq_booking_service_tenant"),
    )


class Comment(Base):
    __tablename__ = "barber_comments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    shop_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("barber_shops.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True
    )
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    # One comment per user and booking, or per user and shop when no booking is referenced
    __table_args__ = (
        Index(
            "uq_barber_comments_user_booking",
            "tenant_id",
            "user_id",
            "booking_id",
            unique=True,
            postgresql_where=text("booking_id IS NOT NULL"),
            sqlite_where=text("booking_id IS NOT NULL"),
        ),
        Index(
            "uq_barber_comments_user_shop",
            "tenant_id",
            "user_id",
            "shop_id",
            unique=True,
            postgresql_where=text("booking_id IS NULL"),
            sqlite_where=text("booking_id IS NULL"),
        ),
    )


class CommentReply(Base):
    __tablename__ = "barber_comment_replies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    comment_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("barber_comments.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class ReplyModeration(Base):
    __tablename__ = "barber_comment_reply_moderations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reply_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("barber_comment_replies.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    status: Mapped[ModerationStatus] = mapped_column(
        _enum(ModerationStatus, "reply_moderation_status"),
        nullable=False,
        default=ModerationStatus.PENDING,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    moderator_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class ReplyHistory(Base):
    __tablename__ = "barber_comment_reply_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    comment_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("barber_comments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reply_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("barber_comment_replies.id", ondelete="CASCADE"), nullable=False
    )
    previous_text: Mapped[str] = mapped_column(Text, nullable=False)
    edited_by_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class LogRecord(Base):
    __tablename__ = "logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    level: Mapped[LogLevel] = mapped_column(_enum(LogLevel, "log_level"), nullable=False, index=True)
    service: Mapped[LogService] = mapped_column(
        _enum(LogService, "log_service"), nullable=False, index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, default="main")
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    context: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    trace_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    # "metadata" is reserved on declarative classes
    extra: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )
