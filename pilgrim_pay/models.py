from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)
from sqlalchemy.sql import func

from pilgrim_pay.config import BookingStatus, CommissionType, PaymentStatus
from pilgrim_pay.database import Base

MONEY = Numeric(14, 2)


class Package(Base):
    __tablename__ = "packages"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(MONEY, nullable=True)
    agent_discount = Column(MONEY, nullable=False, default=0)
    deposit_allowed = Column(Boolean, nullable=False, default=False)
    minimum_deposit = Column(MONEY, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Agent(Base):
    __tablename__ = "agents"
    id = Column(Integer, primary_key=True)
    user_id = Column(String, index=True, nullable=True)
    full_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    commission_rate = Column(Numeric(10, 2), nullable=False, default=0)
    commission_type = Column(String, nullable=False, default=CommissionType.PERCENTAGE.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(Integer, primary_key=True)
    reference = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=True)
    package_id = Column(Integer, ForeignKey("packages.id"), nullable=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=True)
    contact_email = Column(String, nullable=True)
    status = Column(String, nullable=False, default=BookingStatus.PENDING.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), index=True, nullable=False)
    method = Column(String, nullable=False)  # gateway|bank_transfer|wallet
    amount = Column(MONEY, nullable=False)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    external_reference = Column(String, index=True, nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (
        # At most one verified payment per booking+method.
        Index(
            "uq_payments_verified_booking_method",
            "booking_id",
            "method",
            unique=True,
            sqlite_where=text("status = 'verified'"),
            postgresql_where=text("status = 'verified'"),
        ),
    )


class OTPRequest(Base):
    __tablename__ = "otp_requests"
    id = Column(Integer, primary_key=True)
    admin_id = Column(String, index=True, nullable=False)
    agent_id = Column(Integer, ForeignKey("agents.id"), index=True, nullable=False)
    amount = Column(MONEY, nullable=False)
    code_hash = Column(String, nullable=False)
    code_salt = Column(String, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    id = Column(Integer, primary_key=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), index=True, nullable=False)
    type = Column(String, nullable=False)  # deposit|deduction
    amount = Column(MONEY, nullable=False)
    reference = Column(String, nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AgentWallet(Base):
    __tablename__ = "agent_wallets"
    agent_id = Column(Integer, ForeignKey("agents.id"), primary_key=True)
    balance = Column(MONEY, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class StaffUser(Base):
    __tablename__ = "staff_users"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="staff")
    token_hash = Column(String, unique=True, index=True, nullable=False)


class ActivityEvent(Base):
    __tablename__ = "activity_events"
    id = Column(Integer, primary_key=True)
    user_id = Column(String, index=True, nullable=True)
    event_type = Column(String, nullable=False)
    booking_id = Column(Integer, nullable=True)
    package_id = Column(Integer, nullable=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
