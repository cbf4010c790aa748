from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, JSON, ForeignKey, UniqueConstraint, Index
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid

Base = declarative_base()


class BookingStatus:
    PENDING = "pending"
    BOOKED = "booked"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"
    EN_ROUTE = "en_route"

    # Statuses that occupy a technician's time.
    ACTIVE = (PENDING, BOOKED, EN_ROUTE)
    # Statuses a caller can still confirm or reschedule.
    OPEN = (PENDING, BOOKED)


class Business(Base):
    """A service business (one roster, one calendar, one policy)"""
    __tablename__ = "businesses"

    id = Column(Integer, primary_key=True, index=True)
    business_uuid = Column(String(36), default=lambda: str(uuid.uuid4()), unique=True, index=True)
    name = Column(String(255), nullable=False)

    trade = Column(String(50), default="general")  # plumbing, hvac, electrical, general
    phone_number = Column(String(50))
    timezone = Column(String(64), default="UTC")

    # Scheduling policy
    business_hours = Column(JSON, default=dict)  # {"mon": {"open": "08:00", "close": "17:00", "enabled": true}, ...}
    allow_weekend_booking = Column(Boolean, default=True)
    require_on_call_for_weekend = Column(Boolean, default=False)
    policy = Column(JSON, default=dict)  # overrides for BusinessPolicy fields

    # Integrations
    calendar_integration = Column(JSON, default=dict)  # {"event_type_id": 12345}
    forwarding_number = Column(String(50))
    notifications_email = Column(String(255))

    # Bumped by every assignment transaction; the row lock serialises assignment.
    assignment_seq = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    technicians = relationship("Technician", back_populates="business", cascade="all, delete-orphan")
    bookings = relationship("Booking", back_populates="business", cascade="all, delete-orphan")


class Technician(Base):
    """Field technician on a business roster"""
    __tablename__ = "technicians"

    id = Column(Integer, primary_key=True, index=True)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=False)
    email = Column(String(255))
    home_address = Column(Text)

    is_active = Column(Boolean, default=True)
    is_on_call = Column(Boolean, default=False)
    emergency_only = Column(Boolean, default=False)
    priority = Column(Integer, default=0)  # higher wins ties

    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    business = relationship("Business", back_populates="technicians")
    bookings = relationship("Booking", back_populates="technician")


class Booking(Base):
    """Service appointment. Lifecycle is status + timestamps, never hard deletes."""
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False)
    technician_id = Column(Integer, ForeignKey("technicians.id"), nullable=True)

    customer_name = Column(String(255))
    customer_phone = Column(String(50), index=True)
    customer_email = Column(String(255))
    address = Column(Text)
    notes = Column(Text)

    # Naive UTC
    slot_start = Column(DateTime, index=True)
    slot_end = Column(DateTime)

    status = Column(String(20), default=BookingStatus.PENDING, nullable=False)
    is_emergency = Column(Boolean, default=False)
    unassigned_reason = Column(String(255))

    calendar_booking_uid = Column(String(255))

    idempotency_key = Column(String(255), nullable=True)
    source_tag = Column(String(100))  # voice, emergency_dispatch, reschedule, ...
    call_id = Column(String(100), index=True)

    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("business_id", "idempotency_key", name="uix_booking_idempotency"),
        Index("ix_booking_tech_slot", "technician_id", "slot_start"),
    )

    business = relationship("Business", back_populates="bookings")
    technician = relationship("Technician", back_populates="bookings")


class EventLog(Base):
    """Append-only audit trail of triage, dedup and assignment decisions"""
    __tablename__ = "event_logs"

    id = Column(Integer, primary_key=True, index=True)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=True, index=True)
    type = Column(String(100), nullable=False, index=True)
    call_id = Column(String(100), index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True)
    payload = Column(JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)


class SmsLog(Base):
    """Track all outbound SMS"""
    __tablename__ = "sms_logs"

    id = Column(Integer, primary_key=True, index=True)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=True)

    to_number = Column(String(50))
    message = Column(Text)
    sms_type = Column(String(100))  # confirmation, dispatch, escalation
    status = Column(String(50))  # sent, mock, failed
    twilio_sid = Column(String(255))

    created_at = Column(DateTime, default=datetime.utcnow)
