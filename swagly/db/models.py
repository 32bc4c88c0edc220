"""
SQLAlchemy ORM Models for the Swagly proof review service
"""
import uuid

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, ForeignKey, JSON,
    UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from swagly.db.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


# Proof lifecycle
PROOF_PENDING = "pending"
PROOF_APPROVED = "approved"
PROOF_REJECTED = "rejected"
PROOF_STATUSES = (PROOF_PENDING, PROOF_APPROVED, PROOF_REJECTED)

PROOF_TYPES = ("text", "image", "both")

# PassportActivity lifecycle
ACTIVITY_PENDING = "pending"
ACTIVITY_COMPLETED = "completed"

# ClaimAttempt lifecycle
CLAIM_IN_FLIGHT = "in_flight"
CLAIM_SUCCEEDED = "succeeded"
CLAIM_FAILED = "failed"
CLAIM_UNKNOWN = "unknown"
CLAIM_RESOLVED_LANDED = "resolved_landed"
CLAIM_RESOLVED_FAILED = "resolved_failed"
CLAIM_STATUSES = (
    CLAIM_IN_FLIGHT, CLAIM_SUCCEEDED, CLAIM_FAILED, CLAIM_UNKNOWN,
    CLAIM_RESOLVED_LANDED, CLAIM_RESOLVED_FAILED
)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    nickname = Column(String(100))
    wallet_address = Column(String(64), unique=True, index=True)
    email = Column(String(255))
    role = Column(String(20), default="user")  # user, admin
    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    passports = relationship("Passport", back_populates="user")
    proofs = relationship("ActivityProof", back_populates="user")


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    starts_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    activities = relationship("Activity", back_populates="event")
    passports = relationship("Passport", back_populates="event")


class Sponsor(Base):
    __tablename__ = "sponsors"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    activities = relationship("Activity", back_populates="sponsor")


class Activity(Base):
    __tablename__ = "activities"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    sponsor_id = Column(String(36), ForeignKey("sponsors.id"))
    name = Column(String(255), nullable=False)
    description = Column(Text)
    num_of_tokens = Column(Integer, nullable=False, default=0)
    requires_proof = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    event = relationship("Event", back_populates="activities")
    sponsor = relationship("Sponsor", back_populates="activities")


class Passport(Base):
    __tablename__ = "passports"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False)
    progress = Column(Integer, default=0, nullable=False)  # 0-100, derived
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint('user_id', 'event_id', name='unique_user_event_passport'),
    )

    # Relationships
    user = relationship("User", back_populates="passports")
    event = relationship("Event", back_populates="passports")
    activities = relationship("PassportActivity", back_populates="passport")


class PassportActivity(Base):
    __tablename__ = "passport_activities"

    id = Column(String(36), primary_key=True, default=_uuid)
    passport_id = Column(String(36), ForeignKey("passports.id"), nullable=False)
    activity_id = Column(String(36), ForeignKey("activities.id"), nullable=False)
    status = Column(String(20), default=ACTIVITY_PENDING, nullable=False)
    requires_proof = Column(Boolean, default=False, nullable=False)  # copied, not live
    proof_id = Column(String(36), ForeignKey("activity_proofs.id"))
    timestamp = Column(DateTime)

    __table_args__ = (
        UniqueConstraint('passport_id', 'activity_id', name='unique_passport_activity'),
    )

    # Relationships
    passport = relationship("Passport", back_populates="activities")
    activity = relationship("Activity")
    proof = relationship("ActivityProof", foreign_keys=[proof_id])


class ActivityProof(Base):
    __tablename__ = "activity_proofs"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    activity_id = Column(String(36), ForeignKey("activities.id"), nullable=False)
    passport_id = Column(String(36), ForeignKey("passports.id"), nullable=False)
    proof_type = Column(String(10), nullable=False)  # text, image, both
    text_proof = Column(Text)
    image_url = Column(Text)
    status = Column(String(20), default=PROOF_PENDING, nullable=False)
    rejection_reason = Column(Text)
    validated_by = Column(String(100))
    validated_at = Column(DateTime)
    tokens_awarded = Column(Integer)
    transaction_hash = Column(String(100))
    # Held by the single approval currently talking to the claim gateway
    review_lock = Column(String(36))
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        # one proof per triple; a rejected proof is reused on resubmission
        UniqueConstraint('user_id', 'activity_id', 'passport_id', name='unique_activity_proof_triple'),
        Index('ix_activity_proofs_status', 'status'),
    )

    # Relationships
    user = relationship("User", back_populates="proofs")
    activity = relationship("Activity")
    passport = relationship("Passport")
    claim_attempts = relationship("ClaimAttempt", back_populates="proof")


class ClaimAttempt(Base):
    """Durable record of one token claim, written before the gateway is called"""
    __tablename__ = "claim_attempts"

    id = Column(String(36), primary_key=True, default=_uuid)
    proof_id = Column(String(36), ForeignKey("activity_proofs.id"), nullable=False, index=True)
    # sent with the claim as x-idempotency-key
    idempotency_key = Column(String(36), unique=True, nullable=False, default=_uuid)
    receiver_address = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False)
    quantity_in_wei = Column(String(80), nullable=False)
    status = Column(String(20), default=CLAIM_IN_FLIGHT, nullable=False)
    transaction_hash = Column(String(100))
    error_kind = Column(String(20))
    error_detail = Column(JSON)
    created_at = Column(DateTime, server_default=func.now())
    finished_at = Column(DateTime)
    resolved_by = Column(String(100))

    # Relationships
    proof = relationship("ActivityProof", back_populates="claim_attempts")
