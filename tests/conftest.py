"""
Shared test fixtures for the Swagly test suite.

Provides:
- an in-memory SQLite storage handle per test
- seeding helpers for users, events, activities and passports
- a fake claim gateway recording every call
"""

import os
from typing import Any, List, Optional

# Ensure test env vars before any app imports
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("THIRDWEB_SECRET_KEY", "test-secret")
os.environ.setdefault("CREATOR_WALLET_ADDRESS", "0x000000000000000000000000000000000000c0de")
os.environ.setdefault("LOCAL_COMMIT_ATTEMPTS", "2")

import pytest

from swagly.db.database import Database
from swagly.db.models import (
    Activity, Event, Passport, PassportActivity, Sponsor, User
)
from swagly.services.approval_service import ApprovalService
from swagly.services.claim_gateway import ClaimResult


class FakeGateway:
    """Claim gateway double: returns a fixed hash or raises a prepared error."""

    def __init__(self, transaction_hash: Optional[str] = "0xabc", error: Optional[Exception] = None):
        self.transaction_hash = transaction_hash
        self.error = error
        self.calls: List[Any] = []
        self.on_claim = None
        self.idempotency_keys: List[Optional[str]] = []

    def claim(self, receiver_address: str, quantity: int, idempotency_key: Optional[str] = None) -> ClaimResult:
        self.calls.append((receiver_address, quantity))
        self.idempotency_keys.append(idempotency_key)
        if self.on_claim is not None:
            self.on_claim()
        if self.error is not None:
            raise self.error
        return ClaimResult(
            transaction_hash=self.transaction_hash,
            quantity=quantity,
            quantity_in_wei=quantity * 10 ** 18,
            response={"transactionHash": self.transaction_hash}
        )


@pytest.fixture
def database():
    handle = Database("sqlite://").open()
    handle.create_all()
    yield handle
    handle.close()


@pytest.fixture
def db(database):
    session = database.session()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def approvals(gateway):
    return ApprovalService(gateway=gateway)


@pytest.fixture
def seed(db):
    """
    One user registered for an event with four activities.

    The first activity requires proof and pays 10 tokens.
    """
    user = User(nickname="ana", wallet_address="0x1111111111111111111111111111111111111111")
    sponsor = Sponsor(name="Scroll")
    event = Event(name="ETH Lima")
    db.add_all([user, sponsor, event])
    db.flush()

    activities = [
        Activity(event_id=event.id, sponsor_id=sponsor.id, name="Booth selfie",
                 num_of_tokens=10, requires_proof=True),
        Activity(event_id=event.id, sponsor_id=sponsor.id, name="Workshop",
                 num_of_tokens=5, requires_proof=True),
        Activity(event_id=event.id, sponsor_id=sponsor.id, name="NFC tap",
                 num_of_tokens=3, requires_proof=False),
        Activity(event_id=event.id, sponsor_id=sponsor.id, name="Quiz",
                 num_of_tokens=7, requires_proof=False),
    ]
    db.add_all(activities)
    db.flush()

    passport = Passport(user_id=user.id, event_id=event.id, progress=0)
    db.add(passport)
    db.flush()
    for activity in activities:
        db.add(PassportActivity(
            passport_id=passport.id,
            activity_id=activity.id,
            status="pending",
            requires_proof=activity.requires_proof
        ))
    db.commit()

    return {
        "user": user,
        "sponsor": sponsor,
        "event": event,
        "activities": activities,
        "passport": passport,
    }


@pytest.fixture
def submit_text(db, seed):
    """Submit a text proof for the 10-token activity and return its id."""
    from swagly.services.proof_service import proof_service

    def _submit(activity_index: int = 0, text: str = "done") -> str:
        result = proof_service.submit(
            db,
            user_id=seed["user"].id,
            activity_id=seed["activities"][activity_index].id,
            passport_id=seed["passport"].id,
            proof_type="text",
            text_proof=text
        )
        return result["proof_id"]

    return _submit
