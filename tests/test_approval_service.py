"""
Tests for the approval state machine: claim-before-commit ordering, failure
policy, idempotence, the concurrent approval race and claim reconciliation.
"""

import sys
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from swagly.db.models import ActivityProof, ClaimAttempt, Passport, PassportActivity
from swagly.errors import (
    Conflict, GatewayError, Internal, InvalidInput, InvalidState, NotFound
)
from swagly.services.approval_service import ApprovalService


def _row(db, seed, activity_index=0):
    return db.query(PassportActivity).filter_by(
        passport_id=seed["passport"].id,
        activity_id=seed["activities"][activity_index].id
    ).one()


# ---------------------------------------------------------------------------
# Approve
# ---------------------------------------------------------------------------


def test_approve_awards_tokens_and_updates_passport(db, seed, gateway, approvals, submit_text):
    proof_id = submit_text()

    result = approvals.approve(db, proof_id, "admin-1")

    assert result["transaction_hash"] == "0xabc"
    assert result["tokens_awarded"] == 10
    assert result["progress"] == 25
    assert gateway.calls == [(seed["user"].wallet_address, 10)]

    proof = db.get(ActivityProof, proof_id)
    assert proof.status == "approved"
    assert proof.tokens_awarded == 10
    assert proof.transaction_hash == "0xabc"
    assert proof.validated_by == "admin-1"
    assert proof.validated_at is not None
    assert proof.review_lock is None

    row = _row(db, seed)
    assert row.status == "completed"
    assert row.proof_id == proof_id
    assert row.timestamp is not None
    assert db.get(Passport, seed["passport"].id).progress == 25

    attempt = db.query(ClaimAttempt).filter_by(proof_id=proof_id).one()
    assert attempt.status == "succeeded"
    assert attempt.transaction_hash == "0xabc"
    assert attempt.quantity_in_wei == str(10 * 10 ** 18)


def test_approve_defaults_validator(db, seed, approvals, submit_text):
    proof_id = submit_text()

    approvals.approve(db, proof_id, None)

    assert db.get(ActivityProof, proof_id).validated_by == "admin"


def test_approve_with_unknown_hash_still_approves(db, seed, gateway, approvals, submit_text):
    gateway.transaction_hash = None
    proof_id = submit_text()

    result = approvals.approve(db, proof_id, "admin")

    assert result["transaction_hash"] is None
    proof = db.get(ActivityProof, proof_id)
    assert proof.status == "approved"
    assert proof.tokens_awarded == 10


def test_approve_unknown_proof(db, approvals, gateway):
    with pytest.raises(NotFound):
        approvals.approve(db, "missing", "admin")
    assert gateway.calls == []


def test_approve_already_approved_does_not_claim_again(db, seed, gateway, approvals, submit_text):
    proof_id = submit_text()
    approvals.approve(db, proof_id, "admin")
    assert len(gateway.calls) == 1

    with pytest.raises(InvalidState) as exc:
        approvals.approve(db, proof_id, "admin")

    assert exc.value.current_status == "approved"
    assert len(gateway.calls) == 1


def test_rejected_claim_leaves_proof_pending(db, seed, gateway, approvals, submit_text):
    gateway.error = GatewayError(
        GatewayError.REJECTED, "insufficient funds",
        upstream_status=500, payload={"error": "insufficient funds"}
    )
    proof_id = submit_text()

    with pytest.raises(GatewayError) as exc:
        approvals.approve(db, proof_id, "admin")

    assert exc.value.kind == GatewayError.REJECTED
    assert exc.value.payload == {"error": "insufficient funds"}

    db.expire_all()
    proof = db.get(ActivityProof, proof_id)
    assert proof.status == "pending"
    assert proof.tokens_awarded is None
    assert proof.review_lock is None
    assert _row(db, seed).status == "pending"
    assert db.get(Passport, seed["passport"].id).progress == 0

    attempt = db.query(ClaimAttempt).filter_by(proof_id=proof_id).one()
    assert attempt.status == "failed"
    assert attempt.error_kind == "rejected"
    assert attempt.error_detail["upstream_status"] == 500


def test_rejected_claim_can_be_retried(db, seed, gateway, approvals, submit_text):
    gateway.error = GatewayError(GatewayError.REJECTED, "paused", upstream_status=503)
    proof_id = submit_text()
    with pytest.raises(GatewayError):
        approvals.approve(db, proof_id, "admin")

    gateway.error = None
    result = approvals.approve(db, proof_id, "admin")

    assert result["progress"] == 25
    assert len(gateway.calls) == 2


def test_unconfigured_gateway_is_plain_failure(db, seed, gateway, approvals, submit_text):
    gateway.error = GatewayError(GatewayError.UNCONFIGURED, "THIRDWEB_SECRET_KEY is not configured")
    proof_id = submit_text()

    with pytest.raises(GatewayError):
        approvals.approve(db, proof_id, "admin")

    attempt = db.query(ClaimAttempt).filter_by(proof_id=proof_id).one()
    assert attempt.status == "failed"


def test_timeout_blocks_retry_until_resolved(db, seed, gateway, approvals, submit_text):
    gateway.error = GatewayError(GatewayError.TIMEOUT, "no answer")
    proof_id = submit_text()

    with pytest.raises(GatewayError) as exc:
        approvals.approve(db, proof_id, "admin")
    assert exc.value.outcome_unknown is True

    attempt = db.query(ClaimAttempt).filter_by(proof_id=proof_id).one()
    assert attempt.status == "unknown"
    assert db.get(ActivityProof, proof_id).status == "pending"

    gateway.error = None
    with pytest.raises(InvalidState):
        approvals.approve(db, proof_id, "admin")
    assert len(gateway.calls) == 1


def test_unknown_claim_resolved_as_failed_allows_new_claim(db, seed, gateway, approvals, submit_text):
    gateway.error = GatewayError(GatewayError.NETWORK, "reset")
    proof_id = submit_text()
    with pytest.raises(GatewayError):
        approvals.approve(db, proof_id, "admin")
    attempt_id = db.query(ClaimAttempt).filter_by(proof_id=proof_id).one().id

    resolved = approvals.resolve_claim_attempt(db, attempt_id, "failed", "ops")
    assert resolved["status"] == "resolved_failed"

    gateway.error = None
    result = approvals.approve(db, proof_id, "admin")

    assert result["transaction_hash"] == "0xabc"
    assert len(gateway.calls) == 2


def test_unknown_claim_resolved_as_landed_reconciles_without_claim(db, seed, gateway, approvals, submit_text):
    gateway.error = GatewayError(GatewayError.TIMEOUT, "no answer")
    proof_id = submit_text()
    with pytest.raises(GatewayError):
        approvals.approve(db, proof_id, "admin")
    attempt_id = db.query(ClaimAttempt).filter_by(proof_id=proof_id).one().id

    approvals.resolve_claim_attempt(db, attempt_id, "landed", "ops", transaction_hash="0xfeed")

    gateway.error = None
    result = approvals.approve(db, proof_id, "admin")

    assert result["transaction_hash"] == "0xfeed"
    assert result["progress"] == 25
    assert len(gateway.calls) == 1
    assert db.get(ActivityProof, proof_id).status == "approved"


def test_missing_wallet_is_invalid_input(db, seed, gateway, approvals, submit_text):
    proof_id = submit_text()
    seed["user"].wallet_address = None
    db.commit()

    with pytest.raises(InvalidInput):
        approvals.approve(db, proof_id, "admin")

    assert gateway.calls == []
    proof = db.get(ActivityProof, proof_id)
    assert proof.status == "pending"
    assert proof.review_lock is None
    assert db.query(ClaimAttempt).count() == 0


def test_missing_passport_row_is_refused_before_claiming(db, seed, gateway, approvals, submit_text):
    proof_id = submit_text()
    db.delete(_row(db, seed))
    db.commit()

    with pytest.raises(NotFound):
        approvals.approve(db, proof_id, "admin")

    assert gateway.calls == []
    assert db.query(ClaimAttempt).count() == 0
    db.expire_all()
    proof = db.get(ActivityProof, proof_id)
    assert proof.status == "pending"
    assert proof.review_lock is None

    from swagly.services.passport_service import passport_service
    passport_service.sync_passports(db, passport_id=seed["passport"].id)

    result = approvals.approve(db, proof_id, "admin")

    assert result["progress"] == 25
    assert len(gateway.calls) == 1


def test_passport_row_lost_during_claim_keeps_landed_claim(database, db, seed, gateway, approvals, submit_text):
    proof_id = submit_text()
    passport_id = seed["passport"].id
    activity_id = seed["activities"][0].id

    def row_removed_meanwhile():
        other = database.session()
        try:
            other.query(PassportActivity).filter_by(
                passport_id=passport_id, activity_id=activity_id
            ).delete()
            other.commit()
        finally:
            other.close()

    gateway.on_claim = row_removed_meanwhile

    with pytest.raises(NotFound):
        approvals.approve(db, proof_id, "admin")

    assert db.get(ActivityProof, proof_id).status == "pending"
    attempt = db.query(ClaimAttempt).filter_by(proof_id=proof_id).one()
    assert attempt.status == "succeeded"
    assert attempt.transaction_hash == "0xabc"

    # after a sync the next approval only records what already happened
    gateway.on_claim = None
    from swagly.services.passport_service import passport_service
    passport_service.sync_passports(db, passport_id=passport_id)

    result = approvals.approve(db, proof_id, "admin")

    assert result["transaction_hash"] == "0xabc"
    assert len(gateway.calls) == 1
    assert _row(db, seed).status == "completed"


def test_unexpected_error_before_claim_releases_lock(db, seed, gateway, approvals, submit_text, monkeypatch):
    proof_id = submit_text()

    def broken_conversion(quantity, decimals):
        raise ValueError("conversion failed")

    monkeypatch.setattr(sys.modules["swagly.services.approval_service"], "to_smallest_unit", broken_conversion)

    with pytest.raises(ValueError):
        approvals.approve(db, proof_id, "admin")

    assert gateway.calls == []
    assert db.query(ClaimAttempt).count() == 0
    db.expire_all()
    assert db.get(ActivityProof, proof_id).review_lock is None

    monkeypatch.undo()
    result = approvals.approve(db, proof_id, "admin")

    assert result["transaction_hash"] == "0xabc"


def test_unexpected_error_before_claim_still_allows_reject(db, seed, approvals, submit_text, monkeypatch):
    proof_id = submit_text()

    def broken_conversion(quantity, decimals):
        raise ValueError("conversion failed")

    monkeypatch.setattr(sys.modules["swagly.services.approval_service"], "to_smallest_unit", broken_conversion)
    with pytest.raises(ValueError):
        approvals.approve(db, proof_id, "admin")

    approvals.reject(db, proof_id, "admin", "wrong booth")

    db.expire_all()
    assert db.get(ActivityProof, proof_id).status == "rejected"


def test_claim_carries_attempt_idempotency_key(db, seed, gateway, approvals, submit_text):
    proof_id = submit_text()

    approvals.approve(db, proof_id, "admin")

    attempt = db.query(ClaimAttempt).filter_by(proof_id=proof_id).one()
    assert attempt.idempotency_key
    assert gateway.idempotency_keys == [attempt.idempotency_key]


def test_local_commit_failure_after_claim_is_reconcilable(db, seed, gateway, submit_text, monkeypatch):
    service = ApprovalService(gateway=gateway)
    proof_id = submit_text()

    def broken_apply(*args, **kwargs):
        raise OperationalError("UPDATE activity_proofs", {}, Exception("database is locked"))

    monkeypatch.setattr(service, "_apply_approval", broken_apply)

    with pytest.raises(Internal) as exc:
        service.approve(db, proof_id, "admin")
    assert exc.value.transaction_hash == "0xabc"

    attempt = db.query(ClaimAttempt).filter_by(proof_id=proof_id).one()
    assert attempt.status == "succeeded"
    assert db.get(ActivityProof, proof_id).review_lock is None

    monkeypatch.undo()
    result = service.approve(db, proof_id, "admin")

    assert result["progress"] == 25
    assert len(gateway.calls) == 1


def test_concurrent_approval_claims_once(database, db, seed, gateway, approvals, submit_text):
    proof_id = submit_text()
    outcomes = []

    def second_admin_clicks():
        other = database.session()
        try:
            approvals.approve(other, proof_id, "admin-2")
            outcomes.append("approved")
        except (Conflict, InvalidState) as e:
            outcomes.append(type(e).__name__)
        finally:
            other.close()

    gateway.on_claim = second_admin_clicks

    result = approvals.approve(db, proof_id, "admin-1")

    assert result["transaction_hash"] == "0xabc"
    assert outcomes == ["Conflict"]
    assert len(gateway.calls) == 1
    proof = db.get(ActivityProof, proof_id)
    assert proof.status == "approved"
    assert proof.validated_by == "admin-1"


def test_single_approved_proof_per_triple(db, seed, approvals, submit_text):
    proof_id = submit_text()
    approvals.approve(db, proof_id, "admin")

    approved = db.query(ActivityProof).filter_by(
        user_id=seed["user"].id,
        activity_id=seed["activities"][0].id,
        passport_id=seed["passport"].id,
        status="approved"
    ).count()
    assert approved == 1


# ---------------------------------------------------------------------------
# Reject
# ---------------------------------------------------------------------------


def test_reject_stores_reason(db, seed, gateway, approvals, submit_text):
    proof_id = submit_text()

    approvals.reject(db, proof_id, "admin-1", "  image unreadable ")

    db.expire_all()
    proof = db.get(ActivityProof, proof_id)
    assert proof.status == "rejected"
    assert proof.rejection_reason == "image unreadable"
    assert proof.validated_by == "admin-1"
    assert proof.validated_at is not None
    assert gateway.calls == []
    assert db.get(Passport, seed["passport"].id).progress == 0


def test_reject_twice_is_invalid_state(db, seed, approvals, submit_text):
    proof_id = submit_text()
    approvals.reject(db, proof_id, "admin", "blurry")

    with pytest.raises(InvalidState) as exc:
        approvals.reject(db, proof_id, "admin", "still blurry")

    assert exc.value.current_status == "rejected"
    db.expire_all()
    assert db.get(ActivityProof, proof_id).rejection_reason == "blurry"


def test_reject_requires_reason(db, seed, approvals, submit_text):
    proof_id = submit_text()

    with pytest.raises(InvalidInput):
        approvals.reject(db, proof_id, "admin", "   ")

    assert db.get(ActivityProof, proof_id).status == "pending"


def test_reject_unknown_proof(db, approvals):
    with pytest.raises(NotFound):
        approvals.reject(db, "missing", "admin", "nope")


def test_reject_refused_while_claim_outcome_unknown(db, seed, gateway, approvals, submit_text):
    gateway.error = GatewayError(GatewayError.TIMEOUT, "no answer")
    proof_id = submit_text()
    with pytest.raises(GatewayError):
        approvals.approve(db, proof_id, "admin")

    with pytest.raises(InvalidState):
        approvals.reject(db, proof_id, "admin", "changed my mind")


def test_reject_then_resubmit_then_approve(db, seed, gateway, approvals, submit_text):
    from swagly.services.proof_service import proof_service

    proof_id = submit_text()
    approvals.reject(db, proof_id, "admin", "image unreadable")

    again = proof_service.submit(
        db,
        user_id=seed["user"].id,
        activity_id=seed["activities"][0].id,
        passport_id=seed["passport"].id,
        proof_type="image",
        image_url="https://img/clear.png"
    )
    assert again["proof_id"] == proof_id

    db.expire_all()
    proof = db.get(ActivityProof, proof_id)
    assert proof.status == "pending"
    assert proof.rejection_reason is None

    approvals.approve(db, proof_id, "admin")
    assert db.get(ActivityProof, proof_id).status == "approved"


# ---------------------------------------------------------------------------
# Claim reconciliation
# ---------------------------------------------------------------------------


def test_resolve_rejects_bad_outcome(db, seed, gateway, approvals, submit_text):
    gateway.error = GatewayError(GatewayError.TIMEOUT, "no answer")
    proof_id = submit_text()
    with pytest.raises(GatewayError):
        approvals.approve(db, proof_id, "admin")
    attempt_id = db.query(ClaimAttempt).filter_by(proof_id=proof_id).one().id

    with pytest.raises(InvalidInput):
        approvals.resolve_claim_attempt(db, attempt_id, "maybe")


def test_resolve_settled_attempt_is_invalid_state(db, seed, approvals, submit_text):
    proof_id = submit_text()
    approvals.approve(db, proof_id, "admin")
    attempt_id = db.query(ClaimAttempt).filter_by(proof_id=proof_id).one().id

    with pytest.raises(InvalidState):
        approvals.resolve_claim_attempt(db, attempt_id, "landed")


def test_resolve_unknown_attempt(db, approvals):
    with pytest.raises(NotFound):
        approvals.resolve_claim_attempt(db, "missing", "landed")


def _stuck_attempt(db, proof_id, minutes_ago):
    attempt = ClaimAttempt(
        proof_id=proof_id,
        receiver_address="0x1111111111111111111111111111111111111111",
        quantity=10,
        quantity_in_wei=str(10 * 10 ** 18),
        status="in_flight",
        created_at=datetime.utcnow() - timedelta(minutes=minutes_ago)
    )
    db.add(attempt)
    db.query(ActivityProof).filter_by(id=proof_id).update({"review_lock": "crashed-worker"})
    db.commit()
    return attempt


def test_flag_stale_attempts_releases_lock(db, seed, approvals, submit_text):
    proof_id = submit_text()
    attempt = _stuck_attempt(db, proof_id, minutes_ago=60)

    assert approvals.flag_stale_attempts(db, older_than_minutes=15) == 1

    db.expire_all()
    assert db.get(ClaimAttempt, attempt.id).status == "unknown"
    assert db.get(ActivityProof, proof_id).review_lock is None


def test_flag_stale_attempts_leaves_fresh_ones(db, seed, approvals, submit_text):
    proof_id = submit_text()
    attempt = _stuck_attempt(db, proof_id, minutes_ago=1)

    assert approvals.flag_stale_attempts(db, older_than_minutes=15) == 0
    assert db.get(ClaimAttempt, attempt.id).status == "in_flight"


def test_fresh_in_flight_attempt_cannot_be_resolved(db, seed, approvals, submit_text):
    proof_id = submit_text()
    attempt = _stuck_attempt(db, proof_id, minutes_ago=1)

    with pytest.raises(InvalidState):
        approvals.resolve_claim_attempt(db, attempt.id, "failed")


def test_approve_while_locked_conflicts(db, seed, gateway, approvals, submit_text):
    proof_id = submit_text()
    _stuck_attempt(db, proof_id, minutes_ago=1)

    with pytest.raises(Conflict):
        approvals.approve(db, proof_id, "admin")
    assert gateway.calls == []


def test_list_claim_attempts_filters(db, seed, gateway, approvals, submit_text):
    gateway.error = GatewayError(GatewayError.REJECTED, "nope", upstream_status=400)
    proof_id = submit_text()
    with pytest.raises(GatewayError):
        approvals.approve(db, proof_id, "admin")

    assert len(approvals.list_claim_attempts(db)) == 1
    assert len(approvals.list_claim_attempts(db, "failed")) == 1
    assert approvals.list_claim_attempts(db, "succeeded") == []
