"""
Worker task tests. Tasks are called directly, without a broker.
"""

from datetime import datetime, timedelta

import pytest

from swagly.db.models import Activity, ActivityProof, ClaimAttempt, PassportActivity
from swagly.worker import tasks


@pytest.fixture(autouse=True)
def worker_database(database):
    tasks.set_database(database)
    yield database
    tasks.set_database(None)


def test_flag_stale_claims(db, seed, submit_text):
    proof_id = submit_text()
    attempt = ClaimAttempt(
        proof_id=proof_id,
        receiver_address=seed["user"].wallet_address,
        quantity=10,
        quantity_in_wei=str(10 * 10 ** 18),
        status="in_flight",
        created_at=datetime.utcnow() - timedelta(hours=2)
    )
    db.add(attempt)
    db.query(ActivityProof).filter_by(id=proof_id).update({"review_lock": "lost-worker"})
    db.commit()

    result = tasks.flag_stale_claims(older_than_minutes=30)

    assert result == {"flagged": 1}
    db.expire_all()
    assert db.get(ClaimAttempt, attempt.id).status == "unknown"
    assert db.get(ActivityProof, proof_id).review_lock is None


def test_flag_stale_claims_nothing_to_do(db, seed):
    assert tasks.flag_stale_claims() == {"flagged": 0}


def test_sync_event_passports(db, seed):
    late = Activity(event_id=seed["event"].id, name="Closing party", num_of_tokens=2, requires_proof=False)
    db.add(late)
    db.commit()

    result = tasks.sync_event_passports(seed["event"].id)

    assert result["passports_synced"] == 1
    assert result["total_activities_added"] == 1
    db.expire_all()
    assert db.query(PassportActivity).filter_by(activity_id=late.id).count() == 1


def test_stale_claim_sweep_is_scheduled():
    from swagly.worker.celery_app import celery_app

    schedule = celery_app.conf.beat_schedule["flag-stale-claims"]
    assert schedule["task"] == "swagly.worker.tasks.flag_stale_claims"
    assert celery_app.conf.task_routes["swagly.worker.tasks.flag_stale_claims"] == {"queue": "reconciliation"}
