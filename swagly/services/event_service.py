"""
Event Service - Event aggregate removal with an explicit cascade
"""
import logging
from typing import Dict, Any

from sqlalchemy.orm import Session

from swagly.db.models import (
    Activity, ActivityProof, ClaimAttempt, Event, Passport, PassportActivity
)
from swagly.errors import NotFound

logger = logging.getLogger(__name__)


class EventService:
    """
    Owns the event aggregate lifecycle.

    Deleting an event removes, in this order and in one transaction:
    passport activities, claim attempts, proofs, passports, activities and
    finally the event. Nothing relies on database-level ON DELETE rules.
    """

    def delete_event(self, db: Session, event_id: str) -> Dict[str, Any]:
        event = db.get(Event, event_id)
        if not event:
            raise NotFound(f"Event {event_id} not found")

        passport_ids = [
            row.id for row in db.query(Passport.id).filter(Passport.event_id == event_id).all()
        ]
        activity_ids = [
            row.id for row in db.query(Activity.id).filter(Activity.event_id == event_id).all()
        ]

        counts = {
            "claim_attempts": 0,
            "proofs": 0,
            "passport_activities": 0,
            "passports": len(passport_ids),
            "activities": len(activity_ids),
        }

        try:
            if passport_ids:
                proof_ids = [
                    row.id for row in db.query(ActivityProof.id).filter(
                        ActivityProof.passport_id.in_(passport_ids)
                    ).all()
                ]

                # passport rows point at proofs, unlink before removing proofs
                counts["passport_activities"] = db.query(PassportActivity).filter(
                    PassportActivity.passport_id.in_(passport_ids)
                ).delete(synchronize_session=False)

                if proof_ids:
                    counts["claim_attempts"] = db.query(ClaimAttempt).filter(
                        ClaimAttempt.proof_id.in_(proof_ids)
                    ).delete(synchronize_session=False)
                    counts["proofs"] = db.query(ActivityProof).filter(
                        ActivityProof.id.in_(proof_ids)
                    ).delete(synchronize_session=False)

                db.query(Passport).filter(
                    Passport.id.in_(passport_ids)
                ).delete(synchronize_session=False)

            if activity_ids:
                db.query(Activity).filter(
                    Activity.id.in_(activity_ids)
                ).delete(synchronize_session=False)

            db.query(Event).filter(Event.id == event_id).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(f"Deleted event {event_id} with {counts}")
        return {"event_id": event_id, "deleted": counts}


# Singleton instance
event_service = EventService()
