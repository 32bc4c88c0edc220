"""
Passport Service - Passport ledger, per-activity completion and progress
"""
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from swagly.db.models import (
    Activity, Event, Passport, PassportActivity, User,
    ACTIVITY_COMPLETED, ACTIVITY_PENDING
)
from swagly.errors import Conflict, NotFound

logger = logging.getLogger(__name__)


def compute_progress(completed: int, total: int) -> int:
    """
    Percentage of completed activities, rounded half up.

    An event without activities has progress 0.
    """
    if total <= 0:
        return 0
    return (200 * completed + total) // (2 * total)


class PassportService:
    """
    Service owning passports and their PassportActivity rows.

    The ledger primitives (recompute_progress, mark_activity_completed,
    sync_missing_activities) only flush; the approval flow commits them
    together with the proof transition. Operator entry points commit.
    """

    # ============================================================
    # PROGRESS
    # ============================================================

    def recompute_progress(self, db: Session, passport_id: str) -> int:
        """Recompute progress from rows and persist it on the passport"""
        passport = db.get(Passport, passport_id)
        if not passport:
            raise NotFound(f"Passport {passport_id} not found")

        db.flush()
        total = db.query(func.count(PassportActivity.id)).filter(
            PassportActivity.passport_id == passport_id
        ).scalar() or 0
        completed = db.query(func.count(PassportActivity.id)).filter(
            PassportActivity.passport_id == passport_id,
            PassportActivity.status == ACTIVITY_COMPLETED
        ).scalar() or 0

        progress = compute_progress(completed, total)
        passport.progress = progress
        db.flush()

        logger.debug(f"Passport {passport_id}: {completed}/{total} -> {progress}%")
        return progress

    def get_passport_activity(
        self,
        db: Session,
        passport_id: str,
        activity_id: str
    ) -> PassportActivity:
        """
        The passport's entry for one activity.

        A missing row means the event's activity list changed after the
        passport was created and no sync has run; that is reported, never
        papered over by creating the row here.
        """
        row = db.query(PassportActivity).filter(
            PassportActivity.passport_id == passport_id,
            PassportActivity.activity_id == activity_id
        ).first()

        if not row:
            raise NotFound(
                f"Passport {passport_id} has no entry for activity {activity_id}; "
                f"run a passport sync first"
            )
        return row

    def mark_activity_completed(
        self,
        db: Session,
        passport_id: str,
        activity_id: str,
        proof_id: Optional[str]
    ) -> PassportActivity:
        """Mark one passport activity completed and link the accepted proof"""
        row = self.get_passport_activity(db, passport_id, activity_id)

        if row.status != ACTIVITY_COMPLETED:
            row.status = ACTIVITY_COMPLETED
            row.timestamp = datetime.utcnow()
        if proof_id:
            row.proof_id = proof_id
        db.flush()
        return row

    # ============================================================
    # SYNC
    # ============================================================

    def sync_missing_activities(
        self,
        db: Session,
        passport_id: str
    ) -> Tuple[int, int]:
        """
        Insert PassportActivity rows for event activities the passport lacks.

        Returns (rows added, recomputed progress). Running it twice adds
        nothing the second time.
        """
        passport = db.get(Passport, passport_id)
        if not passport:
            raise NotFound(f"Passport {passport_id} not found")

        event_activities = db.query(Activity.id, Activity.requires_proof).filter(
            Activity.event_id == passport.event_id
        ).all()

        existing_ids = {
            row.activity_id for row in db.query(PassportActivity.activity_id).filter(
                PassportActivity.passport_id == passport_id
            ).all()
        }

        added = 0
        for activity_id, requires_proof in event_activities:
            if activity_id in existing_ids:
                continue
            db.add(PassportActivity(
                passport_id=passport_id,
                activity_id=activity_id,
                status=ACTIVITY_PENDING,
                requires_proof=bool(requires_proof)
            ))
            existing_ids.add(activity_id)
            added += 1

        if added:
            logger.info(f"Added {added} missing activit(ies) to passport {passport_id}")

        progress = self.recompute_progress(db, passport_id)
        return added, progress

    def sync_passports(
        self,
        db: Session,
        passport_id: Optional[str] = None,
        event_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Sync one passport, every passport of an event, or every passport"""
        query = db.query(Passport.id)
        if passport_id:
            if not db.get(Passport, passport_id):
                raise NotFound(f"Passport {passport_id} not found")
            query = query.filter(Passport.id == passport_id)
        elif event_id:
            query = query.filter(Passport.event_id == event_id)

        passport_ids = [row.id for row in query.all()]

        results = []
        total_added = 0
        for pid in passport_ids:
            added, progress = self.sync_missing_activities(db, pid)
            total_added += added
            results.append({
                "passport_id": pid,
                "activities_added": added,
                "new_progress": progress
            })

        db.commit()
        logger.info(
            f"Passport sync finished: {len(passport_ids)} passport(s), "
            f"{total_added} activit(ies) added"
        )

        return {
            "passports_synced": len(passport_ids),
            "total_activities_added": total_added,
            "results": results
        }

    def refresh_requires_proof(self, db: Session) -> Dict[str, int]:
        """Re-copy requires_proof from each activity onto its passport rows"""
        activities = db.query(Activity.id, Activity.requires_proof).all()

        updated = 0
        for activity_id, requires_proof in activities:
            count = db.query(PassportActivity).filter(
                PassportActivity.activity_id == activity_id,
                PassportActivity.requires_proof != bool(requires_proof)
            ).update(
                {PassportActivity.requires_proof: bool(requires_proof)},
                synchronize_session=False
            )
            updated += count

        db.commit()
        logger.info(f"requires_proof refreshed on {updated} passport activit(ies)")
        return {
            "activities_processed": len(activities),
            "passport_activities_updated": updated
        }

    # ============================================================
    # REGISTRATION AND READS
    # ============================================================

    def create_passport(self, db: Session, user_id: str, event_id: str) -> Passport:
        """Register a user for an event, seeding one row per event activity"""
        if not db.get(User, user_id):
            raise NotFound(f"User {user_id} not found")

        event = db.get(Event, event_id)
        if not event:
            raise NotFound(f"Event {event_id} not found")

        existing = db.query(Passport).filter(
            Passport.user_id == user_id,
            Passport.event_id == event_id
        ).first()
        if existing:
            raise Conflict("A passport already exists for this event")

        passport = Passport(user_id=user_id, event_id=event_id, progress=0)
        db.add(passport)
        db.flush()

        for activity in event.activities:
            db.add(PassportActivity(
                passport_id=passport.id,
                activity_id=activity.id,
                status=ACTIVITY_PENDING,
                requires_proof=bool(activity.requires_proof)
            ))

        db.commit()
        db.refresh(passport)
        logger.info(f"Created passport {passport.id} for user {user_id} in event {event_id}")
        return passport

    def list_user_passports(self, db: Session, user_id: str) -> List[Dict[str, Any]]:
        passports = db.query(Passport).filter(
            Passport.user_id == user_id
        ).order_by(Passport.created_at.desc()).all()

        return [self.serialize_passport(p) for p in passports]

    def serialize_passport(self, passport: Passport) -> Dict[str, Any]:
        return {
            "id": passport.id,
            "user_id": passport.user_id,
            "progress": passport.progress,
            "created_at": passport.created_at.isoformat() if passport.created_at else None,
            "event": {
                "id": passport.event.id,
                "name": passport.event.name
            } if passport.event else None,
            "activities": [
                {
                    "id": pa.id,
                    "activity_id": pa.activity_id,
                    "name": pa.activity.name if pa.activity else None,
                    "num_of_tokens": pa.activity.num_of_tokens if pa.activity else None,
                    "sponsor": {
                        "id": pa.activity.sponsor.id,
                        "name": pa.activity.sponsor.name
                    } if pa.activity and pa.activity.sponsor else None,
                    "status": pa.status,
                    "requires_proof": pa.requires_proof,
                    "timestamp": pa.timestamp.isoformat() if pa.timestamp else None,
                    "proof": {
                        "id": pa.proof.id,
                        "status": pa.proof.status,
                        "rejection_reason": pa.proof.rejection_reason
                    } if pa.proof else None
                }
                for pa in passport.activities
            ]
        }


# Singleton instance
passport_service = PassportService()
