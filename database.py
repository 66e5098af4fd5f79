from pymongo import MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Iterable, Set
import logging
import config

logger = logging.getLogger("campaigns.database")

_client: Optional[MongoClient] = None
_db = None


def utcnow() -> datetime:
    """Naive UTC timestamp, the same form pymongo returns on reads."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """Return the active database, connecting on first use."""
    global _client, _db
    if _db is None:
        _client = MongoClient(config.DATABASE_URL)
        _db = _client[config.DATABASE_NAME]
        ensure_indexes(_db)
    return _db


def use_database(database):
    """Point every model at an already-open database (tests pass a mongomock db)."""
    global _db
    _db = database
    ensure_indexes(database)


def ensure_indexes(database):
    database["email_generation_sessions"].create_index([("organization_id", 1), ("created_at", -1)])
    database["email_generation_sessions"].create_index("status")
    database["generated_emails"].create_index([("session_id", 1), ("donor_id", 1)], unique=True)
    database["generated_emails"].create_index([("organization_id", 1), ("status", 1)])
    database["email_send_jobs"].create_index([("status", 1), ("scheduled_time", 1)])
    database["email_send_jobs"].create_index("session_id")
    database["email_send_jobs"].create_index([("organization_id", 1), ("scheduled_day", 1)])
    database["email_daily_counts"].create_index([("organization_id", 1), ("day", 1)], unique=True)
    database["email_schedule_configs"].create_index("organization_id", unique=True)
    database["donors"].create_index([("organization_id", 1), ("donor_id", 1)])


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Coerce an id string to ObjectId, None when it is not a valid id."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def _with_id(doc: Optional[Dict]) -> Optional[Dict]:
    """Expose ``_id`` as a string ``id`` alongside the raw document."""
    if doc is not None:
        doc["id"] = str(doc["_id"])
    return doc


# =============================================================================
# STATUS VOCABULARIES
# =============================================================================

class SessionStatus:
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    GENERATING = "GENERATING"
    READY_TO_SEND = "READY_TO_SEND"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    ALL = (DRAFT, PENDING, GENERATING, READY_TO_SEND, COMPLETED, FAILED)
    TERMINAL = (COMPLETED, FAILED)


class ReviewStatus:
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"


class SendStatus:
    """Delivery state mirrored onto each generated email."""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class JobStatus:
    SCHEDULED = "scheduled"
    PAUSED = "paused"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"

    OUTSTANDING = (SCHEDULED, PAUSED, SENDING)
    TERMINAL = (SENT, FAILED, CANCELLED)


# =============================================================================
# CAMPAIGN SESSIONS
# =============================================================================

class CampaignSession:
    """CRUD for the email_generation_sessions collection."""

    _name = "email_generation_sessions"

    @staticmethod
    def collection():
        return get_db()[CampaignSession._name]

    @staticmethod
    def create(organization_id: str, user_id: str, job_name: str, instruction: str,
               donor_ids: List[Any], status: str = SessionStatus.DRAFT,
               preview_donor_ids: List[Any] = None, refined_instruction: str = None,
               chat_history: List[Dict] = None, schedule_config: Dict = None) -> str:
        now = utcnow()
        doc = {
            "organization_id": organization_id,
            "user_id": user_id,
            "job_name": job_name,
            "instruction": instruction,
            "refined_instruction": refined_instruction,
            "chat_history": chat_history or [],
            "selected_donor_ids": list(donor_ids),
            "preview_donor_ids": list(preview_donor_ids or []),
            "status": status,
            "total_donors": len(donor_ids),
            "completed_donors": 0,
            "error_message": None,
            "generation_running": False,
            "generation_started_at": None,
            "schedule_config": schedule_config,
            "created_at": now,
            "updated_at": now,
            "completed_at": None,
        }
        result = CampaignSession.collection().insert_one(doc)
        return str(result.inserted_id)

    @staticmethod
    def get(session_id: str) -> Optional[Dict]:
        oid = to_object_id(session_id)
        if oid is None:
            return None
        return _with_id(CampaignSession.collection().find_one({"_id": oid}))

    @staticmethod
    def list_for_organization(organization_id: str, status: str = None,
                              limit: int = 10, offset: int = 0) -> List[Dict]:
        query = {"organization_id": organization_id}
        if status:
            query["status"] = status
        cursor = (
            CampaignSession.collection()
            .find(query, {"chat_history": 0})
            .sort("created_at", -1)
            .skip(offset)
            .limit(limit)
        )
        return [_with_id(doc) for doc in cursor]

    @staticmethod
    def count_for_organization(organization_id: str, status: str = None) -> int:
        query = {"organization_id": organization_id}
        if status:
            query["status"] = status
        return CampaignSession.collection().count_documents(query)

    @staticmethod
    def transition(session_id: str, from_statuses: Iterable[str], to_status: str,
                   set_fields: Dict = None, extra_filter: Dict = None) -> Optional[Dict]:
        """
        Move a session to ``to_status`` only if it is currently in one of
        ``from_statuses``. Returns the updated document, or None when the
        guard did not match (someone else moved it first).
        """
        now = utcnow()
        query = {"_id": to_object_id(session_id), "status": {"$in": list(from_statuses)}}
        if extra_filter:
            query.update(extra_filter)
        update = {"status": to_status, "updated_at": now}
        if to_status in SessionStatus.TERMINAL:
            update["completed_at"] = now
        if set_fields:
            update.update(set_fields)
        doc = CampaignSession.collection().find_one_and_update(
            query, {"$set": update}, return_document=ReturnDocument.AFTER
        )
        return _with_id(doc)

    @staticmethod
    def update_fields(session_id: str, fields: Dict) -> None:
        fields = dict(fields)
        fields["updated_at"] = utcnow()
        CampaignSession.collection().update_one(
            {"_id": to_object_id(session_id)}, {"$set": fields}
        )

    @staticmethod
    def raise_completed_donors(session_id: str, count: int) -> Optional[Dict]:
        """Atomic, monotonic counter update: never lowers completed_donors."""
        doc = CampaignSession.collection().find_one_and_update(
            {"_id": to_object_id(session_id)},
            {"$max": {"completed_donors": count}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return _with_id(doc)

    @staticmethod
    def find_stuck(cutoff: datetime, organization_id: str = None) -> List[Dict]:
        """Sessions whose batch was started before ``cutoff`` and never finished."""
        query = {
            "generation_running": True,
            "$or": [
                {"generation_started_at": {"$lt": cutoff}},
                {"generation_started_at": None},
            ],
        }
        if organization_id is not None:
            query["organization_id"] = organization_id
        return [_with_id(doc) for doc in CampaignSession.collection().find(query)]

    @staticmethod
    def delete(session_id: str) -> int:
        return CampaignSession.collection().delete_one({"_id": to_object_id(session_id)}).deleted_count


# =============================================================================
# GENERATED EMAILS
# =============================================================================

class GeneratedEmail:
    """CRUD for the generated_emails collection (one row per session/donor)."""

    _name = "generated_emails"

    @staticmethod
    def collection():
        return get_db()[GeneratedEmail._name]

    @staticmethod
    def upsert_generated(session_id: str, organization_id: str, donor_id: Any, subject: str,
                         structured_content: List[Dict], content_version: int,
                         to_email: str = None, to_name: str = None,
                         reference_contexts: Dict = None) -> Dict:
        """
        Insert or overwrite the email for (session, donor). Returns
        ``{"id": ..., "created": bool}``.
        """
        now = utcnow()
        sid = to_object_id(session_id)
        try:
            result = GeneratedEmail.collection().update_one(
                {"session_id": sid, "donor_id": donor_id},
                {
                    "$set": {
                        "subject": subject,
                        "structured_content": structured_content,
                        "content_version": content_version,
                        "reference_contexts": reference_contexts or {},
                        "to_email": to_email,
                        "to_name": to_name,
                        "status": ReviewStatus.PENDING_APPROVAL,
                        "reject_reason": None,
                        "updated_at": now,
                    },
                    "$setOnInsert": {
                        "organization_id": organization_id,
                        "is_sent": False,
                        "sent_at": None,
                        "send_status": SendStatus.PENDING,
                        "send_error": None,
                        "send_job_id": None,
                        "scheduled_send_time": None,
                        "created_at": now,
                    },
                },
                upsert=True,
            )
        except DuplicateKeyError:
            # Lost an insert race for the same pair; the row exists now.
            result = None
        if result is not None and result.upserted_id is not None:
            return {"id": str(result.upserted_id), "created": True}
        existing = GeneratedEmail.collection().find_one({"session_id": sid, "donor_id": donor_id}, {"_id": 1})
        return {"id": str(existing["_id"]), "created": False}

    @staticmethod
    def get(email_id: str) -> Optional[Dict]:
        oid = to_object_id(email_id)
        if oid is None:
            return None
        return _with_id(GeneratedEmail.collection().find_one({"_id": oid}))

    @staticmethod
    def get_many(email_ids: Iterable[str], organization_id: str = None) -> List[Dict]:
        oids = [oid for oid in (to_object_id(e) for e in email_ids) if oid is not None]
        query = {"_id": {"$in": oids}}
        if organization_id is not None:
            query["organization_id"] = organization_id
        return [_with_id(doc) for doc in GeneratedEmail.collection().find(query)]

    @staticmethod
    def list_for_session(session_id: str, query: Dict = None) -> List[Dict]:
        q = {"session_id": to_object_id(session_id)}
        if query:
            q.update(query)
        return [_with_id(doc) for doc in GeneratedEmail.collection().find(q).sort("created_at", 1)]

    @staticmethod
    def donor_ids_with_status(session_id: str, statuses: Iterable[str]) -> Set[Any]:
        cursor = GeneratedEmail.collection().find(
            {"session_id": to_object_id(session_id), "status": {"$in": list(statuses)}},
            {"donor_id": 1},
        )
        return {doc["donor_id"] for doc in cursor}

    @staticmethod
    def count_for_session(session_id: str, query: Dict = None) -> int:
        q = {"session_id": to_object_id(session_id)}
        if query:
            q.update(query)
        return GeneratedEmail.collection().count_documents(q)

    @staticmethod
    def review_counts(session_id: str) -> Dict[str, int]:
        pipeline = [
            {"$match": {"session_id": to_object_id(session_id)}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]
        counts = {ReviewStatus.PENDING_APPROVAL: 0, ReviewStatus.APPROVED: 0}
        for row in GeneratedEmail.collection().aggregate(pipeline):
            counts[row["_id"]] = row["count"]
        return counts

    @staticmethod
    def set_review_status(email_ids: Iterable[Any], status: str, reject_reason: str = None) -> int:
        """Only unsent emails can change review status."""
        oids = [oid for oid in (to_object_id(e) for e in email_ids) if oid is not None]
        if not oids:
            return 0
        result = GeneratedEmail.collection().update_many(
            {"_id": {"$in": oids}, "is_sent": False},
            {"$set": {"status": status, "reject_reason": reject_reason, "updated_at": utcnow()}},
        )
        return result.modified_count

    @staticmethod
    def reopen_for_review(session_id: str) -> int:
        """Put every unsent email of a session back in PENDING_APPROVAL."""
        result = GeneratedEmail.collection().update_many(
            {"session_id": to_object_id(session_id), "is_sent": False},
            {"$set": {"status": ReviewStatus.PENDING_APPROVAL, "reject_reason": None, "updated_at": utcnow()}},
        )
        return result.modified_count

    @staticmethod
    def update_content(email_id: str, fields: Dict, expected_status: str = None) -> bool:
        query = {"_id": to_object_id(email_id), "is_sent": False}
        if expected_status:
            query["status"] = expected_status
        fields = dict(fields)
        fields["updated_at"] = utcnow()
        result = GeneratedEmail.collection().update_one(query, {"$set": fields})
        return result.matched_count == 1

    @staticmethod
    def claim_for_scheduling(email_id: Any, eligible_send_statuses: Iterable[Optional[str]]) -> bool:
        """Approved, unsent and in an eligible send state -> scheduled (guarded)."""
        result = GeneratedEmail.collection().update_one(
            {
                "_id": to_object_id(email_id),
                "status": ReviewStatus.APPROVED,
                "is_sent": False,
                "send_status": {"$in": list(eligible_send_statuses)},
            },
            {"$set": {"send_status": SendStatus.SCHEDULED, "send_error": None}},
        )
        return result.modified_count == 1

    @staticmethod
    def set_send_state(email_id: Any, send_status: str, **fields) -> None:
        fields["send_status"] = send_status
        GeneratedEmail.collection().update_one({"_id": to_object_id(email_id)}, {"$set": fields})

    @staticmethod
    def mark_sent(email_id: Any, sent_at: datetime) -> None:
        GeneratedEmail.collection().update_one(
            {"_id": to_object_id(email_id)},
            {
                "$set": {
                    "is_sent": True,
                    "sent_at": sent_at,
                    "send_status": SendStatus.SENT,
                    "send_error": None,
                }
            },
        )

    @staticmethod
    def delete_for_session(session_id: str) -> int:
        return GeneratedEmail.collection().delete_many({"session_id": to_object_id(session_id)}).deleted_count


# =============================================================================
# SEND JOBS
# =============================================================================

class EmailSendJob:
    """CRUD for the email_send_jobs collection."""

    _name = "email_send_jobs"

    @staticmethod
    def collection():
        return get_db()[EmailSendJob._name]

    @staticmethod
    def create(email_id: str, session_id: str, organization_id: str,
               scheduled_time: datetime, scheduled_day: str) -> str:
        now = utcnow()
        doc = {
            "email_id": to_object_id(email_id),
            "session_id": to_object_id(session_id),
            "organization_id": organization_id,
            "scheduled_time": scheduled_time,
            "scheduled_day": scheduled_day,
            "actual_send_time": None,
            "status": JobStatus.SCHEDULED,
            "attempt_count": 0,
            "last_error": None,
            "dispatch_id": None,
            "claimed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        return str(EmailSendJob.collection().insert_one(doc).inserted_id)

    @staticmethod
    def get(job_id: str) -> Optional[Dict]:
        oid = to_object_id(job_id)
        if oid is None:
            return None
        return _with_id(EmailSendJob.collection().find_one({"_id": oid}))

    @staticmethod
    def list_for_session(session_id: str, statuses: Iterable[str] = None) -> List[Dict]:
        query = {"session_id": to_object_id(session_id)}
        if statuses is not None:
            query["status"] = {"$in": list(statuses)}
        return [_with_id(doc) for doc in EmailSendJob.collection().find(query).sort("scheduled_time", 1)]

    @staticmethod
    def list_for_organization(organization_id: str, statuses: Iterable[str]) -> List[Dict]:
        cursor = EmailSendJob.collection().find(
            {"organization_id": organization_id, "status": {"$in": list(statuses)}}
        ).sort("scheduled_time", 1)
        return [_with_id(doc) for doc in cursor]

    @staticmethod
    def find_due(now: datetime, limit: int) -> List[Dict]:
        cursor = (
            EmailSendJob.collection()
            .find({"status": JobStatus.SCHEDULED, "scheduled_time": {"$lte": now}})
            .sort("scheduled_time", 1)
            .limit(limit)
        )
        return [_with_id(doc) for doc in cursor]

    @staticmethod
    def transition(job_id: Any, from_statuses: Iterable[str], to_status: str,
                   set_fields: Dict = None, extra_filter: Dict = None,
                   inc_fields: Dict = None) -> Optional[Dict]:
        """Status-guarded conditional update. None means the guard did not match."""
        query = {"_id": to_object_id(job_id), "status": {"$in": list(from_statuses)}}
        if extra_filter:
            query.update(extra_filter)
        fields = {"status": to_status, "updated_at": utcnow()}
        if set_fields:
            fields.update(set_fields)
        update = {"$set": fields}
        if inc_fields:
            update["$inc"] = inc_fields
        doc = EmailSendJob.collection().find_one_and_update(
            query, update, return_document=ReturnDocument.AFTER
        )
        return _with_id(doc)

    @staticmethod
    def claim(job_id: Any, now: datetime) -> Optional[Dict]:
        """scheduled -> sending, only if still scheduled and due."""
        return EmailSendJob.transition(
            job_id,
            [JobStatus.SCHEDULED],
            JobStatus.SENDING,
            set_fields={"claimed_at": now},
            extra_filter={"scheduled_time": {"$lte": now}},
        )

    @staticmethod
    def find_stale_claims(cutoff: datetime) -> List[Dict]:
        cursor = EmailSendJob.collection().find(
            {"status": JobStatus.SENDING, "claimed_at": {"$lt": cutoff}}
        )
        return [_with_id(doc) for doc in cursor]

    @staticmethod
    def count_sent_between(organization_id: str, start: datetime, end: datetime) -> int:
        return EmailSendJob.collection().count_documents({
            "organization_id": organization_id,
            "status": JobStatus.SENT,
            "actual_send_time": {"$gte": start, "$lt": end},
        })

    @staticmethod
    def count_for_day(organization_id: str, day: str, exclude_statuses: Iterable[str] = ()) -> int:
        query = {"organization_id": organization_id, "scheduled_day": day}
        exclude = list(exclude_statuses)
        if exclude:
            query["status"] = {"$nin": exclude}
        return EmailSendJob.collection().count_documents(query)

    @staticmethod
    def status_counts(session_id: str) -> Dict[str, int]:
        pipeline = [
            {"$match": {"session_id": to_object_id(session_id)}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]
        return {row["_id"]: row["count"] for row in EmailSendJob.collection().aggregate(pipeline)}

    @staticmethod
    def delete_for_session(session_id: str) -> int:
        return EmailSendJob.collection().delete_many({"session_id": to_object_id(session_id)}).deleted_count


# =============================================================================
# DAILY SEND COUNTERS
# =============================================================================

class DailySendCounter:
    """
    Per-(organization, local day) count of reserved send slots. A slot is
    reserved before its job row is written, so the cap holds even when two
    schedulers race for the same day.
    """

    _name = "email_daily_counts"

    @staticmethod
    def collection():
        return get_db()[DailySendCounter._name]

    @staticmethod
    def get_count(organization_id: str, day: str) -> int:
        doc = DailySendCounter.collection().find_one({"organization_id": organization_id, "day": day})
        return doc["count"] if doc else 0

    @staticmethod
    def try_reserve(organization_id: str, day: str, cap: int) -> bool:
        key = {"organization_id": organization_id, "day": day}
        try:
            DailySendCounter.collection().update_one(
                key, {"$setOnInsert": {"count": 0}}, upsert=True
            )
        except DuplicateKeyError:
            pass
        doc = DailySendCounter.collection().find_one_and_update(
            dict(key, count={"$lt": cap}),
            {"$inc": {"count": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return doc is not None

    @staticmethod
    def release(organization_id: str, day: str) -> None:
        DailySendCounter.collection().update_one(
            {"organization_id": organization_id, "day": day, "count": {"$gt": 0}},
            {"$inc": {"count": -1}},
        )

    @staticmethod
    def restore(organization_id: str, day: str) -> None:
        """Re-take a released reservation without checking the cap."""
        DailySendCounter.collection().update_one(
            {"organization_id": organization_id, "day": day},
            {"$inc": {"count": 1}},
            upsert=True,
        )


# =============================================================================
# SCHEDULE CONFIGS
# =============================================================================

class ScheduleConfigRecord:
    """One row per organization in email_schedule_configs."""

    _name = "email_schedule_configs"

    @staticmethod
    def collection():
        return get_db()[ScheduleConfigRecord._name]

    @staticmethod
    def get(organization_id: str) -> Optional[Dict]:
        return ScheduleConfigRecord.collection().find_one({"organization_id": organization_id}, {"_id": 0})

    @staticmethod
    def upsert(organization_id: str, fields: Dict) -> None:
        now = utcnow()
        ScheduleConfigRecord.collection().update_one(
            {"organization_id": organization_id},
            {"$set": dict(fields, updated_at=now), "$setOnInsert": {"created_at": now}},
            upsert=True,
        )


# =============================================================================
# AGENTIC FLOWS
# =============================================================================

class AgenticFlowRecord:
    """
    Persisted dialogue state for the pre-generation flow. Every write bumps
    ``version``; writers name the version they read so a stale writer loses.
    """

    _name = "agentic_flows"

    @staticmethod
    def collection():
        return get_db()[AgenticFlowRecord._name]

    @staticmethod
    def create(doc: Dict) -> str:
        now = utcnow()
        doc = dict(doc, version=0, turn_pending=False, turn_claimed_at=None, created_at=now, updated_at=now)
        return str(AgenticFlowRecord.collection().insert_one(doc).inserted_id)

    @staticmethod
    def get(flow_id: str) -> Optional[Dict]:
        oid = to_object_id(flow_id)
        if oid is None:
            return None
        return _with_id(AgenticFlowRecord.collection().find_one({"_id": oid}))

    @staticmethod
    def turn_free_filter(cutoff: datetime) -> Dict:
        """Matches flows with no turn in flight, or whose turn claim expired before ``cutoff``."""
        return {"$or": [{"turn_pending": False}, {"turn_claimed_at": {"$lt": cutoff}}]}

    @staticmethod
    def compare_and_set(flow_id: str, expected_version: int, set_fields: Dict,
                        push_turns: List[Dict] = None, extra_filter: Dict = None) -> Optional[Dict]:
        query = {"_id": to_object_id(flow_id), "version": expected_version}
        if extra_filter:
            query.update(extra_filter)
        update = {
            "$set": dict(set_fields, updated_at=utcnow()),
            "$inc": {"version": 1},
        }
        if push_turns:
            update["$push"] = {"conversation": {"$each": push_turns}}
        doc = AgenticFlowRecord.collection().find_one_and_update(
            query, update, return_document=ReturnDocument.AFTER
        )
        return _with_id(doc)
