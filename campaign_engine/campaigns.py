"""
Campaign sessions: the aggregate root of a bulk email run.

State machine:

    DRAFT ─┐
           ├─> GENERATING ──> READY_TO_SEND ──> COMPLETED
    PENDING┘       │  ^
                   v  │ retry_campaign
                 FAILED

regenerate_all_emails re-enters GENERATING from READY_TO_SEND or FAILED and
re-runs every donor; update_campaign edits a session while it is a DRAFT.

Every transition is a status-guarded conditional update, so two callers
racing on the same session cannot both win. ``generation_running`` marks
a batch in flight; GENERATING with no batch running means "waiting for a
retry".
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

import config
from campaign_engine.content import migrate_email_document
from campaign_engine.errors import InvalidStateError, ValidationError, ensure_owned
from campaign_engine.events import ChangeNotifier, EventKind
from campaign_engine.generation import GENERATED_STATUSES, BatchResult, GenerationCoordinator
from campaign_engine.schedule_config import ScheduleConfig
from database import (
    CampaignSession,
    DailySendCounter,
    EmailSendJob,
    GeneratedEmail,
    JobStatus,
    ReviewStatus,
    SendStatus,
    SessionStatus,
    utcnow,
)

logger = logging.getLogger("campaigns.sessions")

TURN_ROLES = ("user", "assistant")


def session_view(doc: Dict) -> Dict:
    view = {k: v for k, v in doc.items() if k != "_id"}
    view["id"] = str(doc["_id"])
    return view


def email_view(doc: Dict) -> Dict:
    doc = migrate_email_document(doc)
    view = {k: v for k, v in doc.items() if k not in ("_id", "session_id")}
    view["id"] = str(doc["_id"])
    view["session_id"] = str(doc["session_id"])
    if view.get("send_job_id") is not None:
        view["send_job_id"] = str(view["send_job_id"])
    return view


def _validate_turns(turns: Optional[List[Dict]]) -> List[Dict]:
    validated = []
    for turn in turns or []:
        if turn.get("role") not in TURN_ROLES or not isinstance(turn.get("content"), str):
            raise ValidationError("chat history turns need a role (user|assistant) and string content")
        validated.append({
            "role": turn["role"],
            "content": turn["content"],
            "timestamp": turn.get("timestamp") or utcnow(),
            "step_type": turn.get("step_type"),
        })
    return validated


def _failed_donors(session: Dict) -> int:
    """Donors left without an email once no batch is running."""
    if session["status"] in (SessionStatus.GENERATING, SessionStatus.FAILED) and not session.get("generation_running"):
        return session["total_donors"] - session["completed_donors"]
    return 0


def _validate_draft(instruction: str, donor_ids: List[Any], preview_donor_ids: Optional[List[Any]],
                    schedule_config: Optional[Dict]):
    if not instruction or not instruction.strip():
        raise ValidationError("instruction must not be blank")
    if not donor_ids:
        raise ValidationError("at least one donor is required")

    unique_donors = list(dict.fromkeys(donor_ids))
    preview = list(dict.fromkeys(preview_donor_ids or []))
    if not set(preview) <= set(unique_donors):
        raise ValidationError("preview donors must be a subset of the selected donors")
    if schedule_config:
        ScheduleConfig().merged(schedule_config).validate()
    return unique_donors, preview


class CampaignService:
    def __init__(self, coordinator: GenerationCoordinator, notifier: Optional[ChangeNotifier] = None):
        self.coordinator = coordinator
        self.notifier = notifier or coordinator.notifier

    # ── Loading ──────────────────────────────────────────────────────

    def _load(self, organization_id: str, session_id: str) -> Dict:
        return ensure_owned(CampaignSession.get(session_id), organization_id, "campaign session")

    # ── Creation ─────────────────────────────────────────────────────

    def create_session(
        self,
        organization_id: str,
        user_id: str,
        instruction: str,
        donor_ids: List[Any],
        job_name: str = None,
        launch: bool = False,
        preview_donor_ids: List[Any] = None,
        refined_instruction: str = None,
        chat_history: List[Dict] = None,
        schedule_config: Dict = None,
    ) -> Dict:
        """Create a session as DRAFT, or PENDING when ``launch`` is set."""
        unique_donors, preview = _validate_draft(instruction, donor_ids, preview_donor_ids, schedule_config)

        session_id = CampaignSession.create(
            organization_id=organization_id,
            user_id=user_id,
            job_name=(job_name or instruction.strip()[:80]),
            instruction=instruction.strip(),
            donor_ids=unique_donors,
            status=SessionStatus.PENDING if launch else SessionStatus.DRAFT,
            preview_donor_ids=preview,
            refined_instruction=refined_instruction,
            chat_history=_validate_turns(chat_history),
            schedule_config=schedule_config,
        )
        logger.info(
            f"session_created: {session_id[:8]}... org={organization_id} "
            f"donors={len(unique_donors)} launch={launch}"
        )
        self.notifier.publish(session_id, organization_id, EventKind.SESSION_CREATED)
        return session_view(CampaignSession.get(session_id))

    def update_campaign(
        self,
        organization_id: str,
        session_id: str,
        job_name: str = None,
        instruction: str = None,
        refined_instruction: str = None,
        chat_history: List[Dict] = None,
        donor_ids: List[Any] = None,
        preview_donor_ids: List[Any] = None,
        schedule_config: Dict = None,
    ) -> Dict:
        """
        Edit a DRAFT session. Arguments left as None keep their current
        value; a new donor list also resets total_donors.
        """
        session = self._load(organization_id, session_id)
        if session["status"] != SessionStatus.DRAFT:
            raise InvalidStateError(f"only DRAFT sessions can be edited, this one is {session['status']}")

        new_instruction = session["instruction"] if instruction is None else instruction
        new_donors = session["selected_donor_ids"] if donor_ids is None else donor_ids
        new_preview = session.get("preview_donor_ids") if preview_donor_ids is None else preview_donor_ids
        if donor_ids is not None and preview_donor_ids is None:
            new_preview = [d for d in new_preview or [] if d in set(donor_ids)]
        unique_donors, preview = _validate_draft(new_instruction, new_donors, new_preview, schedule_config)

        fields = {
            "instruction": new_instruction.strip(),
            "selected_donor_ids": unique_donors,
            "total_donors": len(unique_donors),
            "preview_donor_ids": preview,
        }
        if job_name is not None:
            if not job_name.strip():
                raise ValidationError("campaign name must not be blank")
            fields["job_name"] = job_name.strip()
        if refined_instruction is not None:
            fields["refined_instruction"] = refined_instruction.strip() or None
        if chat_history is not None:
            fields["chat_history"] = _validate_turns(chat_history)
        if schedule_config is not None:
            fields["schedule_config"] = schedule_config or None

        updated = CampaignSession.transition(session_id, [SessionStatus.DRAFT], SessionStatus.DRAFT, set_fields=fields)
        if updated is None:
            raise InvalidStateError("session left DRAFT while it was being edited")
        logger.info(f"session_updated: {session_id[:8]}... fields={sorted(fields)}")
        self.notifier.publish(session_id, organization_id, EventKind.SESSION_UPDATED, status=SessionStatus.DRAFT)
        return session_view(updated)

    # ── Generation ───────────────────────────────────────────────────

    async def generate_emails(self, organization_id: str, session_id: str) -> Dict:
        """
        DRAFT/PENDING -> GENERATING and run the batch for every donor.
        Calling it again while the session is GENERATING returns the
        current state without dispatching anything.
        """
        session = self._load(organization_id, session_id)
        if session["status"] == SessionStatus.GENERATING:
            return session_view(session)

        claimed = CampaignSession.transition(
            session_id,
            [SessionStatus.DRAFT, SessionStatus.PENDING],
            SessionStatus.GENERATING,
            set_fields={"generation_running": True, "generation_started_at": utcnow(), "error_message": None},
        )
        if claimed is None:
            current = CampaignSession.get(session_id)
            if current["status"] == SessionStatus.GENERATING:
                return session_view(current)
            raise InvalidStateError(f"cannot generate a session in status {current['status']}")

        self.notifier.publish(session_id, organization_id, EventKind.SESSION_UPDATED, status=SessionStatus.GENERATING)
        return await self._run_generation(claimed, claimed["selected_donor_ids"])

    async def retry_campaign(self, organization_id: str, session_id: str) -> Dict:
        """
        Re-run generation only for donors without a PENDING_APPROVAL or
        APPROVED email. Existing emails and completed_donors are untouched.
        """
        session = self._load(organization_id, session_id)
        status = session["status"]
        if status not in (SessionStatus.GENERATING, SessionStatus.FAILED):
            if status == SessionStatus.READY_TO_SEND:
                return session_view(session)
            raise InvalidStateError(f"cannot retry a session in status {status}")
        if session.get("generation_running"):
            return session_view(session)

        done = GeneratedEmail.donor_ids_with_status(session_id, GENERATED_STATUSES)
        missing = [d for d in session["selected_donor_ids"] if d not in done]

        claimed = CampaignSession.transition(
            session_id,
            [SessionStatus.GENERATING, SessionStatus.FAILED],
            SessionStatus.GENERATING,
            set_fields={"generation_running": True, "generation_started_at": utcnow(),
                        "error_message": None, "completed_at": None},
            extra_filter={"generation_running": {"$ne": True}},
        )
        if claimed is None:
            return session_view(CampaignSession.get(session_id))

        logger.info(f"session_retry: {session_id[:8]}... donors={len(missing)}")
        self.notifier.publish(session_id, organization_id, EventKind.SESSION_UPDATED,
                              status=SessionStatus.GENERATING, retry_donors=len(missing))
        return await self._run_generation(claimed, missing)

    async def regenerate_all_emails(self, organization_id: str, session_id: str,
                                    instruction: str = None, refined_instruction: str = None) -> Dict:
        """
        Regenerate the email of every donor, optionally under a new
        instruction. Existing rows are overwritten in place and go back to
        PENDING_APPROVAL. Not allowed once any email has been scheduled or sent.
        """
        session = self._load(organization_id, session_id)
        regenerable = (SessionStatus.READY_TO_SEND, SessionStatus.GENERATING, SessionStatus.FAILED)
        if session["status"] not in regenerable:
            raise InvalidStateError(f"cannot regenerate a session in status {session['status']}")
        if session.get("generation_running"):
            raise InvalidStateError("generation is already running for this session")
        if EmailSendJob.list_for_session(session_id, JobStatus.OUTSTANDING):
            raise InvalidStateError("cancel the scheduled sends before regenerating")
        if GeneratedEmail.count_for_session(session_id, {"is_sent": True}):
            raise InvalidStateError("emails of this session have already been sent")

        fields = {"generation_running": True, "generation_started_at": utcnow(),
                  "error_message": None, "completed_at": None}
        if instruction is not None:
            if not instruction.strip():
                raise ValidationError("instruction must not be blank")
            fields["instruction"] = instruction.strip()
            fields["refined_instruction"] = None
        if refined_instruction is not None:
            fields["refined_instruction"] = refined_instruction.strip() or None

        claimed = CampaignSession.transition(
            session_id, regenerable, SessionStatus.GENERATING,
            set_fields=fields, extra_filter={"generation_running": {"$ne": True}},
        )
        if claimed is None:
            raise InvalidStateError("session changed while regeneration was being started")

        reopened = GeneratedEmail.reopen_for_review(session_id)
        logger.info(f"session_regenerate: {session_id[:8]}... donors={claimed['total_donors']} reopened={reopened}")
        self.notifier.publish(session_id, organization_id, EventKind.SESSION_UPDATED,
                              status=SessionStatus.GENERATING, regenerate=True)
        return await self._run_generation(claimed, claimed["selected_donor_ids"])

    async def _run_generation(self, session: Dict, donor_ids: List[Any]) -> Dict:
        session_id = session["id"]
        organization_id = session["organization_id"]
        try:
            result = await self.coordinator.run_batch(session_id, donor_ids)
        except Exception as e:
            logger.error(f"batch_crashed: session={session_id[:8]}... {e}", exc_info=True)
            failed = CampaignSession.transition(
                session_id,
                [SessionStatus.GENERATING],
                SessionStatus.FAILED,
                set_fields={"generation_running": False, "error_message": f"Generation crashed: {e}"},
            )
            if failed is not None:
                self.notifier.publish(session_id, organization_id, EventKind.SESSION_FAILED,
                                      error_message=failed["error_message"])
            else:
                CampaignSession.update_fields(session_id, {"generation_running": False})
            return session_view(CampaignSession.get(session_id))

        return self._finish_generation(session_id, organization_id, result)

    def _finish_generation(self, session_id: str, organization_id: str, result: BatchResult) -> Dict:
        session = CampaignSession.get(session_id)
        if session["status"] != SessionStatus.GENERATING:
            # cancelled while the batch drained
            CampaignSession.update_fields(session_id, {"generation_running": False})
            return session_view(CampaignSession.get(session_id))

        total = session["total_donors"]
        completed = session["completed_donors"]

        if completed >= total and not result.failures:
            updated = CampaignSession.transition(
                session_id, [SessionStatus.GENERATING], SessionStatus.READY_TO_SEND,
                set_fields={"generation_running": False, "error_message": None},
            )
            logger.info(f"session_ready: {session_id[:8]}... emails={completed}")
            self.notifier.publish(session_id, organization_id, EventKind.SESSION_UPDATED,
                                  status=SessionStatus.READY_TO_SEND)
        elif completed == 0 and result.failures:
            updated = CampaignSession.transition(
                session_id, [SessionStatus.GENERATING], SessionStatus.FAILED,
                set_fields={"generation_running": False},
            )
            logger.error(f"session_failed: {session_id[:8]}... {session.get('error_message')}")
            self.notifier.publish(session_id, organization_id, EventKind.SESSION_FAILED,
                                  error_message=session.get("error_message"))
        else:
            CampaignSession.update_fields(session_id, {"generation_running": False})
            updated = None
            logger.warning(
                f"session_partial: {session_id[:8]}... completed={completed}/{total} "
                f"failed={len(result.failures)} skipped={len(result.skipped)}"
            )
            self.notifier.publish(session_id, organization_id, EventKind.SESSION_UPDATED,
                                  status=SessionStatus.GENERATING, failed=list(result.failures))

        return session_view(updated or CampaignSession.get(session_id))

    def cancel_generation(self, organization_id: str, session_id: str) -> Dict:
        """
        Stop a session before or during generation. In-flight attempts
        finish; attempts not yet started are skipped.
        """
        self._load(organization_id, session_id)
        updated = CampaignSession.transition(
            session_id,
            [SessionStatus.DRAFT, SessionStatus.PENDING, SessionStatus.GENERATING],
            SessionStatus.FAILED,
            set_fields={"error_message": "Cancelled by user"},
        )
        if updated is None:
            raise InvalidStateError("only sessions that have not finished generating can be cancelled")
        logger.info(f"session_cancelled: {session_id[:8]}...")
        self.notifier.publish(session_id, organization_id, EventKind.SESSION_FAILED,
                              error_message="Cancelled by user")
        return session_view(updated)

    def recover_stuck_sessions(self, organization_id: str = None, stale_minutes: int = None) -> int:
        """
        Clear ``generation_running`` on sessions whose batch started more
        than ``stale_minutes`` ago and never reported back (the process
        running it died). A session with an email for every donor moves on
        to READY_TO_SEND; the rest stay GENERATING so they can be retried.
        """
        cutoff = utcnow() - timedelta(minutes=stale_minutes or config.STALE_GENERATION_MINUTES)
        recovered = 0
        for session in CampaignSession.find_stuck(cutoff, organization_id):
            session_id = session["id"]
            guard = {"generation_running": True, "generation_started_at": session.get("generation_started_at")}
            status = session["status"]

            if status == SessionStatus.GENERATING and session["completed_donors"] >= session["total_donors"]:
                updated = CampaignSession.transition(
                    session_id, [status], SessionStatus.READY_TO_SEND,
                    set_fields={"generation_running": False, "error_message": None}, extra_filter=guard,
                )
            elif status == SessionStatus.GENERATING:
                updated = CampaignSession.transition(
                    session_id, [status], status, extra_filter=guard,
                    set_fields={"generation_running": False,
                                "error_message": "Generation was interrupted; retry to finish the remaining donors"},
                )
            else:
                updated = CampaignSession.transition(
                    session_id, [status], status, extra_filter=guard,
                    set_fields={"generation_running": False, "completed_at": session.get("completed_at")},
                )
            if updated is None:
                continue

            recovered += 1
            logger.warning(
                f"session_recovered: {session_id[:8]}... status={updated['status']} "
                f"completed={updated['completed_donors']}/{updated['total_donors']}"
            )
            self.notifier.publish(session_id, updated["organization_id"], EventKind.SESSION_UPDATED,
                                  status=updated["status"], recovered=True)
        return recovered

    # ── Completion ───────────────────────────────────────────────────

    def mark_completed(self, session_id: str) -> bool:
        """
        READY_TO_SEND -> COMPLETED once nothing is outstanding and every
        approved email has either been sent or given up on.
        """
        session = CampaignSession.get(session_id)
        if session is None or session["status"] != SessionStatus.READY_TO_SEND:
            return False
        if EmailSendJob.list_for_session(session_id, JobStatus.OUTSTANDING):
            return False

        approved = GeneratedEmail.count_for_session(session_id, {"status": ReviewStatus.APPROVED})
        if approved == 0:
            return False
        finished = GeneratedEmail.count_for_session(session_id, {
            "status": ReviewStatus.APPROVED,
            "send_status": {"$in": [SendStatus.SENT, SendStatus.FAILED]},
        })
        if finished < approved:
            return False

        updated = CampaignSession.transition(session_id, [SessionStatus.READY_TO_SEND], SessionStatus.COMPLETED)
        if updated is None:
            return False
        logger.info(f"session_completed: {session_id[:8]}...")
        self.notifier.publish(session_id, session["organization_id"], EventKind.SESSION_COMPLETED)
        return True

    # ── Reads ────────────────────────────────────────────────────────

    def get_session(self, organization_id: str, session_id: str) -> Dict:
        session = self._load(organization_id, session_id)
        view = session_view(session)
        view["emails"] = [email_view(e) for e in GeneratedEmail.list_for_session(session_id)]
        return view

    def get_session_status(self, organization_id: str, session_id: str) -> Dict:
        session = self._load(organization_id, session_id)
        job_counts = EmailSendJob.status_counts(session_id)
        review = GeneratedEmail.review_counts(session_id)

        failed_donors = _failed_donors(session)

        return {
            "id": session_id,
            "status": session["status"],
            "generation_running": bool(session.get("generation_running")),
            "total_donors": session["total_donors"],
            "completed_donors": session["completed_donors"],
            "failed_donors": failed_donors,
            "error_message": session.get("error_message"),
            "pending_approval": review.get(ReviewStatus.PENDING_APPROVAL, 0),
            "approved": review.get(ReviewStatus.APPROVED, 0),
            "jobs": {status: job_counts.get(status, 0) for status in
                     (JobStatus.SCHEDULED, JobStatus.PAUSED, JobStatus.SENDING,
                      JobStatus.SENT, JobStatus.FAILED, JobStatus.CANCELLED)},
            "created_at": session["created_at"],
            "updated_at": session["updated_at"],
            "completed_at": session.get("completed_at"),
        }

    def list_campaigns(self, organization_id: str, limit: int = 10, offset: int = 0,
                       status: str = None) -> Dict:
        if not 1 <= limit <= 100:
            raise ValidationError("limit must be between 1 and 100")
        if offset < 0:
            raise ValidationError("offset must be >= 0")
        if status is not None and status not in SessionStatus.ALL:
            raise ValidationError(f"unknown status: {status}")

        campaigns = []
        for doc in CampaignSession.list_for_organization(organization_id, status, limit, offset):
            view = session_view(doc)
            view["total_emails"] = GeneratedEmail.count_for_session(view["id"])
            view["sent_emails"] = GeneratedEmail.count_for_session(view["id"], {"is_sent": True})
            view["approved_emails"] = GeneratedEmail.count_for_session(view["id"], {"status": ReviewStatus.APPROVED})
            view["failed_donors"] = _failed_donors(doc)
            view["failed_jobs"] = EmailSendJob.status_counts(view["id"]).get(JobStatus.FAILED, 0)
            campaigns.append(view)

        return {
            "campaigns": campaigns,
            "total_count": CampaignSession.count_for_organization(organization_id, status),
        }

    # ── Deletion ─────────────────────────────────────────────────────

    def delete_campaign(self, organization_id: str, session_id: str) -> bool:
        session = self._load(organization_id, session_id)
        if session.get("generation_running"):
            raise InvalidStateError("cannot delete a campaign while generation is running")
        if EmailSendJob.list_for_session(session_id, [JobStatus.SENDING]):
            raise InvalidStateError("cannot delete a campaign while emails are being sent")

        for job in EmailSendJob.list_for_session(session_id, [JobStatus.SCHEDULED, JobStatus.PAUSED]):
            DailySendCounter.release(organization_id, job["scheduled_day"])
        jobs = EmailSendJob.delete_for_session(session_id)
        emails = GeneratedEmail.delete_for_session(session_id)
        CampaignSession.delete(session_id)

        logger.info(f"session_deleted: {session_id[:8]}... emails={emails} jobs={jobs}")
        self.notifier.publish(session_id, organization_id, EventKind.SESSION_DELETED)
        return True
