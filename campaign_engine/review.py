"""
Review gate between generation and scheduling.

Only APPROVED emails are eligible to send. Rejecting keeps the row (and
its history) in PENDING_APPROVAL with the reason attached, so it can be
edited or enhanced and approved later.
"""

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

import config
from campaign_engine.campaigns import email_view
from campaign_engine.content import (
    CONTENT_VERSION,
    migrate_email_document,
    normalize_structured_content,
    render_plain_text,
)
from campaign_engine.errors import (
    GenerationFailure,
    InvalidStateError,
    ValidationError,
    ensure_owned,
)
from campaign_engine.events import ChangeNotifier, EventKind
from campaign_engine.llm import LLMClient
from campaign_engine.providers import DonorDirectory, GenerationProvider
from database import CampaignSession, GeneratedEmail, ReviewStatus, SendStatus, SessionStatus

logger = logging.getLogger("campaigns.review")

ACTIONS = ("approve", "reject")
EDITABLE_SESSION_STATUSES = (
    SessionStatus.DRAFT,
    SessionStatus.PENDING,
    SessionStatus.GENERATING,
    SessionStatus.READY_TO_SEND,
)
LOCKED_SEND_STATUSES = (SendStatus.SCHEDULED, SendStatus.SENDING, SendStatus.PAUSED, SendStatus.SENT)


class AIReviewResult:
    OK = "OK"
    NEEDS_IMPROVEMENT = "NEEDS_IMPROVEMENT"
    ERROR = "ERROR"


AI_REVIEW_SYSTEM_PROMPT = """You review fundraising emails a nonprofit is about to send to its donors.

Flag an email as NEEDS_IMPROVEMENT when it has factual claims not supported by the donor context,
an inappropriate tone, a wrong or missing name, or an unclear ask. Otherwise answer OK.

Return JSON: {"result": "OK" | "NEEDS_IMPROVEMENT", "feedback": "one or two sentences"}"""


class ReviewGate:
    def __init__(
        self,
        provider: GenerationProvider,
        donor_directory: DonorDirectory,
        notifier: Optional[ChangeNotifier] = None,
        llm: Optional[LLMClient] = None,
        timeout_seconds: float = None,
    ):
        self.provider = provider
        self.donor_directory = donor_directory
        self.notifier = notifier or ChangeNotifier()
        self._llm = llm
        self.timeout_seconds = timeout_seconds or config.GENERATION_TIMEOUT_SECONDS

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = LLMClient()
        return self._llm

    def _load_email(self, organization_id: str, email_id: str) -> Dict:
        return ensure_owned(GeneratedEmail.get(email_id), organization_id, "email")

    def _check_editable(self, email: Dict):
        if email.get("is_sent"):
            raise InvalidStateError("email has already been sent")
        if email.get("send_status") in LOCKED_SEND_STATUSES:
            raise InvalidStateError("email is scheduled for sending; cancel or pause it first")
        session = CampaignSession.get(str(email["session_id"]))
        if session is None or session["status"] not in EDITABLE_SESSION_STATUSES:
            raise InvalidStateError("email belongs to a campaign that can no longer be edited")

    # ── Bulk approve / reject ────────────────────────────────────────

    def bulk_review(self, organization_id: str, email_ids: List[Any], action: str,
                    reason: str = None) -> int:
        """
        Approve or reject a list of emails. Ids from other organizations,
        unknown ids and already-sent or scheduled emails are left out of
        the count rather than failing the batch.
        """
        if action not in ACTIONS:
            raise ValidationError(f"action must be one of {', '.join(ACTIONS)}")
        if not email_ids:
            return 0

        emails = [
            e for e in GeneratedEmail.get_many(email_ids, organization_id=organization_id)
            if not e.get("is_sent") and e.get("send_status") not in LOCKED_SEND_STATUSES
        ]
        if action == "approve":
            count = GeneratedEmail.set_review_status([e["_id"] for e in emails], ReviewStatus.APPROVED)
        else:
            count = GeneratedEmail.set_review_status(
                [e["_id"] for e in emails], ReviewStatus.PENDING_APPROVAL,
                reject_reason=(reason or "").strip() or None,
            )

        by_session = defaultdict(list)
        for e in emails:
            by_session[str(e["session_id"])].append(e["id"])
        for session_id, ids in by_session.items():
            self.notifier.publish(session_id, organization_id, EventKind.EMAILS_REVIEWED,
                                  action=action, email_ids=ids)

        logger.info(
            f"bulk_review: org={organization_id} action={action} "
            f"requested={len(email_ids)} updated={count}"
        )
        return count

    def list_pending_emails(self, organization_id: str, session_id: str) -> List[Dict]:
        ensure_owned(CampaignSession.get(session_id), organization_id, "campaign session")
        return [
            email_view(e)
            for e in GeneratedEmail.list_for_session(session_id, {"status": ReviewStatus.PENDING_APPROVAL})
        ]

    # ── Editing ──────────────────────────────────────────────────────

    def update_email(self, organization_id: str, email_id: str, subject: str,
                     structured_content: Any, reference_contexts: Dict = None) -> Dict:
        if not subject or not subject.strip():
            raise ValidationError("subject must not be blank")
        pieces = normalize_structured_content(structured_content)
        if not pieces:
            raise ValidationError("email content must not be empty")

        email = self._load_email(organization_id, email_id)
        if email["status"] != ReviewStatus.PENDING_APPROVAL:
            raise InvalidStateError("only emails pending approval can be edited")
        self._check_editable(email)

        fields = {
            "subject": subject.strip(),
            "structured_content": pieces,
            "content_version": CONTENT_VERSION,
        }
        if reference_contexts is not None:
            fields["reference_contexts"] = reference_contexts
        if not GeneratedEmail.update_content(email_id, fields, expected_status=ReviewStatus.PENDING_APPROVAL):
            raise InvalidStateError("email changed state while being edited")

        self.notifier.publish(str(email["session_id"]), organization_id, EventKind.EMAIL_UPDATED, email_id=email_id)
        return email_view(GeneratedEmail.get(email_id))

    async def enhance_email(self, organization_id: str, email_id: str, instruction: str) -> Dict:
        """
        Ask the provider to rework an email. The email keeps its id and
        goes back to PENDING_APPROVAL.
        """
        if not instruction or not instruction.strip():
            raise ValidationError("enhancement instruction must not be blank")
        email = self._load_email(organization_id, email_id)
        self._check_editable(email)
        email = email_view(email)

        donors = self.donor_directory.get_donors_by_ids([email["donor_id"]], organization_id)
        donor_context = donors[0] if donors else {"donor_id": email["donor_id"]}

        try:
            content = await asyncio.wait_for(
                self.provider.refine(email, instruction.strip(), donor_context),
                timeout=self.timeout_seconds,
            )
            pieces = normalize_structured_content(content.structured_content)
        except asyncio.TimeoutError:
            raise GenerationFailure(email["donor_id"], f"enhancement timed out after {self.timeout_seconds:g}s")
        except (GenerationFailure, ValidationError):
            raise
        except Exception as e:
            logger.warning(f"enhance_failed: email={email_id[:8]}... error={e}")
            raise GenerationFailure(email["donor_id"], str(e) or e.__class__.__name__)

        updated = GeneratedEmail.update_content(email_id, {
            "subject": content.subject,
            "structured_content": pieces,
            "content_version": CONTENT_VERSION,
            "reference_contexts": content.reference_contexts or email.get("reference_contexts") or {},
            "status": ReviewStatus.PENDING_APPROVAL,
            "reject_reason": None,
        })
        if not updated:
            raise InvalidStateError("email was sent while being enhanced")

        logger.info(f"email_enhanced: {email_id[:8]}... donor={email['donor_id']}")
        self.notifier.publish(email["session_id"], organization_id, EventKind.EMAIL_UPDATED,
                              email_id=email_id, enhanced=True)
        return email_view(GeneratedEmail.get(email_id))

    # ── AI review ────────────────────────────────────────────────────

    async def ai_review(self, organization_id: str, email_ids: List[Any]) -> List[Dict]:
        """Grade each email with the LLM. One failure yields ERROR for that email only."""
        emails = GeneratedEmail.get_many(email_ids, organization_id=organization_id)
        results = []
        for email in emails:
            email = migrate_email_document(email)
            user_prompt = (
                f"RECIPIENT: {email.get('to_name') or email.get('to_email') or email['donor_id']}\n"
                f"SUBJECT: {email.get('subject', '')}\n\n"
                f"BODY:\n{render_plain_text(email['structured_content'])}\n\n"
                f"REFERENCES USED (JSON):\n{json.dumps(email.get('reference_contexts') or {}, default=str)}"
            )
            try:
                verdict = await asyncio.wait_for(
                    self.llm.complete_json_async(AI_REVIEW_SYSTEM_PROMPT, user_prompt, temperature=0.2),
                    timeout=self.timeout_seconds,
                )
                result = verdict.get("result")
                if result not in (AIReviewResult.OK, AIReviewResult.NEEDS_IMPROVEMENT):
                    result = AIReviewResult.NEEDS_IMPROVEMENT
                results.append({"email_id": email["id"], "result": result,
                                "feedback": verdict.get("feedback", "")})
            except Exception as e:
                logger.warning(f"ai_review_failed: email={email['id'][:8]}... error={e}")
                results.append({"email_id": email["id"], "result": AIReviewResult.ERROR, "feedback": str(e)})
        return results
