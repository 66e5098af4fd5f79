"""
Generation coordinator: one independent generation attempt per donor.

Attempts run on a bounded pool (an asyncio.Semaphore sized by
GENERATION_CONCURRENCY). Each attempt carries its own timeout; a timeout
or provider error is recorded against that donor and never stops the
others. Results land in generated_emails through an upsert keyed on
(session, donor), so running the same donor twice overwrites rather than
duplicates.

Cancellation is cooperative: an attempt checks that the session is still
GENERATING before it starts. Attempts already in flight are allowed to
finish.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import config
from campaign_engine.content import CONTENT_VERSION, normalize_structured_content
from campaign_engine.errors import GenerationFailure
from campaign_engine.events import ChangeNotifier, EventKind
from campaign_engine.providers import DonorDirectory, GenerationProvider
from database import CampaignSession, GeneratedEmail, ReviewStatus, SessionStatus

logger = logging.getLogger("campaigns.generation")

GENERATED_STATUSES = (ReviewStatus.PENDING_APPROVAL, ReviewStatus.APPROVED)


@dataclass
class BatchResult:
    session_id: str
    attempted: List[Any] = field(default_factory=list)
    succeeded: List[Any] = field(default_factory=list)
    failures: Dict[Any, str] = field(default_factory=dict)
    skipped: List[Any] = field(default_factory=list)
    completed_donors: int = 0

    @property
    def all_failed(self) -> bool:
        return bool(self.failures) and not self.succeeded


def summarize_failures(failures: Dict[Any, str], total: int) -> Optional[str]:
    """Human-readable rollup of per-donor failures, None when there are none."""
    if not failures:
        return None
    shown = list(failures.items())[:10]
    details = "; ".join(f"donor {donor_id}: {reason}" for donor_id, reason in shown)
    more = f" (+{len(failures) - len(shown)} more)" if len(failures) > len(shown) else ""
    return f"Generation failed for {len(failures)} of {total} donors: {details}{more}"


class GenerationCoordinator:
    def __init__(
        self,
        provider: GenerationProvider,
        donor_directory: DonorDirectory,
        notifier: Optional[ChangeNotifier] = None,
        concurrency: int = None,
        timeout_seconds: float = None,
    ):
        self.provider = provider
        self.donor_directory = donor_directory
        self.notifier = notifier or ChangeNotifier()
        self.concurrency = concurrency or config.GENERATION_CONCURRENCY
        self.timeout_seconds = timeout_seconds or config.GENERATION_TIMEOUT_SECONDS

    async def run_batch(self, session_id: str, donor_ids: List[Any]) -> BatchResult:
        session = CampaignSession.get(session_id)
        if session is None:
            raise ValueError(f"session {session_id} does not exist")

        organization_id = session["organization_id"]
        prompt = session.get("refined_instruction") or session["instruction"]
        result = BatchResult(session_id=session_id, attempted=list(donor_ids))

        donors = {
            d["donor_id"]: d
            for d in self.donor_directory.get_donors_by_ids(list(donor_ids), organization_id)
        }
        logger.info(
            f"batch_started: session={session_id[:8]}... donors={len(donor_ids)} "
            f"found={len(donors)} concurrency={self.concurrency}"
        )

        semaphore = asyncio.Semaphore(self.concurrency)
        outcomes = await asyncio.gather(
            *(self._attempt(session, donor_id, donors.get(donor_id), prompt, semaphore)
              for donor_id in donor_ids),
            return_exceptions=True,
        )

        for donor_id, outcome in zip(donor_ids, outcomes):
            if isinstance(outcome, GenerationFailure):
                result.failures[donor_id] = outcome.reason
            elif isinstance(outcome, BaseException):
                result.failures[donor_id] = f"unexpected error: {outcome}"
            elif outcome == "skipped":
                result.skipped.append(donor_id)
            else:
                result.succeeded.append(donor_id)

        result.completed_donors = self._reconcile(session, result)
        logger.info(
            f"batch_drained: session={session_id[:8]}... ok={len(result.succeeded)} "
            f"failed={len(result.failures)} skipped={len(result.skipped)} "
            f"completed={result.completed_donors}/{session['total_donors']}"
        )
        if result.succeeded:
            self.notifier.publish(
                session_id, organization_id, EventKind.EMAILS_GENERATED,
                count=len(result.succeeded), completed_donors=result.completed_donors,
            )
        return result

    async def _attempt(self, session: Dict, donor_id: Any, donor: Optional[Dict],
                       prompt: str, semaphore: asyncio.Semaphore) -> str:
        session_id = session["id"]
        async with semaphore:
            current = CampaignSession.get(session_id)
            if current is None or current["status"] != SessionStatus.GENERATING:
                logger.info(f"attempt_skipped: session={session_id[:8]}... donor={donor_id} (no longer generating)")
                return "skipped"

            if donor is None:
                raise GenerationFailure(donor_id, "donor not found in organization")

            try:
                content = await asyncio.wait_for(
                    self.provider.generate(prompt, donor), timeout=self.timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.warning(f"generation_timeout: session={session_id[:8]}... donor={donor_id}")
                raise GenerationFailure(donor_id, f"timed out after {self.timeout_seconds:g}s")
            except Exception as e:
                logger.warning(f"generation_failed: session={session_id[:8]}... donor={donor_id} error={e}")
                raise GenerationFailure(donor_id, str(e) or e.__class__.__name__)

            try:
                pieces = normalize_structured_content(content.structured_content)
            except Exception as e:
                raise GenerationFailure(donor_id, f"malformed content: {e}")

            saved = GeneratedEmail.upsert_generated(
                session_id=session_id,
                organization_id=session["organization_id"],
                donor_id=donor_id,
                subject=content.subject,
                structured_content=pieces,
                content_version=CONTENT_VERSION,
                to_email=donor.get("email"),
                to_name=_donor_display_name(donor),
                reference_contexts=content.reference_contexts,
            )
            logger.info(
                f"email_generated: session={session_id[:8]}... donor={donor_id} "
                f"email={saved['id'][:8]}... new={saved['created']}"
            )
            return "created" if saved["created"] else "updated"

    def _reconcile(self, session: Dict, result: BatchResult) -> int:
        """
        Recount donors holding a generated email and raise the session
        counter to match. ``$max`` keeps the write atomic and monotonic
        under concurrent batches.
        """
        session_id = session["id"]
        selected = set(session["selected_donor_ids"])
        generated = GeneratedEmail.donor_ids_with_status(session_id, GENERATED_STATUSES)
        count = min(len(generated & selected), session["total_donors"])

        updated = CampaignSession.raise_completed_donors(session_id, count)
        # a cancelled session keeps its own message
        CampaignSession.transition(
            session_id, [SessionStatus.GENERATING], SessionStatus.GENERATING,
            set_fields={"error_message": summarize_failures(result.failures, len(result.attempted))},
        )
        return updated["completed_donors"] if updated else count


def _donor_display_name(donor: Dict) -> Optional[str]:
    name = donor.get("display_name") or f"{donor.get('first_name') or ''} {donor.get('last_name') or ''}".strip()
    return name or None
