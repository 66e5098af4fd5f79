"""
Send job executor: tick-driven dispatcher for scheduled emails.

Each tick:
- finds jobs with status=scheduled and scheduled_time <= now
- skips organizations that have used up today's sending budget
- claims each job with a status-guarded update (scheduled -> sending), so
  two ticks (or two processes) never send the same job twice
- dispatches through the mail transport with an explicit timeout
- on success marks the job sent and the email isSent/sentAt
- on failure retries later (attempt_count < max) or marks the job failed

The default transport is SMTP via aiosmtplib, one fresh connection per
message.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Callable, Dict, Optional

import aiosmtplib
import pytz

import config
from campaign_engine.content import migrate_email_document, render_plain_text, text_to_html
from campaign_engine.errors import DispatchFailure
from campaign_engine.events import ChangeNotifier, EventKind
from campaign_engine.schedule_config import ScheduleConfigStore
from campaign_engine.send_scheduler import SendScheduler
from database import (
    DailySendCounter,
    EmailSendJob,
    GeneratedEmail,
    JobStatus,
    SendStatus,
    utcnow,
)

logger = logging.getLogger("campaigns.send_worker")


@dataclass
class OutgoingEmail:
    to_email: str
    subject: str
    text_body: str
    html_body: str
    to_name: Optional[str] = None


class MailTransport:
    """Delivers one message. Returns ``{"message_id": ...}`` or raises DispatchFailure."""

    async def send(self, email: OutgoingEmail) -> Dict:
        raise NotImplementedError


class SmtpMailTransport(MailTransport):
    def __init__(
        self,
        host: str = None,
        port: int = None,
        username: str = None,
        password: str = None,
        from_email: str = None,
        from_name: str = None,
        reply_to: str = None,
        start_tls: bool = None,
        timeout: float = None,
    ):
        self.host = host or config.SMTP_HOST
        self.port = port or config.SMTP_PORT
        self.username = username if username is not None else config.SMTP_USERNAME
        self.password = password if password is not None else config.SMTP_PASSWORD
        self.from_email = from_email or config.FROM_EMAIL
        self.from_name = from_name if from_name is not None else config.FROM_NAME
        self.reply_to = reply_to or config.REPLY_TO
        self.start_tls = config.SMTP_START_TLS if start_tls is None else start_tls
        self.timeout = timeout or config.SEND_TIMEOUT_SECONDS

    def build_message(self, email: OutgoingEmail) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(email.text_body, "plain"))
        msg.attach(MIMEText(email.html_body, "html"))

        domain = self.from_email.split("@")[1] if "@" in self.from_email else None
        msg["Message-ID"] = make_msgid(domain=domain)
        msg["Subject"] = email.subject
        msg["From"] = formataddr((self.from_name, self.from_email)) if self.from_name else self.from_email
        msg["To"] = formataddr((email.to_name, email.to_email)) if email.to_name else email.to_email
        if self.reply_to:
            msg["Reply-To"] = self.reply_to
        return msg

    async def send(self, email: OutgoingEmail) -> Dict:
        msg = self.build_message(email)
        message_id = msg["Message-ID"]

        try:
            smtp = aiosmtplib.SMTP(
                hostname=self.host,
                port=self.port,
                timeout=self.timeout,
                start_tls=self.start_tls,
            )
            await smtp.connect()
            if self.username:
                await smtp.login(self.username, self.password)
            await smtp.sendmail(self.from_email, [email.to_email], msg.as_string())
            await smtp.quit()

        except aiosmtplib.SMTPException as e:
            code = getattr(e, "code", None)
            logger.error(
                "smtp_error",
                extra={"to": email.to_email, "error_code": code, "error": str(e)[:200]},
            )
            raise DispatchFailure(f"SMTP error sending to {email.to_email}: {e}", code=code)

        except (asyncio.TimeoutError, OSError) as e:
            raise DispatchFailure(f"Connection error sending to {email.to_email}: {e}")

        logger.info("smtp_transmitted", extra={"to": email.to_email, "message_id": message_id[:40]})
        return {"message_id": message_id}


@dataclass
class TickResult:
    due: int = 0
    claimed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    by_organization: Dict[str, int] = field(default_factory=dict)


class SendJobExecutor:
    """
    Lifecycle:
        executor = SendJobExecutor(transport, scheduler, campaigns)
        await executor.tick()   # called periodically by the runner
    """

    def __init__(
        self,
        transport: MailTransport,
        scheduler: SendScheduler,
        campaigns=None,
        notifier: Optional[ChangeNotifier] = None,
        config_store: Optional[ScheduleConfigStore] = None,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = None,
        retry_delay_minutes: int = None,
        send_timeout: float = None,
        batch_size: int = None,
    ):
        self.transport = transport
        self.scheduler = scheduler
        self.campaigns = campaigns
        self.notifier = notifier or scheduler.notifier
        self.config_store = config_store or scheduler.config_store
        self.clock = clock
        self.max_attempts = max_attempts or config.SEND_MAX_ATTEMPTS
        self.retry_delay = timedelta(minutes=retry_delay_minutes or config.SEND_RETRY_DELAY_MINUTES)
        self.send_timeout = send_timeout or config.SEND_TIMEOUT_SECONDS
        self.batch_size = batch_size or config.EXECUTOR_BATCH_SIZE
        self._shutdown = asyncio.Event()
        self._in_flight_job_id: Optional[str] = None

    def request_shutdown(self):
        """Stop claiming new jobs after the current dispatch."""
        self._shutdown.set()

    def remaining_budget(self, organization_id: str, now: datetime) -> int:
        """Daily cap minus jobs already sent today (organization's local day)."""
        cfg = self.config_store.get(organization_id)
        tz = cfg.tz
        local_day = pytz.utc.localize(now).astimezone(tz).date()
        start = tz.localize(datetime.combine(local_day, time(0, 0))).astimezone(pytz.utc).replace(tzinfo=None)
        end = tz.localize(datetime.combine(local_day + timedelta(days=1), time(0, 0))).astimezone(pytz.utc).replace(tzinfo=None)
        return cfg.daily_limit - EmailSendJob.count_sent_between(organization_id, start, end)

    async def tick(self) -> TickResult:
        now = self.clock()
        result = TickResult()
        due = EmailSendJob.find_due(now, self.batch_size)
        result.due = len(due)
        budgets: Dict[str, int] = {}

        for job in due:
            if self._shutdown.is_set():
                break
            org = job["organization_id"]
            if org not in budgets:
                budgets[org] = self.remaining_budget(org, now)
            if budgets[org] <= 0:
                result.deferred += 1
                continue

            claimed = EmailSendJob.claim(job["_id"], now)
            if claimed is None:
                continue
            budgets[org] -= 1
            result.claimed += 1
            result.by_organization[org] = result.by_organization.get(org, 0) + 1

            self._in_flight_job_id = claimed["id"]
            try:
                outcome = await self._dispatch(claimed)
            finally:
                self._in_flight_job_id = None
            setattr(result, outcome, getattr(result, outcome) + 1)

        if result.due:
            logger.info(
                f"tick: due={result.due} claimed={result.claimed} sent={result.sent} "
                f"retried={result.retried} failed={result.failed} deferred={result.deferred}"
            )
        return result

    async def _dispatch(self, job: Dict) -> str:
        job_id = job["id"]
        email = GeneratedEmail.get(str(job["email_id"]))

        if email is None or email.get("is_sent") or email.get("send_status") == SendStatus.CANCELLED:
            reason = "email missing" if email is None else "email already sent or cancelled"
            if EmailSendJob.transition(job["_id"], [JobStatus.SENDING], JobStatus.CANCELLED,
                                       set_fields={"last_error": reason}):
                DailySendCounter.release(job["organization_id"], job["scheduled_day"])
            logger.info(f"job_skipped: {job_id[:8]}... {reason}")
            return "skipped"

        if not email.get("to_email"):
            self._fail(job, "donor has no email address")
            return "failed"

        email = migrate_email_document(email)
        text_body = render_plain_text(email["structured_content"])
        outgoing = OutgoingEmail(
            to_email=email["to_email"],
            to_name=email.get("to_name"),
            subject=email.get("subject", ""),
            text_body=text_body,
            html_body=text_to_html(text_body),
        )
        GeneratedEmail.set_send_state(email["_id"], SendStatus.SENDING)

        try:
            sent = await asyncio.wait_for(self.transport.send(outgoing), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            return self._handle_failure(job, f"dispatch timed out after {self.send_timeout:g}s")
        except DispatchFailure as e:
            return self._handle_failure(job, str(e))
        except Exception as e:
            logger.error(f"dispatch_error: job={job_id[:8]}... {e}", exc_info=True)
            return self._handle_failure(job, f"unexpected error: {e}")

        sent_at = self.clock()
        EmailSendJob.transition(
            job["_id"], [JobStatus.SENDING], JobStatus.SENT,
            set_fields={
                "actual_send_time": sent_at,
                "dispatch_id": (sent or {}).get("message_id"),
                "last_error": None,
                "claimed_at": None,
            },
            inc_fields={"attempt_count": 1},
        )
        GeneratedEmail.mark_sent(email["_id"], sent_at)
        logger.info(
            "email_sent",
            extra={"job_id": job_id, "to": email["to_email"], "session_id": str(job["session_id"])},
        )
        self.notifier.publish(str(job["session_id"]), job["organization_id"], EventKind.EMAIL_SENT,
                              job_id=job_id, email_id=email["id"])
        self._after_job(job)
        return "sent"

    def _handle_failure(self, job: Dict, error: str) -> str:
        attempts = job.get("attempt_count", 0) + 1
        if attempts < self.max_attempts:
            retried = self.scheduler.reschedule_job(job, self.clock() + self.retry_delay, error)
            if retried is not None:
                logger.warning(
                    f"send_retry: job={job['id'][:8]}... attempt={attempts}/{self.max_attempts} "
                    f"next={retried['scheduled_time']:%Y-%m-%d %H:%M} error={error}"
                )
                return "retried"
        self._fail(job, error)
        return "failed"

    def _fail(self, job: Dict, error: str):
        updated = EmailSendJob.transition(
            job["_id"], [JobStatus.SENDING], JobStatus.FAILED,
            set_fields={"last_error": error, "claimed_at": None},
            inc_fields={"attempt_count": 1},
        )
        GeneratedEmail.set_send_state(job["email_id"], SendStatus.FAILED, send_error=error)
        attempts = updated["attempt_count"] if updated else job.get("attempt_count", 0) + 1
        logger.error("send_job_failed", extra={"job_id": job["id"], "attempts": attempts, "error": error})
        self.notifier.publish(str(job["session_id"]), job["organization_id"], EventKind.SEND_JOB_FAILED,
                              job_id=job["id"], attempts=attempts, error=error)
        self._after_job(job)

    def _after_job(self, job: Dict):
        if self.campaigns is not None:
            self.campaigns.mark_completed(str(job["session_id"]))

    def release_stale_claims(self, stale_minutes: int = None) -> int:
        """Return jobs stuck in ``sending`` (crashed worker) to ``scheduled``."""
        cutoff = self.clock() - timedelta(minutes=stale_minutes or config.STALE_CLAIM_MINUTES)
        released = 0
        for job in EmailSendJob.find_stale_claims(cutoff):
            if EmailSendJob.transition(job["_id"], [JobStatus.SENDING], JobStatus.SCHEDULED,
                                       set_fields={"claimed_at": None, "last_error": "claim expired"},
                                       extra_filter={"claimed_at": {"$lt": cutoff}}):
                GeneratedEmail.set_send_state(job["email_id"], SendStatus.SCHEDULED)
                released += 1
        if released:
            logger.warning(f"stale_claims_released: {released}")
        return released
