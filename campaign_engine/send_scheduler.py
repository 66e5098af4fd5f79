"""
Send scheduler: assigns send times to approved emails under the
organization's daily cap, and pauses / resumes / cancels a session's jobs.

Slots are found by walking forward from "now" in the organization's
timezone: skip days that are closed or already full, snap into the day's
window, take the slot, then advance by a random gap in
[min_gap, max_gap] minutes. Each slot is reserved in the per-day counter
before its job row is written; the counter's ``$lt cap`` guard is what
keeps concurrent schedulers from over-packing a day.
"""

import logging
import random
from collections import Counter
from datetime import datetime, time, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import pytz

import config
from campaign_engine.errors import CapacityExceededError, InvalidStateError, ValidationError, ensure_owned
from campaign_engine.events import ChangeNotifier, EventKind
from campaign_engine.schedule_config import ScheduleConfig, ScheduleConfigStore
from database import (
    CampaignSession,
    DailySendCounter,
    EmailSendJob,
    GeneratedEmail,
    JobStatus,
    ReviewStatus,
    SendStatus,
    SessionStatus,
    to_object_id,
    utcnow,
)

logger = logging.getLogger("campaigns.send_scheduler")

SEND_TYPES = ("all", "unsent")
ELIGIBLE_SEND_STATUSES = {
    "unsent": [None, SendStatus.PENDING],
    "all": [None, SendStatus.PENDING, SendStatus.FAILED, SendStatus.CANCELLED],
}


def js_weekday(moment: datetime) -> int:
    """0=Sunday ... 6=Saturday"""
    return (moment.weekday() + 1) % 7


class SlotPlanner:
    """
    Hands out reserved send slots for one organization, one at a time.
    Slots come back as naive UTC datetimes plus the local day key they
    count against.
    """

    def __init__(self, cfg: ScheduleConfig, organization_id: str, now: datetime,
                 rng: random.Random = None, horizon_days: int = None):
        self.cfg = cfg
        self.organization_id = organization_id
        self.tz = cfg.tz
        self.rng = rng or random.Random()
        self.cursor = pytz.utc.localize(now.replace(microsecond=0))
        self.horizon_days = horizon_days or config.SCHEDULING_HORIZON_DAYS
        self.horizon_end = self.cursor + timedelta(days=self.horizon_days)
        self._counts: Dict[str, int] = {}
        self._full = set()
        self.per_day = Counter()

    def _day_count(self, day: str) -> int:
        if day not in self._counts:
            self._counts[day] = DailySendCounter.get_count(self.organization_id, day)
        return self._counts[day]

    def _local_at(self, day, minute_of_day: int) -> datetime:
        naive = datetime.combine(day, time(minute_of_day // 60, minute_of_day % 60))
        return self.tz.localize(naive).astimezone(pytz.utc)

    def _next_day(self, local: datetime) -> datetime:
        return self._local_at(local.date() + timedelta(days=1), 0)

    def next_slot(self) -> Tuple[datetime, str]:
        cap = self.cfg.daily_limit
        while True:
            if self.cursor > self.horizon_end:
                raise CapacityExceededError(
                    f"no sending slot left within the {self.horizon_days}-day "
                    f"scheduling horizon for organization {self.organization_id}"
                )

            local = self.cursor.astimezone(self.tz)
            day = local.date().isoformat()
            window = self.cfg.window_for(js_weekday(local))
            if window is None or day in self._full:
                self.cursor = self._next_day(local)
                continue

            start_minute, end_minute = window
            minute_of_day = local.hour * 60 + local.minute
            if minute_of_day < start_minute:
                self.cursor = self._local_at(local.date(), start_minute)
                continue
            if minute_of_day >= end_minute:
                self.cursor = self._next_day(local)
                continue

            if self._day_count(day) >= cap:
                self._full.add(day)
                self.cursor = self._next_day(local)
                continue

            if not DailySendCounter.try_reserve(self.organization_id, day, cap):
                # another scheduler took the last slots; re-read and move on
                self._counts[day] = DailySendCounter.get_count(self.organization_id, day)
                if self._counts[day] < cap:
                    continue
                self._full.add(day)
                self.cursor = self._next_day(local)
                continue

            self._counts[day] += 1
            self.per_day[day] += 1
            slot = self.cursor
            gap = self.rng.uniform(self.cfg.min_gap_minutes, self.cfg.max_gap_minutes)
            self.cursor = self.cursor + timedelta(minutes=gap)
            return slot.replace(tzinfo=None), day


def job_view(job: Dict) -> Dict:
    view = {k: v for k, v in job.items() if k not in ("_id", "email_id", "session_id")}
    view["id"] = str(job["_id"])
    view["email_id"] = str(job["email_id"])
    view["session_id"] = str(job["session_id"])
    return view


class SendScheduler:
    def __init__(
        self,
        config_store: Optional[ScheduleConfigStore] = None,
        notifier: Optional[ChangeNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random = None,
        horizon_days: int = None,
    ):
        self.config_store = config_store or ScheduleConfigStore()
        self.notifier = notifier or ChangeNotifier()
        self.clock = clock
        self.rng = rng or random.Random()
        self.horizon_days = horizon_days or config.SCHEDULING_HORIZON_DAYS

    def _load_session(self, organization_id: str, session_id: str) -> Dict:
        return ensure_owned(CampaignSession.get(session_id), organization_id, "campaign session")

    def _planner(self, session: Dict, start: datetime = None) -> SlotPlanner:
        cfg = self.config_store.effective(session["organization_id"], session.get("schedule_config"))
        return SlotPlanner(cfg, session["organization_id"], start or self.clock(),
                           rng=self.rng, horizon_days=self.horizon_days)

    def get_daily_email_count(self, organization_id: str, day: str) -> int:
        return DailySendCounter.get_count(organization_id, day)

    # ── Scheduling ───────────────────────────────────────────────────

    def schedule_session(self, organization_id: str, session_id: str, send_type: str = "all") -> Dict:
        """
        Create one send job per eligible approved email. All or nothing:
        if the horizon runs out, every slot reserved by this call is
        released and CapacityExceededError is raised.
        """
        if send_type not in SEND_TYPES:
            raise ValidationError(f"send_type must be one of {', '.join(SEND_TYPES)}")
        session = self._load_session(organization_id, session_id)
        if session["status"] != SessionStatus.READY_TO_SEND:
            raise InvalidStateError(f"cannot schedule a session in status {session['status']}")

        eligible = ELIGIBLE_SEND_STATUSES[send_type]
        candidates = GeneratedEmail.list_for_session(session_id, {
            "status": ReviewStatus.APPROVED,
            "is_sent": False,
            "send_status": {"$in": eligible},
        })
        previous = {e["id"]: e.get("send_status") for e in candidates}
        claimed = [e for e in candidates if GeneratedEmail.claim_for_scheduling(e["_id"], eligible)]
        if not claimed:
            return {"scheduled": 0, "per_day": {}, "first_send_time": None, "last_send_time": None}

        planner = self._planner(session)
        slots: List[Tuple[Dict, datetime, str]] = []
        try:
            for email in claimed:
                slot, day = planner.next_slot()
                slots.append((email, slot, day))
        except CapacityExceededError as e:
            for _, _, day in slots:
                DailySendCounter.release(organization_id, day)
            for email in claimed:
                GeneratedEmail.set_send_state(email["_id"], previous[email["id"]] or SendStatus.PENDING)
            logger.warning(
                f"schedule_capacity_exceeded: session={session_id[:8]}... "
                f"placed={len(slots)} of {len(claimed)}"
            )
            raise CapacityExceededError(str(e), unscheduled=len(claimed) - len(slots))

        for email, slot, day in slots:
            job_id = EmailSendJob.create(email["id"], session_id, organization_id, slot, day)
            GeneratedEmail.set_send_state(
                email["_id"], SendStatus.SCHEDULED,
                send_job_id=to_object_id(job_id), scheduled_send_time=slot,
            )

        summary = {
            "scheduled": len(slots),
            "per_day": dict(planner.per_day),
            "first_send_time": slots[0][1],
            "last_send_time": slots[-1][1],
        }
        logger.info(
            f"session_scheduled: {session_id[:8]}... jobs={len(slots)} days={len(planner.per_day)} "
            f"first={summary['first_send_time']:%Y-%m-%d %H:%M}"
        )
        self.notifier.publish(session_id, organization_id, EventKind.SCHEDULE_CHANGED,
                              action="scheduled", count=len(slots))
        return summary

    # ── Pause / resume / cancel ──────────────────────────────────────

    def pause(self, organization_id: str, session_id: str) -> int:
        self._load_session(organization_id, session_id)
        paused = 0
        for job in EmailSendJob.list_for_session(session_id, [JobStatus.SCHEDULED]):
            if EmailSendJob.transition(job["_id"], [JobStatus.SCHEDULED], JobStatus.PAUSED):
                GeneratedEmail.set_send_state(job["email_id"], SendStatus.PAUSED)
                paused += 1
        logger.info(f"session_paused: {session_id[:8]}... jobs={paused}")
        self.notifier.publish(session_id, organization_id, EventKind.SCHEDULE_CHANGED, action="paused", count=paused)
        return paused

    def resume(self, organization_id: str, session_id: str) -> int:
        """
        paused -> scheduled. Jobs whose slot has passed, or whose day is now
        over the cap, get a fresh slot; the rest keep their time.
        """
        session = self._load_session(organization_id, session_id)
        now = self.clock()
        planner = None
        resumed = 0

        for job in EmailSendJob.list_for_session(session_id, [JobStatus.PAUSED]):
            set_fields = {}
            if planner is None:
                planner = self._planner(session, now)
            over_cap = DailySendCounter.get_count(organization_id, job["scheduled_day"]) > planner.cfg.daily_limit
            if job["scheduled_time"] <= now or over_cap:
                try:
                    slot, day = planner.next_slot()
                except CapacityExceededError as e:
                    self.notifier.publish(session_id, organization_id, EventKind.SCHEDULE_CHANGED,
                                          action="resumed", count=resumed)
                    raise CapacityExceededError(str(e), unscheduled=len(
                        EmailSendJob.list_for_session(session_id, [JobStatus.PAUSED])))
                DailySendCounter.release(organization_id, job["scheduled_day"])
                set_fields = {"scheduled_time": slot, "scheduled_day": day}

            updated = EmailSendJob.transition(job["_id"], [JobStatus.PAUSED], JobStatus.SCHEDULED, set_fields=set_fields)
            if updated is None:
                if set_fields:
                    DailySendCounter.release(organization_id, set_fields["scheduled_day"])
                continue
            GeneratedEmail.set_send_state(job["email_id"], SendStatus.SCHEDULED,
                                          scheduled_send_time=updated["scheduled_time"])
            resumed += 1

        logger.info(f"session_resumed: {session_id[:8]}... jobs={resumed}")
        self.notifier.publish(session_id, organization_id, EventKind.SCHEDULE_CHANGED, action="resumed", count=resumed)
        return resumed

    def cancel(self, organization_id: str, session_id: str) -> int:
        """scheduled/paused -> cancelled. Sent jobs are left alone."""
        self._load_session(organization_id, session_id)
        cancelled = 0
        for job in EmailSendJob.list_for_session(session_id, [JobStatus.SCHEDULED, JobStatus.PAUSED]):
            if EmailSendJob.transition(job["_id"], [JobStatus.SCHEDULED, JobStatus.PAUSED], JobStatus.CANCELLED):
                DailySendCounter.release(organization_id, job["scheduled_day"])
                GeneratedEmail.set_send_state(job["email_id"], SendStatus.CANCELLED,
                                              send_job_id=None, scheduled_send_time=None)
                cancelled += 1
        logger.info(f"session_send_cancelled: {session_id[:8]}... jobs={cancelled}")
        self.notifier.publish(session_id, organization_id, EventKind.SCHEDULE_CHANGED, action="cancelled", count=cancelled)
        return cancelled

    # ── Rescheduling ─────────────────────────────────────────────────

    def reschedule_job(self, job: Dict, earliest: datetime, error: str = None) -> Optional[Dict]:
        """
        After a failed attempt, move a claimed (sending) job back to
        scheduled at the first free slot from ``earliest``, counting the
        attempt. Returns None when no slot is left.
        """
        session = CampaignSession.get(str(job["session_id"]))
        if session is None:
            return None
        planner = self._planner(session, earliest)
        try:
            slot, day = planner.next_slot()
        except CapacityExceededError:
            return None

        updated = EmailSendJob.transition(
            job["_id"], [JobStatus.SENDING], JobStatus.SCHEDULED,
            set_fields={"scheduled_time": slot, "scheduled_day": day, "claimed_at": None, "last_error": error},
            inc_fields={"attempt_count": 1},
        )
        if updated is None:
            DailySendCounter.release(job["organization_id"], day)
            return None
        DailySendCounter.release(job["organization_id"], job["scheduled_day"])
        GeneratedEmail.set_send_state(job["email_id"], SendStatus.SCHEDULED, scheduled_send_time=slot, send_error=error)
        return updated

    def reschedule_organization(self, organization_id: str) -> int:
        """
        Re-plan every scheduled job of an organization under its current
        policy. All of the jobs' reservations are given back first, so the
        planners see each day's real free capacity.
        """
        jobs = EmailSendJob.list_for_organization(organization_id, [JobStatus.SCHEDULED])
        sessions = {}
        for job in jobs:
            session_id = str(job["session_id"])
            if session_id not in sessions:
                sessions[session_id] = CampaignSession.get(session_id)
        jobs = [job for job in jobs if sessions[str(job["session_id"])] is not None]
        for job in jobs:
            DailySendCounter.release(organization_id, job["scheduled_day"])

        planners: Dict[str, SlotPlanner] = {}
        moved = 0
        for job in jobs:
            session_id = str(job["session_id"])
            if session_id not in planners:
                planners[session_id] = self._planner(sessions[session_id])
            try:
                slot, day = planners[session_id].next_slot()
            except CapacityExceededError:
                DailySendCounter.restore(organization_id, job["scheduled_day"])
                EmailSendJob.transition(job["_id"], [JobStatus.SCHEDULED], JobStatus.PAUSED,
                                        set_fields={"last_error": "no capacity under the new schedule"})
                GeneratedEmail.set_send_state(job["email_id"], SendStatus.PAUSED)
                continue
            if EmailSendJob.transition(job["_id"], [JobStatus.SCHEDULED], JobStatus.SCHEDULED,
                                       set_fields={"scheduled_time": slot, "scheduled_day": day}):
                GeneratedEmail.set_send_state(job["email_id"], SendStatus.SCHEDULED, scheduled_send_time=slot)
                moved += 1
            else:
                DailySendCounter.release(organization_id, day)
                DailySendCounter.restore(organization_id, job["scheduled_day"])
        logger.info(f"organization_rescheduled: org={organization_id} jobs={moved}/{len(jobs)}")
        return moved

    def update_schedule_config(self, organization_id: str, patch: Dict,
                               reschedule_existing: bool = False) -> Dict:
        cfg = self.config_store.update(organization_id, patch)
        rescheduled = self.reschedule_organization(organization_id) if reschedule_existing else 0
        self.notifier.publish(None, organization_id, EventKind.CONFIG_UPDATED,
                              fields=sorted(patch), rescheduled=rescheduled)
        return {"config": cfg.to_dict(), "rescheduled": rescheduled}

    # ── Reads ────────────────────────────────────────────────────────

    def get_campaign_schedule(self, organization_id: str, session_id: str) -> Dict:
        self._load_session(organization_id, session_id)
        jobs = EmailSendJob.list_for_session(session_id)
        counts = Counter(job["status"] for job in jobs)
        upcoming = [j["scheduled_time"] for j in jobs if j["status"] == JobStatus.SCHEDULED]
        sent_times = [j["actual_send_time"] for j in jobs if j.get("actual_send_time")]
        return {
            "jobs": [job_view(j) for j in jobs],
            "stats": {
                "total": len(jobs),
                **{status: counts.get(status, 0) for status in
                   (JobStatus.SCHEDULED, JobStatus.PAUSED, JobStatus.SENDING,
                    JobStatus.SENT, JobStatus.FAILED, JobStatus.CANCELLED)},
            },
            "next_scheduled_time": min(upcoming) if upcoming else None,
            "last_sent_time": max(sent_times) if sent_times else None,
        }
