"""
In-memory collaborators shared by the test modules: a mongomock database,
a scripted generation provider, a donor directory, a mail transport and a
flow planner.
"""

import asyncio
from datetime import datetime
from typing import Dict, List

import mongomock

import database
from campaign_engine.errors import DispatchFailure
from campaign_engine.providers import DonorDirectory, GeneratedContent, GenerationProvider

ORG = "org-1"
OTHER_ORG = "org-2"

# Monday 2024-06-03 09:00 in America/New_York
MONDAY_9AM_UTC = datetime(2024, 6, 3, 13, 0)


def fresh_database():
    db = mongomock.MongoClient().db
    database.use_database(db)
    return db


def make_donors(count: int, organization_id: str = ORG, start: int = 1) -> List[Dict]:
    return [
        {
            "donor_id": i,
            "organization_id": organization_id,
            "first_name": f"Donor{i}",
            "last_name": "Smith",
            "email": f"donor{i}@example.org",
            "notes": "Gave to the spring appeal",
        }
        for i in range(start, start + count)
    ]


class FakeDirectory(DonorDirectory):
    def __init__(self, donors: List[Dict]):
        self.donors = donors

    def get_donors_by_ids(self, donor_ids, organization_id):
        wanted = set(donor_ids)
        return [d for d in self.donors if d["donor_id"] in wanted and d["organization_id"] == organization_id]


class FakeProvider(GenerationProvider):
    """Fails for donors in ``fail_for``; sleeps for donors in ``slow_for``."""

    def __init__(self, fail_for=(), slow_for=(), delay: float = 0.0):
        self.fail_for = set(fail_for)
        self.slow_for = set(slow_for)
        self.delay = delay
        self.calls: List = []
        self.refine_calls: List = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, prompt, donor_context):
        donor_id = donor_context["donor_id"]
        self.calls.append(donor_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if donor_id in self.slow_for:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            if donor_id in self.fail_for:
                raise RuntimeError("provider unavailable (503)")
            return GeneratedContent(
                subject=f"Thank you, {donor_context['first_name']}",
                structured_content=[
                    {"piece": f"Dear {donor_context['first_name']},", "references": [], "add_newline_after": True},
                    {"piece": prompt, "references": ["instruction"], "add_newline_after": False},
                ],
                reference_contexts={"instruction": "campaign instruction"},
            )
        finally:
            self.in_flight -= 1

    async def refine(self, existing, instruction, donor_context):
        self.refine_calls.append((existing["id"], instruction))
        return GeneratedContent(
            subject=f"{existing['subject']} (revised)",
            structured_content=[{"piece": instruction, "references": [], "add_newline_after": False}],
        )


class FakeTransport:
    """Records sends; fails the first ``fail_times`` calls."""

    def __init__(self, fail_times: int = 0, hang: bool = False):
        self.fail_times = fail_times
        self.hang = hang
        self.sent: List = []
        self.attempts = 0

    async def send(self, email):
        self.attempts += 1
        if self.hang:
            await asyncio.sleep(3600)
        if self.attempts <= self.fail_times:
            raise DispatchFailure("421 service not available", code=421)
        self.sent.append(email)
        return {"message_id": f"<msg-{len(self.sent)}@example.org>"}


class FakePlanner:
    """Returns queued plans in order; the last one repeats."""

    def __init__(self, plans: List[Dict], final: Dict = None, gate: asyncio.Event = None):
        self.plans = list(plans)
        self.final = final or {
            "final_prompt": "Thank donors for the spring appeal and mention the new clinic.",
            "summary": "A warm thank-you email.",
            "estimated_complexity": "low",
        }
        self.gate = gate
        self.seen: List[List[Dict]] = []

    async def plan(self, context, conversation):
        self.seen.append(list(conversation))
        if self.gate is not None:
            await self.gate.wait()
        if len(self.plans) > 1:
            return self.plans.pop(0)
        return self.plans[0]

    async def finalize(self, context, conversation):
        return self.final


QUESTION_PLAN = {
    "needs_clarification": True,
    "questions": ["Which program should the email highlight?"],
    "conflicts_with_best_practices": False,
    "best_practice_issues": [],
    "suggested_prompt": "",
    "reasoning": "The instruction does not say which program to mention.",
    "can_proceed": False,
}

CONFIRM_PLAN = {
    "needs_clarification": False,
    "questions": [],
    "conflicts_with_best_practices": False,
    "best_practice_issues": [],
    "suggested_prompt": "Thank donors for the spring appeal and mention the new clinic.",
    "reasoning": "A thank-you email mentioning the clinic.",
    "can_proceed": True,
}


def approved_session(count: int, organization_id: str = ORG, status: str = "READY_TO_SEND", start: int = 1):
    """A session holding ``count`` approved, unsent emails. Returns (session_id, email_ids)."""
    from database import CampaignSession, GeneratedEmail

    donor_ids = list(range(start, start + count))
    session_id = CampaignSession.create(organization_id, "user-1", "job", "Thank donors", donor_ids, status=status)
    email_ids = []
    for donor_id in donor_ids:
        saved = GeneratedEmail.upsert_generated(
            session_id, organization_id, donor_id, f"Thank you {donor_id}",
            [{"piece": "Thank you for your gift.", "references": [], "add_newline_after": False}], 2,
            to_email=f"donor{donor_id}@example.org", to_name=f"Donor {donor_id}",
        )
        email_ids.append(saved["id"])
    GeneratedEmail.set_review_status(email_ids, "APPROVED")
    return session_id, email_ids
