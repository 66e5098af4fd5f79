"""
Unit tests for campaign_engine/campaigns.py

Tests cover:
- Session creation and input validation
- generate_emails state transitions and idempotence
- Partial failure and retry_campaign on the failed subset only
- Cancellation (before and during generation)
- Listing, status reporting and deletion
- Editing drafts, regenerating every email, recovering stuck batches
- Organization isolation
"""

import asyncio
import unittest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tests.fakes import ORG, OTHER_ORG, FakeDirectory, FakeProvider, fresh_database, make_donors


def run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def build_service(provider=None, donors=None, concurrency=2, timeout=1.0):
    from campaign_engine.campaigns import CampaignService
    from campaign_engine.events import ChangeNotifier, EventRecorder
    from campaign_engine.generation import GenerationCoordinator

    notifier = ChangeNotifier()
    recorder = EventRecorder()
    notifier.subscribe(recorder)
    provider = provider or FakeProvider()
    directory = FakeDirectory(donors if donors is not None else make_donors(3))
    coordinator = GenerationCoordinator(provider, directory, notifier, concurrency=concurrency, timeout_seconds=timeout)
    return CampaignService(coordinator, notifier), provider, recorder


class CampaignTestCase(unittest.TestCase):
    def setUp(self):
        self.db = fresh_database()


class TestCreateSession(CampaignTestCase):

    def test_create_draft(self):
        service, _, recorder = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 3])

        self.assertEqual(session["status"], "DRAFT")
        self.assertEqual(session["total_donors"], 3)
        self.assertEqual(session["completed_donors"], 0)
        self.assertIsNone(session["completed_at"])
        self.assertEqual(recorder.kinds(session["id"]), ["session_created"])

    def test_create_launched_is_pending(self):
        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2], launch=True)
        self.assertEqual(session["status"], "PENDING")

    def test_duplicate_donors_collapse(self):
        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 2, 1, 3])
        self.assertEqual(session["selected_donor_ids"], [1, 2, 3])
        self.assertEqual(session["total_donors"], 3)

    def test_empty_donors_rejected_before_write(self):
        from campaign_engine.errors import ValidationError

        service, _, _ = build_service()
        with self.assertRaises(ValidationError):
            service.create_session(ORG, "user-1", "Thank donors", [])
        self.assertEqual(self.db["email_generation_sessions"].count_documents({}), 0)

    def test_blank_instruction_rejected(self):
        from campaign_engine.errors import ValidationError

        service, _, _ = build_service()
        with self.assertRaises(ValidationError):
            service.create_session(ORG, "user-1", "   ", [1])

    def test_preview_donors_must_be_subset(self):
        from campaign_engine.errors import ValidationError

        service, _, _ = build_service()
        with self.assertRaises(ValidationError):
            service.create_session(ORG, "user-1", "Thank donors", [1, 2], preview_donor_ids=[3])

    def test_chat_history_turns_validated(self):
        from campaign_engine.errors import ValidationError

        service, _, _ = build_service()
        session = service.create_session(
            ORG, "user-1", "Thank donors", [1],
            chat_history=[{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
        )
        self.assertEqual([t["role"] for t in session["chat_history"]], ["user", "assistant"])
        self.assertIsNotNone(session["chat_history"][0]["timestamp"])

        with self.assertRaises(ValidationError):
            service.create_session(ORG, "user-1", "Thank donors", [1], chat_history=[{"role": "system", "content": "x"}])


class TestGenerateEmails(CampaignTestCase):

    def test_all_donors_succeed(self):
        service, provider, recorder = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 3])

        result = run_async(service.generate_emails(ORG, session["id"]))

        self.assertEqual(result["status"], "READY_TO_SEND")
        self.assertEqual(result["completed_donors"], 3)
        self.assertFalse(result["generation_running"])
        self.assertEqual(sorted(provider.calls), [1, 2, 3])
        emails = list(self.db["generated_emails"].find())
        self.assertEqual(len(emails), 3)
        self.assertTrue(all(e["status"] == "PENDING_APPROVAL" for e in emails))
        self.assertEqual(emails[0]["to_email"], "donor1@example.org")
        self.assertIn("emails_generated", recorder.kinds(session["id"]))

    def test_generate_on_generating_session_is_noop(self):
        from database import CampaignSession

        service, provider, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 3])
        CampaignSession.transition(session["id"], ["DRAFT"], "GENERATING")

        result = run_async(service.generate_emails(ORG, session["id"]))

        self.assertEqual(result["status"], "GENERATING")
        self.assertEqual(provider.calls, [])
        self.assertEqual(self.db["generated_emails"].count_documents({}), 0)

    def test_concurrent_generate_dispatches_once(self):
        service, provider, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 3])

        async def both():
            return await asyncio.gather(
                service.generate_emails(ORG, session["id"]),
                service.generate_emails(ORG, session["id"]),
            )

        run_async(both())

        self.assertEqual(len(provider.calls), 3)
        self.assertEqual(self.db["generated_emails"].count_documents({}), 3)

    def test_generate_completed_session_rejected(self):
        from campaign_engine.errors import InvalidStateError

        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1])
        run_async(service.generate_emails(ORG, session["id"]))

        with self.assertRaises(InvalidStateError):
            run_async(service.generate_emails(ORG, session["id"]))

    def test_all_donors_fail(self):
        service, _, recorder = build_service(provider=FakeProvider(fail_for={1, 2, 3}))
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 3])

        result = run_async(service.generate_emails(ORG, session["id"]))

        self.assertEqual(result["status"], "FAILED")
        self.assertEqual(result["completed_donors"], 0)
        self.assertIsNotNone(result["completed_at"])
        self.assertIn("3 of 3", result["error_message"])
        self.assertIn("session_failed", recorder.kinds(session["id"]))

    def test_missing_donor_counts_as_failure(self):
        service, _, _ = build_service(donors=make_donors(2))
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 3])

        result = run_async(service.generate_emails(ORG, session["id"]))

        self.assertEqual(result["status"], "GENERATING")
        self.assertEqual(result["completed_donors"], 2)
        self.assertIn("donor 3: donor not found", result["error_message"])


class TestRetryCampaign(CampaignTestCase):

    def test_partial_failure_then_retry_only_failed_donor(self):
        from database import GeneratedEmail

        provider = FakeProvider(fail_for={3})
        service, _, _ = build_service(provider=provider)
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 3])

        result = run_async(service.generate_emails(ORG, session["id"]))
        self.assertEqual(result["status"], "GENERATING")
        self.assertEqual(result["completed_donors"], 2)
        self.assertIn("donor 3", result["error_message"])
        self.assertFalse(result["generation_running"])

        status = service.get_session_status(ORG, session["id"])
        self.assertEqual(status["failed_donors"], 1)

        approved = self.db["generated_emails"].find_one({"donor_id": 1})
        GeneratedEmail.set_review_status([approved["_id"]], "APPROVED")
        approved_before = self.db["generated_emails"].find_one({"donor_id": 1})

        provider.fail_for.clear()
        provider.calls.clear()
        result = run_async(service.retry_campaign(ORG, session["id"]))

        self.assertEqual(provider.calls, [3])
        self.assertEqual(result["status"], "READY_TO_SEND")
        self.assertEqual(result["completed_donors"], 3)
        self.assertIsNone(result["error_message"])
        approved_after = self.db["generated_emails"].find_one({"donor_id": 1})
        self.assertEqual(approved_after["updated_at"], approved_before["updated_at"])
        self.assertEqual(approved_after["status"], "APPROVED")
        self.assertEqual(self.db["generated_emails"].count_documents({}), 3)

    def test_retry_after_total_failure(self):
        provider = FakeProvider(fail_for={1, 2})
        service, _, _ = build_service(provider=provider)
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2])
        run_async(service.generate_emails(ORG, session["id"]))

        provider.fail_for = {2}
        result = run_async(service.retry_campaign(ORG, session["id"]))

        self.assertEqual(result["status"], "GENERATING")
        self.assertEqual(result["completed_donors"], 1)
        self.assertIsNone(result["completed_at"])

    def test_retry_ready_session_is_noop(self):
        service, provider, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 3])
        run_async(service.generate_emails(ORG, session["id"]))
        provider.calls.clear()

        result = run_async(service.retry_campaign(ORG, session["id"]))

        self.assertEqual(result["status"], "READY_TO_SEND")
        self.assertEqual(provider.calls, [])

    def test_retry_draft_rejected(self):
        from campaign_engine.errors import InvalidStateError

        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1])
        with self.assertRaises(InvalidStateError):
            run_async(service.retry_campaign(ORG, session["id"]))

    def test_retry_while_batch_running_is_noop(self):
        from database import CampaignSession

        service, provider, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2])
        CampaignSession.transition(session["id"], ["DRAFT"], "GENERATING", set_fields={"generation_running": True})

        result = run_async(service.retry_campaign(ORG, session["id"]))

        self.assertTrue(result["generation_running"])
        self.assertEqual(provider.calls, [])

    def test_completed_never_exceeds_total(self):
        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 3])
        run_async(service.generate_emails(ORG, session["id"]))
        # a donor row outside the selection does not count
        self.db["generated_emails"].insert_one({
            "session_id": self.db["generated_emails"].find_one()["session_id"],
            "donor_id": 99, "status": "APPROVED",
        })
        from campaign_engine.generation import BatchResult

        service.coordinator._reconcile(
            service.get_session(ORG, session["id"]), BatchResult(session_id=session["id"])
        )
        doc = service.get_session(ORG, session["id"])
        self.assertLessEqual(doc["completed_donors"], doc["total_donors"])
        self.assertEqual(doc["completed_donors"], 3)


class TestCancelGeneration(CampaignTestCase):

    def test_cancel_draft(self):
        service, _, recorder = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1])

        result = service.cancel_generation(ORG, session["id"])

        self.assertEqual(result["status"], "FAILED")
        self.assertEqual(result["error_message"], "Cancelled by user")
        self.assertIsNotNone(result["completed_at"])
        self.assertIn("session_failed", recorder.kinds(session["id"]))

    def test_cancel_ready_session_rejected(self):
        from campaign_engine.errors import InvalidStateError

        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1])
        run_async(service.generate_emails(ORG, session["id"]))

        with self.assertRaises(InvalidStateError):
            service.cancel_generation(ORG, session["id"])

    def test_cancel_during_batch_skips_unstarted_attempts(self):
        provider = FakeProvider(slow_for={1}, delay=0.05)
        service, _, _ = build_service(provider=provider, concurrency=1)
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 3])

        async def scenario():
            task = asyncio.ensure_future(service.generate_emails(ORG, session["id"]))
            await asyncio.sleep(0.01)
            service.cancel_generation(ORG, session["id"])
            return await task

        result = run_async(scenario())

        self.assertEqual(provider.calls, [1])
        self.assertEqual(result["status"], "FAILED")
        self.assertEqual(result["error_message"], "Cancelled by user")
        self.assertFalse(result["generation_running"])
        # the in-flight attempt still landed
        self.assertEqual(self.db["generated_emails"].count_documents({}), 1)


class TestReadsAndDelete(CampaignTestCase):

    def test_list_campaigns_paginates(self):
        service, _, _ = build_service()
        for i in range(3):
            service.create_session(ORG, "user-1", f"Campaign {i}", [1])
        service.create_session(OTHER_ORG, "user-2", "Other", [1])

        page = service.list_campaigns(ORG, limit=2)

        self.assertEqual(page["total_count"], 3)
        self.assertEqual(len(page["campaigns"]), 2)
        self.assertNotIn("chat_history", page["campaigns"][0])
        self.assertEqual(page["campaigns"][0]["total_emails"], 0)

    def test_list_campaigns_status_filter(self):
        service, _, _ = build_service()
        first = service.create_session(ORG, "user-1", "A", [1])
        service.create_session(ORG, "user-1", "B", [1])
        run_async(service.generate_emails(ORG, first["id"]))

        page = service.list_campaigns(ORG, status="READY_TO_SEND")

        self.assertEqual(page["total_count"], 1)
        self.assertEqual(page["campaigns"][0]["id"], first["id"])
        self.assertEqual(page["campaigns"][0]["total_emails"], 1)

    def test_list_campaigns_validates_paging(self):
        from campaign_engine.errors import ValidationError

        service, _, _ = build_service()
        with self.assertRaises(ValidationError):
            service.list_campaigns(ORG, limit=0)
        with self.assertRaises(ValidationError):
            service.list_campaigns(ORG, offset=-1)
        with self.assertRaises(ValidationError):
            service.list_campaigns(ORG, status="IN_PROGRESS")

    def test_get_session_includes_emails(self):
        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2])
        run_async(service.generate_emails(ORG, session["id"]))

        view = service.get_session(ORG, session["id"])

        self.assertEqual(len(view["emails"]), 2)
        self.assertEqual(view["emails"][0]["session_id"], session["id"])
        self.assertEqual(view["emails"][0]["content_version"], 2)

    def test_other_organization_is_forbidden(self):
        from campaign_engine.errors import Forbidden

        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1])

        with self.assertRaises(Forbidden):
            service.get_session(OTHER_ORG, session["id"])
        with self.assertRaises(Forbidden):
            run_async(service.generate_emails(OTHER_ORG, session["id"]))
        with self.assertRaises(Forbidden):
            service.delete_campaign(OTHER_ORG, session["id"])

    def test_unknown_session_not_found(self):
        from campaign_engine.errors import NotFoundError

        service, _, _ = build_service()
        with self.assertRaises(NotFoundError):
            service.get_session_status(ORG, "0123456789abcdef01234567")
        with self.assertRaises(NotFoundError):
            service.get_session_status(ORG, "not-an-id")

    def test_delete_campaign_removes_rows(self):
        service, _, recorder = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2])
        run_async(service.generate_emails(ORG, session["id"]))

        self.assertTrue(service.delete_campaign(ORG, session["id"]))

        self.assertEqual(self.db["email_generation_sessions"].count_documents({}), 0)
        self.assertEqual(self.db["generated_emails"].count_documents({}), 0)
        self.assertIn("session_deleted", recorder.kinds(session["id"]))

    def test_delete_refused_while_generating(self):
        from campaign_engine.errors import InvalidStateError
        from database import CampaignSession

        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1])
        CampaignSession.transition(session["id"], ["DRAFT"], "GENERATING", set_fields={"generation_running": True})

        with self.assertRaises(InvalidStateError):
            service.delete_campaign(ORG, session["id"])

    def test_list_campaigns_reports_failures(self):
        from database import EmailSendJob, utcnow

        service, _, _ = build_service(provider=FakeProvider(fail_for={2}))
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2])
        run_async(service.generate_emails(ORG, session["id"]))
        email = self.db["generated_emails"].find_one({"donor_id": 1})
        job_id = EmailSendJob.create(email["_id"], session["id"], ORG, utcnow(), "2024-06-03")
        EmailSendJob.transition(job_id, ["scheduled"], "failed")

        campaign = service.list_campaigns(ORG)["campaigns"][0]

        self.assertEqual(campaign["failed_donors"], 1)
        self.assertEqual(campaign["failed_jobs"], 1)
        self.assertEqual(campaign["completed_donors"], 1)


class TestUpdateCampaign(CampaignTestCase):

    def test_update_draft_fields_and_donors(self):
        service, _, recorder = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2], preview_donor_ids=[2])

        updated = service.update_campaign(
            ORG, session["id"], job_name="Spring thanks", instruction="  Thank spring donors ",
            refined_instruction="Thank spring donors warmly", donor_ids=[1, 3, 3],
            chat_history=[{"role": "user", "content": "make it warm"}],
        )

        self.assertEqual(updated["status"], "DRAFT")
        self.assertEqual(updated["job_name"], "Spring thanks")
        self.assertEqual(updated["instruction"], "Thank spring donors")
        self.assertEqual(updated["refined_instruction"], "Thank spring donors warmly")
        self.assertEqual(updated["selected_donor_ids"], [1, 3])
        self.assertEqual(updated["total_donors"], 2)
        self.assertEqual(updated["preview_donor_ids"], [])
        self.assertEqual(updated["chat_history"][0]["content"], "make it warm")
        self.assertEqual(recorder.kinds(session["id"])[-1], "session_updated")

    def test_update_keeps_unspecified_fields(self):
        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2], job_name="Original")

        updated = service.update_campaign(ORG, session["id"], instruction="Thank loyal donors")

        self.assertEqual(updated["job_name"], "Original")
        self.assertEqual(updated["selected_donor_ids"], [1, 2])
        self.assertEqual(updated["total_donors"], 2)

    def test_update_validates_like_create(self):
        from campaign_engine.errors import ValidationError

        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2])

        with self.assertRaises(ValidationError):
            service.update_campaign(ORG, session["id"], donor_ids=[])
        with self.assertRaises(ValidationError):
            service.update_campaign(ORG, session["id"], instruction="   ")
        with self.assertRaises(ValidationError):
            service.update_campaign(ORG, session["id"], preview_donor_ids=[9])
        self.assertEqual(self.db["email_generation_sessions"].find_one()["total_donors"], 2)

    def test_update_refused_outside_draft(self):
        from campaign_engine.errors import InvalidStateError

        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1], launch=True)

        with self.assertRaises(InvalidStateError):
            service.update_campaign(ORG, session["id"], job_name="Renamed")


class TestRegenerateAllEmails(CampaignTestCase):

    def _ready_session(self, service):
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 3])
        run_async(service.generate_emails(ORG, session["id"]))
        return session["id"]

    def test_regenerate_overwrites_every_email(self):
        from database import GeneratedEmail

        service, provider, _ = build_service()
        session_id = self._ready_session(service)
        first = self.db["generated_emails"].find_one({"donor_id": 1})
        GeneratedEmail.set_review_status([first["_id"]], "APPROVED")
        provider.calls.clear()

        result = run_async(service.regenerate_all_emails(ORG, session_id, instruction="Invite donors to the gala"))

        self.assertEqual(sorted(provider.calls), [1, 2, 3])
        self.assertEqual(result["status"], "READY_TO_SEND")
        self.assertEqual(result["instruction"], "Invite donors to the gala")
        self.assertEqual(result["completed_donors"], 3)
        self.assertEqual(self.db["generated_emails"].count_documents({}), 3)
        regenerated = self.db["generated_emails"].find_one({"donor_id": 1})
        self.assertEqual(regenerated["_id"], first["_id"])
        self.assertEqual(regenerated["status"], "PENDING_APPROVAL")
        self.assertEqual(regenerated["structured_content"][1]["piece"], "Invite donors to the gala")

    def test_regenerate_after_failure(self):
        provider = FakeProvider(fail_for={1, 2, 3})
        service, _, _ = build_service(provider=provider)
        session = service.create_session(ORG, "user-1", "Thank donors", [1, 2, 3])
        run_async(service.generate_emails(ORG, session["id"]))
        provider.fail_for.clear()

        result = run_async(service.regenerate_all_emails(ORG, session["id"]))

        self.assertEqual(result["status"], "READY_TO_SEND")
        self.assertIsNone(result["completed_at"])

    def test_regenerate_refused_with_scheduled_or_sent_emails(self):
        from campaign_engine.errors import InvalidStateError
        from database import EmailSendJob, GeneratedEmail, utcnow

        service, _, _ = build_service()
        session_id = self._ready_session(service)
        email = self.db["generated_emails"].find_one({"donor_id": 1})
        job_id = EmailSendJob.create(email["_id"], session_id, ORG, utcnow(), "2024-06-03")

        with self.assertRaises(InvalidStateError):
            run_async(service.regenerate_all_emails(ORG, session_id))

        EmailSendJob.transition(job_id, ["scheduled"], "sent")
        GeneratedEmail.mark_sent(email["_id"], utcnow())
        with self.assertRaises(InvalidStateError):
            run_async(service.regenerate_all_emails(ORG, session_id))

    def test_regenerate_draft_rejected(self):
        from campaign_engine.errors import InvalidStateError

        service, _, _ = build_service()
        session = service.create_session(ORG, "user-1", "Thank donors", [1])

        with self.assertRaises(InvalidStateError):
            run_async(service.regenerate_all_emails(ORG, session["id"]))


class TestStuckSessionRecovery(CampaignTestCase):

    def _stuck(self, service, donors, completed, minutes_ago=120):
        from datetime import timedelta
        from database import CampaignSession, utcnow

        session = service.create_session(ORG, "user-1", "Thank donors", donors)
        CampaignSession.transition(session["id"], ["DRAFT"], "GENERATING", set_fields={
            "generation_running": True,
            "generation_started_at": utcnow() - timedelta(minutes=minutes_ago),
            "completed_donors": completed,
        })
        return session["id"]

    def test_stale_batch_becomes_retryable(self):
        service, provider, recorder = build_service()
        session_id = self._stuck(service, [1, 2, 3], completed=0)

        self.assertEqual(service.recover_stuck_sessions(ORG, stale_minutes=60), 1)

        status = service.get_session_status(ORG, session_id)
        self.assertEqual(status["status"], "GENERATING")
        self.assertFalse(status["generation_running"])
        self.assertIn("interrupted", status["error_message"])
        self.assertIn("session_updated", recorder.kinds(session_id))

        result = run_async(service.retry_campaign(ORG, session_id))
        self.assertEqual(sorted(provider.calls), [1, 2, 3])
        self.assertEqual(result["status"], "READY_TO_SEND")

    def test_stale_batch_with_every_email_is_ready(self):
        service, _, _ = build_service()
        session_id = self._stuck(service, [1, 2], completed=2)

        service.recover_stuck_sessions(stale_minutes=60)

        self.assertEqual(service.get_session_status(ORG, session_id)["status"], "READY_TO_SEND")

    def test_recent_batch_left_alone(self):
        service, _, _ = build_service()
        session_id = self._stuck(service, [1, 2], completed=0, minutes_ago=5)

        self.assertEqual(service.recover_stuck_sessions(ORG, stale_minutes=60), 0)
        self.assertTrue(service.get_session_status(ORG, session_id)["generation_running"])

    def test_recovered_session_can_be_deleted(self):
        service, _, _ = build_service()
        session_id = self._stuck(service, [1], completed=0)
        service.recover_stuck_sessions(ORG, stale_minutes=60)

        self.assertTrue(service.delete_campaign(ORG, session_id))

    def test_other_organization_untouched(self):
        service, _, _ = build_service()
        session_id = self._stuck(service, [1], completed=0)

        self.assertEqual(service.recover_stuck_sessions(OTHER_ORG, stale_minutes=60), 0)
        self.assertTrue(service.get_session_status(ORG, session_id)["generation_running"])


if __name__ == "__main__":
    unittest.main()
