"""
Unit tests for campaign_engine/alerts.py
"""

import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def mock_client_session(status=200, text=""):
    """aiohttp.ClientSession whose post() answers with ``status``."""
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=text)
    post_ctx = MagicMock()
    post_ctx.__aenter__ = AsyncMock(return_value=response)
    post_ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.post = MagicMock(return_value=post_ctx)
    session_ctx = MagicMock()
    session_ctx.__aenter__ = AsyncMock(return_value=session)
    session_ctx.__aexit__ = AsyncMock(return_value=False)
    return session_ctx, session


class TestSendAlert(unittest.TestCase):

    @patch("campaign_engine.alerts.config")
    def test_skipped_without_webhook(self, mock_config):
        from campaign_engine.alerts import send_alert

        mock_config.ALERT_WEBHOOK_URL = ""

        self.assertFalse(run_async(send_alert("hello")))

    @patch("campaign_engine.alerts.aiohttp.ClientSession")
    @patch("campaign_engine.alerts.config")
    def test_slack_payload(self, mock_config, mock_session_cls):
        from campaign_engine.alerts import AlertLevel, send_alert

        mock_config.ALERT_WEBHOOK_URL = "https://hooks.example.org/x"
        mock_config.ALERT_CHANNEL = "slack"
        session_ctx, session = mock_client_session(200)
        mock_session_cls.return_value = session_ctx

        self.assertTrue(run_async(send_alert("Job failed", AlertLevel.CRITICAL, title="Delivery")))

        url = session.post.call_args[0][0]
        payload = session.post.call_args[1]["json"]
        self.assertEqual(url, "https://hooks.example.org/x")
        self.assertEqual(payload["attachments"][0]["color"], "#FF0000")
        self.assertEqual(payload["attachments"][0]["title"], "Delivery")

    @patch("campaign_engine.alerts.aiohttp.ClientSession")
    @patch("campaign_engine.alerts.config")
    def test_discord_payload_and_error_status(self, mock_config, mock_session_cls):
        from campaign_engine.alerts import send_alert

        mock_config.ALERT_WEBHOOK_URL = "https://discord.example.org/x"
        mock_config.ALERT_CHANNEL = "discord"
        session_ctx, session = mock_client_session(500, "boom")
        mock_session_cls.return_value = session_ctx

        self.assertFalse(run_async(send_alert("Job failed")))
        payload = session.post.call_args[1]["json"]
        self.assertEqual(payload["embeds"][0]["description"], "Job failed")


class TestAlertSubscriber(unittest.TestCase):

    @patch("campaign_engine.alerts.send_alert", new_callable=AsyncMock)
    def test_send_job_failure_alerts(self, mock_send):
        from campaign_engine.alerts import AlertLevel, alert_subscriber
        from campaign_engine.events import ChangeEvent

        event = ChangeEvent(session_id="s1", organization_id="org-1", kind="send_job_failed",
                            data={"job_id": "j1", "attempts": 3, "error": "550 mailbox unavailable"})
        run_async(alert_subscriber(event))

        kwargs = mock_send.await_args[1]
        self.assertEqual(kwargs["level"], AlertLevel.WARNING)
        self.assertIn("550 mailbox unavailable", kwargs["message"])

    @patch("campaign_engine.alerts.send_alert", new_callable=AsyncMock)
    def test_session_failure_alerts(self, mock_send):
        from campaign_engine.alerts import AlertLevel, alert_subscriber
        from campaign_engine.events import ChangeEvent

        event = ChangeEvent(session_id="s1", organization_id="org-1", kind="session_failed",
                            data={"error_message": "Generation failed for 3 of 3 donors"})
        run_async(alert_subscriber(event))

        self.assertEqual(mock_send.await_args[1]["level"], AlertLevel.CRITICAL)

    @patch("campaign_engine.alerts.send_alert", new_callable=AsyncMock)
    def test_other_events_ignored(self, mock_send):
        from campaign_engine.alerts import alert_subscriber
        from campaign_engine.events import ChangeEvent

        run_async(alert_subscriber(ChangeEvent(session_id="s1", organization_id="org-1", kind="email_sent")))

        mock_send.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
