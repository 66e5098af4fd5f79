"""
Alerting: posts critical campaign events to a webhook (Slack or Discord).

Configuration via env vars:
    ALERT_WEBHOOK_URL=https://hooks.slack.com/services/...
    ALERT_CHANNEL=slack  (or 'discord')

``alert_subscriber`` plugs into the change-notification channel and turns
failed sessions and terminally failed send jobs into alerts.
"""

import asyncio
import logging
from datetime import datetime, timezone

import aiohttp

import config
from campaign_engine.events import ChangeEvent, EventKind

logger = logging.getLogger("campaigns.alerts")


class AlertLevel:
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


async def send_alert(
    message: str,
    level: str = AlertLevel.INFO,
    title: str = None,
) -> bool:
    """
    Send an alert via the configured webhook.

    Returns:
        True if sent successfully, False otherwise
    """
    if not config.ALERT_WEBHOOK_URL:
        logger.debug(f"Alert skipped (no webhook): [{level}] {message[:80]}")
        return False

    heading = title or f"Campaign engine: {level.upper()}"
    if config.ALERT_CHANNEL == "discord":
        payload = _build_discord_payload(heading, message, level)
    else:
        payload = _build_slack_payload(heading, message, level)

    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                config.ALERT_WEBHOOK_URL, json=payload, timeout=aiohttp.ClientTimeout(total=10)
            ) as resp:
                if resp.status in (200, 204):
                    logger.info(f"Alert sent: [{level}] {heading[:60]}")
                    return True
                body = await resp.text()
                logger.error(f"Alert webhook returned {resp.status}: {body[:200]}")
                return False
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def _build_slack_payload(title: str, message: str, level: str) -> dict:
    color = {
        "critical": "#FF0000",
        "warning": "#FFA500",
        "info": "#36A64F",
    }.get(level, "#808080")

    return {
        "attachments": [
            {
                "color": color,
                "title": title,
                "text": message,
                "footer": "Campaign engine",
                "ts": int(datetime.now(timezone.utc).timestamp()),
            }
        ]
    }


def _build_discord_payload(title: str, message: str, level: str) -> dict:
    color = {
        "critical": 0xFF0000,
        "warning": 0xFFA500,
        "info": 0x36A64F,
    }.get(level, 0x808080)

    return {
        "embeds": [
            {
                "title": title,
                "description": message,
                "color": color,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ]
    }


async def alert_subscriber(event: ChangeEvent):
    if event.kind == EventKind.SESSION_FAILED:
        await send_alert(
            message=(
                f"Campaign session {event.session_id} (org {event.organization_id}) failed.\n"
                f"{event.data.get('error_message') or ''}"
            ),
            level=AlertLevel.CRITICAL,
            title="Campaign generation failed",
        )
    elif event.kind == EventKind.SEND_JOB_FAILED:
        await send_alert(
            message=(
                f"Send job {event.data.get('job_id')} for session {event.session_id} gave up "
                f"after {event.data.get('attempts')} attempts: {event.data.get('error')}"
            ),
            level=AlertLevel.WARNING,
            title="Email delivery failed",
        )
