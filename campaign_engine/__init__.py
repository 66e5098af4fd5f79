"""
Bulk email campaign engine.

Pipeline: agentic flow -> campaign session -> per-donor generation ->
review gate -> send scheduler -> send job executor -> mail transport.

Modules:
    errors.py          - Exception taxonomy shared by every component
    content.py         - Structured email content (versioning, rendering)
    llm.py             - Chat-completion client (OpenAI / Groq) with JSON mode
    providers.py       - Generation provider + donor directory collaborators
    events.py          - Change-notification channel keyed by session id
    alerts.py          - Webhook alerting (Slack/Discord)
    schedule_config.py - Per-organization sending policy
    campaigns.py       - CampaignSession state machine + campaign operations
    generation.py      - Bounded fan-out of per-donor generation attempts
    agentic_flow.py    - Turn-based dialogue that confirms the prompt
    review.py          - Approve / reject / edit / enhance generated emails
    send_scheduler.py  - Slot planning under the daily cap, pause/resume/cancel
    send_worker.py     - Tick-driven executor + SMTP transport (aiosmtplib)
    runner.py          - AsyncIO loop that drives the executor
"""
