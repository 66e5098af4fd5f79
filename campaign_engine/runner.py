"""
Campaign runner: hosts the send executor in one asyncio event loop.

    ┌──────────────────────────────────────┐
    │          AsyncIO Event Loop          │
    │                                      │
    │  ┌───────────────┐  ┌─────────────┐  │
    │  │ executor loop │  │  heartbeat  │  │
    │  │ (tick every N │  │  (60s)      │  │
    │  │  seconds)     │  └─────────────┘  │
    │  └───────────────┘                   │
    │   stale claim + stuck batch cleanup  │
    └──────────────────────────────────────┘

Several runners may point at the same database; job claims are
status-guarded so each job is sent at most once.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

import config
from campaign_engine.agentic_flow import AgenticConversationEngine, LLMFlowPlanner
from campaign_engine.alerts import alert_subscriber
from campaign_engine.campaigns import CampaignService
from campaign_engine.events import ChangeNotifier
from campaign_engine.generation import GenerationCoordinator
from campaign_engine.llm import LLMClient
from campaign_engine.providers import DonorDirectory, GenerationProvider, LLMGenerationProvider, MongoDonorDirectory
from campaign_engine.review import ReviewGate
from campaign_engine.schedule_config import ScheduleConfigStore
from campaign_engine.send_scheduler import SendScheduler
from campaign_engine.send_worker import MailTransport, SendJobExecutor, SmtpMailTransport
from database import get_db, utcnow

logger = logging.getLogger("campaigns.runner")


@dataclass
class Engine:
    notifier: ChangeNotifier
    campaigns: CampaignService
    flows: AgenticConversationEngine
    review: ReviewGate
    config_store: ScheduleConfigStore
    scheduler: SendScheduler
    executor: SendJobExecutor


def build_engine(
    provider: Optional[GenerationProvider] = None,
    donor_directory: Optional[DonorDirectory] = None,
    transport: Optional[MailTransport] = None,
    notifier: Optional[ChangeNotifier] = None,
    llm: Optional[LLMClient] = None,
    planner=None,
) -> Engine:
    """Wire every component against the configured database."""
    notifier = notifier or ChangeNotifier()
    donor_directory = donor_directory or MongoDonorDirectory()
    if provider is None or planner is None:
        llm = llm or LLMClient()
    provider = provider or LLMGenerationProvider(llm)
    planner = planner or LLMFlowPlanner(llm)

    coordinator = GenerationCoordinator(provider, donor_directory, notifier)
    campaigns = CampaignService(coordinator, notifier)
    config_store = ScheduleConfigStore()
    scheduler = SendScheduler(config_store, notifier)
    executor = SendJobExecutor(transport or SmtpMailTransport(), scheduler, campaigns, notifier)
    return Engine(
        notifier=notifier,
        campaigns=campaigns,
        flows=AgenticConversationEngine(planner, donor_directory, campaigns, notifier),
        review=ReviewGate(provider, donor_directory, notifier, llm=llm),
        config_store=config_store,
        scheduler=scheduler,
        executor=executor,
    )


class CampaignRunner:
    """
    Lifecycle:
        runner = CampaignRunner(build_engine())
        await runner.start()   # blocks until SIGTERM/SIGINT
    """

    def __init__(self, engine: Engine, tick_seconds: float = None, alerts: bool = True):
        self.engine = engine
        self.executor = engine.executor
        self.tick_seconds = tick_seconds or config.EXECUTOR_TICK_SECONDS
        self._shutdown = asyncio.Event()
        self._tasks: list = []
        self._unsubscribe = engine.notifier.subscribe(alert_subscriber) if alerts else None
        self.ticks = 0

    async def start(self, install_signal_handlers: bool = True):
        logger.info("=" * 60)
        logger.info("Donor campaign engine: starting")
        logger.info("=" * 60)
        logger.info(f"Tick: {self.tick_seconds}s, batch: {self.executor.batch_size}, "
                    f"max attempts: {self.executor.max_attempts}")
        logger.info(f"SMTP: {config.SMTP_HOST}:{config.SMTP_PORT} from {config.FROM_EMAIL}")

        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._handle_signal, sig)

        self.executor.release_stale_claims()
        self.engine.campaigns.recover_stuck_sessions()

        self._tasks = [
            asyncio.create_task(self._executor_loop(), name="executor"),
            asyncio.create_task(self._heartbeat_loop(), name="heartbeat"),
        ]
        logger.info(f"Workers launched: {[t.get_name() for t in self._tasks]}")

        await self._shutdown.wait()
        await self._graceful_shutdown()

    def request_shutdown(self):
        self._shutdown.set()

    def _handle_signal(self, sig):
        logger.info(f"Received signal {sig.name}, initiating graceful shutdown")
        self._shutdown.set()

    async def _executor_loop(self):
        while not self._shutdown.is_set():
            try:
                await self.executor.tick()
                self.executor.release_stale_claims()
                self.engine.campaigns.recover_stuck_sessions()
            except Exception as e:
                logger.error(f"executor tick failed: {e}", exc_info=True)
            self.ticks += 1

            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.tick_seconds)
                break
            except asyncio.TimeoutError:
                pass

    async def _heartbeat_loop(self):
        while not self._shutdown.is_set():
            self._write_heartbeat("running")
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=60)
                break
            except asyncio.TimeoutError:
                pass

    def _write_heartbeat(self, status: str):
        try:
            get_db()["heartbeat"].update_one(
                {"_id": "campaign_runner"},
                {"$set": {"status": status, "ticks": self.ticks, "updated_at": utcnow()}},
                upsert=True,
            )
        except Exception as e:
            logger.warning(f"heartbeat write failed: {e}")

    async def _graceful_shutdown(self):
        """
        1. Stop the executor from claiming new jobs
        2. Wait for the in-flight dispatch (max 15s)
        3. Flush pending notifications
        """
        logger.info("── Graceful Shutdown ──")
        self.executor.request_shutdown()

        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=15, return_when=asyncio.ALL_COMPLETED)
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self.engine.notifier.drain()
        if self._unsubscribe:
            self._unsubscribe()
        self._write_heartbeat("stopped")
        logger.info("Shutdown complete")
