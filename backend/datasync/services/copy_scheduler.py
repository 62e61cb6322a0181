"""
Cron scheduling of copy configurations.

Enabled configurations with ``is_scheduled`` set are registered with
APScheduler on startup; each firing triggers a Scheduled copy job through the
orchestrator, which applies the same checks as a manual trigger.
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from datasync.models.copy_configuration import CopyConfiguration
from datasync.models.copy_job import TriggerType
from datasync.services import config_store
from datasync.services.copy_orchestrator import CopyOrchestrator

logger = logging.getLogger(__name__)


def _job_key(config_id: int) -> str:
    return f"copy_config_{config_id}"


class CopyScheduler:
    def __init__(self, orchestrator: CopyOrchestrator, scheduler: AsyncIOScheduler | None = None):
        self.orchestrator = orchestrator
        self.scheduler = scheduler or AsyncIOScheduler()

    def start(self) -> None:
        self.scheduler.start()
        for config in config_store.list_scheduled_configurations():
            self.sync_configuration(config)
        logger.info("[SCHEDULER] Started with %d scheduled configurations", len(self.scheduler.get_jobs()))

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("[SCHEDULER] Shutdown complete")

    def sync_configuration(self, config: CopyConfiguration) -> None:
        """Register, replace or drop the schedule for ``config`` to match its current state."""
        if not (config.enabled and config.is_scheduled and config.schedule_cron):
            self.remove_configuration(config.id)
            return

        try:
            trigger = CronTrigger.from_crontab(config.schedule_cron.strip())
        except ValueError as exc:
            logger.error("[SCHEDULER] Invalid cron for configuration '%s': %s", config.name, exc)
            self.remove_configuration(config.id)
            return

        self.scheduler.add_job(
            self._fire,
            trigger=trigger,
            id=_job_key(config.id),
            name=config.name,
            args=[config.id],
            replace_existing=True,
            misfire_grace_time=60,
            coalesce=True,
            max_instances=1,
        )
        logger.info("[SCHEDULER] Registered configuration '%s' (cron=%s)", config.name, config.schedule_cron)

    def remove_configuration(self, config_id: int) -> None:
        if self.scheduler.get_job(_job_key(config_id)):
            self.scheduler.remove_job(_job_key(config_id))
            logger.info("[SCHEDULER] Removed configuration %s", config_id)

    def scheduled_config_ids(self) -> list[int]:
        return sorted(job.args[0] for job in self.scheduler.get_jobs())

    async def _fire(self, config_id: int) -> None:
        result = await self.orchestrator.execute_copy_job(config_id, TriggerType.SCHEDULED)
        if result.success:
            logger.info("[SCHEDULER] Configuration %s started job %s", config_id, result.job_id)
        else:
            logger.warning("[SCHEDULER] Configuration %s not started: %s", config_id, result.message)
