import pytest

from datasync.models.copy_job import TriggerType
from datasync.services import job_store
from datasync.services.copy_scheduler import CopyScheduler


def test_only_enabled_scheduled_configurations_are_registered(orchestrator, make_config):
    scheduler = CopyScheduler(orchestrator)
    nightly = make_config(is_scheduled=True, schedule_cron="0 2 * * *")
    manual = make_config()

    scheduler.sync_configuration(nightly)
    scheduler.sync_configuration(manual)
    assert scheduler.scheduled_config_ids() == [nightly.id]

    nightly.enabled = False
    scheduler.sync_configuration(nightly)
    assert scheduler.scheduled_config_ids() == []


def test_remove_configuration_is_idempotent(orchestrator, make_config):
    scheduler = CopyScheduler(orchestrator)
    config = make_config(is_scheduled=True, schedule_cron="*/15 * * * *")
    scheduler.sync_configuration(config)

    scheduler.remove_configuration(config.id)
    scheduler.remove_configuration(config.id)
    assert scheduler.scheduled_config_ids() == []


@pytest.mark.asyncio
async def test_firing_starts_a_scheduled_job(orchestrator, make_config):
    scheduler = CopyScheduler(orchestrator)
    config = make_config(is_scheduled=True, schedule_cron="0 2 * * *")

    await scheduler._fire(config.id)

    (job,) = job_store.get_jobs_by_config(config.id)
    assert job.trigger_type is TriggerType.SCHEDULED
    await orchestrator.supervisor.wait(job.id)


@pytest.mark.asyncio
async def test_start_registers_stored_schedules(orchestrator, make_config):
    config = make_config(is_scheduled=True, schedule_cron="30 1 * * 1-5")
    make_config(is_scheduled=True, schedule_cron="30 1 * * *", enabled=False)
    scheduler = CopyScheduler(orchestrator)

    scheduler.start()
    try:
        assert scheduler.scheduled_config_ids() == [config.id]
    finally:
        scheduler.shutdown()
