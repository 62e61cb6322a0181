import asyncio
import json
import sqlite3
import threading
from contextlib import closing
from decimal import Decimal

import pytest

from conftest import DEST_TABLE, SOURCE_TABLE, make_rows
from datasync.models.copy_configuration import DestinationEndpoint, SourceEndpoint
from datasync.models.copy_job import JobStatus, LogLevel, TriggerType
from datasync.models.copy_row import payload_to_row
from datasync.services import dead_letter_store, job_store
from datasync.services.connection_resolver import ConnectionResolver
from datasync.services.copy_orchestrator import CopyOrchestrator
from datasync.services.sqlite_gateway import SqliteGateway


async def _run(orchestrator: CopyOrchestrator, config_id: int):
    result = await orchestrator.execute_copy_job(config_id, TriggerType.MANUAL)
    assert result.success, result.message
    await orchestrator.supervisor.wait(result.job_id)
    return job_store.get_job(result.job_id)


def _assert_progress_invariant(job):
    assert job.processed_records + job.failed_records <= job.total_records
    if job.status is JobStatus.COMPLETED:
        expected = Decimal(100)
    else:
        expected = Decimal(job.processed_records) * 100 / Decimal(job.total_records)
    assert abs(job.progress_percentage - expected) < Decimal("0.01")


# -------------------------
# Trigger checks
# -------------------------

@pytest.mark.asyncio
async def test_missing_disabled_or_invalid_configuration_creates_no_job(orchestrator, make_config):
    result = await orchestrator.execute_copy_job(999)
    assert not result.success
    assert result.message == "Configuration not found."

    disabled = make_config(enabled=False)
    result = await orchestrator.execute_copy_job(disabled.id)
    assert result.message == "Configuration is disabled."

    invalid = make_config(batch_size=0)
    result = await orchestrator.execute_copy_job(invalid.id)
    assert result.message == "Batch size must be greater than 0."

    assert job_store.get_recent_jobs() == []


@pytest.mark.asyncio
async def test_second_trigger_for_a_busy_configuration_is_rejected(orchestrator, memory_gateway, make_config):
    config = make_config()
    memory_gateway.read_gate = threading.Event()

    first = await orchestrator.execute_copy_job(config.id)
    second = await orchestrator.execute_copy_job(config.id)

    assert first.success
    assert not second.success
    assert second.message == "Configuration already has an active job."
    assert len(job_store.get_jobs_by_config(config.id)) == 1

    memory_gateway.read_gate.set()
    await orchestrator.supervisor.wait(first.job_id)


# -------------------------
# End-to-end runs
# -------------------------

@pytest.mark.asyncio
async def test_full_copy_in_three_pages(orchestrator, memory_gateway, make_config):
    memory_gateway.tables[DEST_TABLE].extend(make_rows(3, start=9000))
    config = make_config(truncate_before_copy=True)

    job = await _run(orchestrator, config.id)

    assert job.status is JobStatus.COMPLETED
    assert job.total_records == 2500
    assert job.processed_records == 2500
    assert job.failed_records == 0
    assert job.progress_percentage == Decimal("100")
    assert not job.can_resume
    assert memory_gateway.read_calls == [(0, 1000), (1000, 1000), (2000, 500)]
    # truncated before copying
    assert sorted(r["id"] for r in memory_gateway.tables[DEST_TABLE]) == list(range(1, 2501))

    messages = [e.message for e in job_store.get_job_logs(job.id)]
    assert "Testing source connection..." in messages
    assert "Fetching batch: offset 2000, size 500" in messages
    assert messages[-1] == "Copy completed. Processed: 2500, Failed: 0"


@pytest.mark.asyncio
async def test_outage_fails_resumably_and_resume_finishes_without_duplicates(
    orchestrator, memory_gateway, make_config
):
    config = make_config(truncate_before_copy=True)
    memory_gateway.outage_after_rows = 1000

    job = await _run(orchestrator, config.id)

    assert job.status is JobStatus.FAILED
    assert job.can_resume
    assert job.last_successful_offset == 1000
    assert job.processed_records == 1000
    assert "server closed the connection" in job.error_message
    _assert_progress_invariant(job)
    assert dead_letter_store.get_failed_records(job.id) == []

    memory_gateway.unreachable.clear()
    memory_gateway.outage_after_rows = None
    memory_gateway.read_calls.clear()

    result = await orchestrator.resume_job(job.id)
    assert result.success, result.message
    await orchestrator.supervisor.wait(job.id)

    job = job_store.get_job(job.id)
    assert job.status is JobStatus.COMPLETED
    assert job.processed_records == 2500
    assert job.failed_records == 0
    assert job.retry_count == 1
    assert job.error_message is None
    # resume starts at the checkpoint and does not truncate
    assert memory_gateway.read_calls == [(1000, 1000), (2000, 500)]
    ids = [r["id"] for r in memory_gateway.tables[DEST_TABLE]]
    assert sorted(ids) == list(range(1, 2501))
    assert any("retry #1" in e.message for e in job_store.get_job_logs(job.id))


@pytest.mark.asyncio
async def test_constraint_violation_dead_letters_one_row(orchestrator, memory_gateway, make_config):
    config = make_config(batch_size=100)
    memory_gateway.rejected_ids = {1234}

    job = await _run(orchestrator, config.id)

    assert job.status is JobStatus.COMPLETED
    assert job.processed_records == 2499
    assert job.failed_records == 1
    records = dead_letter_store.get_failed_records(job.id)
    assert len(records) == 1
    assert payload_to_row(records[0].record_data)["id"] == 1234
    assert "violates check constraint" in records[0].error_message
    assert 1234 not in {r["id"] for r in memory_gateway.tables[DEST_TABLE]}
    assert len(memory_gateway.tables[DEST_TABLE]) == 2499


@pytest.mark.asyncio
async def test_outage_during_row_salvage_resumes_at_the_next_row(orchestrator, memory_gateway, make_config):
    config = make_config(batch_size=100)
    memory_gateway.rejected_ids = {105}
    # page 100..199 is salvaged row by row; the destination drops after row 120
    memory_gateway.outage_after_rows = 119

    job = await _run(orchestrator, config.id)

    assert job.status is JobStatus.FAILED
    assert job.can_resume
    assert job.last_successful_offset == 120
    assert (job.processed_records, job.failed_records) == (119, 1)
    _assert_progress_invariant(job)

    memory_gateway.unreachable.clear()
    memory_gateway.outage_after_rows = None
    memory_gateway.read_calls.clear()

    result = await orchestrator.resume_job(job.id)
    assert result.success, result.message
    await orchestrator.supervisor.wait(job.id)

    job = job_store.get_job(job.id)
    assert job.status is JobStatus.COMPLETED
    assert (job.processed_records, job.failed_records) == (2499, 1)
    _assert_progress_invariant(job)
    assert memory_gateway.read_calls[0] == (120, 100)
    assert memory_gateway.read_calls[-1] == (2420, 80)

    (record,) = dead_letter_store.get_failed_records(job.id)
    assert payload_to_row(record.record_data)["id"] == 105
    ids = sorted(r["id"] for r in memory_gateway.tables[DEST_TABLE])
    assert ids == [i for i in range(1, 2501) if i != 105]


@pytest.mark.asyncio
async def test_unreadable_page_is_counted_and_skipped(orchestrator, memory_gateway, make_config):
    config = make_config()
    memory_gateway.unreadable_offsets = {2000}

    job = await _run(orchestrator, config.id)

    assert job.status is JobStatus.COMPLETED
    assert job.processed_records == 2000
    assert job.failed_records == 500
    (record,) = dead_letter_store.get_failed_records(job.id)
    assert json.loads(record.record_data) == {
        "sourceTable": SOURCE_TABLE,
        "rowFilter": None,
        "offset": 2000,
        "limit": 500,
    }
    last = job_store.get_job_logs(job.id)[-1]
    assert last.level is LogLevel.WARNING
    assert last.message == "1 failed record entries stored for review"


@pytest.mark.asyncio
async def test_cancel_while_running_stops_after_the_current_page(orchestrator, memory_gateway, make_config):
    config = make_config()
    memory_gateway.read_gate = threading.Event()

    result = await orchestrator.execute_copy_job(config.id)
    await asyncio.to_thread(memory_gateway.read_started.wait, 5)
    assert job_store.get_job(result.job_id).status is JobStatus.RUNNING

    assert orchestrator.cancel_job(result.job_id)
    memory_gateway.read_gate.set()
    await orchestrator.supervisor.wait(result.job_id)

    job = job_store.get_job(result.job_id)
    assert job.status is JobStatus.CANCELLED
    assert not job.can_resume
    assert job.end_time is not None
    # the in-flight page completes, nothing after it is read
    assert memory_gateway.read_calls == [(0, 1000)]
    assert len(memory_gateway.tables[DEST_TABLE]) == 1000
    assert job.last_successful_offset == 1000

    cancel_logs = [e for e in job_store.get_job_logs(job.id) if e.level is LogLevel.WARNING]
    assert [e.message for e in cancel_logs] == ["Job cancelled by user"]

    resumed = await orchestrator.resume_job(job.id)
    assert not resumed.success
    assert "cannot be resumed" in resumed.message
    assert not orchestrator.cancel_job(job.id)


@pytest.mark.asyncio
async def test_cancel_before_the_task_starts(orchestrator, memory_gateway, make_config):
    config = make_config()

    result = await orchestrator.execute_copy_job(config.id)
    assert orchestrator.cancel_job(result.job_id)
    await orchestrator.supervisor.wait(result.job_id)

    assert job_store.get_job(result.job_id).status is JobStatus.CANCELLED
    assert memory_gateway.read_calls == []


@pytest.mark.asyncio
async def test_unreachable_destination_fails_preflight(orchestrator, memory_gateway, make_config):
    config = make_config()
    memory_gateway.unreachable.add("dstdb")

    job = await _run(orchestrator, config.id)

    assert job.status is JobStatus.FAILED
    assert job.can_resume
    assert job.error_message.startswith("Cannot connect to destination database")
    assert memory_gateway.read_calls == []


@pytest.mark.asyncio
async def test_empty_source_completes_immediately(orchestrator, memory_gateway, make_config):
    memory_gateway.tables[SOURCE_TABLE].clear()
    job = await _run(orchestrator, make_config().id)

    assert job.status is JobStatus.COMPLETED
    assert job.total_records == 0
    assert job.progress_percentage == Decimal("100")
    assert not job.can_resume


@pytest.mark.asyncio
async def test_table_without_ordering_key_fails_the_job(orchestrator, memory_gateway, make_config):
    memory_gateway.primary_keys[SOURCE_TABLE] = []
    job = await _run(orchestrator, make_config().id)

    assert job.status is JobStatus.FAILED
    assert "No stable ordering key" in job.error_message


# -------------------------
# Resume and validation
# -------------------------

@pytest.mark.asyncio
async def test_resume_rejected_when_retry_budget_is_spent(orchestrator, make_config):
    config = make_config(max_retry_attempts=3)
    job = job_store.create_job(config.id, TriggerType.MANUAL)
    job.status = JobStatus.FAILED
    job.can_resume = True
    job.retry_count = 3
    job.last_successful_offset = 1000
    job.error_message = "server closed the connection unexpectedly"
    job_store.update_job(job)
    before = job_store.get_job(job.id)

    result = await orchestrator.resume_job(job.id)

    assert not result.success
    assert result.message == "Maximum retry attempts (3) reached."
    assert job_store.get_job(job.id) == before


@pytest.mark.asyncio
async def test_resume_rejects_unknown_and_running_jobs(orchestrator, make_config):
    assert (await orchestrator.resume_job(12345)).message == "Job not found."

    job = job_store.create_job(make_config().id, TriggerType.MANUAL)
    job.status = JobStatus.RUNNING
    job.can_resume = True
    job_store.update_job(job)
    assert (await orchestrator.resume_job(job.id)).message == "Job is currently running."


@pytest.mark.asyncio
async def test_validate_configuration_probes_both_endpoints(orchestrator, memory_gateway, make_config):
    config = make_config()
    result = await orchestrator.validate_configuration(config.id)
    assert result.success
    assert result.message == "Configuration is valid and ready to use."

    memory_gateway.tables.pop(DEST_TABLE)
    result = await orchestrator.validate_configuration(config.id)
    assert result.message == f"Destination table '{DEST_TABLE}' does not exist."

    memory_gateway.unreachable.add("srcdb")
    result = await orchestrator.validate_configuration(config.id)
    assert result.message.startswith("Cannot connect to source database")


def test_recover_marks_orphaned_jobs_resumable(orchestrator, make_config):
    config = make_config()
    job = job_store.create_job(config.id, TriggerType.MANUAL)
    job.status = JobStatus.RUNNING
    job_store.update_job(job)

    assert orchestrator.recover_interrupted_jobs() == [job.id]

    stored = job_store.get_job(job.id)
    assert stored.status is JobStatus.FAILED
    assert stored.can_resume
    assert stored.error_message == "Job interrupted by service restart."
    assert job_store.get_active_jobs() == []


@pytest.mark.asyncio
async def test_shutdown_leaves_running_jobs_resumable(orchestrator, memory_gateway, make_config):
    config = make_config()
    memory_gateway.read_gate = threading.Event()

    result = await orchestrator.execute_copy_job(config.id)
    await asyncio.to_thread(memory_gateway.read_started.wait, 5)
    memory_gateway.read_gate.set()
    await orchestrator.shutdown(timeout=5)

    job = job_store.get_job(result.job_id)
    assert job.status is JobStatus.FAILED
    assert job.can_resume
    assert job.last_successful_offset == 1000
    assert job.error_message == "Job interrupted by service shutdown."


# -------------------------
# Real SQLite endpoints
# -------------------------

@pytest.mark.asyncio
async def test_copy_between_sqlite_files(tmp_path, make_config):
    source_path = tmp_path / "source.db"
    dest_path = tmp_path / "dest.db"
    with closing(sqlite3.connect(source_path)) as db:
        db.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT, owner_id INTEGER)")
        db.executemany(
            "INSERT INTO items VALUES (?, ?, ?)",
            [(i, f"item-{i}", i % 7) for i in range(1, 2501)],
        )
        db.commit()
    with closing(sqlite3.connect(dest_path)) as db:
        db.execute("CREATE TABLE owners (id INTEGER PRIMARY KEY)")
        db.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT, owner_id INTEGER REFERENCES owners(id))")
        db.execute("INSERT INTO items VALUES (99999, 'stale', NULL)")
        db.commit()

    config = make_config(
        source=SourceEndpoint(server="local", database=str(source_path), table="items"),
        destination=DestinationEndpoint(server="local", database=str(dest_path), table="items"),
        truncate_before_copy=True,
        batch_size=1000,
    )
    orchestrator = CopyOrchestrator(gateway=SqliteGateway(), resolver=ConnectionResolver())

    job = await _run(orchestrator, config.id)

    assert job.status is JobStatus.COMPLETED, job.error_message
    assert job.processed_records == 2500
    with closing(sqlite3.connect(dest_path)) as db:
        assert db.execute("SELECT COUNT(*), MIN(id), MAX(id) FROM items").fetchone() == (2500, 1, 2500)
