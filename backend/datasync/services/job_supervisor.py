from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class JobAlreadyActiveError(Exception):
    pass


@dataclass
class JobHandle:
    job_id: int
    config_id: int
    task: asyncio.Task
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


class JobSupervisor:
    """Registry of running copy tasks, keyed by job id.

    Registration and the per-configuration check run synchronously on the
    event loop, so two triggers for the same configuration cannot both pass.
    """

    def __init__(self) -> None:
        self._handles: Dict[int, JobHandle] = {}

    def is_config_active(self, config_id: int) -> bool:
        return any(
            h.config_id == config_id and not h.task.done()
            for h in self._handles.values()
        )

    def launch(
        self,
        job_id: int,
        config_id: int,
        run: Callable[[asyncio.Event], Awaitable[None]],
    ) -> JobHandle:
        if self.is_config_active(config_id):
            raise JobAlreadyActiveError(f"Configuration {config_id} already has an active job.")

        cancel_event = asyncio.Event()
        task = asyncio.create_task(run(cancel_event), name=f"copy-job-{job_id}")
        handle = JobHandle(job_id=job_id, config_id=config_id, task=task, cancel_event=cancel_event)
        self._handles[job_id] = handle
        task.add_done_callback(lambda _t: self._discard(job_id, handle))
        return handle

    def _discard(self, job_id: int, handle: JobHandle) -> None:
        if self._handles.get(job_id) is handle:
            del self._handles[job_id]
        if not handle.task.cancelled() and handle.task.exception() is not None:
            logger.error("Copy task for job %s ended with an unhandled error", job_id,
                         exc_info=handle.task.exception())

    def get(self, job_id: int) -> JobHandle | None:
        return self._handles.get(job_id)

    def signal_cancel(self, job_id: int) -> bool:
        handle = self._handles.get(job_id)
        if handle is None:
            return False
        handle.cancel_event.set()
        return True

    def active_job_ids(self) -> list[int]:
        return [job_id for job_id, h in self._handles.items() if not h.task.done()]

    async def wait(self, job_id: int) -> None:
        handle = self._handles.get(job_id)
        if handle is not None:
            await asyncio.shield(handle.task)

    async def shutdown(self, timeout: float | None = None) -> None:
        """Signal every job to stop after its current page and wait for the tasks."""
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel_event.set()
        if not handles:
            return

        done, pending = await asyncio.wait([h.task for h in handles], timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
