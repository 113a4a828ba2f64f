"""Task triggers and the serial worker that runs them.

The event source hands over raw file references. Anything that cannot be
decoded falls back to the configured default reference instead of dropping
the task.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

from avs_pipeline.core.exceptions import AvsError
from avs_pipeline.core.models import TaskSummary
from avs_pipeline.pipeline.task_runner import TaskResultPipeline

logger = logging.getLogger("avs.pipeline.triggers")


def decode_trigger(raw: Union[bytes, str, None], default_reference: str) -> str:
    if isinstance(raw, str):
        return raw
    if raw is None:
        logger.warning("Trigger carried no file reference. Using default path.")
        return default_reference
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        logger.warning("Failed to decode filepath from bytes: %s. Using default path.", e)
        return default_reference


@dataclass
class TaskTrigger:
    task_index: int
    file_reference: str


@dataclass
class TaskOutcome:
    trigger: TaskTrigger
    summary: Optional[TaskSummary] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TaskWorker:
    """Runs queued triggers one at a time against the checker sidecar.

    A failed task is logged and recorded; the worker keeps going.
    """

    def __init__(
        self,
        pipeline: TaskResultPipeline,
        checker_address: str,
        queue: Optional[asyncio.Queue] = None,
    ):
        self.pipeline = pipeline
        self.checker_address = checker_address
        self.queue: asyncio.Queue = queue or asyncio.Queue()
        self.outcomes: list[TaskOutcome] = []

    async def submit(self, trigger: TaskTrigger) -> None:
        await self.queue.put(trigger)

    async def stop(self) -> None:
        await self.queue.put(None)

    async def run(self) -> list[TaskOutcome]:
        """Consume triggers until ``stop()``; returns every outcome recorded."""
        while True:
            trigger = await self.queue.get()
            try:
                if trigger is None:
                    return self.outcomes
                self.outcomes.append(await self.handle(trigger))
            finally:
                self.queue.task_done()

    async def handle(self, trigger: TaskTrigger) -> TaskOutcome:
        logger.info("Running task #%d for %s", trigger.task_index, trigger.file_reference)
        try:
            summary = await self.pipeline.run_task(trigger.file_reference, self.checker_address)
        except AvsError as e:
            logger.error("Task #%d failed: %s", trigger.task_index, e)
            return TaskOutcome(trigger=trigger, error=str(e))
        logger.info("Task #%d: %s", trigger.task_index, summary.describe())
        return TaskOutcome(trigger=trigger, summary=summary)
