"""Task result pipeline."""

from avs_pipeline.pipeline.checker_client import CheckerClient
from avs_pipeline.pipeline.task_runner import TaskResultPipeline
from avs_pipeline.pipeline.triggers import TaskTrigger, TaskWorker, decode_trigger

__all__ = [
    "CheckerClient",
    "TaskResultPipeline",
    "TaskTrigger",
    "TaskWorker",
    "decode_trigger",
]
