"""Handler that prints every task variable and completes the task."""

from __future__ import annotations

import logging

import rich_click as click

from robot_worker.engine.models import ExternalTask
from robot_worker.worker.outcomes import Completed, Outcome

logger = logging.getLogger(__name__)


class PrintVariablesHandler:
    """Echo ``name = value`` for each variable; useful for wiring checks."""

    def execute(self, task: ExternalTask) -> Outcome:
        logger.info(
            "Handling external task (Task ID: %s - Process Instance ID %s)",
            task.id,
            task.process_instance_id,
        )
        for name, value in task.variables.items():
            click.echo(f"{name} = {value}")
        return Completed()
