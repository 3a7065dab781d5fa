from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger("duki.steps")


@dataclass
class PipelineStep:
    """Step descriptor for the ordered pipeline runner."""
    name: str
    fn: Callable[[object], None]
    skip_if: Optional[Callable[[object], bool]] = None
    always_run: bool = False


class StepRunner:
    """Lightweight step runner for deterministic request pipelines."""

    def __init__(self, steps: List[PipelineStep]) -> None:
        self._steps = steps

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self._steps]

    def run(self, context: object) -> None:
        """Purpose: Execute steps in order with skip/always-run rules.
        Inputs/Outputs: Input is a mutable context object; no return value.
        Side Effects / State: Invokes step functions that may mutate context.
        Dependencies: Depends on PipelineStep.fn and PipelineStep.skip_if semantics;
            a truthy context.done skips every remaining step except always_run ones.
        Failure Modes: Exceptions in step functions propagate to the caller and no
            later step runs, always_run included.
        If Removed: The request pipeline cannot run.
        Testing Notes: Verify done, skip_if, and always_run with recording steps.
        """
        session = getattr(context, "session_id", "-")
        for step in self._steps:
            if not step.always_run:
                if getattr(context, "done", False):
                    logger.debug("session=%s step=%s status=skipped reason=done", session, step.name)
                    continue
                if step.skip_if and step.skip_if(context):
                    logger.debug("session=%s step=%s status=skipped reason=skip_if", session, step.name)
                    continue
            step.fn(context)
            logger.debug("session=%s step=%s status=success", session, step.name)
