"""
Sequential jobs made of steps.

A step runs when its condition holds. The first step that raises a
``DeployError`` fails its job; every later step is reported as skipped and
nothing is undone. Jobs that need a job which did not succeed are skipped.
"""

import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from appdeploy.errors import ConcurrentRunError, DeployError

logger = logging.getLogger(__name__)

SUCCESS = "success"
SKIPPED = "skipped"
FAILURE = "failure"


def always(ctx) -> bool:
    return True


@dataclass
class Step:
    name: str
    action: Callable[[Any], Any]
    condition: Callable[[Any], bool] = always


@dataclass
class StepResult:
    name: str
    status: str
    detail: str = ""


@dataclass
class JobResult:
    name: str
    status: str
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    @property
    def completed_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.status == SUCCESS]

    @property
    def failed_step(self) -> Optional[StepResult]:
        return next((s for s in self.steps if s.status == FAILURE), None)


@dataclass
class Job:
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    condition: Callable[[Any], bool] = always
    outputs: Optional[Callable[[Any], Dict[str, Any]]] = None

    def run(self, ctx) -> JobResult:
        result = JobResult(self.name, SUCCESS)
        if not self.condition(ctx):
            result.status = SKIPPED
            result.reason = "job condition not met"
            logger.info(f"Job '{self.name}' skipped: {result.reason}")
            return result

        logger.info(f"Job '{self.name}' started")
        for step in self.steps:
            if result.status == FAILURE:
                result.steps.append(StepResult(step.name, SKIPPED, "previous step failed"))
                continue
            if not step.condition(ctx):
                result.steps.append(StepResult(step.name, SKIPPED))
                logger.info(f"  - {step.name}: skipped")
                continue

            try:
                detail = step.action(ctx)
            except DeployError as e:
                result.status = FAILURE
                result.steps.append(StepResult(step.name, FAILURE, str(e)))
                logger.error(f"  - {step.name}: failed: {e}")
                continue

            result.steps.append(StepResult(step.name, SUCCESS, detail if isinstance(detail, str) else ""))
            logger.info(f"  - {step.name}: done")

        if result.status == FAILURE:
            done = ", ".join(result.completed_steps) or "none"
            logger.error(
                f"Job '{self.name}' failed at '{result.failed_step.name}'. "
                f"Steps already completed (not rolled back): {done}"
            )
        else:
            if self.outputs:
                result.outputs = self.outputs(ctx)
            logger.info(f"Job '{self.name}' succeeded")
        return result


@dataclass
class WorkflowRun:
    workflow: str
    run_id: str
    event: str
    jobs: List[JobResult] = field(default_factory=list)

    @property
    def conclusion(self) -> str:
        if any(j.status == FAILURE for j in self.jobs):
            return FAILURE
        if self.jobs and all(j.status == SKIPPED for j in self.jobs):
            return SKIPPED
        return SUCCESS

    def job(self, name: str) -> Optional[JobResult]:
        return next((j for j in self.jobs if j.name == name), None)


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def run_jobs(workflow: str, event: str, jobs: List[Job], ctx, run_id: Optional[str] = None) -> WorkflowRun:
    run = WorkflowRun(workflow, run_id or new_run_id(), event)
    logger.info(f"Workflow '{workflow}' run {run.run_id} triggered by {event}")
    finished: Dict[str, JobResult] = {}
    for job in jobs:
        blocked = [n for n in job.needs if finished.get(n) is None or finished[n].status != SUCCESS]
        if blocked:
            result = JobResult(job.name, SKIPPED, reason=f"needs {', '.join(blocked)}")
            logger.info(f"Job '{job.name}' skipped: {result.reason}")
        else:
            result = job.run(ctx)
        finished[job.name] = result
        run.jobs.append(result)
    logger.info(f"Workflow '{workflow}' run {run.run_id} concluded: {run.conclusion}")
    return run


class RunLock:
    """
    Exclusive lock file per deployment target, held for the length of a run.

    Only serializes runs that share the same state directory.
    """

    def __init__(self, lock_dir: Path, resource: str):
        self.path = Path(lock_dir) / f"{resource}.lock"
        self._fd = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            holder = self.path.read_text().strip() or "unknown"
            raise ConcurrentRunError(
                f"Another run (pid {holder}) holds {self.path}; remove it if that run is gone"
            )
        os.write(self._fd, str(os.getpid()).encode())

    def release(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None
            self.path.unlink(missing_ok=True)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
