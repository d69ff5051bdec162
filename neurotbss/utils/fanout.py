#!/usr/bin/env python3
"""
Parallel fan-out of independent per-subject tasks.

Tasks are launched in input order on a thread pool and every one of them
is joined before returning. A failing task never aborts its siblings; the
failure is logged with the task name and subject and reported back in the
FanoutResult so the caller can refuse to mark the stage complete.
"""

import logging
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

logger = logging.getLogger("neurotbss.tbss")


class FanoutError(Exception):
    """Raised when one or more fan-out tasks failed."""

    def __init__(self, stage: str, failures: List['TaskFailure']):
        self.stage = stage
        self.failures = failures
        lines = [f"{len(failures)} task(s) failed in {stage}:"]
        lines.extend(f"  {f.name} [{f.subject}]: {f.error}" for f in failures)
        super().__init__('\n'.join(lines))


@dataclass
class FanoutTask:
    """One independent unit of work (e.g. copy one subject's image)."""
    name: str
    subject: str
    func: Callable[..., Any]
    args: Tuple = ()


@dataclass
class TaskFailure:
    name: str
    subject: str
    error: str
    traceback: Optional[str] = None


@dataclass
class FanoutResult:
    """Outcome of a fan-out: results of successful tasks and every failure."""
    stage: str
    n_tasks: int
    results: List[Any] = field(default_factory=list)
    failures: List[TaskFailure] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            raise FanoutError(self.stage, self.failures)


def run_fanout(
    tasks: Sequence[FanoutTask],
    stage: str = "fan-out",
    max_workers: Optional[int] = None
) -> FanoutResult:
    """
    Run all tasks concurrently and wait for every one of them.

    Args:
        tasks: Tasks to launch, submitted in the given order
        stage: Stage name used in log messages
        max_workers: Thread pool size (default: one thread per task)

    Returns:
        FanoutResult with per-task results and failures
    """
    result = FanoutResult(stage=stage, n_tasks=len(tasks))
    if not tasks:
        return result

    if max_workers is None or max_workers > len(tasks):
        max_workers = len(tasks)

    logger.info(f"{stage}: launching {len(tasks)} task(s) on {max_workers} worker(s)")

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {}
        for task in tasks:
            futures[executor.submit(task.func, *task.args)] = task

        for future in as_completed(futures):
            task = futures[future]
            try:
                result.results.append(future.result())
            except Exception as e:
                logger.error(f"{stage}: {task.name} failed for {task.subject}: {e}")
                result.failures.append(TaskFailure(
                    name=task.name,
                    subject=task.subject,
                    error=str(e),
                    traceback=traceback.format_exc()
                ))

    n_ok = result.n_tasks - len(result.failures)
    logger.info(f"{stage}: {n_ok}/{result.n_tasks} task(s) succeeded")
    return result
