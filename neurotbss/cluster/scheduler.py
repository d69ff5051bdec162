#!/usr/bin/env python3
"""
Batch Scheduler Submission

Wraps job submission to an external batch scheduler:
- LSFScheduler: IBM LSF (bsub / bwait / bjobs, bhist for purged jobs)
- LocalScheduler: plain subprocesses on the current host

Both support blocking submission (returns a JobResult once the job ends)
and background submission (returns a JobHandle that must be joined once).
Scheduler-level problems (command not found, submission rejected) raise
SchedulerError and are never retried. A job that runs but exits non-zero
yields an unsuccessful JobResult; JobResult.check() and JobGroup.join_all()
turn that into JobFailedError with the job's log locations.
"""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

logger = logging.getLogger("neurotbss.cluster")

LSF_JOB_ID_PATTERN = re.compile(r'Job <(\d+)>')
BHIST_DONE_PATTERN = re.compile(r'Done successfully')
BHIST_EXIT_PATTERN = re.compile(r'Exited(?: with exit code (\d+))?')


class SchedulerError(Exception):
    """Raised when the scheduler cannot be reached or rejects a submission."""
    pass


class JobFailedError(Exception):
    """Raised when one or more submitted jobs finished unsuccessfully."""

    def __init__(self, results: List['JobResult']):
        self.results = results
        lines = [f"{len(results)} job(s) failed:"]
        for r in results:
            lines.append(
                f"  {r.name} (job {r.job_id}, status {r.status}): "
                f"see {r.stdout} {r.stderr}"
            )
        super().__init__('\n'.join(lines))


@dataclass(frozen=True)
class JobResources:
    """Resource request for one scheduler job."""
    n_cpus: int = 1
    memory_mb: Optional[int] = None
    walltime_minutes: Optional[int] = None
    single_host: bool = True
    notify: bool = False

    @classmethod
    def from_config(cls, section: Optional[Dict[str, Any]], notify: bool = False) -> 'JobResources':
        section = section or {}
        return cls(
            n_cpus=section.get('n_cpus', 1),
            memory_mb=section.get('memory_mb'),
            walltime_minutes=section.get('walltime_minutes'),
            single_host=section.get('single_host', True),
            notify=notify,
        )


@dataclass
class JobSpec:
    """Everything needed to submit one job."""
    name: str
    command: Sequence[str]
    resources: JobResources = field(default_factory=JobResources)
    cwd: Optional[Path] = None
    stdout: Optional[Path] = None
    stderr: Optional[Path] = None


@dataclass
class JobResult:
    name: str
    job_id: Optional[str]
    succeeded: bool
    status: str
    stdout: Optional[Path] = None
    stderr: Optional[Path] = None

    def check(self) -> 'JobResult':
        if not self.succeeded:
            raise JobFailedError([self])
        return self


class JobHandle:
    """
    Reference to a background job. Joined exactly once through the
    scheduler that created it.
    """

    def __init__(self, spec: JobSpec, job_id: str, process: Optional[subprocess.Popen] = None):
        self.spec = spec
        self.job_id = job_id
        self.process = process
        self.joined = False

    @property
    def name(self) -> str:
        return self.spec.name

    def __repr__(self):
        return f"JobHandle(name={self.spec.name!r}, job_id={self.job_id!r})"


class Scheduler:
    """Common interface of the scheduler backends."""

    def submit(self, spec: JobSpec, blocking: bool = False) -> Union[JobResult, JobHandle]:
        if blocking:
            return self._submit_blocking(spec)
        return self._submit_background(spec)

    def join(self, handle: JobHandle) -> JobResult:
        """Block until the job behind ``handle`` ends."""
        if handle.joined:
            raise SchedulerError(f"{handle!r} has already been joined")
        handle.joined = True
        result = self._wait(handle)
        level = logging.INFO if result.succeeded else logging.ERROR
        logger.log(level, f"Job {result.name} ({result.job_id}) finished: {result.status}")
        return result

    def _submit_blocking(self, spec: JobSpec) -> JobResult:
        raise NotImplementedError

    def _submit_background(self, spec: JobSpec) -> JobHandle:
        raise NotImplementedError

    def _wait(self, handle: JobHandle) -> JobResult:
        raise NotImplementedError


def _prepare_log_files(spec: JobSpec) -> None:
    for path in (spec.stdout, spec.stderr):
        if path is not None:
            Path(path).parent.mkdir(parents=True, exist_ok=True)


class LSFScheduler(Scheduler):
    """Submits jobs with IBM LSF ``bsub``."""

    def __init__(self, bsub: str = 'bsub', bwait: str = 'bwait', bjobs: str = 'bjobs',
                 bhist: str = 'bhist'):
        self.bsub = bsub
        self.bwait = bwait
        self.bjobs = bjobs
        self.bhist = bhist

    def build_bsub_command(self, spec: JobSpec, blocking: bool) -> List[str]:
        res = spec.resources
        cmd = [self.bsub, '-n', str(res.n_cpus)]
        if res.single_host:
            cmd.extend(['-R', 'span[hosts=1]'])
        if res.notify:
            cmd.append('-N')
        if res.memory_mb is not None:
            cmd.extend(['-M', str(res.memory_mb)])
        if res.walltime_minutes is not None:
            cmd.extend(['-W', str(res.walltime_minutes)])
        cmd.extend(['-J', spec.name])
        if spec.stdout is not None:
            cmd.extend(['-o', str(spec.stdout)])
        if spec.stderr is not None:
            cmd.extend(['-e', str(spec.stderr)])
        if spec.cwd is not None:
            cmd.extend(['-cwd', str(spec.cwd)])
        if blocking:
            cmd.append('-K')
        cmd.extend(str(c) for c in spec.command)
        return cmd

    def _call(self, cmd: List[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise SchedulerError(f"Cannot reach LSF ({cmd[0]}): {e}")

    def _submit_blocking(self, spec: JobSpec) -> JobResult:
        _prepare_log_files(spec)
        cmd = self.build_bsub_command(spec, blocking=True)
        logger.info(f"Submitting (blocking) {spec.name}: {' '.join(cmd)}")

        proc = self._call(cmd)
        match = LSF_JOB_ID_PATTERN.search(proc.stdout or '')
        if match is None:
            raise SchedulerError(
                f"LSF rejected job {spec.name}: {(proc.stderr or proc.stdout).strip()}"
            )

        job_id = match.group(1)
        succeeded = proc.returncode == 0
        result = JobResult(
            name=spec.name,
            job_id=job_id,
            succeeded=succeeded,
            status='DONE' if succeeded else f'EXIT({proc.returncode})',
            stdout=spec.stdout,
            stderr=spec.stderr,
        )
        if not succeeded:
            logger.error(f"Job {spec.name} ({job_id}) failed: see {spec.stdout} {spec.stderr}")
        return result

    def _submit_background(self, spec: JobSpec) -> JobHandle:
        _prepare_log_files(spec)
        cmd = self.build_bsub_command(spec, blocking=False)
        logger.info(f"Submitting {spec.name}: {' '.join(cmd)}")

        proc = self._call(cmd)
        match = LSF_JOB_ID_PATTERN.search(proc.stdout or '')
        if proc.returncode != 0 or match is None:
            raise SchedulerError(
                f"LSF rejected job {spec.name}: {(proc.stderr or proc.stdout).strip()}"
            )

        job_id = match.group(1)
        logger.info(f"  {spec.name} submitted as job {job_id}")
        return JobHandle(spec, job_id)

    def _wait(self, handle: JobHandle) -> JobResult:
        # bwait exits non-zero when the job ends in EXIT, so its code is not used
        self._call([self.bwait, '-w', f'ended({handle.job_id})'])

        proc = self._call([self.bjobs, '-noheader', '-o', 'stat', handle.job_id])
        status = proc.stdout.strip() if proc.returncode == 0 else ''
        if not status:
            # finished jobs drop out of bjobs after CLEAN_PERIOD
            status = self._historical_status(handle.job_id)
        return JobResult(
            name=handle.name,
            job_id=handle.job_id,
            succeeded=status == 'DONE',
            status=status,
            stdout=handle.spec.stdout,
            stderr=handle.spec.stderr,
        )

    def _historical_status(self, job_id: str) -> str:
        """Final state of a finished job from the LSF event history."""
        proc = self._call([self.bhist, '-l', job_id])
        # bhist wraps long lines with an indented continuation
        text = ' '.join(proc.stdout.split())
        if BHIST_DONE_PATTERN.search(text):
            return 'DONE'
        match = BHIST_EXIT_PATTERN.search(text)
        if match:
            return f'EXIT({match.group(1)})' if match.group(1) else 'EXIT'
        raise SchedulerError(
            f"Cannot determine final state of LSF job {job_id}: "
            f"{(proc.stderr or proc.stdout).strip() or 'no record'}"
        )


class LocalScheduler(Scheduler):
    """Runs jobs as subprocesses on this host. Resource requests are ignored."""

    def _open_streams(self, spec: JobSpec):
        _prepare_log_files(spec)
        stdout = open(spec.stdout, 'a') if spec.stdout is not None else subprocess.DEVNULL
        if spec.stderr is not None and spec.stderr == spec.stdout:
            stderr = subprocess.STDOUT
        elif spec.stderr is not None:
            stderr = open(spec.stderr, 'a')
        else:
            stderr = subprocess.DEVNULL
        return stdout, stderr

    @staticmethod
    def _close_streams(*streams) -> None:
        for s in streams:
            if hasattr(s, 'close'):
                s.close()

    def _submit_blocking(self, spec: JobSpec) -> JobResult:
        cmd = [str(c) for c in spec.command]
        logger.info(f"Running (blocking) {spec.name}: {' '.join(cmd)}")
        stdout, stderr = self._open_streams(spec)
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(spec.cwd) if spec.cwd else None,
                stdout=stdout,
                stderr=stderr,
            )
        except OSError as e:
            raise SchedulerError(f"Cannot start job {spec.name}: {e}")
        finally:
            self._close_streams(stdout, stderr)

        succeeded = proc.returncode == 0
        return JobResult(
            name=spec.name,
            job_id=None,
            succeeded=succeeded,
            status='DONE' if succeeded else f'EXIT({proc.returncode})',
            stdout=spec.stdout,
            stderr=spec.stderr,
        )

    def _submit_background(self, spec: JobSpec) -> JobHandle:
        cmd = [str(c) for c in spec.command]
        logger.info(f"Starting {spec.name}: {' '.join(cmd)}")
        stdout, stderr = self._open_streams(spec)
        try:
            process = subprocess.Popen(
                cmd,
                cwd=str(spec.cwd) if spec.cwd else None,
                stdout=stdout,
                stderr=stderr,
            )
        except OSError as e:
            raise SchedulerError(f"Cannot start job {spec.name}: {e}")
        finally:
            # the child keeps its own copies of the descriptors
            self._close_streams(stdout, stderr)

        logger.info(f"  {spec.name} started as pid {process.pid}")
        return JobHandle(spec, str(process.pid), process=process)

    def _wait(self, handle: JobHandle) -> JobResult:
        returncode = handle.process.wait()
        succeeded = returncode == 0
        return JobResult(
            name=handle.name,
            job_id=handle.job_id,
            succeeded=succeeded,
            status='DONE' if succeeded else f'EXIT({returncode})',
            stdout=handle.spec.stdout,
            stderr=handle.spec.stderr,
        )


class JobGroup:
    """
    Every background job launched at one point of the pipeline.

    join_all() waits for all of them, not just the most recent, and only
    then reports failures. A job whose state cannot be queried does not
    stop the remaining joins.
    """

    def __init__(self, scheduler: Scheduler, name: str = "jobs"):
        self.scheduler = scheduler
        self.name = name
        self.handles: List[JobHandle] = []

    def __len__(self):
        return len(self.handles)

    def add(self, handle: JobHandle) -> None:
        self.handles.append(handle)

    def submit(self, spec: JobSpec) -> JobHandle:
        handle = self.scheduler.submit(spec, blocking=False)
        self.add(handle)
        return handle

    def join_all(self, raise_on_failure: bool = True) -> List[JobResult]:
        pending = [h for h in self.handles if not h.joined]
        if pending:
            logger.info(f"Waiting for {len(pending)} job(s) in {self.name}")

        results = []
        errors = []
        for handle in pending:
            try:
                results.append(self.scheduler.join(handle))
            except SchedulerError as e:
                logger.error(str(e))
                errors.append(e)

        if errors:
            raise SchedulerError(
                f"{len(errors)} job(s) in {self.name} could not be joined: "
                + '; '.join(str(e) for e in errors)
            )
        failed = [r for r in results if not r.succeeded]
        if failed and raise_on_failure:
            raise JobFailedError(failed)
        return results


def get_scheduler(config: Dict[str, Any]) -> Scheduler:
    """Build the scheduler backend named by ``scheduler.backend``."""
    backend = (config.get('scheduler') or {}).get('backend', 'lsf')
    if backend == 'lsf':
        return LSFScheduler()
    if backend == 'local':
        return LocalScheduler()
    raise SchedulerError(f"Unknown scheduler backend: {backend}")
