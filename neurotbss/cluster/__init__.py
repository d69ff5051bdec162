"""
Batch scheduler backends (LSF and local subprocesses).
"""

from neurotbss.cluster.scheduler import (
    JobGroup,
    JobHandle,
    JobResources,
    JobResult,
    JobSpec,
    LocalScheduler,
    LSFScheduler,
    get_scheduler,
)
