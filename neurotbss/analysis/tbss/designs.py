#!/usr/bin/env python3
"""
Design Enumeration and Submission

Walks a two-level design hierarchy

    <designs_root>/<group>/<design>/
        grp.design.include.txt   subject ids, one per line
        grp.design.mat           FSL design matrix
        grp.design.con           FSL contrast

and submits one full TBSS pipeline run per design as its own scheduler
job. Subject ids are resolved to FA images under the subject data root; a
missing image is logged and the subject omitted. The resolved list is
written once to <output>/<TBSS>/<group>/<design>/subs.list.txt and never
rewritten.

Designs are independent and are submitted back-to-back without waiting.
"""

import logging
import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from neurotbss.analysis.tbss.subjects import read_list_file
from neurotbss.cluster.scheduler import JobHandle, JobResources, JobSpec, Scheduler
from neurotbss.config import ConfigurationError, get_config_value

logger = logging.getLogger("neurotbss.designs")

PIPELINE_MODULE = 'neurotbss.analysis.tbss.run_tbss'


@dataclass(frozen=True)
class DesignSpec:
    """One (group, design) pair and its files."""
    group: str
    name: str
    design_dir: Path
    include_file: Path
    design_mat: Path
    design_con: Path

    @property
    def label(self) -> str:
        return f"{self.group} | {self.name}"

    @property
    def job_name(self) -> str:
        return f"tbss_{self.group}_{self.name}"


@dataclass
class DesignSubmission:
    design: DesignSpec
    output_dir: Path
    subject_list: Path
    n_subjects: int
    handle: Optional[JobHandle] = None
    skipped_reason: Optional[str] = None


def discover_designs(designs_root: Path, config: Dict[str, Any]) -> List[DesignSpec]:
    """
    List every design directory two levels below ``designs_root``.

    Raises
    ------
    ConfigurationError
        If ``designs_root`` is not a directory
    """
    designs_root = Path(designs_root)
    if not designs_root.is_dir():
        raise ConfigurationError(f"Designs directory not found: {designs_root}")

    include_name = get_config_value(config, 'designs.include_file', 'grp.design.include.txt')
    mat_name = get_config_value(config, 'designs.design_mat', 'grp.design.mat')
    con_name = get_config_value(config, 'designs.design_con', 'grp.design.con')

    designs = []
    for group_dir in sorted(designs_root.iterdir()):
        if not group_dir.is_dir() or group_dir.name.startswith('.'):
            continue
        for design_dir in sorted(group_dir.iterdir()):
            if not design_dir.is_dir() or design_dir.name.startswith('.'):
                continue
            designs.append(DesignSpec(
                group=group_dir.name,
                name=design_dir.name,
                design_dir=design_dir.resolve(),
                include_file=design_dir.resolve() / include_name,
                design_mat=design_dir.resolve() / mat_name,
                design_con=design_dir.resolve() / con_name,
            ))

    logger.info(f"Discovered {len(designs)} designs in {designs_root}")
    return designs


def resolve_subjects(design: DesignSpec, data_dir: Path, fa_pattern: str) -> List[Path]:
    """
    Map the design's subject ids to existing FA images.

    Subjects whose image does not exist are logged and omitted.
    """
    resolved = []
    for subject in read_list_file(design.include_file):
        fa_file = Path(data_dir) / fa_pattern.format(subject=subject)
        logger.info(f"Processing subject: {design.label} | {subject}")
        if fa_file.is_file():
            resolved.append(fa_file.resolve())
        else:
            logger.warning(f"{design.label} | {subject} does not exist ({fa_file})")
    return resolved


def write_subject_list(path: Path, fa_files: List[Path]) -> bool:
    """
    Write the subject list unless it already exists.

    The file is written to a temporary name and renamed into place, so it
    is never seen half-written.

    Returns:
        True if the file was written, False if it already existed
    """
    path = Path(path)
    if path.exists():
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f'.{path.name}.')
    try:
        with os.fdopen(fd, 'w') as f:
            for fa_file in fa_files:
                f.write(f"{fa_file}\n")
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return True


def build_pipeline_command(
    design: DesignSpec,
    output_dir: Path,
    subject_list: Path,
    config: Dict[str, Any],
    config_path: Optional[Path] = None
) -> List[str]:
    """Command line of the per-design pipeline job."""
    cmd = [
        sys.executable, '-m', PIPELINE_MODULE,
        '--tbss-dir', str(output_dir / 'tbss'),
        '--sub-list', str(subject_list),
        '--design', str(design.design_mat),
        '--contrast', str(design.design_con),
        '--template', str(get_config_value(config, 'tbss.template')),
        '--fa-threshold', str(get_config_value(config, 'tbss.fa_threshold', 0.2)),
        '--perm', str(get_config_value(config, 'tbss.n_permutations', 5000)),
        '--check-design',
        '--non-FA-tbss',
    ]
    if config_path is not None:
        cmd.extend(['--config', str(Path(config_path).resolve())])
    return cmd


def submit_designs(
    designs_root: Path,
    data_dir: Path,
    output_dir: Path,
    scheduler: Scheduler,
    config: Dict[str, Any],
    config_path: Optional[Path] = None,
    dry_run: bool = False
) -> List[DesignSubmission]:
    """
    Resolve subjects for every design and submit one pipeline job each.

    Args:
        designs_root: Root of the <group>/<design> hierarchy
        data_dir: Subject data root (FA pattern is relative to it)
        output_dir: Parent of the per-design output trees
        scheduler: Backend receiving one background job per design
        config: Configuration dictionary
        config_path: Study config forwarded to the pipeline jobs
        dry_run: Resolve and log, but do not write or submit anything

    Returns:
        One DesignSubmission per discovered design
    """
    fa_pattern = get_config_value(
        config, 'designs.subject_fa_pattern',
        '{subject}/dwi_run-01/Tensor/{subject}_ses-001_run-01_FA.nii.gz'
    )
    list_name = get_config_value(config, 'designs.subject_list_name', 'subs.list.txt')
    tbss_root = Path(output_dir).resolve() / get_config_value(config, 'designs.output_subdir', 'TBSS')

    notify = bool(get_config_value(config, 'scheduler.notify', False))
    resources = JobResources.from_config(
        get_config_value(config, 'scheduler.pipeline'), notify=notify
    )

    submissions = []
    for design in discover_designs(designs_root, config):
        logger.info(f"Processing Design: {design.label}")
        design_out = tbss_root / design.group / design.name
        subject_list = design_out / list_name

        missing = [p for p in (design.include_file, design.design_mat, design.design_con)
                   if not p.is_file()]
        if missing:
            reason = f"missing design files: {', '.join(str(p) for p in missing)}"
            logger.error(f"{design.label}: {reason}")
            submissions.append(DesignSubmission(design, design_out, subject_list, 0,
                                                skipped_reason=reason))
            continue

        if subject_list.exists():
            n_subjects = len(read_list_file(subject_list))
            logger.info(f"Subject list already present: {subject_list} ({n_subjects} subjects)")
        else:
            fa_files = resolve_subjects(design, data_dir, fa_pattern)
            n_subjects = len(fa_files)
            if n_subjects and not dry_run:
                write_subject_list(subject_list, fa_files)

        submission = DesignSubmission(design, design_out, subject_list, n_subjects)
        submissions.append(submission)

        if n_subjects == 0:
            submission.skipped_reason = "no subjects resolved"
            logger.error(f"{design.label}: no subjects resolved, not submitting")
            continue

        cmd = build_pipeline_command(design, design_out, subject_list, config, config_path)
        if dry_run:
            logger.info(f"[dry-run] {design.job_name}: {' '.join(cmd)}")
            continue

        submission.handle = scheduler.submit(JobSpec(
            name=design.job_name,
            command=cmd,
            resources=resources,
            cwd=design_out,
            stdout=design_out / f'{design.job_name}.log',
            stderr=design_out / f'{design.job_name}.err',
        ), blocking=False)

    n_submitted = sum(1 for s in submissions if s.handle is not None)
    logger.info(f"Submitted {n_submitted}/{len(submissions)} designs")
    return submissions
