#!/usr/bin/env python3
"""
Resumable TBSS Pipeline

Runs FSL TBSS for one design in a single run directory:

    init -> copy -> preproc -> register -> postreg -> prestats
         -> stats (randomise, background job) -> poststats fill

Every stage is skipped when its marker (see layout.TBSSLayout) already
exists, so re-running after a failure resumes at the first incomplete
stage. tbss_1_preproc through tbss_4_prestats form one unit gated by the
``stats`` directory: if it exists all four are considered done.

With secondary measures enabled (AD, MD, RD), each measure is copied,
projected onto the FA skeleton with tbss_non_FA and tested with its own
randomise job; these jobs run concurrently with the FA job and are joined
before their fill step.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from neurotbss.analysis.stats.randomise_wrapper import (
    build_randomise_command,
    summarize_results,
    validate_inputs,
)
from neurotbss.analysis.tbss.context import TBSSContext
from neurotbss.analysis.tbss.layout import IMAGE_GLOB, PRIMARY_MEASURE, TBSSLayout
from neurotbss.analysis.tbss.stage_gate import StageGate
from neurotbss.analysis.tbss.subjects import (
    Subject,
    check_design_consistency,
    image_extension,
    load_subjects,
    remove_ext,
)
from neurotbss.cluster.scheduler import JobGroup, JobSpec, Scheduler, SchedulerError
from neurotbss.utils.commands import CommandRunner, StageExecutionError
from neurotbss.utils.fanout import FanoutTask, run_fanout

logger = logging.getLogger("neurotbss.tbss")


class Stage(Enum):
    INIT = 'init'
    COPY = 'copy'
    PREPROC = 'preproc'
    REGISTER = 'register'
    POSTREG = 'postreg'
    PRESTATS = 'prestats'
    SKELETONISE = 'skeletonise'
    STATS = 'stats'
    POSTSTATS_FILL = 'poststats_fill'


REGISTRATION_STAGES = (Stage.PREPROC, Stage.REGISTER, Stage.POSTREG, Stage.PRESTATS)


@dataclass
class PipelineResult:
    """Which stages ran and which were skipped, in order."""
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    significance: Dict[str, List[Dict]] = field(default_factory=dict)

    def record(self, stage: Stage, ran: bool, measure: Optional[str] = None) -> None:
        name = stage.value if measure is None else f"{stage.value}:{measure}"
        (self.executed if ran else self.skipped).append(name)


def copy_image(src: Path, dest_dir: Path, stem: str) -> Path:
    """Copy one image to ``dest_dir/<stem><ext>``, keeping its extension."""
    dest = Path(dest_dir) / f"{stem}{image_extension(src) or '.nii.gz'}"
    shutil.copy2(src, dest)
    return dest


def copy_measure_image(subject: Subject, measure: str, dest_dir: Path) -> Path:
    src = subject.measure_file(measure)
    if src is None:
        raise FileNotFoundError(
            f"No {measure} image for {subject.subject_id} in {subject.data_dir}"
        )
    return copy_image(src, dest_dir, subject.subject_id)


def publish_directory(staging: Path, target: Path) -> None:
    """Move a fully populated staging directory into place."""
    if target.is_dir() and not any(target.iterdir()):
        target.rmdir()

    if not target.exists():
        os.replace(staging, target)
        return

    for item in sorted(staging.iterdir()):
        os.replace(item, target / item.name)
    staging.rmdir()


class TBSSPipeline:
    """
    Stage sequencer for one run directory.

    Parameters
    ----------
    context : TBSSContext
        Validated run configuration
    scheduler : Scheduler
        Backend used for randomise (and optionally registration) jobs
    runner : CommandRunner, optional
        Runs local FSL commands (default: logs to tbss.log / tbss.err)
    gate : StageGate, optional
        Marker checks (default: local filesystem)
    """

    def __init__(
        self,
        context: TBSSContext,
        scheduler: Scheduler,
        runner: Optional[CommandRunner] = None,
        gate: Optional[StageGate] = None
    ):
        self.ctx = context
        self.layout = TBSSLayout(context.tbss_dir)
        self.scheduler = scheduler
        self.runner = runner or CommandRunner(self.layout.log_file, self.layout.err_file)
        self.gate = gate or StageGate()
        self.subjects: List[Subject] = []
        self.result = PipelineResult()

    def run(self) -> PipelineResult:
        ctx = self.ctx
        logger.info("=" * 80)
        logger.info("TBSS ANALYSIS")
        logger.info("=" * 80)
        logger.info(f"Run directory: {ctx.tbss_dir}")
        logger.info(f"Subjects: {ctx.subject_list}")
        logger.info(f"Design: {ctx.design}")
        logger.info(f"Contrast: {ctx.contrast}")
        logger.info(f"Template: {ctx.template}")
        logger.info(f"FA threshold: {ctx.fa_threshold}")
        logger.info(f"Permutations: {ctx.n_permutations}")
        logger.info(f"Measures: {list(ctx.measures)}")

        self.init_stage()
        self.copy_stage()
        self.registration_stage()
        self.stage_design_files()

        primary_jobs = JobGroup(self.scheduler, f"{PRIMARY_MEASURE} statistics")
        secondary_jobs = JobGroup(self.scheduler, "secondary statistics")

        try:
            self.stats_stage(PRIMARY_MEASURE, primary_jobs)
            if ctx.non_fa:
                for measure in ctx.secondary_measures:
                    self.secondary_measure_stages(measure, secondary_jobs)
            self.fill_stage(PRIMARY_MEASURE, primary_jobs)
        except Exception:
            self._drain(primary_jobs, secondary_jobs)
            raise

        if ctx.non_fa:
            secondary_jobs.join_all()
            for measure in ctx.secondary_measures:
                self.fill_stage(measure)

        logger.info("TBSS analysis completed.")
        return self.result

    def _drain(self, *groups: JobGroup) -> None:
        """Wait for outstanding background jobs before propagating a failure."""
        for group in groups:
            outstanding = [h for h in group.handles if not h.joined]
            if outstanding:
                logger.warning(
                    f"Waiting for {len(outstanding)} outstanding job(s) in {group.name} "
                    "before aborting"
                )
                try:
                    group.join_all(raise_on_failure=False)
                except SchedulerError as e:
                    logger.error(f"Could not confirm every job in {group.name} ended: {e}")

    # Stages

    def check_inputs(self) -> None:
        """Load the subject list and, if requested, check the design. Writes nothing."""
        self.subjects = load_subjects(self.ctx.subject_list)
        logger.info(f"Loaded {len(self.subjects)} subjects")

        if self.ctx.check_design:
            check_design_consistency(len(self.subjects), self.ctx.design)

    def init_stage(self) -> None:
        if not self.subjects:
            self.check_inputs()
        self.layout.root.mkdir(parents=True, exist_ok=True)
        self.result.record(Stage.INIT, True)

    def copy_stage(self) -> None:
        marker = self.layout.copy_marker()
        if not self.gate.should_run(marker):
            logger.info("Subject FA data already present.")
            self.result.record(Stage.COPY, False)
            return

        self._stage_primary_images()
        self.result.record(Stage.COPY, True)

    def _stage_primary_images(self) -> List[str]:
        """Copy every subject's FA image into the run root; return the staged names."""
        tasks = [
            FanoutTask(
                name=f"copy {PRIMARY_MEASURE}",
                subject=s.subject_id,
                func=copy_image,
                args=(s.fa_file, self.layout.root, s.subject_id)
            )
            for s in self.subjects
        ]
        result = run_fanout(tasks, stage=f"copy {PRIMARY_MEASURE}",
                            max_workers=self.ctx.max_workers)
        result.raise_for_failures()
        return sorted(p.name for p in result.results)

    def registration_stage(self) -> None:
        if not self.gate.should_run(self.layout.registration_marker()):
            logger.info("TBSS processing steps already completed.")
            for stage in REGISTRATION_STAGES:
                self.result.record(stage, False)
            return

        root = self.layout.root
        staged = sorted(p.name for p in root.glob(IMAGE_GLOB) if p.is_file())
        if not staged:
            # tbss_1_preproc of an earlier, unfinished run moved them to origdata/
            logger.warning(f"No staged subject images in {root}, copying them again")
            staged = self._stage_primary_images()

        steps = [
            # Stage 1: image erosion and end slice zeroing
            (Stage.PREPROC, ['tbss_1_preproc'] + staged),
            # Stage 2: non-linear registration to the FA template
            (Stage.REGISTER, ['tbss_2_reg', '-t', str(self.ctx.template)]),
            # Stage 3: apply registration, create mean FA and skeleton
            (Stage.POSTREG, ['tbss_3_postreg', '-S']),
            # Stage 4: threshold the mean FA skeleton
            (Stage.PRESTATS, ['tbss_4_prestats', str(self.ctx.fa_threshold)]),
        ]
        for stage, cmd in steps:
            logger.info(f"[{stage.value}] {cmd[0]}")
            self._run_step(stage, cmd)
            self.result.record(stage, True)

    def stage_design_files(self) -> None:
        stats_dir = self.layout.stats_dir
        if not stats_dir.is_dir():
            raise StageExecutionError(f"Stats directory not found: {stats_dir}")
        shutil.copy(self.ctx.design, stats_dir / 'design.mat')
        shutil.copy(self.ctx.contrast, stats_dir / 'design.con')

    def stats_stage(self, measure: str, jobs: JobGroup) -> None:
        if not self.gate.should_run(self.layout.stats_marker(measure)):
            logger.info(
                f"TBSS statistical analysis for {measure} measures has already been completed."
            )
            self.result.record(Stage.STATS, False, measure)
            return

        validate_inputs(
            self.layout.skeletonised(measure),
            self.layout.skeleton_mask(),
            n_subjects=len(self.subjects)
        )

        cmd = build_randomise_command(
            input_name=f"all_{measure}_skeletonised",
            output_name=self.layout.randomise_output_base(measure),
            mask_name='mean_FA_skeleton_mask',
            n_permutations=self.ctx.n_permutations,
            seed=self.ctx.randomise_seed,
        )
        log_file = self.layout.randomise_log(measure)
        jobs.submit(JobSpec(
            name=f"{measure}_rdm",
            command=cmd,
            resources=self.ctx.randomise_resources,
            cwd=self.layout.stats_dir,
            stdout=log_file,
            stderr=log_file,
        ))
        self.result.record(Stage.STATS, True, measure)

    def secondary_measure_stages(self, measure: str, jobs: JobGroup) -> None:
        self.copy_measure_stage(measure)

        if self.gate.should_run(self.layout.skeletonise_marker(measure)):
            self._run_step(Stage.SKELETONISE, ['tbss_non_FA', measure])
            self.result.record(Stage.SKELETONISE, True, measure)
        else:
            self.result.record(Stage.SKELETONISE, False, measure)

        self.stats_stage(measure, jobs)

    def copy_measure_stage(self, measure: str) -> None:
        if not self.gate.should_run(self.layout.measure_copy_marker(measure)):
            logger.info(f"Subject {measure} data already present.")
            self.result.record(Stage.COPY, False, measure)
            return

        staging = self.layout.staging_dir(measure)
        staging.mkdir(parents=True, exist_ok=True)

        tasks = [
            FanoutTask(
                name=f"copy {measure}",
                subject=s.subject_id,
                func=copy_measure_image,
                args=(s, measure, staging)
            )
            for s in self.subjects
        ]
        run_fanout(tasks, stage=f"copy {measure}",
                   max_workers=self.ctx.max_workers).raise_for_failures()

        publish_directory(staging, self.layout.measure_dir(measure))
        self.result.record(Stage.COPY, True, measure)

    def fill_stage(self, measure: str, jobs: Optional[JobGroup] = None) -> None:
        if jobs is not None:
            jobs.join_all()

        corrp_images = self.layout.corrp_images(measure)

        if self.gate.should_run(self.layout.fill_marker(measure)):
            if not corrp_images:
                logger.warning(f"No corrected p-value maps found for {measure}")
            for stats_img in corrp_images:
                logger.info(f"Processing: {stats_img.name}")
                self.runner.run(
                    ['tbss_fill', stats_img.name, str(self.ctx.fill_threshold), 'mean_FA',
                     f"{remove_ext(stats_img)}_filled"],
                    cwd=self.layout.stats_dir
                )
            self.result.record(Stage.POSTSTATS_FILL, True, measure)
        else:
            self.result.record(Stage.POSTSTATS_FILL, False, measure)

        self.result.significance[measure] = summarize_results(
            corrp_images, measure, self.ctx.fill_threshold
        )

    def _run_step(self, stage: Stage, cmd: Sequence[str]) -> None:
        """Run a blocking FSL step locally or, if configured, through the scheduler."""
        if not self.ctx.submit_registration:
            self.runner.run(cmd, cwd=self.layout.root)
            return

        self.scheduler.submit(
            JobSpec(
                name=f"tbss_{stage.value}",
                command=list(cmd),
                resources=self.ctx.registration_resources,
                cwd=self.layout.root,
                stdout=self.layout.log_file,
                stderr=self.layout.err_file,
            ),
            blocking=True
        ).check()
