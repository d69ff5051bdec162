"""
Shared fixtures for TBSS orchestration tests.

FakeFSL and FakeScheduler stand in for the FSL command-line tools and the
batch scheduler. They record every invocation and create the files the
real tools would, so stage markers behave as in a real run directory.
"""

import shutil
from pathlib import Path

import nibabel as nib
import numpy as np
import pytest

from neurotbss.analysis.tbss.context import TBSSContext
from neurotbss.cluster.scheduler import JobHandle, JobResult, Scheduler, SchedulerError
from neurotbss.utils.commands import StageExecutionError

SHAPE = (6, 6, 4)


def save_nifti(path: Path, data: np.ndarray) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    nib.save(nib.Nifti1Image(data.astype(np.float32), np.eye(4)), str(path))
    return path


def write_design(path: Path, n_rows: int) -> Path:
    lines = ["/NumWaves 1", f"/NumPoints {n_rows}", "/Matrix"]
    lines += ["1" if i % 2 else "-1" for i in range(n_rows)]
    path.write_text("\n".join(lines) + "\n")
    return path


class FakeFSL:
    """Records FSL commands and produces their outputs."""

    def __init__(self, fail_on=()):
        self.commands = []
        self.fail_on = set(fail_on)

    @property
    def programs(self):
        return [cmd[0] for cmd in self.commands]

    def run(self, cmd, cwd):
        cmd = [str(c) for c in cmd]
        cwd = Path(cwd)
        self.commands.append(cmd)
        if cmd[0] in self.fail_on:
            raise StageExecutionError(f"{cmd[0]} exited with code 1")
        getattr(self, '_' + cmd[0], lambda c, d: None)(cmd, cwd)

    def _tbss_1_preproc(self, cmd, cwd):
        (cwd / 'FA').mkdir(exist_ok=True)
        (cwd / 'origdata').mkdir(exist_ok=True)
        for name in cmd[1:]:
            stem = name.split('.')[0]
            shutil.move(str(cwd / name), str(cwd / 'origdata' / name))
            (cwd / 'FA' / f'{stem}_FA.nii.gz').write_bytes(b'eroded')

    def _tbss_3_postreg(self, cmd, cwd):
        (cwd / 'stats').mkdir()

    def _tbss_4_prestats(self, cmd, cwd):
        n = len(list((cwd / 'origdata').iterdir()))
        save_nifti(cwd / 'stats' / 'all_FA_skeletonised.nii.gz', np.ones(SHAPE + (n,)))
        save_nifti(cwd / 'stats' / 'mean_FA_skeleton_mask.nii.gz', np.ones(SHAPE))

    def _tbss_non_FA(self, cmd, cwd):
        measure = cmd[1]
        n = len(list((cwd / measure).iterdir()))
        save_nifti(cwd / 'stats' / f'all_{measure}_skeletonised.nii.gz', np.ones(SHAPE + (n,)))

    def _tbss_fill(self, cmd, cwd):
        save_nifti(cwd / f'{cmd[4]}.nii.gz', np.zeros(SHAPE))


class FakeScheduler(Scheduler):
    """Runs randomise 'jobs' by writing their outputs when joined."""

    def __init__(self, fail_jobs=(), lost_jobs=()):
        self.submitted = []
        self.blocking = []
        self.joined = []
        self.fail_jobs = set(fail_jobs)
        self.lost_jobs = set(lost_jobs)

    def _submit_blocking(self, spec):
        self.blocking.append(spec)
        return JobResult(spec.name, None, spec.name not in self.fail_jobs,
                         'DONE', spec.stdout, spec.stderr)

    def _submit_background(self, spec):
        self.submitted.append(spec)
        return JobHandle(spec, str(len(self.submitted)))

    def _wait(self, handle):
        spec = handle.spec
        self.joined.append(spec.name)
        if spec.name in self.lost_jobs:
            raise SchedulerError(f"Cannot determine final state of job {handle.job_id}")
        if spec.name in self.fail_jobs:
            return JobResult(spec.name, handle.job_id, False, 'EXIT',
                             spec.stdout, spec.stderr)

        cmd = list(spec.command)
        base = cmd[cmd.index('-o') + 1]
        corrp = np.zeros(SHAPE)
        corrp[2:4, 2:4, 1] = 0.99
        save_nifti(Path(spec.cwd) / f'{base}_tfce_p_tstat1.nii.gz', corrp)
        save_nifti(Path(spec.cwd) / f'{base}_tfce_corrp_tstat1.nii.gz', corrp)
        return JobResult(spec.name, handle.job_id, True, 'DONE', spec.stdout, spec.stderr)


@pytest.fixture
def study(tmp_path):
    """Four subjects with FA/AD/MD/RD images, a design, contrast and template."""
    data_dir = tmp_path / 'data'
    fa_files = []
    for i in range(1, 5):
        sub_dir = data_dir / f'sub-{i:02d}'
        sub_dir.mkdir(parents=True)
        for measure in ('FA', 'AD', 'MD', 'RD'):
            (sub_dir / f'sub-{i:02d}_{measure}.nii.gz').write_bytes(f'{measure}{i}'.encode())
        fa_files.append(sub_dir / f'sub-{i:02d}_FA.nii.gz')

    subject_list = tmp_path / 'subs.list.txt'
    subject_list.write_text(''.join(f'{p}\n' for p in fa_files))

    contrast = tmp_path / 'design.con'
    contrast.write_text("/NumWaves 1\n/NumContrasts 1\n/Matrix\n1\n")
    template = tmp_path / 'FMRIB58_FA_1mm.nii.gz'
    template.write_bytes(b'template')

    return {
        'root': tmp_path,
        'data_dir': data_dir,
        'fa_files': fa_files,
        'subject_list': subject_list,
        'design': write_design(tmp_path / 'design.mat', len(fa_files)),
        'contrast': contrast,
        'template': template,
    }


@pytest.fixture
def make_context(study):
    """Factory for TBSSContext objects pointing at the study fixture."""
    def _make(tbss_dir=None, **overrides):
        values = dict(
            tbss_dir=tbss_dir or study['root'] / 'tbss',
            subject_list=study['subject_list'],
            design=study['design'],
            contrast=study['contrast'],
            template=study['template'],
            check_design=True,
            max_workers=2,
        )
        values.update(overrides)
        return TBSSContext(**values)
    return _make


@pytest.fixture
def make_design():
    return write_design


@pytest.fixture
def fake_fsl():
    return FakeFSL


@pytest.fixture
def fake_scheduler():
    return FakeScheduler
