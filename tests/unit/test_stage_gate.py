#!/usr/bin/env python3
"""
Unit tests for stage completion markers.
"""

from pathlib import Path

import pytest

from neurotbss.analysis.tbss.layout import TBSSLayout
from neurotbss.analysis.tbss.stage_gate import (
    StageGate,
    StageMarker,
    directory_marker,
    file_marker,
    glob_marker,
    is_stage_complete,
)


class FakeFilesystem:
    """In-memory filesystem that counts queries."""

    def __init__(self, paths=()):
        self.paths = {Path(p) for p in paths}
        self.queries = 0

    def exists(self, path):
        self.queries += 1
        return Path(path) in self.paths

    def listdir(self, path):
        self.queries += 1
        return [p.name for p in self.paths if p.parent == Path(path)]


class TestMarkers:
    """Test marker presence on the real filesystem."""

    def test_missing_directory(self, tmp_path):
        assert not is_stage_complete(directory_marker('copy', tmp_path / 'FA'))

    def test_empty_directory_counts_as_complete(self, tmp_path):
        (tmp_path / 'FA').mkdir()
        assert is_stage_complete(directory_marker('copy', tmp_path / 'FA'))

    def test_file_marker(self, tmp_path):
        marker = file_marker('stats', tmp_path / 'tbss_FA_tfce_p_tstat1.nii.gz')
        assert not is_stage_complete(marker)
        marker.path.write_bytes(b'')
        assert is_stage_complete(marker)

    def test_glob_marker(self, tmp_path):
        marker = glob_marker('fill', tmp_path, '*corrp_tstat*fill*.nii*')
        (tmp_path / 'tbss_FA_tfce_corrp_tstat1.nii.gz').write_bytes(b'')
        assert not is_stage_complete(marker)
        (tmp_path / 'tbss_FA_tfce_corrp_tstat1_filled.nii.gz').write_bytes(b'')
        assert is_stage_complete(marker)

    def test_glob_marker_exclude(self, tmp_path):
        marker = glob_marker('stats', tmp_path, '*corrp*.nii*', exclude='fill')
        (tmp_path / 'x_corrp_filled.nii.gz').write_bytes(b'')
        assert not is_stage_complete(marker)

    def test_glob_marker_on_missing_directory(self, tmp_path):
        assert not is_stage_complete(glob_marker('copy AD', tmp_path / 'AD', '*.nii*'))

    def test_unknown_kind(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown marker kind"):
            is_stage_complete(StageMarker('x', tmp_path, kind='socket'))


class TestStageGate:

    def test_never_cached(self):
        fs = FakeFilesystem()
        gate = StageGate(fs)
        marker = directory_marker('copy', Path('/run/FA'))

        assert gate.should_run(marker)
        fs.paths.add(Path('/run/FA'))
        assert not gate.should_run(marker)
        assert fs.queries == 2

    def test_no_side_effects(self, tmp_path):
        gate = StageGate()
        gate.is_stage_complete(directory_marker('copy', tmp_path / 'FA'))
        gate.is_stage_complete(glob_marker('copy AD', tmp_path / 'AD', '*.nii*'))
        assert list(tmp_path.iterdir()) == []


class TestLayoutMarkers:
    """Test the markers of a run directory."""

    def test_registration_gated_by_stats_dir(self):
        layout = TBSSLayout(Path('/run'))
        fs = FakeFilesystem(['/run/stats'])
        assert is_stage_complete(layout.registration_marker(), fs)

    def test_stats_marker_per_measure(self):
        layout = TBSSLayout(Path('/run'))
        fs = FakeFilesystem(['/run/stats/tbss_FA_tfce_p_tstat1.nii.gz'])
        assert is_stage_complete(layout.stats_marker('FA'), fs)
        assert not is_stage_complete(layout.stats_marker('AD'), fs)

    def test_measure_copy_marker_ignores_logs(self):
        layout = TBSSLayout(Path('/run'))
        fs = FakeFilesystem(['/run/AD/00_tbss_AD_randomise.log'])
        assert not is_stage_complete(layout.measure_copy_marker('AD'), fs)

    def test_corrp_images_exclude_filled(self, tmp_path):
        layout = TBSSLayout(tmp_path)
        layout.stats_dir.mkdir()
        for name in ('tbss_FA_tfce_corrp_tstat1.nii.gz',
                     'tbss_FA_tfce_corrp_tstat1_filled.nii.gz',
                     'tbss_AD_tfce_corrp_tstat1.nii.gz'):
            (layout.stats_dir / name).write_bytes(b'')
        assert [p.name for p in layout.corrp_images('FA')] == ['tbss_FA_tfce_corrp_tstat1.nii.gz']
