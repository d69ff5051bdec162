#!/usr/bin/env python3
"""
Layout of one TBSS run directory.

    <tbss_dir>/
        <subject>.nii.gz ...     staged FA inputs (moved to origdata/ by tbss_1_preproc)
        FA/                      created by tbss_1_preproc
        AD/ MD/ RD/              secondary measures (optional)
        stats/                   created by tbss_3_postreg
            design.mat design.con
            all_<M>_skeletonised.nii.gz
            tbss_<M>_tfce_p_tstat1.nii.gz
            tbss_<M>_tfce_corrp_tstat<N>[_filled].nii.gz
        tbss.log tbss.err        output of local FSL commands

The presence of these paths is the only persisted progress record.
"""

from pathlib import Path

from neurotbss.analysis.tbss.stage_gate import (
    StageMarker,
    directory_marker,
    file_marker,
    glob_marker,
)

PRIMARY_MEASURE = 'FA'

IMAGE_GLOB = '*.nii*'


class TBSSLayout:
    """Paths and stage markers of a run directory."""

    def __init__(self, tbss_dir: Path):
        self.root = Path(tbss_dir)

    @property
    def stats_dir(self) -> Path:
        return self.root / 'stats'

    @property
    def log_file(self) -> Path:
        return self.root / 'tbss.log'

    @property
    def err_file(self) -> Path:
        return self.root / 'tbss.err'

    def measure_dir(self, measure: str) -> Path:
        return self.root / measure

    def staging_dir(self, measure: str) -> Path:
        return self.root / f'.{measure}.partial'

    def randomise_log(self, measure: str) -> Path:
        return self.measure_dir(measure) / f'00_tbss_{measure}_randomise.log'

    def skeletonised(self, measure: str) -> Path:
        return self.stats_dir / f'all_{measure}_skeletonised.nii.gz'

    def skeleton_mask(self) -> Path:
        return self.stats_dir / 'mean_FA_skeleton_mask.nii.gz'

    def randomise_output_base(self, measure: str) -> str:
        return f'tbss_{measure}'

    def stats_output(self, measure: str) -> Path:
        return self.stats_dir / f'tbss_{measure}_tfce_p_tstat1.nii.gz'

    def corrp_pattern(self, measure: str) -> str:
        return f'*tbss_{measure}_tfce_corrp_tstat*.nii*'

    def corrp_images(self, measure: str):
        """Corrected-p images of ``measure`` that are not themselves fill outputs."""
        if not self.stats_dir.is_dir():
            return []
        return sorted(
            p for p in self.stats_dir.glob(self.corrp_pattern(measure))
            if 'fill' not in p.name
        )

    # Stage markers

    def copy_marker(self) -> StageMarker:
        return directory_marker('copy', self.measure_dir(PRIMARY_MEASURE))

    def registration_marker(self) -> StageMarker:
        return directory_marker('preproc/register/postreg/prestats', self.stats_dir)

    def stats_marker(self, measure: str) -> StageMarker:
        return file_marker(f'stats {measure}', self.stats_output(measure))

    def fill_marker(self, measure: str) -> StageMarker:
        return glob_marker(
            f'fill {measure}', self.stats_dir,
            f'*tbss_{measure}_tfce_corrp_tstat*fill*.nii*'
        )

    def measure_copy_marker(self, measure: str) -> StageMarker:
        return glob_marker(f'copy {measure}', self.measure_dir(measure), IMAGE_GLOB)

    def skeletonise_marker(self, measure: str) -> StageMarker:
        return file_marker(f'skeletonise {measure}', self.skeletonised(measure))
