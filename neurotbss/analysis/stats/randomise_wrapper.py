#!/usr/bin/env python3
"""
FSL Randomise Helpers

Builds the randomise command used by the TBSS statistics stage, validates
its inputs before a job is handed to the scheduler, and summarizes the
corrected p-value maps once the job has finished.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import nibabel as nib
import numpy as np

logger = logging.getLogger("neurotbss.tbss")


class RandomiseError(Exception):
    """Raised when randomise inputs or outputs are malformed"""
    pass


def build_randomise_command(
    input_name: str,
    output_name: str,
    mask_name: str,
    n_permutations: int = 5000,
    design_mat: str = 'design.mat',
    contrast_con: str = 'design.con',
    tfce_2d: bool = True,
    uncorrected_p: bool = True,
    seed: Optional[int] = None
) -> List[str]:
    """
    Build a randomise command line.

    Names are relative to the stats directory the job runs in, matching
    the file names produced by tbss_4_prestats / tbss_non_FA.

    Args:
        input_name: 4D skeletonised input (e.g., all_FA_skeletonised)
        output_name: Output basename (e.g., tbss_FA)
        mask_name: Skeleton mask (e.g., mean_FA_skeleton_mask)
        n_permutations: Number of permutations
        design_mat: Design matrix file
        contrast_con: Contrast file
        tfce_2d: Use 2D TFCE optimised for skeletons (--T2)
        uncorrected_p: Also output uncorrected p maps
        seed: Random seed for reproducibility
    """
    cmd = [
        'randomise',
        '-i', input_name,
        '-o', output_name,
        '-m', mask_name,
        '-d', design_mat,
        '-t', contrast_con,
        '-n', str(n_permutations),
    ]
    if tfce_2d:
        cmd.append('--T2')
    if uncorrected_p:
        cmd.append('--uncorrp')
    if seed is not None:
        cmd.append(f'--seed={seed}')
    return cmd


def validate_inputs(
    input_file: Path,
    mask: Path,
    n_subjects: Optional[int] = None
) -> None:
    """
    Validate that the skeletonised data and mask exist and are well formed.

    Raises:
        RandomiseError: If any required file is missing or malformed
    """
    if not input_file.exists():
        raise RandomiseError(f"Input file not found: {input_file}")
    if not mask.exists():
        raise RandomiseError(f"Mask file not found: {mask}")

    try:
        img = nib.load(str(input_file))
    except Exception as e:
        raise RandomiseError(f"Failed to load input file: {e}")

    if len(img.shape) != 4:
        raise RandomiseError(f"Input file must be 4D volume, got shape {img.shape}")
    if n_subjects is not None and img.shape[3] != n_subjects:
        raise RandomiseError(
            f"{input_file.name} has {img.shape[3]} volumes but {n_subjects} subjects were staged"
        )

    try:
        mask_img = nib.load(str(mask))
    except Exception as e:
        raise RandomiseError(f"Failed to load mask: {e}")

    if len(mask_img.shape) != 3:
        raise RandomiseError(f"Mask must be 3D volume, got shape {mask_img.shape}")


def get_significant_voxels(
    corrp_file: Path,
    threshold: float = 0.95
) -> Dict:
    """
    Extract significant voxels from corrected p-value map.

    FSL randomise outputs 1-p values, so threshold at 0.95 = p < 0.05.
    """
    if not corrp_file.exists():
        raise RandomiseError(f"Corrected p-value file not found: {corrp_file}")

    data = nib.load(str(corrp_file)).get_fdata()

    sig_mask = data >= threshold
    n_significant = int(np.sum(sig_mask))
    max_val = float(np.max(data[sig_mask])) if n_significant > 0 else 0.0

    return {
        'n_significant_voxels': n_significant,
        'max_corrp': max_val,
        'threshold': threshold,
        'significant': n_significant > 0
    }


def summarize_results(
    corrp_files: List[Path],
    measure: str,
    threshold: float = 0.95
) -> List[Dict]:
    """
    Log and return the significant-voxel count of every corrected-p map.
    """
    summary = []
    for corrp_file in corrp_files:
        info = get_significant_voxels(corrp_file, threshold)
        info['file'] = str(corrp_file)
        summary.append(info)

        status = "SIGNIFICANT" if info['significant'] else "not significant"
        logger.info(
            f"  {measure} {corrp_file.name}: {info['n_significant_voxels']} voxels "
            f"(max 1-p {info['max_corrp']:.3f}, {status})"
        )

    return summary
