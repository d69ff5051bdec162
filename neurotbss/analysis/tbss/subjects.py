#!/usr/bin/env python3
"""
Subject artifacts and design consistency.

Subjects are given as absolute paths to their FA images. The subject stem
is the file name without image extension and without the ``_FA`` tag;
secondary measures (AD, MD, RD) are the sibling files in the same
directory whose names start with the stem and contain the measure name.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from neurotbss.config import ConfigurationError

logger = logging.getLogger("neurotbss.tbss")

IMAGE_EXTENSIONS = ('.nii.gz', '.nii', '.hdr', '.img')

PRIMARY_TAG = '_FA'

# /NumWaves, /NumPoints and /Matrix precede the rows of an FSL design matrix
DESIGN_HEADER_LINES = 3


class DesignConsistencyError(ConfigurationError):
    """Raised when the design matrix and subject list disagree."""
    pass


def remove_ext(path) -> str:
    """File name of ``path`` without its image extension (like FSL's remove_ext)."""
    name = Path(path).name
    for ext in IMAGE_EXTENSIONS:
        if name.endswith(ext):
            return name[:-len(ext)]
    return name


def image_extension(path) -> str:
    name = Path(path).name
    for ext in IMAGE_EXTENSIONS:
        if name.endswith(ext):
            return ext
    return ''


def subject_stem(fa_file) -> str:
    return remove_ext(fa_file).replace(PRIMARY_TAG, '')


@dataclass(frozen=True)
class Subject:
    """One subject: its stem and its primary (FA) image."""
    subject_id: str
    fa_file: Path

    @classmethod
    def from_fa_file(cls, fa_file) -> 'Subject':
        fa_file = Path(fa_file)
        return cls(subject_id=subject_stem(fa_file), fa_file=fa_file)

    @property
    def data_dir(self) -> Path:
        return self.fa_file.parent

    def measure_file(self, measure: str) -> Optional[Path]:
        """
        Locate the image of ``measure`` next to the FA image.

        Returns None if no sibling file matches.
        """
        if measure == 'FA':
            return self.fa_file
        matches = sorted(
            p for p in self.data_dir.glob(f'{self.subject_id}*{measure}*')
            if image_extension(p)
        )
        return matches[0] if matches else None


def read_list_file(path: Path) -> List[str]:
    """Non-blank, stripped lines of a text file."""
    with open(path) as f:
        return [line.strip() for line in f if line.strip()]


def load_subjects(subject_list: Path) -> List[Subject]:
    """
    Load the subject list (one FA image path per line).

    Raises
    ------
    ConfigurationError
        If the list is empty or a listed FA image does not exist
    """
    entries = read_list_file(subject_list)
    if not entries:
        raise ConfigurationError(f"Subject list is empty: {subject_list}")

    subjects = []
    missing = []
    for entry in entries:
        fa_file = Path(entry)
        if not fa_file.exists():
            logger.error(f"Subject image not found: {fa_file}")
            missing.append(entry)
            continue
        subjects.append(Subject.from_fa_file(fa_file.resolve()))

    if missing:
        raise ConfigurationError(
            f"{len(missing)} subject image(s) listed in {subject_list} do not exist"
        )

    seen = set()
    for subject in subjects:
        if subject.subject_id in seen:
            raise ConfigurationError(
                f"Duplicate subject stem '{subject.subject_id}' in {subject_list}"
            )
        seen.add(subject.subject_id)

    return subjects


def count_design_rows(design_mat: Path) -> int:
    """Number of subject rows in a design matrix (total lines minus header)."""
    with open(design_mat) as f:
        n_lines = len(f.read().splitlines())
    return n_lines - DESIGN_HEADER_LINES


def check_design_consistency(n_subjects: int, design_mat: Path) -> None:
    """
    Ensure the design matrix has one row per subject.

    Raises
    ------
    DesignConsistencyError
        If the row count differs from ``n_subjects``
    """
    n_rows = count_design_rows(design_mat)
    if n_rows != n_subjects:
        raise DesignConsistencyError(
            f"Design matrix does not contain the correct number of subjects: "
            f"{design_mat} has {n_rows} rows, subject list has {n_subjects}"
        )
    logger.info(f"Design matrix matches subject list ({n_subjects} subjects)")
