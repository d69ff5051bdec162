#!/usr/bin/env python3
"""
Immutable run context for one TBSS pipeline run.

All paths, thresholds and flags are validated once, up front, and handed
to every stage. Nothing here touches the run directory, so a configuration
error leaves no partial state behind.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from neurotbss.cluster.scheduler import JobResources
from neurotbss.config import ConfigurationError, get_config_value

DEFAULT_FA_THRESHOLD = 0.2
DEFAULT_N_PERMUTATIONS = 5000
DEFAULT_FILL_THRESHOLD = 0.95
DEFAULT_SECONDARY_MEASURES = ('AD', 'MD', 'RD')

MAX_PERMUTATIONS = 9999999

_FLOAT_PATTERN = re.compile(r'^[+-]?[0-9]+\.?[0-9]*$|^[+-]?\.[0-9]+$')
_INT_PATTERN = re.compile(r'^[0-9]+$')


def parse_threshold(value: Union[str, float], name: str = '--fa-threshold') -> float:
    """
    Parse a skeleton threshold.

    Accepts well-formed decimals strictly between 0 and 1.

    Raises
    ------
    ConfigurationError
        On malformed or out-of-range values
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"'{name}' requires a float in (0, 1), got {value!r}")
    if isinstance(value, (int, float)):
        threshold = float(value)
    else:
        text = str(value).strip()
        if not _FLOAT_PATTERN.match(text):
            raise ConfigurationError(f"'{name}' requires a float in (0, 1), got {value!r}")
        threshold = float(text)

    if not 0.0 < threshold < 1.0:
        raise ConfigurationError(f"'{name}' requires a float in (0, 1), got {value!r}")
    return threshold


def parse_permutations(value: Union[str, int], name: str = '--perm') -> int:
    """
    Parse a permutation count in [1, 9999999].

    Raises
    ------
    ConfigurationError
        On non-integer or out-of-range values
    """
    message = f"'{name}' requires integers only [1 - {MAX_PERMUTATIONS}], got {value!r}"
    if isinstance(value, bool):
        raise ConfigurationError(message)
    if isinstance(value, int):
        n_perm = value
    else:
        text = str(value).strip()
        if not _INT_PATTERN.match(text):
            raise ConfigurationError(message)
        n_perm = int(text)

    if not 1 <= n_perm <= MAX_PERMUTATIONS:
        raise ConfigurationError(message)
    return n_perm


def _existing_file(value: Optional[Union[str, Path]], flag: str) -> Path:
    if value is None or str(value) == '' or not Path(value).is_file():
        raise ConfigurationError(
            f"'{flag}' option was not specified or the file does not exist."
        )
    return Path(value).resolve()


@dataclass(frozen=True)
class TBSSContext:
    """Validated configuration of a single TBSS run."""
    tbss_dir: Path
    subject_list: Path
    design: Path
    contrast: Path
    template: Path
    fa_threshold: float = DEFAULT_FA_THRESHOLD
    n_permutations: int = DEFAULT_N_PERMUTATIONS
    check_design: bool = False
    non_fa: bool = False
    secondary_measures: Tuple[str, ...] = DEFAULT_SECONDARY_MEASURES
    fill_threshold: float = DEFAULT_FILL_THRESHOLD
    max_workers: Optional[int] = None
    submit_registration: bool = False
    randomise_resources: JobResources = field(default_factory=JobResources)
    registration_resources: JobResources = field(default_factory=JobResources)
    randomise_seed: Optional[int] = None

    @property
    def measures(self) -> Tuple[str, ...]:
        """Every measure analysed in this run, FA first."""
        if self.non_fa:
            return ('FA',) + tuple(self.secondary_measures)
        return ('FA',)


def build_context(
    tbss_dir: Optional[Union[str, Path]],
    subject_list: Optional[Union[str, Path]],
    design: Optional[Union[str, Path]],
    contrast: Optional[Union[str, Path]],
    config: Dict[str, Any],
    template: Optional[Union[str, Path]] = None,
    fa_threshold: Optional[Union[str, float]] = None,
    n_permutations: Optional[Union[str, int]] = None,
    check_design: bool = False,
    non_fa: bool = False,
) -> TBSSContext:
    """
    Validate command-line values (falling back to ``config``) into a context.

    Raises
    ------
    ConfigurationError
        If a required value is missing, a file does not exist, or a number
        is malformed
    """
    if tbss_dir is None or str(tbss_dir) == '':
        raise ConfigurationError("'--tbss-dir' argument required.")

    subject_list = _existing_file(subject_list, '--sub-list')
    design = _existing_file(design, '--design')
    contrast = _existing_file(contrast, '--contrast')

    if template is None:
        template = get_config_value(config, 'tbss.template')
    template = _existing_file(template, '--template')

    if fa_threshold is None:
        fa_threshold = get_config_value(config, 'tbss.fa_threshold', DEFAULT_FA_THRESHOLD)
    if n_permutations is None:
        n_permutations = get_config_value(config, 'tbss.n_permutations', DEFAULT_N_PERMUTATIONS)

    notify = bool(get_config_value(config, 'scheduler.notify', False))

    return TBSSContext(
        tbss_dir=Path(tbss_dir).absolute(),
        subject_list=subject_list,
        design=design,
        contrast=contrast,
        template=template,
        fa_threshold=parse_threshold(fa_threshold),
        n_permutations=parse_permutations(n_permutations),
        check_design=check_design,
        non_fa=non_fa,
        secondary_measures=tuple(
            get_config_value(config, 'tbss.secondary_measures', DEFAULT_SECONDARY_MEASURES)
        ),
        fill_threshold=float(
            get_config_value(config, 'tbss.fill_threshold', DEFAULT_FILL_THRESHOLD)
        ),
        max_workers=get_config_value(config, 'execution.n_procs'),
        submit_registration=bool(get_config_value(config, 'tbss.submit_registration', False)),
        randomise_resources=JobResources.from_config(
            get_config_value(config, 'scheduler.randomise'), notify=notify
        ),
        registration_resources=JobResources.from_config(
            get_config_value(config, 'scheduler.registration'), notify=notify
        ),
        randomise_seed=get_config_value(config, 'tbss.randomise_seed'),
    )
