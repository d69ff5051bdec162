#!/usr/bin/env python3
"""
Configuration loader for the TBSS orchestration pipeline.

Handles:
- Loading YAML configuration files
- Merging study configs with the packaged defaults
- Environment variable substitution
- Configuration validation (thresholds, permutations, scheduler resources)
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'configs' / 'default.yaml'

SCHEDULER_BACKENDS = ('lsf', 'local')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required parameters."""
    pass


def load_yaml(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML configuration file.

    Parameters
    ----------
    file_path : Path
        Path to YAML file

    Returns
    -------
    dict
        Loaded configuration

    Raises
    ------
    ConfigurationError
        If file doesn't exist or YAML is invalid
    """
    if not file_path.exists():
        raise ConfigurationError(f"Configuration file not found: {file_path}")

    try:
        with open(file_path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {file_path}: {e}")

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"Top level of {file_path} must be a mapping")
    return config


def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge two configuration dictionaries.

    Parameters
    ----------
    base : dict
        Base configuration (defaults)
    override : dict
        Override configuration (study-specific)

    Returns
    -------
    dict
        Merged configuration (override takes precedence)
    """
    merged = base.copy()

    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged


def substitute_variables(config: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Substitute environment variables and config references in strings.

    Supports:
    - ${ENV_VAR} - environment variables (e.g. ${FSLDIR})
    - ${config.key.subkey} - references to other config values

    Unresolved references are left untouched.
    """
    if context is None:
        context = config

    pattern = re.compile(r'\$\{([^}]+)\}')

    def substitute_string(value: str, ctx: Dict[str, Any]) -> str:
        def replacer(match):
            var_path = match.group(1)

            if var_path in os.environ:
                return os.environ[var_path]

            try:
                val = ctx
                for part in var_path.split('.'):
                    val = val[part]
                return str(val)
            except (KeyError, TypeError):
                return match.group(0)

        return pattern.sub(replacer, value)

    def process_value(value: Any, ctx: Dict[str, Any]) -> Any:
        if isinstance(value, str):
            return substitute_string(value, ctx)
        elif isinstance(value, dict):
            return {k: process_value(v, ctx) for k, v in value.items()}
        elif isinstance(value, list):
            return [process_value(item, ctx) for item in value]
        else:
            return value

    # Iterate substitution to resolve chained references (e.g., A -> B -> C)
    result = config
    for _ in range(5):
        resolved = process_value(result, context)
        if resolved == result:
            break
        result = resolved
        context = resolved

    return result


def _check_positive_int(config: Dict[str, Any], key_path: str) -> None:
    value = get_config_value(config, key_path)
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigurationError(f"{key_path} must be positive integer, got {value!r}")


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration types and ranges.

    Parameters
    ----------
    config : dict
        Configuration to validate

    Raises
    ------
    ConfigurationError
        If parameters are missing or invalid
    """
    tbss = config.get('tbss', {})
    if not isinstance(tbss, dict):
        raise ConfigurationError("'tbss' section must be a mapping")

    threshold = tbss.get('fa_threshold')
    if threshold is not None:
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) \
                or not 0.0 < threshold < 1.0:
            raise ConfigurationError(
                f"tbss.fa_threshold must be a float in (0, 1), got {threshold!r}"
            )

    fill_threshold = tbss.get('fill_threshold')
    if fill_threshold is not None:
        if isinstance(fill_threshold, bool) or not isinstance(fill_threshold, (int, float)) \
                or not 0.0 < fill_threshold <= 1.0:
            raise ConfigurationError(
                f"tbss.fill_threshold must be a float in (0, 1], got {fill_threshold!r}"
            )

    _check_positive_int(config, 'tbss.n_permutations')
    _check_positive_int(config, 'execution.n_procs')

    seed = tbss.get('randomise_seed')
    if seed is not None:
        if isinstance(seed, bool) or not isinstance(seed, int) or seed < 0:
            raise ConfigurationError(
                f"tbss.randomise_seed must be a non-negative integer, got {seed!r}"
            )

    measures = tbss.get('secondary_measures')
    if measures is not None:
        if not isinstance(measures, list) or not all(isinstance(m, str) for m in measures):
            raise ConfigurationError("tbss.secondary_measures must be a list of names")
        if 'FA' in measures:
            raise ConfigurationError("tbss.secondary_measures must not contain FA")

    backend = get_config_value(config, 'scheduler.backend')
    if backend is not None and backend not in SCHEDULER_BACKENDS:
        raise ConfigurationError(
            f"scheduler.backend must be one of {SCHEDULER_BACKENDS}, got {backend!r}"
        )

    for job_kind in ('randomise', 'registration', 'pipeline'):
        _check_positive_int(config, f'scheduler.{job_kind}.n_cpus')
        _check_positive_int(config, f'scheduler.{job_kind}.memory_mb')
        _check_positive_int(config, f'scheduler.{job_kind}.walltime_minutes')

    logger.debug("Configuration validation passed")


def load_config(config_path: Optional[Path] = None, validate: bool = True) -> Dict[str, Any]:
    """
    Load and process configuration file.

    This is the main entry point for loading configs. It:
    1. Loads the packaged default config
    2. Merges the study config over it (if given)
    3. Substitutes variables
    4. Validates the result

    Parameters
    ----------
    config_path : Path, optional
        Path to study-specific configuration file. When omitted, only the
        packaged defaults are used.
    validate : bool
        Whether to validate the configuration

    Returns
    -------
    dict
        Processed configuration

    Raises
    ------
    ConfigurationError
        If configuration is invalid
    """
    config = load_yaml(DEFAULT_CONFIG_PATH)

    if config_path is not None:
        study_config = load_yaml(Path(config_path))
        config = merge_configs(config, study_config)

    config = substitute_variables(config)

    if validate:
        validate_config(config)

    return config


def get_config_value(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """
    Get a value from config using dot notation.

    Examples
    --------
    >>> get_config_value(config, 'tbss.fa_threshold')
    0.2
    >>> get_config_value(config, 'missing.key', default=0.3)
    0.3
    """
    try:
        value = config
        for part in key_path.split('.'):
            value = value[part]
        return value
    except (KeyError, TypeError):
        return default
