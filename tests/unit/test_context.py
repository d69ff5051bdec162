#!/usr/bin/env python3
"""
Unit tests for run context validation.
"""

import pytest

from neurotbss.analysis.tbss.context import (
    MAX_PERMUTATIONS,
    build_context,
    parse_permutations,
    parse_threshold,
)
from neurotbss.config import ConfigurationError, load_config


@pytest.fixture
def config(study):
    config = load_config()
    config['tbss']['template'] = str(study['template'])
    return config


class TestParseThreshold:

    @pytest.mark.parametrize('value,expected', [
        ('0.2', 0.2), ('0.15', 0.15), ('.3', 0.3), (0.25, 0.25), ('0.999', 0.999),
    ])
    def test_valid(self, value, expected):
        assert parse_threshold(value) == pytest.approx(expected)

    @pytest.mark.parametrize('value', ['abc', '0.2.1', '1e-1', '', '0', '1', '1.5', '-0.2', True])
    def test_invalid(self, value):
        with pytest.raises(ConfigurationError, match="--fa-threshold"):
            parse_threshold(value)


class TestParsePermutations:

    @pytest.mark.parametrize('value,expected', [
        ('5000', 5000), ('1', 1), (str(MAX_PERMUTATIONS), MAX_PERMUTATIONS), (250, 250),
    ])
    def test_valid(self, value, expected):
        assert parse_permutations(value) == expected

    @pytest.mark.parametrize('value', ['0', '10000000', '-5', '5.5', 'many', '1e3', False])
    def test_invalid(self, value):
        with pytest.raises(ConfigurationError, match="integers only"):
            parse_permutations(value)


class TestBuildContext:

    def test_defaults_from_config(self, study, config):
        ctx = build_context(
            tbss_dir=study['root'] / 'tbss',
            subject_list=study['subject_list'],
            design=study['design'],
            contrast=study['contrast'],
            config=config,
        )
        assert ctx.fa_threshold == 0.2
        assert ctx.n_permutations == 5000
        assert ctx.template == study['template'].resolve()
        assert ctx.measures == ('FA',)
        assert ctx.randomise_resources.memory_mb == 15000
        assert ctx.max_workers == 8
        assert ctx.randomise_seed is None

    def test_command_line_overrides(self, study, config):
        ctx = build_context(
            tbss_dir=study['root'] / 'tbss',
            subject_list=study['subject_list'],
            design=study['design'],
            contrast=study['contrast'],
            config=config,
            fa_threshold='0.15',
            n_permutations='100',
            non_fa=True,
        )
        assert ctx.fa_threshold == 0.15
        assert ctx.n_permutations == 100
        assert ctx.measures == ('FA', 'AD', 'MD', 'RD')

    def test_randomise_seed_from_config(self, study, config):
        config['tbss']['randomise_seed'] = 7
        ctx = build_context(
            tbss_dir=study['root'] / 'tbss',
            subject_list=study['subject_list'],
            design=study['design'],
            contrast=study['contrast'],
            config=config,
        )
        assert ctx.randomise_seed == 7

    def test_missing_tbss_dir(self, study, config):
        with pytest.raises(ConfigurationError, match="'--tbss-dir' argument required"):
            build_context(None, study['subject_list'], study['design'],
                          study['contrast'], config)

    @pytest.mark.parametrize('missing', ['subject_list', 'design', 'contrast'])
    def test_missing_file(self, study, config, missing):
        paths = {
            'subject_list': study['subject_list'],
            'design': study['design'],
            'contrast': study['contrast'],
        }
        paths[missing] = study['root'] / 'does-not-exist'
        with pytest.raises(ConfigurationError, match="file does not exist"):
            build_context(study['root'] / 'tbss', config=config, **paths)

    def test_missing_template(self, study, config):
        with pytest.raises(ConfigurationError, match="'--template'"):
            build_context(study['root'] / 'tbss', study['subject_list'], study['design'],
                          study['contrast'], config, template=study['root'] / 'nope.nii.gz')

    def test_no_state_created(self, study, config):
        with pytest.raises(ConfigurationError):
            build_context(study['root'] / 'tbss', study['subject_list'], study['design'],
                          study['contrast'], config, fa_threshold='high')
        assert not (study['root'] / 'tbss').exists()
