#!/usr/bin/env python3
"""
TBSS Pipeline Command-Line Interface

Runs (or resumes) the full TBSS pipeline for one design. Completed stages
are detected from the run directory and skipped.

Usage:
    python -m neurotbss.analysis.tbss.run_tbss \\
        --tbss-dir /study/TBSS/group/design/tbss \\
        --sub-list /study/TBSS/group/design/subs.list.txt \\
        --design grp.design.mat \\
        --contrast grp.design.con \\
        --check-design --non-FA-tbss
"""

import argparse
import sys
from pathlib import Path

from neurotbss.analysis.stats.randomise_wrapper import RandomiseError
from neurotbss.analysis.tbss.context import build_context
from neurotbss.analysis.tbss.pipeline import TBSSPipeline
from neurotbss.cluster.scheduler import JobFailedError, SchedulerError, get_scheduler
from neurotbss.config import ConfigurationError, load_config
from neurotbss.utils.commands import StageExecutionError
from neurotbss.utils.fanout import FanoutError
from neurotbss.utils.logging_utils import setup_console_logging, setup_logging

USAGE = (
    "%(prog)s [options] --tbss-dir <DIRECTORY> --sub-list <LIST.txt> "
    "--design <DESIGN.mat> --contrast <DESIGN.con>"
)

EPILOG = """
NOTE:
  * The '--non-FA-tbss' requires that the AD, RD, and MD files should already
    be computed and be named similarly to the input FA files.
"""


class TBSSArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports usage errors with exit status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: {message}\n")


class _HelpAction(argparse.Action):
    """Print usage and exit with status 1, like the FSL tbss_* scripts."""

    def __init__(self, option_strings, dest=argparse.SUPPRESS, default=argparse.SUPPRESS,
                 help=None):
        super().__init__(option_strings=option_strings, dest=dest, default=default,
                         nargs=0, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        parser.print_help()
        parser.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = TBSSArgumentParser(
        prog='neurotbss-run',
        usage=USAGE,
        description="Resumable FSL TBSS analysis with LSF-submitted randomise jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
        add_help=False,
    )

    required = parser.add_argument_group('Required Arguments')
    required.add_argument('-tbss', '--tbss-dir', dest='tbss_dir', type=Path,
                          help='Output TBSS directory to store results')
    required.add_argument('-sub', '--sub-list', dest='sub_list', type=Path,
                          help="Subject list with absolute path to each subject's FA image")
    required.add_argument('-des', '--design', dest='design', type=Path,
                          help='FSL-style T-test design matrix')
    required.add_argument('-con', '--contrast', dest='contrast', type=Path,
                          help='FSL-style T-test design contrast')

    optional = parser.add_argument_group('Optional Arguments')
    optional.add_argument('-template', '--template', dest='template', type=Path,
                          help='Standard space FA template [default: FMRIB58_FA_1mm.nii.gz]')
    optional.add_argument('-fa', '--fa-threshold', dest='fa_threshold',
                          help='FA threshold for skeletonization '
                               '(0.15 recommended for neonates) [default: 0.20]')
    optional.add_argument('--perm', dest='perm',
                          help='Number of permutations to be performed [default: 5000]')
    optional.add_argument('--check-design', action='store_true',
                          help='Check that the design matrix has one row per subject')
    optional.add_argument('--non-FA-tbss', dest='non_fa', action='store_true',
                          help='Perform non-FA TBSS for AD, RD, and MD')
    optional.add_argument('--config', type=Path,
                          help='Study configuration file (YAML)')
    optional.add_argument('-h', '-help', '--help', action=_HelpAction,
                          help='Prints usage and exits.')
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logger = setup_console_logging()

    try:
        config = load_config(args.config)
        context = build_context(
            tbss_dir=args.tbss_dir,
            subject_list=args.sub_list,
            design=args.design,
            contrast=args.contrast,
            config=config,
            template=args.template,
            fa_threshold=args.fa_threshold,
            n_permutations=args.perm,
            check_design=args.check_design,
            non_fa=args.non_fa,
        )
        pipeline = TBSSPipeline(context, get_scheduler(config))
        # Subject list and design are checked before the run directory exists
        pipeline.check_inputs()
    except (ConfigurationError, SchedulerError) as e:
        logger.error(str(e))
        return 1

    try:
        logger = setup_logging(context.tbss_dir, name="tbss")
        pipeline.run()
    except ConfigurationError as e:
        logger.error(str(e))
        return 1
    except (StageExecutionError, FanoutError, JobFailedError, SchedulerError,
            RandomiseError, OSError) as e:
        logger.error(f"TBSS analysis failed: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
