#!/usr/bin/env python3
"""
Submit one TBSS pipeline job per design.

Usage:
    python -m neurotbss.analysis.tbss.run_designs \\
        --designs-root /study/analysis/designs/all_designs \\
        --data-dir /study/data \\
        --output-dir /study

    # Preview subject resolution without writing or submitting
    python -m neurotbss.analysis.tbss.run_designs ... --dry-run

    # Local backend: wait for every design to finish
    python -m neurotbss.analysis.tbss.run_designs ... --config local.yaml --wait
"""

import argparse
import sys
from pathlib import Path

from neurotbss.analysis.tbss.designs import submit_designs
from neurotbss.cluster.scheduler import JobGroup, JobFailedError, SchedulerError, get_scheduler
from neurotbss.config import ConfigurationError, load_config
from neurotbss.utils.logging_utils import setup_logging


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog='neurotbss-designs',
        description="Submit one TBSS analysis per design in a <group>/<design> hierarchy",
    )
    parser.add_argument('--designs-root', type=Path, required=True,
                        help='Directory containing <group>/<design>/ subdirectories')
    parser.add_argument('--data-dir', type=Path, required=True,
                        help='Subject data root the FA pattern is relative to')
    parser.add_argument('--output-dir', type=Path, required=True,
                        help='Parent directory of the TBSS/<group>/<design> output trees')
    parser.add_argument('--config', type=Path,
                        help='Study configuration file (YAML)')
    parser.add_argument('--wait', action='store_true',
                        help='Wait for all submitted designs to finish')
    parser.add_argument('--dry-run', action='store_true',
                        help='Resolve subjects and print commands without submitting')
    args = parser.parse_args(argv)

    logger = setup_logging(args.output_dir, name="designs")

    try:
        config = load_config(args.config)
        scheduler = get_scheduler(config)
        submissions = submit_designs(
            designs_root=args.designs_root,
            data_dir=args.data_dir,
            output_dir=args.output_dir,
            scheduler=scheduler,
            config=config,
            config_path=args.config,
            dry_run=args.dry_run,
        )
    except (ConfigurationError, SchedulerError) as e:
        logger.error(str(e))
        return 1

    skipped = [s for s in submissions if s.skipped_reason]
    for s in skipped:
        logger.warning(f"Skipped {s.design.label}: {s.skipped_reason}")

    if args.wait:
        group = JobGroup(scheduler, "designs")
        for s in submissions:
            if s.handle is not None:
                group.add(s.handle)
        try:
            group.join_all()
        except (JobFailedError, SchedulerError) as e:
            logger.error(str(e))
            return 1

    return 1 if skipped else 0


if __name__ == '__main__':
    sys.exit(main())
