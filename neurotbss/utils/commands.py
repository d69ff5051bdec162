#!/usr/bin/env python3
"""
Local execution of FSL commands.

Every command is echoed to the log, its stdout/stderr are appended to the
run's log and error files, and a non-zero exit raises StageExecutionError
pointing at those files.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, Optional, Sequence

logger = logging.getLogger("neurotbss.tbss")


class StageExecutionError(Exception):
    """Raised when an external imaging command fails."""

    def __init__(self, message: str, log_file: Optional[Path] = None,
                 err_file: Optional[Path] = None):
        super().__init__(message)
        self.log_file = log_file
        self.err_file = err_file


def fsl_environment() -> Dict[str, str]:
    """Environment for FSL scripts that must not re-submit themselves via fsl_sub."""
    env = os.environ.copy()
    env['FSLSUBALREADYRUN'] = 'true'
    return env


class CommandRunner:
    """
    Runs external commands synchronously in a given working directory.

    Parameters
    ----------
    log_file : Path
        File collecting stdout of every command (appended)
    err_file : Path
        File collecting stderr of every command (appended)
    """

    def __init__(self, log_file: Path, err_file: Path):
        self.log_file = Path(log_file)
        self.err_file = Path(err_file)

    def run(self, cmd: Sequence[str], cwd: Path) -> None:
        """
        Run ``cmd`` in ``cwd``.

        Raises
        ------
        StageExecutionError
            If the command cannot be started or exits non-zero
        """
        cmd = [str(c) for c in cmd]
        logger.info(' '.join(cmd))

        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self.err_file.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(self.log_file, 'a') as out, open(self.err_file, 'a') as err:
                result = subprocess.run(
                    cmd,
                    cwd=str(cwd),
                    stdout=out,
                    stderr=err,
                    env=fsl_environment(),
                )
        except OSError as e:
            raise StageExecutionError(
                f"Could not start {cmd[0]}: {e}",
                log_file=self.log_file, err_file=self.err_file
            )

        if result.returncode != 0:
            logger.error(
                f"failed: see log files {self.log_file} {self.err_file} for details"
            )
            raise StageExecutionError(
                f"{cmd[0]} exited with code {result.returncode} "
                f"(log: {self.log_file}, errors: {self.err_file})",
                log_file=self.log_file, err_file=self.err_file
            )

        logger.info("-----------------------")
