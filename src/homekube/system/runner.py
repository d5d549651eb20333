"""Bounded execution of external commands"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, Optional

from ..errors import CommandError

logger = logging.getLogger(__name__)


class CommandRunner:
    """Run commands with a timeout, raising CommandError on failure"""

    def __init__(self, default_timeout: float = 60.0, env: Optional[Dict[str, str]] = None):
        self.default_timeout = default_timeout
        self.env = env

    def run(
        self,
        cmd: list[str],
        input: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        check: bool = True,
        user: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        """Run a command and return the result.

        With ``check`` a nonzero exit raises CommandError; without it the
        caller inspects ``returncode`` itself. A missing executable or an
        expired timeout always raise.
        """
        if user:
            cmd = ["sudo", "-u", user, "--"] + list(cmd)

        run_env = None
        if self.env or env:
            run_env = os.environ.copy()
            run_env.update(self.env or {})
            run_env.update(env or {})

        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                input=input,
                env=run_env,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout or self.default_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(cmd, timed_out=True) from e
        except OSError as e:
            raise CommandError(cmd, message=f"Cannot run {cmd[0]}: {e}") from e

        if check and result.returncode != 0:
            logger.debug("Command failed with code %d: %s", result.returncode, result.stderr.strip())
            raise CommandError(cmd, returncode=result.returncode, stderr=result.stderr)

        return result

