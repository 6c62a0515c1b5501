import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Union

from appdeploy.errors import CommandError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""


class CommandRunner:
    """Runs external commands, raising CommandError on a non-zero exit."""

    dry_run = False

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self.env = dict(env or {})

    def run(
        self,
        argv: Sequence[str],
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Mapping[str, str]] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        argv = [str(arg) for arg in argv]
        logger.info(f"$ {shlex.join(argv)}")

        full_env = dict(os.environ)
        full_env.update(self.env)
        full_env.update(env or {})

        try:
            completed = subprocess.run(
                argv,
                cwd=str(cwd) if cwd else None,
                env=full_env,
                input=input,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError:
            raise CommandError(argv, 127, f"{argv[0]}: command not found")

        if completed.stdout:
            logger.debug(completed.stdout.rstrip())
        if completed.returncode != 0:
            logger.error(f"Command failed: {shlex.join(argv)}\nError: {completed.stderr}")
            raise CommandError(argv, completed.returncode, completed.stderr)

        return CommandResult(argv, completed.returncode, completed.stdout, completed.stderr)


class DryRunRunner(CommandRunner):
    """Logs commands instead of running them; queries answer with empty output."""

    dry_run = True

    def run(self, argv, cwd=None, env=None, input=None) -> CommandResult:
        argv = [str(arg) for arg in argv]
        where = f" (in {cwd})" if cwd else ""
        logger.info(f"[dry-run] $ {shlex.join(argv)}{where}")
        return CommandResult(argv, 0)
