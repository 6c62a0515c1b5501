from typing import List, Optional, Sequence


class DeployError(Exception):
    """Base class for every failure the pipeline knows how to report."""


class ConfigError(DeployError, ValueError):
    pass


class CommandError(DeployError):
    """An external command exited with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command '{argv[0]}' exited with status {returncode}"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(message)


class ArtifactNotFoundError(DeployError):
    pass


class OutputsError(DeployError):
    pass


class CompositionError(DeployError):
    def __init__(self, problems: List[str], path: Optional[str] = None):
        self.problems = problems
        self.path = path
        where = f" in {path}" if path else ""
        super().__init__(f"Invalid compose file{where}: " + "; ".join(problems))


class ConcurrentRunError(DeployError):
    pass
