"""Exception hierarchy for homekube"""

from typing import Any, Optional


class HomekubeError(Exception):
    """Base exception for homekube errors"""

    pass


class ConfigError(HomekubeError):
    """Invalid configuration or command-line input"""

    pass


class CommandError(HomekubeError):
    """An external command failed, timed out or could not be started"""

    def __init__(
        self,
        cmd: list[str],
        returncode: Optional[int] = None,
        stderr: str = "",
        timed_out: bool = False,
        message: str = "",
    ):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out

        if not message:
            if timed_out:
                message = f"Command timed out: {' '.join(self.cmd)}"
            elif returncode is None:
                message = f"Command could not be started: {' '.join(self.cmd)}"
            else:
                message = f"Command failed with code {returncode}: {' '.join(self.cmd)}"
            if stderr.strip():
                message = f"{message}: {stderr.strip()}"
        super().__init__(message)


class ProbeError(HomekubeError):
    """Current state of a resource could not be observed"""

    def __init__(self, message: str, cause: Optional[BaseException] = None, timed_out: bool = False):
        super().__init__(message)
        self.cause = cause
        self.timed_out = timed_out or bool(getattr(cause, "timed_out", False))


class ActionError(HomekubeError):
    """A mutating operation failed"""

    def __init__(self, message: str, cause: Optional[BaseException] = None, timed_out: bool = False):
        super().__init__(message)
        self.cause = cause
        self.timed_out = timed_out or bool(getattr(cause, "timed_out", False))


class ConvergenceFailure(HomekubeError):
    """Action completed but the observed state still diverges from the desired one"""

    def __init__(self, label: str, before: Any, after: Any, desired: Any):
        self.label = label
        self.before = before
        self.after = after
        self.desired = desired
        super().__init__(
            f"{label}: still diverging after action (before={before}, after={after}, desired={desired})"
        )


class ReconcilerError(HomekubeError):
    """Reconciler used outside of its lifecycle"""

    pass


class LockHeldError(ReconcilerError):
    """Another run already holds the run lock"""

    pass
