"""
Error taxonomy for the consistency harness.

Every failure the harness reports derives from HarnessError. Provisioning,
configuration and protocol errors are fatal and never retried; the only
bounded wait is the barrier poll loop, which raises BarrierTimeout.
"""

from typing import Optional


class HarnessError(Exception):
    """Base class for all harness failures."""


class ProvisionError(HarnessError):
    """A node could not be brought up."""


class PortUnavailable(ProvisionError):
    pass


class LaunchFailed(ProvisionError):
    pass


class ReadinessTimeout(ProvisionError):
    pass


class BarrierTimeout(HarnessError, TimeoutError):
    """A convergence barrier did not observe its condition before the deadline."""

    def __init__(self, description: str, timeout: float, last_result=None):
        self.description = description
        self.timeout = timeout
        self.last_result = last_result
        super().__init__(
            f"Condition '{description}' not met within {timeout}s. Last result: {last_result}"
        )


class DivergenceError(HarnessError):
    """Two datasets (or two progress markers) disagree."""

    def __init__(self, message: str, result: Optional["ComparisonResult"] = None):  # noqa: F821
        self.result = result
        super().__init__(message)


class ProtocolError(HarnessError):
    """A node answered a command with an error or an unexpected reply."""


class ConfigRejected(HarnessError):
    """A live CONFIG SET was refused by the node."""


class AdmissionError(HarnessError):
    """An output-buffer limit was not enforced the way it is configured."""


class ToolFailed(HarnessError):
    """An external utility exited with a non-zero status."""

    def __init__(self, argv, returncode: int, output: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        super().__init__(f"{argv[0]} exited with {returncode}: {output[-2000:]}")


class WorkspaceError(HarnessError):
    """A local directory the harness writes to could not be prepared."""
