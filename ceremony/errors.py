"""
Exception taxonomy for the trusted setup pipeline.

Every failure the pipeline can surface derives from SetupError so the
command surface can map it to a non-zero exit status with a precise
message naming the stage and artifact involved.
"""

from pathlib import Path
from typing import Optional, Union


class SetupError(Exception):
    """Base exception for setup pipeline operations"""

    def __init__(self, message: str, stage: Optional[str] = None,
                 artifact: Optional[Union[str, Path]] = None):
        self.stage = stage
        self.artifact = str(artifact) if artifact is not None else None
        super().__init__(message)

    def __str__(self) -> str:
        message = super().__str__()
        context = []
        if self.stage:
            context.append(f"stage={self.stage}")
        if self.artifact:
            context.append(f"artifact={self.artifact}")
        if context:
            return f"{message} ({', '.join(context)})"
        return message


class InputValidationError(SetupError):
    """Circuit reference, exponent or environment is invalid"""
    pass


class ToolNotFoundError(InputValidationError):
    """A required external tool is not installed or not on PATH"""
    pass


class ToolInvocationError(SetupError):
    """External tool returned non-zero or did not produce its outputs"""

    def __init__(self, message: str, operation: str, returncode: Optional[int] = None,
                 stdout: str = "", stderr: str = "", **kwargs):
        self.operation = operation
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message, **kwargs)


class ToolTimeoutError(ToolInvocationError):
    """External tool exceeded its wall-clock timeout"""
    pass


class CeremonyVerificationError(SetupError):
    """A produced parameter file failed its integrity check.

    Not recoverable by re-running the failed step: entropy committed
    upstream cannot be retracted, so the ceremony has to restart.
    """
    pass


class EntropyError(SetupError):
    """Entropy token is too weak or was reused within a run"""
    pass


class PreconditionError(SetupError):
    """A stage or cleanup was requested before its inputs were ready"""
    pass


class ExternalResponseTimeout(SetupError):
    """No response file arrived from the external contributor in time"""
    pass
