"""
Groth16 Trusted Setup Pipeline
Compiles a circom circuit and runs the powers-of-tau and circuit-specific
ceremonies with snarkjs, producing proving and verification keys
"""

from .artifacts import (
    # Artifact model
    Stage,
    ArtifactRole,
    Artifact,
    CircuitDescriptor,
    ArtifactLayout,
    ArtifactStore,
    PipelineState,
    parse_power,
)
from .gateway import ToolGateway, ToolResult
from .entropy import EntropySource, SecureEntropySource
from .contribution import (
    ContributionRecord,
    ContributionChainRunner,
    PowersOfTauPhase,
    ProvingKeyPhase,
    LocalResponder,
    ExternalResponder,
)
from .cleanup import CleanupPolicy
from .stages import CeremonySequencer, StageOutcome
from .pipeline import SetupPipeline, PipelineReport
from .errors import (
    # Exceptions
    SetupError,
    InputValidationError,
    ToolNotFoundError,
    ToolInvocationError,
    ToolTimeoutError,
    CeremonyVerificationError,
    EntropyError,
    PreconditionError,
    ExternalResponseTimeout,
)

__version__ = "1.0.0"

__all__ = [
    # Classes
    'Stage',
    'ArtifactRole',
    'Artifact',
    'CircuitDescriptor',
    'ArtifactLayout',
    'ArtifactStore',
    'PipelineState',
    'parse_power',
    'ToolGateway',
    'ToolResult',
    'EntropySource',
    'SecureEntropySource',
    'ContributionRecord',
    'ContributionChainRunner',
    'PowersOfTauPhase',
    'ProvingKeyPhase',
    'LocalResponder',
    'ExternalResponder',
    'CleanupPolicy',
    'CeremonySequencer',
    'StageOutcome',
    'SetupPipeline',
    'PipelineReport',

    # Exceptions
    'SetupError',
    'InputValidationError',
    'ToolNotFoundError',
    'ToolInvocationError',
    'ToolTimeoutError',
    'CeremonyVerificationError',
    'EntropyError',
    'PreconditionError',
    'ExternalResponseTimeout',
]
