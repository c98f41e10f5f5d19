"""
Contribution Chain Runner.

Both ceremonies run the same fixed sequence, each step consuming the
previous step's output:

    0  initialize                      -> <step 0000>
    1  contribution A (fresh entropy)  -> <step 0001>
    2  contribution B (fresh entropy)  -> <step 0002>
    3  export challenge / response / import
                                       -> <step 0003>
       verify the chain so far
    4  public beacon                   -> beacon output
       phase 1 only: prepare phase 2   -> terminal candidate
       verify the terminal candidate

CeremonyPhase adapters map these generic steps onto the powers-of-tau
(phase 1) or zkey (phase 2) subcommands of the gateway.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from config.config import CeremonyConfig

from .artifacts import CHALLENGE_STEP, Artifact, ArtifactLayout, Stage
from .entropy import EntropySource, validate_entropy
from .errors import (
    CeremonyVerificationError,
    EntropyError,
    ExternalResponseTimeout,
    ToolInvocationError,
    ToolTimeoutError,
)
from .gateway import ToolGateway

logger = logging.getLogger(__name__)


@dataclass
class ContributionRecord:
    """One link of a contribution chain.

    The entropy is kept only for the lifetime of the run; it is excluded
    from repr and from describe() so it never reaches logs or manifests.
    """
    index: int
    label: str
    source: Path
    output: Path
    kind: str = "contribution"
    entropy: Optional[str] = field(default=None, repr=False, compare=False)

    def describe(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'label': self.label,
            'kind': self.kind,
            'source': str(self.source),
            'output': str(self.output),
        }


@dataclass
class ChainResult:
    stage: Stage
    records: List[ContributionRecord]
    terminal: Path
    intermediates: List[Artifact]
    verified: bool = False


# ============================================================================
# CEREMONY PHASES
# ============================================================================


class CeremonyPhase:
    """Maps the generic chain steps onto one ceremony's tool operations"""

    stage: Stage = None
    description: str = ""

    def __init__(self, gateway: ToolGateway, layout: ArtifactLayout, config: CeremonyConfig):
        self.gateway = gateway
        self.layout = layout
        self.config = config

    @property
    def labels(self) -> List[str]:
        raise NotImplementedError

    @property
    def beacon_name(self) -> str:
        raise NotImplementedError

    def step(self, index: int) -> Artifact:
        raise NotImplementedError

    @property
    def challenge(self) -> Artifact:
        raise NotImplementedError

    @property
    def response(self) -> Artifact:
        raise NotImplementedError

    def intermediates(self) -> List[Artifact]:
        raise NotImplementedError

    def beacon_target(self, candidate: Path) -> Path:
        """Where the beacon step writes its output"""
        raise NotImplementedError

    def external_command(self, challenge: Path, response: Path) -> str:
        raise NotImplementedError

    async def initialize(self, output: Path):
        raise NotImplementedError

    async def contribute(self, source: Path, output: Path, name: str, entropy: str):
        raise NotImplementedError

    async def export_challenge(self, source: Path, challenge: Path):
        raise NotImplementedError

    async def contribute_challenge(self, challenge: Path, response: Path, entropy: str, timeout=None):
        raise NotImplementedError

    async def import_response(self, source: Path, response: Path, output: Path, name: str):
        raise NotImplementedError

    async def verify(self, path: Path):
        raise NotImplementedError

    async def beacon(self, source: Path, output: Path):
        raise NotImplementedError

    async def finalize(self, beacon_output: Path, candidate: Path) -> Path:
        """Turn the beacon output into the stage's terminal candidate"""
        raise NotImplementedError


class PowersOfTauPhase(CeremonyPhase):
    """Phase 1: circuit-agnostic powers of tau for a given exponent"""

    stage = Stage.PHASE1

    @property
    def description(self) -> str:
        return f"powers-of-tau ceremony for power {self.layout.power}"

    @property
    def labels(self) -> List[str]:
        return self.config.phase1_labels

    @property
    def beacon_name(self) -> str:
        return self.config.phase1_beacon_name

    def step(self, index: int) -> Artifact:
        return self.layout.ptau_step(index)

    @property
    def challenge(self) -> Artifact:
        return self.layout.ptau_challenge

    @property
    def response(self) -> Artifact:
        return self.layout.ptau_response

    def intermediates(self) -> List[Artifact]:
        return self.layout.phase1_intermediates()

    def beacon_target(self, candidate: Path) -> Path:
        return self.layout.ptau_beacon.path

    def external_command(self, challenge: Path, response: Path) -> str:
        return (f"snarkjs powersoftau challenge contribute {self.gateway.config.curve} "
                f"{challenge} {response}")

    async def initialize(self, output: Path):
        await self.gateway.ptau_new(self.layout.power, output)

    async def contribute(self, source: Path, output: Path, name: str, entropy: str):
        await self.gateway.ptau_contribute(source, output, name, entropy)

    async def export_challenge(self, source: Path, challenge: Path):
        await self.gateway.ptau_export_challenge(source, challenge)

    async def contribute_challenge(self, challenge: Path, response: Path, entropy: str, timeout=None):
        await self.gateway.ptau_challenge_contribute(challenge, response, entropy, timeout=timeout)

    async def import_response(self, source: Path, response: Path, output: Path, name: str):
        await self.gateway.ptau_import_response(source, response, output, name)

    async def verify(self, path: Path):
        await self.gateway.ptau_verify(path)

    async def beacon(self, source: Path, output: Path):
        await self.gateway.ptau_beacon(
            source, output, self.config.beacon_hash, self.config.beacon_iterations, self.beacon_name)

    async def finalize(self, beacon_output: Path, candidate: Path) -> Path:
        logger.info(" Preparing phase 2...")
        await self.gateway.ptau_prepare_phase2(beacon_output, candidate)
        return candidate


class ProvingKeyPhase(CeremonyPhase):
    """Phase 2: circuit-specific proving key on top of a finished phase 1"""

    stage = Stage.PHASE2

    def __init__(self, gateway: ToolGateway, layout: ArtifactLayout, config: CeremonyConfig,
                 r1cs: Path, ptau: Path):
        super().__init__(gateway, layout, config)
        self.r1cs = r1cs
        self.ptau = ptau

    @property
    def description(self) -> str:
        return f"Groth16 phase 2 for {self.layout.circuit.name}"

    @property
    def labels(self) -> List[str]:
        return self.config.phase2_labels

    @property
    def beacon_name(self) -> str:
        return self.config.phase2_beacon_name

    def step(self, index: int) -> Artifact:
        return self.layout.zkey_step(index)

    @property
    def challenge(self) -> Artifact:
        return self.layout.zkey_challenge

    @property
    def response(self) -> Artifact:
        return self.layout.zkey_response

    def intermediates(self) -> List[Artifact]:
        return self.layout.phase2_intermediates()

    def beacon_target(self, candidate: Path) -> Path:
        return candidate

    def external_command(self, challenge: Path, response: Path) -> str:
        return (f"snarkjs zkey bellman contribute {self.gateway.config.curve} "
                f"{challenge} {response}")

    async def initialize(self, output: Path):
        await self.gateway.groth16_setup(self.r1cs, self.ptau, output)

    async def contribute(self, source: Path, output: Path, name: str, entropy: str):
        await self.gateway.zkey_contribute(source, output, name, entropy)

    async def export_challenge(self, source: Path, challenge: Path):
        await self.gateway.zkey_export_bellman(source, challenge)

    async def contribute_challenge(self, challenge: Path, response: Path, entropy: str, timeout=None):
        await self.gateway.zkey_bellman_contribute(challenge, response, entropy, timeout=timeout)

    async def import_response(self, source: Path, response: Path, output: Path, name: str):
        await self.gateway.zkey_import_bellman(source, response, output, name)

    async def verify(self, path: Path):
        await self.gateway.zkey_verify(self.r1cs, self.ptau, path)

    async def beacon(self, source: Path, output: Path):
        await self.gateway.zkey_beacon(
            source, output, self.config.beacon_hash, self.config.beacon_iterations, self.beacon_name)

    async def finalize(self, beacon_output: Path, candidate: Path) -> Path:
        # The beacon already wrote the candidate
        return beacon_output


# ============================================================================
# CHALLENGE / RESPONSE PROVIDERS
# ============================================================================


class LocalResponder:
    """Automated stand-in for an external contributor, using fresh entropy"""

    needs_entropy = True

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    async def respond(self, phase: CeremonyPhase, challenge: Path, response: Path,
                      entropy: Optional[str] = None):
        logger.info(f" {phase.labels[2]} (challenge/response)...")
        await phase.contribute_challenge(challenge, response, entropy, timeout=self.timeout)


class ExternalResponder:
    """Waits for an air-gapped or cross-tool contributor to drop a response file"""

    needs_entropy = False

    def __init__(self, poll_interval: float = 5.0, timeout: Optional[float] = None):
        self.poll_interval = poll_interval
        self.timeout = timeout

    async def respond(self, phase: CeremonyPhase, challenge: Path, response: Path,
                      entropy: Optional[str] = None):
        logger.info(f" Waiting for external contribution to {phase.description}")
        logger.info(f"   Challenge: {challenge}")
        logger.info(f"   Expected response: {response}")
        logger.info(f"   Contributor command: {phase.external_command(challenge, response)}")

        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        last_size = None
        while True:
            if response.exists():
                size = response.stat().st_size
                # Size stable across two polls: the copy has finished
                if size > 0 and size == last_size:
                    logger.info(f" Received response {response.name} ({size} bytes)")
                    return
                last_size = size
            if deadline is not None and time.monotonic() >= deadline:
                raise ExternalResponseTimeout(
                    f"No response arrived within {self.timeout} seconds",
                    stage=phase.stage.value, artifact=response)
            await asyncio.sleep(self.poll_interval)


# ============================================================================
# CHAIN RUNNER
# ============================================================================


class ContributionChainRunner:
    """Runs the fixed contribution sequence for one ceremony phase"""

    def __init__(self, entropy: EntropySource, responder=None):
        self.entropy = entropy
        self.responder = responder or LocalResponder()

    def _fresh_entropy(self, used: Set[str]) -> str:
        token = validate_entropy(self.entropy.token())
        if token in used:
            raise EntropyError("Entropy source returned a repeated token; refusing to contribute")
        used.add(token)
        return token

    async def _verify(self, phase: CeremonyPhase, path: Path):
        logger.info(f" Verifying {path.name}...")
        try:
            await phase.verify(path)
        except ToolTimeoutError:
            raise
        except ToolInvocationError as e:
            raise CeremonyVerificationError(
                f"Verification of {path.name} failed. The contribution chain cannot be repaired "
                f"by re-running a single step; restart the {phase.description} from scratch. "
                f"Intermediate files were kept for inspection",
                stage=phase.stage.value, artifact=path) from e

    async def run(self, phase: CeremonyPhase, candidate: Path) -> ChainResult:
        """Run the chain and return a verified terminal candidate"""
        logger.info(f" Starting {phase.description}")
        used: Set[str] = set()
        records: List[ContributionRecord] = []

        current = phase.step(0).path
        await phase.initialize(current)

        for index in range(1, CHALLENGE_STEP):
            label = phase.labels[index - 1]
            output = phase.step(index).path
            logger.info(f" {label}...")
            entropy = self._fresh_entropy(used)
            await phase.contribute(current, output, label, entropy)
            records.append(ContributionRecord(index, label, current, output, "contribution", entropy))
            current = output

        label = phase.labels[CHALLENGE_STEP - 1]
        output = phase.step(CHALLENGE_STEP).path
        challenge, response = phase.challenge.path, phase.response.path
        # A response left by an earlier run must never be imported
        for stale in (challenge, response):
            stale.unlink(missing_ok=True)

        await phase.export_challenge(current, challenge)
        entropy = self._fresh_entropy(used) if self.responder.needs_entropy else None
        await self.responder.respond(phase, challenge, response, entropy)
        await phase.import_response(current, response, output, label)
        records.append(ContributionRecord(
            CHALLENGE_STEP, label, current, output, "challenge_response", entropy))
        current = output

        await self._verify(phase, current)

        logger.info(" Applying random beacon...")
        beacon_output = phase.beacon_target(candidate)
        await phase.beacon(current, beacon_output)
        records.append(ContributionRecord(
            CHALLENGE_STEP + 1, phase.beacon_name, current, beacon_output, "beacon"))

        terminal = await phase.finalize(beacon_output, candidate)
        await self._verify(phase, terminal)

        return ChainResult(
            stage=phase.stage,
            records=records,
            terminal=terminal,
            intermediates=phase.intermediates(),
            verified=True,
        )
