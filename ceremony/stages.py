"""
Ceremony Stage Sequencer.

Runs Compile -> Phase1 -> Phase2 -> Export in strict order. A stage whose
terminal artifact is already present (per the PipelineState computed at
start-up) is skipped; the pipeline does not detect upstream changes, so a
modified circuit with an unchanged name reuses its old constraint system.

A stage that has to run while artifacts derived from its previous output
are still present is refused before any tool is invoked, so a new proving
key never sits next to a verification key exported from an older one.
"""

import json
import logging
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from config.config import SetupConfig
from utils.utils import PerformanceMonitor

from .artifacts import (
    STAGE_ORDER,
    Artifact,
    ArtifactLayout,
    ArtifactStore,
    PipelineState,
    Stage,
)
from .cleanup import CleanupPolicy
from .contribution import (
    ChainResult,
    ContributionChainRunner,
    ContributionRecord,
    PowersOfTauPhase,
    ProvingKeyPhase,
)
from .errors import CeremonyVerificationError, InputValidationError, PreconditionError
from .gateway import ToolGateway

logger = logging.getLogger(__name__)

STAGE_PRECONDITIONS = {
    Stage.COMPILE: (),
    Stage.PHASE1: (),
    Stage.PHASE2: (Stage.COMPILE, Stage.PHASE1),
    Stage.EXPORT: (Stage.PHASE2,),
}

_CONSTRAINTS_RE = re.compile(r'Constraints:\s+(\d+)')
_PUBLIC_INPUTS_RE = re.compile(r'Public Inputs:\s+(\d+)')
_OUTPUTS_RE = re.compile(r'Outputs:\s+(\d+)')

COMPILE_STAGING_DIR = ".compile-staging"


def downstream_stages(stage: Stage) -> List[Stage]:
    """Stages whose inputs derive, directly or transitively, from ``stage``"""
    found: List[Stage] = []
    for candidate in STAGE_ORDER:
        required = STAGE_PRECONDITIONS[candidate]
        if stage in required or any(r in found for r in required):
            found.append(candidate)
    return found


def required_power(domain_rows: int) -> int:
    """Smallest exponent snarkjs accepts for a circuit of this size.

    groth16 setup needs floor(log2(rows)) + 1 <= power, where rows counts
    constraints plus public inputs plus outputs.
    """
    return max(domain_rows.bit_length(), 1)


@dataclass(frozen=True)
class CircuitSize:
    """Counts reported by ``snarkjs r1cs info``"""
    constraints: int
    public_inputs: int = 0
    outputs: int = 0

    @property
    def domain_rows(self) -> int:
        return self.constraints + self.public_inputs + self.outputs

    @property
    def required_power(self) -> int:
        return required_power(self.domain_rows)


def parse_r1cs_info(r1cs_info: str) -> Optional[CircuitSize]:
    match = _CONSTRAINTS_RE.search(r1cs_info)
    if not match:
        return None

    def count(pattern):
        found = pattern.search(r1cs_info)
        return int(found.group(1)) if found else 0

    return CircuitSize(
        constraints=int(match.group(1)),
        public_inputs=count(_PUBLIC_INPUTS_RE),
        outputs=count(_OUTPUTS_RE),
    )


@dataclass
class StageOutcome:
    """What a stage did: reused an artifact or produced it"""
    stage: Stage
    artifact: Path
    skipped: bool
    duration: float = 0.0
    records: List[ContributionRecord] = field(default_factory=list)
    removed: List[Path] = field(default_factory=list)
    size: Optional[CircuitSize] = None

    @property
    def constraints(self) -> Optional[int]:
        return self.size.constraints if self.size else None

    def describe(self) -> Dict[str, Any]:
        return {
            'stage': self.stage.value,
            'artifact': str(self.artifact),
            'skipped': self.skipped,
            'duration': self.duration,
            'constraints': self.constraints,
            'domain_rows': self.size.domain_rows if self.size else None,
            'contributions': [record.describe() for record in self.records],
            'removed': [str(path) for path in self.removed],
        }


class CeremonySequencer:
    """Drives the four stages against an explicit PipelineState"""

    def __init__(self, config: SetupConfig, layout: ArtifactLayout, store: ArtifactStore,
                 gateway: ToolGateway, runner: ContributionChainRunner,
                 cleanup: CleanupPolicy, monitor: Optional[PerformanceMonitor] = None):
        self.config = config
        self.layout = layout
        self.store = store
        self.gateway = gateway
        self.runner = runner
        self.cleanup = cleanup
        self.monitor = monitor or PerformanceMonitor()

    async def run(self, state: PipelineState) -> List[StageOutcome]:
        self.check_state(state)
        outcomes = []
        for stage in STAGE_ORDER:
            outcome = await self.run_stage(stage, state)
            outcomes.append(outcome)
            self.check_capacity(outcome)
        return outcomes

    def check_state(self, state: PipelineState):
        """Fail before any tool call when a pending stage has live dependents"""
        for stage in state.pending():
            self._check_dependents(stage, state)

    def check_capacity(self, outcome: StageOutcome):
        """Fail when the compiled circuit does not fit the ceremony exponent"""
        size = outcome.size
        if outcome.stage is not Stage.COMPILE or size is None:
            return
        power = self.layout.power
        if size.required_power > power:
            raise InputValidationError(
                f"Circuit has {size.constraints} constraints, {size.public_inputs} public inputs and "
                f"{size.outputs} outputs ({size.domain_rows} rows) but power {power} supports fewer "
                f"than {2 ** power}; use --power {size.required_power} or higher",
                stage=Stage.COMPILE.value, artifact=self.layout.r1cs.path)

    async def run_stage(self, stage: Stage, state: PipelineState) -> StageOutcome:
        terminal = self.layout.terminal(stage)

        if state.is_complete(stage):
            logger.info(f" Reusing existing artifact {terminal.path}")
            return StageOutcome(stage=stage, artifact=terminal.path, skipped=True)

        self._check_preconditions(stage, state)
        self._check_dependents(stage, state)

        handler = {
            Stage.COMPILE: self._compile,
            Stage.PHASE1: self._phase1,
            Stage.PHASE2: self._phase2,
            Stage.EXPORT: self._export,
        }[stage]

        logger.info(f" Running stage {stage.value}")
        start = time.time()
        with self.monitor.start_operation(stage.value):
            outcome = await handler()
        outcome.duration = time.time() - start

        state.mark_complete(stage)
        logger.info(f" Stage {stage.value} complete in {outcome.duration:.1f}s: {terminal.path}")
        return outcome

    def _check_preconditions(self, stage: Stage, state: PipelineState):
        for required in STAGE_PRECONDITIONS[stage]:
            artifact = self.layout.terminal(required)
            if not state.is_complete(required) or not self.store.exists(artifact):
                raise PreconditionError(
                    f"Stage {stage.value} requires {required.value} output {artifact.name}",
                    stage=stage.value, artifact=artifact.path)

    def _check_dependents(self, stage: Stage, state: PipelineState):
        derived = [self.layout.terminal(dependent) for dependent in downstream_stages(stage)
                   if state.is_complete(dependent)]
        if derived:
            missing = self.layout.terminal(stage).name
            names = ", ".join(str(artifact.path) for artifact in derived)
            raise PreconditionError(
                f"Stage {stage.value} must run because {missing} is missing, but outputs built "
                f"from the previous {missing} are still present: {names}. Delete them to rebuild "
                f"from {stage.value} onward",
                stage=stage.value, artifact=derived[0].path)

    def _candidate(self, terminal: Artifact) -> Path:
        """Path a stage writes its terminal artifact to before verification"""
        if not self.config.atomic_finalize:
            return terminal.path
        self.store.discard_staging(terminal)
        return self.store.staging_path(terminal)

    def _finalize(self, terminal: Artifact, result: ChainResult) -> StageOutcome:
        if result.terminal != terminal.path:
            self.store.promote(result.terminal, terminal)
        removed = self.cleanup.apply(terminal, result.intermediates, result.verified)
        return StageOutcome(
            stage=terminal.stage,
            artifact=terminal.path,
            skipped=False,
            records=result.records,
            removed=removed,
        )

    # ------------------------------------------------------------------
    # Stage procedures
    # ------------------------------------------------------------------

    async def _compile(self) -> StageOutcome:
        circuit = self.layout.circuit
        build_dir = self.store.ensure_dir(self.layout.build_dir)

        if self.config.atomic_finalize:
            output_dir = build_dir / COMPILE_STAGING_DIR
            if output_dir.exists():
                shutil.rmtree(output_dir)
            output_dir.mkdir(parents=True)
        else:
            output_dir = build_dir

        logger.info(f" Compiling circuit {circuit.source} with circom...")
        await self.gateway.compile_circuit(circuit.source, output_dir, circuit.name)

        r1cs = output_dir / self.layout.r1cs.name
        sym = output_dir / self.layout.sym.name

        info = await self.gateway.r1cs_info(r1cs)
        size = parse_r1cs_info(info.stdout)
        if size is None:
            logger.warning(f"Could not read the constraint count of {r1cs.name}")
        else:
            logger.info(f" Circuit {circuit.name}: {size.constraints} constraints, "
                        f"{size.public_inputs} public inputs, {size.outputs} outputs")

        if self.config.tools.print_constraints and sym.exists():
            await self.gateway.r1cs_print(r1cs, sym)

        # The constraint system is valid for any exponent, so it is kept even
        # when check_capacity rejects this one
        if self.config.atomic_finalize:
            self._promote_compile_output(output_dir)

        return StageOutcome(stage=Stage.COMPILE, artifact=self.layout.r1cs.path,
                            skipped=False, size=size)

    def _promote_compile_output(self, staging: Path):
        """Move compiler output into the build dir, the .r1cs last"""
        build_dir = self.layout.build_dir
        r1cs_name = self.layout.r1cs.name

        for entry in sorted(staging.iterdir()):
            if entry.name == r1cs_name:
                continue
            target = build_dir / entry.name
            if target.is_dir():
                shutil.rmtree(target)
            elif target.exists():
                target.unlink()
            shutil.move(str(entry), str(target))

        self.store.promote(staging / r1cs_name, self.layout.r1cs)
        shutil.rmtree(staging)

    async def _phase1(self) -> StageOutcome:
        self.store.ensure_dir(self.layout.ceremony_dir)
        terminal = self.layout.ptau_final
        phase = PowersOfTauPhase(self.gateway, self.layout, self.config.ceremony)
        result = await self.runner.run(phase, self._candidate(terminal))
        return self._finalize(terminal, result)

    async def _phase2(self) -> StageOutcome:
        self.store.ensure_dir(self.layout.keys_dir)
        terminal = self.layout.zkey_final
        phase = ProvingKeyPhase(
            self.gateway, self.layout, self.config.ceremony,
            r1cs=self.layout.r1cs.path, ptau=self.layout.ptau_final.path)
        logger.info(" Running Groth16 setup and generating proving/verification keys...")
        result = await self.runner.run(phase, self._candidate(terminal))
        return self._finalize(terminal, result)

    async def _export(self) -> StageOutcome:
        self.store.ensure_dir(self.layout.keys_dir)
        terminal = self.layout.verification_key
        candidate = self._candidate(terminal)

        logger.info(" Exporting verification key JSON...")
        await self.gateway.zkey_export_verificationkey(self.layout.zkey_final.path, candidate)
        self._check_verification_key(candidate)

        if candidate != terminal.path:
            self.store.promote(candidate, terminal)
        return StageOutcome(stage=Stage.EXPORT, artifact=terminal.path, skipped=False)

    @staticmethod
    def _check_verification_key(path: Path):
        try:
            with open(path, 'r') as f:
                vkey = json.load(f)
        except (OSError, ValueError) as e:
            raise CeremonyVerificationError(
                f"Exported verification key is not valid JSON: {e}",
                stage=Stage.EXPORT.value, artifact=path) from e

        if not isinstance(vkey, dict) or vkey.get('protocol') != 'groth16':
            protocol = vkey.get('protocol') if isinstance(vkey, dict) else None
            raise CeremonyVerificationError(
                f"Exported verification key has protocol {protocol!r}, expected 'groth16'",
                stage=Stage.EXPORT.value, artifact=path)
