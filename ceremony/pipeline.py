"""
Setup Pipeline: single entry point from a circuit source and an exponent
to Groth16 proving and verification keys.

Validates inputs and the tool environment, probes the artifact store
once, runs the stage sequencer, and writes a run manifest next to the
build outputs.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from config.config import SetupConfig
from utils.utils import PerformanceMonitor, hash_file, load_results, save_results

from .artifacts import (
    STAGE_ORDER,
    Artifact,
    ArtifactLayout,
    ArtifactStore,
    CircuitDescriptor,
    PipelineState,
    Stage,
    parse_power,
)
from .cleanup import CleanupPolicy
from .contribution import ContributionChainRunner, ExternalResponder, LocalResponder
from .entropy import EntropySource, SecureEntropySource
from .errors import InputValidationError
from .gateway import ToolGateway
from .stages import CeremonySequencer, StageOutcome

logger = logging.getLogger(__name__)

# Phase 1 does not depend on the circuit, so a source change never makes it stale
CIRCUIT_STAGES = (Stage.COMPILE, Stage.PHASE2, Stage.EXPORT)


@dataclass
class PipelineReport:
    """Result of one pipeline run"""
    circuit: CircuitDescriptor
    power: int
    layout: ArtifactLayout
    outcomes: List[StageOutcome] = field(default_factory=list)
    manifest: Optional[Path] = None
    stale_artifacts: List[Path] = field(default_factory=list)

    @property
    def executed(self) -> List[Stage]:
        return [outcome.stage for outcome in self.outcomes if not outcome.skipped]

    @property
    def reused(self) -> List[Stage]:
        return [outcome.stage for outcome in self.outcomes if outcome.skipped]

    def artifact_paths(self) -> Dict[str, Path]:
        return {
            'r1cs': self.layout.r1cs.path,
            'wasm': self.layout.wasm.path,
            'zkey': self.layout.zkey_final.path,
            'verification_key': self.layout.verification_key.path,
        }


class SetupPipeline:
    """Drives a full trusted setup for one circuit"""

    def __init__(self, config: Optional[SetupConfig] = None, gateway: Optional[ToolGateway] = None,
                 entropy: Optional[EntropySource] = None, store: Optional[ArtifactStore] = None,
                 responder=None, monitor: Optional[PerformanceMonitor] = None):
        self.config = config or SetupConfig()
        self.gateway = gateway or ToolGateway(self.config.tools)
        self.entropy = entropy or SecureEntropySource(self.config.ceremony.entropy_bytes)
        self.store = store or ArtifactStore()
        self.responder = responder or self._default_responder()
        self.monitor = monitor or PerformanceMonitor()

        logger.info("Initialized trusted setup pipeline")

    def _default_responder(self):
        ceremony = self.config.ceremony
        if ceremony.response_mode == "external":
            return ExternalResponder(
                poll_interval=ceremony.response_poll_interval,
                timeout=ceremony.response_timeout)
        return LocalResponder(timeout=self.config.tools.challenge_timeout)

    def prepare(self, circuit_source: Union[str, Path], power: Union[str, int]) -> ArtifactLayout:
        """Validate inputs and environment and derive the artifact layout"""
        circuit = CircuitDescriptor.from_source(circuit_source)
        power = parse_power(power)
        self.gateway.ensure_available()

        return ArtifactLayout.for_circuit(
            circuit, power,
            ceremony_dir=self.config.ceremony_path,
            build_root=self.config.build_path,
            keys_subdir=self.config.keys_subdir,
        )

    async def run(self, circuit_source: Union[str, Path], power: Union[str, int]) -> PipelineReport:
        layout = self.prepare(circuit_source, power)
        circuit = layout.circuit

        logger.info(f" Circuit: {circuit.name} ({circuit.source})")
        logger.info(f" Power of tau: {layout.power}")

        self.store.ensure_dir(layout.ceremony_dir)
        self.store.ensure_dir(layout.build_dir)

        state = PipelineState.probe(self.store, layout)
        report = PipelineReport(circuit=circuit, power=layout.power, layout=layout)
        report.stale_artifacts = self._check_staleness(layout, state)

        pending = state.pending()
        if pending:
            logger.info(f" Pending stages: {', '.join(stage.value for stage in pending)}")
        else:
            logger.info(" All stages complete, nothing to do")

        sequencer = CeremonySequencer(
            config=self.config,
            layout=layout,
            store=self.store,
            gateway=self.gateway,
            runner=ContributionChainRunner(self.entropy, self.responder),
            cleanup=CleanupPolicy(self.store, self.config.keep_intermediates),
            monitor=self.monitor,
        )

        sequencer.check_state(state)
        try:
            for stage in STAGE_ORDER:
                outcome = await sequencer.run_stage(stage, state)
                report.outcomes.append(outcome)
                sequencer.check_capacity(outcome)
        finally:
            # Record whatever was produced, also when a later stage failed
            if report.executed:
                report.manifest = self._write_manifest(layout, report.outcomes)

        self._log_summary(report)
        return report

    # ------------------------------------------------------------------
    # Run manifest
    # ------------------------------------------------------------------

    def manifest_path(self, layout: ArtifactLayout) -> Path:
        return layout.build_dir / self.config.manifest_name

    def _check_staleness(self, layout: ArtifactLayout, state: PipelineState) -> List[Path]:
        """Compare the circuit source against the digest of the last run.

        Reuse is still decided by artifact presence alone; this only makes
        a changed source visible instead of silently reusing old keys.
        """
        reused = [layout.terminal(stage) for stage in CIRCUIT_STAGES if state.is_complete(stage)]
        if not reused:
            return []

        manifest_path = self.manifest_path(layout)
        try:
            manifest = load_results(manifest_path)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read run manifest {manifest_path}: {e}")
            return []

        if not manifest or not manifest.get('source_digest'):
            return []

        current = hash_file(layout.circuit.source)
        if manifest['source_digest'] == current:
            return []

        stale = [artifact.path for artifact in reused]
        message = (f"Circuit source {layout.circuit.source} changed since the artifacts were built; "
                   f"existing outputs will be reused: {', '.join(str(p) for p in stale)}. "
                   f"Delete them to rebuild")
        if self.config.fail_on_stale_source:
            raise InputValidationError(message, stage=Stage.COMPILE.value, artifact=layout.r1cs.path)
        logger.warning(message)
        return stale

    def _describe_artifact(self, artifact: Artifact) -> Dict[str, Any]:
        return {
            'path': str(artifact.path),
            'size': self.store.size(artifact),
            'blake2b': self.store.digest(artifact),
        }

    def _source_digest(self, layout: ArtifactLayout, outcomes: List[StageOutcome]) -> str:
        """Digest of the source the constraint system was compiled from"""
        compiled = any(o.stage == Stage.COMPILE and not o.skipped for o in outcomes)
        if not compiled:
            try:
                previous = load_results(self.manifest_path(layout))
            except (OSError, ValueError):
                previous = None
            # A reused .r1cs keeps the digest it was built from
            if previous and previous.get('source_digest'):
                return previous['source_digest']
        return hash_file(layout.circuit.source)

    def _write_manifest(self, layout: ArtifactLayout, outcomes: List[StageOutcome]) -> Optional[Path]:
        artifacts = {
            artifact.role.value: self._describe_artifact(artifact)
            for artifact in layout.final_artifacts()
            if self.store.exists(artifact)
        }
        results = {
            'circuit': layout.circuit.name,
            'source': str(layout.circuit.source),
            'source_digest': self._source_digest(layout, outcomes),
            'power': layout.power,
            'stages': [outcome.describe() for outcome in outcomes],
            'artifacts': artifacts,
            'performance': self.monitor.get_summary(),
        }
        try:
            return save_results(results, self.manifest_path(layout))
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Could not write run manifest: {e}")
            return None

    def _log_summary(self, report: PipelineReport):
        logger.info("=" * 60)
        logger.info(f" Trusted setup completed for {report.circuit.name} (power {report.power})")
        if report.executed:
            logger.info(f"   Executed: {', '.join(stage.value for stage in report.executed)}")
        if report.reused:
            logger.info(f"   Reused: {', '.join(stage.value for stage in report.reused)}")
        paths = report.artifact_paths()
        logger.info(f"   R1CS: {paths['r1cs']}")
        logger.info(f"   WASM: {paths['wasm']}")
        logger.info(f"   ZKey: {paths['zkey']}")
        logger.info(f"   Verification Key: {paths['verification_key']}")
        if report.manifest:
            logger.info(f"   Manifest: {report.manifest}")
        logger.info("=" * 60)

