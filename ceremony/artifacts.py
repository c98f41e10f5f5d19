"""
Artifact model and filesystem-backed Artifact Store.

Every path the pipeline reads or writes is derived here from the circuit
name and the ceremony exponent, so later manual or external steps can rely
on the layout:

    <ceremony_dir>/pot<N>_final.ptau
    <build_dir>/<name>.r1cs, <name>.sym, <name>_js/<name>.wasm
    <build_dir>/keys/<name>_final.zkey
    <build_dir>/keys/verification_key.json

There is no separate state file. PipelineState is computed by probing the
store for each stage's terminal artifact.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Union

from utils.utils import hash_file

from .errors import InputValidationError

logger = logging.getLogger(__name__)

# snarkjs ships BN128 parameters up to 2^28
MAX_SUPPORTED_POWER = 28

# Chain position of the challenge/response round
CHALLENGE_STEP = 3

_CIRCUIT_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")
_POWER_RE = re.compile(r"^[0-9]+$")


class Stage(Enum):
    """Pipeline stages in execution order"""
    COMPILE = "compile"
    PHASE1 = "phase1"
    PHASE2 = "phase2"
    EXPORT = "export"


STAGE_ORDER = (Stage.COMPILE, Stage.PHASE1, Stage.PHASE2, Stage.EXPORT)


class ArtifactRole(Enum):
    """Logical role of a file produced by the pipeline"""
    PTAU = "ptau"
    R1CS = "r1cs"
    WASM = "wasm"
    SYM = "sym"
    ZKEY = "zkey"
    VERIFICATION_KEY = "verification_key"
    CHALLENGE = "challenge"
    RESPONSE = "response"


@dataclass(frozen=True)
class Artifact:
    """A named file with a role and the stage that produces it.

    Final artifacts are addressable by later stages and never deleted by
    the pipeline; intermediate ones are removed once their stage completes.
    """
    name: str
    role: ArtifactRole
    stage: Stage
    path: Path
    final: bool = False

    def __str__(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class CircuitDescriptor:
    """Circuit identity: a filesystem-safe name and its source path"""
    name: str
    source: Path

    @classmethod
    def from_source(cls, source: Union[str, Path]) -> 'CircuitDescriptor':
        if source is None or str(source).strip() == "":
            raise InputValidationError("Circuit source path is required (--circom)")

        path = Path(source)
        if path.suffix != ".circom":
            raise InputValidationError(
                f"Circom file must have .circom extension (e.g. Pinacle.circom): {path}")
        if not path.is_file():
            raise InputValidationError(f"Circom file '{path}' does not exist")

        # circom names its outputs after the source stem
        name = path.stem
        if not _CIRCUIT_NAME_RE.match(name):
            raise InputValidationError(
                f"Circuit name '{name}' derived from {path.name} is not a filesystem-safe token")

        return cls(name=name, source=path.resolve())


def parse_power(value: Union[str, int]) -> int:
    """Validate a ceremony exponent: a plain non-negative integer"""
    if isinstance(value, bool):
        raise InputValidationError(f"Power of tau must be a valid integer, got {value!r}")
    if isinstance(value, int):
        power = value
        if power < 0:
            raise InputValidationError(f"Power of tau must be non-negative, got {value}")
    else:
        text = "" if value is None else str(value).strip()
        if not text:
            raise InputValidationError("--power flag is required (e.g. 17, 18, 19...)")
        if not _POWER_RE.match(text):
            raise InputValidationError(f"Power of tau must be a valid integer, got '{value}'")
        power = int(text)

    if power > MAX_SUPPORTED_POWER:
        logger.warning(
            f"Power {power} exceeds the largest exponent snarkjs supports for bn128 "
            f"({MAX_SUPPORTED_POWER}); the ceremony is likely to fail")
    return power


@dataclass(frozen=True)
class ArtifactLayout:
    """Deterministic artifact paths for one circuit and exponent"""
    circuit: CircuitDescriptor
    power: int
    ceremony_dir: Path
    build_dir: Path
    keys_dir: Path

    @classmethod
    def for_circuit(cls, circuit: CircuitDescriptor, power: int, ceremony_dir: Path,
                    build_root: Path, keys_subdir: str = "keys") -> 'ArtifactLayout':
        build_dir = Path(build_root) / circuit.name
        return cls(
            circuit=circuit,
            power=power,
            ceremony_dir=Path(ceremony_dir),
            build_dir=build_dir,
            keys_dir=build_dir / keys_subdir,
        )

    # ------------------------------------------------------------------
    # Phase 1 (powers of tau), shared by every circuit using this exponent
    # ------------------------------------------------------------------

    def ptau_step(self, index: int) -> Artifact:
        name = f"pot{self.power}_{index:04d}.ptau"
        return Artifact(name, ArtifactRole.PTAU, Stage.PHASE1, self.ceremony_dir / name)

    @property
    def ptau_challenge(self) -> Artifact:
        name = f"challenge_{CHALLENGE_STEP:04d}"
        return Artifact(name, ArtifactRole.CHALLENGE, Stage.PHASE1, self.ceremony_dir / name)

    @property
    def ptau_response(self) -> Artifact:
        name = f"response_{CHALLENGE_STEP:04d}"
        return Artifact(name, ArtifactRole.RESPONSE, Stage.PHASE1, self.ceremony_dir / name)

    @property
    def ptau_beacon(self) -> Artifact:
        name = f"pot{self.power}_beacon.ptau"
        return Artifact(name, ArtifactRole.PTAU, Stage.PHASE1, self.ceremony_dir / name)

    @property
    def ptau_final(self) -> Artifact:
        name = f"pot{self.power}_final.ptau"
        return Artifact(name, ArtifactRole.PTAU, Stage.PHASE1, self.ceremony_dir / name, final=True)

    # ------------------------------------------------------------------
    # Compiler output
    # ------------------------------------------------------------------

    @property
    def r1cs(self) -> Artifact:
        name = f"{self.circuit.name}.r1cs"
        return Artifact(name, ArtifactRole.R1CS, Stage.COMPILE, self.build_dir / name, final=True)

    @property
    def sym(self) -> Artifact:
        name = f"{self.circuit.name}.sym"
        return Artifact(name, ArtifactRole.SYM, Stage.COMPILE, self.build_dir / name, final=True)

    @property
    def wasm_dir(self) -> Path:
        return self.build_dir / f"{self.circuit.name}_js"

    @property
    def wasm(self) -> Artifact:
        name = f"{self.circuit.name}.wasm"
        return Artifact(name, ArtifactRole.WASM, Stage.COMPILE, self.wasm_dir / name, final=True)

    # ------------------------------------------------------------------
    # Phase 2 (circuit-specific proving key) and export
    # ------------------------------------------------------------------

    def zkey_step(self, index: int) -> Artifact:
        name = f"{self.circuit.name}_{index:04d}.zkey"
        return Artifact(name, ArtifactRole.ZKEY, Stage.PHASE2, self.keys_dir / name)

    @property
    def zkey_challenge(self) -> Artifact:
        name = f"challenge_phase2_{CHALLENGE_STEP:04d}"
        return Artifact(name, ArtifactRole.CHALLENGE, Stage.PHASE2, self.keys_dir / name)

    @property
    def zkey_response(self) -> Artifact:
        name = f"response_phase2_{CHALLENGE_STEP:04d}"
        return Artifact(name, ArtifactRole.RESPONSE, Stage.PHASE2, self.keys_dir / name)

    @property
    def zkey_final(self) -> Artifact:
        name = f"{self.circuit.name}_final.zkey"
        return Artifact(name, ArtifactRole.ZKEY, Stage.PHASE2, self.keys_dir / name, final=True)

    @property
    def verification_key(self) -> Artifact:
        name = "verification_key.json"
        return Artifact(name, ArtifactRole.VERIFICATION_KEY, Stage.EXPORT,
                        self.keys_dir / name, final=True)

    # ------------------------------------------------------------------

    def terminal(self, stage: Stage) -> Artifact:
        """The artifact whose presence marks a stage complete"""
        return {
            Stage.COMPILE: self.r1cs,
            Stage.PHASE1: self.ptau_final,
            Stage.PHASE2: self.zkey_final,
            Stage.EXPORT: self.verification_key,
        }[stage]

    def compiler_outputs(self) -> List[Artifact]:
        return [self.r1cs, self.sym, self.wasm]

    def final_artifacts(self) -> List[Artifact]:
        return [self.ptau_final, self.r1cs, self.sym, self.wasm,
                self.zkey_final, self.verification_key]

    def phase1_intermediates(self) -> List[Artifact]:
        steps = [self.ptau_step(i) for i in range(CHALLENGE_STEP + 1)]
        return steps + [self.ptau_challenge, self.ptau_response, self.ptau_beacon]

    def phase2_intermediates(self) -> List[Artifact]:
        steps = [self.zkey_step(i) for i in range(CHALLENGE_STEP + 1)]
        return steps + [self.zkey_challenge, self.zkey_response]


class ArtifactStore:
    """Filesystem-backed storage for pipeline outputs.

    Presence of a non-empty file is the only checkpoint the pipeline knows.
    """

    def exists(self, artifact: Artifact) -> bool:
        path = artifact.path
        try:
            return path.is_file() and path.stat().st_size > 0
        except OSError:
            return False

    def ensure_dir(self, directory: Path) -> Path:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    @staticmethod
    def staging_path(artifact: Artifact) -> Path:
        """Temporary name in the same directory, keeping the extension"""
        path = artifact.path
        return path.with_name(f"{path.stem}.staging{path.suffix}")

    def discard_staging(self, artifact: Artifact) -> None:
        staged = self.staging_path(artifact)
        if staged.exists():
            logger.info(f"Removing leftover staging file {staged}")
            staged.unlink()

    def promote(self, staged: Path, artifact: Artifact) -> Path:
        """Atomically move a verified staging file onto its final name"""
        self.ensure_dir(artifact.path.parent)
        os.replace(staged, artifact.path)
        logger.debug(f"Promoted {staged} -> {artifact.path}")
        return artifact.path

    def remove(self, path: Path) -> bool:
        """Delete a file; returns False when it was already absent"""
        try:
            Path(path).unlink()
            return True
        except FileNotFoundError:
            return False

    def digest(self, artifact: Artifact) -> str:
        return hash_file(artifact.path)

    def size(self, artifact: Artifact) -> int:
        return artifact.path.stat().st_size


@dataclass
class PipelineState:
    """Checkpoint record derived from terminal artifact presence.

    Computed once at start-up and threaded through the sequencer; stages
    update it as they complete instead of re-probing the filesystem.
    """
    completed: Dict[Stage, bool] = field(default_factory=dict)

    @classmethod
    def probe(cls, store: ArtifactStore, layout: ArtifactLayout) -> 'PipelineState':
        completed = {stage: store.exists(layout.terminal(stage)) for stage in STAGE_ORDER}
        return cls(completed=completed)

    def is_complete(self, stage: Stage) -> bool:
        return self.completed.get(stage, False)

    def mark_complete(self, stage: Stage) -> None:
        self.completed[stage] = True

    def pending(self) -> List[Stage]:
        return [stage for stage in STAGE_ORDER if not self.is_complete(stage)]
