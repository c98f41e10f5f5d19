"""
Shared fixtures: a recording gateway that fakes circom/snarkjs outputs,
deterministic entropy, and a throwaway project directory.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import pytest

from ceremony.artifacts import ArtifactLayout, ArtifactStore, CircuitDescriptor
from ceremony.entropy import EntropySource
from ceremony.errors import ToolInvocationError
from ceremony.gateway import ToolGateway, ToolResult
from config.config import SetupConfig, ToolConfig


@dataclass
class FakeCall:
    operation: str
    argv: List[str]
    stdin: Optional[str]


class FakeGateway(ToolGateway):
    """Records every invocation and writes placeholder outputs"""

    def __init__(self, config: Optional[ToolConfig] = None, constraints: int = 3,
                 fail_on=(), missing=(), vkey_payload=None, public_inputs: int = 0, output_signals: int = 1):
        super().__init__(config or ToolConfig())
        self.calls: List[FakeCall] = []
        self.constraints = constraints
        self.public_inputs = public_inputs
        self.output_signals = output_signals
        self.fail_on = set(fail_on)
        self.missing = list(missing)
        self.vkey_payload = vkey_payload or {"protocol": "groth16", "curve": "bn128", "nPublic": 1}

    def missing_tools(self) -> List[str]:
        return list(self.missing)

    @property
    def operations(self) -> List[str]:
        return [call.operation for call in self.calls]

    async def run(self, operation, argv, cwd=None, outputs=(), stdin=None, timeout=None):
        argv = [str(arg) for arg in argv]
        self.calls.append(FakeCall(operation, argv, stdin))

        if operation in self.fail_on:
            raise ToolInvocationError(
                f"{operation} failed with exit code 1: simulated failure",
                operation=operation, returncode=1, stderr="simulated failure")

        for output in outputs:
            self._write_output(operation, Path(output))

        stdout = ""
        if operation == "r1cs info":
            stdout = (f"[INFO]  snarkJS: # of Constraints: {self.constraints}\n"
                      f"[INFO]  snarkJS: # of Public Inputs: {self.public_inputs}\n"
                      f"[INFO]  snarkJS: # of Outputs: {self.output_signals}\n")
        return ToolResult(operation, argv, 0, stdout, "", 0.0)

    def _write_output(self, operation: str, output: Path):
        output.parent.mkdir(parents=True, exist_ok=True)
        if operation == "zkey export verificationkey":
            output.write_text(json.dumps(self.vkey_payload))
            return

        output.write_text(f"{operation}:{output.name}\n")
        if operation == "circom compile":
            name = output.stem
            (output.parent / f"{name}.sym").write_text("1,1,0,main.out\n")
            wasm_dir = output.parent / f"{name}_js"
            wasm_dir.mkdir(exist_ok=True)
            (wasm_dir / f"{name}.wasm").write_bytes(b"\x00asm\x01\x00\x00\x00")


class CountingEntropySource(EntropySource):
    """Distinct 256-bit hex tokens in a fixed order"""

    def __init__(self, start: int = 1):
        self.counter = start
        self.issued: List[str] = []

    def token(self) -> str:
        token = f"{self.counter:064x}"
        self.counter += 1
        self.issued.append(token)
        return token


class FixedEntropySource(EntropySource):
    """Always returns the same token"""

    def __init__(self, token: str):
        self.value = token

    def token(self) -> str:
        return self.value


CIRCUIT_SOURCE = """pragma circom 2.0.0;

template Multiplier() {
    signal input a;
    signal input b;
    signal output c;
    c <== a * b;
}

component main = Multiplier();
"""


@pytest.fixture
def circuit_file(tmp_path) -> Path:
    path = tmp_path / "circuits" / "Demo.circom"
    path.parent.mkdir(parents=True)
    path.write_text(CIRCUIT_SOURCE)
    return path


@pytest.fixture
def setup_config(tmp_path) -> SetupConfig:
    config = SetupConfig(root_dir=tmp_path)
    config.ceremony.response_poll_interval = 0.01
    return config


@pytest.fixture
def gateway(setup_config) -> FakeGateway:
    return FakeGateway(setup_config.tools)


@pytest.fixture
def entropy() -> CountingEntropySource:
    return CountingEntropySource()


@pytest.fixture
def store() -> ArtifactStore:
    return ArtifactStore()


@pytest.fixture
def layout(circuit_file, setup_config) -> ArtifactLayout:
    circuit = CircuitDescriptor.from_source(circuit_file)
    return ArtifactLayout.for_circuit(
        circuit, 12,
        ceremony_dir=setup_config.ceremony_path,
        build_root=setup_config.build_path,
        keys_subdir=setup_config.keys_subdir,
    )
