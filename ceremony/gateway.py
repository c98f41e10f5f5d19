"""
External Tool Gateway.

Runs the circuit compiler (circom) and the proving-system CLI (snarkjs)
as opaque subprocesses, one method per ceremony operation. Any non-zero
exit, timeout, or missing declared output is raised as a typed
ToolInvocationError carrying the operation name and captured output.
The gateway never retries.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from config.config import ToolConfig
from utils.utils import check_command_exists

from .errors import ToolInvocationError, ToolNotFoundError, ToolTimeoutError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Sentinel so callers can pass timeout=None to disable the limit
_DEFAULT = object()

INSTALL_HINTS = {
    "circom": "see https://docs.circom.io/getting-started/installation/",
    "snarkjs": "npm install -g snarkjs",
}


@dataclass
class ToolResult:
    """Outcome of one successful tool invocation"""
    operation: str
    argv: List[str]
    returncode: int
    stdout: str
    stderr: str
    elapsed: float


class ToolGateway:
    """Invokes circom and snarkjs with a fixed argument grammar per operation"""

    def __init__(self, config: Optional[ToolConfig] = None):
        self.config = config or ToolConfig()

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    def missing_tools(self) -> List[str]:
        return [binary for binary in (self.config.circom_bin, self.config.snarkjs_bin)
                if not check_command_exists(binary)]

    def ensure_available(self):
        """Fail before the pipeline starts when a required tool is missing"""
        missing = self.missing_tools()
        if missing:
            hints = "; ".join(
                f"'{binary}' ({INSTALL_HINTS.get(Path(binary).name, 'install it and add it to PATH')})"
                for binary in missing)
            raise ToolNotFoundError(f"Required tools not installed or not on PATH: {hints}")

    # ------------------------------------------------------------------
    # Core invocation
    # ------------------------------------------------------------------

    async def run(self, operation: str, argv: Sequence[PathLike], cwd: Optional[PathLike] = None,
                  outputs: Sequence[PathLike] = (), stdin: Optional[str] = None,
                  timeout=_DEFAULT) -> ToolResult:
        """Run one tool invocation to completion.

        Entropy must be passed through ``stdin``, never ``argv``: the
        command line is logged and visible to other local users.
        """
        if timeout is _DEFAULT:
            timeout = self.config.tool_timeout
        argv = [str(arg) for arg in argv]

        logger.info(f"=== {operation} ===")
        logger.info(f"Command: {' '.join(argv)}")
        start = time.time()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd is not None else None,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ToolNotFoundError(f"{operation}: executable not found: {argv[0]}") from e
        except OSError as e:
            raise ToolInvocationError(
                f"{operation}: could not start {argv[0]}: {e}", operation=operation) from e

        payload = (stdin + "\n").encode() if stdin is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout)
        except asyncio.TimeoutError:
            await self._terminate(process)
            raise ToolTimeoutError(
                f"{operation} timed out after {timeout} seconds", operation=operation)
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        elapsed = time.time() - start
        result = ToolResult(
            operation=operation,
            argv=argv,
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            elapsed=elapsed,
        )

        if result.returncode != 0:
            logger.error(f"Error during {operation} (exit code {result.returncode})")
            logger.error(f"stdout: {result.stdout}")
            logger.error(f"stderr: {result.stderr}")
            detail = (result.stderr.strip() or result.stdout.strip()).splitlines()
            tail = detail[-1] if detail else "no output"
            raise ToolInvocationError(
                f"{operation} failed with exit code {result.returncode}: {tail}",
                operation=operation, returncode=result.returncode,
                stdout=result.stdout, stderr=result.stderr)

        missing = [str(path) for path in outputs if not Path(path).exists()]
        if missing:
            raise ToolInvocationError(
                f"{operation} exited 0 but did not produce {', '.join(missing)}",
                operation=operation, returncode=result.returncode,
                stdout=result.stdout, stderr=result.stderr)

        logger.info(f"Completed in {elapsed:.2f} seconds")
        if result.stdout.strip():
            logger.debug(f"STDOUT: {result.stdout.strip()}")
        return result

    @staticmethod
    async def _terminate(process):
        if process.returncode is None:
            process.kill()
            await process.wait()

    def _snarkjs(self, *args: PathLike) -> List[str]:
        return [self.config.snarkjs_bin, *[str(a) for a in args]]

    def _verbose(self) -> List[str]:
        return ["-v"] if self.config.verbose else []

    # ------------------------------------------------------------------
    # Compiler
    # ------------------------------------------------------------------

    async def compile_circuit(self, source: Path, output_dir: Path, name: str) -> ToolResult:
        # circom runs inside output_dir, so every path it is given must be absolute
        output_dir = Path(output_dir).absolute()
        argv = [self.config.circom_bin, str(Path(source).absolute()), *self.config.compile_flags,
                "-o", str(output_dir)]
        for include in self.config.include_paths:
            argv += ["-l", str(Path(include).absolute())]
        return await self.run(
            "circom compile", argv, cwd=output_dir,
            outputs=[output_dir / f"{name}.r1cs"])

    async def r1cs_info(self, r1cs: Path) -> ToolResult:
        return await self.run("r1cs info", self._snarkjs("r1cs", "info", r1cs))

    async def r1cs_print(self, r1cs: Path, sym: Path) -> ToolResult:
        return await self.run("r1cs print", self._snarkjs("r1cs", "print", r1cs, sym))

    # ------------------------------------------------------------------
    # Phase 1: powers of tau
    # ------------------------------------------------------------------

    async def ptau_new(self, power: int, output: Path) -> ToolResult:
        argv = self._snarkjs("powersoftau", "new", self.config.curve, power, output) + self._verbose()
        return await self.run("powersoftau new", argv, outputs=[output])

    async def ptau_contribute(self, source: Path, output: Path, name: str, entropy: str) -> ToolResult:
        argv = self._snarkjs("powersoftau", "contribute", source, output, f"--name={name}") + self._verbose()
        return await self.run("powersoftau contribute", argv, outputs=[output], stdin=entropy)

    async def ptau_export_challenge(self, source: Path, challenge: Path) -> ToolResult:
        argv = self._snarkjs("powersoftau", "export", "challenge", source, challenge)
        return await self.run("powersoftau export challenge", argv, outputs=[challenge])

    async def ptau_challenge_contribute(self, challenge: Path, response: Path, entropy: str,
                                        timeout=_DEFAULT) -> ToolResult:
        argv = self._snarkjs("powersoftau", "challenge", "contribute", self.config.curve, challenge, response)
        return await self.run("powersoftau challenge contribute", argv, outputs=[response],
                              stdin=entropy, timeout=timeout)

    async def ptau_import_response(self, source: Path, response: Path, output: Path, name: str) -> ToolResult:
        argv = self._snarkjs("powersoftau", "import", "response", source, response, output, f"-n={name}")
        return await self.run("powersoftau import response", argv, outputs=[output])

    async def ptau_verify(self, ptau: Path) -> ToolResult:
        return await self.run("powersoftau verify", self._snarkjs("powersoftau", "verify", ptau))

    async def ptau_beacon(self, source: Path, output: Path, beacon_hash: str, iterations: int,
                          name: str) -> ToolResult:
        argv = self._snarkjs("powersoftau", "beacon", source, output, beacon_hash, iterations, f"-n={name}")
        return await self.run("powersoftau beacon", argv, outputs=[output])

    async def ptau_prepare_phase2(self, source: Path, output: Path) -> ToolResult:
        argv = self._snarkjs("powersoftau", "prepare", "phase2", source, output) + self._verbose()
        return await self.run("powersoftau prepare phase2", argv, outputs=[output])

    # ------------------------------------------------------------------
    # Phase 2: circuit-specific proving key
    # ------------------------------------------------------------------

    async def groth16_setup(self, r1cs: Path, ptau: Path, output: Path) -> ToolResult:
        argv = self._snarkjs("groth16", "setup", r1cs, ptau, output)
        return await self.run("groth16 setup", argv, outputs=[output])

    async def zkey_contribute(self, source: Path, output: Path, name: str, entropy: str) -> ToolResult:
        argv = self._snarkjs("zkey", "contribute", source, output, f"--name={name}") + self._verbose()
        return await self.run("zkey contribute", argv, outputs=[output], stdin=entropy)

    async def zkey_export_bellman(self, source: Path, challenge: Path) -> ToolResult:
        argv = self._snarkjs("zkey", "export", "bellman", source, challenge)
        return await self.run("zkey export bellman", argv, outputs=[challenge])

    async def zkey_bellman_contribute(self, challenge: Path, response: Path, entropy: str,
                                      timeout=_DEFAULT) -> ToolResult:
        argv = self._snarkjs("zkey", "bellman", "contribute", self.config.curve, challenge, response)
        return await self.run("zkey bellman contribute", argv, outputs=[response],
                              stdin=entropy, timeout=timeout)

    async def zkey_import_bellman(self, source: Path, response: Path, output: Path, name: str) -> ToolResult:
        argv = self._snarkjs("zkey", "import", "bellman", source, response, output, f"-n={name}")
        return await self.run("zkey import bellman", argv, outputs=[output])

    async def zkey_verify(self, r1cs: Path, ptau: Path, zkey: Path) -> ToolResult:
        return await self.run("zkey verify", self._snarkjs("zkey", "verify", r1cs, ptau, zkey))

    async def zkey_beacon(self, source: Path, output: Path, beacon_hash: str, iterations: int,
                          name: str) -> ToolResult:
        argv = self._snarkjs("zkey", "beacon", source, output, beacon_hash, iterations, f"-n={name}")
        return await self.run("zkey beacon", argv, outputs=[output])

    async def zkey_export_verificationkey(self, zkey: Path, output: Path) -> ToolResult:
        argv = self._snarkjs("zkey", "export", "verificationkey", zkey, output)
        return await self.run("zkey export verificationkey", argv, outputs=[output])
