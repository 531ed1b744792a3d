"""
Zero-Knowledge Proof Orchestration for Nullification Batches
Groth16 proofs over the externally compiled nullification circuit
"""

import json
import subprocess
import secrets
import logging
import time
import asyncio
import os
import stat
import tempfile
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Optional, Any, Callable, Sequence, Union

from curve.babyjubjub import Point, Scalar
from encryption.elgamal import ElGamalCiphertext, validate_plaintext
from utils.utils import check_command_exists, hardware_concurrency

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


# ============================================================================
# EXCEPTIONS
# ============================================================================


class ZKError(Exception):
    """Base exception for ZK operations"""
    pass


class ProofGenerationError(ZKError):
    """Proof generation failed"""
    pass


class ProofVerificationError(ZKError):
    """Proof verification could not be carried out"""
    pass


# ============================================================================
# CIRCUIT INPUT CONTRACT
# ============================================================================


def build_circuit_inputs(ciphertext: ElGamalCiphertext,
                         pk_voter: Point,
                         pk_authority: Point,
                         r: Scalar,
                         m: int,
                         sk_voter: Scalar) -> Dict[str, Any]:
    """
    Inputs for the nullification circuit. Every big integer is a decimal
    string. The result holds secret material and must never be logged.
    """
    m = validate_plaintext(m)
    return {
        "ciphertext": ciphertext.as_circuit_vector(),
        "pk_voter": [str(pk_voter.x), str(pk_voter.y)],
        "pk_authority": [str(pk_authority.x), str(pk_authority.y)],
        "r": str(r),
        "m": str(m),
        "sk_voter": str(sk_voter),
    }


@dataclass
class ProofInput:
    id: str
    inputs: Dict[str, Any]

    def __repr__(self) -> str:
        return f"ProofInput(id={self.id!r})"


@dataclass
class ProofResult:
    id: str
    success: bool
    proof: Optional[Dict[str, Any]] = None
    public_signals: Optional[List[str]] = None
    error: Optional[str] = None
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {'proof': self.proof, 'publicSignals': self.public_signals}


# ============================================================================
# PROVERS
# ============================================================================


class NullificationProver(ABC):
    """Black-box prover for the nullification circuit"""

    @abstractmethod
    def prove(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """Return {"proof": ..., "publicSignals": [...]} or raise ProofGenerationError"""

    @abstractmethod
    def verify(self, proof: Dict[str, Any], public_signals: List[str]) -> bool:
        """Check a proof against its public signals"""


class SnarkjsProver(NullificationProver):
    """Prover backed by the snarkjs command line tool"""

    def __init__(self,
                 wasm_file: Path,
                 zkey_file: Path,
                 vkey_file: Path,
                 snarkjs_command: str = "snarkjs",
                 timeout: int = 60):
        self.wasm_file = Path(wasm_file)
        self.zkey_file = Path(zkey_file)
        self.vkey_file = Path(vkey_file)
        self.snarkjs_command = snarkjs_command
        self.timeout = timeout

    @classmethod
    def from_config(cls, zk_config) -> 'SnarkjsProver':
        return cls(
            wasm_file=zk_config.wasm_file,
            zkey_file=zk_config.zkey_file,
            vkey_file=zk_config.vkey_file,
            snarkjs_command=zk_config.snarkjs_command,
            timeout=zk_config.proof_timeout,
        )

    def check_artifacts(self):
        missing = [str(p) for p in (self.wasm_file, self.zkey_file, self.vkey_file)
                   if not p.exists()]
        if missing:
            raise ZKError(f"Missing circuit artifacts: {', '.join(missing)}")
        if not check_command_exists(self.snarkjs_command):
            raise ZKError(f"{self.snarkjs_command} not found on PATH")

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise ProofGenerationError(
                f"snarkjs timed out after {self.timeout}s") from e
        except OSError as e:
            raise ProofGenerationError(f"Could not run snarkjs: {e}") from e

    def prove(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """Generate proof using snarkjs with secure file handling"""
        with tempfile.TemporaryDirectory() as temp_dir:
            temp_path = Path(temp_dir)

            # Witness holds sk_voter and r
            input_file = temp_path / "input.json"
            self._write_private(input_file, json.dumps(inputs).encode())

            proof_file = temp_path / "proof.json"
            public_file = temp_path / "public.json"

            cmd = [
                self.snarkjs_command, 'groth16', 'fullprove',
                str(input_file),
                str(self.wasm_file),
                str(self.zkey_file),
                str(proof_file),
                str(public_file)
            ]

            try:
                result = self._run(cmd)
            finally:
                self._secure_cleanup(input_file)

            if result.returncode != 0:
                raise ProofGenerationError(
                    f"Proof generation failed: {result.stderr.strip()}")

            try:
                proof = json.loads(proof_file.read_text())
                public_signals = json.loads(public_file.read_text())
            except (OSError, ValueError) as e:
                raise ProofGenerationError(
                    f"Could not read snarkjs output: {e}") from e

        if not isinstance(public_signals, list):
            raise ProofGenerationError("Invalid public signals")

        return {'proof': proof, 'publicSignals': [str(s) for s in public_signals]}

    def verify(self, proof: Dict[str, Any], public_signals: List[str]) -> bool:
        if not self.vkey_file.exists():
            raise ProofVerificationError(
                f"Verification key not found: {self.vkey_file}")

        with tempfile.TemporaryDirectory() as temp_dir:
            temp_path = Path(temp_dir)
            proof_file = temp_path / "proof.json"
            public_file = temp_path / "public.json"
            proof_file.write_text(json.dumps(proof))
            public_file.write_text(json.dumps(public_signals))

            cmd = [
                self.snarkjs_command, 'groth16', 'verify',
                str(self.vkey_file),
                str(public_file),
                str(proof_file)
            ]
            try:
                result = self._run(cmd)
            except ProofGenerationError as e:
                raise ProofVerificationError(str(e)) from e

        return result.returncode == 0 and "OK!" in result.stdout

    @staticmethod
    def _write_private(path: Path, data: bytes):
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL,
                     stat.S_IRUSR | stat.S_IWUSR)
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def _secure_cleanup(path: Union[str, Path]):
        """Overwrite and delete file"""
        path = Path(path)
        try:
            if path.exists():
                size = path.stat().st_size
                with open(path, 'r+b') as f:
                    f.write(secrets.token_bytes(size))
                    f.flush()
                    os.fsync(f.fileno())
                path.unlink()
        except OSError as e:
            logger.warning(f"Could not securely remove {path.name}: {e}")


# ============================================================================
# ORCHESTRATOR
# ============================================================================


class ProofOrchestrator:
    """
    Runs one proof per batch item on a bounded worker pool.

    Each item succeeds or fails on its own; a failure never cancels
    siblings. Whether a partially failed batch is usable is the caller's
    decision (see ``require_all``).
    """

    def __init__(self, prover: NullificationProver, max_workers: Optional[int] = None):
        if max_workers is not None and max_workers < 1:
            raise ValueError("max_workers must be positive")
        self.prover = prover
        self.max_workers = max_workers

    def _pool_size(self, n_items: int) -> int:
        return max(1, min(self.max_workers or hardware_concurrency(), n_items))

    def _prove_one(self, item: ProofInput) -> ProofResult:
        start = time.time()
        try:
            output = self.prover.prove(item.inputs)
            proof = output['proof']
            public_signals = output['publicSignals']
        except Exception as e:
            duration = time.time() - start
            logger.warning(f"Proof {item.id} failed after {duration:.2f}s ({type(e).__name__})")
            return ProofResult(id=item.id, success=False,
                               error=str(e), duration=duration)

        return ProofResult(id=item.id, success=True, proof=proof,
                           public_signals=public_signals,
                           duration=time.time() - start)

    async def generate_batch(self,
                             inputs: Sequence[ProofInput],
                             progress: Optional[ProgressCallback] = None) -> List[ProofResult]:
        """Prove every input; results come back in input order"""
        total = len(inputs)
        if total == 0:
            return []

        loop = asyncio.get_running_loop()
        workers = self._pool_size(total)
        completed = 0
        start = time.time()

        logger.info(f"Generating {total} proofs with {workers} workers")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="prover") as executor:
            futures = [loop.run_in_executor(executor, self._prove_one, item)
                       for item in inputs]

            for next_done in asyncio.as_completed(futures):
                await next_done
                completed += 1
                if progress is not None:
                    progress(completed, total)

            results = [f.result() for f in futures]

        failed = sum(1 for r in results if not r.success)
        logger.info(
            f"Proof batch finished in {time.time() - start:.2f}s "
            f"({total - failed}/{total} succeeded)")
        return results

    async def verify_batch(self, results: Sequence[ProofResult]) -> List[bool]:
        """Verify successful results in parallel; failed results verify as False"""
        if not results:
            return []

        loop = asyncio.get_running_loop()

        def check(result: ProofResult) -> bool:
            if not result.success:
                return False
            try:
                return self.prover.verify(result.proof, result.public_signals)
            except Exception as e:
                logger.warning(f"Verification of {result.id} failed ({type(e).__name__})")
                return False

        with ThreadPoolExecutor(max_workers=self._pool_size(len(results)),
                                thread_name_prefix="verifier") as executor:
            return list(await asyncio.gather(
                *[loop.run_in_executor(executor, check, r) for r in results]))

    @staticmethod
    def require_all(results: Sequence[ProofResult]) -> List[ProofResult]:
        failed = [r.id for r in results if not r.success]
        if failed:
            raise ProofGenerationError(
                f"{len(failed)} of {len(results)} proofs failed")
        return list(results)
