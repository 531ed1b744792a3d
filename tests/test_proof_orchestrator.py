import asyncio
import json
import os
import stat
import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

from encryption.elgamal import ElGamal
from identity.key_derivation import derive_keypair
from zk.zk_proofs import (
    ProofGenerationError,
    ProofInput,
    ProofOrchestrator,
    ProofResult,
    SnarkjsProver,
    ZKError,
    build_circuit_inputs,
)

from conftest import FakeProver, make_secret


def _inputs(n, fail=()):
    return [
        ProofInput(id=f"slot{i}", inputs={
            'ciphertext': [str(i), '0', '0', '1'],
            'pk_authority': ['1', '2'],
            'fail': i in fail,
        })
        for i in range(n)
    ]


def test_results_in_input_order_with_progress(prover):
    progress = []
    orchestrator = ProofOrchestrator(prover, max_workers=3)
    results = asyncio.run(orchestrator.generate_batch(
        _inputs(6), lambda done, total: progress.append((done, total))))

    assert [r.id for r in results] == [f"slot{i}" for i in range(6)]
    assert all(r.success for r in results)
    assert progress == [(i, 6) for i in range(1, 7)]
    assert len(prover.calls) == 6


def test_partial_failure_does_not_abort_siblings():
    prover = FakeProver(should_fail=lambda inputs: inputs['fail'])
    orchestrator = ProofOrchestrator(prover, max_workers=2)
    results = asyncio.run(orchestrator.generate_batch(_inputs(5, fail={1, 3})))

    assert len(prover.calls) == 5
    assert [r.success for r in results] == [True, False, True, False, True]
    failed = results[1]
    assert failed.proof is None
    assert "circuit rejected witness" in failed.error


class CrashingProver(FakeProver):
    def prove(self, inputs):
        if inputs['fail']:
            raise RuntimeError("worker crashed")
        return super().prove(inputs)

    def verify(self, proof, public_signals):
        if public_signals[0] == '2':
            raise OSError("disk full")
        return super().verify(proof, public_signals)


def test_unexpected_prover_error_is_a_per_item_failure(caplog):
    orchestrator = ProofOrchestrator(CrashingProver(), max_workers=2)
    results = asyncio.run(orchestrator.generate_batch(_inputs(3, fail={0})))

    assert [r.success for r in results] == [False, True, True]
    assert "worker crashed" in results[0].error
    assert "RuntimeError" in caplog.text
    assert "worker crashed" not in caplog.text

    assert asyncio.run(orchestrator.verify_batch(results)) == [False, True, False]
    assert "disk full" not in caplog.text

    with pytest.raises(ProofGenerationError):
        ProofOrchestrator.require_all(results)


def test_require_all_passes_complete_batches(prover):
    orchestrator = ProofOrchestrator(prover)
    results = asyncio.run(orchestrator.generate_batch(_inputs(3)))
    assert orchestrator.require_all(results) == results


def test_empty_batch():
    orchestrator = ProofOrchestrator(FakeProver())
    assert asyncio.run(orchestrator.generate_batch([])) == []


def test_pool_is_bounded():
    active = []
    peak = []
    lock = threading.Lock()

    class SlowProver(FakeProver):
        def prove(self, inputs):
            with lock:
                active.append(1)
                peak.append(len(active))
            time.sleep(0.02)
            with lock:
                active.pop()
            return super().prove(inputs)

    orchestrator = ProofOrchestrator(SlowProver(), max_workers=2)
    results = asyncio.run(orchestrator.generate_batch(_inputs(8)))
    assert all(r.success for r in results)
    assert max(peak) <= 2


def test_pool_size_never_exceeds_batch():
    orchestrator = ProofOrchestrator(FakeProver(), max_workers=64)
    assert orchestrator._pool_size(3) == 3
    assert ProofOrchestrator(FakeProver())._pool_size(1) == 1


def test_invalid_worker_count():
    with pytest.raises(ValueError):
        ProofOrchestrator(FakeProver(), max_workers=0)


def test_verify_batch(prover):
    orchestrator = ProofOrchestrator(prover)
    results = asyncio.run(orchestrator.generate_batch(_inputs(3)))
    results.append(ProofResult(id="failed", success=False, error="x"))
    tampered = ProofResult(id="t", success=True, proof=results[0].proof,
                           public_signals=['9'] + results[0].public_signals[1:])
    results.append(tampered)

    assert asyncio.run(orchestrator.verify_batch(results)) == [True, True, True, False, False]


def test_build_circuit_inputs(curve, authority):
    voter = derive_keypair(curve, make_secret("voter"))
    r = curve.scalar(4242)
    ct = ElGamal(curve).encrypt(authority.pk, 1, r)

    inputs = build_circuit_inputs(ct, voter.pk, authority.pk, r, 1, voter.sk)
    assert inputs == {
        'ciphertext': ct.as_circuit_vector(),
        'pk_voter': [str(voter.pk.x), str(voter.pk.y)],
        'pk_authority': [str(authority.pk.x), str(authority.pk.y)],
        'r': '4242',
        'm': '1',
        'sk_voter': str(int(voter.sk)),
    }
    assert all(isinstance(v, str) for v in (inputs['r'], inputs['m'], inputs['sk_voter']))


def test_proof_input_repr_hides_witness():
    item = ProofInput(id="slot", inputs={'sk_voter': '123456789'})
    assert '123456789' not in repr(item)


# ============================================================================
# snarkjs prover (subprocess mocked)
# ============================================================================


class _Completed:
    def __init__(self, returncode=0, stdout="", stderr=""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _prover(tmp_path):
    for name in ("nullification.wasm", "nullification_final.zkey", "verification_key.json"):
        (tmp_path / name).write_text("{}")
    return SnarkjsProver(tmp_path / "nullification.wasm",
                         tmp_path / "nullification_final.zkey",
                         tmp_path / "verification_key.json",
                         timeout=5)


def test_snarkjs_fullprove(tmp_path, monkeypatch):
    seen = {}

    def fake_run(cmd, capture_output, text, timeout):
        seen['cmd'] = cmd
        input_file = Path(cmd[3])
        seen['mode'] = stat.S_IMODE(os.stat(input_file).st_mode)
        seen['inputs'] = json.loads(input_file.read_text())
        Path(cmd[6]).write_text(json.dumps({'pi_a': ['1']}))
        Path(cmd[7]).write_text(json.dumps([1, 2]))
        return _Completed()

    monkeypatch.setattr(subprocess, "run", fake_run)
    result = _prover(tmp_path).prove({'sk_voter': '7'})

    assert seen['cmd'][:3] == ['snarkjs', 'groth16', 'fullprove']
    assert seen['mode'] == 0o600
    assert seen['inputs'] == {'sk_voter': '7'}
    assert not Path(seen['cmd'][3]).exists()
    assert result == {'proof': {'pi_a': ['1']}, 'publicSignals': ['1', '2']}


def test_snarkjs_failure_raises(tmp_path, monkeypatch):
    monkeypatch.setattr(subprocess, "run",
                        lambda *a, **kw: _Completed(returncode=1, stderr="bad witness"))
    with pytest.raises(ProofGenerationError, match="bad witness"):
        _prover(tmp_path).prove({})


def test_snarkjs_timeout_raises(tmp_path, monkeypatch):
    def slow(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs.get('timeout'))

    monkeypatch.setattr(subprocess, "run", slow)
    with pytest.raises(ProofGenerationError, match="timed out"):
        _prover(tmp_path).prove({})


def test_snarkjs_verify(tmp_path, monkeypatch):
    outputs = iter([_Completed(stdout="[INFO]  snarkJS: OK!"),
                    _Completed(returncode=1, stdout="[ERROR] snarkJS: Invalid proof")])
    monkeypatch.setattr(subprocess, "run", lambda *a, **kw: next(outputs))
    prover = _prover(tmp_path)
    assert prover.verify({'pi_a': []}, ['1']) is True
    assert prover.verify({'pi_a': []}, ['1']) is False


def test_missing_artifacts(tmp_path):
    prover = SnarkjsProver(tmp_path / "a.wasm", tmp_path / "b.zkey", tmp_path / "c.json")
    with pytest.raises(ZKError):
        prover.check_artifacts()


def _artifacts(tmp_path):
    paths = [tmp_path / "a.wasm", tmp_path / "b.zkey", tmp_path / "c.json"]
    for path in paths:
        path.write_text("{}")
    return paths


def test_missing_snarkjs_command(tmp_path):
    prover = SnarkjsProver(*_artifacts(tmp_path),
                           snarkjs_command=str(tmp_path / "no-such-snarkjs"))
    with pytest.raises(ZKError, match="not found"):
        prover.check_artifacts()


def test_artifacts_and_command_present(tmp_path):
    SnarkjsProver(*_artifacts(tmp_path), snarkjs_command=sys.executable).check_artifacts()
