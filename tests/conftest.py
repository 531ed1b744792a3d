import hashlib
import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from config.config import NullificationConfig, SystemConfig, ZKConfig
from curve.babyjubjub import CurveContext
from identity.key_derivation import derive_keypair
from storage.election_store import InMemoryElectionStore, Participant
from zk.zk_proofs import NullificationProver, ProofGenerationError


def make_secret(label: str) -> bytes:
    return hashlib.sha256(label.encode()).digest()


class FakeProver(NullificationProver):
    """
    Deterministic stand-in for the nullification circuit.

    The proof is a digest of the public part of the inputs, so ``verify``
    detects any tampering with the public signals.
    """

    def __init__(self, should_fail: Optional[Callable[[Dict[str, Any]], bool]] = None):
        self.should_fail = should_fail
        self.calls: List[Dict[str, Any]] = []
        self.threads = set()
        self._lock = threading.Lock()

    @staticmethod
    def _digest(public_signals: List[str]) -> str:
        return hashlib.sha256(json.dumps(public_signals).encode()).hexdigest()

    def prove(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(inputs)
            self.threads.add(threading.get_ident())
        if self.should_fail is not None and self.should_fail(inputs):
            raise ProofGenerationError("circuit rejected witness")
        public_signals = list(inputs['ciphertext']) + list(inputs['pk_authority'])
        return {
            'proof': {'protocol': 'fake', 'digest': self._digest(public_signals)},
            'publicSignals': public_signals,
        }

    def verify(self, proof: Dict[str, Any], public_signals: List[str]) -> bool:
        return proof.get('digest') == self._digest(list(public_signals))


@pytest.fixture(scope="session")
def curve():
    return CurveContext.babyjubjub()


@pytest.fixture
def store():
    return InMemoryElectionStore()


@pytest.fixture
def prover():
    return FakeProver()


@pytest.fixture(scope="session")
def authority(curve):
    return derive_keypair(curve, make_secret("authority"))


@pytest.fixture
def config(tmp_path):
    return SystemConfig(
        nullification=NullificationConfig(k=3, max_nullification_rounds=4),
        zk_config=ZKConfig(parallel_workers=2),
        log_dir=tmp_path / "logs",
        results_dir=tmp_path / "results",
    )


@pytest.fixture
def future():
    return datetime.now(timezone.utc) + timedelta(days=1)


def register_roster(curve, store, election_id: str, count: int):
    """Add ``count`` participants; returns {participant_id: keypair}"""
    keys = {}
    for i in range(count):
        pid = f"voter_{i:03d}"
        keypair = derive_keypair(curve, make_secret(pid))
        store.add_participant(Participant(
            election_id=election_id,
            participant_id=pid,
            public_key_x=str(keypair.pk.x),
            public_key_y=str(keypair.pk.y),
        ))
        keys[pid] = keypair
    return keys
