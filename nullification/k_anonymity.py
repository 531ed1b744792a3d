"""
k-Anonymity Nullification Batching
==================================
A nullification is never submitted alone. The voter's own slot is hidden
among k-1 dummy slots targeting other participants drawn uniformly at
random from the election roster:

    own slot     m = 1 (real nullification) or 0 (dummy round)
    other slots  m = 0

Every slot is encrypted under the authority's public key and carries a
zero-knowledge proof that it encrypts a bit. Stored rows hold only the
target participant, the ciphertext and the proof, so the real slot cannot
be recovered from storage.

Submission is all-or-nothing: a batch is persisted only when every proof
succeeded, in one atomic write. Any failure surfaces as the same generic
error so that error content does not leak which slot failed.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from curve.babyjubjub import CurveContext, InvalidPointError, Point, Scalar
from encryption.elgamal import ElGamal, ElGamalCiphertext
from identity.key_derivation import DerivedKeypair
from storage.election_store import ElectionStore, NullificationRow, Participant
from zk.zk_proofs import (
    ProofInput,
    ProofOrchestrator,
    ProofResult,
    ZKError,
    build_circuit_inputs,
)

logger = logging.getLogger(__name__)

DEFAULT_K = 6

STEP_PREPARING = "preparing"
STEP_ENCRYPTING = "encrypting"
STEP_PROVING = "proving"
STEP_COMPLETE = "complete"

GENERIC_SUBMISSION_ERROR = "Nullification could not be submitted. Please try again."


# ============================================================================
# EXCEPTIONS
# ============================================================================


class NullificationError(Exception):
    """Base exception for nullification batching"""
    pass


class NotAParticipantError(NullificationError):
    """Caller is not on the election roster"""
    pass


class ParticipantKeyMismatchError(NullificationError):
    """Caller's derived key differs from the key on the roster"""
    pass


class NullificationSubmissionError(NullificationError):
    """Submission failed; the whole nullification must be retried"""

    def __init__(self):
        super().__init__(GENERIC_SUBMISSION_ERROR)


# ============================================================================
# DATA
# ============================================================================


@dataclass
class KAnonymityProgress:
    step: str
    completed: int
    total: int
    message: str


ProgressCallback = Callable[[KAnonymityProgress], None]


@dataclass
class NullificationBatchItem:
    target_participant_id: str
    ciphertext: ElGamalCiphertext
    is_real: bool = field(repr=False)
    proof: Optional[ProofResult] = None


@dataclass
class NullificationBatch:
    election_id: str
    items: List[NullificationBatchItem]
    requested_k: int
    anonymity_set_size: int
    reduced_privacy: bool

    @property
    def fully_proved(self) -> bool:
        return all(item.proof is not None and item.proof.success for item in self.items)

    def to_rows(self) -> List[NullificationRow]:
        """Storage rows in a securely shuffled order, free of secret material"""
        rows = [
            NullificationRow(
                election_id=self.election_id,
                target_participant_id=item.target_participant_id,
                ciphertext=item.ciphertext.to_dict(),
                zk_proof=item.proof.to_dict() if item.proof is not None else None,
            )
            for item in self.items
        ]
        return secure_shuffle(rows)


def secure_shuffle(items: Sequence) -> list:
    """Fisher-Yates driven by the OS CSPRNG"""
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = secrets.randbelow(i + 1)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def select_cohort(participants: Sequence[Participant], count: int,
                  exclude_id: str) -> List[Participant]:
    """Uniformly pick up to ``count`` participants other than ``exclude_id``"""
    others = [p for p in participants if p.participant_id != exclude_id]
    if count <= 0:
        return []
    if len(others) <= count:
        return others
    return secure_shuffle(others)[:count]


# ============================================================================
# BATCHER
# ============================================================================


class KAnonymityBatcher:
    """Builds, proves and submits k-anonymous nullification batches"""

    def __init__(self,
                 curve: CurveContext,
                 store: ElectionStore,
                 orchestrator: ProofOrchestrator,
                 k: int = DEFAULT_K):
        if k < 1:
            raise ValueError("k must be at least 1")
        self.curve = curve
        self.store = store
        self.orchestrator = orchestrator
        self.elgamal = ElGamal(curve)
        self.k = k

    @staticmethod
    def _report(progress: Optional[ProgressCallback], step: str,
                completed: int, total: int, message: str):
        if progress is not None:
            progress(KAnonymityProgress(step, completed, total, message))

    def _roster_key(self, participant: Participant) -> Point:
        return self.curve.point(participant.public_key_x, participant.public_key_y)

    def _slot_randomness(self, sk: Scalar, target_pk: Point) -> Scalar:
        # Keyed to the caller's scalar; the target key separates slots so
        # no two slots in a batch share c1
        return self.elgamal.deterministic_r(sk, target_pk)

    async def generate_batch(self,
                             election_id: str,
                             self_participant_id: str,
                             self_keypair: DerivedKeypair,
                             authority_pk: Point,
                             is_real_nullification: bool,
                             k: Optional[int] = None,
                             progress: Optional[ProgressCallback] = None) -> NullificationBatch:
        """
        Build one ciphertext per cohort slot and prove all of them.

        Every ciphertext is produced before any proof is started. Proof
        failures are recorded on the items; use ``submit_nullification``
        for the all-or-nothing path.
        """
        k = self.k if k is None else k
        if k < 1:
            raise ValueError("k must be at least 1")

        self._report(progress, STEP_PREPARING, 0, k,
                     "Fetching election participants...")

        participants = self.store.get_participants(election_id)
        own = next((p for p in participants
                    if p.participant_id == self_participant_id), None)
        if own is None:
            raise NotAParticipantError(
                f"{self_participant_id} is not a participant in election {election_id}")

        roster_keys = {p.participant_id: self._roster_key(p) for p in participants}
        if not self.curve.equals(roster_keys[self_participant_id], self_keypair.pk):
            raise ParticipantKeyMismatchError(
                "Derived key does not match the registered participant key")
        if not self.curve.is_on_curve(authority_pk):
            raise InvalidPointError("Authority public key is not on the curve")

        batch_size = min(k, len(participants))
        reduced_privacy = batch_size < k
        if reduced_privacy:
            logger.warning(
                f"Election {election_id} has {len(participants)} participants; "
                f"anonymity set reduced from {k} to {batch_size}")

        self._report(progress, STEP_PREPARING, 0, batch_size,
                     f"Preparing {batch_size} privacy-preserving nullifications...")

        cohort = select_cohort(participants, batch_size - 1, self_participant_id)
        slots = [(own, is_real_nullification)] + [(p, False) for p in cohort]
        slots = secure_shuffle(slots)

        self._report(progress, STEP_ENCRYPTING, 0, batch_size,
                     "Generating encrypted nullifications...")

        items: List[NullificationBatchItem] = []
        proof_inputs: List[ProofInput] = []
        for index, (participant, is_real) in enumerate(slots, start=1):
            m = 1 if is_real else 0
            r = self._slot_randomness(self_keypair.sk, roster_keys[participant.participant_id])
            ciphertext = self.elgamal.encrypt(authority_pk, m, r)

            items.append(NullificationBatchItem(
                target_participant_id=participant.participant_id,
                ciphertext=ciphertext,
                is_real=is_real,
            ))
            proof_inputs.append(ProofInput(
                id=f"slot-{index}",
                inputs=build_circuit_inputs(
                    ciphertext, self_keypair.pk, authority_pk, r, m, self_keypair.sk),
            ))

            self._report(progress, STEP_ENCRYPTING, index, batch_size,
                         f"Encrypted {index} of {batch_size}...")

        self._report(progress, STEP_PROVING, 0, batch_size,
                     f"Generating {batch_size} zero-knowledge proofs in parallel...")

        def on_proof(completed: int, total: int):
            self._report(progress, STEP_PROVING, completed, total,
                         f"Generated {completed} of {total} proofs...")

        results = await self.orchestrator.generate_batch(proof_inputs, on_proof)
        for item, result in zip(items, results):
            item.proof = result

        batch = NullificationBatch(
            election_id=election_id,
            items=items,
            requested_k=k,
            anonymity_set_size=batch_size,
            reduced_privacy=reduced_privacy,
        )

        if batch.fully_proved:
            self._report(progress, STEP_COMPLETE, batch_size, batch_size,
                         "All proofs generated successfully!")
        return batch

    async def submit_nullification(self,
                                   election_id: str,
                                   self_participant_id: str,
                                   self_keypair: DerivedKeypair,
                                   authority_pk: Point,
                                   is_real_nullification: bool,
                                   k: Optional[int] = None,
                                   verify: bool = True,
                                   progress: Optional[ProgressCallback] = None) -> NullificationBatch:
        """
        Generate, check and atomically store one nullification batch.

        Raises NotAParticipantError when the caller is not on the roster
        and NullificationSubmissionError for every other failure.
        """
        start = time.time()
        try:
            batch = await self.generate_batch(
                election_id, self_participant_id, self_keypair, authority_pk,
                is_real_nullification, k, progress)

            results = [item.proof for item in batch.items]
            self.orchestrator.require_all(results)

            if verify:
                checks = await self.orchestrator.verify_batch(results)
                if not all(checks):
                    raise ZKError("Proof verification failed")

            self.store.insert_nullification_batch(batch.to_rows())
        except NotAParticipantError:
            raise
        except Exception as e:
            logger.error(
                f"Nullification submission for election {election_id} failed "
                f"({type(e).__name__}); nothing stored")
            raise NullificationSubmissionError() from None

        logger.info(
            f"Stored nullification batch of {batch.anonymity_set_size} for election "
            f"{election_id} in {time.time() - start:.2f}s")
        return batch
