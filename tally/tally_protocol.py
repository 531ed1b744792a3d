"""
Tally Protocol
==============
Post-election processing performed by the election authority:

1. For every voter, sum all nullification ciphertexts targeting them.
2. Decrypt the sum in the exponent with the authority key.
3. Apply the parity rule: an odd count nullifies the vote, an even count
   (including zero) leaves it valid.

A voter whose aggregate cannot be decrypted is reported for manual review
and does not stop the rest of the tally. Re-running the tally over the
same stored data produces the same results and the same stored rows.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional

from curve.babyjubjub import CurveContext, Scalar
from encryption.elgamal import ElGamalCiphertext, MalformedCiphertextError
from encryption.homomorphic import DiscreteLogTable, add_ciphertexts, decrypt_in_exponent
from storage.election_store import ElectionStore, NullificationRow, StoredTallyResult

logger = logging.getLogger(__name__)

OPTION1 = "option1"
OPTION2 = "option2"


class TallyError(Exception):
    """Base exception for tally processing"""
    pass


class ElectionNotFoundError(TallyError):
    pass


class TallyStatus(Enum):
    NO_NULLIFICATIONS = "no_nullifications"
    DECRYPTED = "decrypted"
    DECRYPTION_FAILED = "decryption_failed"


@dataclass(frozen=True)
class TallyResult:
    participant_id: str
    nullification_count: Optional[int]
    vote_nullified: bool
    status: TallyStatus

    def to_dict(self) -> Dict:
        return {
            'participant_id': self.participant_id,
            'nullification_count': self.nullification_count,
            'vote_nullified': self.vote_nullified,
            'status': self.status.value,
        }


@dataclass
class TallyReport:
    election_id: str
    results: List[TallyResult]
    discrete_log_bound: int
    processed_by: Optional[str] = None
    processed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def manual_review(self) -> List[str]:
        return [r.participant_id for r in self.results
                if r.status is TallyStatus.DECRYPTION_FAILED]

    @property
    def nullified_participants(self) -> List[str]:
        return [r.participant_id for r in self.results if r.vote_nullified]


@dataclass(frozen=True)
class FinalResults:
    preliminary: Dict[str, int]
    final: Dict[str, int]
    nullified_count: int

    def to_dict(self) -> Dict:
        return {
            'preliminary': dict(self.preliminary),
            'final': dict(self.final),
            'nullified_count': self.nullified_count,
        }


def apply_parity_rule(count: int) -> bool:
    """True when the vote is nullified"""
    return count % 2 == 1


class TallyProtocol:
    """Aggregates, decrypts and classifies every voter of an election"""

    def __init__(self, curve: CurveContext, store: ElectionStore,
                 discrete_log_bound: int, monitor=None):
        if discrete_log_bound < 1:
            raise ValueError("discrete_log_bound must be positive")
        self.curve = curve
        self.store = store
        self.discrete_log_bound = discrete_log_bound
        self.monitor = monitor

    def aggregate_for_participant(self, election_id: str, participant_id: str,
                                  rows: Optional[Iterable[NullificationRow]] = None) -> Optional[ElGamalCiphertext]:
        """
        Homomorphic sum of every nullification targeting ``participant_id``.

        Returns None when there are none. Raises MalformedCiphertextError if
        a stored ciphertext fails schema validation.
        """
        if rows is None:
            rows = self.store.get_nullifications(election_id, participant_id)
        ciphertexts = [
            ElGamalCiphertext.from_dict(self.curve, row.ciphertext)
            for row in rows
            if row.target_participant_id == participant_id
        ]
        if not ciphertexts:
            return None
        return add_ciphertexts(self.curve, ciphertexts)

    def _classify(self, election_id: str, participant_id: str,
                  rows: List[NullificationRow], authority_sk: Scalar,
                  table: DiscreteLogTable) -> TallyResult:
        try:
            aggregate = self.aggregate_for_participant(election_id, participant_id, rows)
        except MalformedCiphertextError as e:
            logger.error(f"Malformed nullification for {participant_id}: {e}")
            return TallyResult(participant_id, None, False, TallyStatus.DECRYPTION_FAILED)

        if aggregate is None:
            return TallyResult(participant_id, 0, False, TallyStatus.NO_NULLIFICATIONS)

        count = decrypt_in_exponent(self.curve, aggregate, authority_sk, table)
        if count is None:
            logger.error(
                f"Could not decrypt nullification count for {participant_id}; "
                f"flagged for manual review")
            return TallyResult(participant_id, None, False, TallyStatus.DECRYPTION_FAILED)

        return TallyResult(participant_id, count, apply_parity_rule(count), TallyStatus.DECRYPTED)

    def process_tally(self, election_id: str, authority_sk: Scalar,
                      processed_by: Optional[str] = None) -> TallyReport:
        """Compute, store and return the tally for every voter"""
        start = time.time()
        logger.info(
            f"Processing tally for election {election_id} "
            f"(discrete log bound {self.discrete_log_bound})")

        table = DiscreteLogTable(self.curve, self.discrete_log_bound)

        votes = self.store.get_votes(election_id)
        voter_ids = {v.voter_id for v in votes}
        participant_ids = {p.participant_id for p in self.store.get_participants(election_id)}
        universe = sorted(voter_ids | participant_ids)

        by_target: Dict[str, List[NullificationRow]] = {}
        for row in self.store.get_nullifications(election_id):
            by_target.setdefault(row.target_participant_id, []).append(row)

        def run() -> List[TallyResult]:
            return [
                self._classify(election_id, pid, by_target.get(pid, []), authority_sk, table)
                for pid in universe
            ]

        if self.monitor is not None:
            with self.monitor.start_operation("tally", items=len(universe)):
                results = run()
        else:
            results = run()

        stored = [
            StoredTallyResult(
                election_id=election_id,
                participant_id=r.participant_id,
                nullification_count=r.nullification_count,
                vote_nullified=r.vote_nullified,
                processed_by=processed_by,
            )
            for r in results if r.status is not TallyStatus.DECRYPTION_FAILED
        ]
        self.store.upsert_tally_results(stored)

        for r in results:
            if r.participant_id in voter_ids and r.status is not TallyStatus.DECRYPTION_FAILED:
                self.store.set_vote_nullification(
                    election_id, r.participant_id, r.vote_nullified, r.nullification_count)

        report = TallyReport(
            election_id=election_id,
            results=results,
            discrete_log_bound=self.discrete_log_bound,
            processed_by=processed_by,
        )
        logger.info(
            f"Tally for {election_id}: {len(results)} voters, "
            f"{len(report.nullified_participants)} nullified, "
            f"{len(report.manual_review)} for manual review "
            f"in {time.time() - start:.2f}s")
        return report

    def calculate_final_results(self, election_id: str) -> FinalResults:
        """Vote totals before and after nullification"""
        election = self.store.get_election(election_id)
        if election is None:
            raise ElectionNotFoundError(f"Election {election_id} not found")

        options = {election.option1: OPTION1, election.option2: OPTION2}
        preliminary = {OPTION1: 0, OPTION2: 0}
        final = {OPTION1: 0, OPTION2: 0}
        nullified = 0

        for vote in self.store.get_votes(election_id):
            key = options.get(vote.choice)
            if key is None:
                logger.warning(f"Ignoring vote with unknown choice in {election_id}")
                continue
            preliminary[key] += 1
            if vote.nullified:
                nullified += 1
            else:
                final[key] += 1

        return FinalResults(preliminary=preliminary, final=final, nullified_count=nullified)
