#!/usr/bin/env python3
"""
Integrated Nullifiable Voting System
====================================
Service facade wiring key derivation, signatures, k-anonymity nullification,
proof orchestration and the tally protocol around one election store.

Voter secrets and the authority's private key are accepted per call, used
and dropped; nothing here persists them.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from config.config import SystemConfig
from curve.babyjubjub import CurveContext, Point, Scalar
from identity.key_derivation import (
    DerivedKeypair,
    derive_keypair,
    public_key_to_strings,
    signal_hex,
    verify_keypair,
    vote_nullifier,
)
from identity.signatures import (
    SchnorrSigner,
    Signature,
    authority_action_message,
    vote_message,
)
from nullification.k_anonymity import (
    KAnonymityBatcher,
    NotAParticipantError,
    NullificationBatch,
    ProgressCallback,
)
from storage.election_store import (
    AuditEntry,
    Election,
    ElectionAuthority,
    ElectionStore,
    Participant,
    VoteRecord,
    create_store,
    new_id,
    utcnow,
)
from tally.tally_protocol import FinalResults, TallyProtocol, TallyReport
from utils.utils import PerformanceMonitor
from zk.zk_proofs import NullificationProver, ProofOrchestrator, SnarkjsProver

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_CLOSED_EARLY = "closed_early"
CLOSED_MANUALLY = "closed_manually"

IdentityVerifier = Callable[[str, Any], bool]


# ============================================================================
# EXCEPTIONS
# ============================================================================


class VotingSystemError(Exception):
    """Base exception for election workflow errors"""
    pass


class UnknownElectionError(VotingSystemError):
    pass


class ElectionNotActiveError(VotingSystemError):
    """Operation requires an open election"""
    pass


class ElectionStillOpenError(VotingSystemError):
    """Operation requires a closed election"""
    pass


class AuthorizationError(VotingSystemError):
    """Authority signature or key did not match the election authority"""
    pass


class IdentityVerificationError(VotingSystemError):
    pass


class InvalidChoiceError(VotingSystemError, ValueError):
    pass


# ============================================================================
# ELECTION STATUS
# ============================================================================


@dataclass(frozen=True)
class ElectionStatus:
    is_active: bool
    status_label: str
    status_type: str


def election_status(election: Election, now: Optional[datetime] = None) -> ElectionStatus:
    """Manual closure wins over natural expiry"""
    now = now or utcnow()
    if election.closed_manually_at is not None or election.status == CLOSED_MANUALLY:
        return ElectionStatus(False, "Closed Early", STATUS_CLOSED_EARLY)
    if election.end_date <= now:
        return ElectionStatus(False, "Completed", STATUS_EXPIRED)
    return ElectionStatus(True, "Active", STATUS_ACTIVE)


# ============================================================================
# INTEGRATED VOTING SYSTEM
# ============================================================================


class IntegratedVotingSystem:
    """
    Election workflow:
    1. Authority and election setup
    2. Participant registration bound to a derived public key
    3. Signed votes with a per-election nullifier
    4. k-anonymous nullification batches
    5. Closure, tally and final results
    """

    def __init__(self,
                 config: Optional[SystemConfig] = None,
                 store: Optional[ElectionStore] = None,
                 prover: Optional[NullificationProver] = None,
                 curve: Optional[CurveContext] = None,
                 identity_verifier: Optional[IdentityVerifier] = None):
        self.config = config or SystemConfig()
        self.curve = curve or CurveContext.babyjubjub()
        self.store = store or create_store(self.config.store_config)
        self.prover = prover or SnarkjsProver.from_config(self.config.zk_config)
        self.identity_verifier = identity_verifier
        self.monitor = PerformanceMonitor()

        null_config = self.config.nullification
        self.signer = SchnorrSigner(self.curve)
        self.orchestrator = ProofOrchestrator(
            self.prover, self.config.zk_config.parallel_workers)
        self.batcher = KAnonymityBatcher(
            self.curve, self.store, self.orchestrator, k=null_config.k)
        self.tally = TallyProtocol(
            self.curve,
            self.store,
            null_config.effective_discrete_log_bound(),
            monitor=self.monitor,
        )

        logger.info(
            f"Voting system initialized (k={null_config.k}, "
            f"store={type(self.store).__name__}, prover={type(self.prover).__name__})")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _election(self, election_id: str) -> Election:
        election = self.store.get_election(election_id)
        if election is None:
            raise UnknownElectionError(f"Election {election_id} not found")
        return election

    def _authority_key(self, election: Election) -> Point:
        authority = self.store.get_authority(election.authority_id)
        if authority is None:
            raise VotingSystemError(
                f"Authority {election.authority_id} for election {election.id} not found")
        return self.curve.point(authority.public_key_x, authority.public_key_y)

    def _require_active(self, election: Election):
        status = election_status(election)
        if not status.is_active:
            raise ElectionNotActiveError(
                f"Election {election.id} is {status.status_type}")

    def _participant_keys(self, election_id: str, participant_id: str,
                          secret: bytes) -> DerivedKeypair:
        keypair = derive_keypair(self.curve, secret)
        roster = {p.participant_id: p for p in self.store.get_participants(election_id)}
        participant = roster.get(participant_id)
        if participant is None:
            raise NotAParticipantError(
                f"{participant_id} is not registered for election {election_id}")
        if participant.public_key_x != str(keypair.pk.x) or participant.public_key_y != str(keypair.pk.y):
            raise AuthorizationError("Secret does not match the registered key")
        return keypair

    def get_status(self, election_id: str) -> ElectionStatus:
        return election_status(self._election(election_id))

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def create_authority(self, name: str, public_key: Point) -> ElectionAuthority:
        if not self.curve.is_on_curve(public_key):
            raise ValueError("Authority public key is not on the curve")
        authority = ElectionAuthority(
            id=new_id(),
            name=name,
            public_key_x=str(public_key.x),
            public_key_y=str(public_key.y),
        )
        authority = self.store.create_authority(authority)
        logger.info(f"Created election authority {authority.id} ({name})")
        return authority

    def create_election(self, title: str, option1: str, option2: str,
                        end_date: datetime, authority_id: str) -> Election:
        if not option1 or not option2 or option1 == option2:
            raise ValueError("An election needs two distinct options")
        if self.store.get_authority(authority_id) is None:
            raise VotingSystemError(f"Authority {authority_id} not found")
        if end_date.tzinfo is None:
            end_date = end_date.replace(tzinfo=timezone.utc)
        if end_date <= utcnow():
            raise ValueError("Election end date must be in the future")

        election = self.store.create_election(Election(
            id=new_id(),
            title=title,
            option1=option1,
            option2=option2,
            end_date=end_date,
            authority_id=authority_id,
        ))
        logger.info(f"Created election {election.id}: {title}")
        return election

    # ------------------------------------------------------------------
    # Voters
    # ------------------------------------------------------------------

    def register_participant(self, election_id: str, participant_id: str,
                             secret: bytes, identity_proof: Any = None) -> Participant:
        """
        Derive the voter's key and add them to the election roster.

        When an identity verifier is configured, the proof must bind to the
        signal computed from the derived public key.
        """
        election = self._election(election_id)
        self._require_active(election)

        keypair = derive_keypair(self.curve, secret)
        signal = signal_hex(keypair.pk)

        if self.identity_verifier is not None and not self.identity_verifier(signal, identity_proof):
            raise IdentityVerificationError(
                f"Identity proof rejected for {participant_id}")

        key = public_key_to_strings(keypair.pk)
        participant = self.store.add_participant(Participant(
            election_id=election_id,
            participant_id=participant_id,
            public_key_x=key['x'],
            public_key_y=key['y'],
        ))
        logger.info(f"Registered participant {participant_id} for election {election_id}")
        return participant

    def cast_vote(self, election_id: str, participant_id: str, secret: bytes,
                  choice: str, timestamp: Optional[int] = None) -> VoteRecord:
        election = self._election(election_id)
        self._require_active(election)

        if choice not in (election.option1, election.option2):
            raise InvalidChoiceError(f"{choice!r} is not an option of this election")

        keypair = self._participant_keys(election_id, participant_id, secret)
        timestamp = timestamp if timestamp is not None else int(time.time() * 1000)

        message = vote_message(election_id, choice, timestamp)
        signature = self.signer.sign(keypair.sk, message)
        if not self.signer.verify(keypair.pk, message, signature):
            raise VotingSystemError("Vote signature failed self-verification")

        vote = self.store.record_vote(VoteRecord(
            election_id=election_id,
            voter_id=participant_id,
            choice=choice,
            nullifier=vote_nullifier(keypair.sk, election_id),
            signature=signature.to_dict(),
            timestamp=timestamp,
        ))
        logger.info(f"Recorded vote from {participant_id} in election {election_id}")
        return vote

    async def submit_nullification(self, election_id: str, participant_id: str,
                                   secret: bytes, is_real: bool,
                                   k: Optional[int] = None,
                                   progress: Optional[ProgressCallback] = None) -> NullificationBatch:
        election = self._election(election_id)
        self._require_active(election)

        keypair = self._participant_keys(election_id, participant_id, secret)
        authority_pk = self._authority_key(election)

        with self.monitor.start_operation("nullification", items=k or self.batcher.k):
            return await self.batcher.submit_nullification(
                election_id,
                participant_id,
                keypair,
                authority_pk,
                is_real,
                k=k,
                verify=self.config.zk_config.verify_before_store,
                progress=progress,
            )

    # ------------------------------------------------------------------
    # Authority actions
    # ------------------------------------------------------------------

    def close_election(self, election_id: str,
                       authority_signature: Union[Signature, Dict, str],
                       performed_by: Optional[str] = None) -> Election:
        """Close an active election early on a valid authority signature"""
        election = self._election(election_id)
        authority_pk = self._authority_key(election)

        message = authority_action_message("close", election_id)
        if not self.signer.verify(authority_pk, message, authority_signature):
            raise AuthorizationError("Invalid authority signature for close")

        if election_status(election).status_type == STATUS_CLOSED_EARLY:
            logger.info(f"Election {election_id} is already closed")
            return election

        now = utcnow()
        performed_by = performed_by or election.authority_id
        updated = self.store.update_election(
            election_id,
            status=CLOSED_MANUALLY,
            closed_manually_at=now,
            end_date=now,
            last_modified_by=performed_by,
        )
        self.store.append_audit_entry(AuditEntry(
            election_id=election_id,
            action="close_election",
            performed_by=performed_by,
            details={'closed_at': now.isoformat()},
        ))
        logger.info(f"Election {election_id} closed early by {performed_by}")
        return updated

    def process_tally(self, election_id: str, authority_sk: Scalar,
                      processed_by: Optional[str] = None) -> TallyReport:
        election = self._election(election_id)
        if election_status(election).is_active:
            raise ElectionStillOpenError(
                f"Election {election_id} must be closed before tallying")

        if not verify_keypair(self.curve, authority_sk, self._authority_key(election)):
            raise AuthorizationError("Private key does not match the election authority")

        processed_by = processed_by or election.authority_id
        report = self.tally.process_tally(election_id, authority_sk, processed_by)

        self.store.append_audit_entry(AuditEntry(
            election_id=election_id,
            action="process_tally",
            performed_by=processed_by,
            details={
                'voters': len(report.results),
                'nullified': len(report.nullified_participants),
                'manual_review': len(report.manual_review),
                'discrete_log_bound': report.discrete_log_bound,
            },
        ))
        return report

    def final_results(self, election_id: str) -> FinalResults:
        self._election(election_id)
        return self.tally.calculate_final_results(election_id)

    def get_system_metrics(self) -> Dict[str, Any]:
        return {
            'k': self.batcher.k,
            'discrete_log_bound': self.tally.discrete_log_bound,
            'performance': self.monitor.get_summary(),
        }
