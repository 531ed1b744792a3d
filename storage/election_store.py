"""
Election Persistence
====================
Narrow CRUD + query interface used by the voting core, with an in-memory
implementation (tests, single-process deployments) and a PostgREST
implementation (Supabase-style REST backend).

The store is the only shared mutable state in the system. Two of its
operations carry protocol guarantees:

* ``insert_nullification_batch`` is all-or-nothing. A reader never sees a
  partial batch.
* ``upsert_tally_results`` is keyed by (election_id, participant_id) so
  re-processing a tally never duplicates rows.
"""

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import requests

logger = logging.getLogger(__name__)

# ============================================================================
# EXCEPTIONS
# ============================================================================


class StoreError(Exception):
    """Persistence failure; the operation may be retried"""
    pass


class ConflictError(StoreError):
    """Write rejected by a uniqueness constraint"""
    pass


class NotFoundError(StoreError):
    """Referenced record does not exist"""
    pass


# ============================================================================
# RECORDS
# ============================================================================


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class ElectionAuthority:
    id: str
    name: str
    public_key_x: str
    public_key_y: str
    created_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row['created_at'] = _iso(self.created_at)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'ElectionAuthority':
        return cls(
            id=row['id'],
            name=row['name'],
            public_key_x=str(row['public_key_x']),
            public_key_y=str(row['public_key_y']),
            created_at=parse_timestamp(row.get('created_at')) or utcnow(),
        )


@dataclass(frozen=True)
class Election:
    id: str
    title: str
    option1: str
    option2: str
    end_date: datetime
    authority_id: str
    status: str = "active"
    closed_manually_at: Optional[datetime] = None
    last_modified_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        for key in ('end_date', 'closed_manually_at', 'created_at'):
            row[key] = _iso(getattr(self, key))
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Election':
        return cls(
            id=row['id'],
            title=row['title'],
            option1=row['option1'],
            option2=row['option2'],
            end_date=parse_timestamp(row['end_date']),
            authority_id=row['authority_id'],
            status=row.get('status') or 'active',
            closed_manually_at=parse_timestamp(row.get('closed_manually_at')),
            last_modified_by=row.get('last_modified_by'),
            created_at=parse_timestamp(row.get('created_at')) or utcnow(),
        )


@dataclass(frozen=True)
class Participant:
    election_id: str
    participant_id: str
    public_key_x: str
    public_key_y: str
    joined_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row['joined_at'] = _iso(self.joined_at)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Participant':
        return cls(
            election_id=row['election_id'],
            participant_id=row['participant_id'],
            public_key_x=str(row['public_key_x']),
            public_key_y=str(row['public_key_y']),
            joined_at=parse_timestamp(row.get('joined_at')) or utcnow(),
        )


@dataclass(frozen=True)
class VoteRecord:
    election_id: str
    voter_id: str
    choice: str
    nullifier: str
    signature: Dict[str, Any]
    timestamp: int
    nullified: bool = False
    nullification_count: int = 0

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'VoteRecord':
        return cls(
            election_id=row['election_id'],
            voter_id=row['voter_id'],
            choice=row['choice'],
            nullifier=row['nullifier'],
            signature=row.get('signature') or {},
            timestamp=int(row['timestamp']),
            nullified=bool(row.get('nullified', False)),
            nullification_count=int(row.get('nullification_count') or 0),
        )


@dataclass(frozen=True)
class NullificationRow:
    """One stored k-anonymity slot. Carries no real/dummy marker."""
    election_id: str
    target_participant_id: str
    ciphertext: Dict[str, Any]
    zk_proof: Optional[Dict[str, Any]] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        row = {
            'election_id': self.election_id,
            'target_participant_id': self.target_participant_id,
            'ciphertext': self.ciphertext,
            'zk_proof': self.zk_proof,
        }
        if self.id is not None:
            row['id'] = self.id
        if self.created_at is not None:
            row['created_at'] = _iso(self.created_at)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'NullificationRow':
        return cls(
            election_id=row['election_id'],
            target_participant_id=row['target_participant_id'],
            ciphertext=row['ciphertext'],
            zk_proof=row.get('zk_proof'),
            id=row.get('id'),
            created_at=parse_timestamp(row.get('created_at')),
        )


@dataclass(frozen=True)
class StoredTallyResult:
    election_id: str
    participant_id: str
    nullification_count: int
    vote_nullified: bool
    processed_by: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'StoredTallyResult':
        return cls(
            election_id=row['election_id'],
            participant_id=row['participant_id'],
            nullification_count=int(row['nullification_count']),
            vote_nullified=bool(row['vote_nullified']),
            processed_by=row.get('processed_by'),
        )


@dataclass(frozen=True)
class AuditEntry:
    election_id: str
    action: str
    performed_by: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row['created_at'] = _iso(self.created_at)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'AuditEntry':
        return cls(
            election_id=row['election_id'],
            action=row['action'],
            performed_by=row['performed_by'],
            details=row.get('details') or {},
            created_at=parse_timestamp(row.get('created_at')) or utcnow(),
        )


# ============================================================================
# INTERFACE
# ============================================================================


class ElectionStore(ABC):
    """Persistence collaborator used by the voting core"""

    # Authorities and elections
    @abstractmethod
    def create_authority(self, authority: ElectionAuthority) -> ElectionAuthority: ...

    @abstractmethod
    def get_authority(self, authority_id: str) -> Optional[ElectionAuthority]: ...

    @abstractmethod
    def create_election(self, election: Election) -> Election: ...

    @abstractmethod
    def get_election(self, election_id: str) -> Optional[Election]: ...

    @abstractmethod
    def update_election(self, election_id: str, **changes) -> Election: ...

    # Participants and votes
    @abstractmethod
    def add_participant(self, participant: Participant) -> Participant:
        """Idempotent per (election_id, participant_id)"""

    @abstractmethod
    def get_participants(self, election_id: str) -> List[Participant]: ...

    @abstractmethod
    def record_vote(self, vote: VoteRecord) -> VoteRecord:
        """Raises ConflictError for a repeated voter or nullifier"""

    @abstractmethod
    def get_votes(self, election_id: str) -> List[VoteRecord]: ...

    @abstractmethod
    def set_vote_nullification(self, election_id: str, voter_id: str,
                               nullified: bool, nullification_count: int): ...

    # Nullifications
    @abstractmethod
    def insert_nullification_batch(self, rows: Sequence[NullificationRow]) -> List[NullificationRow]:
        """Persist every row or none of them"""

    @abstractmethod
    def get_nullifications(self, election_id: str,
                           target_participant_id: Optional[str] = None) -> List[NullificationRow]: ...

    # Tally
    @abstractmethod
    def upsert_tally_results(self, results: Sequence[StoredTallyResult]): ...

    @abstractmethod
    def get_tally_results(self, election_id: str) -> List[StoredTallyResult]: ...

    # Audit
    @abstractmethod
    def append_audit_entry(self, entry: AuditEntry): ...

    @abstractmethod
    def get_audit_log(self, election_id: str) -> List[AuditEntry]: ...


# ============================================================================
# IN-MEMORY STORE
# ============================================================================


class InMemoryElectionStore(ElectionStore):
    """Thread-safe store kept in process memory"""

    def __init__(self):
        self._lock = threading.RLock()
        self._authorities: Dict[str, ElectionAuthority] = {}
        self._elections: Dict[str, Election] = {}
        self._participants: Dict[str, Dict[str, Participant]] = {}
        self._votes: Dict[str, Dict[str, VoteRecord]] = {}
        self._nullifications: List[NullificationRow] = []
        self._tallies: Dict[tuple, StoredTallyResult] = {}
        self._audit: List[AuditEntry] = []

    def create_authority(self, authority: ElectionAuthority) -> ElectionAuthority:
        with self._lock:
            if authority.id in self._authorities:
                raise ConflictError(f"Authority {authority.id} already exists")
            self._authorities[authority.id] = authority
            return authority

    def get_authority(self, authority_id: str) -> Optional[ElectionAuthority]:
        with self._lock:
            return self._authorities.get(authority_id)

    def create_election(self, election: Election) -> Election:
        with self._lock:
            if election.id in self._elections:
                raise ConflictError(f"Election {election.id} already exists")
            self._elections[election.id] = election
            return election

    def get_election(self, election_id: str) -> Optional[Election]:
        with self._lock:
            return self._elections.get(election_id)

    def update_election(self, election_id: str, **changes) -> Election:
        with self._lock:
            election = self._elections.get(election_id)
            if election is None:
                raise NotFoundError(f"Election {election_id} not found")
            updated = replace(election, **changes)
            self._elections[election_id] = updated
            return updated

    def add_participant(self, participant: Participant) -> Participant:
        with self._lock:
            roster = self._participants.setdefault(participant.election_id, {})
            existing = roster.get(participant.participant_id)
            if existing is not None:
                if (existing.public_key_x, existing.public_key_y) != \
                        (participant.public_key_x, participant.public_key_y):
                    raise ConflictError(
                        f"Participant {participant.participant_id} already registered with a different key")
                return existing
            roster[participant.participant_id] = participant
            return participant

    def get_participants(self, election_id: str) -> List[Participant]:
        with self._lock:
            roster = self._participants.get(election_id, {})
            return sorted(roster.values(), key=lambda p: p.joined_at)

    def record_vote(self, vote: VoteRecord) -> VoteRecord:
        with self._lock:
            votes = self._votes.setdefault(vote.election_id, {})
            if vote.voter_id in votes:
                raise ConflictError(f"Voter {vote.voter_id} has already voted")
            if any(v.nullifier == vote.nullifier for v in votes.values()):
                raise ConflictError("Vote nullifier already used")
            votes[vote.voter_id] = vote
            return vote

    def get_votes(self, election_id: str) -> List[VoteRecord]:
        with self._lock:
            return list(self._votes.get(election_id, {}).values())

    def set_vote_nullification(self, election_id: str, voter_id: str,
                               nullified: bool, nullification_count: int):
        with self._lock:
            votes = self._votes.get(election_id, {})
            vote = votes.get(voter_id)
            if vote is None:
                raise NotFoundError(f"No vote from {voter_id} in {election_id}")
            votes[voter_id] = replace(
                vote, nullified=nullified, nullification_count=nullification_count)

    def _write_row(self, staged: List[NullificationRow], row: NullificationRow):
        """Validate and stage one row of a batch"""
        if not row.election_id or not row.target_participant_id:
            raise StoreError("Nullification row is missing its keys")
        if not isinstance(row.ciphertext, dict):
            raise StoreError("Nullification ciphertext must be an object")
        staged.append(replace(
            row,
            ciphertext=copy.deepcopy(row.ciphertext),
            zk_proof=copy.deepcopy(row.zk_proof),
            id=row.id or new_id(),
            created_at=row.created_at or utcnow(),
        ))

    def insert_nullification_batch(self, rows: Sequence[NullificationRow]) -> List[NullificationRow]:
        if not rows:
            raise StoreError("Refusing to store an empty nullification batch")

        with self._lock:
            staged: List[NullificationRow] = []
            try:
                for row in rows:
                    self._write_row(staged, row)
            except (TypeError, ValueError, KeyError) as e:
                raise StoreError(f"Nullification batch rejected: {e}") from e

            # Commit only once every row has been staged
            self._nullifications.extend(staged)
            return list(staged)

    def get_nullifications(self, election_id: str,
                           target_participant_id: Optional[str] = None) -> List[NullificationRow]:
        with self._lock:
            return [
                copy.deepcopy(row) for row in self._nullifications
                if row.election_id == election_id
                and (target_participant_id is None or row.target_participant_id == target_participant_id)
            ]

    def upsert_tally_results(self, results: Sequence[StoredTallyResult]):
        with self._lock:
            for result in results:
                self._tallies[(result.election_id, result.participant_id)] = result

    def get_tally_results(self, election_id: str) -> List[StoredTallyResult]:
        with self._lock:
            return sorted(
                (r for (eid, _), r in self._tallies.items() if eid == election_id),
                key=lambda r: r.participant_id)

    def append_audit_entry(self, entry: AuditEntry):
        with self._lock:
            self._audit.append(entry)

    def get_audit_log(self, election_id: str) -> List[AuditEntry]:
        with self._lock:
            return [e for e in self._audit if e.election_id == election_id]


# ============================================================================
# REST (PostgREST) STORE
# ============================================================================


class RestElectionStore(ElectionStore):
    """
    Store backed by a PostgREST endpoint such as Supabase's ``/rest/v1``.

    A JSON array POSTed to a table is inserted in a single statement, which
    gives ``insert_nullification_batch`` its all-or-nothing semantics.
    """

    AUTHORITIES = "election_authorities"
    ELECTIONS = "elections"
    PARTICIPANTS = "election_participants"
    VOTES = "votes"
    NULLIFICATIONS = "nullifications"
    TALLIES = "election_tallies"
    AUDIT_LOG = "election_authority_audit_log"

    def __init__(self, base_url: str, api_key: Optional[str] = None,
                 timeout: int = 30, session: Optional[requests.Session] = None):
        if not base_url:
            raise ValueError("REST store requires a base URL")
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        })
        if api_key:
            self.session.headers.update({
                'apikey': api_key,
                'Authorization': f"Bearer {api_key}",
            })

    @classmethod
    def from_config(cls, store_config) -> 'RestElectionStore':
        return cls(store_config.url, store_config.api_key, store_config.timeout)

    def _request(self, method: str, table: str,
                 params: Optional[Dict[str, str]] = None,
                 json: Any = None,
                 prefer: Optional[str] = None) -> List[Dict[str, Any]]:
        headers = {'Prefer': prefer} if prefer else None
        url = f"{self.base_url}/{table}"
        try:
            response = self.session.request(
                method, url, params=params, json=json,
                headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise StoreError(f"{method} {table} failed: {e}") from e

        if response.status_code == 409:
            raise ConflictError(f"{method} {table} conflict: {response.text}")
        if response.status_code >= 400:
            raise StoreError(
                f"{method} {table} returned {response.status_code}: {response.text}")

        if not response.content:
            return []
        try:
            data = response.json()
        except ValueError as e:
            raise StoreError(f"{method} {table} returned invalid JSON") from e
        return data if isinstance(data, list) else [data]

    def _select(self, table: str, **filters) -> List[Dict[str, Any]]:
        params = {'select': '*'}
        order = filters.pop('order', None)
        if order:
            params['order'] = order
        params.update({k: f"eq.{v}" for k, v in filters.items()})
        return self._request('GET', table, params=params)

    def _insert(self, table: str, rows: Any) -> List[Dict[str, Any]]:
        return self._request('POST', table, json=rows, prefer='return=representation')

    def create_authority(self, authority: ElectionAuthority) -> ElectionAuthority:
        rows = self._insert(self.AUTHORITIES, authority.to_row())
        return ElectionAuthority.from_row(rows[0]) if rows else authority

    def get_authority(self, authority_id: str) -> Optional[ElectionAuthority]:
        rows = self._select(self.AUTHORITIES, id=authority_id)
        return ElectionAuthority.from_row(rows[0]) if rows else None

    def create_election(self, election: Election) -> Election:
        rows = self._insert(self.ELECTIONS, election.to_row())
        return Election.from_row(rows[0]) if rows else election

    def get_election(self, election_id: str) -> Optional[Election]:
        rows = self._select(self.ELECTIONS, id=election_id)
        return Election.from_row(rows[0]) if rows else None

    def update_election(self, election_id: str, **changes) -> Election:
        payload = {k: (_iso(v) if isinstance(v, datetime) else v)
                   for k, v in changes.items()}
        rows = self._request('PATCH', self.ELECTIONS,
                             params={'id': f"eq.{election_id}"},
                             json=payload, prefer='return=representation')
        if not rows:
            raise NotFoundError(f"Election {election_id} not found")
        return Election.from_row(rows[0])

    def add_participant(self, participant: Participant) -> Participant:
        try:
            rows = self._insert(self.PARTICIPANTS, participant.to_row())
        except ConflictError:
            logger.info(
                f"Participant {participant.participant_id} already registered for {participant.election_id}")
            rows = self._select(self.PARTICIPANTS,
                                election_id=participant.election_id,
                                participant_id=participant.participant_id)
            if not rows:
                raise
        return Participant.from_row(rows[0]) if rows else participant

    def get_participants(self, election_id: str) -> List[Participant]:
        rows = self._select(self.PARTICIPANTS, election_id=election_id,
                            order='joined_at.asc')
        return [Participant.from_row(r) for r in rows]

    def record_vote(self, vote: VoteRecord) -> VoteRecord:
        rows = self._insert(self.VOTES, vote.to_row())
        return VoteRecord.from_row(rows[0]) if rows else vote

    def get_votes(self, election_id: str) -> List[VoteRecord]:
        return [VoteRecord.from_row(r)
                for r in self._select(self.VOTES, election_id=election_id)]

    def set_vote_nullification(self, election_id: str, voter_id: str,
                               nullified: bool, nullification_count: int):
        rows = self._request('PATCH', self.VOTES,
                             params={'election_id': f"eq.{election_id}",
                                     'voter_id': f"eq.{voter_id}"},
                             json={'nullified': nullified,
                                   'nullification_count': nullification_count},
                             prefer='return=representation')
        if not rows:
            raise NotFoundError(f"No vote from {voter_id} in {election_id}")

    def insert_nullification_batch(self, rows: Sequence[NullificationRow]) -> List[NullificationRow]:
        if not rows:
            raise StoreError("Refusing to store an empty nullification batch")
        stored = self._insert(self.NULLIFICATIONS, [r.to_row() for r in rows])
        return [NullificationRow.from_row(r) for r in stored] if stored else list(rows)

    def get_nullifications(self, election_id: str,
                           target_participant_id: Optional[str] = None) -> List[NullificationRow]:
        filters = {'election_id': election_id, 'order': 'created_at.asc'}
        if target_participant_id is not None:
            filters['target_participant_id'] = target_participant_id
        return [NullificationRow.from_row(r)
                for r in self._select(self.NULLIFICATIONS, **filters)]

    def upsert_tally_results(self, results: Sequence[StoredTallyResult]):
        if not results:
            return
        self._request('POST', self.TALLIES,
                      params={'on_conflict': 'election_id,participant_id'},
                      json=[r.to_row() for r in results],
                      prefer='resolution=merge-duplicates')

    def get_tally_results(self, election_id: str) -> List[StoredTallyResult]:
        rows = self._select(self.TALLIES, election_id=election_id,
                            order='participant_id.asc')
        return [StoredTallyResult.from_row(r) for r in rows]

    def append_audit_entry(self, entry: AuditEntry):
        self._request('POST', self.AUDIT_LOG, json=entry.to_row())

    def get_audit_log(self, election_id: str) -> List[AuditEntry]:
        rows = self._select(self.AUDIT_LOG, election_id=election_id,
                            order='created_at.asc')
        return [AuditEntry.from_row(r) for r in rows]


def create_store(store_config) -> ElectionStore:
    """Build the store named by ``StoreConfig.backend``"""
    if store_config.backend == "rest":
        return RestElectionStore.from_config(store_config)
    return InMemoryElectionStore()
