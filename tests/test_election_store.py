import threading
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest
import requests

from storage.election_store import (
    AuditEntry,
    ConflictError,
    Election,
    ElectionAuthority,
    InMemoryElectionStore,
    NotFoundError,
    NullificationRow,
    Participant,
    RestElectionStore,
    StoreError,
    StoredTallyResult,
    VoteRecord,
    create_store,
)
from config.config import StoreConfig


def _row(target, n=0, election_id="e1"):
    return NullificationRow(
        election_id=election_id,
        target_participant_id=target,
        ciphertext={'c1': {'x': str(n), 'y': '1'}, 'c2': {'x': '0', 'y': '1'}},
        zk_proof={'proof': {}, 'publicSignals': []},
    )


def _vote(voter, nullifier, choice="Yes"):
    return VoteRecord(election_id="e1", voter_id=voter, choice=choice,
                      nullifier=nullifier, signature={}, timestamp=1)


class FlakyStore(InMemoryElectionStore):
    """Fails while staging the n-th row of a batch"""

    def __init__(self, fail_at):
        super().__init__()
        self.fail_at = fail_at
        self.writes = 0

    def _write_row(self, staged, row):
        self.writes += 1
        if self.writes == self.fail_at:
            raise StoreError("simulated storage failure")
        super()._write_row(staged, row)


# ============================================================================
# In-memory store
# ============================================================================


def test_batch_insert_assigns_ids(store):
    stored = store.insert_nullification_batch([_row("a"), _row("b")])
    assert len({r.id for r in stored}) == 2
    assert all(r.created_at is not None for r in stored)
    assert len(store.get_nullifications("e1")) == 2
    assert [r.target_participant_id for r in store.get_nullifications("e1", "a")] == ["a"]


def test_partial_failure_leaves_no_rows():
    store = FlakyStore(fail_at=3)
    with pytest.raises(StoreError):
        store.insert_nullification_batch([_row(t) for t in "abcde"])
    assert store.get_nullifications("e1") == []

    # Retry succeeds and stores exactly one batch
    store.insert_nullification_batch([_row(t) for t in "abcde"])
    assert len(store.get_nullifications("e1")) == 5


def test_empty_batch_is_rejected(store):
    with pytest.raises(StoreError):
        store.insert_nullification_batch([])


def test_malformed_row_rejects_batch(store):
    bad = NullificationRow(election_id="e1", target_participant_id="b", ciphertext="oops")
    with pytest.raises(StoreError):
        store.insert_nullification_batch([_row("a"), bad])
    assert store.get_nullifications("e1") == []


def test_stored_rows_are_isolated_from_callers(store):
    row = _row("a")
    store.insert_nullification_batch([row])
    row.ciphertext['c1']['x'] = '999'
    fetched = store.get_nullifications("e1")[0]
    fetched.ciphertext['c2']['x'] = '888'
    again = store.get_nullifications("e1")[0]
    assert again.ciphertext['c1']['x'] == '0'
    assert again.ciphertext['c2']['x'] == '0'


def test_concurrent_batches_are_never_interleaved(store):
    def submit(label):
        store.insert_nullification_batch([_row(f"{label}{i}") for i in range(6)])

    threads = [threading.Thread(target=submit, args=(c,)) for c in "xyz"]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    targets = [r.target_participant_id[0] for r in store.get_nullifications("e1")]
    assert len(targets) == 18
    for start in range(0, 18, 6):
        assert len(set(targets[start:start + 6])) == 1


def test_add_participant_is_idempotent(store):
    p = Participant("e1", "alice", "1", "2")
    assert store.add_participant(p) == p
    assert store.add_participant(Participant("e1", "alice", "1", "2")) == p
    assert len(store.get_participants("e1")) == 1
    with pytest.raises(ConflictError):
        store.add_participant(Participant("e1", "alice", "3", "4"))


def test_participants_ordered_by_join_time(store):
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    store.add_participant(Participant("e1", "late", "1", "2", joined_at=base + timedelta(hours=1)))
    store.add_participant(Participant("e1", "early", "1", "2", joined_at=base))
    assert [p.participant_id for p in store.get_participants("e1")] == ["early", "late"]


def test_record_vote_rejects_duplicates(store):
    store.record_vote(_vote("alice", "n1"))
    with pytest.raises(ConflictError):
        store.record_vote(_vote("alice", "n2"))
    with pytest.raises(ConflictError):
        store.record_vote(_vote("bob", "n1"))
    assert len(store.get_votes("e1")) == 1


def test_set_vote_nullification(store):
    store.record_vote(_vote("alice", "n1"))
    store.set_vote_nullification("e1", "alice", True, 1)
    vote = store.get_votes("e1")[0]
    assert vote.nullified is True and vote.nullification_count == 1
    with pytest.raises(NotFoundError):
        store.set_vote_nullification("e1", "nobody", True, 1)


def test_tally_upsert_has_no_duplicates(store):
    store.upsert_tally_results([StoredTallyResult("e1", "b", 0, False),
                                StoredTallyResult("e1", "a", 1, True)])
    store.upsert_tally_results([StoredTallyResult("e1", "a", 2, False)])
    results = store.get_tally_results("e1")
    assert [(r.participant_id, r.nullification_count) for r in results] == [("a", 2), ("b", 0)]


def test_election_update(store):
    end = datetime.now(timezone.utc) + timedelta(days=1)
    store.create_election(Election("e1", "T", "Yes", "No", end, "auth"))
    with pytest.raises(ConflictError):
        store.create_election(Election("e1", "T", "Yes", "No", end, "auth"))
    updated = store.update_election("e1", status="closed_manually")
    assert updated.status == "closed_manually"
    assert store.get_election("e1").status == "closed_manually"
    with pytest.raises(NotFoundError):
        store.update_election("missing", status="x")


def test_audit_log(store):
    store.append_audit_entry(AuditEntry("e1", "close_election", "auth"))
    store.append_audit_entry(AuditEntry("e2", "close_election", "auth"))
    assert [e.election_id for e in store.get_audit_log("e1")] == ["e1"]


def test_record_row_round_trips():
    end = datetime(2030, 1, 1, tzinfo=timezone.utc)
    election = Election("e1", "T", "Yes", "No", end, "auth")
    assert Election.from_row(election.to_row()) == election
    authority = ElectionAuthority("a1", "Board", "1", "2")
    assert ElectionAuthority.from_row(authority.to_row()) == authority
    row = Election.from_row(dict(election.to_row(), end_date="2030-01-01T00:00:00Z"))
    assert row.end_date == end


def test_create_store_backend():
    assert isinstance(create_store(StoreConfig()), InMemoryElectionStore)
    rest = create_store(StoreConfig(backend="rest", url="https://db.example/rest/v1", api_key="k"))
    assert isinstance(rest, RestElectionStore)


# ============================================================================
# REST store (requests.Session mocked)
# ============================================================================


def _response(status=200, payload=None):
    response = mock.Mock()
    response.status_code = status
    response.text = "" if payload is None else str(payload)
    response.content = b"" if payload is None else b"x"
    response.json.return_value = payload
    return response


@pytest.fixture
def session():
    s = mock.Mock(spec=requests.Session)
    s.headers = {}
    return s


@pytest.fixture
def rest(session):
    return RestElectionStore("https://db.example/rest/v1/", api_key="secret-key",
                             timeout=7, session=session)


def test_rest_headers(rest, session):
    assert session.headers['apikey'] == "secret-key"
    assert session.headers['Authorization'] == "Bearer secret-key"


def test_rest_batch_is_single_post(rest, session):
    session.request.return_value = _response(201, [])
    rest.insert_nullification_batch([_row("a"), _row("b"), _row("c")])

    assert session.request.call_count == 1
    args, kwargs = session.request.call_args
    assert args == ('POST', "https://db.example/rest/v1/nullifications")
    assert [r['target_participant_id'] for r in kwargs['json']] == ["a", "b", "c"]
    assert all('is_real' not in r for r in kwargs['json'])
    assert kwargs['timeout'] == 7


def test_rest_get_participants_filters(rest, session):
    session.request.return_value = _response(200, [{
        'election_id': 'e1', 'participant_id': 'alice',
        'public_key_x': '1', 'public_key_y': '2',
        'joined_at': '2025-01-01T00:00:00+00:00',
    }])
    participants = rest.get_participants("e1")
    args, kwargs = session.request.call_args
    assert args == ('GET', "https://db.example/rest/v1/election_participants")
    assert kwargs['params']['election_id'] == "eq.e1"
    assert kwargs['params']['order'] == "joined_at.asc"
    assert participants[0].participant_id == "alice"


def test_rest_upsert_uses_merge_duplicates(rest, session):
    session.request.return_value = _response(201)
    rest.upsert_tally_results([StoredTallyResult("e1", "a", 1, True)])
    args, kwargs = session.request.call_args
    assert args == ('POST', "https://db.example/rest/v1/election_tallies")
    assert kwargs['params'] == {'on_conflict': 'election_id,participant_id'}
    assert kwargs['headers'] == {'Prefer': 'resolution=merge-duplicates'}


def test_rest_conflict(rest, session):
    session.request.return_value = _response(409, {'code': '23505'})
    with pytest.raises(ConflictError):
        rest.record_vote(_vote("alice", "n1"))


def test_rest_server_error(rest, session):
    session.request.return_value = _response(500, {'message': 'boom'})
    with pytest.raises(StoreError):
        rest.get_votes("e1")


def test_rest_network_error(rest, session):
    session.request.side_effect = requests.ConnectionError("down")
    with pytest.raises(StoreError):
        rest.get_nullifications("e1")


def test_rest_participant_conflict_returns_existing(rest, session):
    existing = {'election_id': 'e1', 'participant_id': 'alice',
                'public_key_x': '1', 'public_key_y': '2'}
    session.request.side_effect = [_response(409, {'code': '23505'}), _response(200, [existing])]
    participant = rest.add_participant(Participant("e1", "alice", "1", "2"))
    assert participant.participant_id == "alice"


def test_rest_vote_nullification_reports_missing_vote(rest, session):
    session.request.return_value = _response(200, [])
    with pytest.raises(NotFoundError):
        rest.set_vote_nullification("e1", "ghost", True, 1)

    args, kwargs = session.request.call_args
    assert args == ('PATCH', "https://db.example/rest/v1/votes")
    assert kwargs['params'] == {'election_id': "eq.e1", 'voter_id': "eq.ghost"}
    assert kwargs['headers'] == {'Prefer': 'return=representation'}

    session.request.return_value = _response(200, [{'voter_id': 'alice'}])
    rest.set_vote_nullification("e1", "alice", False, 2)
    assert session.request.call_args[1]['json'] == {'nullified': False,
                                                      'nullification_count': 2}


def test_rest_requires_url():
    with pytest.raises(ValueError):
        RestElectionStore("")
