"""Election persistence: store interface, in-memory and REST backends."""

from .election_store import (
    # Records
    ElectionAuthority,
    Election,
    Participant,
    VoteRecord,
    NullificationRow,
    StoredTallyResult,
    AuditEntry,

    # Stores
    ElectionStore,
    InMemoryElectionStore,
    RestElectionStore,
    create_store,

    # Exceptions
    StoreError,
    ConflictError,
    NotFoundError,
)

__all__ = [
    'ElectionAuthority',
    'Election',
    'Participant',
    'VoteRecord',
    'NullificationRow',
    'StoredTallyResult',
    'AuditEntry',
    'ElectionStore',
    'InMemoryElectionStore',
    'RestElectionStore',
    'create_store',
    'StoreError',
    'ConflictError',
    'NotFoundError',
]
