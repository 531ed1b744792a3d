"""k-anonymity nullification batching."""

from .k_anonymity import (
    KAnonymityBatcher,
    KAnonymityProgress,
    NullificationBatch,
    NullificationBatchItem,
    select_cohort,
    secure_shuffle,
    DEFAULT_K,
    NullificationError,
    NotAParticipantError,
    ParticipantKeyMismatchError,
    NullificationSubmissionError,
)

__all__ = [
    'KAnonymityBatcher',
    'KAnonymityProgress',
    'NullificationBatch',
    'NullificationBatchItem',
    'select_cohort',
    'secure_shuffle',
    'DEFAULT_K',
    'NullificationError',
    'NotAParticipantError',
    'ParticipantKeyMismatchError',
    'NullificationSubmissionError',
]
