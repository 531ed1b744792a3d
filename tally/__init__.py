"""Tally protocol: aggregation, decryption and the parity rule."""

from .tally_protocol import (
    TallyProtocol,
    TallyResult,
    TallyReport,
    TallyStatus,
    FinalResults,
    apply_parity_rule,
    TallyError,
    ElectionNotFoundError,
)

__all__ = [
    'TallyProtocol',
    'TallyResult',
    'TallyReport',
    'TallyStatus',
    'FinalResults',
    'apply_parity_rule',
    'TallyError',
    'ElectionNotFoundError',
]
