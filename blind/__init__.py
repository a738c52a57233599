"""Anonymous voting credentials via RSA blind signatures."""

from .blind_tokens import (
    VotingToken,
    BlindTokenIssuer,
    issue_token,
    blind_token,
    unblind_signature,
    verify_token_signature,
    full_domain_hash,
)

__all__ = [
    'VotingToken',
    'BlindTokenIssuer',
    'issue_token',
    'blind_token',
    'unblind_signature',
    'verify_token_signature',
    'full_domain_hash',
]
