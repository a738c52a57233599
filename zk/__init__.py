"""
Membership proofs, nullifiers and Groth16 proof verification
"""

from .zk_proofs import (
    CircomPoseidon,
    FIELD_PRIME,
    poseidon_hash,
    field_to_hex,
    VoterIdentity,
    generate_identity,
    MembershipProof,
    MembershipSet,
    election_field,
    derive_nullifier,
)
from .verifier import (
    Groth16Proof,
    VotePublicSignals,
    EligibilityPublicSignals,
    CombinedVerification,
    VerificationBackend,
    SnarkjsGroth16Backend,
    ProofVerifier,
    parse_vote_public_signals,
    parse_eligibility_public_signals,
)

__all__ = [
    # Membership
    'CircomPoseidon',
    'FIELD_PRIME',
    'poseidon_hash',
    'field_to_hex',
    'VoterIdentity',
    'generate_identity',
    'MembershipProof',
    'MembershipSet',
    'election_field',
    'derive_nullifier',

    # Verification
    'Groth16Proof',
    'VotePublicSignals',
    'EligibilityPublicSignals',
    'CombinedVerification',
    'VerificationBackend',
    'SnarkjsGroth16Backend',
    'ProofVerifier',
    'parse_vote_public_signals',
    'parse_eligibility_public_signals',
]
