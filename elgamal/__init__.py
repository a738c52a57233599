"""EC-ElGamal vote encryption and tallying."""

from .elgamal_voting import (
    VoteCipher,
    ElGamalKeyPair,
    ElGamalCiphertext,
    ElectionKeyMetadata,
    TallyResult,
    encode_candidate_id,
    decode_candidate_id,
    MIN_CANDIDATE_ID,
)

__all__ = [
    'VoteCipher',
    'ElGamalKeyPair',
    'ElGamalCiphertext',
    'ElectionKeyMetadata',
    'TallyResult',
    'encode_candidate_id',
    'decode_candidate_id',
    'MIN_CANDIDATE_ID',
]
