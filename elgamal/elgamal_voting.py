"""
EC-ElGamal Vote Cipher over secp256k1

Candidate ids start at the sentinel -1, so a candidate id is encoded as
m = candidate_id + 2 >= 1 before encryption:

    c1 = r*G
    c2 = r*pk + m*G

Decryption recovers m*G = c2 - sk*c1 and finds m in a cached table of k*G for
k in [1, max_encoded_value]. Tallies are keyed by the encoded (on-chain) id.
"""

import hashlib
import logging
import secrets
import threading
from dataclasses import dataclass, field
from typing import List, Dict, Tuple, Optional, Any, Union

import numpy as np
from ecdsa import SECP256k1, VerifyingKey
from ecdsa.ellipticcurve import INFINITY, PointJacobi
from ecdsa.errors import MalformedPointError

from utils.errors import ValidationError, CryptoError
from utils.utils import normalize_hex, now_ms

logger = logging.getLogger(__name__)

CURVE = SECP256k1
G = SECP256k1.generator
ORDER = SECP256k1.order

MIN_CANDIDATE_ID = -1
CANDIDATE_ID_OFFSET = 2
PRIVATE_KEY_HEX_LENGTH = 64
PROGRESS_INTERVAL = 100


def encode_candidate_id(candidate_id: int) -> int:
    return candidate_id + CANDIDATE_ID_OFFSET


def decode_candidate_id(encoded: int) -> int:
    return encoded - CANDIDATE_ID_OFFSET


# ============================================================================
# DATA TYPES
# ============================================================================


@dataclass
class ElGamalKeyPair:
    public_key: str
    private_key: str = field(repr=False)


@dataclass
class ElGamalCiphertext:
    c1: str
    c2: str

    def to_dict(self) -> Dict[str, str]:
        return {'c1': self.c1, 'c2': self.c2}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'ElGamalCiphertext':
        try:
            return cls(c1=data['c1'], c2=data['c2'])
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed ciphertext: {e}") from e


@dataclass
class ElectionKeyMetadata:
    election_id: str
    public_key: str
    private_key_hash: str
    created_at: int
    status: str = "active"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'electionId': self.election_id,
            'publicKey': self.public_key,
            'privateKeyHash': self.private_key_hash,
            'createdAt': self.created_at,
            'status': self.status
        }


@dataclass
class TallyResult:
    per_candidate_counts: Dict[int, int]
    success_count: int
    failure_count: int
    total: int
    failed_indices: List[int]
    decrypted_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'perCandidateCounts': {str(k): v for k, v in self.per_candidate_counts.items()},
            'successCount': self.success_count,
            'failureCount': self.failure_count,
            'total': self.total,
            'failedIndices': list(self.failed_indices),
            'decryptedAt': self.decrypted_at
        }


# ============================================================================
# POINT AND SCALAR ENCODING
# ============================================================================


def encode_point(point) -> str:
    """Compressed SEC1 hex (66 chars)"""
    if point == INFINITY:
        raise CryptoError("Cannot encode the point at infinity")
    return VerifyingKey.from_public_point(point, curve=CURVE).to_string("compressed").hex()


def decode_point(point_hex: str, name: str = "point"):
    data = bytes.fromhex(normalize_hex(point_hex, name=name))
    try:
        point = VerifyingKey.from_string(data, curve=CURVE).pubkey.point
    except (MalformedPointError, ValueError) as e:
        raise ValidationError(f"{name} is not a valid secp256k1 point") from e
    return PointJacobi.from_affine(point)


def normalize_private_key(private_key: str) -> str:
    """Strip whitespace and 0x, lower-case, require 64 hex chars"""
    try:
        return normalize_hex(private_key, expected_length=PRIVATE_KEY_HEX_LENGTH,
                             name="private key")
    except ValidationError as e:
        raise CryptoError(f"Invalid private key format: {e}") from e


def parse_private_key(private_key: str) -> int:
    sk = int(normalize_private_key(private_key), 16)
    if not 0 < sk < ORDER:
        raise CryptoError("Private key is outside the curve order range")
    return sk


def _parse_randomness(randomness: Union[int, str]) -> int:
    if isinstance(randomness, str):
        randomness = int(normalize_hex(randomness, name="randomness"), 16)
    if isinstance(randomness, bool) or not isinstance(randomness, int):
        raise ValidationError("Randomness must be an int or hex string")
    if not 0 < randomness < ORDER:
        raise ValidationError("Randomness must be in [1, order)")
    return randomness


# ============================================================================
# VOTE CIPHER
# ============================================================================


class VoteCipher:
    """Encrypts candidate ids and tallies ballots for one decode bound"""

    def __init__(self, max_encoded_value: int = 200):
        if max_encoded_value < CANDIDATE_ID_OFFSET:
            raise ValidationError("max_encoded_value must be at least 2")
        self.max_encoded_value = max_encoded_value
        self.max_candidate_id = decode_candidate_id(max_encoded_value)
        self._lookup: Optional[Dict[Tuple[int, int], int]] = None
        self._lookup_lock = threading.Lock()

    def _lookup_table(self) -> Dict[Tuple[int, int], int]:
        """k*G -> k for k in [1, max_encoded_value], built once"""
        with self._lookup_lock:
            if self._lookup is None:
                table = {}
                point = G
                for k in range(1, self.max_encoded_value + 1):
                    table[(point.x(), point.y())] = k
                    point = point + G
                self._lookup = table
                logger.debug(f"Built decryption lookup table for {len(table)} values")
            return self._lookup

    def generate_keys(self) -> ElGamalKeyPair:
        sk = secrets.randbelow(ORDER - 1) + 1
        public_key = encode_point(G * sk)
        logger.info(f"Generated ElGamal key pair, public key {public_key[:16]}...")
        return ElGamalKeyPair(public_key=public_key, private_key=f"{sk:064x}")

    def encrypt(self, candidate_id: int, public_key: str,
                randomness: Optional[Union[int, str]] = None) -> ElGamalCiphertext:
        if isinstance(candidate_id, bool) or not isinstance(candidate_id, int):
            raise ValidationError("candidate_id must be an integer")
        if not MIN_CANDIDATE_ID <= candidate_id <= self.max_candidate_id:
            raise ValidationError(
                f"candidate_id must be in [{MIN_CANDIDATE_ID}, {self.max_candidate_id}]")

        pk = decode_point(public_key, "public key")
        r = secrets.randbelow(ORDER - 1) + 1 if randomness is None else _parse_randomness(randomness)
        m = encode_candidate_id(candidate_id)

        c1 = G * r
        c2 = pk * r + G * m
        return ElGamalCiphertext(c1=encode_point(c1), c2=encode_point(c2))

    def _decrypt_encoded(self, c1: str, c2: str, sk: int) -> int:
        c1_point = decode_point(c1, "c1")
        c2_point = decode_point(c2, "c2")

        # c2 - sk*c1 computed as c2 + (order - sk)*c1
        message_point = c2_point + c1_point * (ORDER - sk)
        if message_point == INFINITY:
            raise CryptoError("Decryption produced the point at infinity")

        encoded = self._lookup_table().get((message_point.x(), message_point.y()))
        if encoded is None:
            raise CryptoError(
                f"Decrypted value is not in [1, {self.max_encoded_value}]; "
                "wrong key or corrupted ciphertext")
        return encoded

    def decrypt(self, c1: str, c2: str, private_key: str) -> int:
        """Returns the candidate id"""
        sk = parse_private_key(private_key)
        return decode_candidate_id(self._decrypt_encoded(c1, c2, sk))

    def tally_votes(self, ciphertexts: List[Union[ElGamalCiphertext, Dict[str, str]]],
                    private_key: str) -> TallyResult:
        """Decrypt every ballot; per-ballot failures are counted and skipped"""
        sk = parse_private_key(private_key)
        total = len(ciphertexts)
        logger.info(f"Tallying {total} encrypted votes")

        encoded_values = []
        failed_indices = []
        for index, item in enumerate(ciphertexts):
            try:
                ciphertext = item if isinstance(item, ElGamalCiphertext) \
                    else ElGamalCiphertext.from_dict(item)
                encoded_values.append(self._decrypt_encoded(ciphertext.c1, ciphertext.c2, sk))
            except (ValidationError, CryptoError) as e:
                failed_indices.append(index)
                logger.warning(f"Failed to decrypt vote {index}: {e}")

            if (index + 1) % PROGRESS_INTERVAL == 0:
                logger.info(f"Decrypted {index + 1}/{total} votes")

        counts: Dict[int, int] = {}
        if encoded_values:
            bins = np.bincount(np.array(encoded_values, dtype=np.int64))
            counts = {int(k): int(v) for k, v in enumerate(bins) if v}

        result = TallyResult(
            per_candidate_counts=counts,
            success_count=len(encoded_values),
            failure_count=len(failed_indices),
            total=total,
            failed_indices=failed_indices,
            decrypted_at=now_ms()
        )
        logger.info(
            f"Tally complete: {result.success_count} decrypted, {result.failure_count} failed")
        return result

    def verify_key_pair(self, public_key: str, private_key: str) -> bool:
        sk = parse_private_key(private_key)
        expected = decode_point(public_key, "public key")
        derived = G * sk
        return (derived.x(), derived.y()) == (expected.x(), expected.y())

    @staticmethod
    def hash_private_key(private_key: str) -> str:
        return hashlib.sha256(normalize_private_key(private_key).encode()).hexdigest()

    def generate_key_metadata(self, election_id: str, public_key: str,
                              private_key: str) -> ElectionKeyMetadata:
        return ElectionKeyMetadata(
            election_id=str(election_id),
            public_key=public_key,
            private_key_hash=self.hash_private_key(private_key),
            created_at=now_ms(),
            status="active"
        )

    def self_test(self) -> bool:
        """Encrypt and decrypt a spread of candidate ids with a fresh key"""
        keys = self.generate_keys()
        samples = sorted({MIN_CANDIDATE_ID, 0, 1, self.max_candidate_id // 2,
                          self.max_candidate_id})
        for candidate_id in samples:
            ciphertext = self.encrypt(candidate_id, keys.public_key)
            if self.decrypt(ciphertext.c1, ciphertext.c2, keys.private_key) != candidate_id:
                logger.error(f"ElGamal self-test failed for candidate {candidate_id}")
                return False
        logger.info("ElGamal self-test passed")
        return True
