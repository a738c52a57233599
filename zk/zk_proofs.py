"""
Membership and Nullifier Primitives
Poseidon field hash, voter identities, the append-only membership tree and
per-election nullifiers
"""

import hashlib
import logging
import re
import secrets
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Dict, Tuple, Optional, Any, Union

from utils.errors import ValidationError, TreeFullError, StorageError
from utils.utils import write_json_atomic, read_json

logger = logging.getLogger(__name__)

# ============================================================================
# CIRCOM-STYLE POSEIDON OVER THE BN254 SCALAR FIELD
# ============================================================================


class CircomPoseidon:
    """Poseidon permutation for t=3 (two inputs) over the BN254 scalar field"""

    # BN254 scalar field prime
    PRIME = 21888242871839275222246405745257275088548364400416034343698204186575808495617

    FULL_ROUNDS = 8
    PARTIAL_ROUNDS = 56
    WIDTH = 3  # t=3 for 2 inputs

    MDS_MATRIX = [
        [0x109b7f411ba0e4c9b2b70caf5c36a7b194be7c11ad24378bfedb68592ba8118b,
         0x2969f27eed31a480b9c36c764379dbca2cc8fdd1415c3dded62940bcde0bd771,
         0x16ed41e13bb9c0c66ae119424fddbcbc9314dc9fdbdeea55d6c64543dc4903e0],
        [0x2e2419f9ec02ec394c9871c832963dc1b89d743c8c7b964029b2311687b1fe23,
         0x176cc029695ad02582a70eff08a6fd99d057e12e58e7d7b6b16cdfabc8ee2911,
         0x19a3fc0a56702bf417ba7fee3802593fa644470307043f7773279cd71d25d5e0],
        [0x2b90bba00fca0589f617e7dcbfe82e0df706ab640ceb247b791a93b74e36736d,
         0x101071f0032379b697315876690f053d148d4e109f5fb065c8aacc55a0f89bfa,
         0x0ee972cfc5375bf0dfca69bb79fb73c7a687c3d2f966b3d68a3725f0292e4c5d]
    ]

    @staticmethod
    def derive_round_constants() -> List[int]:
        """One constant per state element per round, SHA-256 in counter mode"""
        count = (CircomPoseidon.FULL_ROUNDS +
                 CircomPoseidon.PARTIAL_ROUNDS) * CircomPoseidon.WIDTH
        constants = []
        for i in range(count):
            digest = hashlib.sha256(
                b"poseidon_t3_rc" + i.to_bytes(4, 'big')).digest()
            constants.append(int.from_bytes(digest, 'big') %
                             CircomPoseidon.PRIME)
        return constants

    ROUND_CONSTANTS: List[int] = []

    @staticmethod
    def ark(state: List[int], constant_idx: int) -> List[int]:
        """Add round constants"""
        constants = CircomPoseidon.ROUND_CONSTANTS
        return [(state[i] + constants[constant_idx + i]) % CircomPoseidon.PRIME
                for i in range(CircomPoseidon.WIDTH)]

    @staticmethod
    def sbox(state: List[int], full_round: bool) -> List[int]:
        """Apply S-box (x^5 mod p)"""
        if full_round:
            return [pow(x, 5, CircomPoseidon.PRIME) for x in state]
        return [pow(state[0], 5, CircomPoseidon.PRIME), state[1], state[2]]

    @staticmethod
    def mix(state: List[int]) -> List[int]:
        """Apply MDS matrix multiplication"""
        p = CircomPoseidon.PRIME
        return [sum(row[j] * state[j] for j in range(CircomPoseidon.WIDTH)) % p
                for row in CircomPoseidon.MDS_MATRIX]

    @staticmethod
    def hash(inputs: List[int]) -> int:
        """Poseidon hash of two field elements"""
        if len(inputs) != 2:
            raise ValidationError("Poseidon expects 2 inputs for t=3")
        for value in inputs:
            if not isinstance(value, int) or not 0 <= value < CircomPoseidon.PRIME:
                raise ValidationError(
                    "Poseidon inputs must be integers in the BN254 scalar field")

        state = [0, inputs[0], inputs[1]]
        half_full = CircomPoseidon.FULL_ROUNDS // 2
        total_rounds = CircomPoseidon.FULL_ROUNDS + CircomPoseidon.PARTIAL_ROUNDS

        constant_idx = 0
        for round_no in range(total_rounds):
            full_round = round_no < half_full or round_no >= half_full + \
                CircomPoseidon.PARTIAL_ROUNDS
            state = CircomPoseidon.ark(state, constant_idx)
            constant_idx += CircomPoseidon.WIDTH
            state = CircomPoseidon.sbox(state, full_round)
            state = CircomPoseidon.mix(state)

        return state[1]  # Output squeezed from state[1] as per Circom


CircomPoseidon.ROUND_CONSTANTS = CircomPoseidon.derive_round_constants()


FIELD_PRIME = CircomPoseidon.PRIME
DECIMAL_RE = re.compile(r'[0-9]+')


def poseidon_hash(left: int, right: int) -> int:
    return CircomPoseidon.hash([left, right])


def field_to_hex(value: int) -> str:
    """32-byte big-endian hex encoding of a field element"""
    return value.to_bytes(32, 'big').hex()


def hex_to_field(value: str, name: str = "value") -> int:
    """Parse a 32-byte hex field element, rejecting anything outside the field"""
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a hex string")
    text = value[2:] if value.lower().startswith('0x') else value
    if len(text) != 64:
        raise ValidationError(f"{name} must be 32 bytes of hex")
    try:
        number = int(text, 16)
    except ValueError as e:
        raise ValidationError(f"{name} is not valid hex") from e
    if number >= FIELD_PRIME:
        raise ValidationError(f"{name} is outside the scalar field")
    return number


# ============================================================================
# VOTER IDENTITIES
# ============================================================================


@dataclass(frozen=True)
class VoterIdentity:
    """Voter secrets and their public commitment. Only the commitment leaves the holder."""
    nullifier_secret: int = field(repr=False)
    trapdoor_secret: int = field(repr=False)
    commitment: int

    @classmethod
    def from_secrets(cls, nullifier_secret: int, trapdoor_secret: int) -> 'VoterIdentity':
        return cls(
            nullifier_secret=nullifier_secret,
            trapdoor_secret=trapdoor_secret,
            commitment=poseidon_hash(nullifier_secret, trapdoor_secret)
        )

    def public_dict(self) -> Dict[str, str]:
        return {'commitment': field_to_hex(self.commitment)}


def generate_identity(seed: Optional[str] = None) -> VoterIdentity:
    """
    Create a voter identity.

    Without a seed both secrets are 31 random bytes, which always fit the
    field. A seed yields deterministic secrets for fixtures and tests.
    """
    if seed is None:
        nullifier_secret = int.from_bytes(secrets.token_bytes(31), 'big')
        trapdoor_secret = int.from_bytes(secrets.token_bytes(31), 'big')
    else:
        nullifier_secret = int.from_bytes(hashlib.sha256(
            f"{seed}_nullifier".encode()).digest(), 'big') % FIELD_PRIME
        trapdoor_secret = int.from_bytes(hashlib.sha256(
            f"{seed}_trapdoor".encode()).digest(), 'big') % FIELD_PRIME

    return VoterIdentity.from_secrets(nullifier_secret, trapdoor_secret)


# ============================================================================
# MEMBERSHIP SET
# ============================================================================


@dataclass
class MembershipProof:
    root: str
    leaf: str
    siblings: List[str]
    path_indices: List[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'root': self.root,
            'leaf': self.leaf,
            'siblings': list(self.siblings),
            'pathIndices': list(self.path_indices)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MembershipProof':
        try:
            return cls(
                root=data['root'],
                leaf=data['leaf'],
                siblings=list(data['siblings']),
                path_indices=list(data.get('pathIndices', data.get('path_indices')))
            )
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed membership proof: {e}") from e


class MembershipSet:
    """
    Append-only Merkle tree of identity commitments.

    Nodes are kept per level in dicts so that only occupied subtrees use
    memory; absent nodes take the precomputed empty-subtree hash of their
    level. An optional storage path mirrors the leaf list to disk before an
    insert is acknowledged.
    """

    def __init__(self, depth: int = 20, storage_path: Optional[Path] = None):
        if not 1 <= depth <= 32:
            raise ValidationError(f"Tree depth must be between 1 and 32, got {depth}")

        self.depth = depth
        self.capacity = 2 ** depth
        self.storage_path = Path(storage_path) if storage_path else None

        self._lock = threading.RLock()
        self._levels: List[Dict[int, int]] = [{} for _ in range(depth + 1)]
        self._leaves: List[int] = []
        self._leaf_index: Dict[int, int] = {}
        self._empty_nodes = self._compute_empty_nodes()

        if self.storage_path is not None:
            self._load()

    def _compute_empty_nodes(self) -> List[int]:
        """Hash of an all-empty subtree at each level, leaves first"""
        empty = [0]
        for _ in range(self.depth):
            empty.append(poseidon_hash(empty[-1], empty[-1]))
        return empty

    def _node(self, level: int, position: int) -> int:
        return self._levels[level].get(position, self._empty_nodes[level])

    def _root(self) -> int:
        return self._node(self.depth, 0)

    def _place_leaf(self, index: int, commitment: int) -> List[Tuple[int, int, Optional[int]]]:
        """Write a leaf and rehash its path; returns the previous node values"""
        touched = []
        position = index
        value = commitment
        for level in range(self.depth + 1):
            touched.append((level, position, self._levels[level].get(position)))
            self._levels[level][position] = value
            if level == self.depth:
                break
            if position % 2 == 0:
                value = poseidon_hash(value, self._node(level, position + 1))
            else:
                value = poseidon_hash(self._node(level, position - 1), value)
            position //= 2
        return touched

    def _undo(self, touched: List[Tuple[int, int, Optional[int]]]):
        for level, position, previous in touched:
            if previous is None:
                self._levels[level].pop(position, None)
            else:
                self._levels[level][position] = previous

    def _validate_commitment(self, commitment: Union[int, str]) -> int:
        if isinstance(commitment, str):
            return hex_to_field(commitment, "commitment")
        if isinstance(commitment, bool) or not isinstance(commitment, int):
            raise ValidationError("commitment must be a field element")
        if not 0 <= commitment < FIELD_PRIME:
            raise ValidationError("commitment is outside the scalar field")
        return commitment

    def insert(self, commitment: Union[int, str]) -> Dict[str, Any]:
        """Append a commitment; returns its leaf index and the new root"""
        value = self._validate_commitment(commitment)

        with self._lock:
            if value in self._leaf_index:
                raise ValidationError("Commitment is already a member")
            if len(self._leaves) >= self.capacity:
                raise TreeFullError(
                    f"Membership tree is full ({self.capacity} leaves)")

            index = len(self._leaves)
            touched = self._place_leaf(index, value)
            self._leaves.append(value)
            self._leaf_index[value] = index

            if self.storage_path is not None:
                try:
                    self._save()
                except StorageError:
                    self._undo(touched)
                    self._leaves.pop()
                    del self._leaf_index[value]
                    logger.error(f"Rolled back insert at index {index}: storage write failed")
                    raise

            root = field_to_hex(self._root())

        logger.debug(f"Inserted leaf {index}, root {root[:16]}...")
        return {'index': index, 'root': root}

    def prove_membership(self, commitment: Union[int, str]) -> MembershipProof:
        value = self._validate_commitment(commitment)

        with self._lock:
            index = self._leaf_index.get(value)
            if index is None:
                raise ValidationError("Commitment is not a member")

            siblings = []
            path_indices = []
            position = index
            for level in range(self.depth):
                is_right = position % 2
                sibling = position - 1 if is_right else position + 1
                siblings.append(field_to_hex(self._node(level, sibling)))
                path_indices.append(is_right)
                position //= 2

            return MembershipProof(
                root=field_to_hex(self._root()),
                leaf=field_to_hex(value),
                siblings=siblings,
                path_indices=path_indices
            )

    def verify_membership(self, proof: Union[MembershipProof, Dict[str, Any]]) -> bool:
        """Recompute the root from the proof path; never raises on bad input"""
        try:
            if isinstance(proof, dict):
                proof = MembershipProof.from_dict(proof)
            if len(proof.siblings) != self.depth or len(proof.path_indices) != self.depth:
                return False

            current = hex_to_field(proof.leaf, "leaf")
            for sibling_hex, index in zip(proof.siblings, proof.path_indices):
                if isinstance(index, bool) or index not in (0, 1):
                    return False
                sibling = hex_to_field(sibling_hex, "sibling")
                if index == 0:
                    current = poseidon_hash(current, sibling)
                else:
                    current = poseidon_hash(sibling, current)

            claimed_root = hex_to_field(proof.root, "root")
        except (ValidationError, AttributeError, TypeError) as e:
            logger.debug(f"Rejected malformed membership proof: {e}")
            return False

        if current != claimed_root:
            return False

        with self._lock:
            return claimed_root == self._root()

    def current_root(self) -> str:
        with self._lock:
            return field_to_hex(self._root())

    def size(self) -> int:
        with self._lock:
            return len(self._leaves)

    def contains(self, commitment: Union[int, str]) -> bool:
        value = self._validate_commitment(commitment)
        with self._lock:
            return value in self._leaf_index

    def _save(self):
        write_json_atomic(self.storage_path, {
            'depth': self.depth,
            'leaves': [field_to_hex(leaf) for leaf in self._leaves]
        })

    def _load(self):
        data = read_json(self.storage_path)
        if data is None:
            return

        if not isinstance(data, dict) or data.get('depth') != self.depth:
            raise StorageError(
                f"Membership store {self.storage_path} does not match configured depth {self.depth}")

        try:
            leaves = [hex_to_field(leaf, "leaf") for leaf in data.get('leaves', [])]
        except ValidationError as e:
            raise StorageError(f"Corrupt membership store {self.storage_path}: {e}") from e

        for index, leaf in enumerate(leaves):
            self._place_leaf(index, leaf)
            self._leaves.append(leaf)
            self._leaf_index[leaf] = index

        logger.info(f"Loaded {len(leaves)} members from {self.storage_path}")


# ============================================================================
# NULLIFIERS
# ============================================================================


def election_field(election_id: Union[int, str]) -> int:
    """Map an election id to a field element; ints and decimal strings agree"""
    if isinstance(election_id, bool):
        raise ValidationError("election_id must be an int or a string")
    if isinstance(election_id, int):
        if not 0 <= election_id < FIELD_PRIME:
            raise ValidationError("election_id is outside the scalar field")
        return election_id
    if not isinstance(election_id, str) or not election_id.strip():
        raise ValidationError("election_id must be a non-empty int or string")

    text = election_id.strip()
    if DECIMAL_RE.fullmatch(text):
        return election_field(int(text))
    return int.from_bytes(hashlib.sha256(text.encode('utf-8')).digest(), 'big') % FIELD_PRIME


def derive_nullifier(nullifier_secret: int, election_id: Union[int, str]) -> str:
    """Per-election nullifier: Poseidon(secret, election) as 64-char hex"""
    if isinstance(nullifier_secret, bool) or not isinstance(nullifier_secret, int):
        raise ValidationError("nullifier_secret must be an integer")
    if not 0 <= nullifier_secret < FIELD_PRIME:
        raise ValidationError("nullifier_secret is outside the scalar field")

    return field_to_hex(poseidon_hash(nullifier_secret, election_field(election_id)))
