import json

import pytest

import zk.zk_proofs as zk_proofs
from utils.errors import ValidationError, TreeFullError, StorageError
from zk.zk_proofs import (
    CircomPoseidon, FIELD_PRIME, poseidon_hash, field_to_hex,
    MembershipSet, MembershipProof, generate_identity, VoterIdentity
)


def flip_last_byte(hex_value: str) -> str:
    return hex_value[:-2] + f"{int(hex_value[-2:], 16) ^ 0x01:02x}"


class TestPoseidon:
    def test_round_constants_cover_every_round(self):
        rounds = CircomPoseidon.FULL_ROUNDS + CircomPoseidon.PARTIAL_ROUNDS
        assert len(CircomPoseidon.ROUND_CONSTANTS) == rounds * CircomPoseidon.WIDTH
        assert all(0 <= c < FIELD_PRIME for c in CircomPoseidon.ROUND_CONSTANTS)

    def test_deterministic_and_in_field(self):
        assert poseidon_hash(1, 2) == poseidon_hash(1, 2)
        assert 0 <= poseidon_hash(1, 2) < FIELD_PRIME

    def test_input_order_matters(self):
        assert poseidon_hash(1, 2) != poseidon_hash(2, 1)

    def test_rejects_out_of_field_inputs(self):
        with pytest.raises(ValidationError):
            poseidon_hash(FIELD_PRIME, 1)
        with pytest.raises(ValidationError):
            poseidon_hash(-1, 1)
        with pytest.raises(ValidationError):
            CircomPoseidon.hash([1, 2, 3])


class TestIdentity:
    def test_seeded_identity_is_deterministic(self):
        assert generate_identity("alice").commitment == generate_identity("alice").commitment
        assert generate_identity("alice").commitment != generate_identity("bob").commitment

    def test_random_identities_differ(self):
        assert generate_identity().commitment != generate_identity().commitment

    def test_commitment_binds_secrets(self):
        identity = generate_identity()
        assert identity.commitment == poseidon_hash(identity.nullifier_secret,
                                                    identity.trapdoor_secret)
        assert identity.nullifier_secret < 2 ** 248

    def test_secrets_stay_private(self):
        identity = VoterIdentity.from_secrets(123456789, 987654321)
        assert "123456789" not in repr(identity)
        assert identity.public_dict() == {'commitment': field_to_hex(identity.commitment)}


class TestMembershipSet:
    def test_insert_returns_index_and_root(self):
        members = MembershipSet(depth=4)
        empty_root = members.current_root()

        first = members.insert(generate_identity("a").commitment)
        second = members.insert(generate_identity("b").commitment)

        assert first['index'] == 0
        assert second['index'] == 1
        assert first['root'] != empty_root
        assert second['root'] == members.current_root()
        assert members.size() == 2
        assert members.capacity == 16

    def test_empty_tree_root(self):
        assert MembershipSet(depth=1).current_root() == field_to_hex(poseidon_hash(0, 0))

    def test_full_tree_rejects_insert(self):
        members = MembershipSet(depth=2)
        for i in range(4):
            members.insert(i + 1)
        with pytest.raises(TreeFullError):
            members.insert(99)
        assert members.size() == 4

    def test_tree_full_is_a_validation_error(self):
        assert issubclass(TreeFullError, ValidationError)

    def test_rejects_duplicates_and_out_of_field(self):
        members = MembershipSet(depth=3)
        members.insert(42)
        with pytest.raises(ValidationError):
            members.insert(42)
        with pytest.raises(ValidationError):
            members.insert(FIELD_PRIME)
        with pytest.raises(ValidationError):
            members.insert(-5)
        assert members.size() == 1

    def test_accepts_hex_commitments(self):
        members = MembershipSet(depth=3)
        members.insert(field_to_hex(7))
        assert members.contains(7)

    def test_every_member_proves(self):
        members = MembershipSet(depth=5)
        commitments = [generate_identity(f"voter-{i}").commitment for i in range(7)]
        for c in commitments:
            members.insert(c)

        for c in commitments:
            assert members.verify_membership(members.prove_membership(c))

    def test_proof_for_absent_commitment_fails(self):
        members = MembershipSet(depth=3)
        members.insert(1)
        with pytest.raises(ValidationError):
            members.prove_membership(2)

    def test_stale_proof_is_rejected(self):
        members = MembershipSet(depth=4)
        members.insert(11)
        proof = members.prove_membership(11)
        members.insert(12)
        assert not members.verify_membership(proof)
        assert members.verify_membership(members.prove_membership(11))

    def test_corrupted_proofs_are_rejected(self):
        members = MembershipSet(depth=4)
        for c in (21, 22, 23):
            members.insert(c)
        proof = members.prove_membership(22)

        bad_index = MembershipProof(proof.root, proof.leaf, proof.siblings,
                                    [1 - proof.path_indices[0]] + proof.path_indices[1:])
        assert not members.verify_membership(bad_index)

        bad_sibling = MembershipProof(proof.root, proof.leaf,
                                      [flip_last_byte(proof.siblings[0])] + proof.siblings[1:],
                                      proof.path_indices)
        assert not members.verify_membership(bad_sibling)

        bad_leaf = MembershipProof(proof.root, field_to_hex(24), proof.siblings,
                                   proof.path_indices)
        assert not members.verify_membership(bad_leaf)

    def test_malformed_proofs_return_false(self):
        members = MembershipSet(depth=3)
        members.insert(5)
        proof = members.prove_membership(5)

        assert not members.verify_membership(
            MembershipProof(proof.root, proof.leaf, proof.siblings[:-1], proof.path_indices[:-1]))
        assert not members.verify_membership(
            MembershipProof(proof.root, proof.leaf, proof.siblings, [2] + proof.path_indices[1:]))
        assert not members.verify_membership(
            MembershipProof(proof.root, "zz" * 32, proof.siblings, proof.path_indices))
        assert not members.verify_membership({'root': proof.root})
        assert not members.verify_membership(
            MembershipProof(proof.root, None, proof.siblings, proof.path_indices))

    def test_proof_survives_dict_round_trip(self):
        members = MembershipSet(depth=3)
        members.insert(8)
        wire = json.loads(json.dumps(members.prove_membership(8).to_dict()))
        assert members.verify_membership(wire)
        assert members.verify_membership(MembershipProof.from_dict(wire))

    def test_three_voters_second_proves_and_byte_flip_fails(self):
        members = MembershipSet(depth=20)
        identities = [generate_identity(f"e2e-{i}") for i in range(3)]
        for identity in identities:
            members.insert(identity.commitment)

        proof = members.prove_membership(identities[1].commitment)
        assert len(proof.siblings) == 20
        assert members.verify_membership(proof)

        proof.siblings[0] = flip_last_byte(proof.siblings[0])
        assert not members.verify_membership(proof)


class TestMembershipPersistence:
    def test_reload_restores_root_and_proofs(self, tmp_path):
        path = tmp_path / "members.json"
        members = MembershipSet(depth=6, storage_path=path)
        for c in (101, 102, 103):
            members.insert(c)

        reloaded = MembershipSet(depth=6, storage_path=path)
        assert reloaded.size() == 3
        assert reloaded.current_root() == members.current_root()
        assert reloaded.verify_membership(members.prove_membership(102))
        assert (path.stat().st_mode & 0o777) == 0o600

    def test_failed_write_rolls_back(self, tmp_path, monkeypatch):
        members = MembershipSet(depth=4, storage_path=tmp_path / "members.json")
        members.insert(1)
        root_before = members.current_root()

        def failing_write(*args, **kwargs):
            raise StorageError("disk full")

        monkeypatch.setattr(zk_proofs, "write_json_atomic", failing_write)
        with pytest.raises(StorageError):
            members.insert(2)

        assert members.size() == 1
        assert members.current_root() == root_before
        assert not members.contains(2)

        monkeypatch.undo()
        assert members.insert(2)['index'] == 1

    def test_depth_mismatch_is_a_storage_error(self, tmp_path):
        path = tmp_path / "members.json"
        MembershipSet(depth=4, storage_path=path).insert(3)
        with pytest.raises(StorageError):
            MembershipSet(depth=5, storage_path=path)
