"""
Integration tests for the private voting core
Registration -> election setup -> encrypted ballots -> authorized tally -> verification
"""

import asyncio
import random

import pytest

from blind.blind_tokens import issue_token, blind_token, unblind_signature, verify_token_signature
from config.config import (
    SystemConfig, MembershipConfig, CustodyConfig, BlindSignatureConfig, ZKConfig
)
from elgamal.elgamal_voting import encode_candidate_id
from integrated_voting_system import PrivateVotingCore
from utils.errors import ValidationError, AuthorizationError, CryptoError, KeyUnavailableError
from zk.zk_proofs import generate_identity
from tests.fakes import InMemoryReplica, RecordingBackend, sample_proof, sample_vkey

ORGANIZER = "erd1organizer"
CO = "erd1helper"
OUTSIDER = "erd1outsider"


def make_config(tmp_path) -> SystemConfig:
    return SystemConfig(
        membership_config=MembershipConfig(tree_depth=10,
                                           storage_path=tmp_path / "members.json"),
        custody_config=CustodyConfig(key_dir=tmp_path / "keys",
                                     master_password="integration-password",
                                     scrypt_n=2 ** 10),
        blind_config=BlindSignatureConfig(key_size=1024),
        zk_config=ZKConfig(build_dir=tmp_path / "build"),
        registry_path=tmp_path / "keys" / "co-organizers.json"
    )


@pytest.fixture
def backend():
    return RecordingBackend(result=True)


@pytest.fixture
def core(tmp_path, backend):
    core = PrivateVotingCore(make_config(tmp_path), verifier_backend=backend)
    yield core
    core.shutdown()


@pytest.fixture
def election(core):
    core.create_election("101", ORGANIZER)
    core.add_co_organizer("101", ORGANIZER, CO)
    return "101"


class TestVoterFlow:
    def test_register_and_prove(self, core):
        registrations = [core.register_voter(generate_identity(f"v{i}")) for i in range(3)]
        assert [r.index for r in registrations] == [0, 1, 2]
        assert registrations[-1].root == core.membership.current_root()

        proof = core.membership.prove_membership(registrations[1].identity.commitment)
        assert core.membership.verify_membership(proof)

    def test_nullifiers_are_per_election(self, core):
        identity = core.register_voter().identity
        assert core.nullifier_for(identity, "101") == core.nullifier_for(identity, 101)
        assert core.nullifier_for(identity, "101") != core.nullifier_for(identity, "102")

    def test_blind_credential(self, core):
        token = issue_token().token
        public_numbers = core.blind_issuer.public_numbers
        blinded, r = blind_token(token, public_numbers)
        signature = unblind_signature(core.issue_blind_signature(blinded), r, public_numbers)
        assert verify_token_signature(token, signature, public_numbers)


class TestElectionKeys:
    def test_setup_and_tally(self, core, election):
        metadata = core.setup_election_encryption(election, CO)
        assert metadata.status == "active"
        assert core.custodian.has_private_key(election)

        rng = random.Random(7)
        choices = [rng.randrange(-1, 4) for _ in range(20)]
        ballots = [core.cipher.encrypt(c, metadata.public_key) for c in choices]

        result = core.decrypt_election_votes(election, ORGANIZER, ballots,
                                             public_key=metadata.public_key)
        assert result.success_count == 20
        for candidate_id in range(-1, 4):
            assert result.per_candidate_counts.get(encode_candidate_id(candidate_id), 0) == \
                choices.count(candidate_id)

    def test_setup_twice_rejected(self, core, election):
        core.setup_election_encryption(election, ORGANIZER)
        with pytest.raises(ValidationError):
            core.setup_election_encryption(election, ORGANIZER)

    def test_outsider_cannot_setup_or_decrypt(self, core, election):
        with pytest.raises(AuthorizationError):
            core.setup_election_encryption(election, OUTSIDER)
        core.setup_election_encryption(election, ORGANIZER)
        with pytest.raises(AuthorizationError):
            core.decrypt_election_votes(election, OUTSIDER, [])

    def test_co_organizer_cannot_delegate(self, core, election):
        with pytest.raises(AuthorizationError):
            core.add_co_organizer(election, CO, "erd1another")
        with pytest.raises(AuthorizationError):
            core.remove_co_organizer(election, CO, CO)
        core.remove_co_organizer(election, ORGANIZER, CO)
        assert not core.registry.is_organizer(election, CO)

    def test_missing_key(self, core, election):
        with pytest.raises(KeyUnavailableError):
            core.decrypt_election_votes(election, ORGANIZER, [])

    def test_public_key_mismatch(self, core, election):
        core.setup_election_encryption(election, ORGANIZER)
        other = core.cipher.generate_keys()
        with pytest.raises(CryptoError):
            core.decrypt_election_votes(election, ORGANIZER, [], public_key=other.public_key)

    def test_key_recovered_from_replica(self, tmp_path):
        replica = InMemoryReplica()
        core = PrivateVotingCore(make_config(tmp_path), replica=replica)
        try:
            core.create_election("55", ORGANIZER)
            metadata = core.setup_election_encryption("55", ORGANIZER)
            core.custodian.store.local.delete("55")

            ballots = [core.cipher.encrypt(2, metadata.public_key)]
            result = core.decrypt_election_votes("55", ORGANIZER, ballots)
            assert result.per_candidate_counts == {encode_candidate_id(2): 1}
        finally:
            core.shutdown()

    def test_state_survives_restart(self, tmp_path, election, core):
        metadata = core.setup_election_encryption(election, CO)
        core.register_voter(generate_identity("persistent"))

        restarted = PrivateVotingCore(make_config(tmp_path))
        try:
            assert restarted.membership.current_root() == core.membership.current_root()
            assert restarted.registry.can_decrypt_votes(election, CO)
            ballots = [restarted.cipher.encrypt(0, metadata.public_key)]
            result = restarted.decrypt_election_votes(election, CO, ballots)
            assert result.success_count == 1
        finally:
            restarted.shutdown()


class TestBallotVerification:
    def test_initialize_without_key_files(self, core):
        asyncio.run(core.initialize())
        assert not core.verifier.initialized

    def test_verify_ballot_against_current_root(self, core):
        core.verifier.load_verification_keys(sample_vkey(), sample_vkey())
        core.register_voter()
        root = str(int(core.membership.current_root(), 16))

        result = asyncio.run(core.verify_ballot(
            sample_proof(), [root, "12345", "101"], sample_proof(), ["101", "4", "999"]))
        assert result.valid
        assert result.membership_root_match

    def test_stale_root_rejected(self, core):
        core.verifier.load_verification_keys(sample_vkey(), sample_vkey())
        core.register_voter()
        stale_root = str(int(core.membership.current_root(), 16))
        core.register_voter()

        result = asyncio.run(core.verify_ballot(
            sample_proof(), [stale_root, "12345", "101"], sample_proof(), ["101", "4", "999"]))
        assert not result.valid
        assert result.proofs.valid
        assert not result.membership_root_match


class TestMetrics:
    def test_system_metrics(self, core, election):
        core.register_voter()
        core.setup_election_encryption(election, ORGANIZER)
        metrics = core.get_system_metrics()

        assert metrics['members'] == 1
        assert metrics['membership_capacity'] == 1024
        assert metrics['elections_with_keys'] == [election]
        assert metrics['performance']['operations']['register_voter']['count'] == 1
        assert 'platform' in metrics['system']
