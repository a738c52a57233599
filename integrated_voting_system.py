#!/usr/bin/env python3
"""
Integrated Private Voting Core
==============================
Wires membership, nullifiers, blind credentials, vote encryption, proof
verification, key custody and organizer authorization into one context
object. Every component instance belongs to a PrivateVotingCore; nothing is
shared through module-level state.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Union

from config.config import SystemConfig
from utils.errors import ValidationError, CryptoError, KeyUnavailableError
from utils.utils import PerformanceMonitor, get_system_info
from zk.zk_proofs import MembershipSet, VoterIdentity, generate_identity, derive_nullifier
from zk.verifier import (
    ProofVerifier, VerificationBackend, CombinedVerification, parse_eligibility_public_signals
)
from blind.blind_tokens import BlindTokenIssuer
from elgamal.elgamal_voting import VoteCipher, ElGamalCiphertext, ElectionKeyMetadata, TallyResult
from custody.key_custody import KeyCustodian, RemoteReplica, validate_election_id
from authz.co_organizers import (
    AuthorizationRegistry, Permission, CoOrganizer, CoOrganizerPermissions, ElectionOrganizers
)

logger = logging.getLogger(__name__)

# ============================================================================
# RESULT TYPES
# ============================================================================


@dataclass
class VoterRegistration:
    identity: VoterIdentity
    index: int
    root: str


@dataclass
class BallotVerification:
    valid: bool
    proofs: CombinedVerification
    membership_root_match: bool

    def to_dict(self) -> Dict[str, Any]:
        data = self.proofs.to_dict()
        data['valid'] = self.valid
        data['membershipRootMatch'] = self.membership_root_match
        return data


# ============================================================================
# PRIVATE VOTING CORE
# ============================================================================


class PrivateVotingCore:
    """
    Context object owning one instance of every component:
    1. Membership set and nullifiers for anonymous eligibility
    2. Blind token issuer for anonymous credentials
    3. Vote cipher for encrypted ballots and tallying
    4. Proof verifier for externally produced Groth16 proofs
    5. Key custodian and authorization registry around the decryption key
    """

    def __init__(self, config: Optional[SystemConfig] = None,
                 replica: Optional[RemoteReplica] = None,
                 verifier_backend: Optional[VerificationBackend] = None):
        self.config = config or SystemConfig()

        logger.info("Initializing private voting core...")
        self.membership = MembershipSet(
            depth=self.config.membership_config.tree_depth,
            storage_path=self.config.membership_config.storage_path
        )
        self.cipher = VoteCipher(self.config.cipher_config.max_encoded_value)
        self.blind_issuer = BlindTokenIssuer(self.config.blind_config.key_size)
        self.verifier = ProofVerifier(self.config.zk_config, backend=verifier_backend)
        self.custodian = KeyCustodian(self.config.custody_config, replica=replica)
        self.registry = AuthorizationRegistry(self.config.registry_path)
        self.monitor = PerformanceMonitor()

        self._setup_lock = threading.Lock()
        self._initialized = False
        self._lock = asyncio.Lock()

    async def initialize(self):
        """Load verification keys. Missing key files leave verification disabled."""
        async with self._lock:
            if self._initialized:
                return
            try:
                await self.verifier.initialize()
            except CryptoError as e:
                logger.warning(f"Proof verification unavailable: {e}")
            self._initialized = True
            logger.info("Private voting core initialization complete")

    # ------------------------------------------------------------------
    # Voters
    # ------------------------------------------------------------------

    def register_voter(self, identity: Optional[VoterIdentity] = None) -> VoterRegistration:
        """Add a voter commitment to the membership set"""
        identity = identity or generate_identity()
        with self.monitor.start_operation("register_voter"):
            inserted = self.membership.insert(identity.commitment)
        return VoterRegistration(identity=identity, index=inserted['index'], root=inserted['root'])

    def nullifier_for(self, identity: VoterIdentity, election_id: Union[int, str]) -> str:
        return derive_nullifier(identity.nullifier_secret, election_id)

    def issue_blind_signature(self, blinded_token: str) -> str:
        with self.monitor.start_operation("blind_sign"):
            return self.blind_issuer.sign(blinded_token)

    # ------------------------------------------------------------------
    # Organizers
    # ------------------------------------------------------------------

    def create_election(self, election_id: Union[int, str],
                        primary_organizer: str) -> ElectionOrganizers:
        return self.registry.initialize(election_id, primary_organizer)

    def add_co_organizer(self, election_id: Union[int, str], requester: str, address: str,
                         permissions: Optional[CoOrganizerPermissions] = None) -> CoOrganizer:
        self.registry.require_permission(election_id, requester, Permission.ADD_CO_ORGANIZERS)
        return self.registry.add_co_organizer(election_id, address, requester, permissions)

    def remove_co_organizer(self, election_id: Union[int, str], requester: str, address: str):
        self.registry.require_permission(election_id, requester, Permission.ADD_CO_ORGANIZERS)
        self.registry.remove_co_organizer(election_id, address, requester)

    # ------------------------------------------------------------------
    # Election keys and tallying
    # ------------------------------------------------------------------

    def setup_election_encryption(self, election_id: Union[int, str],
                                  requester: str) -> ElectionKeyMetadata:
        """Generate the election key pair and place the private key in custody"""
        self.registry.require_permission(election_id, requester, Permission.SETUP_ENCRYPTION)
        custody_id = validate_election_id(election_id)

        with self._setup_lock, self.monitor.start_operation("setup_encryption"):
            if self.custodian.has_private_key(custody_id):
                raise ValidationError(f"Encryption already set up for election {custody_id}")

            keys = self.cipher.generate_keys()
            self.custodian.securely_store_private_key(custody_id, keys.private_key)
            metadata = self.cipher.generate_key_metadata(custody_id, keys.public_key,
                                                         keys.private_key)

        logger.info(f"Encryption set up for election {custody_id} by {requester}")
        return metadata

    def decrypt_election_votes(self, election_id: Union[int, str], requester: str,
                               ciphertexts: List[Union[ElGamalCiphertext, Dict[str, str]]],
                               public_key: Optional[str] = None,
                               timeout: Optional[float] = None) -> TallyResult:
        self.registry.require_permission(election_id, requester, Permission.DECRYPT_VOTES)
        custody_id = validate_election_id(election_id)

        private_key = self.custodian.securely_retrieve_private_key(custody_id, timeout)
        if private_key is None:
            raise KeyUnavailableError(f"No private key available for election {custody_id}")

        if public_key is not None and not self.cipher.verify_key_pair(public_key, private_key):
            raise CryptoError(
                f"Stored key does not match the public key of election {custody_id}")

        with self.monitor.start_operation("tally_votes"):
            result = self.cipher.tally_votes(ciphertexts, private_key)
        logger.info(f"Election {custody_id} tallied by {requester}")
        return result

    # ------------------------------------------------------------------
    # Ballot verification
    # ------------------------------------------------------------------

    async def verify_ballot(self, eligibility_proof: Dict[str, Any],
                            eligibility_signals: List[Any],
                            vote_proof: Dict[str, Any],
                            vote_signals: List[Any]) -> BallotVerification:
        """Both proofs valid, same election, and eligibility against the current root"""
        eligibility = parse_eligibility_public_signals(eligibility_signals)

        with self.monitor.start_operation("verify_ballot"):
            proofs = await self.verifier.verify_combined(
                eligibility_proof, eligibility_signals, vote_proof, vote_signals)

        root_match = eligibility.merkle_root == int(self.membership.current_root(), 16)
        if not root_match:
            logger.warning("Eligibility proof was made against a different membership root")

        return BallotVerification(
            valid=proofs.valid and root_match,
            proofs=proofs,
            membership_root_match=root_match
        )

    def get_system_metrics(self) -> Dict[str, Any]:
        """Get comprehensive system metrics"""
        return {
            'members': self.membership.size(),
            'membership_capacity': self.membership.capacity,
            'membership_root': self.membership.current_root(),
            'elections_with_keys': self.custodian.list_elections_with_keys(),
            'blind_signatures_issued': self.blind_issuer.signed_count,
            'verifier': self.verifier.get_verification_keys_info(),
            'performance': self.monitor.get_summary(),
            'system': get_system_info()
        }

    def shutdown(self):
        self.verifier.shutdown()
        self.custodian.shutdown()
