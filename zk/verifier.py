"""
Groth16 Proof Verifier
Checks externally produced "valid vote" and "voter eligibility" proofs against
cached verification keys. Proof generation and circuits live elsewhere.
"""

import asyncio
import json
import logging
import os
import stat
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Optional, Any

from config.config import ZKConfig
from utils.errors import ValidationError, CryptoError, VerifierNotInitializedError
from .zk_proofs import FIELD_PRIME, DECIMAL_RE

logger = logging.getLogger(__name__)

PUBLIC_SIGNAL_COUNT = 3
VOTE_CIRCUIT = "valid_vote"
ELIGIBILITY_CIRCUIT = "voter_eligibility"


# ============================================================================
# PROOF AND SIGNAL TYPES
# ============================================================================


@dataclass
class Groth16Proof:
    pi_a: List[str]
    pi_b: List[List[str]]
    pi_c: List[str]
    protocol: str = "groth16"
    curve: str = "bn128"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Groth16Proof':
        """Shape-check a snarkjs proof object"""
        if not isinstance(data, dict):
            raise ValidationError("Proof must be a JSON object")

        missing = [k for k in ('pi_a', 'pi_b', 'pi_c') if k not in data]
        if missing:
            raise ValidationError(f"Proof is missing {', '.join(missing)}")

        pi_a, pi_b, pi_c = data['pi_a'], data['pi_b'], data['pi_c']
        if not isinstance(pi_a, list) or len(pi_a) < 2:
            raise ValidationError("pi_a must be a list of coordinates")
        if not isinstance(pi_c, list) or len(pi_c) < 2:
            raise ValidationError("pi_c must be a list of coordinates")
        if not isinstance(pi_b, list) or len(pi_b) < 2 or \
                not all(isinstance(pair, list) and len(pair) == 2 for pair in pi_b):
            raise ValidationError("pi_b must be a list of coordinate pairs")

        protocol = data.get('protocol', 'groth16')
        if protocol != 'groth16':
            raise ValidationError(f"Unsupported proof protocol: {protocol}")

        return cls(
            pi_a=[str(x) for x in pi_a],
            pi_b=[[str(x) for x in pair] for pair in pi_b],
            pi_c=[str(x) for x in pi_c],
            protocol=protocol,
            curve=data.get('curve', 'bn128')
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pi_a': self.pi_a,
            'pi_b': self.pi_b,
            'pi_c': self.pi_c,
            'protocol': self.protocol,
            'curve': self.curve
        }


@dataclass
class VotePublicSignals:
    election_id: int
    num_candidates: int
    vote_commitment: int


@dataclass
class EligibilityPublicSignals:
    merkle_root: int
    nullifier: int
    election_id: int


@dataclass
class CombinedVerification:
    valid: bool
    eligibility_valid: bool
    vote_valid: bool
    election_id_match: bool

    def to_dict(self) -> Dict[str, bool]:
        return {
            'valid': self.valid,
            'eligibilityValid': self.eligibility_valid,
            'voteValid': self.vote_valid,
            'electionIdMatch': self.election_id_match
        }


def _validate_public_signals(signals: List[Any], circuit_name: str) -> List[str]:
    """Arity and field-bound checks; returns the signals as decimal strings"""
    if not isinstance(signals, (list, tuple)):
        raise ValidationError(f"{circuit_name} public signals must be a list")
    if len(signals) != PUBLIC_SIGNAL_COUNT:
        raise ValidationError(
            f"{circuit_name} expects {PUBLIC_SIGNAL_COUNT} public signals, got {len(signals)}")

    normalized = []
    for i, signal in enumerate(signals):
        if isinstance(signal, bool):
            raise ValidationError(f"Signal {i} is not a decimal field element")
        text = str(signal).strip()
        if not DECIMAL_RE.fullmatch(text):
            raise ValidationError(f"Signal {i} is not a decimal field element")
        if int(text) >= FIELD_PRIME:
            raise ValidationError(f"Signal {i} out of field bounds")
        normalized.append(text)
    return normalized


def parse_vote_public_signals(signals: List[Any]) -> VotePublicSignals:
    values = [int(s) for s in _validate_public_signals(signals, VOTE_CIRCUIT)]
    return VotePublicSignals(election_id=values[0], num_candidates=values[1],
                             vote_commitment=values[2])


def parse_eligibility_public_signals(signals: List[Any]) -> EligibilityPublicSignals:
    values = [int(s) for s in _validate_public_signals(signals, ELIGIBILITY_CIRCUIT)]
    return EligibilityPublicSignals(merkle_root=values[0], nullifier=values[1],
                                    election_id=values[2])


def validate_verification_key(vkey: Any, circuit_name: str) -> Dict[str, Any]:
    if not isinstance(vkey, dict):
        raise ValidationError(f"{circuit_name} verification key must be a JSON object")
    protocol = vkey.get('protocol', 'groth16')
    if protocol != 'groth16':
        raise ValidationError(f"{circuit_name} verification key is not Groth16")
    if 'nPublic' in vkey and vkey['nPublic'] != PUBLIC_SIGNAL_COUNT:
        raise ValidationError(
            f"{circuit_name} verification key declares {vkey['nPublic']} public inputs")
    return vkey


# ============================================================================
# VERIFICATION BACKENDS
# ============================================================================


class VerificationBackend(ABC):
    """Pairing check for one proof; must be safe to call from worker threads"""

    @abstractmethod
    def verify(self, vkey: Dict[str, Any], public_signals: List[str],
               proof: Dict[str, Any]) -> bool:
        ...


class SnarkjsGroth16Backend(VerificationBackend):
    """Runs `snarkjs groth16 verify` on restrictive temp files"""

    def __init__(self, snarkjs_bin: str = "snarkjs", timeout: int = 30):
        self.snarkjs_bin = snarkjs_bin
        self.timeout = timeout

    def _secure_temp_file(self, data: Any, directory: str, name: str) -> Path:
        fd, path = tempfile.mkstemp(suffix=name, dir=directory)
        try:
            # Set restrictive permissions BEFORE writing
            os.fchmod(fd, stat.S_IRUSR | stat.S_IWUSR)
            os.write(fd, json.dumps(data).encode())
            os.fsync(fd)
        finally:
            os.close(fd)
        return Path(path)

    def verify(self, vkey: Dict[str, Any], public_signals: List[str],
               proof: Dict[str, Any]) -> bool:
        with tempfile.TemporaryDirectory() as temp_dir:
            vkey_file = self._secure_temp_file(vkey, temp_dir, "vkey.json")
            public_file = self._secure_temp_file(public_signals, temp_dir, "public.json")
            proof_file = self._secure_temp_file(proof, temp_dir, "proof.json")

            cmd = [
                self.snarkjs_bin, 'groth16', 'verify',
                str(vkey_file),
                str(public_file),
                str(proof_file)
            ]

            try:
                result = subprocess.run(cmd, capture_output=True, text=True,
                                        timeout=self.timeout)
            except subprocess.TimeoutExpired as e:
                raise CryptoError(
                    f"Proof verification timed out after {self.timeout}s") from e
            except FileNotFoundError as e:
                raise CryptoError(f"Verifier binary not found: {self.snarkjs_bin}") from e

        return result.returncode == 0 and "OK!" in result.stdout


# ============================================================================
# PROOF VERIFIER
# ============================================================================


class ProofVerifier:
    """Loads both verification keys once and verifies proofs in a thread pool"""

    def __init__(self, config: Optional[ZKConfig] = None,
                 backend: Optional[VerificationBackend] = None):
        self.config = config or ZKConfig()
        self.backend = backend or SnarkjsGroth16Backend(
            self.config.snarkjs_bin, self.config.verification_timeout)
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.verifier_workers,
            thread_name_prefix="proof-verifier")
        self._vkeys: Dict[str, Dict[str, Any]] = {}
        self._init_lock = asyncio.Lock()
        self.initialized = False

    async def initialize(self):
        """Load verification keys from the configured build directory"""
        async with self._init_lock:
            if self.initialized:
                return

            keys = {}
            for circuit_name, path in ((VOTE_CIRCUIT, self.config.vote_vkey_path),
                                       (ELIGIBILITY_CIRCUIT, self.config.eligibility_vkey_path)):
                try:
                    keys[circuit_name] = json.loads(Path(path).read_text())
                except (OSError, json.JSONDecodeError) as e:
                    raise CryptoError(
                        f"Cannot load {circuit_name} verification key from {path}: {e}") from e

            self.load_verification_keys(keys[VOTE_CIRCUIT], keys[ELIGIBILITY_CIRCUIT])

    def load_verification_keys(self, vote_vkey: Dict[str, Any],
                               eligibility_vkey: Dict[str, Any]):
        """Install already-parsed verification keys"""
        vote = validate_verification_key(vote_vkey, VOTE_CIRCUIT)
        eligibility = validate_verification_key(eligibility_vkey, ELIGIBILITY_CIRCUIT)

        self._vkeys = {VOTE_CIRCUIT: vote, ELIGIBILITY_CIRCUIT: eligibility}
        self.initialized = True
        logger.info("Proof verifier initialized with vote and eligibility keys")

    def _require_initialized(self):
        if not self.initialized:
            raise VerifierNotInitializedError(
                "Proof verifier not initialized; load verification keys first")

    async def _verify(self, circuit_name: str, proof: Dict[str, Any],
                      public_signals: List[Any]) -> bool:
        self._require_initialized()
        signals = _validate_public_signals(public_signals, circuit_name)
        parsed = Groth16Proof.from_dict(proof)

        start_time = time.time()
        loop = asyncio.get_running_loop()
        is_valid = await loop.run_in_executor(
            self._executor, self.backend.verify,
            self._vkeys[circuit_name], signals, parsed.to_dict())

        logger.info(
            f"Verified {circuit_name} proof in {time.time() - start_time:.3f}s: "
            f"{'valid' if is_valid else 'invalid'}")
        return bool(is_valid)

    async def verify_vote_proof(self, proof: Dict[str, Any], public_signals: List[Any]) -> bool:
        """Signals: [electionId, numCandidates, voteCommitment]"""
        return await self._verify(VOTE_CIRCUIT, proof, public_signals)

    async def verify_eligibility_proof(self, proof: Dict[str, Any],
                                       public_signals: List[Any]) -> bool:
        """Signals: [merkleRoot, nullifier, electionId]"""
        return await self._verify(ELIGIBILITY_CIRCUIT, proof, public_signals)

    async def verify_combined(self, eligibility_proof: Dict[str, Any],
                              eligibility_signals: List[Any],
                              vote_proof: Dict[str, Any],
                              vote_signals: List[Any]) -> CombinedVerification:
        self._require_initialized()
        eligibility = parse_eligibility_public_signals(eligibility_signals)
        vote = parse_vote_public_signals(vote_signals)

        eligibility_valid, vote_valid = await asyncio.gather(
            self.verify_eligibility_proof(eligibility_proof, eligibility_signals),
            self.verify_vote_proof(vote_proof, vote_signals)
        )
        election_id_match = eligibility.election_id == vote.election_id
        if not election_id_match:
            logger.warning("Eligibility and vote proofs reference different elections")

        return CombinedVerification(
            valid=eligibility_valid and vote_valid and election_id_match,
            eligibility_valid=eligibility_valid,
            vote_valid=vote_valid,
            election_id_match=election_id_match
        )

    def get_verification_keys_info(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {'initialized': self.initialized}
        for circuit_name, vkey in self._vkeys.items():
            info[circuit_name] = {
                'protocol': vkey.get('protocol', 'groth16'),
                'curve': vkey.get('curve'),
                'nPublic': vkey.get('nPublic')
            }
        return info

    def shutdown(self):
        self._executor.shutdown(wait=False)
