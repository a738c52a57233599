"""
Blind Credential Issuer
Chaum RSA blind signatures over a full-domain hash of the voting token.

  1. Voter blinds a token:      m' = FDH(token) * r^e mod n
  2. Issuer signs blindly:      s' = m'^d mod n
  3. Voter unblinds:            s  = s' * r^-1 mod n
  4. Anyone verifies:           s^e mod n == FDH(token)

The issuer never sees the token, so a signed credential cannot be linked to
the session that requested it.
"""

import base64
import binascii
import hashlib
import logging
import math
import secrets
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from utils.errors import ValidationError
from utils.utils import normalize_hex

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
PUBLIC_EXPONENT = 65537


@dataclass
class VotingToken:
    token: str
    blinded_token: Optional[str] = None
    signature: Optional[str] = None
    unblinded_signature: Optional[str] = None
    # Held by the voter only
    blinding_factor: Optional[int] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, str]:
        data = {'token': self.token}
        if self.blinded_token is not None:
            data['blindedToken'] = self.blinded_token
        if self.signature is not None:
            data['signature'] = self.signature
        if self.unblinded_signature is not None:
            data['unblindedSignature'] = self.unblinded_signature
        return data


def issue_token() -> VotingToken:
    """Fresh 32-byte random voting token"""
    return VotingToken(token=secrets.token_hex(TOKEN_BYTES))


def _modulus_bytes(public_numbers: rsa.RSAPublicNumbers) -> int:
    return (public_numbers.n.bit_length() + 7) // 8


def full_domain_hash(token: str, public_numbers: rsa.RSAPublicNumbers) -> int:
    """SHA-256 in counter mode stretched to the modulus width, reduced mod n"""
    token_bytes = bytes.fromhex(normalize_hex(token, name="token"))
    width = _modulus_bytes(public_numbers)

    output = b""
    counter = 0
    while len(output) < width:
        output += hashlib.sha256(token_bytes + counter.to_bytes(4, 'big')).digest()
        counter += 1

    return int.from_bytes(output[:width], 'big') % public_numbers.n


def _int_to_b64(value: int, width: int) -> str:
    return base64.b64encode(value.to_bytes(width, 'big')).decode('ascii')


def _b64_to_int(value: str, name: str) -> int:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{name} must be a base64 string")
    try:
        return int.from_bytes(base64.b64decode(value, validate=True), 'big')
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"{name} is not valid base64") from e


def _check_blinding_factor(r: int, n: int) -> int:
    if isinstance(r, bool) or not isinstance(r, int):
        raise ValidationError("Blinding factor must be an integer")
    if not 2 <= r < n or math.gcd(r, n) != 1:
        raise ValidationError("Blinding factor must be in [2, n) and coprime to n")
    return r


def blind_token(token: str, public_numbers: rsa.RSAPublicNumbers,
                blinding_factor: Optional[int] = None) -> Tuple[str, int]:
    """Blind a token for the issuer. Returns (blinded_hex, r); keep r secret."""
    n, e = public_numbers.n, public_numbers.e
    m = full_domain_hash(token, public_numbers)

    if blinding_factor is None:
        while True:
            r = secrets.randbelow(n - 2) + 2
            if math.gcd(r, n) == 1:
                break
    else:
        r = _check_blinding_factor(blinding_factor, n)

    blinded = (m * pow(r, e, n)) % n
    return blinded.to_bytes(_modulus_bytes(public_numbers), 'big').hex(), r


def unblind_signature(signature_b64: str, blinding_factor: int,
                      public_numbers: rsa.RSAPublicNumbers) -> str:
    """Remove the blinding factor: s = s' * r^-1 mod n"""
    n = public_numbers.n
    blind_sig = _b64_to_int(signature_b64, "signature")
    if blind_sig >= n:
        raise ValidationError("Signature is not smaller than the modulus")
    r = _check_blinding_factor(blinding_factor, n)

    signature = (blind_sig * pow(r, -1, n)) % n
    return _int_to_b64(signature, _modulus_bytes(public_numbers))


def verify_token_signature(token: str, signature_b64: str,
                           public_numbers: rsa.RSAPublicNumbers) -> bool:
    """Check s^e mod n == FDH(token)"""
    n, e = public_numbers.n, public_numbers.e
    signature = _b64_to_int(signature_b64, "signature")
    if signature >= n:
        raise ValidationError("Signature is not smaller than the modulus")

    return pow(signature, e, n) == full_domain_hash(token, public_numbers)


class BlindTokenIssuer:
    """Holds the RSA signing key and signs blinded tokens"""

    def __init__(self, key_size: int = 2048,
                 private_key: Optional[rsa.RSAPrivateKey] = None):
        self._private_key = private_key or rsa.generate_private_key(
            public_exponent=PUBLIC_EXPONENT,
            key_size=key_size
        )
        self._private_numbers = self._private_key.private_numbers()
        self.public_numbers = self._private_numbers.public_numbers
        self.signed_count = 0
        self._count_lock = threading.Lock()
        logger.info(f"Blind token issuer ready ({self._private_key.key_size}-bit RSA)")

    def sign(self, blinded_token: str) -> str:
        """Sign a blinded token. The issuer only sees m'."""
        n = self.public_numbers.n
        blinded = int(normalize_hex(blinded_token, name="blinded token"), 16)
        if not 1 <= blinded < n:
            raise ValidationError("Blinded token must be in [1, n)")

        signature = pow(blinded, self._private_numbers.d, n)
        with self._count_lock:
            self.signed_count += 1
        logger.debug("Signed blinded token")
        return _int_to_b64(signature, _modulus_bytes(self.public_numbers))

    def verify(self, token: str, signature_b64: str) -> bool:
        return verify_token_signature(token, signature_b64, self.public_numbers)

    def public_key_pem(self) -> str:
        return self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode('ascii')
