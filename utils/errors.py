"""
Error taxonomy shared by every component of the voting core.

ValidationError    - malformed input shape, length or range
CryptoError        - decryption / verification / key-range / tag failures
AuthorizationError - permission check failed (maps to a 403-class response)
StorageError       - local durable storage could not be read or written
"""


class VotingCoreError(Exception):
    """Base exception for the private voting core"""
    pass


class ValidationError(VotingCoreError, ValueError):
    """Input is malformed; the caller can correct it and retry"""
    pass


class TreeFullError(ValidationError):
    """Membership tree has no free leaf left"""
    pass


class CryptoError(VotingCoreError):
    """A cryptographic operation failed and must be surfaced to the caller"""
    pass


class VerifierNotInitializedError(CryptoError):
    """Proof verification requested before verification keys were loaded"""
    pass


class AuthorizationError(VotingCoreError):
    """Requester lacks the permission needed for the operation"""
    pass


class StorageError(VotingCoreError):
    """Local durable storage failed"""
    pass


class KeyUnavailableError(VotingCoreError):
    """No copy of an election private key could be obtained"""
    pass


class ReplicaError(VotingCoreError):
    """Remote backup collaborator failed"""
    pass
