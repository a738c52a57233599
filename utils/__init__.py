"""Utilities for the voting core."""

from .utils import (
    setup_logging,
    PerformanceMonitor,
    get_system_info,
    normalize_hex,
    write_json_atomic,
    read_json,
    now_ms,
    format_duration
)
from .errors import (
    VotingCoreError,
    ValidationError,
    TreeFullError,
    CryptoError,
    VerifierNotInitializedError,
    AuthorizationError,
    StorageError,
    KeyUnavailableError,
    ReplicaError
)

__all__ = [
    'setup_logging',
    'PerformanceMonitor',
    'get_system_info',
    'normalize_hex',
    'write_json_atomic',
    'read_json',
    'now_ms',
    'format_duration',

    'VotingCoreError',
    'ValidationError',
    'TreeFullError',
    'CryptoError',
    'VerifierNotInitializedError',
    'AuthorizationError',
    'StorageError',
    'KeyUnavailableError',
    'ReplicaError'
]
