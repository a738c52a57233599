"""Custody of election decryption keys."""

from .key_custody import (
    KeyCustodian,
    EncryptedKeyRecord,
    StoreResult,
    LocalKeyStore,
    BackupIndex,
    RemoteReplica,
    PinataReplica,
    TieredKeyStore,
    derive_key,
)

__all__ = [
    'KeyCustodian',
    'EncryptedKeyRecord',
    'StoreResult',
    'LocalKeyStore',
    'BackupIndex',
    'RemoteReplica',
    'PinataReplica',
    'TieredKeyStore',
    'derive_key',
]
