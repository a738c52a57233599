"""
Key Custodian
Password-protected storage of election decryption keys.

Private keys are sealed with AES-256-GCM under a key derived from the master
password with scrypt (fresh salt and IV per record). Sealed records live in a
local key directory first and are optionally mirrored to a remote replica;
a small index maps election ids to remote backup ids so a key lost locally
can still be recovered.
"""

import base64
import json
import logging
import os
import re
import secrets
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Optional, Any

import requests
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from config.config import CustodyConfig
from utils.errors import ValidationError, CryptoError, StorageError, ReplicaError
from utils.utils import normalize_hex, write_json_atomic, read_json, now_ms

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32
IV_LENGTH = 12
SALT_LENGTH = 32
TAG_LENGTH = 16

ELECTION_ID_RE = re.compile(r'^[A-Za-z0-9_-]+$')
KEY_FILE_RE = re.compile(r'^election-([A-Za-z0-9_-]+)-key\.json$')

DECRYPT_FAILURE = "Failed to decrypt private key (invalid password or corrupted data)"


def validate_election_id(election_id: Any) -> str:
    election_id = str(election_id)
    if not ELECTION_ID_RE.match(election_id):
        raise ValidationError(
            f"Election id {election_id!r} may only contain letters, digits, '-' and '_'")
    return election_id


@dataclass
class EncryptedKeyRecord:
    ciphertext: str
    iv: str
    auth_tag: str
    salt: str
    algorithm: str = ALGORITHM
    created_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ciphertext': self.ciphertext,
            'iv': self.iv,
            'authTag': self.auth_tag,
            'salt': self.salt,
            'algorithm': self.algorithm,
            'createdAt': self.created_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EncryptedKeyRecord':
        try:
            record = cls(
                ciphertext=data['ciphertext'],
                iv=data['iv'],
                auth_tag=data['authTag'],
                salt=data['salt'],
                algorithm=data.get('algorithm', ALGORITHM),
                created_at=data.get('createdAt', 0)
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValidationError(f"Malformed encrypted key record: {e}") from e

        for name in ('ciphertext', 'iv', 'auth_tag', 'salt'):
            if not isinstance(getattr(record, name), str):
                raise ValidationError(f"Malformed encrypted key record: {name} must be a hex string")
        return record


@dataclass
class StoreResult:
    local_path: Path
    remote_backup_id: Optional[str] = None


def derive_key(password: str, salt: bytes, n: int = 2 ** 14, r: int = 8, p: int = 1) -> bytes:
    """scrypt(password, salt) -> 32-byte AES key"""
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=n, r=r, p=p)
    return kdf.derive(password.encode('utf-8'))


# ============================================================================
# LOCAL STORE AND BACKUP INDEX
# ============================================================================


class LocalKeyStore:
    """One JSON file per election in a 0700 directory, files written 0600"""

    def __init__(self, key_dir: Path):
        self.key_dir = Path(key_dir)

    def _ensure_dir(self):
        try:
            self.key_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.key_dir, 0o700)
        except OSError as e:
            raise StorageError(f"Cannot prepare key directory {self.key_dir}: {e}") from e

    def path_for(self, election_id: str) -> Path:
        return self.key_dir / f"election-{validate_election_id(election_id)}-key.json"

    def write(self, election_id: str, record: Dict[str, Any]) -> Path:
        path = self.path_for(election_id)
        self._ensure_dir()
        write_json_atomic(path, record, mode=0o600)
        return path

    def read(self, election_id: str) -> Optional[Dict[str, Any]]:
        return read_json(self.path_for(election_id))

    def exists(self, election_id: str) -> bool:
        return self.path_for(election_id).exists()

    def delete(self, election_id: str) -> bool:
        path = self.path_for(election_id)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Cannot delete {path}: {e}") from e

    def list(self) -> List[str]:
        if not self.key_dir.exists():
            return []
        elections = []
        for entry in self.key_dir.iterdir():
            match = KEY_FILE_RE.match(entry.name)
            if match:
                elections.append(match.group(1))
        return sorted(elections)


class BackupIndex:
    """election id -> remote backup id, mirrored to a JSON file"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        data = read_json(self.path)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StorageError(f"Corrupt backup index {self.path}")
        return data

    def get(self, election_id: str) -> Optional[str]:
        with self._lock:
            entry = self._load().get(election_id)
        return entry.get('remoteId') if entry else None

    def set(self, election_id: str, remote_id: str):
        with self._lock:
            data = self._load()
            data[election_id] = {'remoteId': remote_id, 'storedAt': now_ms()}
            write_json_atomic(self.path, data)

    def remove(self, election_id: str) -> bool:
        with self._lock:
            data = self._load()
            if election_id not in data:
                return False
            del data[election_id]
            write_json_atomic(self.path, data)
            return True

    def list(self) -> List[str]:
        with self._lock:
            return sorted(self._load().keys())


# ============================================================================
# REMOTE REPLICAS
# ============================================================================


class RemoteReplica(ABC):
    """Content store used as a secondary copy of sealed key records"""

    @abstractmethod
    def put(self, data: bytes, name: Optional[str] = None) -> str:
        """Store data, return an opaque id. `name` is an optional label."""

    @abstractmethod
    def get(self, remote_id: str) -> bytes:
        ...


class PinataReplica(RemoteReplica):
    """IPFS pinning through the Pinata HTTP API"""

    def __init__(self, api_key: str, secret_key: str,
                 api_url: str = "https://api.pinata.cloud",
                 gateway_url: str = "https://gateway.pinata.cloud/ipfs",
                 timeout: float = 10.0):
        if not api_key or not secret_key:
            logger.warning("Pinata credentials not configured. Remote backups will fail.")
        self.api_key = api_key
        self.secret_key = secret_key
        self.api_url = api_url.rstrip('/')
        self.gateway_url = gateway_url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()

    @classmethod
    def from_config(cls, config: CustodyConfig) -> 'PinataReplica':
        return cls(config.pinata_api_key, config.pinata_secret_key,
                   config.pinata_api_url, config.pinata_gateway_url,
                   config.remote_timeout)

    def put(self, data: bytes, name: Optional[str] = None) -> str:
        name = name or f"key-backup-{now_ms()}"
        payload = {
            'pinataContent': {'data': base64.b64encode(data).decode('ascii')},
            'pinataMetadata': {'name': name}
        }
        headers = {
            'pinata_api_key': self.api_key or '',
            'pinata_secret_api_key': self.secret_key or ''
        }
        try:
            response = self.session.post(f"{self.api_url}/pinning/pinJSONToIPFS",
                                         json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            ipfs_hash = response.json()['IpfsHash']
        except (requests.RequestException, ValueError, KeyError) as e:
            raise ReplicaError(f"Failed to upload to IPFS: {e}") from e

        logger.info(f"Uploaded {name} to IPFS: {ipfs_hash}")
        return ipfs_hash

    def get(self, remote_id: str) -> bytes:
        try:
            response = self.session.get(f"{self.gateway_url}/{remote_id}", timeout=self.timeout)
            response.raise_for_status()
            return base64.b64decode(response.json()['data'])
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            raise ReplicaError(f"Failed to download from IPFS: {e}") from e


# ============================================================================
# TWO-TIER STORE
# ============================================================================


class TieredKeyStore:
    """Local store is authoritative; the replica is best-effort"""

    def __init__(self, local: LocalKeyStore, replica: Optional[RemoteReplica] = None,
                 index: Optional[BackupIndex] = None, remote_timeout: float = 10.0):
        self.local = local
        self.replica = replica
        self.index = index
        self.remote_timeout = remote_timeout
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="key-replica")

    def store(self, election_id: str, record: Dict[str, Any]) -> StoreResult:
        local_path = self.local.write(election_id, record)
        result = StoreResult(local_path=local_path)

        if self.replica is None:
            return result

        try:
            remote_id = self.replica.put(json.dumps(record).encode('utf-8'))
        except Exception as e:
            logger.warning(f"Remote backup failed for election {election_id}: {e}")
            return result

        result.remote_backup_id = remote_id
        if self.index is not None:
            try:
                self.index.set(election_id, remote_id)
            except StorageError as e:
                logger.warning(f"Could not record remote backup id for {election_id}: {e}")
        return result

    def _fetch_remote(self, election_id: str, timeout: float) -> Optional[Dict[str, Any]]:
        remote_id = self.index.get(election_id) if self.index is not None else None
        if remote_id is None or self.replica is None:
            return None

        future = self._executor.submit(self.replica.get, remote_id)
        try:
            data = future.result(timeout=timeout)
            record = json.loads(data.decode('utf-8'))
        except FutureTimeoutError:
            logger.warning(
                f"Remote key fetch for election {election_id} timed out after {timeout}s")
            return None
        except Exception as e:
            logger.warning(f"Remote key fetch failed for election {election_id}: {e}")
            return None

        try:
            EncryptedKeyRecord.from_dict(record)
        except ValidationError as e:
            logger.warning(f"Remote copy for election {election_id} is not a key record: {e}")
            return None
        return record

    def retrieve(self, election_id: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        record = self.local.read(election_id)
        if record is not None:
            return record

        record = self._fetch_remote(election_id,
                                    self.remote_timeout if timeout is None else timeout)
        if record is None:
            return None

        logger.info(f"Recovered key for election {election_id} from remote backup")
        try:
            self.local.write(election_id, record)
        except StorageError as e:
            logger.warning(f"Could not re-cache recovered key for {election_id}: {e}")
        return record

    def has(self, election_id: str) -> bool:
        if self.local.exists(election_id):
            return True
        return self.index is not None and self.index.get(election_id) is not None

    def delete(self, election_id: str) -> bool:
        removed = self.local.delete(election_id)
        if self.index is not None:
            removed = self.index.remove(election_id) or removed
        return removed

    def list(self) -> List[str]:
        elections = set(self.local.list())
        if self.index is not None:
            elections.update(self.index.list())
        return sorted(elections)

    def shutdown(self):
        self._executor.shutdown(wait=False)


# ============================================================================
# KEY CUSTODIAN
# ============================================================================


class KeyCustodian:
    """Seals election private keys under the master password"""

    def __init__(self, config: Optional[CustodyConfig] = None,
                 replica: Optional[RemoteReplica] = None):
        self.config = config or CustodyConfig()

        password = self.config.master_password
        if not password:
            password = secrets.token_urlsafe(32)
            logger.warning(
                "MASTER_KEY_PASSWORD not set; using a generated development password. "
                "Keys stored in this process cannot be decrypted after restart.")
        self._password = password

        if replica is None and self.config.enable_remote_backup:
            replica = PinataReplica.from_config(self.config)

        self.store = TieredKeyStore(
            local=LocalKeyStore(self.config.key_dir),
            replica=replica,
            index=BackupIndex(self.config.backup_index_path) if replica is not None else None,
            remote_timeout=self.config.remote_timeout
        )

    def derive_key_from_password(self, salt: bytes) -> bytes:
        return derive_key(self._password, salt, self.config.scrypt_n,
                          self.config.scrypt_r, self.config.scrypt_p)

    def encrypt_private_key(self, private_key: str) -> EncryptedKeyRecord:
        normalized = normalize_hex(private_key, expected_length=64, name="private key")

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self.derive_key_from_password(salt)

        sealed = AESGCM(key).encrypt(iv, normalized.encode('ascii'), None)
        return EncryptedKeyRecord(
            ciphertext=sealed[:-TAG_LENGTH].hex(),
            iv=iv.hex(),
            auth_tag=sealed[-TAG_LENGTH:].hex(),
            salt=salt.hex(),
            algorithm=ALGORITHM,
            created_at=now_ms()
        )

    def decrypt_private_key(self, record: EncryptedKeyRecord) -> str:
        if isinstance(record, dict):
            try:
                record = EncryptedKeyRecord.from_dict(record)
            except ValidationError as e:
                raise CryptoError(DECRYPT_FAILURE) from e

        try:
            if record.algorithm != ALGORITHM:
                raise ValueError(f"unsupported algorithm {record.algorithm}")
            ciphertext = bytes.fromhex(record.ciphertext)
            iv = bytes.fromhex(record.iv)
            tag = bytes.fromhex(record.auth_tag)
            salt = bytes.fromhex(record.salt)
            if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH or len(salt) != SALT_LENGTH:
                raise ValueError("field length mismatch")

            key = self.derive_key_from_password(salt)
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None).decode('ascii')
        except (InvalidTag, ValueError, TypeError) as e:
            raise CryptoError(DECRYPT_FAILURE) from e

        return plaintext

    def store_encrypted_key(self, election_id: str, record: EncryptedKeyRecord) -> StoreResult:
        election_id = validate_election_id(election_id)
        result = self.store.store(election_id, record.to_dict())
        logger.info(f"Stored encrypted key for election {election_id}"
                    f"{' with remote backup' if result.remote_backup_id else ''}")
        return result

    def retrieve_encrypted_key(self, election_id: str,
                               timeout: Optional[float] = None) -> Optional[EncryptedKeyRecord]:
        election_id = validate_election_id(election_id)
        data = self.store.retrieve(election_id, timeout)
        if data is None:
            logger.warning(f"No key found for election {election_id}")
            return None
        return EncryptedKeyRecord.from_dict(data)

    def has_private_key(self, election_id: str) -> bool:
        return self.store.has(validate_election_id(election_id))

    def delete_private_key(self, election_id: str) -> bool:
        election_id = validate_election_id(election_id)
        removed = self.store.delete(election_id)
        if removed:
            logger.info(f"Deleted key for election {election_id}")
        else:
            logger.warning(f"No key to delete for election {election_id}")
        return removed

    def list_elections_with_keys(self) -> List[str]:
        return self.store.list()

    def securely_store_private_key(self, election_id: str, private_key: str) -> StoreResult:
        return self.store_encrypted_key(election_id, self.encrypt_private_key(private_key))

    def securely_retrieve_private_key(self, election_id: str,
                                      timeout: Optional[float] = None) -> Optional[str]:
        record = self.retrieve_encrypted_key(election_id, timeout)
        if record is None:
            return None
        return self.decrypt_private_key(record)

    def self_test(self) -> bool:
        """Seal and unseal a random key without touching storage"""
        sample = secrets.token_hex(32)
        try:
            ok = self.decrypt_private_key(self.encrypt_private_key(sample)) == sample
        except CryptoError as e:
            logger.error(f"Key custody self-test failed: {e}")
            return False
        if ok:
            logger.info("Key custody self-test passed")
        else:
            logger.error("Key custody self-test returned a different key")
        return ok

    def shutdown(self):
        self.store.shutdown()
