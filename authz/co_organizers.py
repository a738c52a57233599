"""
Authorization Registry
Primary organizer and co-organizers per election, with per-permission checks
gating key setup, vote decryption and delegation.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Dict, Optional, Any, Union

from utils.errors import ValidationError, AuthorizationError, StorageError
from utils.utils import write_json_atomic, read_json, now_ms

logger = logging.getLogger(__name__)


class Permission(Enum):
    SETUP_ENCRYPTION = "canSetupEncryption"
    DECRYPT_VOTES = "canDecryptVotes"
    ADD_CO_ORGANIZERS = "canAddCoOrganizers"


def normalize_address(address: str) -> str:
    if not isinstance(address, str) or not address.strip():
        raise ValidationError("Address must be a non-empty string")
    return address.strip().lower()


def _election_key(election_id: Union[int, str]) -> str:
    key = str(election_id).strip()
    if not key:
        raise ValidationError("Election id must not be empty")
    return key


@dataclass
class CoOrganizerPermissions:
    can_setup_encryption: bool = True
    can_decrypt_votes: bool = True
    can_add_co_organizers: bool = False

    def allows(self, permission: Permission) -> bool:
        return {
            Permission.SETUP_ENCRYPTION: self.can_setup_encryption,
            Permission.DECRYPT_VOTES: self.can_decrypt_votes,
            Permission.ADD_CO_ORGANIZERS: self.can_add_co_organizers,
        }[permission]

    def to_dict(self) -> Dict[str, bool]:
        return {
            'canSetupEncryption': self.can_setup_encryption,
            'canDecryptVotes': self.can_decrypt_votes,
            'canAddCoOrganizers': self.can_add_co_organizers
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CoOrganizerPermissions':
        defaults = cls()
        return cls(
            can_setup_encryption=bool(data.get('canSetupEncryption', defaults.can_setup_encryption)),
            can_decrypt_votes=bool(data.get('canDecryptVotes', defaults.can_decrypt_votes)),
            can_add_co_organizers=bool(data.get('canAddCoOrganizers', defaults.can_add_co_organizers))
        )


@dataclass
class CoOrganizer:
    address: str
    added_at: int
    added_by: str
    permissions: CoOrganizerPermissions = field(default_factory=CoOrganizerPermissions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'address': self.address,
            'addedAt': self.added_at,
            'addedBy': self.added_by,
            'permissions': self.permissions.to_dict()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CoOrganizer':
        return cls(
            address=data['address'],
            added_at=data.get('addedAt', 0),
            added_by=data.get('addedBy', ''),
            permissions=CoOrganizerPermissions.from_dict(data.get('permissions', {}))
        )


@dataclass
class ElectionOrganizers:
    election_id: str
    primary_organizer: str
    co_organizers: List[CoOrganizer] = field(default_factory=list)
    created_at: int = 0
    updated_at: int = 0

    def find(self, address: str) -> Optional[CoOrganizer]:
        for co in self.co_organizers:
            if co.address == address:
                return co
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'electionId': self.election_id,
            'primaryOrganizer': self.primary_organizer,
            'coOrganizers': [co.to_dict() for co in self.co_organizers],
            'createdAt': self.created_at,
            'updatedAt': self.updated_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ElectionOrganizers':
        return cls(
            election_id=str(data['electionId']),
            primary_organizer=data['primaryOrganizer'],
            co_organizers=[CoOrganizer.from_dict(co) for co in data.get('coOrganizers', [])],
            created_at=data.get('createdAt', 0),
            updated_at=data.get('updatedAt', 0)
        )


class AuthorizationRegistry:
    """
    Persistent organizer registry.

    Mutations of one election are serialized by that election's lock; the
    whole registry is rewritten atomically before a mutation is committed in
    memory, so a failed write leaves the previous state in place.
    """

    def __init__(self, storage_path: Optional[Path] = None):
        self.storage_path = Path(storage_path) if storage_path else None
        self._elections: Dict[str, ElectionOrganizers] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._io_lock = threading.Lock()
        self._load()

    def _load(self):
        if self.storage_path is None:
            return
        data = read_json(self.storage_path)
        if data is None:
            logger.info("No co-organizers file found, starting fresh")
            return
        try:
            self._elections = {key: ElectionOrganizers.from_dict(entry)
                               for key, entry in data.items()}
        except (KeyError, TypeError, AttributeError) as e:
            raise StorageError(f"Corrupt co-organizers file {self.storage_path}: {e}") from e
        logger.info(f"Co-organizers loaded for {len(self._elections)} elections")

    def _lock_for(self, election_key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(election_key, threading.Lock())

    def _commit(self, election_key: str, entry: ElectionOrganizers):
        """Persist the registry with the new entry, then publish it"""
        with self._io_lock:
            if self.storage_path is not None:
                snapshot = {key: value.to_dict() for key, value in self._elections.items()}
                snapshot[election_key] = entry.to_dict()
                try:
                    write_json_atomic(self.storage_path, snapshot)
                except StorageError as e:
                    logger.error(f"Failed to save co-organizers: {e}")
                    raise
            self._elections[election_key] = entry

    def _existing(self, election_key: str) -> ElectionOrganizers:
        entry = self._elections.get(election_key)
        if entry is None:
            raise ValidationError(f"Election {election_key} not initialized for co-organizers")
        return copy.deepcopy(entry)

    def initialize(self, election_id: Union[int, str], primary_organizer: str) -> ElectionOrganizers:
        election_key = _election_key(election_id)
        primary = normalize_address(primary_organizer)

        with self._lock_for(election_key):
            existing = self._elections.get(election_key)
            if existing is not None:
                logger.warning(f"Election {election_key} already initialized")
                return copy.deepcopy(existing)

            timestamp = now_ms()
            entry = ElectionOrganizers(
                election_id=election_key,
                primary_organizer=primary,
                created_at=timestamp,
                updated_at=timestamp
            )
            self._commit(election_key, entry)

        logger.info(f"Election {election_key} co-organizers initialized, primary {primary}")
        return copy.deepcopy(entry)

    def add_co_organizer(self, election_id: Union[int, str], address: str, added_by: str,
                         permissions: Optional[CoOrganizerPermissions] = None) -> CoOrganizer:
        election_key = _election_key(election_id)
        address = normalize_address(address)
        added_by = normalize_address(added_by)

        with self._lock_for(election_key):
            entry = self._existing(election_key)
            if entry.find(address) is not None:
                raise ValidationError("Address is already a co-organizer")
            if address == entry.primary_organizer:
                raise ValidationError("Primary organizer cannot be added as co-organizer")

            co_organizer = CoOrganizer(
                address=address,
                added_at=now_ms(),
                added_by=added_by,
                permissions=copy.copy(permissions) if permissions else CoOrganizerPermissions()
            )
            entry.co_organizers.append(co_organizer)
            entry.updated_at = co_organizer.added_at
            self._commit(election_key, entry)

        logger.info(f"Co-organizer {address} added to election {election_key} by {added_by}")
        return copy.deepcopy(co_organizer)

    def remove_co_organizer(self, election_id: Union[int, str], address: str, removed_by: str):
        election_key = _election_key(election_id)
        address = normalize_address(address)
        removed_by = normalize_address(removed_by)

        with self._lock_for(election_key):
            entry = self._existing(election_key)
            co_organizer = entry.find(address)
            if co_organizer is None:
                raise ValidationError("Address is not a co-organizer")

            entry.co_organizers.remove(co_organizer)
            entry.updated_at = now_ms()
            self._commit(election_key, entry)

        logger.info(f"Co-organizer {address} removed from election {election_key} by {removed_by}")

    def update_permissions(self, election_id: Union[int, str], address: str,
                           permissions: CoOrganizerPermissions) -> CoOrganizer:
        election_key = _election_key(election_id)
        address = normalize_address(address)

        with self._lock_for(election_key):
            entry = self._existing(election_key)
            co_organizer = entry.find(address)
            if co_organizer is None:
                raise ValidationError("Address is not a co-organizer")

            co_organizer.permissions = copy.copy(permissions)
            entry.updated_at = now_ms()
            self._commit(election_key, entry)

        logger.info(f"Co-organizer {address} permissions updated for election {election_key}")
        return copy.deepcopy(co_organizer)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_permission(self, election_id: Union[int, str], address: str,
                       permission: Permission) -> bool:
        try:
            election_key = _election_key(election_id)
            address = normalize_address(address)
        except ValidationError:
            return False

        entry = self._elections.get(election_key)
        if entry is None:
            return False
        if address == entry.primary_organizer:
            return True
        co_organizer = entry.find(address)
        return co_organizer is not None and co_organizer.permissions.allows(permission)

    def require_permission(self, election_id: Union[int, str], address: str,
                           permission: Permission):
        if not self.has_permission(election_id, address, permission):
            logger.warning(f"Denied {permission.value} on election {election_id} for {address}")
            raise AuthorizationError(
                f"{address} lacks {permission.value} for election {election_id}")

    def is_organizer(self, election_id: Union[int, str], address: str) -> bool:
        try:
            election_key = _election_key(election_id)
            address = normalize_address(address)
        except ValidationError:
            return False
        entry = self._elections.get(election_key)
        if entry is None:
            return False
        return address == entry.primary_organizer or entry.find(address) is not None

    def can_setup_encryption(self, election_id: Union[int, str], address: str) -> bool:
        return self.has_permission(election_id, address, Permission.SETUP_ENCRYPTION)

    def can_decrypt_votes(self, election_id: Union[int, str], address: str) -> bool:
        return self.has_permission(election_id, address, Permission.DECRYPT_VOTES)

    def can_add_co_organizers(self, election_id: Union[int, str], address: str) -> bool:
        return self.has_permission(election_id, address, Permission.ADD_CO_ORGANIZERS)

    def get_co_organizers(self, election_id: Union[int, str]) -> List[CoOrganizer]:
        entry = self._elections.get(_election_key(election_id))
        return copy.deepcopy(entry.co_organizers) if entry else []

    def get_election_organizers(self, election_id: Union[int, str]) -> Optional[ElectionOrganizers]:
        entry = self._elections.get(_election_key(election_id))
        return copy.deepcopy(entry) if entry else None
