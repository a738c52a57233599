"""Organizer authorization per election."""

from .co_organizers import (
    AuthorizationRegistry,
    Permission,
    CoOrganizerPermissions,
    CoOrganizer,
    ElectionOrganizers,
    normalize_address,
)

__all__ = [
    'AuthorizationRegistry',
    'Permission',
    'CoOrganizerPermissions',
    'CoOrganizer',
    'ElectionOrganizers',
    'normalize_address',
]
