# -*- coding: utf-8 -*-
"""
coordination_preferences.py - Per-user coordination preferences

Responsibilities:
- Read preferences, materializing defaults (not persisted until first write)
- Validate every write against a schema before it reaches the store
- Version every accepted update and stamp updated_at
- Resolve per-zone boost amounts
"""

import copy
from datetime import datetime
from typing import Any, Dict, List, Optional

import voluptuous as vol

import pystove.core.constants as C
from pystove.core.errors import ValidationFailed


BOOST_SCHEMA = vol.All(vol.Coerce(float), vol.Range(min=C.BOOST_MIN_C, max=C.BOOST_MAX_C))


def _unique_rooms(zones: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    for zone in zones:
        if zone['room_id'] in seen:
            raise vol.Invalid(f"duplicate zone for room '{zone['room_id']}'")
        seen.add(zone['room_id'])
    return zones


ZONE_SCHEMA = vol.Schema(
    {
        vol.Required('room_id'): vol.All(str, vol.Length(min=1)),
        vol.Optional('room_name', default=''): str,
        vol.Optional('enabled', default=True): bool,
        vol.Optional('boost', default=None): vol.Any(None, BOOST_SCHEMA),
    }
)

NOTIFICATION_PREFERENCES_SCHEMA = vol.Schema(
    {vol.Optional(key, default=value): bool for key, value in C.NOTIFICATION_PREFERENCES_DEFAULT.items()}
)

FIELD_SCHEMAS = {
    'enabled': vol.Schema(bool),
    'default_boost': vol.Schema(BOOST_SCHEMA),
    'zones': vol.Schema(vol.All([ZONE_SCHEMA], _unique_rooms)),
    'notification_preferences': NOTIFICATION_PREFERENCES_SCHEMA,
    'version': vol.Schema(vol.All(int, vol.Range(min=1))),
    'updated_at': vol.Schema(vol.Any(None, str)),
}

PREFERENCES_SCHEMA = vol.Schema({vol.Required(key): schema for key, schema in FIELD_SCHEMAS.items()})


def default_preferences() -> Dict[str, Any]:
    return {
        'enabled': True,
        'default_boost': C.BOOST_DEFAULT_C,
        'zones': [],
        'notification_preferences': dict(C.NOTIFICATION_PREFERENCES_DEFAULT),
        'version': 1,
        'updated_at': None,
    }


class CoordinationPreferences:
    """Schema-validated, versioned preferences store (last write wins)."""

    def __init__(self, ad, store):
        """Initialize the preferences store.

        Args:
            ad: AppDaemon API reference
            store: PersistenceManager instance
        """
        self.ad = ad
        self.store = store

    def _path(self, user_id: str) -> str:
        return C.PATH_COORDINATION_PREFERENCES.format(user_id=user_id)

    def get(self, user_id: str) -> Dict[str, Any]:
        """Get preferences for a user, defaults if none are stored.

        Stored fields are checked one at a time: a field that no longer
        validates falls back to its default and the rest (version included)
        are kept. Unknown notification keys are dropped. The stored copy is
        left alone until the next update.
        """
        stored = self.store.get(self._path(user_id))
        prefs = default_preferences()
        if not isinstance(stored, dict):
            return prefs

        for key, schema in FIELD_SCHEMAS.items():
            if key not in stored:
                continue
            value = stored[key]
            if key == 'notification_preferences' and isinstance(value, dict):
                value = {k: v for k, v in value.items() if k in C.NOTIFICATION_PREFERENCES_DEFAULT}
            try:
                prefs[key] = schema(value)
            except vol.Invalid as e:
                self.ad.log(f"Stored preferences for '{user_id}': invalid {key} ({e}), using default",
                            level="WARNING")
        return prefs

    def update(self, user_id: str, fields: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        """Merge fields into a user's preferences and persist.

        version and updated_at are managed here; values passed for them are
        ignored. notification_preferences is merged key by key.

        Args:
            user_id: Preferences owner
            fields: Fields to change
            now: Current datetime

        Returns:
            The validated record as stored

        Raises:
            ValidationFailed: merged record fails the schema (nothing written)
        """
        current = self.get(user_id)
        fields = copy.deepcopy(fields)
        fields.pop('version', None)
        fields.pop('updated_at', None)

        notification_prefs = fields.pop('notification_preferences', None)
        merged = dict(current)
        merged.update(fields)
        if notification_prefs is not None:
            if not isinstance(notification_prefs, dict):
                raise ValidationFailed("notification_preferences must be a mapping", path=self._path(user_id))
            merged['notification_preferences'] = dict(current['notification_preferences'])
            merged['notification_preferences'].update(notification_prefs)

        merged['version'] = current['version'] + 1
        merged['updated_at'] = now.isoformat()

        try:
            validated = PREFERENCES_SCHEMA(merged)
        except vol.Invalid as e:
            self.ad.log(f"Rejected preferences update for '{user_id}': {e}", level="WARNING")
            raise ValidationFailed(str(e), path=self._path(user_id)) from e

        self.store.set(self._path(user_id), validated)
        self.ad.log(f"Preferences for '{user_id}' updated to version {validated['version']}")
        return validated

    @staticmethod
    def get_enabled_zones(preferences: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [zone for zone in preferences.get('zones', []) if zone.get('enabled', True)]

    @staticmethod
    def get_zone_boost(preferences: Dict[str, Any], room_id: str) -> Optional[float]:
        """Boost for a room: its zone override, else the default boost.

        Returns:
            Boost in C, or None if the room is not an enabled zone
        """
        for zone in preferences.get('zones', []):
            if zone['room_id'] == room_id:
                if not zone.get('enabled', True):
                    return None
                if zone.get('boost') is not None:
                    return zone['boost']
                return preferences['default_boost']
        return None
