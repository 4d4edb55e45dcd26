# -*- coding: utf-8 -*-
"""
coordination_state.py - Persisted coordination state (singleton per environment)

Responsibilities:
- Read the coordination record, materializing defaults on first read
- Merge-update fields, always stamping last_state_change
- Keep the debounce pairs (pending_debounce / debounce_started_at,
  stove_debounce_target / stove_debounce_started_at) consistent
- Reset to defaults on request
"""

import copy
from datetime import datetime
from typing import Any, Dict
import pystove.core.constants as C


class CoordinationStateStore:
    """Reads and merge-updates the coordination record.

    Defaults are returned on first read but not persisted; the record is
    written on the first update.
    """

    def __init__(self, ad, store):
        """Initialize the state store.

        Args:
            ad: AppDaemon API reference
            store: PersistenceManager instance
        """
        self.ad = ad
        self.store = store

    def get(self) -> Dict[str, Any]:
        """Get the current coordination state (defaults for absent fields).

        Raises:
            StorageUnavailable: store could not be read
        """
        state = copy.deepcopy(C.COORDINATION_STATE_DEFAULT)
        stored = self.store.get(C.PATH_COORDINATION_STATE)
        if isinstance(stored, dict):
            state.update(stored)
        return state

    def update(self, fields: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        """Merge fields into the stored state.

        last_state_change is always set to now, whatever the caller passed.

        Args:
            fields: Fields to change
            now: Current datetime

        Returns:
            The full state after the write

        Raises:
            ValueError: debounce fields written alone or inconsistent
            StorageUnavailable: store could not be written
        """
        fields = dict(fields)
        has_pending = 'pending_debounce' in fields
        has_started = 'debounce_started_at' in fields
        if has_pending != has_started:
            raise ValueError("pending_debounce and debounce_started_at must be written together")
        if has_pending and bool(fields['pending_debounce']) != (fields['debounce_started_at'] is not None):
            raise ValueError(
                f"Inconsistent debounce fields: pending_debounce={fields['pending_debounce']}, "
                f"debounce_started_at={fields['debounce_started_at']}"
            )
        if ('stove_debounce_target' in fields) != ('stove_debounce_started_at' in fields):
            raise ValueError("stove_debounce_target and stove_debounce_started_at must be written together")
        if ('stove_debounce_target' in fields
                and (fields['stove_debounce_target'] is None) != (fields['stove_debounce_started_at'] is None)):
            raise ValueError("Inconsistent stove debounce fields")
        if fields.get('automation_paused') and not fields.get('pause_reason'):
            raise ValueError("automation_paused requires a pause_reason")

        fields['last_state_change'] = now.isoformat()
        self.store.update(C.PATH_COORDINATION_STATE, fields)
        return self.get()

    def reset(self, now: datetime) -> Dict[str, Any]:
        """Restore the default state (clears any pause and debounce)."""
        state = copy.deepcopy(C.COORDINATION_STATE_DEFAULT)
        state['last_state_change'] = now.isoformat()
        self.store.set(C.PATH_COORDINATION_STATE, state)
        self.ad.log("Coordination state reset to defaults")
        return state

    @staticmethod
    def get_phase(state: Dict[str, Any]) -> str:
        """Derive the state-machine phase from a state record."""
        if not state.get('automation_paused'):
            return C.PHASE_AUTOMATED
        if state.get('pending_debounce'):
            return C.PHASE_PAUSED_DEBOUNCING
        return C.PHASE_PAUSED_ACTIVE
