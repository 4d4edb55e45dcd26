# -*- coding: utf-8 -*-
"""
climate_controller.py - Room climate entity control

Responsibilities:
- Read room setpoints and modes from Home Assistant climate entities
- Write setpoints (boost, restore) via climate/set_temperature
- Hand rooms back to their own schedule when no prior setpoint is known
- Remember recent commands so our own changes are not mistaken for user changes
"""

from datetime import datetime
from typing import Dict, List, Optional, Any
import pystove.core.constants as C


class ClimateController:
    """Reads and writes room setpoints through climate entities."""

    def __init__(self, ad, config):
        """Initialize the climate controller.

        Args:
            ad: AppDaemon API reference
            config: ConfigLoader instance
        """
        self.ad = ad
        self.config = config
        # Most recent command per room: {room_id: (setpoint, datetime)}
        self.last_commanded: Dict[str, tuple] = {}

    def get_room_status(self, room_id: str) -> Optional[Dict[str, Any]]:
        """Get current setpoint and mode for a room.

        Mode is the preset when one is active (away, frost_protection, ...),
        otherwise the HVAC state (heat, auto, off).

        Returns:
            {'room_id', 'name', 'setpoint': float|None, 'mode': str|None},
            or None for an unknown room
        """
        room = self.config.rooms.get(room_id)
        if not room:
            return None

        entity_state = self.ad.get_state(room['climate'], attribute='all')
        setpoint = None
        mode = None
        if entity_state:
            attrs = entity_state.get('attributes', {}) or {}
            raw = attrs.get('temperature')
            try:
                setpoint = float(raw) if raw is not None else None
            except (TypeError, ValueError):
                self.ad.log(f"Room '{room_id}': non-numeric setpoint '{raw}'", level="WARNING")
            preset = attrs.get('preset_mode')
            if preset and preset not in ('none', C.SCHEDULE_PRESET):
                mode = preset
            else:
                mode = entity_state.get('state')

        return {'room_id': room_id, 'name': room['name'], 'setpoint': setpoint, 'mode': mode}

    def get_rooms_status(self, room_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Get status for several rooms; unknown rooms are skipped."""
        statuses = {}
        for room_id in room_ids:
            status = self.get_room_status(room_id)
            if status is not None:
                statuses[room_id] = status
        return statuses

    def get_setpoints(self, room_ids: List[str]) -> Dict[str, float]:
        """Current setpoints for rooms that report one."""
        return {
            room_id: status['setpoint']
            for room_id, status in self.get_rooms_status(room_ids).items()
            if status['setpoint'] is not None
        }

    def set_setpoint(self, room_id: str, setpoint: float, now: Optional[datetime] = None) -> bool:
        """Command a room setpoint.

        Returns:
            True if the service call was issued
        """
        room = self.config.rooms.get(room_id)
        if not room:
            self.ad.log(f"Cannot set setpoint: room '{room_id}' not configured", level="WARNING")
            return False

        try:
            self.ad.call_service('climate/set_temperature',
                                 entity_id=room['climate'],
                                 temperature=setpoint)
        except Exception as e:
            self.ad.log(f"Failed to set setpoint for '{room_id}' to {setpoint}C: {e}", level="ERROR")
            return False

        self.last_commanded[room_id] = (setpoint, now or datetime.now())
        self.ad.log(f"Room '{room_id}' setpoint -> {setpoint}C")
        return True

    def set_schedule_mode(self, room_id: str) -> bool:
        """Return a room to its thermostat schedule."""
        room = self.config.rooms.get(room_id)
        if not room:
            return False

        try:
            self.ad.call_service('climate/set_preset_mode',
                                 entity_id=room['climate'],
                                 preset_mode=C.SCHEDULE_PRESET)
        except Exception as e:
            self.ad.log(f"Failed to return '{room_id}' to schedule: {e}", level="ERROR")
            return False

        self.last_commanded.pop(room_id, None)
        self.ad.log(f"Room '{room_id}' returned to schedule")
        return True

    def restore_setpoints(self, setpoints: Dict[str, Optional[float]],
                          now: Optional[datetime] = None) -> Dict[str, List[str]]:
        """Restore each room to a saved setpoint (schedule mode if None).

        Returns:
            {'restored': [room_id, ...], 'failed': [room_id, ...]}
        """
        restored, failed = [], []
        for room_id, setpoint in setpoints.items():
            if setpoint is None:
                ok = self.set_schedule_mode(room_id)
            else:
                ok = self.set_setpoint(room_id, setpoint, now)
            (restored if ok else failed).append(room_id)
        return {'restored': restored, 'failed': failed}

    def is_own_change(self, room_id: str, setpoint: Any, now: datetime) -> bool:
        """Whether a setpoint event echoes a command we issued recently."""
        commanded = self.last_commanded.get(room_id)
        if not commanded:
            return False
        value, when = commanded
        try:
            setpoint = float(setpoint)
        except (TypeError, ValueError):
            return False
        if (now - when).total_seconds() > C.SELF_CHANGE_WINDOW_S:
            return False
        return abs(setpoint - value) <= C.USER_INTENT_SETPOINT_TOLERANCE_C
