# -*- coding: utf-8 -*-
"""
user_intent.py - Detect manual changes made to the climate subsystem

Responsibilities:
- Compare observed room setpoints with the values the automation expects
- Flag rooms switched to away / frost protection / off by the user
- Report each change with the expected and observed value
"""

from typing import Any, Dict, List, Optional
import pystove.core.constants as C


class UserIntentDetector:
    """Decides whether the user has overridden the automation."""

    def __init__(self, ad, climate):
        """Initialize the detector.

        Args:
            ad: AppDaemon API reference
            climate: ClimateController instance
        """
        self.ad = ad
        self.climate = climate

    def detect(self, expected_setpoints: Optional[Dict[str, float]]) -> Dict[str, Any]:
        """Check the rooms in expected_setpoints for manual changes.

        Args:
            expected_setpoints: {room_id: setpoint} the automation believes is set

        Returns:
            {'manual_change': bool, 'reason': str|None, 'changes': [...]}, plus
            'error' if the climate status could not be read (manual_change is
            then False)
        """
        if not expected_setpoints:
            return {'manual_change': False, 'reason': None, 'changes': []}

        try:
            statuses = self.climate.get_rooms_status(list(expected_setpoints.keys()))
        except Exception as e:
            self.ad.log(f"User intent check failed: {e}", level="WARNING")
            return {'manual_change': False, 'reason': None, 'changes': [], 'error': str(e)}

        changes: List[Dict[str, Any]] = []
        for room_id, expected in expected_setpoints.items():
            status = statuses.get(room_id)
            if not status:
                continue

            mode = status.get('mode')
            if mode in C.MANUAL_MODES:
                changes.append({
                    'room_id': room_id,
                    'room_name': status.get('name', room_id),
                    'type': 'mode_changed',
                    'expected': 'schedule',
                    'actual': mode,
                })
                continue

            actual = status.get('setpoint')
            if actual is None or expected is None:
                continue
            if abs(actual - expected) > C.USER_INTENT_SETPOINT_TOLERANCE_C:
                changes.append({
                    'room_id': room_id,
                    'room_name': status.get('name', room_id),
                    'type': 'setpoint_changed',
                    'expected': expected,
                    'actual': actual,
                })

        if not changes:
            return {'manual_change': False, 'reason': None, 'changes': []}

        if any(change['type'] == 'mode_changed' for change in changes):
            reason = C.PAUSE_REASON_MODE
        else:
            reason = C.PAUSE_REASON_SETPOINT

        summary = ', '.join(f"{c['room_id']} {c['type']} ({c['expected']} -> {c['actual']})" for c in changes)
        self.ad.log(f"Manual change detected: {summary}")
        return {'manual_change': True, 'reason': reason, 'changes': changes}
