# -*- coding: utf-8 -*-
"""
status_publisher.py - Publish PyStove state as Home Assistant entities

Responsibilities:
- sensor.pystove_maintenance: usage hours with cleaning progress attributes
- sensor.pystove_coordination: coordination phase with pause details
"""

from typing import Any, Dict
import pystove.core.constants as C


class StatusPublisher:
    """Publishes maintenance and coordination state to Home Assistant."""

    def __init__(self, ad, config):
        """Initialize the status publisher.

        Args:
            ad: AppDaemon API reference
            config: ConfigLoader instance
        """
        self.ad = ad
        self.config = config

    def publish_maintenance(self, status: Dict[str, Any]) -> None:
        """Publish MaintenanceTracker.get_status() output."""
        attrs = {
            'friendly_name': "PyStove Maintenance",
            'unit_of_measurement': "h",
            'icon': "mdi:broom" if status.get('needs_cleaning') else "mdi:fireplace",
            'target_hours': status.get('target_hours'),
            'percentage': status.get('percentage'),
            'remaining_hours': status.get('remaining_hours'),
            'needs_cleaning': status.get('needs_cleaning'),
            'is_near_limit': status.get('is_near_limit'),
            'last_notification_level': status.get('last_notification_level'),
            'last_updated_at': status.get('last_updated_at'),
            'last_cleaned_at': status.get('last_cleaned_at'),
        }
        try:
            self.ad.set_state(C.MAINTENANCE_ENTITY,
                              state=round(status.get('current_hours', 0.0), 2),
                              attributes=attrs, replace=True)
        except Exception as e:
            self.ad.log(f"Failed to publish maintenance status: {e}", level="WARNING")

    def publish_coordination(self, status: Dict[str, Any]) -> None:
        """Publish CoordinationController.get_status() output."""
        attrs = {
            'friendly_name': "PyStove Coordination",
            'icon': "mdi:pause-circle" if status.get('automation_paused') else "mdi:sync",
            'automation_active': status.get('automation_active'),
            'automation_paused': status.get('automation_paused'),
            'pause_reason': status.get('pause_reason'),
            'paused_until': status.get('paused_until'),
            'pause_remaining_s': status.get('pause_remaining_s'),
            'pending_debounce': status.get('pending_debounce'),
            'debounce_remaining_s': status.get('debounce_remaining_s'),
            'stove_debounce_target': status.get('stove_debounce_target'),
            'stove_debounce_remaining_s': status.get('stove_debounce_remaining_s'),
            'applied_setpoints': status.get('applied_setpoints'),
            'saved_setpoints': status.get('saved_setpoints'),
            'last_state_change': status.get('last_state_change'),
        }
        try:
            self.ad.set_state(C.COORDINATION_ENTITY, state=status.get('phase'),
                              attributes=attrs, replace=True)
        except Exception as e:
            self.ad.log(f"Failed to publish coordination status: {e}", level="WARNING")
