# -*- coding: utf-8 -*-
"""
service_handler.py - Service registration and callbacks

Responsibilities:
- Register AppDaemon services for pystove
- Validate service call arguments
- Bridge service calls to the maintenance tracker and coordination controller
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

import voluptuous as vol

from pystove.core.errors import PyStoveError, ValidationFailed


SET_TARGET_HOURS_SCHEMA = vol.Schema(
    {vol.Required('hours'): vol.All(vol.Coerce(float), vol.Range(min=0, min_included=False))},
    extra=vol.REMOVE_EXTRA,
)

TRACK_USAGE_SCHEMA = vol.Schema(
    {vol.Optional('status'): vol.All(str, vol.Length(min=1))},
    extra=vol.REMOVE_EXTRA,
)

GET_EVENTS_SCHEMA = vol.Schema(
    {
        vol.Optional('limit', default=50): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Optional('type', default=None): vol.Any(None, str),
    },
    extra=vol.REMOVE_EXTRA,
)

GET_EVENT_STATS_SCHEMA = vol.Schema(
    {vol.Optional('days', default=7): vol.All(vol.Coerce(int), vol.Range(min=1))},
    extra=vol.REMOVE_EXTRA,
)


def _error(message: str) -> Dict[str, Any]:
    return {"success": False, "error": message}


class ServiceHandler:
    """Handles pystove service registration and callbacks."""

    def __init__(self, ad, config, maintenance, coordination, preferences,
                 status_source=None, events=None):
        """Initialize the service handler.

        Args:
            ad: AppDaemon API reference
            config: ConfigLoader instance
            maintenance: MaintenanceTracker instance
            coordination: CoordinationController instance
            preferences: CoordinationPreferences instance
            status_source: StoveStatusSource instance (for track_usage without a status)
            events: EventLogger instance (for get_events)
        """
        self.ad = ad
        self.config = config
        self.maintenance = maintenance
        self.coordination = coordination
        self.preferences = preferences
        self.status_source = status_source
        self.events = events
        self.publish_callback: Optional[Callable[[], None]] = None  # Set by main app

    def register_all(self, publish_cb: Optional[Callable[[], None]] = None) -> None:
        """Register all pystove services.

        Args:
            publish_cb: Callback to republish status entities after a change
        """
        self.publish_callback = publish_cb

        self.ad.register_service("pystove/track_usage", self.svc_track_usage)
        self.ad.register_service("pystove/get_maintenance", self.svc_get_maintenance)
        self.ad.register_service("pystove/confirm_cleaning", self.svc_confirm_cleaning)
        self.ad.register_service("pystove/set_target_hours", self.svc_set_target_hours)
        self.ad.register_service("pystove/can_ignite", self.svc_can_ignite)
        self.ad.register_service("pystove/get_coordination", self.svc_get_coordination)
        self.ad.register_service("pystove/reset_coordination", self.svc_reset_coordination)
        self.ad.register_service("pystove/get_preferences", self.svc_get_preferences)
        self.ad.register_service("pystove/set_preferences", self.svc_set_preferences)
        self.ad.register_service("pystove/get_events", self.svc_get_events)
        self.ad.register_service("pystove/get_event_stats", self.svc_get_event_stats)

        self.ad.log("Registered PyStove services")

    def _publish(self) -> None:
        if self.publish_callback:
            self.publish_callback()

    def _user_id(self, kwargs: Dict[str, Any]) -> str:
        return str(kwargs.get('user_id') or self.config.system_config.get('user_id', 'default'))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def svc_track_usage(self, namespace, domain, service, kwargs):
        """Service: pystove.track_usage - Run one accrual tick now.

        Args:
            status (str): Stove status to use (optional, read from the stove if omitted)

        Returns:
            track_usage_hours() result with success flag
        """
        try:
            args = TRACK_USAGE_SCHEMA(kwargs or {})
        except vol.Invalid as e:
            return _error(str(e))

        status = args.get('status')
        if status is None and self.status_source is not None:
            status = self.status_source.get_status()

        result = self.maintenance.track_usage_hours(status, datetime.now())
        result['success'] = 'error' not in result
        if result.get('tracked'):
            self._publish()
        return result

    def svc_get_maintenance(self, namespace, domain, service, kwargs):
        """Service: pystove.get_maintenance - Usage hours and cleaning progress."""
        try:
            status = self.maintenance.get_status()
        except PyStoveError as e:
            self.ad.log(f"pystove.get_maintenance failed: {e}", level="ERROR")
            return _error(str(e))
        status['can_ignite'] = not status['needs_cleaning']
        status['success'] = True
        return status

    def svc_confirm_cleaning(self, namespace, domain, service, kwargs):
        """Service: pystove.confirm_cleaning - Reset usage hours after cleaning."""
        try:
            result = self.maintenance.confirm_cleaning(datetime.now())
        except PyStoveError as e:
            self.ad.log(f"pystove.confirm_cleaning failed: {e}", level="ERROR")
            return _error(str(e))
        self._publish()
        return {"success": True, "previous_hours": result['previous_hours'], "record": result['record']}

    def svc_set_target_hours(self, namespace, domain, service, kwargs):
        """Service: pystove.set_target_hours - Change the cleaning interval.

        Args:
            hours (float): New interval in usage hours (> 0)
        """
        try:
            args = SET_TARGET_HOURS_SCHEMA(kwargs or {})
            record = self.maintenance.update_target_hours(args['hours'])
        except vol.Invalid as e:
            self.ad.log(f"pystove.set_target_hours: {e}", level="ERROR")
            return _error(str(e))
        except PyStoveError as e:
            self.ad.log(f"pystove.set_target_hours failed: {e}", level="ERROR")
            return _error(str(e))
        self._publish()
        return {"success": True, "record": record}

    def svc_can_ignite(self, namespace, domain, service, kwargs):
        """Service: pystove.can_ignite - Whether maintenance allows ignition."""
        return {"success": True, "can_ignite": self.maintenance.can_ignite()}

    # ------------------------------------------------------------------
    # Coordination
    # ------------------------------------------------------------------

    def svc_get_coordination(self, namespace, domain, service, kwargs):
        """Service: pystove.get_coordination - Coordination phase and state."""
        try:
            status = self.coordination.get_status(datetime.now())
        except PyStoveError as e:
            return _error(str(e))
        status['success'] = True
        return status

    def svc_reset_coordination(self, namespace, domain, service, kwargs):
        """Service: pystove.reset_coordination - Clear pause and boost bookkeeping.

        Setpoints are not touched; rooms keep whatever they are set to now.
        """
        try:
            state = self.coordination.reset(datetime.now())
        except PyStoveError as e:
            self.ad.log(f"pystove.reset_coordination failed: {e}", level="ERROR")
            return _error(str(e))
        self._publish()
        return {"success": True, "state": state}

    def svc_get_preferences(self, namespace, domain, service, kwargs):
        """Service: pystove.get_preferences

        Args:
            user_id (str): Preferences owner (optional, defaults to configured user)
        """
        try:
            prefs = self.preferences.get(self._user_id(kwargs or {}))
        except PyStoveError as e:
            return _error(str(e))
        return {"success": True, "preferences": prefs}

    def svc_set_preferences(self, namespace, domain, service, kwargs):
        """Service: pystove.set_preferences - Update coordination preferences.

        Args:
            user_id (str): Preferences owner (optional)
            enabled (bool), default_boost (float), zones (list),
            notification_preferences (dict): fields to change

        Returns:
            Dict with success and the stored preferences (new version)
        """
        # Drop AppDaemon bookkeeping keys
        kwargs = {k: v for k, v in (kwargs or {}).items() if not str(k).startswith('__')}
        user_id = self._user_id(kwargs)
        kwargs.pop('user_id', None)
        if not kwargs:
            return _error("no preference fields given")

        try:
            prefs = self.preferences.update(user_id, kwargs, datetime.now())
        except ValidationFailed as e:
            return _error(f"invalid preferences: {e}")
        except PyStoveError as e:
            self.ad.log(f"pystove.set_preferences failed: {e}", level="ERROR")
            return _error(str(e))
        return {"success": True, "preferences": prefs}

    def svc_get_events(self, namespace, domain, service, kwargs):
        """Service: pystove.get_events - Recent coordination events, newest first.

        Args:
            limit (int): Maximum number of events (default 50)
            type (str): Only events of this type (optional)
        """
        if self.events is None:
            return {"success": True, "events": []}
        try:
            args = GET_EVENTS_SCHEMA(kwargs or {})
        except vol.Invalid as e:
            return _error(str(e))
        return {"success": True, "events": self.events.get_recent_events(args['limit'], args['type'])}

    def svc_get_event_stats(self, namespace, domain, service, kwargs):
        """Service: pystove.get_event_stats - Event counts and pause durations.

        Args:
            days (int): Window to summarize, counted back from now (default 7)
        """
        try:
            args = GET_EVENT_STATS_SCHEMA(kwargs or {})
        except vol.Invalid as e:
            return _error(str(e))
        if self.events is None:
            return _error("event log not available")
        return {"success": True, "stats": self.events.get_stats(args['days'], datetime.now())}
