# -*- coding: utf-8 -*-
"""
notification_dispatcher.py - Notification delivery for PyStove

Responsibilities:
- Turn structured payloads (maintenance thresholds, coordination events)
  into Home Assistant notifications
- Deliver as persistent notification, plus a notify service if configured
- Gate coordination notifications on user preferences
- Rate limit coordination notifications globally
"""

from datetime import datetime
from typing import Any, Dict, Optional, Tuple
import pystove.core.constants as C


class NotificationDispatcher:
    """Delivers PyStove notifications through Home Assistant services."""

    # Notification kinds (unique identifiers)
    KIND_MAINTENANCE_THRESHOLD = "maintenance_threshold"
    KIND_AUTOMATION_PAUSED = "automation_paused"
    KIND_COORDINATION_APPLIED = "coordination_applied"
    KIND_COORDINATION_RESTORED = "coordination_restored"
    KIND_MAX_SETPOINT_REACHED = "max_setpoint_reached"

    # Delivery outcomes
    SENT = "sent"
    THROTTLED = "throttled"
    DISABLED = "disabled"
    FAILED = "failed"

    def __init__(self, ad, config):
        """Initialize the dispatcher.

        Args:
            ad: AppDaemon API reference
            config: ConfigLoader instance
        """
        self.ad = ad
        self.config = config

        # Last coordination notification, for the global throttle
        self.last_coordination_sent: Optional[datetime] = None

    @property
    def throttle_seconds(self) -> int:
        return self.config.notification_config.get('throttle_s', C.COORDINATION_NOTIFY_THROTTLE_S)

    def dispatch(self, classification: str, kind: str, payload: Dict[str, Any],
                 now: Optional[datetime] = None,
                 preferences: Optional[Dict[str, Any]] = None) -> str:
        """Send a notification.

        Coordination notifications are skipped when the user's
        notification_preferences disable the kind, and throttled to one per
        throttle window across all kinds. Maintenance notifications are
        already one-shot per threshold and are never throttled.

        Args:
            classification: C.NOTIFY_MAINTENANCE or C.NOTIFY_COORDINATION
            kind: One of the KIND_* identifiers
            payload: Structured data for the message
            now: Current datetime
            preferences: CoordinationPreferences record (coordination only)

        Returns:
            SENT, THROTTLED, DISABLED or FAILED
        """
        now = now or datetime.now()

        if classification == C.NOTIFY_COORDINATION:
            if preferences is not None:
                enabled = preferences.get('notification_preferences', {}).get(kind, True)
                if not enabled:
                    self.ad.log(f"Notification '{kind}' disabled by preferences", level="DEBUG")
                    return self.DISABLED

            if self.last_coordination_sent is not None:
                elapsed = (now - self.last_coordination_sent).total_seconds()
                if elapsed < self.throttle_seconds:
                    self.ad.log(f"Notification '{kind}' throttled (last sent {elapsed:.0f}s ago)")
                    return self.THROTTLED

        title, message = self._format(kind, payload)
        if kind == self.KIND_MAINTENANCE_THRESHOLD:
            notification_id = f"pystove_maintenance_{payload['level']}"
        else:
            notification_id = f"pystove_{kind}"
        if not self._send(classification, kind, title, message, now, notification_id):
            return self.FAILED

        if classification == C.NOTIFY_COORDINATION:
            self.last_coordination_sent = now
        return self.SENT

    def dismiss_maintenance(self) -> None:
        """Dismiss outstanding maintenance notifications (after cleaning)."""
        for level in C.MAINTENANCE_THRESHOLDS:
            try:
                self.ad.call_service(
                    "persistent_notification/dismiss",
                    notification_id=f"pystove_maintenance_{level}"
                )
            except Exception as e:
                self.ad.log(f"Failed to dismiss maintenance notification {level}: {e}", level="WARNING")

    def _send(self, classification: str, kind: str, title: str, message: str,
              now: datetime, notification_id: str) -> bool:
        timestamp = now.strftime("%Y-%m-%d %H:%M:%S")
        try:
            self.ad.call_service(
                "persistent_notification/create",
                title=title,
                message=f"{message}\n\n*{timestamp}*",
                notification_id=notification_id
            )

            notify_service = self.config.notification_config.get('notify_service')
            if notify_service:
                self.ad.call_service(
                    notify_service,
                    title=title,
                    message=message,
                    data={'tag': classification, 'kind': kind}
                )

            self.ad.log(f"Notification sent: {kind} ({classification})")
            return True

        except Exception as e:
            self.ad.log(f"Failed to send notification {kind}: {e}", level="ERROR")
            return False

    def _format(self, kind: str, payload: Dict[str, Any]) -> Tuple[str, str]:
        if kind == self.KIND_MAINTENANCE_THRESHOLD:
            level = payload['level']
            if level >= 100:
                title = "🔧 Stove cleaning required"
                intro = "The stove has reached its cleaning interval."
            else:
                title = f"🔧 Stove maintenance at {level}%"
                intro = "The stove is approaching its cleaning interval."
            message = (
                f"{intro}\n\n"
                f"**Level:** {level}%\n"
                f"**Usage:** {payload['current_hours']:.1f} h of {payload['target_hours']:.0f} h "
                f"({payload['percentage']:.1f}%)\n"
                f"**Remaining:** {payload['remaining_hours']:.1f} h"
            )
            return title, message

        if kind == self.KIND_AUTOMATION_PAUSED:
            until = payload.get('paused_until') or 'next schedule change'
            return ("⏸️ Stove coordination paused",
                    f"Manual change detected ({payload.get('reason')}). Automation paused until {until}.")

        if kind == self.KIND_COORDINATION_APPLIED:
            rooms = ', '.join(f"{room} {value}°C" for room, value in payload.get('setpoints', {}).items())
            return ("🔥 Stove on: rooms boosted", f"Setpoints raised: {rooms}")

        if kind == self.KIND_COORDINATION_RESTORED:
            rooms = ', '.join(payload.get('rooms', []))
            return ("✅ Setpoints restored", f"Rooms restored: {rooms}")

        if kind == self.KIND_MAX_SETPOINT_REACHED:
            rooms = ', '.join(payload.get('rooms', []))
            return ("⚠️ Maximum setpoint reached",
                    f"Boost capped at {C.COORDINATION_MAX_SETPOINT_C}°C for: {rooms}")

        return "PyStove", str(payload)

