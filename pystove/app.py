# -*- coding: utf-8 -*-
"""
PyStove - Pellet stove / thermostat coordination for AppDaemon

Manages:
- Stove usage-hour tracking and cleaning reminders (80/90/100%)
- Thermostat boost while the stove is running, restore when it stops
- Pausing the boost automation when someone adjusts a room by hand,
  resuming at the next schedule slot or once the override is undone

Architecture:
- Thin orchestrator (this file) wires modular components
- One periodic poll (default every minute) drives accrual and coordination
- Climate entity listeners feed manual overrides straight to the state machine
- All state lives in the persistence file, so restarts resume mid-pause
"""

import os
from datetime import datetime

import appdaemon.plugins.hass.hassapi as hass

from pystove.core.config_loader import ConfigLoader
from pystove.core.persistence import PersistenceManager
from pystove.core.scheduler import Scheduler
from pystove.managers.coordination_state import CoordinationStateStore
from pystove.managers.coordination_preferences import CoordinationPreferences
from pystove.managers.user_intent import UserIntentDetector
from pystove.controllers.climate_controller import ClimateController
from pystove.controllers.coordination_controller import CoordinationController
from pystove.controllers.maintenance_tracker import MaintenanceTracker
from pystove.services.notification_dispatcher import NotificationDispatcher
from pystove.services.event_logger import EventLogger
from pystove.services.stove_status import StoveStatusSource
from pystove.services.status_publisher import StatusPublisher
from pystove.services.service_handler import ServiceHandler
from pystove.services.api_handler import APIHandler
import pystove.core.constants as C


class PyStove(hass.Hass):
    """Main PyStove app for AppDaemon."""

    def initialize(self):
        """Initialize the PyStove app.

        Called by AppDaemon when the app is loaded or reloaded. Loads
        configuration, builds components, registers callbacks and starts the
        poll loop.
        """
        self.log("=" * 60)
        self.log("PyStove initializing...")
        self.log("=" * 60)

        self.config = ConfigLoader(self)
        self.poll_count = 0
        self.recheck_handle = None

        try:
            self.config.load_all()
        except Exception as e:
            self.error(f"Failed to load configuration: {e}")
            self.log("PyStove initialization failed - configuration error")
            try:
                self.call_service(
                    "persistent_notification/create",
                    title="⚠️ PyStove configuration error",
                    message=f"Failed to load PyStove configuration: {e}\n\nPlease check config/stove.yaml.",
                    notification_id="pystove_config_error"
                )
            except Exception as notify_error:
                self.log(f"Failed to report configuration error: {notify_error}", level="ERROR")
            return

        system = self.config.system_config
        self.store = PersistenceManager(system['persistence_file'], system['environment'])

        self.notifier = NotificationDispatcher(self, self.config)
        self.events = EventLogger(self, self.config)
        self.status_source = StoveStatusSource(self, self.config)
        self.status = StatusPublisher(self, self.config)
        self.scheduler = Scheduler(self, self.config)
        self.climate = ClimateController(self, self.config)
        self.intent = UserIntentDetector(self, self.climate)
        self.state_store = CoordinationStateStore(self, self.store)
        self.preferences = CoordinationPreferences(self, self.store)
        self.maintenance = MaintenanceTracker(self, self.config, self.store, self.notifier)
        self.coordination = CoordinationController(
            self, self.config, self.state_store, self.preferences, self.scheduler,
            self.climate, self.intent, self.notifier, self.events
        )
        self.services = ServiceHandler(
            self, self.config, self.maintenance, self.coordination, self.preferences,
            self.status_source, self.events
        )
        self.api = APIHandler(self, self.services)

        self.setup_callbacks()

        self.run_every(self.periodic_poll, "now+5", system['poll_interval_s'])
        self.run_every(self.check_config_files, "now+15", C.CONFIG_CHECK_INTERVAL_S)

        self.services.register_all(self.publish_status)
        self.api.register_all()

        self.log(f"PyStove initialized ({system['environment']}, {len(self.config.rooms)} room(s))")

    def setup_callbacks(self):
        """Listen for manual changes on each room's climate entity."""
        for room_id, room in self.config.rooms.items():
            climate = room['climate']
            self.listen_state(self.climate_changed, climate, room_id=room_id, attribute='temperature')
            self.listen_state(self.climate_changed, climate, room_id=room_id, attribute='preset_mode')
            self.listen_state(self.climate_changed, climate, room_id=room_id)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def climate_changed(self, entity, attribute, old, new, kwargs):
        """Climate setpoint or mode changed (possibly by hand)."""
        room_id = kwargs.get('room_id')
        try:
            result = self.coordination.handle_climate_event(room_id, attribute, old, new, datetime.now())
        except Exception as e:
            self.log(f"Failed to handle climate change for '{room_id}': {e}", level="ERROR")
            return
        if result:
            self.log(f"Climate change in '{room_id}' ({attribute}: {old} -> {new}): {result['action']}")
            self.publish_status()

    def periodic_poll(self, kwargs):
        """Periodic poll: accrue usage hours, then advance coordination."""
        self.poll_count += 1
        now = datetime.now()
        status = self.status_source.get_status()

        usage = self.maintenance.track_usage_hours(status, now)
        if usage.get('error'):
            self.log(f"Usage tracking error: {usage['error']}", level="WARNING")

        self.advance_coordination(status, now)
        self.publish_status()

    def coordination_recheck(self, kwargs):
        """One-shot coordination poll at the end of a stove debounce window."""
        self.recheck_handle = None
        self.advance_coordination(self.status_source.get_status(), datetime.now())
        self.publish_status()

    def advance_coordination(self, status, now):
        result = self.coordination.poll(status, now)
        if result['action'] not in ('skipped', 'no_change'):
            self.log(f"Coordination: {result['action']} ({result.get('reason')})")
        else:
            self.log(f"Poll #{self.poll_count}: status={status}, coordination {result['reason']}", level="DEBUG")

        # Debounce windows shorter than the poll interval get their own re-check
        remaining = result.get('remaining_s')
        if remaining is None or remaining >= self.config.system_config['poll_interval_s']:
            return
        if self.recheck_handle is not None:
            try:
                self.cancel_timer(self.recheck_handle)
            except Exception as e:
                self.log(f"Failed to cancel coordination re-check: {e}", level="DEBUG")
        self.recheck_handle = self.run_in(self.coordination_recheck, remaining + 1)

    def publish_status(self):
        """Republish maintenance and coordination sensors."""
        now = datetime.now()
        try:
            self.status.publish_maintenance(self.maintenance.get_status())
            self.status.publish_coordination(self.coordination.get_status(now))
        except Exception as e:
            self.log(f"Failed to publish status: {e}", level="WARNING")

    def check_config_files(self, kwargs):
        """Restart the app when stove.yaml changes."""
        if self.config.check_for_changes():
            filename = os.path.basename(self.config.config_file)
            self.log(f"Config file changed ({filename}), restarting app for clean reload...")
            self.restart_app(self.name)

    def terminate(self):
        """Called by AppDaemon when the app is stopped."""
        self.log("PyStove terminating")
