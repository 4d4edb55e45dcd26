# -*- coding: utf-8 -*-
"""
config_loader.py - Configuration loading and validation for PyStove

Responsibilities:
- Load stove.yaml (stove status source, rooms, schedule, notifications)
- Validate configuration data and apply defaults
- Monitor the config file for changes
- Provide structured access to configuration
"""

import os
import re
import yaml
from typing import Dict, Any, List, Optional
import pystove.core.constants as C


DAY_KEYS = ['mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun']

_TIME_RE = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)$')


class ConfigLoader:
    """Handles loading and monitoring of the PyStove configuration file."""

    def __init__(self, ad, config_dir: Optional[str] = None):
        """Initialize the config loader.

        Args:
            ad: AppDaemon API reference
            config_dir: Directory holding stove.yaml (default: <app>/config)
        """
        self.ad = ad
        if config_dir is None:
            # App directory holds the pystove package and config/
            app_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
            config_dir = os.path.join(app_dir, "config")
        self.config_dir = config_dir
        self.app_dir = os.path.dirname(os.path.abspath(config_dir))
        self.system_config = {}  # environment, persistence, user
        self.stove_config = {}  # Status source settings
        self.rooms = {}  # Room registry: {room_id: room_data}
        self.schedule = {}  # Weekly slot starts: {day: [minutes, ...]}
        self.notification_config = {}
        self.event_log_config = {}
        self.maintenance_config = {}
        self.config_file_mtimes = {}  # {filepath: mtime} for change detection

    @property
    def config_file(self) -> str:
        return os.path.join(self.config_dir, "stove.yaml")

    def load_all(self) -> None:
        """Load and validate stove.yaml.

        Raises:
            ValueError: configuration is invalid
            IOError: file missing or unreadable
        """
        config_file = self.config_file
        if os.path.exists(config_file):
            self.config_file_mtimes[config_file] = os.path.getmtime(config_file)

        with open(config_file, 'r') as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"{config_file}: top level must be a mapping")

        self._load_system(data)
        self._load_stove(data.get('stove') or {})
        self._load_rooms(data.get('rooms') or [])
        self._load_schedule(data.get('schedule') or {})

        notifications = data.get('notifications') or {}
        self.notification_config = {
            'notify_service': notifications.get('notify_service', C.NOTIFY_SERVICE_DEFAULT),
            'throttle_s': notifications.get('throttle_s', C.COORDINATION_NOTIFY_THROTTLE_S),
        }

        event_log = data.get('event_log') or {}
        log_dir = event_log.get('dir', C.EVENT_LOG_DIR_DEFAULT)
        self.event_log_config = {
            'enabled': bool(event_log.get('enabled', True)),
            'dir': self._resolve(log_dir),
        }

        maintenance = data.get('maintenance') or {}
        target = maintenance.get('target_hours', C.MAINTENANCE_TARGET_HOURS_DEFAULT)
        if not isinstance(target, (int, float)) or isinstance(target, bool) or target <= 0:
            raise ValueError(f"maintenance.target_hours ({target}) must be a positive number")
        self.maintenance_config = {'target_hours': float(target)}

        self.ad.log(
            f"Loaded config: environment={self.system_config['environment']}, "
            f"{len(self.rooms)} room(s), "
            f"{sum(len(v) for v in self.schedule.values())} schedule slot(s)"
        )

    def _resolve(self, path: str) -> str:
        if os.path.isabs(path):
            return path
        return os.path.join(self.app_dir, path)

    def _load_system(self, data: Dict[str, Any]) -> None:
        environment = str(data.get('environment', C.ENVIRONMENT_DEFAULT)).strip('/')
        if not environment:
            raise ValueError("environment must not be empty")

        self.system_config = {
            'environment': environment,
            'persistence_file': self._resolve(data.get('persistence_file', C.PERSISTENCE_FILE_DEFAULT)),
            'user_id': str(data.get('user_id', 'default')),
            'poll_interval_s': int(data.get('poll_interval_s', C.POLL_INTERVAL_S)),
        }
        if self.system_config['poll_interval_s'] < 10:
            raise ValueError(
                f"poll_interval_s ({self.system_config['poll_interval_s']}) must be >= 10 seconds"
            )

    def _load_stove(self, stove: Dict[str, Any]) -> None:
        status_url = stove.get('status_url')
        status_entity = stove.get('status_entity')
        if not status_url and not status_entity:
            raise ValueError("stove: one of 'status_url' or 'status_entity' is required")

        self.stove_config = {
            'status_url': status_url,
            'status_entity': status_entity,
            'status_field': stove.get('status_field', C.STATUS_FIELD_DEFAULT),
            'timeout_s': stove.get('timeout_s', C.STATUS_TIMEOUT_S_DEFAULT),
            'headers': stove.get('headers') or {},
        }

    def _load_rooms(self, rooms: List[Dict[str, Any]]) -> None:
        self.rooms = {}
        for room in rooms:
            room_id = room.get('id')
            if not room_id:
                raise ValueError(f"Room entry {room} is missing 'id'")
            climate = room.get('climate')
            if not climate or not str(climate).startswith('climate.'):
                raise ValueError(f"Room '{room_id}': 'climate' must be a climate.* entity id")
            if room_id in self.rooms:
                raise ValueError(f"Room '{room_id}' defined twice")

            self.rooms[room_id] = {
                'id': room_id,
                'name': room.get('name', str(room_id).capitalize()),
                'climate': climate,
            }
            self.ad.log(f"Loaded room config: {room_id} ({self.rooms[room_id]['name']})")

    def _load_schedule(self, schedule: Dict[str, Any]) -> None:
        """Parse week: {mon: ["06:30", ...], ...} into sorted minute offsets."""
        self.schedule = {}
        week = schedule.get('week') or {}
        for day, slots in week.items():
            if day not in DAY_KEYS:
                raise ValueError(f"schedule.week: unknown day '{day}' (expected one of {DAY_KEYS})")
            minutes = []
            for slot in slots or []:
                match = _TIME_RE.match(str(slot))
                if not match:
                    raise ValueError(f"schedule.week.{day}: invalid time '{slot}' (expected HH:MM)")
                minutes.append(int(match.group(1)) * 60 + int(match.group(2)))
            self.schedule[day] = sorted(set(minutes))

    def check_for_changes(self) -> bool:
        """Check if the configuration file has been modified.

        Returns:
            True if the config file has changed, False otherwise
        """
        changed = False
        for filepath, old_mtime in self.config_file_mtimes.items():
            if os.path.exists(filepath):
                new_mtime = os.path.getmtime(filepath)
                if new_mtime != old_mtime:
                    self.ad.log(f"Config file changed: {filepath}", level="INFO")
                    changed = True
        return changed

