# -*- coding: utf-8 -*-
"""
event_logger.py - Coordination event audit log (JSONL)

Responsibilities:
- Append coordination events (boost, restore, pause, resume, errors) to
  daily JSONL files under logs/
- Never block or fail coordination: write errors are logged and dropped
- Read back recent events for the service / API handlers
- Summarize a window of events (counts, notifications, pause durations)
"""

import json
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import pystove.core.constants as C


class EventLogger:
    """Fire-and-forget JSONL log of coordination events."""

    # Event types
    BOOST_APPLIED = "boost_applied"
    SETPOINTS_RESTORED = "setpoints_restored"
    AUTOMATION_PAUSED = "automation_paused"
    AUTOMATION_RESUMED = "automation_resumed"
    DEBOUNCE_STARTED = "debounce_started"
    DEBOUNCE_CANCELLED = "debounce_cancelled"
    MAX_SETPOINT_CAPPED = "max_setpoint_capped"
    NOTIFICATION_THROTTLED = "notification_throttled"
    COORDINATION_ERROR = "coordination_error"
    STOVE_DEBOUNCE_STARTED = "stove_debounce_started"

    def __init__(self, ad, config):
        """Initialize the event logger.

        Args:
            ad: AppDaemon API reference
            config: ConfigLoader instance
        """
        self.ad = ad
        self.config = config
        self.enabled = config.event_log_config.get('enabled', True)
        self.log_dir = config.event_log_config.get('dir')
        if self.enabled:
            self._setup_log_directory()

    def _setup_log_directory(self):
        """Create log directory and .gitignore file."""
        try:
            if not os.path.exists(self.log_dir):
                os.makedirs(self.log_dir)
                self.ad.log(f"Created event log directory: {self.log_dir}")

            gitignore_path = os.path.join(self.log_dir, ".gitignore")
            if not os.path.exists(gitignore_path):
                with open(gitignore_path, 'w') as f:
                    f.write("# Ignore all log files\n")
                    f.write("*.jsonl\n")
        except OSError as e:
            self.ad.log(f"Event log disabled, cannot create {self.log_dir}: {e}", level="WARNING")
            self.enabled = False

    def _file_for(self, day) -> str:
        return os.path.join(self.log_dir, f"coordination_{day.isoformat()}.jsonl")

    def log_event(self, event_type: str, data: Optional[Dict[str, Any]] = None,
                  now: Optional[datetime] = None) -> None:
        """Append one event. Never raises."""
        if not self.enabled:
            return

        now = now or datetime.now()
        record = {'timestamp': now.isoformat(), 'type': event_type}
        if data:
            record.update(data)

        try:
            with open(self._file_for(now.date()), 'a') as f:
                f.write(json.dumps(record, default=str) + "\n")
        except (OSError, TypeError, ValueError) as e:
            self.ad.log(f"Failed to log coordination event '{event_type}': {e}", level="WARNING")

    def get_recent_events(self, limit: int = 50, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent events first, optionally filtered by type.

        Args:
            limit: Maximum number of events (capped at EVENT_LOG_MAX_QUERY)
            event_type: Only return events of this type

        Returns:
            List of event records, newest first
        """
        if not self.enabled or not os.path.isdir(self.log_dir):
            return []

        limit = max(0, min(limit, C.EVENT_LOG_MAX_QUERY))
        events: List[Dict[str, Any]] = []
        for name in sorted(self._log_files(), reverse=True):
            for record in reversed(self._read_file(name)):
                if event_type and record.get('type') != event_type:
                    continue
                events.append(record)
                if len(events) >= limit:
                    return events
        return events

    def get_stats(self, days: int = 7, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Summarize the events of the last `days` days.

        Pause durations are taken from automation_paused events as
        paused_until minus the event timestamp.

        Returns:
            {'days', 'total_events', 'by_event_type', 'notifications_sent',
             'notifications_throttled', 'pause_count',
             'total_pause_duration_minutes', 'average_pause_duration_minutes'}
        """
        now = now or datetime.now()
        cutoff = now - timedelta(days=days)
        first_file = f"coordination_{cutoff.date().isoformat()}.jsonl"

        by_type: Dict[str, int] = {}
        total = 0
        sent = 0
        pause_minutes: List[float] = []

        if self.enabled and os.path.isdir(self.log_dir):
            for name in sorted(self._log_files()):
                if name < first_file:
                    continue
                for record in self._read_file(name):
                    try:
                        timestamp = datetime.fromisoformat(record['timestamp'])
                    except (KeyError, TypeError, ValueError):
                        continue
                    if timestamp < cutoff:
                        continue

                    event_type = record.get('type')
                    total += 1
                    by_type[event_type] = by_type.get(event_type, 0) + 1
                    if record.get('notification_sent') is True:
                        sent += 1

                    if event_type == self.AUTOMATION_PAUSED and record.get('paused_until'):
                        try:
                            until = datetime.fromisoformat(record['paused_until'])
                        except (TypeError, ValueError):
                            continue
                        pause_minutes.append((until - timestamp).total_seconds() / 60)

        total_pause = sum(pause_minutes)
        return {
            'days': days,
            'total_events': total,
            'by_event_type': by_type,
            'notifications_sent': sent,
            'notifications_throttled': by_type.get(self.NOTIFICATION_THROTTLED, 0),
            'pause_count': len(pause_minutes),
            'total_pause_duration_minutes': round(total_pause),
            'average_pause_duration_minutes': round(total_pause / len(pause_minutes)) if pause_minutes else 0,
        }

    def _log_files(self) -> List[str]:
        return [name for name in os.listdir(self.log_dir)
                if name.startswith("coordination_") and name.endswith(".jsonl")]

    def _read_file(self, name: str) -> List[Dict[str, Any]]:
        """Parsed records of one log file in write order, corrupt lines skipped."""
        try:
            with open(os.path.join(self.log_dir, name), 'r') as f:
                lines = f.readlines()
        except OSError as e:
            self.ad.log(f"Failed to read event log {name}: {e}", level="WARNING")
            return []

        records = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict):
                records.append(record)
        return records
