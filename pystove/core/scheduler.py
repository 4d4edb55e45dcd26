# -*- coding: utf-8 -*-
"""
scheduler.py - Automation schedule boundaries

Responsibilities:
- Find the next slot start in the weekly automation timetable
- Compute how long a manual override pauses the automation
"""

from datetime import datetime, timedelta
from typing import Optional
import pystove.core.constants as C
from pystove.core.config_loader import DAY_KEYS


class Scheduler:
    """Answers "when does the automated schedule next take over?"."""

    def __init__(self, ad, config):
        """Initialize the scheduler.

        Args:
            ad: AppDaemon API reference
            config: ConfigLoader instance
        """
        self.ad = ad
        self.config = config

    def get_next_boundary(self, now: datetime) -> Optional[datetime]:
        """Get the first schedule slot start strictly after now.

        Walks forward from today through the same weekday next week, so a
        slot earlier today wraps around to seven days later.

        Args:
            now: Current datetime

        Returns:
            Datetime of the next slot start, or None if the timetable is empty
        """
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        for day_offset in range(8):
            day = midnight + timedelta(days=day_offset)
            slots = self.config.schedule.get(DAY_KEYS[day.weekday()], [])
            for minutes in slots:
                candidate = day + timedelta(minutes=minutes)
                if candidate > now:
                    return candidate
        return None

    def get_pause_until(self, now: datetime) -> datetime:
        """Deadline for a manual override pause started at now.

        Args:
            now: Current datetime

        Returns:
            Next schedule boundary, or now + the default pause if none exists
        """
        boundary = self.get_next_boundary(now)
        if boundary is None:
            self.ad.log(
                f"No schedule slots configured, pausing for {C.COORDINATION_DEFAULT_PAUSE_M} minutes",
                level="DEBUG"
            )
            return now + timedelta(minutes=C.COORDINATION_DEFAULT_PAUSE_M)
        return boundary
