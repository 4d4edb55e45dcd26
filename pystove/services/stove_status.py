# -*- coding: utf-8 -*-
"""
stove_status.py - Stove status source

Responsibilities:
- Read the current stove status string, either from the vendor HTTP
  status endpoint or from a Home Assistant entity
- Classify statuses as working (accrues runtime) and active (stove on)
"""

import re
from typing import List, Optional

import requests

import pystove.core.constants as C


_WORD_RE = re.compile(r'[a-z]+')


def _status_words(status) -> List[str]:
    if not isinstance(status, str):
        return []
    return _WORD_RE.findall(status.lower())


def _matches(status, tokens) -> bool:
    words = _status_words(status)
    if any(word in C.ERROR_STATUS_TOKENS for word in words):
        return False
    return any(word in tokens for word in words)


def is_working_status(status: Optional[str]) -> bool:
    """Whether a status accrues runtime (working / modulating)."""
    return _matches(status, C.WORKING_STATUS_TOKENS)


def is_active_status(status: Optional[str]) -> bool:
    """Whether the stove counts as on for coordination purposes."""
    return _matches(status, C.ACTIVE_STATUS_TOKENS)


class StoveStatusSource:
    """Supplies the stove status on demand (polled, no caching)."""

    def __init__(self, ad, config, session: Optional[requests.Session] = None):
        """Initialize the status source.

        Args:
            ad: AppDaemon API reference
            config: ConfigLoader instance
            session: requests session (a new one is created if omitted)
        """
        self.ad = ad
        self.config = config
        self.session = session or requests.Session()
        self.last_status: Optional[str] = None

    def get_status(self) -> Optional[str]:
        """Current stove status string, or None if it cannot be read."""
        stove = self.config.stove_config
        if stove.get('status_url'):
            status = self._fetch_http(stove)
        else:
            status = self._read_entity(stove['status_entity'])

        if status is not None and status != self.last_status:
            self.ad.log(f"Stove status: {self.last_status} -> {status}")
        if status is not None:
            self.last_status = status
        return status

    def _fetch_http(self, stove) -> Optional[str]:
        try:
            response = self.session.get(
                stove['status_url'],
                headers=stove.get('headers') or {},
                timeout=stove.get('timeout_s', C.STATUS_TIMEOUT_S_DEFAULT)
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            self.ad.log(f"Stove status request failed: {e}", level="WARNING")
            return None
        except ValueError as e:
            self.ad.log(f"Stove status response is not JSON: {e}", level="WARNING")
            return None

        field = stove.get('status_field', C.STATUS_FIELD_DEFAULT)
        value = payload.get(field) if isinstance(payload, dict) else None
        if value is None:
            self.ad.log(f"Stove status response has no '{field}' field", level="WARNING")
            return None
        return str(value)

    def _read_entity(self, entity_id: str) -> Optional[str]:
        state = self.ad.get_state(entity_id)
        if state in (None, 'unknown', 'unavailable'):
            self.ad.log(f"Stove status entity {entity_id} is {state}", level="DEBUG")
            return None
        return str(state)
