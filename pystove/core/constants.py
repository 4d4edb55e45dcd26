"""
constants.py - Centralized configuration and defaults for PyStove

Responsibilities:
- Single source of truth for defaults, limits, and tuning knobs
- Define namespaced constants (no hardcoded magic numbers elsewhere)
- Read-only at runtime (no mutation)

Values marked "default" can be overridden in config/stove.yaml.
"""

from typing import Dict, Any

# ============================================================================
# General
# ============================================================================

# Environment prefix applied to every persistence path (dev/test/production)
ENVIRONMENT_DEFAULT = "production"

# Persistence file, relative to the app directory
PERSISTENCE_FILE_DEFAULT = "state/pystove_state.json"

# Periodic poll interval (seconds): maintenance accrual + coordination check
POLL_INTERVAL_S = 60

# Config file monitoring interval (seconds)
CONFIG_CHECK_INTERVAL_S = 30

# ============================================================================
# Persistence Paths (relative, environment prefix is added by the store)
# ============================================================================

PATH_MAINTENANCE = "maintenance"
PATH_COORDINATION_STATE = "coordination/state"
PATH_COORDINATION_PREFERENCES = "coordination/preferences/{user_id}"

# Optimistic transaction retries before giving up with StorageUnavailable
TRANSACTION_MAX_RETRIES = 25

# ============================================================================
# Stove Status Vocabulary
# ============================================================================

# Status words (case-insensitive, matched as whole words) that accrue runtime
WORKING_STATUS_TOKENS = ("work", "working", "modulation", "modulating")

# Status words marking the stove as "on" for coordination (ignition included)
ACTIVE_STATUS_TOKENS = WORKING_STATUS_TOKENS + ("start", "starting", "ignition")

# Any of these words makes a status neither working nor active
ERROR_STATUS_TOKENS = ("error", "alarm", "fault")

# HTTP status source
STATUS_FIELD_DEFAULT = "StatusDescription"
STATUS_TIMEOUT_S_DEFAULT = 10

# ============================================================================
# Maintenance Accrual
# ============================================================================

# Default cleaning interval in usage hours
MAINTENANCE_TARGET_HOURS_DEFAULT = 50.0

# Minimum elapsed time between accruals; shorter gaps abort the transaction
MAINTENANCE_MIN_UPDATE_INTERVAL_S = 30

# Notification thresholds (percent of target), ascending
MAINTENANCE_THRESHOLDS = (80, 90, 100)

# Percentage at which the stove is reported as near its cleaning limit
MAINTENANCE_NEAR_LIMIT_PERCENT = 80

# Stored precision of usage hours
MAINTENANCE_HOURS_PRECISION = 4

MAINTENANCE_RECORD_DEFAULT: Dict[str, Any] = {
    'current_hours': 0.0,
    'target_hours': MAINTENANCE_TARGET_HOURS_DEFAULT,
    'last_updated_at': None,
    'needs_cleaning': False,
    'last_notification_level': 0,
    'last_cleaned_at': None,
}

# ============================================================================
# Coordination State Machine
# ============================================================================

# Coordination phases (derived from the persisted state, never stored)
PHASE_AUTOMATED = "AUTOMATED"
PHASE_PAUSED_ACTIVE = "PAUSED_ACTIVE"
PHASE_PAUSED_DEBOUNCING = "PAUSED_DEBOUNCING"

# Pause reasons
PAUSE_REASON_SETPOINT = "manual_setpoint_change"
PAUSE_REASON_MODE = "manual_mode_change"

# Resume debounce window (seconds)
COORDINATION_DEBOUNCE_S = 120

# Stove must stay on this long before the boost is applied (seconds)
IGNITION_DEBOUNCE_S = 120

# Shutdown during the ignition debounce waits this long before restoring (seconds)
EARLY_SHUTOFF_RETRY_S = 30

# Stove debounce targets
STOVE_TARGET_ON = "on"
STOVE_TARGET_OFF = "off"

# Pause length when no schedule boundary can be found (minutes)
COORDINATION_DEFAULT_PAUSE_M = 60

# Boosted setpoints are capped at this temperature (C)
COORDINATION_MAX_SETPOINT_C = 30.0

# Setpoint comparisons within this tolerance (C) are not manual changes
USER_INTENT_SETPOINT_TOLERANCE_C = 0.5

# Climate modes / presets that mean the user took a room out of automation
MANUAL_MODES = ("away", "hg", "frost_protection", "off")

# Preset that hands a room back to its own thermostat schedule
SCHEDULE_PRESET = "schedule"

# Ignore climate events matching a setpoint we commanded within this window (s)
SELF_CHANGE_WINDOW_S = 30

COORDINATION_STATE_DEFAULT: Dict[str, Any] = {
    'automation_active': False,
    'automation_paused': False,
    'paused_until': None,
    'pause_reason': None,
    'pending_debounce': False,
    'debounce_started_at': None,
    'saved_setpoints': None,
    'previous_setpoints': None,
    'applied_setpoints': None,
    'stove_debounce_target': None,
    'stove_debounce_started_at': None,
    'last_state_change': None,
}

# ============================================================================
# Coordination Preferences
# ============================================================================

BOOST_MIN_C = 0.5
BOOST_MAX_C = 5.0
BOOST_DEFAULT_C = 2.0

NOTIFICATION_PREFERENCES_DEFAULT: Dict[str, bool] = {
    'coordination_applied': True,
    'coordination_restored': False,
    'automation_paused': True,
    'max_setpoint_reached': True,
}

# ============================================================================
# Notifications
# ============================================================================

# Notification classifications
NOTIFY_MAINTENANCE = "maintenance"
NOTIFY_COORDINATION = "coordination"

# Global throttle for coordination notifications (seconds)
COORDINATION_NOTIFY_THROTTLE_S = 30 * 60

# Home Assistant notify service (None = persistent notification only)
NOTIFY_SERVICE_DEFAULT = None

# ============================================================================
# Event Log
# ============================================================================

EVENT_LOG_DIR_DEFAULT = "logs"
EVENT_LOG_MAX_QUERY = 500

# ============================================================================
# Status Entities
# ============================================================================

MAINTENANCE_ENTITY = "sensor.pystove_maintenance"
COORDINATION_ENTITY = "sensor.pystove_coordination"
