# -*- coding: utf-8 -*-
"""
coordination_controller.py - Stove / thermostat coordination state machine

Responsibilities:
- Boost enabled zones once the stove has stayed on through the ignition
  debounce, restore them when it turns off
- Pause the automation when the user overrides a room, until the next
  schedule boundary
- Resume after the override clears and a debounce window passes, restoring
  the setpoints saved at pause time (or the pre-boost setpoints if the
  stove went out meanwhile)
- Persist every transition so a restart resumes exactly where it left off

State machine (phase is derived from the persisted record):

    AUTOMATED --manual change--> PAUSED_ACTIVE --override cleared--> PAUSED_DEBOUNCING
        ^                          |    ^                                |
        |                          |    +-------- manual change ---------+
        +----- now >= paused_until or debounce expired (restore) --------+

Stove transitions while AUTOMATED:

    stove on  -> wait IGNITION_DEBOUNCE_S -> boost
    stove off during that wait -> wait EARLY_SHUTOFF_RETRY_S -> restore / re-check
    stove off with a boost applied -> restore immediately

Both debounces are checked lazily on each poll against their persisted start
time, so no timers survive (or need to survive) a restart.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import pystove.core.constants as C
from pystove.core.errors import StorageUnavailable
from pystove.managers.coordination_preferences import CoordinationPreferences
from pystove.managers.coordination_state import CoordinationStateStore
from pystove.services.event_logger import EventLogger
from pystove.services.notification_dispatcher import NotificationDispatcher
from pystove.services.stove_status import is_active_status


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


_CLEARED_PAUSE = {
    'automation_paused': False,
    'pause_reason': None,
    'paused_until': None,
    'saved_setpoints': None,
    'pending_debounce': False,
    'debounce_started_at': None,
}

_CLEARED_STOVE_DEBOUNCE = {
    'stove_debounce_target': None,
    'stove_debounce_started_at': None,
}


class CoordinationController:
    """Runs the coordination state machine on each poll and climate event."""

    def __init__(self, ad, config, state_store, preferences, scheduler, climate, intent,
                 notifier=None, events=None):
        """Initialize the coordination controller.

        Args:
            ad: AppDaemon API reference
            config: ConfigLoader instance
            state_store: CoordinationStateStore instance
            preferences: CoordinationPreferences instance
            scheduler: Scheduler instance (pause deadlines)
            climate: ClimateController instance
            intent: UserIntentDetector instance
            notifier: NotificationDispatcher instance (optional)
            events: EventLogger instance (optional)
        """
        self.ad = ad
        self.config = config
        self.state_store = state_store
        self.preferences = preferences
        self.scheduler = scheduler
        self.climate = climate
        self.intent = intent
        self.notifier = notifier
        self.events = events

    @property
    def user_id(self) -> str:
        return self.config.system_config.get('user_id', 'default')

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def get_phase(self) -> str:
        return CoordinationStateStore.get_phase(self.state_store.get())

    def get_status(self, now: datetime) -> Dict[str, Any]:
        """Current state plus phase and time left in the pause / debounces."""
        state = self.state_store.get()
        status = dict(state)
        status['phase'] = CoordinationStateStore.get_phase(state)

        paused_until = _parse_time(state.get('paused_until'))
        status['pause_remaining_s'] = (
            max(0, int((paused_until - now).total_seconds())) if paused_until else None
        )
        started = _parse_time(state.get('debounce_started_at'))
        status['debounce_remaining_s'] = (
            max(0, int(C.COORDINATION_DEBOUNCE_S - (now - started).total_seconds())) if started else None
        )
        stove_started = _parse_time(state.get('stove_debounce_started_at'))
        if stove_started is not None:
            window = (C.IGNITION_DEBOUNCE_S if state.get('stove_debounce_target') == C.STOVE_TARGET_ON
                      else C.EARLY_SHUTOFF_RETRY_S)
            status['stove_debounce_remaining_s'] = max(0, int(window - (now - stove_started).total_seconds()))
        else:
            status['stove_debounce_remaining_s'] = None
        return status

    # ------------------------------------------------------------------
    # Manual overrides
    # ------------------------------------------------------------------

    def handle_manual_change(self, reason: str, setpoints: Optional[Dict[str, float]],
                             now: datetime, changes=None) -> Dict[str, Any]:
        """Pause the automation (or re-arm an existing pause).

        From AUTOMATED the given setpoints are snapshotted for restoration.
        While already paused the snapshot is kept as is; only the deadline
        and reason move, and a running debounce is cancelled.

        Args:
            reason: C.PAUSE_REASON_SETPOINT or C.PAUSE_REASON_MODE
            setpoints: Setpoints in force before the manual change
            now: Current datetime
            changes: Change details from the intent detector (for logging)

        Returns:
            {'action': 'paused', 'reason', 'paused_until', 're_armed': bool}

        Raises:
            StorageUnavailable: state could not be read or written
        """
        state = self.state_store.get()
        phase = CoordinationStateStore.get_phase(state)
        paused_until = self.scheduler.get_pause_until(now).isoformat()

        if phase == C.PHASE_AUTOMATED:
            self.state_store.update({
                'automation_paused': True,
                'pause_reason': reason,
                'paused_until': paused_until,
                'saved_setpoints': dict(setpoints or {}),
                'pending_debounce': False,
                'debounce_started_at': None,
            }, now)
            self.ad.log(f"Automation paused ({reason}) until {paused_until}")
            sent = self._notify(NotificationDispatcher.KIND_AUTOMATION_PAUSED,
                                {'reason': reason, 'paused_until': paused_until}, now)
            self._log_event(EventLogger.AUTOMATION_PAUSED, {
                'reason': reason,
                'paused_until': paused_until,
                'saved_setpoints': setpoints,
                'changes': changes,
                'notification_sent': sent,
            }, now)
            return {'action': 'paused', 'reason': reason, 'paused_until': paused_until, 're_armed': False}

        fields = {'pause_reason': reason, 'paused_until': paused_until}
        if phase == C.PHASE_PAUSED_DEBOUNCING:
            fields['pending_debounce'] = False
            fields['debounce_started_at'] = None
            self._log_event(EventLogger.DEBOUNCE_CANCELLED, {'reason': reason}, now)
        self.state_store.update(fields, now)
        self.ad.log(f"Automation pause re-armed ({reason}) until {paused_until}")
        return {'action': 'paused', 'reason': reason, 'paused_until': paused_until, 're_armed': True}

    def handle_climate_event(self, room_id: str, attribute: str, old: Any, new: Any,
                             now: datetime) -> Optional[Dict[str, Any]]:
        """React to a climate entity change reported by Home Assistant.

        Changes that echo our own commands are ignored, as are rooms the
        automation is not currently managing.

        Args:
            room_id: Room whose climate entity changed
            attribute: 'temperature' for setpoint, 'state' or 'preset_mode' for mode
            old: Previous value
            new: New value
            now: Current datetime

        Returns:
            handle_manual_change() result, or None if the event was ignored
        """
        if new in (None, 'unknown', 'unavailable') or old == new:
            return None

        if attribute == 'temperature':
            if self.climate.is_own_change(room_id, new, now):
                return None
            reason = C.PAUSE_REASON_SETPOINT
        elif new in C.MANUAL_MODES:
            reason = C.PAUSE_REASON_MODE
        else:
            return None

        state = self.state_store.get()
        phase = CoordinationStateStore.get_phase(state)
        if phase == C.PHASE_AUTOMATED:
            applied = state.get('applied_setpoints') or {}
            if room_id not in applied:
                return None
            snapshot = dict(applied)
        else:
            snapshot = state.get('saved_setpoints')

        change = {'room_id': room_id, 'attribute': attribute, 'expected': old, 'actual': new}
        return self.handle_manual_change(reason, snapshot, now, [change])

    # ------------------------------------------------------------------
    # Periodic poll
    # ------------------------------------------------------------------

    def poll(self, stove_status: Optional[str], now: datetime) -> Dict[str, Any]:
        """Advance the state machine by one step.

        Store failures are logged and reported as action 'error'; nothing is
        half-applied and the next poll retries from the persisted state.

        Args:
            stove_status: Current stove status string (None if unavailable)
            now: Current datetime

        Returns:
            {'action': skipped|paused|debouncing|retry_timer|resumed|applied|restored|no_change|error,
             'reason': str, ...}
        """
        try:
            prefs = self.preferences.get(self.user_id)
            if not prefs['enabled']:
                return {'action': 'skipped', 'reason': 'disabled'}

            state = self.state_store.get()
            phase = CoordinationStateStore.get_phase(state)
            if phase != C.PHASE_AUTOMATED:
                # Unknown status keeps the usual resume path
                stove_on = stove_status is None or is_active_status(stove_status)
                return self._poll_paused(state, phase, stove_on, prefs, now)
            if stove_status is None:
                return {'action': 'skipped', 'reason': 'status_unavailable'}
            return self._poll_automated(state, is_active_status(stove_status), prefs, now)

        except StorageUnavailable as e:
            self.ad.log(f"Coordination poll failed, will retry: {e}", level="ERROR")
            self._log_event(EventLogger.COORDINATION_ERROR, {'error': str(e)}, now)
            return {'action': 'error', 'reason': 'storage_unavailable', 'error': str(e)}

    def _poll_paused(self, state, phase, stove_on, prefs, now) -> Dict[str, Any]:
        paused_until = _parse_time(state.get('paused_until'))
        if paused_until is not None and now >= paused_until:
            return self._resume(state, prefs, now, 'pause_expired', stove_on)

        if phase == C.PHASE_PAUSED_DEBOUNCING:
            started = _parse_time(state.get('debounce_started_at'))
            if started is None or (now - started).total_seconds() >= C.COORDINATION_DEBOUNCE_S:
                return self._resume(state, prefs, now, 'debounce_expired', stove_on)

        intent = self.intent.detect(state.get('saved_setpoints'))
        if intent.get('error'):
            return {'action': 'skipped', 'reason': 'climate_unavailable', 'phase': phase}

        if phase == C.PHASE_PAUSED_ACTIVE:
            if intent['manual_change']:
                return {'action': 'skipped', 'reason': 'paused', 'paused_until': state.get('paused_until')}
            self.state_store.update({'pending_debounce': True, 'debounce_started_at': now.isoformat()}, now)
            self.ad.log(f"Manual override cleared, resuming in {C.COORDINATION_DEBOUNCE_S}s unless it returns")
            self._log_event(EventLogger.DEBOUNCE_STARTED, {}, now)
            return {'action': 'debouncing', 'reason': 'override_cleared', 'debounce_started_at': now.isoformat()}

        if intent['manual_change']:
            return self.handle_manual_change(intent['reason'], state.get('saved_setpoints'), now, intent['changes'])
        return {'action': 'skipped', 'reason': 'debouncing', 'debounce_started_at': state.get('debounce_started_at')}

    def _poll_automated(self, state, stove_on: bool, prefs, now) -> Dict[str, Any]:
        applied = state.get('applied_setpoints') or {}

        if state.get('stove_debounce_target'):
            return self._poll_stove_debounce(state, stove_on, prefs, now)

        if stove_on and not applied:
            return self._start_stove_debounce(C.STOVE_TARGET_ON, now)

        if stove_on:
            intent = self.intent.detect(applied)
            if intent['manual_change']:
                return self.handle_manual_change(intent['reason'], applied, now, intent['changes'])
            self._mirror_active(state, True, now)
            return {'action': 'no_change', 'reason': 'boost_active'}

        if applied or state.get('previous_setpoints'):
            return self._restore_boost(state, prefs, now)

        self._mirror_active(state, False, now)
        return {'action': 'no_change', 'reason': 'stove_off'}

    def _poll_stove_debounce(self, state, stove_on: bool, prefs, now) -> Dict[str, Any]:
        target = state['stove_debounce_target']
        started = _parse_time(state.get('stove_debounce_started_at'))
        elapsed = (now - started).total_seconds() if started else None

        if target == C.STOVE_TARGET_ON:
            if not stove_on:
                return self._start_stove_debounce(C.STOVE_TARGET_OFF, now)
            if elapsed is None or elapsed >= C.IGNITION_DEBOUNCE_S:
                return self._apply_boost(state, prefs, now)
            return {'action': 'skipped', 'reason': 'stove_on_debounce',
                    'remaining_s': int(C.IGNITION_DEBOUNCE_S - elapsed)}

        if elapsed is not None and elapsed < C.EARLY_SHUTOFF_RETRY_S:
            return {'action': 'skipped', 'reason': 'early_shutoff',
                    'remaining_s': int(C.EARLY_SHUTOFF_RETRY_S - elapsed)}

        # Retry window over: act on whatever the stove is doing now
        state = self.state_store.update(dict(_CLEARED_STOVE_DEBOUNCE), now)
        return self._poll_automated(state, stove_on, prefs, now)

    def _start_stove_debounce(self, target: str, now: datetime) -> Dict[str, Any]:
        self.state_store.update({'stove_debounce_target': target,
                                 'stove_debounce_started_at': now.isoformat()}, now)
        self._log_event(EventLogger.STOVE_DEBOUNCE_STARTED, {'target': target}, now)
        if target == C.STOVE_TARGET_ON:
            self.ad.log(f"Stove on, boosting in {C.IGNITION_DEBOUNCE_S}s if it stays on")
            return {'action': 'debouncing', 'reason': 'stove_on_debounce', 'remaining_s': C.IGNITION_DEBOUNCE_S}
        self.ad.log(f"Stove off during ignition debounce, re-checking in {C.EARLY_SHUTOFF_RETRY_S}s")
        return {'action': 'retry_timer', 'reason': 'early_shutoff', 'remaining_s': C.EARLY_SHUTOFF_RETRY_S}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _apply_boost(self, state, prefs, now) -> Dict[str, Any]:
        """Boost enabled zones.

        The pre-boost setpoints are persisted before any room is touched,
        and every target is computed from them. If a later write fails, the
        next attempt recomputes the same targets instead of boosting the
        boosted value.
        """
        room_ids = [
            zone['room_id'] for zone in CoordinationPreferences.get_enabled_zones(prefs)
            if zone['room_id'] in self.config.rooms
        ]
        if not room_ids:
            fields = dict(_CLEARED_STOVE_DEBOUNCE, automation_active=True)
            self.state_store.update(fields, now)
            return {'action': 'no_change', 'reason': 'no_zones'}

        current = self.climate.get_setpoints(room_ids)
        stored_previous = dict(state.get('previous_setpoints') or {})
        previous = dict(stored_previous)
        for room_id, setpoint in current.items():
            previous.setdefault(room_id, setpoint)
        if previous != stored_previous:
            self.state_store.update({'previous_setpoints': previous}, now)

        applied = {}
        capped = []
        failed = []
        for room_id, setpoint in current.items():
            boost = CoordinationPreferences.get_zone_boost(prefs, room_id)
            target = round(previous[room_id] + boost, 1)
            if target > C.COORDINATION_MAX_SETPOINT_C:
                target = C.COORDINATION_MAX_SETPOINT_C
                capped.append(room_id)

            if target <= setpoint:
                applied[room_id] = setpoint
                continue

            if self.climate.set_setpoint(room_id, target, now):
                applied[room_id] = target
            else:
                failed.append(room_id)

        if not applied:
            # No room changed; forget the snapshot so the retry reads fresh values
            self.state_store.update({'previous_setpoints': stored_previous or None}, now)
            self.ad.log(f"Boost could not be applied to any zone (failed: {failed})", level="WARNING")
            self._log_event(EventLogger.COORDINATION_ERROR, {'error': 'boost_failed', 'rooms': failed}, now)
            return {'action': 'error', 'reason': 'boost_failed', 'failed': failed}

        fields = dict(_CLEARED_STOVE_DEBOUNCE)
        fields.update({
            'automation_active': True,
            'previous_setpoints': previous,
            'applied_setpoints': applied,
        })
        self.state_store.update(fields, now)
        self.ad.log(f"Stove on: boosted {applied}")
        sent = self._notify(NotificationDispatcher.KIND_COORDINATION_APPLIED, {'setpoints': applied}, now, prefs)
        self._log_event(EventLogger.BOOST_APPLIED, {
            'setpoints': applied, 'previous': previous, 'failed': failed, 'notification_sent': sent,
        }, now)

        if capped:
            sent = self._notify(NotificationDispatcher.KIND_MAX_SETPOINT_REACHED, {'rooms': capped}, now, prefs)
            self._log_event(EventLogger.MAX_SETPOINT_CAPPED, {'rooms': capped, 'notification_sent': sent}, now)

        return {'action': 'applied', 'reason': 'stove_on', 'setpoints': applied, 'capped': capped, 'failed': failed}

    def _restore_boost(self, state, prefs, now) -> Dict[str, Any]:
        applied = state.get('applied_setpoints') or {}
        previous = state.get('previous_setpoints') or {}
        # previous without applied means a boost was cut short before it was recorded
        targets = {room_id: previous.get(room_id) for room_id in (applied or previous)}

        result = self.climate.restore_setpoints(targets, now)
        failed = result['failed']
        self.state_store.update({
            'automation_active': False,
            'previous_setpoints': {r: previous.get(r) for r in failed} or None,
            'applied_setpoints': {r: applied[r] for r in failed if r in applied} or None,
        }, now)

        self.ad.log(f"Stove off: restored {result['restored']}" + (f", failed {failed}" if failed else ""))
        sent = False
        if result['restored']:
            sent = self._notify(NotificationDispatcher.KIND_COORDINATION_RESTORED,
                                {'rooms': result['restored']}, now, prefs)
        self._log_event(EventLogger.SETPOINTS_RESTORED,
                        {'setpoints': targets, 'failed': failed, 'notification_sent': sent}, now)
        return {'action': 'restored', 'reason': 'stove_off', 'rooms': result['restored'], 'failed': failed}

    def _resume(self, state, prefs, now, reason: str, stove_on: bool = True) -> Dict[str, Any]:
        saved = state.get('saved_setpoints') or {}
        applied = state.get('applied_setpoints') or {}
        fields = dict(_CLEARED_PAUSE)

        if not stove_on and applied:
            # Stove went out during the pause: go straight back to pre-boost values
            previous = state.get('previous_setpoints') or {}
            targets = {room_id: previous.get(room_id) for room_id in applied}
            for room_id in saved:
                targets.setdefault(room_id, previous.get(room_id))
            fields.update({'automation_active': False, 'previous_setpoints': None, 'applied_setpoints': None})
        else:
            targets = saved

        result = self.climate.restore_setpoints(targets, now)
        if result['failed']:
            self.ad.log(f"Resume postponed, could not restore {result['failed']}", level="WARNING")
            self._log_event(EventLogger.COORDINATION_ERROR,
                            {'error': 'restore_failed', 'rooms': result['failed']}, now)
            return {'action': 'error', 'reason': 'restore_failed', 'failed': result['failed']}

        self.state_store.update(fields, now)
        self.ad.log(f"Automation resumed ({reason}), restored {result['restored']}")
        sent = False
        if result['restored']:
            sent = self._notify(NotificationDispatcher.KIND_COORDINATION_RESTORED,
                                {'rooms': result['restored']}, now, prefs)
        self._log_event(EventLogger.AUTOMATION_RESUMED,
                        {'reason': reason, 'setpoints': targets, 'notification_sent': sent}, now)
        return {'action': 'resumed', 'reason': reason, 'restored': result['restored']}

    def reset(self, now: datetime) -> Dict[str, Any]:
        """Drop any pause / boost bookkeeping and return to defaults."""
        state = self.state_store.reset(now)
        self._log_event(EventLogger.AUTOMATION_RESUMED, {'reason': 'reset'}, now)
        return state

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mirror_active(self, state, active: bool, now: datetime) -> None:
        if bool(state.get('automation_active')) != active:
            self.state_store.update({'automation_active': active}, now)

    def _notify(self, kind: Optional[str], payload: Dict[str, Any], now: datetime,
                prefs: Optional[Dict[str, Any]] = None) -> bool:
        """Dispatch a coordination notification. Returns True if it was sent."""
        if self.notifier is None or kind is None:
            return False
        try:
            if prefs is None:
                prefs = self.preferences.get(self.user_id)
            outcome = self.notifier.dispatch(C.NOTIFY_COORDINATION, kind, payload, now, prefs)
        except Exception as e:
            self.ad.log(f"Coordination notification '{kind}' failed: {e}", level="ERROR")
            return False
        if outcome == NotificationDispatcher.THROTTLED:
            self._log_event(EventLogger.NOTIFICATION_THROTTLED, {'kind': kind}, now)
        return outcome == NotificationDispatcher.SENT

    def _log_event(self, event_type: str, data: Dict[str, Any], now: datetime) -> None:
        if self.events is not None:
            self.events.log_event(event_type, data, now)
