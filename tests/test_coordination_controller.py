from datetime import datetime, timedelta

import pytest

import pystove.core.constants as C
from pystove.controllers.climate_controller import ClimateController
from pystove.controllers.coordination_controller import CoordinationController
from pystove.core.errors import StorageUnavailable
from pystove.core.scheduler import Scheduler
from pystove.managers.coordination_preferences import CoordinationPreferences
from pystove.managers.coordination_state import CoordinationStateStore
from pystove.managers.user_intent import UserIntentDetector
from pystove.services.event_logger import EventLogger
from pystove.services.notification_dispatcher import NotificationDispatcher


@pytest.fixture
def state_store(ad, store):
    return CoordinationStateStore(ad, store)


@pytest.fixture
def preferences(ad, store, now):
    prefs = CoordinationPreferences(ad, store)
    prefs.update('default', {
        'default_boost': 2.0,
        'zones': [{'room_id': 'lounge'}, {'room_id': 'kitchen', 'boost': 1.0}],
    }, now)
    return prefs


@pytest.fixture
def climate(ad, config):
    return ClimateController(ad, config)


@pytest.fixture
def events(ad, config):
    return EventLogger(ad, config)


@pytest.fixture
def controller(ad, config, state_store, preferences, climate, events):
    return CoordinationController(
        ad, config, state_store, preferences, Scheduler(ad, config), climate,
        UserIntentDetector(ad, climate), NotificationDispatcher(ad, config), events
    )


def _temperatures(ad):
    return {
        'lounge': ad.get_state('climate.lounge', attribute='temperature'),
        'kitchen': ad.get_state('climate.kitchen', attribute='temperature'),
    }


def _boosted(controller, now):
    """Stove lit IGNITION_DEBOUNCE_S before now, boost applied at now."""
    lit = now - timedelta(seconds=C.IGNITION_DEBOUNCE_S)
    assert controller.poll("WORK", lit)['action'] == 'debouncing'
    result = controller.poll("WORK", now)
    assert result['action'] == 'applied'
    return result


def _fail_update(monkeypatch, state_store, call_number):
    """Make the Nth state write from now on raise StorageUnavailable."""
    original = state_store.update
    calls = []

    def flaky(fields, now):
        calls.append(fields)
        if len(calls) == call_number:
            raise StorageUnavailable("write failed")
        return original(fields, now)

    monkeypatch.setattr(state_store, 'update', flaky)


def _paused(controller, ad, now):
    """Boost, then have the user turn the lounge up by hand."""
    _boosted(controller, now)
    ad.set_climate('climate.lounge', 24.0)
    result = controller.poll("WORK", now + timedelta(minutes=1))
    assert result['action'] == 'paused'
    return now + timedelta(minutes=1)


# ----------------------------------------------------------------------
# Boost automation
# ----------------------------------------------------------------------

def test_stove_on_boosts_enabled_zones(controller, state_store, ad, now):
    result = _boosted(controller, now)

    assert result['setpoints'] == {'lounge': 22.0, 'kitchen': 20.0}
    assert _temperatures(ad) == {'lounge': 22.0, 'kitchen': 20.0}
    state = state_store.get()
    assert state['automation_active'] is True
    assert state['previous_setpoints'] == {'lounge': 20.0, 'kitchen': 19.0}
    assert state['applied_setpoints'] == {'lounge': 22.0, 'kitchen': 20.0}


def test_boost_is_applied_once(controller, ad, now):
    _boosted(controller, now)
    calls = len(ad.calls_to('climate/set_temperature'))

    result = controller.poll("MODULATION", now + timedelta(minutes=1))

    assert result == {'action': 'no_change', 'reason': 'boost_active'}
    assert len(ad.calls_to('climate/set_temperature')) == calls


def test_boost_capped_at_max_setpoint(controller, ad, events, now):
    ad.set_climate('climate.lounge', 29.0)

    result = _boosted(controller, now)

    assert result['setpoints']['lounge'] == C.COORDINATION_MAX_SETPOINT_C
    assert result['capped'] == ['lounge']
    assert events.get_recent_events(event_type=EventLogger.MAX_SETPOINT_CAPPED)[0]['rooms'] == ['lounge']


def test_stove_off_restores_previous_setpoints(controller, state_store, ad, now):
    _boosted(controller, now)

    result = controller.poll("OFF", now + timedelta(minutes=5))

    assert result['action'] == 'restored'
    assert _temperatures(ad) == {'lounge': 20.0, 'kitchen': 19.0}
    state = state_store.get()
    assert state['automation_active'] is False
    assert state['applied_setpoints'] is None
    assert state['previous_setpoints'] is None


def test_stove_off_without_boost_is_quiet(controller, ad, now):
    assert controller.poll("OFF", now) == {'action': 'no_change', 'reason': 'stove_off'}
    assert ad.calls_to('climate/set_temperature') == []


# ----------------------------------------------------------------------
# Ignition debounce
# ----------------------------------------------------------------------

def test_boost_waits_for_ignition_debounce(controller, ad, now):
    result = controller.poll("WORK", now)

    assert result == {'action': 'debouncing', 'reason': 'stove_on_debounce', 'remaining_s': C.IGNITION_DEBOUNCE_S}
    early = controller.poll("WORK", now + timedelta(seconds=C.IGNITION_DEBOUNCE_S - 1))
    assert early == {'action': 'skipped', 'reason': 'stove_on_debounce', 'remaining_s': 1}
    assert controller.get_status(now + timedelta(seconds=30))['stove_debounce_remaining_s'] == C.IGNITION_DEBOUNCE_S - 30
    assert ad.calls_to('climate/set_temperature') == []

    assert controller.poll("WORK", now + timedelta(seconds=C.IGNITION_DEBOUNCE_S))['action'] == 'applied'


def test_early_shutoff_retries_instead_of_restoring(controller, state_store, ad, events, now):
    controller.poll("WORK", now)
    off_at = now + timedelta(seconds=60)

    result = controller.poll("OFF", off_at)
    assert result == {'action': 'retry_timer', 'reason': 'early_shutoff', 'remaining_s': C.EARLY_SHUTOFF_RETRY_S}
    state = state_store.get()
    assert state['stove_debounce_target'] == C.STOVE_TARGET_OFF
    assert state['stove_debounce_started_at'] == off_at.isoformat()

    assert controller.poll("OFF", off_at + timedelta(seconds=20))['reason'] == 'early_shutoff'

    result = controller.poll("OFF", off_at + timedelta(seconds=C.EARLY_SHUTOFF_RETRY_S))
    assert result == {'action': 'no_change', 'reason': 'stove_off'}
    assert ad.calls_to('climate/set_temperature') == []
    assert state_store.get()['stove_debounce_target'] is None
    started = events.get_recent_events(event_type=EventLogger.STOVE_DEBOUNCE_STARTED)
    assert [e['target'] for e in started] == [C.STOVE_TARGET_OFF, C.STOVE_TARGET_ON]


def test_stove_relit_after_retry_starts_new_debounce(controller, ad, now):
    controller.poll("WORK", now)
    off_at = now + timedelta(seconds=60)
    controller.poll("OFF", off_at)
    relit_at = off_at + timedelta(seconds=C.EARLY_SHUTOFF_RETRY_S)

    assert controller.poll("WORK", relit_at)['action'] == 'debouncing'
    assert controller.poll("WORK", relit_at + timedelta(seconds=60))['action'] == 'skipped'
    assert controller.poll("WORK", relit_at + timedelta(seconds=C.IGNITION_DEBOUNCE_S))['action'] == 'applied'
    assert _temperatures(ad) == {'lounge': 22.0, 'kitchen': 20.0}


def test_ignition_debounce_survives_restart(controller, ad, config, store, climate, events, now):
    controller.poll("WORK", now)

    restarted = CoordinationController(
        ad, config, CoordinationStateStore(ad, store), CoordinationPreferences(ad, store),
        Scheduler(ad, config), climate, UserIntentDetector(ad, climate), None, events
    )

    assert restarted.poll("WORK", now + timedelta(seconds=C.IGNITION_DEBOUNCE_S))['action'] == 'applied'


# ----------------------------------------------------------------------
# Boost bookkeeping under storage failures
# ----------------------------------------------------------------------

def test_failed_snapshot_write_touches_nothing(controller, state_store, ad, now, monkeypatch):
    controller.poll("WORK", now - timedelta(seconds=C.IGNITION_DEBOUNCE_S))
    _fail_update(monkeypatch, state_store, 1)

    result = controller.poll("WORK", now)

    assert result['action'] == 'error'
    assert ad.calls_to('climate/set_temperature') == []

    assert controller.poll("WORK", now + timedelta(minutes=1))['setpoints'] == {'lounge': 22.0, 'kitchen': 20.0}
    assert controller.poll("OFF", now + timedelta(minutes=5))['action'] == 'restored'
    assert _temperatures(ad) == {'lounge': 20.0, 'kitchen': 19.0}


def test_lost_boost_record_is_not_boosted_twice(controller, state_store, ad, now, monkeypatch):
    controller.poll("WORK", now - timedelta(seconds=C.IGNITION_DEBOUNCE_S))
    _fail_update(monkeypatch, state_store, 2)

    assert controller.poll("WORK", now)['action'] == 'error'
    assert _temperatures(ad) == {'lounge': 22.0, 'kitchen': 20.0}

    result = controller.poll("WORK", now + timedelta(minutes=1))
    assert result['action'] == 'applied'
    assert _temperatures(ad) == {'lounge': 22.0, 'kitchen': 20.0}
    assert state_store.get()['previous_setpoints'] == {'lounge': 20.0, 'kitchen': 19.0}

    controller.poll("OFF", now + timedelta(minutes=5))
    assert _temperatures(ad) == {'lounge': 20.0, 'kitchen': 19.0}


def test_lost_boost_record_is_restored_when_stove_goes_out(controller, state_store, ad, now, monkeypatch):
    controller.poll("WORK", now - timedelta(seconds=C.IGNITION_DEBOUNCE_S))
    _fail_update(monkeypatch, state_store, 2)
    controller.poll("WORK", now)

    off_at = now + timedelta(minutes=1)
    assert controller.poll("OFF", off_at)['action'] == 'retry_timer'
    result = controller.poll("OFF", off_at + timedelta(seconds=C.EARLY_SHUTOFF_RETRY_S))

    assert result['action'] == 'restored'
    assert _temperatures(ad) == {'lounge': 20.0, 'kitchen': 19.0}
    assert state_store.get()['previous_setpoints'] is None


def test_unknown_status_skips(controller, now):
    assert controller.poll(None, now) == {'action': 'skipped', 'reason': 'status_unavailable'}


def test_disabled_preferences_skip(controller, preferences, ad, now):
    preferences.update('default', {'enabled': False}, now)

    assert controller.poll("WORK", now) == {'action': 'skipped', 'reason': 'disabled'}
    assert ad.calls_to('climate/set_temperature') == []


# ----------------------------------------------------------------------
# Pause on manual change
# ----------------------------------------------------------------------

def test_manual_change_pauses_and_snapshots(controller, state_store, ad, now):
    _paused(controller, ad, now)

    state = state_store.get()
    assert state_store.get_phase(state) == C.PHASE_PAUSED_ACTIVE
    assert state['pause_reason'] == C.PAUSE_REASON_SETPOINT
    assert state['saved_setpoints'] == {'lounge': 22.0, 'kitchen': 20.0}
    assert state['paused_until'] == datetime(2025, 1, 6, 17, 0).isoformat()
    assert state['pending_debounce'] is False
    assert state['debounce_started_at'] is None


def test_second_manual_change_rearms_without_resnapshot(controller, state_store, ad, now):
    _paused(controller, ad, now)
    later = datetime(2025, 1, 6, 16, 59)

    result = controller.handle_manual_change(C.PAUSE_REASON_MODE, {'lounge': 99.0}, later)

    assert result['re_armed'] is True
    state = state_store.get()
    assert state['saved_setpoints'] == {'lounge': 22.0, 'kitchen': 20.0}
    assert state['pause_reason'] == C.PAUSE_REASON_MODE
    assert state['paused_until'] == datetime(2025, 1, 6, 17, 0).isoformat()

    controller.handle_manual_change(C.PAUSE_REASON_SETPOINT, None, datetime(2025, 1, 6, 17, 30))
    assert state_store.get()['paused_until'] == datetime(2025, 1, 7, 6, 30).isoformat()


def test_override_still_present_keeps_pause(controller, ad, now):
    paused_at = _paused(controller, ad, now)

    result = controller.poll("WORK", paused_at + timedelta(minutes=10))

    assert result['action'] == 'skipped'
    assert result['reason'] == 'paused'


def test_pause_expiry_restores_snapshot_once(controller, state_store, ad, now):
    _paused(controller, ad, now)
    deadline = datetime(2025, 1, 6, 17, 0)

    result = controller.poll("WORK", deadline)

    assert result['action'] == 'resumed'
    assert result['reason'] == 'pause_expired'
    assert _temperatures(ad) == {'lounge': 22.0, 'kitchen': 20.0}
    state = state_store.get()
    assert state_store.get_phase(state) == C.PHASE_AUTOMATED
    for field in ('pause_reason', 'paused_until', 'saved_setpoints', 'debounce_started_at'):
        assert state[field] is None
    assert state['pending_debounce'] is False

    calls = len(ad.calls_to('climate/set_temperature'))
    assert controller.poll("WORK", deadline + timedelta(minutes=1))['action'] == 'no_change'
    assert len(ad.calls_to('climate/set_temperature')) == calls


def test_failed_restore_keeps_pause_for_retry(controller, state_store, ad, now):
    _paused(controller, ad, now)
    ad.fail_services.add('climate/set_temperature')

    result = controller.poll("WORK", datetime(2025, 1, 6, 17, 0))

    assert result['action'] == 'error'
    assert result['reason'] == 'restore_failed'
    assert state_store.get()['automation_paused'] is True

    ad.fail_services.clear()
    assert controller.poll("WORK", datetime(2025, 1, 6, 17, 1))['action'] == 'resumed'


def test_pause_expiry_with_stove_out_restores_pre_boost_setpoints(controller, state_store, ad, now):
    _paused(controller, ad, now)

    result = controller.poll("OFF", datetime(2025, 1, 6, 17, 0))

    assert result['action'] == 'resumed'
    assert _temperatures(ad) == {'lounge': 20.0, 'kitchen': 19.0}
    state = state_store.get()
    assert state_store.get_phase(state) == C.PHASE_AUTOMATED
    assert state['automation_active'] is False
    assert state['applied_setpoints'] is None
    assert state['previous_setpoints'] is None
    assert controller.poll("OFF", datetime(2025, 1, 6, 17, 1)) == {'action': 'no_change', 'reason': 'stove_off'}


# ----------------------------------------------------------------------
# Debounce
# ----------------------------------------------------------------------

def test_cleared_override_debounces_then_resumes(controller, state_store, ad, now):
    paused_at = _paused(controller, ad, now)
    ad.set_climate('climate.lounge', 22.0)
    cleared_at = paused_at + timedelta(minutes=3)

    result = controller.poll("WORK", cleared_at)
    assert result['action'] == 'debouncing'
    state = state_store.get()
    assert state_store.get_phase(state) == C.PHASE_PAUSED_DEBOUNCING
    assert state['debounce_started_at'] == cleared_at.isoformat()

    early = controller.poll("WORK", cleared_at + timedelta(seconds=C.COORDINATION_DEBOUNCE_S - 1))
    assert early == {'action': 'skipped', 'reason': 'debouncing', 'debounce_started_at': cleared_at.isoformat()}

    result = controller.poll("WORK", cleared_at + timedelta(seconds=C.COORDINATION_DEBOUNCE_S))
    assert result['action'] == 'resumed'
    assert result['reason'] == 'debounce_expired'
    assert state_store.get_phase(state_store.get()) == C.PHASE_AUTOMATED


def test_debounce_survives_restart(controller, ad, config, store, climate, events, now):
    paused_at = _paused(controller, ad, now)
    ad.set_climate('climate.lounge', 22.0)
    controller.poll("WORK", paused_at + timedelta(minutes=1))

    restarted = CoordinationController(
        ad, config, CoordinationStateStore(ad, store), CoordinationPreferences(ad, store),
        Scheduler(ad, config), climate, UserIntentDetector(ad, climate), None, events
    )
    result = restarted.poll("WORK", paused_at + timedelta(minutes=4))

    assert result['action'] == 'resumed'


def test_manual_change_during_debounce_cancels_it(controller, state_store, ad, now):
    paused_at = _paused(controller, ad, now)
    ad.set_climate('climate.lounge', 22.0)
    controller.poll("WORK", paused_at + timedelta(minutes=1))

    ad.set_climate('climate.lounge', 25.0)
    result = controller.poll("WORK", paused_at + timedelta(minutes=2))

    assert result['action'] == 'paused'
    assert result['re_armed'] is True
    state = state_store.get()
    assert state_store.get_phase(state) == C.PHASE_PAUSED_ACTIVE
    assert state['pending_debounce'] is False
    assert state['debounce_started_at'] is None
    assert state['saved_setpoints'] == {'lounge': 22.0, 'kitchen': 20.0}


# ----------------------------------------------------------------------
# Climate events
# ----------------------------------------------------------------------

def test_climate_event_for_boosted_room_pauses(controller, state_store, now):
    _boosted(controller, now)

    result = controller.handle_climate_event('lounge', 'temperature', 22.0, 24.5, now + timedelta(minutes=2))

    assert result['action'] == 'paused'
    assert state_store.get()['saved_setpoints'] == {'lounge': 22.0, 'kitchen': 20.0}


def test_echo_of_own_command_is_ignored(controller, state_store, now):
    _boosted(controller, now)

    assert controller.handle_climate_event('lounge', 'temperature', 20.0, 22.0, now + timedelta(seconds=2)) is None
    assert state_store.get()['automation_paused'] is False


def test_climate_event_without_boost_is_ignored(controller, now):
    assert controller.handle_climate_event('lounge', 'temperature', 20.0, 23.0, now) is None


def test_mode_event_pauses_with_mode_reason(controller, state_store, now):
    _boosted(controller, now)

    result = controller.handle_climate_event('kitchen', 'state', 'heat', 'off', now + timedelta(minutes=2))

    assert result['reason'] == C.PAUSE_REASON_MODE
    assert state_store.get()['pause_reason'] == C.PAUSE_REASON_MODE


# ----------------------------------------------------------------------
# Errors, notifications, reset
# ----------------------------------------------------------------------

def test_storage_failure_reports_error(controller, state_store, events, ad, now, monkeypatch):
    def broken():
        raise StorageUnavailable("store offline")

    monkeypatch.setattr(state_store, 'get', broken)

    result = controller.poll("WORK", now)

    assert result == {'action': 'error', 'reason': 'storage_unavailable', 'error': 'store offline'}
    assert ad.calls_to('climate/set_temperature') == []
    assert events.get_recent_events(event_type=EventLogger.COORDINATION_ERROR)


def test_coordination_notifications_are_throttled(controller, ad, events, now):
    _paused(controller, ad, now)

    created = [c['notification_id'] for c in ad.calls_to('persistent_notification/create')]
    assert created == ['pystove_coordination_applied']
    throttled = events.get_recent_events(event_type=EventLogger.NOTIFICATION_THROTTLED)
    assert throttled[0]['kind'] == 'automation_paused'


def test_get_status_reports_remaining_time(controller, ad, now):
    paused_at = _paused(controller, ad, now)

    status = controller.get_status(paused_at)

    assert status['phase'] == C.PHASE_PAUSED_ACTIVE
    assert status['pause_remaining_s'] == int((datetime(2025, 1, 6, 17, 0) - paused_at).total_seconds())
    assert status['debounce_remaining_s'] is None


def test_reset_returns_to_automated(controller, state_store, ad, now):
    _paused(controller, ad, now)

    controller.reset(now + timedelta(minutes=5))

    assert controller.get_phase() == C.PHASE_AUTOMATED
    assert state_store.get()['saved_setpoints'] is None
