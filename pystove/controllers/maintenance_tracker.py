# -*- coding: utf-8 -*-
"""
maintenance_tracker.py - Stove usage-hour accrual and cleaning state

Responsibilities:
- Accrue working time into usage hours inside a store transaction
- Maintain needs_cleaning and the one-shot 80/90/100% notification levels
- Gate ignition on cleaning state (fail open)
- Confirm cleaning (reset) and change the cleaning interval

Accrual timeline (per poll while the stove is working):
    no record           -> create zeroed record, nothing accrued
    no last_updated_at  -> stamp it, nothing accrued
    < 30s since last    -> abort, nothing written
    otherwise           -> add elapsed hours, check thresholds, write
"""

import copy
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import pystove.core.constants as C
from pystove.core.errors import CorruptRecord, ValidationFailed
from pystove.services.stove_status import is_working_status


def _parse_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_record(record: Dict[str, Any]) -> None:
    """Raise CorruptRecord for the first unusable field."""
    if not _is_number(record.get('current_hours')) or record['current_hours'] < 0:
        raise CorruptRecord('current_hours')
    if not _is_number(record.get('target_hours')) or record['target_hours'] <= 0:
        raise CorruptRecord('target_hours')
    if record.get('last_notification_level') not in (0,) + tuple(C.MAINTENANCE_THRESHOLDS):
        raise CorruptRecord('last_notification_level')
    if record.get('last_updated_at') is not None and _parse_time(record['last_updated_at']) is None:
        raise CorruptRecord('last_updated_at')


def heal_record(record: Dict[str, Any], default_target: float) -> Tuple[Dict[str, Any], List[str]]:
    """Fill missing fields and replace unusable ones with defaults.

    Returns:
        (healed record, list of fields that were replaced)
    """
    healed = new_record(default_target)
    healed['last_updated_at'] = None
    healed.update(record)

    field_defaults = {
        'current_hours': 0.0,
        'target_hours': default_target,
        'last_notification_level': 0,
        'last_updated_at': None,
    }
    fixed = []
    while True:
        try:
            _validate_record(healed)
            break
        except CorruptRecord as e:
            healed[e.field] = field_defaults[e.field]
            fixed.append(e.field)

    healed['needs_cleaning'] = healed['current_hours'] >= healed['target_hours']
    return healed, fixed


def new_record(target_hours: float, now: Optional[datetime] = None) -> Dict[str, Any]:
    record = copy.deepcopy(C.MAINTENANCE_RECORD_DEFAULT)
    record['target_hours'] = target_hours
    record['last_updated_at'] = now.isoformat() if now else None
    return record


def compute_accrual(record: Optional[Dict[str, Any]], now: datetime,
                    default_target: float = C.MAINTENANCE_TARGET_HOURS_DEFAULT) -> Dict[str, Any]:
    """Decide the next maintenance record for one accrual tick.

    Pure: the result depends only on the arguments, so it can be re-run
    against a fresher record when a transaction conflicts.

    Args:
        record: Stored record, or None if none exists
        now: Current datetime
        default_target: Target hours for new or repaired records

    Returns:
        {
            'record': new record to write, or None to abort,
            'outcome': 'initialized' | 'repaired' | 'accrued' | 'too_soon',
            'elapsed_minutes': float,
            'notification': threshold payload or None,
            'healed_fields': [...],
        }
    """
    if record is None:
        return {
            'record': new_record(default_target, now),
            'outcome': 'initialized',
            'elapsed_minutes': 0.0,
            'notification': None,
            'healed_fields': [],
        }

    healed, fixed = heal_record(record, default_target)

    last_updated = _parse_time(healed['last_updated_at'])
    if last_updated is None:
        healed['last_updated_at'] = now.isoformat()
        return {
            'record': healed,
            'outcome': 'repaired',
            'elapsed_minutes': 0.0,
            'notification': None,
            'healed_fields': fixed,
        }

    elapsed_s = (now - last_updated).total_seconds()
    elapsed_minutes = round(elapsed_s / 60, 2)
    if elapsed_s < C.MAINTENANCE_MIN_UPDATE_INTERVAL_S:
        return {
            'record': None,
            'outcome': 'too_soon',
            'elapsed_minutes': elapsed_minutes,
            'notification': None,
            'healed_fields': fixed,
        }

    target = healed['target_hours']
    new_hours = round(healed['current_hours'] + elapsed_s / 3600, C.MAINTENANCE_HOURS_PRECISION)
    percentage = new_hours / target * 100

    reached = 0
    for threshold in C.MAINTENANCE_THRESHOLDS:
        if percentage >= threshold:
            reached = threshold

    notification = None
    level = healed['last_notification_level']
    if reached > level:
        level = reached
        notification = {
            'level': reached,
            'percentage': round(percentage, 2),
            'current_hours': new_hours,
            'target_hours': target,
            'remaining_hours': round(max(0.0, target - new_hours), C.MAINTENANCE_HOURS_PRECISION),
        }

    healed.update({
        'current_hours': new_hours,
        'last_updated_at': now.isoformat(),
        'needs_cleaning': new_hours >= target,
        'last_notification_level': level,
    })
    return {
        'record': healed,
        'outcome': 'accrued',
        'elapsed_minutes': elapsed_minutes,
        'notification': notification,
        'healed_fields': fixed,
    }


class MaintenanceTracker:
    """Tracks stove usage hours against the cleaning interval."""

    def __init__(self, ad, config, store, notifier=None):
        """Initialize the maintenance tracker.

        Args:
            ad: AppDaemon API reference
            config: ConfigLoader instance
            store: PersistenceManager instance
            notifier: NotificationDispatcher instance (optional)
        """
        self.ad = ad
        self.config = config
        self.store = store
        self.notifier = notifier

    @property
    def default_target(self) -> float:
        return self.config.maintenance_config.get('target_hours', C.MAINTENANCE_TARGET_HOURS_DEFAULT)

    def track_usage_hours(self, status: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Accrue runtime for the current poll.

        Never raises: failures are logged and reported in the result.

        Args:
            status: Current stove status string
            now: Current datetime

        Returns:
            {'tracked': bool, ...}. tracked is False with reason 'not_working'
            for idle statuses, and False with skipped=True and reason
            'too_soon' when the previous accrual is under 30s old. Errors set
            'error'.
        """
        now = now or datetime.now()

        if not is_working_status(status):
            return {'tracked': False, 'reason': 'not_working', 'status': status}

        last = {}

        def _apply(current):
            result = compute_accrual(current, now, self.default_target)
            last.clear()
            last.update(result)
            return result['record']

        try:
            tx = self.store.transact(C.PATH_MAINTENANCE, _apply)
        except Exception as e:
            self.ad.log(f"Usage tracking failed: {e}", level="ERROR")
            return {'tracked': False, 'error': str(e)}

        if not tx.committed:
            self.ad.log(f"Usage tracking skipped: last update {last['elapsed_minutes']} min ago", level="DEBUG")
            return {
                'tracked': False,
                'skipped': True,
                'reason': 'too_soon',
                'elapsed_minutes': last['elapsed_minutes'],
            }

        record = tx.value
        if last['healed_fields']:
            self.ad.log(f"Maintenance record repaired fields: {', '.join(last['healed_fields'])}", level="WARNING")
        if last['outcome'] == 'initialized':
            self.ad.log("Maintenance record initialized")
        elif last['outcome'] == 'repaired':
            self.ad.log("Maintenance record had no last update time, stamped without accruing", level="WARNING")

        notification = last['notification']
        if notification:
            self.ad.log(
                f"Maintenance threshold {notification['level']}% reached "
                f"({notification['current_hours']:.2f}h / {notification['target_hours']}h)",
                level="WARNING"
            )
            self._notify(notification, now)

        return {
            'tracked': True,
            'outcome': last['outcome'],
            'elapsed_minutes': last['elapsed_minutes'],
            'new_current_hours': record['current_hours'],
            'needs_cleaning': record['needs_cleaning'],
            'notification_data': notification,
        }

    def _notify(self, payload: Dict[str, Any], now: datetime) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.dispatch(C.NOTIFY_MAINTENANCE, self.notifier.KIND_MAINTENANCE_THRESHOLD, payload, now)
        except Exception as e:
            self.ad.log(f"Failed to dispatch maintenance notification: {e}", level="ERROR")

    def can_ignite(self) -> bool:
        """Whether the stove may be lit. True if the record is missing or unreadable."""
        try:
            record = self.store.get(C.PATH_MAINTENANCE)
        except Exception as e:
            self.ad.log(f"Maintenance check failed, allowing ignition: {e}", level="WARNING")
            return True
        if not isinstance(record, dict):
            return True
        return not bool(record.get('needs_cleaning', False))

    def get_status(self) -> Dict[str, Any]:
        """Maintenance record with derived progress figures.

        Returns:
            Record fields plus percentage (capped at 100), remaining_hours,
            is_near_limit and exists (False if nothing is stored yet)

        Raises:
            StorageUnavailable: store could not be read
        """
        stored = self.store.get(C.PATH_MAINTENANCE)
        if isinstance(stored, dict):
            record, _ = heal_record(stored, self.default_target)
        else:
            record = new_record(self.default_target)

        current = record['current_hours']
        target = record['target_hours']
        percentage = min(100.0, round(current / target * 100, 2))

        status = dict(record)
        status.update({
            'exists': isinstance(stored, dict),
            'percentage': percentage,
            'remaining_hours': round(max(0.0, target - current), C.MAINTENANCE_HOURS_PRECISION),
            'is_near_limit': percentage >= C.MAINTENANCE_NEAR_LIMIT_PERCENT and not record['needs_cleaning'],
        })
        return status

    def confirm_cleaning(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Reset usage after the stove has been cleaned.

        Returns:
            {'previous_hours': float, 'record': new record}
        """
        now = now or datetime.now()
        previous = {}

        def _reset(current):
            if isinstance(current, dict):
                record, _ = heal_record(current, self.default_target)
            else:
                record = new_record(self.default_target)
            previous['hours'] = record['current_hours']
            record.update({
                'current_hours': 0.0,
                'needs_cleaning': False,
                'last_notification_level': 0,
                'last_cleaned_at': now.isoformat(),
                'last_updated_at': now.isoformat(),
            })
            return record

        tx = self.store.transact(C.PATH_MAINTENANCE, _reset)
        self.ad.log(f"Stove cleaning confirmed (was {previous['hours']:.2f}h)")
        if self.notifier is not None:
            self.notifier.dismiss_maintenance()
        return {'previous_hours': previous['hours'], 'record': tx.value}

    def update_target_hours(self, hours: Any) -> Dict[str, Any]:
        """Change the cleaning interval.

        needs_cleaning is recomputed; last_updated_at is untouched so the
        next accrual still measures from the last working tick.

        Raises:
            ValidationFailed: hours is not a positive number
        """
        try:
            target = float(hours)
        except (TypeError, ValueError):
            raise ValidationFailed(f"target hours must be a number, got {hours!r}", path=C.PATH_MAINTENANCE)
        if isinstance(hours, bool) or not target > 0 or target == float('inf'):
            raise ValidationFailed(f"target hours must be positive, got {hours!r}", path=C.PATH_MAINTENANCE)

        def _retarget(current):
            if isinstance(current, dict):
                record, _ = heal_record(current, self.default_target)
            else:
                record = new_record(self.default_target)
            record['target_hours'] = target
            record['needs_cleaning'] = record['current_hours'] >= target
            return record

        tx = self.store.transact(C.PATH_MAINTENANCE, _retarget)
        self.ad.log(f"Maintenance target set to {target}h")
        return tx.value
