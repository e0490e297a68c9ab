"""
Per-device rollback safety.

Each (device, release) pair moves through::

    served -> pending_confirmation -> confirmed
                                   -> rolled_back

A pair reaches rolled_back after ``OTA_ROLLBACK_FAILURE_THRESHOLD`` failed
starts (crash, failed health check, hash mismatch or a confirmation that
never arrived) or immediately on a manual rollback. A rolled back release is
never served to that device again until an operator clears it.

Only rolled_back absorbs later reports; they are still stored for audit.
A confirmed pair keeps counting failures from the zero its confirmation
set, so a bundle that starts crashing after it was confirmed is still
rolled back.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .exceptions import UnknownOutcome
from .models import DeviceReleaseState, RollbackReport
from .store import ReleaseStore

logger = logging.getLogger(__name__)

State = DeviceReleaseState.State


class Outcome(str, Enum):
    APPLIED = 'applied'
    CONFIRMED = 'confirmed'
    CRASH_DETECTED = RollbackReport.Reason.CRASH_DETECTED.value
    HEALTH_CHECK_FAILED = RollbackReport.Reason.HEALTH_CHECK_FAILED.value
    MANUAL = RollbackReport.Reason.MANUAL.value
    HASH_MISMATCH = RollbackReport.Reason.HASH_MISMATCH.value


@dataclass
class OutcomeResult:
    state: str
    failure_count: int
    duplicate: bool = False
    report_id: Optional[object] = None

    @property
    def rolled_back(self):
        return self.state == State.ROLLED_BACK


class RollbackSafetyTracker:

    def __init__(self, store=None):
        self.store = store or ReleaseStore()

    @property
    def threshold(self):
        return getattr(settings, 'OTA_ROLLBACK_FAILURE_THRESHOLD', 3)

    @property
    def confirmation_timeout(self):
        return timedelta(seconds=getattr(settings, 'OTA_CONFIRMATION_TIMEOUT_SECONDS', 600))

    # ---- serving ----

    def mark_served(self, device_id, release):
        """Record that ``release`` was offered to the device."""
        with transaction.atomic():
            state = self.store.lock_device_release_state(device_id, release)
            if state.state == State.SERVED:
                state = self.store.set_device_release_state(state, served_at=timezone.now())
        return state

    def is_blocked(self, device_id, release_id):
        return self.store.is_blocked(device_id, release_id)

    def blocked_release_ids(self, device_id):
        return self.store.blocked_release_ids(device_id)

    # ---- outcomes ----

    def report_outcome(self, device_id, release_id, outcome, report_id=None,
                       previous_version=None, failed_events=None, failed_endpoints=None, timestamp=None):
        """
        Apply an outcome reported by the device.

        Failure outcomes append a RollbackReport and, in the same
        transaction, bump the pair's failure counter. A report id that was
        already stored is a retry and changes nothing.

        Raises UnknownOutcome for an unsupported outcome and
        Release.DoesNotExist for an unknown release.
        """
        try:
            outcome = Outcome(outcome)
        except ValueError:
            raise UnknownOutcome(outcome)

        now = timezone.now()
        with transaction.atomic():
            release = self.store.get_release(release_id)
            state = self.store.lock_device_release_state(device_id, release)
            self._expire(state, now)

            if outcome is Outcome.APPLIED:
                return self._applied(state, now)
            if outcome is Outcome.CONFIRMED:
                return self._confirmed(state, now)

            report, created = self.store.record_rollback_report(
                device_id=device_id,
                release=release,
                reason=outcome.value,
                report_id=report_id,
                previous_version=previous_version,
                failed_events=failed_events,
                failed_endpoints=failed_endpoints,
                timestamp=timestamp,
            )
            if not created:
                return OutcomeResult(state.state, state.failure_count, duplicate=True, report_id=report.pk)

            self.store.increment_rollback_count(release.pk)
            if state.is_rolled_back:
                logger.info(
                    f"Rollback report {report.pk} for {device_id}/{release.version} recorded; "
                    f"pair already {state.state}"
                )
                return OutcomeResult(state.state, state.failure_count, report_id=report.pk)

            if outcome is Outcome.MANUAL:
                state = self._roll_back(state, outcome.value, now, failure_count=state.failure_count + 1)
            else:
                state = self._count_failure(state, outcome.value, now)
            return OutcomeResult(state.state, state.failure_count, report_id=report.pk)

    def _applied(self, state, now):
        if state.state in (State.CONFIRMED, State.ROLLED_BACK):
            return OutcomeResult(state.state, state.failure_count)
        state = self.store.set_device_release_state(
            state, state=State.PENDING_CONFIRMATION, pending_since=now
        )
        return OutcomeResult(state.state, state.failure_count)

    def _confirmed(self, state, now):
        if state.state in (State.CONFIRMED, State.ROLLED_BACK):
            return OutcomeResult(state.state, state.failure_count)
        state = self.store.set_device_release_state(
            state, state=State.CONFIRMED, confirmed_at=now, pending_since=None, failure_count=0
        )
        self.store.reset_failure_counts(state.device_id)
        logger.info(f"Device {state.device_id} confirmed release {state.release_id}")
        return OutcomeResult(state.state, state.failure_count)

    def _count_failure(self, state, cause, now):
        failure_count = state.failure_count + 1
        if failure_count >= self.threshold:
            return self._roll_back(state, cause, now, failure_count=failure_count)
        logger.info(
            f"Failed start {failure_count}/{self.threshold} for device {state.device_id} "
            f"on release {state.release_id} ({cause})"
        )
        return self.store.set_device_release_state(
            state, state=State.SERVED, failure_count=failure_count, pending_since=None
        )

    def _roll_back(self, state, cause, now, failure_count):
        logger.warning(
            f"Rolling back release {state.release_id} for device {state.device_id} "
            f"after {failure_count} failure(s), last cause: {cause}"
        )
        return self.store.set_device_release_state(
            state,
            state=State.ROLLED_BACK,
            failure_count=failure_count,
            pending_since=None,
            rolled_back_at=now,
            rollback_reason=cause,
        )

    # ---- confirmation timeouts ----

    def _expire(self, state, now):
        if state.state != State.PENDING_CONFIRMATION or state.pending_since is None:
            return state
        if state.pending_since >= now - self.confirmation_timeout:
            return state
        return self._count_failure(state, DeviceReleaseState.CONFIRMATION_TIMEOUT, now)

    def sweep_expired(self, device_id, now=None):
        """
        Count every overdue confirmation of the device as one failed start.

        Timeouts are evaluated lazily, whenever the device checks in or
        reports; there is no background timer. Returns the number of pairs
        that expired.
        """
        now = now or timezone.now()
        with transaction.atomic():
            expired = self.store.lock_expired_pending(device_id, now - self.confirmation_timeout)
            for state in expired:
                self._count_failure(state, DeviceReleaseState.CONFIRMATION_TIMEOUT, now)
        if expired:
            logger.warning(f"Expired {len(expired)} unconfirmed release(s) for device {device_id}")
        return len(expired)

    # ---- operator intervention ----

    def clear_rollback(self, device_id, release_id, cleared_by=None):
        """
        Lift a rollback block so the release can be served to the device
        again. Returns the cleared state, or None if the pair was not
        rolled back.
        """
        with transaction.atomic():
            state = self.store.find_device_release_state(device_id, release_id, for_update=True)
            if state is None or state.state != State.ROLLED_BACK:
                return None
            state = self.store.set_device_release_state(
                state,
                state=State.SERVED,
                failure_count=0,
                rollback_reason=None,
                cleared_at=timezone.now(),
                cleared_by=cleared_by,
            )
        logger.warning(f"Rollback block cleared for device {device_id} on release {release_id} by {cleared_by}")
        return state
