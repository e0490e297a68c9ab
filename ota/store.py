"""
Row access for the release engine.

Every read and write the engine performs goes through ``ReleaseStore`` so
the decision logic never builds querysets itself. Methods that lock rows
must be called inside ``transaction.atomic()``.
"""

import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from core.models import App
from .exceptions import DefaultChannelConflict
from .models import Channel, DeviceReleaseState, Release, RollbackReport

logger = logging.getLogger(__name__)


class ReleaseStore:

    # ---- channels ----

    def get_channel(self, app_id, name):
        return Channel.objects.filter(app_id=app_id, name=name).first()

    def get_default_channel(self, app_id):
        return Channel.objects.filter(app_id=app_id, is_default=True).first()

    def lock_app(self, app_id):
        return App.objects.select_for_update().get(pk=app_id)

    def set_channel_default(self, app_id, channel_id, expected_default_id):
        """
        Compare-and-swap the app's default channel.

        The pointer on App only moves if it still holds
        ``expected_default_id``; otherwise DefaultChannelConflict is raised
        and nothing is written.
        """
        with transaction.atomic():
            swapped = App.objects.filter(
                pk=app_id, default_channel_id=expected_default_id
            ).update(default_channel_id=channel_id)
            if not swapped:
                raise DefaultChannelConflict()

            # Old flag first; the partial unique index allows one default per app
            Channel.objects.filter(app_id=app_id, is_default=True).exclude(pk=channel_id).update(
                is_default=False, updated_at=timezone.now()
            )
            Channel.objects.filter(pk=channel_id).update(is_default=True, updated_at=timezone.now())

    # ---- releases ----

    def get_release(self, release_id):
        return Release.objects.get(pk=release_id)

    def lock_release(self, release_id):
        return Release.objects.select_for_update().get(pk=release_id)

    def list_candidate_releases(self, app_id, channel_id):
        """Servable releases of a channel, unordered."""
        return list(
            Release.objects.servable().filter(app_id=app_id, channel_id=channel_id)
        )

    def increment_rollback_count(self, release_id):
        Release.objects.filter(pk=release_id).update(rollback_count=F('rollback_count') + 1)

    # ---- device/release state ----

    def lock_device_release_state(self, device_id, release):
        state, _ = DeviceReleaseState.objects.select_for_update().get_or_create(
            device_id=device_id,
            release=release,
            defaults={'state': DeviceReleaseState.State.SERVED, 'served_at': timezone.now()},
        )
        return state

    def set_device_release_state(self, row, **changes):
        for field, value in changes.items():
            setattr(row, field, value)
        row.save(update_fields=list(changes) + ['updated_at'])
        return row

    def find_device_release_state(self, device_id, release_id, for_update=False):
        queryset = DeviceReleaseState.objects.filter(device_id=device_id, release_id=release_id)
        if for_update:
            queryset = queryset.select_for_update()
        return queryset.first()

    def lock_expired_pending(self, device_id, cutoff):
        return list(
            DeviceReleaseState.objects.select_for_update().filter(
                device_id=device_id,
                state=DeviceReleaseState.State.PENDING_CONFIRMATION,
                pending_since__lt=cutoff,
            )
        )

    def blocked_release_ids(self, device_id):
        return set(
            DeviceReleaseState.objects.filter(
                device_id=device_id, state=DeviceReleaseState.State.ROLLED_BACK
            ).values_list('release_id', flat=True)
        )

    def is_blocked(self, device_id, release_id):
        return DeviceReleaseState.objects.filter(
            device_id=device_id, release_id=release_id, state=DeviceReleaseState.State.ROLLED_BACK
        ).exists()

    def reset_failure_counts(self, device_id):
        """Zero every counter of a device except on rolled back pairs."""
        return DeviceReleaseState.objects.filter(device_id=device_id).exclude(
            state=DeviceReleaseState.State.ROLLED_BACK
        ).exclude(failure_count=0).update(failure_count=0, updated_at=timezone.now())

    # ---- rollback reports ----

    def record_rollback_report(self, device_id, release, reason, report_id=None,
                               previous_version=None, failed_events=None, failed_endpoints=None,
                               timestamp=None):
        """
        Append a rollback report.

        Returns ``(report, created)``; ``created`` is False when a report
        with ``report_id`` was already stored, in which case nothing is
        written.
        """
        defaults = {
            'device_id': device_id,
            'release': release,
            'reason': reason,
            'previous_version': previous_version,
            'failed_events': failed_events,
            'failed_endpoints': failed_endpoints,
            'timestamp': timestamp or timezone.now(),
        }
        if report_id is None:
            return RollbackReport.objects.create(**defaults), True

        report, created = RollbackReport.objects.get_or_create(id=report_id, defaults=defaults)
        if not created:
            logger.warning(
                "Duplicate rollback report %s from device %s ignored", report_id, device_id
            )
        return report, created
