"""
Release lifecycle.

    draft --start--> rolling (<100%) | active (100%)
    rolling --100%--> active
    rolling/active --pause--> paused --resume--> rolling | active
    rolling/active/paused --disable--> disabled
    any live status --fail--> failed
    active --complete--> complete

Only rolling and active releases are served. The rollout percentage may
only grow while a release is rolling, active or paused.
"""

import logging

from django.db import transaction
from django.utils import timezone

from .exceptions import InvalidReleaseTransition, InvalidRolloutPercentage, RolloutDecreaseError
from .models import Channel, Release
from .store import ReleaseStore
from .targeting import validate_rule_set

logger = logging.getLogger(__name__)

Status = Release.Status

ALLOWED_TRANSITIONS = {
    Status.DRAFT: {Status.ROLLING, Status.ACTIVE, Status.DISABLED},
    Status.ROLLING: {Status.ACTIVE, Status.PAUSED, Status.DISABLED, Status.FAILED},
    Status.ACTIVE: {Status.PAUSED, Status.DISABLED, Status.FAILED, Status.COMPLETE},
    Status.PAUSED: {Status.ROLLING, Status.ACTIVE, Status.DISABLED, Status.FAILED},
    Status.DISABLED: set(),
    Status.FAILED: set(),
    Status.COMPLETE: set(),
}

_store = ReleaseStore()


def validate_percentage(value):
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
        raise InvalidRolloutPercentage(value)
    return value


def _status_for(percentage):
    return Status.ACTIVE if percentage == 100 else Status.ROLLING


def _transition(release, target):
    if target not in ALLOWED_TRANSITIONS[Status(release.status)]:
        raise InvalidReleaseTransition(release.status, target)
    logger.info(f"Release {release.pk} ({release.version}): {release.status} -> {target}")
    release.status = target


def create_release(app, channel, version, bundle_ref, bundle_hash='', bundle_size=0,
                   min_os_version=None, min_app_version=None, max_app_version=None,
                   targeting_rules=None, release_notes=''):
    if targeting_rules is not None:
        validate_rule_set(targeting_rules)
    release = Release.objects.create(
        app=app,
        channel=channel,
        version=version,
        bundle_ref=bundle_ref,
        bundle_hash=bundle_hash,
        bundle_size=bundle_size,
        min_os_version=min_os_version or None,
        min_app_version=min_app_version or None,
        max_app_version=max_app_version or None,
        targeting_rules=targeting_rules,
        release_notes=release_notes,
    )
    logger.info(f"Release created - App: {app.slug}, Channel: {channel.name}, Version: {version}")
    return release


def start_rollout(release, percentage=100):
    """
    Begin serving a draft release (or restart a paused one) and make it the
    channel's current release.
    """
    percentage = validate_percentage(percentage)
    with transaction.atomic():
        release = _store.lock_release(release.pk)
        if release.status in Release.MONOTONIC_STATUSES and percentage < release.rollout_percentage:
            raise RolloutDecreaseError(release.rollout_percentage, percentage)
        _transition(release, _status_for(percentage))
        release.rollout_percentage = percentage
        release.save(update_fields=['status', 'rollout_percentage', 'updated_at'])
        Channel.objects.filter(pk=release.channel_id).update(active_release=release, updated_at=timezone.now())
    return release


def set_rollout_percentage(release, percentage):
    percentage = validate_percentage(percentage)
    with transaction.atomic():
        release = _store.lock_release(release.pk)
        if release.status in Release.MONOTONIC_STATUSES and percentage < release.rollout_percentage:
            raise RolloutDecreaseError(release.rollout_percentage, percentage)
        if release.status == Status.ROLLING and percentage == 100:
            _transition(release, Status.ACTIVE)
        elif release.status not in (Status.DRAFT, Status.ROLLING, Status.ACTIVE, Status.PAUSED):
            raise InvalidReleaseTransition(release.status, release.status)
        release.rollout_percentage = percentage
        release.save(update_fields=['status', 'rollout_percentage', 'updated_at'])
    logger.info(f"Release {release.pk} ({release.version}) rollout at {percentage}%")
    return release


def _move(release, target):
    with transaction.atomic():
        release = _store.lock_release(release.pk)
        _transition(release, target)
        release.save(update_fields=['status', 'updated_at'])
    return release


def pause(release):
    return _move(release, Status.PAUSED)


def resume(release):
    with transaction.atomic():
        release = _store.lock_release(release.pk)
        if release.status != Status.PAUSED:
            raise InvalidReleaseTransition(release.status, Status.ROLLING)
        _transition(release, _status_for(release.rollout_percentage))
        release.save(update_fields=['status', 'updated_at'])
    return release


def disable(release):
    return _move(release, Status.DISABLED)


def mark_failed(release):
    return _move(release, Status.FAILED)


def complete(release):
    return _move(release, Status.COMPLETE)


def soft_delete(release):
    with transaction.atomic():
        release = _store.lock_release(release.pk)
        release.deleted_at = timezone.now()
        release.save(update_fields=['deleted_at', 'updated_at'])
        Channel.objects.filter(active_release=release).update(active_release=None, updated_at=timezone.now())
    logger.info(f"Release {release.pk} ({release.version}) deleted")
    return release
