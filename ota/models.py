import uuid

from django.core.validators import MaxValueValidator, MinValueValidator, RegexValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone

from core.models import App

CHANNEL_NAME_PATTERN = r'^[a-z0-9]+(-[a-z0-9]+)*$'
CHANNEL_NAME_MAX_LENGTH = 50

# Provisioned for every new app; never renamed or deleted.
PROTECTED_CHANNEL_NAMES = ('production', 'staging', 'development')
DEFAULT_CHANNEL_NAME = 'production'

channel_name_validator = RegexValidator(
    CHANNEL_NAME_PATTERN,
    message="Channel names are lowercase letters, digits and single hyphens",
)


class Channel(models.Model):
    """Named release stream of an app (production, staging, beta, ...)"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    app = models.ForeignKey(App, related_name='channels', on_delete=models.CASCADE)
    name = models.CharField(max_length=CHANNEL_NAME_MAX_LENGTH, validators=[channel_name_validator])
    display_name = models.CharField(max_length=100, blank=True, default='')
    description = models.TextField(blank=True, default='')
    is_default = models.BooleanField(default=False)
    targeting_rules = models.JSONField(null=True, blank=True, help_text="Rule set a device must match to receive releases from this channel")
    active_release = models.ForeignKey(
        'Release', on_delete=models.SET_NULL, null=True, blank=True, related_name='+',
        help_text="Release whose rollout was started most recently",
    )
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']
        constraints = [
            models.UniqueConstraint(fields=['app', 'name'], name='ota_channel_unique_name_per_app'),
            models.UniqueConstraint(
                fields=['app'], condition=Q(is_default=True), name='ota_channel_one_default_per_app'
            ),
        ]

    def __str__(self):
        return f"{self.app.slug}/{self.name}"

    @property
    def is_protected(self):
        return self.name in PROTECTED_CHANNEL_NAMES


class ReleaseQuerySet(models.QuerySet):
    def live(self):
        return self.filter(deleted_at__isnull=True)

    def servable(self):
        return self.live().filter(status__in=Release.SERVABLE_STATUSES)


class Release(models.Model):
    """A published JS bundle offered to the installs of one channel"""

    class Status(models.TextChoices):
        DRAFT = 'draft', 'Draft'
        ROLLING = 'rolling', 'Rolling Out'
        ACTIVE = 'active', 'Active'
        PAUSED = 'paused', 'Paused'
        DISABLED = 'disabled', 'Disabled'
        FAILED = 'failed', 'Failed'
        COMPLETE = 'complete', 'Complete'

    SERVABLE_STATUSES = (Status.ACTIVE, Status.ROLLING)
    # rollout_percentage may only grow while in one of these
    MONOTONIC_STATUSES = (Status.ROLLING, Status.ACTIVE, Status.PAUSED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    app = models.ForeignKey(App, related_name='releases', on_delete=models.CASCADE)
    channel = models.ForeignKey(Channel, related_name='releases', on_delete=models.PROTECT)
    version = models.CharField(max_length=64, help_text="Bundle version, e.g. 1.4.2")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.DRAFT, db_index=True)
    rollout_percentage = models.PositiveSmallIntegerField(
        default=0, validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    bundle_ref = models.CharField(max_length=512, help_text="Storage key of the bundle")
    bundle_hash = models.CharField(max_length=128, blank=True, default='', help_text="SHA256 of the bundle")
    bundle_size = models.PositiveBigIntegerField(default=0)
    min_os_version = models.CharField(max_length=32, blank=True, null=True)
    min_app_version = models.CharField(max_length=32, blank=True, null=True)
    max_app_version = models.CharField(max_length=32, blank=True, null=True)
    targeting_rules = models.JSONField(null=True, blank=True)
    release_notes = models.TextField(blank=True, default='')
    rollback_count = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True)

    objects = ReleaseQuerySet.as_manager()

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['app', 'channel', 'status'], name='ota_release_app_chan_st_idx'),
        ]

    def __str__(self):
        return f"{self.channel} {self.version} ({self.status})"


class RollbackReport(models.Model):
    """Append-only record of a device abandoning a release"""

    class Reason(models.TextChoices):
        CRASH_DETECTED = 'crash_detected', 'Crash Detected'
        HEALTH_CHECK_FAILED = 'health_check_failed', 'Health Check Failed'
        MANUAL = 'manual', 'Manual'
        HASH_MISMATCH = 'hash_mismatch', 'Hash Mismatch'

    # Client-supplied ids make retried reports idempotent
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    device_id = models.CharField(max_length=128, db_index=True)
    release = models.ForeignKey(Release, related_name='rollback_reports', on_delete=models.PROTECT)
    reason = models.CharField(max_length=32, choices=Reason.choices)
    previous_version = models.CharField(max_length=64, blank=True, null=True)
    failed_events = models.JSONField(null=True, blank=True)
    failed_endpoints = models.JSONField(null=True, blank=True, help_text="Requests that failed the health check: method, url, status")
    timestamp = models.DateTimeField(default=timezone.now, help_text="When the device observed the failure")
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['release', '-created_at'], name='ota_rbreport_release_idx'),
            models.Index(fields=['device_id', 'release'], name='ota_rbreport_device_idx'),
        ]

    def __str__(self):
        return f"{self.device_id} rolled back {self.release.version} ({self.reason})"


class DeviceReleaseState(models.Model):
    """
    Where one device stands with one release.

    served -> pending_confirmation -> confirmed | rolled_back

    A rolled_back row keeps the release from being served to the device
    again until an operator clears it.
    """

    class State(models.TextChoices):
        SERVED = 'served', 'Served'
        PENDING_CONFIRMATION = 'pending_confirmation', 'Pending Confirmation'
        CONFIRMED = 'confirmed', 'Confirmed'
        ROLLED_BACK = 'rolled_back', 'Rolled Back'

    CONFIRMATION_TIMEOUT = 'confirmation_timeout'
    ROLLBACK_CAUSES = RollbackReport.Reason.choices + [(CONFIRMATION_TIMEOUT, 'Confirmation Timeout')]

    device_id = models.CharField(max_length=128)
    release = models.ForeignKey(Release, related_name='device_states', on_delete=models.CASCADE)
    state = models.CharField(max_length=32, choices=State.choices, default=State.SERVED, db_index=True)
    failure_count = models.PositiveIntegerField(default=0)
    served_at = models.DateTimeField(default=timezone.now)
    pending_since = models.DateTimeField(null=True, blank=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)
    rolled_back_at = models.DateTimeField(null=True, blank=True)
    rollback_reason = models.CharField(max_length=32, choices=ROLLBACK_CAUSES, blank=True, null=True)
    cleared_at = models.DateTimeField(null=True, blank=True)
    cleared_by = models.CharField(max_length=150, blank=True, null=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Device Release State"
        verbose_name_plural = "Device Release States"
        constraints = [
            models.UniqueConstraint(fields=['device_id', 'release'], name='ota_device_release_state_unique'),
        ]
        indexes = [
            models.Index(fields=['device_id', 'state'], name='ota_devstate_device_state_idx'),
        ]

    def __str__(self):
        return f"{self.device_id} -> {self.release.version} ({self.state})"

    @property
    def is_rolled_back(self):
        return self.state == self.State.ROLLED_BACK
