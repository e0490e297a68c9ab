import uuid

from django.db import models
from django.utils import timezone


class AppQuerySet(models.QuerySet):
    def live(self):
        return self.filter(deleted_at__isnull=True)


class App(models.Model):
    """A mobile app whose installs receive OTA bundles."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100)
    slug = models.SlugField(max_length=64, unique=True)
    # Per-app default pointer. Default swaps are a compare-and-swap on this
    # column (see ota.store.ReleaseStore.set_channel_default).
    default_channel = models.ForeignKey(
        'ota.Channel', on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    created_at = models.DateTimeField(default=timezone.now)
    deleted_at = models.DateTimeField(null=True, blank=True, help_text="Soft delete marker")

    objects = AppQuerySet.as_manager()

    class Meta:
        ordering = ['name']

    def __str__(self):
        return self.name


class Device(models.Model):
    """Last known snapshot of an install, refreshed on every update check."""

    app = models.ForeignKey(App, related_name='devices', on_delete=models.CASCADE)
    device_id = models.CharField(max_length=128, help_text="Stable opaque per-install identifier")
    platform = models.CharField(max_length=16, blank=True, default='')
    os_version = models.CharField(max_length=32, blank=True, default='')
    app_version = models.CharField(max_length=32, blank=True, default='')
    current_version = models.CharField(max_length=32, blank=True, default='', help_text="Bundle version running on the device")
    locale = models.CharField(max_length=16, blank=True, default='')
    custom_attributes = models.JSONField(default=dict, blank=True)
    first_seen_at = models.DateTimeField(default=timezone.now)
    last_seen_at = models.DateTimeField(default=timezone.now)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['app', 'device_id'], name='core_device_unique_per_app'),
        ]
        indexes = [
            models.Index(fields=['app', '-last_seen_at'], name='core_device_app_seen_idx'),
        ]

    def __str__(self):
        return f"{self.app.slug}:{self.device_id}"

    @classmethod
    def record_check_in(cls, check_in):
        """Upsert the device row from an update check."""
        now = timezone.now()
        device, created = cls.objects.update_or_create(
            app_id=check_in.app_id,
            device_id=check_in.device_id,
            defaults={
                'platform': check_in.platform or '',
                'os_version': check_in.os_version or '',
                'app_version': check_in.app_version or '',
                'current_version': check_in.current_version or '',
                'locale': check_in.locale or '',
                'custom_attributes': dict(check_in.custom or {}),
                'last_seen_at': now,
            },
        )
        return device, created
