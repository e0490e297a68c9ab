from datetime import datetime, timezone as dt_timezone

from rest_framework import serializers

from .bundles import bundle_url
from .decisions import DeviceCheckIn
from .exceptions import InvalidTargetingRules
from .models import Channel, DeviceReleaseState, Release, RollbackReport
from .targeting import validate_rule_set


class DeviceTimestampField(serializers.DateTimeField):
    """Accepts epoch milliseconds (as the SDK sends) or an ISO 8601 string."""

    def to_internal_value(self, value):
        if isinstance(value, str) and value.isdigit():
            value = int(value)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            try:
                return datetime.fromtimestamp(value / 1000.0, tz=dt_timezone.utc)
            except (OverflowError, OSError, ValueError):
                self.fail('invalid', format='epoch milliseconds')
        return super().to_internal_value(value)


class TargetingRulesField(serializers.JSONField):
    def to_internal_value(self, data):
        data = super().to_internal_value(data)
        if data is None:
            return None
        try:
            validate_rule_set(data)
        except InvalidTargetingRules as e:
            raise serializers.ValidationError(e.message)
        return data


# ==================== DEVICE FACING ====================

class DeviceInfoSerializer(serializers.Serializer):
    osVersion = serializers.CharField(required=False, allow_blank=True, max_length=32)
    deviceModel = serializers.CharField(required=False, allow_blank=True, max_length=100)
    timezone = serializers.CharField(required=False, allow_blank=True, max_length=64)
    locale = serializers.CharField(required=False, allow_blank=True, max_length=16)


class UpdateCheckSerializer(serializers.Serializer):
    """
    Device update check request.

    Attributes may be sent flat (``osVersion``, ``locale``) or nested in
    ``deviceInfo``; flat values win. ``deviceModel`` and ``timezone`` from
    ``deviceInfo`` become custom attributes so rules can target them.
    """
    appId = serializers.UUIDField()
    deviceId = serializers.CharField(max_length=128)
    platform = serializers.CharField(required=False, allow_blank=True, max_length=16)
    appVersion = serializers.CharField(required=False, allow_blank=True, max_length=32)
    currentVersion = serializers.CharField(required=False, allow_blank=True, max_length=32)
    currentBundleVersion = serializers.CharField(required=False, allow_blank=True, max_length=32)
    osVersion = serializers.CharField(required=False, allow_blank=True, max_length=32)
    locale = serializers.CharField(required=False, allow_blank=True, max_length=16)
    channel = serializers.CharField(required=False, allow_blank=True, allow_null=True, max_length=50)
    custom = serializers.DictField(required=False, default=dict)
    deviceInfo = DeviceInfoSerializer(required=False)

    def to_check_in(self):
        data = self.validated_data
        info = data.get('deviceInfo') or {}
        custom = {}
        for key in ('deviceModel', 'timezone'):
            if info.get(key):
                custom[key] = info[key]
        custom.update(data.get('custom') or {})

        return DeviceCheckIn(
            device_id=data['deviceId'],
            app_id=data['appId'],
            current_version=data.get('currentVersion') or data.get('currentBundleVersion') or '',
            platform=(data.get('platform') or '').lower(),
            os_version=data.get('osVersion') or info.get('osVersion') or '',
            app_version=data.get('appVersion') or '',
            locale=data.get('locale') or info.get('locale') or '',
            channel=data.get('channel') or None,
            custom=custom,
        )


class DecisionReleaseSerializer(serializers.ModelSerializer):
    releaseId = serializers.UUIDField(source='id')
    bundleUrl = serializers.SerializerMethodField()
    bundleHash = serializers.CharField(source='bundle_hash')
    bundleSize = serializers.IntegerField(source='bundle_size')
    releaseNotes = serializers.CharField(source='release_notes')
    channel = serializers.CharField(source='channel.name')

    class Meta:
        model = Release
        fields = ['releaseId', 'version', 'bundleUrl', 'bundleHash', 'bundleSize', 'releaseNotes', 'channel']

    def get_bundleUrl(self, obj):
        return bundle_url(obj)


class OutcomeSerializer(serializers.Serializer):
    """Outcome of a served release: applied, confirmed, or a rollback reason"""
    releaseId = serializers.UUIDField()
    outcome = serializers.CharField(max_length=32)
    id = serializers.UUIDField(required=False, allow_null=True)
    previousVersion = serializers.CharField(required=False, allow_blank=True, allow_null=True, max_length=64)
    failedEvents = serializers.ListField(child=serializers.CharField(), required=False, allow_null=True)
    failedEndpoints = serializers.ListField(child=serializers.DictField(), required=False, allow_null=True)
    timestamp = DeviceTimestampField(required=False, allow_null=True)


class RollbackReportRequestSerializer(serializers.Serializer):
    """SDK rollback report: ``POST devices/<device_id>/rollback-report``"""
    releaseId = serializers.UUIDField()
    reason = serializers.ChoiceField(choices=RollbackReport.Reason.choices)
    id = serializers.UUIDField(required=False, allow_null=True)
    previousVersion = serializers.CharField(required=False, allow_blank=True, allow_null=True, max_length=64)
    failedEvents = serializers.ListField(child=serializers.CharField(), required=False, allow_null=True)
    failedEndpoints = serializers.ListField(child=serializers.DictField(), required=False, allow_null=True)
    timestamp = DeviceTimestampField(required=False, allow_null=True)


class RollbackReportSerializer(serializers.ModelSerializer):
    deviceId = serializers.CharField(source='device_id')
    releaseId = serializers.UUIDField(source='release_id')
    previousVersion = serializers.CharField(source='previous_version')
    failedEvents = serializers.JSONField(source='failed_events')
    failedEndpoints = serializers.JSONField(source='failed_endpoints')
    createdAt = serializers.DateTimeField(source='created_at')

    class Meta:
        model = RollbackReport
        fields = [
            'id',
            'deviceId',
            'releaseId',
            'reason',
            'failedEvents',
            'failedEndpoints',
            'previousVersion',
            'timestamp',
            'createdAt',
        ]
        read_only_fields = fields


class RollbackReportQuerySerializer(serializers.Serializer):
    startTime = DeviceTimestampField(required=False)
    endTime = DeviceTimestampField(required=False)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=100, default=100)


# ==================== ADMIN ====================

class ChannelSerializer(serializers.ModelSerializer):
    active_release_id = serializers.UUIDField(read_only=True)
    is_protected = serializers.BooleanField(read_only=True)
    targeting_rules = TargetingRulesField(required=False, allow_null=True)

    class Meta:
        model = Channel
        fields = [
            'id',
            'app',
            'name',
            'display_name',
            'description',
            'is_default',
            'is_protected',
            'targeting_rules',
            'active_release_id',
            'created_at',
            'updated_at',
        ]
        read_only_fields = ['id', 'app', 'is_default', 'created_at', 'updated_at']


class ChannelCreateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=50)
    display_name = serializers.CharField(required=False, allow_blank=True, max_length=100, default='')
    description = serializers.CharField(required=False, allow_blank=True, default='')
    targeting_rules = TargetingRulesField(required=False, allow_null=True, default=None)


class ChannelUpdateSerializer(serializers.Serializer):
    """Partial channel update; every key is optional"""
    name = serializers.CharField(required=False, max_length=50)
    display_name = serializers.CharField(required=False, allow_blank=True, max_length=100)
    description = serializers.CharField(required=False, allow_blank=True)
    targeting_rules = TargetingRulesField(required=False, allow_null=True)
    is_default = serializers.BooleanField(required=False)
    expected_default_id = serializers.UUIDField(required=False, allow_null=True)


class ReleaseSerializer(serializers.ModelSerializer):
    channel_name = serializers.CharField(source='channel.name', read_only=True)
    targeting_rules = TargetingRulesField(required=False, allow_null=True)

    class Meta:
        model = Release
        fields = [
            'id',
            'app',
            'channel',
            'channel_name',
            'version',
            'status',
            'rollout_percentage',
            'bundle_ref',
            'bundle_hash',
            'bundle_size',
            'min_os_version',
            'min_app_version',
            'max_app_version',
            'targeting_rules',
            'release_notes',
            'rollback_count',
            'created_at',
            'updated_at',
        ]
        read_only_fields = ['id', 'app', 'status', 'rollout_percentage', 'rollback_count', 'created_at', 'updated_at']


class ReleaseCreateSerializer(serializers.Serializer):
    channel = serializers.CharField(max_length=50, help_text="Channel name")
    version = serializers.CharField(max_length=64)
    bundle_ref = serializers.CharField(max_length=512)
    bundle_hash = serializers.CharField(required=False, allow_blank=True, default='', max_length=128)
    bundle_size = serializers.IntegerField(required=False, min_value=0, default=0)
    min_os_version = serializers.CharField(required=False, allow_blank=True, allow_null=True, max_length=32)
    min_app_version = serializers.CharField(required=False, allow_blank=True, allow_null=True, max_length=32)
    max_app_version = serializers.CharField(required=False, allow_blank=True, allow_null=True, max_length=32)
    targeting_rules = TargetingRulesField(required=False, allow_null=True, default=None)
    release_notes = serializers.CharField(required=False, allow_blank=True, default='')
    rollout_percentage = serializers.IntegerField(required=False, min_value=0, max_value=100, allow_null=True)


class RolloutSerializer(serializers.Serializer):
    rollout_percentage = serializers.IntegerField(min_value=0, max_value=100)


class DeviceReleaseStateSerializer(serializers.ModelSerializer):
    release_version = serializers.CharField(source='release.version', read_only=True)

    class Meta:
        model = DeviceReleaseState
        fields = [
            'device_id',
            'release',
            'release_version',
            'state',
            'failure_count',
            'served_at',
            'pending_since',
            'confirmed_at',
            'rolled_back_at',
            'rollback_reason',
            'cleared_at',
            'cleared_by',
        ]
        read_only_fields = fields


class ClearRollbackSerializer(serializers.Serializer):
    device_id = serializers.CharField(max_length=128)
    release_id = serializers.UUIDField()
