import logging

from django.conf import settings
from django.db import transaction
from django.db.models import Count
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django_ratelimit.decorators import ratelimit
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.response import Response

from core.models import App, Device
from . import bucketing
from . import releases as release_lifecycle
from .channel_resolver import UNSET, ChannelResolver
from .decisions import DecisionReason, UpdateDecisionService
from .exceptions import (
    ConfigurationError,
    DefaultChannelConflict,
    InvalidTargetingRules,
    OTAError,
    ProtectedChannelError,
    UnknownOutcome,
)
from .models import Channel, DeviceReleaseState, Release, RollbackReport
from .rollback import RollbackSafetyTracker
from .serializers import (
    ChannelCreateSerializer,
    ChannelSerializer,
    ChannelUpdateSerializer,
    ClearRollbackSerializer,
    DecisionReleaseSerializer,
    DeviceReleaseStateSerializer,
    OutcomeSerializer,
    ReleaseCreateSerializer,
    ReleaseSerializer,
    RollbackReportQuerySerializer,
    RollbackReportRequestSerializer,
    RollbackReportSerializer,
    RolloutSerializer,
    UpdateCheckSerializer,
)

logger = logging.getLogger(__name__)

APP_STORE_MESSAGE = 'Please update to the latest app version to receive OTA updates.'


def _check_rate(group, request):
    return getattr(settings, 'OTA_CHECK_RATE_LIMIT', None)


def _error_response(exc):
    """Map an engine error to the ``{'error', 'code'}`` response shape"""
    if isinstance(exc, ProtectedChannelError):
        http_status = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, DefaultChannelConflict):
        http_status = status.HTTP_409_CONFLICT
    elif isinstance(exc, (ConfigurationError, InvalidTargetingRules, UnknownOutcome)):
        http_status = status.HTTP_400_BAD_REQUEST
    else:
        http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    body = {'error': exc.message, 'code': exc.code}
    if getattr(exc, 'retryable', False):
        body['retryable'] = True
    return Response(body, status=http_status)


def _outcome_payload(result):
    return {
        'state': result.state,
        'failureCount': result.failure_count,
        'rolledBack': result.rolled_back,
        'duplicate': result.duplicate,
        'reportId': str(result.report_id) if result.report_id else None,
    }


# ==================== DEVICE ENDPOINTS ====================

@api_view(['POST'])
@permission_classes([AllowAny])
@ratelimit(key='ip', rate=_check_rate, method='POST', block=True)
def update_check(request):
    """
    Update check endpoint, called by the SDK on app start/resume.

    Request body: {
        "appId": "2b0d6c9e-...",
        "deviceId": "install-abc",
        "platform": "ios",
        "appVersion": "2.3.0",
        "currentVersion": "1.4.0",
        "osVersion": "17.1",          # or deviceInfo.osVersion
        "locale": "en-US",
        "channel": "beta",            # optional override
        "custom": {"tier": "pro"}     # optional
    }

    Response: {
        "updateAvailable": true,
        "reason": "update_available",
        "release": {
            "releaseId": "...",
            "version": "1.5.0",
            "bundleUrl": "https://...",
            "bundleHash": "sha256...",
            "bundleSize": 1048576,
            "releaseNotes": "...",
            "channel": "production"
        }
    }
    """
    serializer = UpdateCheckSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    check_in = serializer.to_check_in()

    try:
        app = App.objects.live().filter(pk=check_in.app_id).first()
        if app is None:
            logger.warning(f"Update check for unknown app {check_in.app_id} from device {check_in.device_id}")
            return Response({
                'updateAvailable': False,
                'reason': DecisionReason.NO_CHANNEL.value,
            })

        Device.record_check_in(check_in)
        decision = UpdateDecisionService().decide(check_in)

        response_data = {
            'updateAvailable': decision.update_available,
            'reason': decision.reason.value,
        }
        if decision.update_available:
            response_data['release'] = DecisionReleaseSerializer(decision.release).data
        elif decision.reason is DecisionReason.APP_VERSION_UNSUPPORTED:
            response_data['requiresAppStoreUpdate'] = True
            response_data['appStoreMessage'] = APP_STORE_MESSAGE
        return Response(response_data, status=status.HTTP_200_OK)

    except Exception as e:
        logger.exception(f"Update Check Error - Device: {check_in.device_id}, Error: {str(e)}")
        return Response({
            'error': str(e)
        }, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


@api_view(['POST'])
@permission_classes([AllowAny])
def device_outcome(request, device_id):
    """
    Device reports what happened to a served release.

    outcome: applied | confirmed | crash_detected | health_check_failed |
             manual | hash_mismatch

    Send the same ``id`` when retrying a failure report so it is only
    counted once.
    """
    serializer = OutcomeSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data

    try:
        result = RollbackSafetyTracker().report_outcome(
            device_id,
            data['releaseId'],
            data['outcome'],
            report_id=data.get('id'),
            previous_version=data.get('previousVersion'),
            failed_events=data.get('failedEvents'),
            failed_endpoints=data.get('failedEndpoints'),
            timestamp=data.get('timestamp'),
        )
    except Release.DoesNotExist:
        return Response({'error': 'Release not found'}, status=status.HTTP_404_NOT_FOUND)
    except UnknownOutcome as e:
        return _error_response(e)

    created = result.report_id is not None and not result.duplicate
    return Response(
        _outcome_payload(result),
        status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
    )


@api_view(['POST'])
@permission_classes([AllowAny])
def rollback_report(request, device_id):
    """
    SDK rollback report.

    Request body: {
        "releaseId": "...",
        "reason": "crash_detected",
        "id": "...",                       # optional, makes retries idempotent
        "failedEvents": ["onboarding"],    # optional
        "failedEndpoints": [{"method": "GET", "url": "/me", "status": 500}],
        "previousVersion": "1.4.0",        # optional
        "timestamp": 1767225600000         # epoch ms, optional
    }
    """
    serializer = RollbackReportRequestSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data

    try:
        result = RollbackSafetyTracker().report_outcome(
            device_id,
            data['releaseId'],
            data['reason'],
            report_id=data.get('id'),
            previous_version=data.get('previousVersion'),
            failed_events=data.get('failedEvents'),
            failed_endpoints=data.get('failedEndpoints'),
            timestamp=data.get('timestamp'),
        )
    except Release.DoesNotExist:
        return Response({'error': 'Invalid releaseId'}, status=status.HTTP_400_BAD_REQUEST)

    payload = {'success': True, **_outcome_payload(result)}
    return Response(
        payload,
        status=status.HTTP_200_OK if result.duplicate else status.HTTP_201_CREATED,
    )


@api_view(['GET'])
@permission_classes([IsAdminUser])
def device_release_states(request, device_id):
    """Where a device stands with every release it was served (admin only)"""
    states = DeviceReleaseState.objects.filter(device_id=device_id).select_related('release')
    return Response(DeviceReleaseStateSerializer(states, many=True).data)


# ==================== CHANNEL MANAGEMENT ====================

@api_view(['GET', 'POST'])
@permission_classes([IsAdminUser])
def channels(request, app_id):
    """List or create channels of an app (admin only)"""
    app = get_object_or_404(App.objects.live(), pk=app_id)

    if request.method == 'GET':
        return Response(ChannelSerializer(app.channels.all(), many=True).data)

    serializer = ChannelCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    try:
        channel = ChannelResolver().create_channel(app, **serializer.validated_data)
    except OTAError as e:
        return _error_response(e)
    logger.info(f"Channel Created - App: {app.slug}, Channel: {channel.name}, By: {request.user.username}")
    return Response(ChannelSerializer(channel).data, status=status.HTTP_201_CREATED)


@api_view(['GET', 'PATCH', 'DELETE'])
@permission_classes([IsAdminUser])
def channel_detail(request, app_id, name):
    """
    Read, update or delete one channel (admin only).

    PATCH accepts any of: name, display_name, description,
    targeting_rules, is_default (true promotes the channel to default).
    Pass expected_default_id with is_default to fail with 409 instead of
    overwriting a concurrent default change.
    """
    app = get_object_or_404(App.objects.live(), pk=app_id)
    channel = get_object_or_404(Channel, app=app, name=name.lower())
    resolver = ChannelResolver()

    if request.method == 'GET':
        return Response(ChannelSerializer(channel).data)

    if request.method == 'DELETE':
        try:
            resolver.delete(channel)
        except OTAError as e:
            return _error_response(e)
        logger.info(f"Channel Deleted - App: {app.slug}, Channel: {name}, By: {request.user.username}")
        return Response({'message': f'Channel {name} deleted successfully'}, status=status.HTTP_200_OK)

    serializer = ChannelUpdateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data

    if data.get('is_default') is False and channel.is_default:
        return Response(
            {'error': 'Promote another channel to default instead', 'code': 'default_channel'},
            status=status.HTTP_400_BAD_REQUEST
        )

    try:
        with transaction.atomic():
            if 'name' in data:
                resolver.rename(channel, data['name'])
            changed = [field for field in ('display_name', 'description') if field in data]
            if changed:
                for field in changed:
                    setattr(channel, field, data[field])
                channel.save(update_fields=changed + ['updated_at'])
            if 'targeting_rules' in data:
                resolver.update_targeting(channel, data['targeting_rules'])
            if data.get('is_default'):
                expected = data['expected_default_id'] if 'expected_default_id' in data else UNSET
                resolver.set_default(app.pk, channel.pk, expected_default_id=expected)
    except OTAError as e:
        return _error_response(e)

    channel.refresh_from_db()
    logger.info(f"Channel Updated - App: {app.slug}, Channel: {channel.name}, By: {request.user.username}")
    return Response(ChannelSerializer(channel).data)


# ==================== RELEASE MANAGEMENT ====================

@api_view(['GET', 'POST'])
@permission_classes([IsAdminUser])
def app_releases(request, app_id):
    """
    List (GET, optional ?channel=&status=) or create (POST) releases of an
    app (admin only). A POST with rollout_percentage starts the rollout
    immediately.
    """
    app = get_object_or_404(App.objects.live(), pk=app_id)

    if request.method == 'GET':
        queryset = Release.objects.live().filter(app=app).select_related('channel')
        channel_name = request.query_params.get('channel')
        if channel_name:
            queryset = queryset.filter(channel__name=channel_name.lower())
        release_status = request.query_params.get('status')
        if release_status:
            queryset = queryset.filter(status=release_status)
        return Response(ReleaseSerializer(queryset, many=True).data)

    serializer = ReleaseCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = dict(serializer.validated_data)
    channel = get_object_or_404(Channel, app=app, name=data.pop('channel').lower())
    percentage = data.pop('rollout_percentage', None)

    try:
        with transaction.atomic():
            release = release_lifecycle.create_release(app, channel, **data)
            if percentage is not None:
                release = release_lifecycle.start_rollout(release, percentage)
    except OTAError as e:
        return _error_response(e)

    logger.info(
        f"Release Created - App: {app.slug}, Channel: {channel.name}, Version: {release.version}, "
        f"Status: {release.status}, By: {request.user.username}"
    )
    return Response(ReleaseSerializer(release).data, status=status.HTTP_201_CREATED)


@api_view(['GET', 'DELETE'])
@permission_classes([IsAdminUser])
def release_detail(request, release_id):
    release = get_object_or_404(Release.objects.live(), pk=release_id)
    if request.method == 'GET':
        return Response(ReleaseSerializer(release).data)

    release_lifecycle.soft_delete(release)
    logger.info(f"Release Deleted - {release.version} ({release.pk}), By: {request.user.username}")
    return Response({'message': f'Release {release.version} deleted successfully'}, status=status.HTTP_200_OK)


@api_view(['POST'])
@permission_classes([IsAdminUser])
def release_rollout(request, release_id):
    """
    Set the rollout percentage (admin only).

    Starts a draft or paused release; on a live release the percentage may
    only grow.
    """
    release = get_object_or_404(Release.objects.live(), pk=release_id)
    serializer = RolloutSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    percentage = serializer.validated_data['rollout_percentage']

    try:
        if release.status in (Release.Status.DRAFT, Release.Status.PAUSED):
            release = release_lifecycle.start_rollout(release, percentage)
        else:
            release = release_lifecycle.set_rollout_percentage(release, percentage)
    except OTAError as e:
        return _error_response(e)

    logger.info(f"Rollout Updated - Release: {release.version}, {percentage}%, By: {request.user.username}")
    return Response(ReleaseSerializer(release).data)


_RELEASE_ACTIONS = {
    'pause': release_lifecycle.pause,
    'resume': release_lifecycle.resume,
    'disable': release_lifecycle.disable,
    'fail': release_lifecycle.mark_failed,
    'complete': release_lifecycle.complete,
}


@api_view(['POST'])
@permission_classes([IsAdminUser])
def release_action(request, release_id, action):
    """pause / resume / disable / fail / complete a release (admin only)"""
    handler = _RELEASE_ACTIONS.get(action)
    if handler is None:
        return Response({'error': f'Unknown action: {action}'}, status=status.HTTP_404_NOT_FOUND)
    release = get_object_or_404(Release.objects.live(), pk=release_id)

    try:
        release = handler(release)
    except OTAError as e:
        return _error_response(e)

    logger.info(f"Release {action} - {release.version} ({release.pk}), By: {request.user.username}")
    return Response(ReleaseSerializer(release).data)


@api_view(['GET'])
@permission_classes([IsAdminUser])
def release_rollback_reports(request, release_id):
    """
    Rollback reports of a release (admin only).

    Query: startTime, endTime (epoch ms or ISO 8601), limit (1-100).
    """
    release = get_object_or_404(Release, pk=release_id)
    query = RollbackReportQuerySerializer(data=request.query_params)
    if not query.is_valid():
        return Response(query.errors, status=status.HTTP_400_BAD_REQUEST)
    params = query.validated_data

    reports = RollbackReport.objects.filter(release=release)
    if params.get('startTime'):
        reports = reports.filter(timestamp__gte=params['startTime'])
    if params.get('endTime'):
        reports = reports.filter(timestamp__lte=params['endTime'])

    by_reason = {
        row['reason']: row['count']
        for row in reports.order_by().values('reason').annotate(count=Count('id'))
    }
    recent = reports.order_by('-timestamp')[:params['limit']]

    return Response({
        'summary': {
            'total': reports.count(),
            'byReason': by_reason,
            'rolledBackDevices': DeviceReleaseState.objects.filter(
                release=release, state=DeviceReleaseState.State.ROLLED_BACK
            ).count(),
        },
        'reports': RollbackReportSerializer(recent, many=True).data,
    })


@api_view(['POST'])
@permission_classes([IsAdminUser])
def clear_rollback(request):
    """Lift a device's rollback block on a release (admin only)"""
    serializer = ClearRollbackSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data

    state = RollbackSafetyTracker().clear_rollback(
        data['device_id'], data['release_id'], cleared_by=request.user.username
    )
    if state is None:
        return Response(
            {'error': 'Device is not rolled back on this release'},
            status=status.HTTP_404_NOT_FOUND
        )
    return Response(DeviceReleaseStateSerializer(state).data)


@api_view(['GET'])
@permission_classes([AllowAny])
def ota_health(request):
    """Health check endpoint for OTA service"""
    try:
        return Response({
            'status': 'ok',
            'service': 'OTA',
            'apps': App.objects.live().count(),
            'servable_releases': Release.objects.servable().count(),
            'cloudfront_configured': bool(getattr(settings, 'OTA_CLOUDFRONT_DOMAIN', '')),
            'presigned_urls': bool(getattr(settings, 'OTA_USE_PRESIGNED_URL', False)),
            'bucketing_algorithm': bucketing.ALGORITHM_VERSION,
            'timestamp': timezone.now().isoformat()
        })
    except Exception as e:
        logger.error(f"OTA Health Check Error: {str(e)}")
        return Response({
            'status': 'error',
            'service': 'OTA',
            'error': str(e)
        }, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
