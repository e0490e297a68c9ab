"""
Update decisions: what should this device run now?

``UpdateDecisionService.decide`` is the entry point used by the check-in
endpoint. It never raises on device input; bad or missing attributes only
make releases ineligible.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from . import bucketing, targeting, versioning
from .channel_resolver import ChannelResolver
from .exceptions import InvalidTargetingRules
from .rollback import RollbackSafetyTracker
from .store import ReleaseStore

logger = logging.getLogger(__name__)


class DecisionReason(str, Enum):
    UPDATE_AVAILABLE = 'update_available'
    NO_CHANNEL = 'no_channel'
    NO_CANDIDATES = 'no_candidates'
    UP_TO_DATE = 'up_to_date'
    OS_VERSION_UNSUPPORTED = 'os_version_unsupported'
    APP_VERSION_UNSUPPORTED = 'app_version_unsupported'
    TARGETING_MISMATCH = 'targeting_mismatch'
    NOT_IN_ROLLOUT = 'not_in_rollout'
    ROLLED_BACK = 'rolled_back'


@dataclass
class DeviceCheckIn:
    device_id: str
    app_id: Any
    current_version: str = ''
    platform: str = ''
    os_version: str = ''
    app_version: str = ''
    locale: str = ''
    channel: Optional[str] = None
    custom: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RolloutDecision:
    update_available: bool
    reason: DecisionReason
    release: Any = None
    channel: Any = None


def candidate_sort_key(release):
    return (versioning.version_sort_key(release.version), release.created_at)


def _rollout_percentage(release):
    percentage = release.rollout_percentage
    if isinstance(percentage, bool) or not isinstance(percentage, int) or not 0 <= percentage <= 100:
        raise ValueError(f"rollout percentage {percentage!r} out of range")
    return percentage


class UpdateDecisionService:

    def __init__(self, store=None, tracker=None, resolver=None):
        self.store = store or ReleaseStore()
        self.tracker = tracker or RollbackSafetyTracker(self.store)
        self.resolver = resolver or ChannelResolver(self.store)

    def decide(self, check_in):
        channel = self.resolver.resolve(check_in.app_id, check_in.channel)
        if channel is None:
            logger.info(f"No channel for device {check_in.device_id} (app {check_in.app_id})")
            return RolloutDecision(False, DecisionReason.NO_CHANNEL)

        candidates = sorted(
            self.store.list_candidate_releases(check_in.app_id, channel.pk),
            key=candidate_sort_key,
            reverse=True,
        )
        if not candidates:
            return RolloutDecision(False, DecisionReason.NO_CANDIDATES, channel=channel)

        self.tracker.sweep_expired(check_in.device_id)
        blocked = self.tracker.blocked_release_ids(check_in.device_id)
        attributes = targeting.attributes_from_check_in(check_in)
        channel_matches = self._channel_matches(channel, attributes)

        first_skip = None
        saw_newer = False
        for release in candidates:
            if not versioning.gt(release.version, check_in.current_version):
                # Sorted newest first, nothing after this is newer either
                break
            saw_newer = True
            try:
                reason = self._skip_reason(release, check_in, attributes, channel_matches, blocked)
            except (InvalidTargetingRules, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping malformed release {release.pk} ({release.version}): {e}")
                continue

            if reason is None:
                self.tracker.mark_served(check_in.device_id, release)
                logger.info(
                    f"Update available - Device: {check_in.device_id}, Channel: {channel.name}, "
                    f"Release: {release.version} ({release.pk})"
                )
                return RolloutDecision(True, DecisionReason.UPDATE_AVAILABLE, release=release, channel=channel)

            logger.debug(f"Release {release.version} skipped for {check_in.device_id}: {reason.value}")
            if first_skip is None:
                first_skip = reason

        if first_skip is not None:
            reason = first_skip
        elif saw_newer:
            reason = DecisionReason.NO_CANDIDATES
        else:
            reason = DecisionReason.UP_TO_DATE
        logger.info(f"No update - Device: {check_in.device_id}, Channel: {channel.name}, Reason: {reason.value}")
        return RolloutDecision(False, reason, channel=channel)

    def _channel_matches(self, channel, attributes):
        try:
            return targeting.evaluate(channel.targeting_rules, attributes)
        except InvalidTargetingRules as e:
            logger.warning(f"Channel {channel.pk} has broken targeting rules, matching nothing: {e}")
            return False

    def _skip_reason(self, release, check_in, attributes, channel_matches, blocked):
        """First filter the release fails for this device, or None if it is eligible."""
        if release.min_os_version and not versioning.gte(check_in.os_version, release.min_os_version):
            return DecisionReason.OS_VERSION_UNSUPPORTED
        if not versioning.in_range(check_in.app_version, release.min_app_version, release.max_app_version):
            return DecisionReason.APP_VERSION_UNSUPPORTED
        if not channel_matches:
            return DecisionReason.TARGETING_MISMATCH
        if not targeting.evaluate(release.targeting_rules, attributes):
            return DecisionReason.TARGETING_MISMATCH
        if not bucketing.is_included(check_in.device_id, release.pk, _rollout_percentage(release)):
            return DecisionReason.NOT_IN_ROLLOUT
        if release.pk in blocked:
            return DecisionReason.ROLLED_BACK
        return None
