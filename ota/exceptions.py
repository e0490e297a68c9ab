"""
OTA Exceptions

Errors raised by the release engine. Views translate them into
``{'error': ..., 'code': ...}`` responses.
"""


class OTAError(Exception):
    code = 'ota_error'

    def __init__(self, message: str = "OTA engine error"):
        self.message = message
        super().__init__(self.message)


class ConfigurationError(OTAError):
    """
    Raised when a mutation would break a channel or release invariant.

    The mutation is rejected before anything is written.
    """

    code = 'configuration_error'


class ProtectedChannelError(ConfigurationError):
    code = 'protected_channel'

    def __init__(self, name: str):
        super().__init__(f"Channel '{name}' is protected and cannot be renamed or deleted")


class DefaultChannelDeletionError(ConfigurationError):
    code = 'default_channel'

    def __init__(self, name: str):
        super().__init__(f"Channel '{name}' is the app's default channel; promote another channel first")


class DuplicateChannelError(ConfigurationError):
    code = 'duplicate_channel'

    def __init__(self, name: str):
        super().__init__(f"Channel '{name}' already exists for this app")


class InvalidChannelName(ConfigurationError):
    code = 'invalid_channel_name'

    def __init__(self, name: str):
        super().__init__(
            f"Invalid channel name '{name}': use 1-50 lowercase letters, digits and single hyphens"
        )


class RolloutDecreaseError(ConfigurationError):
    code = 'rollout_decrease'

    def __init__(self, current: int, requested: int):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Rollout percentage cannot decrease from {current} to {requested}; "
            "pause or disable the release instead"
        )


class InvalidRolloutPercentage(ConfigurationError):
    code = 'invalid_rollout_percentage'

    def __init__(self, value):
        super().__init__(f"Rollout percentage must be an integer between 0 and 100, got {value!r}")


class InvalidReleaseTransition(ConfigurationError):
    code = 'invalid_transition'

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move a release from '{current}' to '{target}'")


class DefaultChannelConflict(OTAError):
    """
    Raised when a concurrent writer changed the app's default channel
    between our read and our conditional update.

    Safe to retry after re-reading the current default.
    """

    code = 'default_channel_conflict'
    retryable = True

    def __init__(self, message: str = "The default channel was changed concurrently; retry"):
        super().__init__(message)


class InvalidTargetingRules(OTAError, ValueError):
    code = 'invalid_targeting_rules'


class UnknownOutcome(OTAError, ValueError):
    code = 'unknown_outcome'

    def __init__(self, outcome):
        self.outcome = outcome
        super().__init__(f"Unknown outcome {outcome!r}")
