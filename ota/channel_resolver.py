import logging
import re

from django.db import IntegrityError, transaction

from core.models import App
from .exceptions import (
    ConfigurationError,
    DefaultChannelDeletionError,
    DuplicateChannelError,
    InvalidChannelName,
    ProtectedChannelError,
)
from .models import (
    CHANNEL_NAME_MAX_LENGTH,
    CHANNEL_NAME_PATTERN,
    DEFAULT_CHANNEL_NAME,
    PROTECTED_CHANNEL_NAMES,
    Channel,
)
from .store import ReleaseStore
from .targeting import validate_rule_set

logger = logging.getLogger(__name__)

# Sentinel for "read the current default under lock" in set_default
UNSET = object()

_CHANNEL_NAME_RE = re.compile(CHANNEL_NAME_PATTERN)

DEFAULT_CHANNELS = (
    ('production', 'Production', 'Live releases for all users'),
    ('staging', 'Staging', 'Pre-release testing'),
    ('development', 'Development', 'Internal builds'),
)


def normalize_channel_name(name):
    return (name or '').strip().lower()


def validate_channel_name(name):
    if not name or len(name) > CHANNEL_NAME_MAX_LENGTH or not _CHANNEL_NAME_RE.match(name):
        raise InvalidChannelName(name)
    return name


class ChannelResolver:
    """
    Picks the channel a device is served from and guards the channel
    invariants: one default per app, protected names never renamed or
    deleted.
    """

    def __init__(self, store=None):
        self.store = store or ReleaseStore()

    def resolve(self, app_id, name=None):
        """
        The named channel if the app has it, else the app's default.

        Returns None when neither exists; that is a normal "no update"
        outcome for the caller, not an error.
        """
        requested = normalize_channel_name(name)
        if requested:
            channel = self.store.get_channel(app_id, requested)
            if channel is not None:
                return channel
            logger.debug(f"Channel '{requested}' not found for app {app_id}, using default")
        return self.store.get_default_channel(app_id)

    @transaction.atomic
    def provision_default_channels(self, app):
        created = []
        for name, display_name, description in DEFAULT_CHANNELS:
            channel, was_created = Channel.objects.get_or_create(
                app=app,
                name=name,
                defaults={
                    'display_name': display_name,
                    'description': description,
                    'is_default': name == DEFAULT_CHANNEL_NAME and not Channel.objects.filter(app=app, is_default=True).exists(),
                },
            )
            if was_created:
                created.append(channel)

        if app.default_channel_id is None:
            default = Channel.objects.get(app=app, is_default=True)
            App.objects.filter(pk=app.pk).update(default_channel=default)
            app.default_channel = default

        logger.info(f"Provisioned {len(created)} default channel(s) for app {app.slug}")
        return created

    def create_channel(self, app, name, display_name='', description='', targeting_rules=None):
        name = validate_channel_name(normalize_channel_name(name))
        if targeting_rules is not None:
            validate_rule_set(targeting_rules)
        if Channel.objects.filter(app=app, name=name).exists():
            raise DuplicateChannelError(name)
        try:
            with transaction.atomic():
                channel = Channel.objects.create(
                    app=app,
                    name=name,
                    display_name=display_name or name.replace('-', ' ').title(),
                    description=description,
                    targeting_rules=targeting_rules,
                )
        except IntegrityError:
            raise DuplicateChannelError(name)
        logger.info(f"Channel created - App: {app.slug}, Channel: {name}")
        return channel

    def set_default(self, app_id, channel_id, expected_default_id=UNSET):
        """
        Make ``channel_id`` the app's default channel.

        Pass ``expected_default_id`` to make the swap conditional on what the
        caller last saw; a concurrent change then raises
        DefaultChannelConflict instead of being overwritten.
        """
        with transaction.atomic():
            app = self.store.lock_app(app_id)
            channel = Channel.objects.get(pk=channel_id, app_id=app_id)
            if expected_default_id is UNSET:
                expected_default_id = app.default_channel_id
            if app.default_channel_id == channel.pk and expected_default_id == channel.pk:
                return channel
            self.store.set_channel_default(app_id, channel.pk, expected_default_id)

        channel.is_default = True
        logger.info(f"Default channel for app {app_id} is now '{channel.name}'")
        return channel

    def rename(self, channel, new_name):
        if channel.is_protected:
            raise ProtectedChannelError(channel.name)
        new_name = validate_channel_name(normalize_channel_name(new_name))
        if new_name == channel.name:
            return channel
        if new_name in PROTECTED_CHANNEL_NAMES or Channel.objects.filter(app_id=channel.app_id, name=new_name).exists():
            raise DuplicateChannelError(new_name)

        old_name = channel.name
        channel.name = new_name
        try:
            with transaction.atomic():
                channel.save(update_fields=['name', 'updated_at'])
        except IntegrityError:
            channel.name = old_name
            raise DuplicateChannelError(new_name)
        logger.info(f"Channel renamed - App: {channel.app_id}, {old_name} -> {new_name}")
        return channel

    def delete(self, channel):
        if channel.is_protected:
            raise ProtectedChannelError(channel.name)
        with transaction.atomic():
            app = self.store.lock_app(channel.app_id)
            if channel.is_default or app.default_channel_id == channel.pk:
                raise DefaultChannelDeletionError(channel.name)
            if channel.releases.exists():
                raise ConfigurationError(f"Channel '{channel.name}' still has releases; move or delete them first")
            name = channel.name
            channel.delete()
        logger.info(f"Channel deleted - App: {channel.app_id}, Channel: {name}")

    def update_targeting(self, channel, rules):
        if rules is not None:
            validate_rule_set(rules)
        channel.targeting_rules = rules
        channel.save(update_fields=['targeting_rules', 'updated_at'])
        return channel
