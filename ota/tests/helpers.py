import uuid

from core.models import App
from ota import releases
from ota.channel_resolver import ChannelResolver
from ota.decisions import DeviceCheckIn
from ota.models import Channel


def make_app(slug='demo', provision=True):
    app = App.objects.create(name=slug.title(), slug=slug)
    if provision:
        ChannelResolver().provision_default_channels(app)
        app.refresh_from_db()
    return app


def channel(app, name='production'):
    return Channel.objects.get(app=app, name=name)


def make_release(app, version, percentage=100, channel_name='production', **kwargs):
    """Create a release and start its rollout; percentage=None leaves it in draft."""
    kwargs.setdefault('bundle_ref', f"bundles/{app.slug}/{version}.zip")
    release = releases.create_release(app, channel(app, channel_name), version, **kwargs)
    if percentage is not None:
        release = releases.start_rollout(release, percentage)
    return release


def check_in(app, device_id='device-1', current_version='1.0.0', **kwargs):
    values = {
        'platform': 'ios',
        'os_version': '17.0',
        'app_version': '2.0.0',
        'locale': 'en-US',
    }
    values.update(kwargs)
    return DeviceCheckIn(device_id=device_id, app_id=app.pk, current_version=current_version, **values)


def report_id():
    return uuid.uuid4()
