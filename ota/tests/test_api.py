from io import StringIO

from django.contrib.auth.models import User
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase
from django.urls import reverse
from rest_framework.test import APITestCase

from core.models import App, Device
from ota.channel_resolver import ChannelResolver
from ota.models import Channel, DeviceReleaseState, Release, RollbackReport

from .helpers import channel, make_app, make_release, report_id


class UpdateCheckApiTests(APITestCase):
    def setUp(self):
        self.app = make_app()
        self.release = make_release(self.app, '1.1.0', bundle_hash='abc123', bundle_size=2048)

    def check(self, **overrides):
        payload = {
            'appId': str(self.app.pk),
            'deviceId': 'device-1',
            'platform': 'ios',
            'appVersion': '2.0.0',
            'currentVersion': '1.0.0',
            'osVersion': '17.0',
            'locale': 'en-US',
        }
        payload.update(overrides)
        return self.client.post(reverse('update_check'), payload, format='json')

    def test_update_available(self):
        resp = self.check()
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body['updateAvailable'])
        self.assertEqual(body['reason'], 'update_available')
        self.assertEqual(body['release']['releaseId'], str(self.release.pk))
        self.assertEqual(body['release']['version'], '1.1.0')
        self.assertEqual(body['release']['bundleHash'], 'abc123')
        self.assertEqual(body['release']['bundleSize'], 2048)
        self.assertEqual(body['release']['channel'], 'production')
        self.assertEqual(body['release']['bundleUrl'], 'https://bundles.example.com/bundles/demo/1.1.0.zip')

    def test_check_in_records_device(self):
        self.check(custom={'tier': 'pro'})
        device = Device.objects.get(app=self.app, device_id='device-1')
        self.assertEqual(device.current_version, '1.0.0')
        self.assertEqual(device.custom_attributes, {'tier': 'pro'})
        self.check(currentVersion='1.1.0')
        self.assertEqual(Device.objects.filter(app=self.app).count(), 1)
        self.assertEqual(Device.objects.get(app=self.app).current_version, '1.1.0')

    def test_up_to_date(self):
        body = self.check(currentVersion='1.1.0').json()
        self.assertFalse(body['updateAvailable'])
        self.assertEqual(body['reason'], 'up_to_date')
        self.assertNotIn('release', body)

    def test_current_bundle_version_alias(self):
        body = self.check(currentVersion='', currentBundleVersion='1.1.0').json()
        self.assertEqual(body['reason'], 'up_to_date')

    def test_device_info_attributes(self):
        Release.objects.filter(pk=self.release.pk).update(
            min_os_version='16.0',
            targeting_rules={'match': 'all', 'rules': [
                {'field': 'deviceModel', 'op': 'starts_with', 'value': 'iPhone'},
            ]},
        )
        body = self.check(osVersion='', deviceInfo={'osVersion': '16.4', 'deviceModel': 'iPhone 14'}).json()
        self.assertTrue(body['updateAvailable'])
        body = self.check(osVersion='', deviceInfo={'osVersion': '16.4', 'deviceModel': 'Pixel 8'}).json()
        self.assertEqual(body['reason'], 'targeting_mismatch')

    def test_app_store_update_required(self):
        Release.objects.filter(pk=self.release.pk).update(min_app_version='3.0.0')
        body = self.check().json()
        self.assertFalse(body['updateAvailable'])
        self.assertEqual(body['reason'], 'app_version_unsupported')
        self.assertTrue(body['requiresAppStoreUpdate'])
        self.assertIn('appStoreMessage', body)

    def test_unknown_app(self):
        body = self.check(appId=str(report_id())).json()
        self.assertFalse(body['updateAvailable'])
        self.assertEqual(body['reason'], 'no_channel')
        self.assertFalse(Device.objects.exists())

    def test_invalid_request(self):
        resp = self.client.post(reverse('update_check'), {'appId': 'not-a-uuid'}, format='json')
        self.assertEqual(resp.status_code, 400)
        self.assertIn('deviceId', resp.json())


class DeviceReportApiTests(APITestCase):
    def setUp(self):
        self.app = make_app()
        self.release = make_release(self.app, '1.1.0')

    def outcome(self, outcome, **extra):
        payload = {'releaseId': str(self.release.pk), 'outcome': outcome}
        payload.update(extra)
        return self.client.post(reverse('device_outcome', args=['device-1']), payload, format='json')

    def report(self, reason='crash_detected', **extra):
        payload = {'releaseId': str(self.release.pk), 'reason': reason}
        payload.update(extra)
        return self.client.post(reverse('rollback_report', args=['device-1']), payload, format='json')

    def test_applied_then_confirmed(self):
        resp = self.outcome('applied')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['state'], 'pending_confirmation')
        resp = self.outcome('confirmed')
        self.assertEqual(resp.json()['state'], 'confirmed')
        self.assertFalse(resp.json()['rolledBack'])

    def test_failure_outcome_creates_report(self):
        rid = str(report_id())
        resp = self.outcome('crash_detected', id=rid)
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()['reportId'], rid)
        self.assertEqual(resp.json()['failureCount'], 1)

        retry = self.outcome('crash_detected', id=rid)
        self.assertEqual(retry.status_code, 200)
        self.assertTrue(retry.json()['duplicate'])
        self.assertEqual(RollbackReport.objects.count(), 1)

    def test_unknown_outcome(self):
        resp = self.outcome('exploded')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['code'], 'unknown_outcome')

    def test_unknown_release(self):
        resp = self.client.post(
            reverse('device_outcome', args=['device-1']),
            {'releaseId': str(report_id()), 'outcome': 'applied'},
            format='json',
        )
        self.assertEqual(resp.status_code, 404)

    def test_rollback_report(self):
        resp = self.report(
            id=str(report_id()),
            previousVersion='1.0.0',
            failedEvents=['checkout_loaded'],
            failedEndpoints=[{'method': 'POST', 'url': '/api/cart', 'status': 502}],
            timestamp=1767225600000,
        )
        self.assertEqual(resp.status_code, 201)
        self.assertTrue(resp.json()['success'])
        report = RollbackReport.objects.get()
        self.assertEqual(report.previous_version, '1.0.0')
        self.assertEqual(report.failed_endpoints[0]['status'], 502)
        self.assertEqual(report.timestamp.year, 2026)

    def test_rollback_report_retry(self):
        rid = str(report_id())
        first = self.report(id=rid)
        self.assertEqual(first.status_code, 201)
        self.assertFalse(first.json()['duplicate'])
        resp = self.report(id=rid)
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()['duplicate'])
        self.assertEqual(resp.json()['failureCount'], 1)
        self.assertEqual(resp.json()['reportId'], rid)
        state = DeviceReleaseState.objects.get(device_id='device-1', release=self.release)
        self.assertEqual(state.failure_count, 1)
        self.assertEqual(RollbackReport.objects.count(), 1)
        self.assertEqual(Release.objects.get(pk=self.release.pk).rollback_count, 1)

    def test_manual_report_rolls_back(self):
        resp = self.report('manual')
        self.assertTrue(resp.json()['rolledBack'])

    def test_reports_after_confirmation_stop_serving(self):
        self.outcome('applied')
        self.outcome('confirmed')
        for _ in range(3):
            resp = self.report(id=str(report_id()))
        self.assertTrue(resp.json()['rolledBack'])

        check = self.client.post(reverse('update_check'), {
            'appId': str(self.app.pk),
            'deviceId': 'device-1',
            'platform': 'ios',
            'appVersion': '2.0.0',
            'currentVersion': '1.0.0',
        }, format='json').json()
        self.assertFalse(check['updateAvailable'])
        self.assertEqual(check['reason'], 'rolled_back')

    def test_rollback_report_validation(self):
        self.assertEqual(self.report('applied').status_code, 400)
        resp = self.client.post(
            reverse('rollback_report', args=['device-1']),
            {'releaseId': str(report_id()), 'reason': 'crash_detected'},
            format='json',
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'Invalid releaseId')


class AdminApiTestCase(APITestCase):
    def setUp(self):
        self.app = make_app()
        self.admin = User.objects.create_user(username='ops', password='pw', is_staff=True)
        self.client.force_authenticate(user=self.admin)


class AdminAccessTests(APITestCase):
    def test_admin_endpoints_require_staff(self):
        app = make_app()
        url = reverse('channels', args=[app.pk])
        self.assertEqual(self.client.get(url).status_code, 403)

        user = User.objects.create_user(username='viewer', password='pw')
        self.client.force_authenticate(user=user)
        self.assertEqual(self.client.get(url).status_code, 403)

    def test_health_is_public(self):
        resp = self.client.get(reverse('ota_health'))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['status'], 'ok')
        self.assertEqual(resp.json()['bucketing_algorithm'], 1)


class ChannelApiTests(AdminApiTestCase):
    def detail(self, name):
        return reverse('channel_detail', args=[self.app.pk, name])

    def test_list_channels(self):
        resp = self.client.get(reverse('channels', args=[self.app.pk]))
        self.assertEqual(resp.status_code, 200)
        names = [c['name'] for c in resp.json()]
        self.assertEqual(names, ['development', 'production', 'staging'])
        self.assertTrue(all(c['is_protected'] for c in resp.json()))

    def test_create_channel(self):
        resp = self.client.post(reverse('channels', args=[self.app.pk]), {'name': 'beta'}, format='json')
        self.assertEqual(resp.status_code, 201)
        self.assertFalse(resp.json()['is_default'])
        self.assertFalse(resp.json()['is_protected'])

        dup = self.client.post(reverse('channels', args=[self.app.pk]), {'name': 'beta'}, format='json')
        self.assertEqual(dup.status_code, 400)
        self.assertEqual(dup.json()['code'], 'duplicate_channel')

    def test_create_channel_with_bad_rules(self):
        resp = self.client.post(
            reverse('channels', args=[self.app.pk]),
            {'name': 'beta', 'targeting_rules': {'match': 'all', 'rules': [{'field': 'x', 'op': 'like'}]}},
            format='json',
        )
        self.assertEqual(resp.status_code, 400)
        self.assertIn('targeting_rules', resp.json())

    def test_protected_channel_cannot_be_deleted(self):
        resp = self.client.delete(self.detail('staging'))
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()['code'], 'protected_channel')
        self.assertTrue(Channel.objects.filter(app=self.app, name='staging').exists())

    def test_protected_channel_cannot_be_renamed(self):
        resp = self.client.patch(self.detail('production'), {'name': 'prod'}, format='json')
        self.assertEqual(resp.status_code, 403)

    def test_rename_and_describe(self):
        ChannelResolver().create_channel(self.app, 'beta')
        resp = self.client.patch(
            self.detail('beta'), {'name': 'early-access', 'description': 'Opt-in users'}, format='json'
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['name'], 'early-access')
        self.assertEqual(resp.json()['description'], 'Opt-in users')

    def test_promote_default(self):
        ChannelResolver().create_channel(self.app, 'beta')
        resp = self.client.patch(self.detail('beta'), {'is_default': True}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()['is_default'])
        self.assertFalse(channel(self.app, 'production').is_default)
        self.assertEqual(App.objects.get(pk=self.app.pk).default_channel.name, 'beta')

    def test_stale_default_swap_conflicts(self):
        production = channel(self.app, 'production')
        ChannelResolver().create_channel(self.app, 'beta')
        self.client.patch(self.detail('beta'), {'is_default': True}, format='json')

        resp = self.client.patch(
            self.detail('staging'),
            {'is_default': True, 'expected_default_id': str(production.pk)},
            format='json',
        )
        self.assertEqual(resp.status_code, 409)
        self.assertTrue(resp.json()['retryable'])
        self.assertEqual(
            list(Channel.objects.filter(app=self.app, is_default=True).values_list('name', flat=True)),
            ['beta'],
        )

    def test_cannot_unset_default(self):
        resp = self.client.patch(self.detail('production'), {'is_default': False}, format='json')
        self.assertEqual(resp.status_code, 400)

    def test_delete_default_channel_rejected(self):
        ChannelResolver().create_channel(self.app, 'beta')
        self.client.patch(self.detail('beta'), {'is_default': True}, format='json')
        resp = self.client.delete(self.detail('beta'))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['code'], 'default_channel')

    def test_delete_custom_channel(self):
        ChannelResolver().create_channel(self.app, 'beta')
        resp = self.client.delete(self.detail('beta'))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.get(self.detail('beta')).status_code, 404)


class ReleaseApiTests(AdminApiTestCase):
    def create(self, **overrides):
        payload = {
            'channel': 'production',
            'version': '1.1.0',
            'bundle_ref': 'bundles/demo/1.1.0.zip',
            'bundle_hash': 'abc123',
        }
        payload.update(overrides)
        return self.client.post(reverse('app_releases', args=[self.app.pk]), payload, format='json')

    def test_create_draft(self):
        resp = self.create()
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()['status'], 'draft')
        self.assertEqual(resp.json()['channel_name'], 'production')

    def test_create_and_start(self):
        resp = self.create(rollout_percentage=25)
        self.assertEqual(resp.json()['status'], 'rolling')
        self.assertEqual(str(channel(self.app).active_release_id), resp.json()['id'])

    def test_create_on_unknown_channel(self):
        self.assertEqual(self.create(channel='nightly').status_code, 404)

    def test_rollout_only_grows(self):
        release_id = self.create(rollout_percentage=50).json()['id']
        url = reverse('release_rollout', args=[release_id])
        resp = self.client.post(url, {'rollout_percentage': 80}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['rollout_percentage'], 80)

        resp = self.client.post(url, {'rollout_percentage': 10}, format='json')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['code'], 'rollout_decrease')

        resp = self.client.post(url, {'rollout_percentage': 100}, format='json')
        self.assertEqual(resp.json()['status'], 'active')

    def test_rollout_starts_draft(self):
        release_id = self.create().json()['id']
        resp = self.client.post(reverse('release_rollout', args=[release_id]), {'rollout_percentage': 100}, format='json')
        self.assertEqual(resp.json()['status'], 'active')

    def test_rollout_out_of_range(self):
        release_id = self.create().json()['id']
        resp = self.client.post(reverse('release_rollout', args=[release_id]), {'rollout_percentage': 101}, format='json')
        self.assertEqual(resp.status_code, 400)

    def test_actions(self):
        release_id = self.create(rollout_percentage=30).json()['id']
        resp = self.client.post(reverse('release_action', args=[release_id, 'pause']))
        self.assertEqual(resp.json()['status'], 'paused')
        resp = self.client.post(reverse('release_action', args=[release_id, 'resume']))
        self.assertEqual(resp.json()['status'], 'rolling')
        resp = self.client.post(reverse('release_action', args=[release_id, 'complete']))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['code'], 'invalid_transition')
        resp = self.client.post(reverse('release_action', args=[release_id, 'explode']))
        self.assertEqual(resp.status_code, 404)

    def test_list_and_filter(self):
        self.create(rollout_percentage=100)
        self.create(version='1.2.0')
        resp = self.client.get(reverse('app_releases', args=[self.app.pk]), {'status': 'draft'})
        self.assertEqual([r['version'] for r in resp.json()], ['1.2.0'])
        resp = self.client.get(reverse('app_releases', args=[self.app.pk]), {'channel': 'staging'})
        self.assertEqual(resp.json(), [])

    def test_soft_delete(self):
        release_id = self.create(rollout_percentage=100).json()['id']
        resp = self.client.delete(reverse('release_detail', args=[release_id]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.get(reverse('release_detail', args=[release_id])).status_code, 404)
        self.assertTrue(Release.objects.filter(pk=release_id).exists())


class RollbackAdminApiTests(AdminApiTestCase):
    def setUp(self):
        super().setUp()
        self.release = make_release(self.app, '1.1.0')

    def report(self, device_id, reason, timestamp=None):
        payload = {'releaseId': str(self.release.pk), 'reason': reason, 'id': str(report_id())}
        if timestamp is not None:
            payload['timestamp'] = timestamp
        return self.client.post(reverse('rollback_report', args=[device_id]), payload, format='json')

    def test_rollback_report_summary(self):
        self.report('device-1', 'crash_detected', timestamp=1767225600000)
        self.report('device-2', 'crash_detected', timestamp=1767229200000)
        self.report('device-3', 'manual', timestamp=1767232800000)

        resp = self.client.get(reverse('release_rollback_reports', args=[self.release.pk]))
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body['summary']['total'], 3)
        self.assertEqual(body['summary']['byReason'], {'crash_detected': 2, 'manual': 1})
        self.assertEqual(body['summary']['rolledBackDevices'], 1)
        self.assertEqual(body['reports'][0]['deviceId'], 'device-3')

    def test_rollback_report_window_and_limit(self):
        self.report('device-1', 'crash_detected', timestamp=1767225600000)
        self.report('device-2', 'crash_detected', timestamp=1767229200000)
        self.report('device-3', 'manual', timestamp=1767232800000)

        url = reverse('release_rollback_reports', args=[self.release.pk])
        body = self.client.get(url, {'startTime': '1767229200000'}).json()
        self.assertEqual(body['summary']['total'], 2)
        body = self.client.get(url, {'limit': 1}).json()
        self.assertEqual(body['summary']['total'], 3)
        self.assertEqual(len(body['reports']), 1)
        self.assertEqual(self.client.get(url, {'limit': 500}).status_code, 400)

    def test_device_states_and_clear(self):
        self.report('device-1', 'manual')
        resp = self.client.get(reverse('device_release_states', args=['device-1']))
        self.assertEqual(resp.json()[0]['state'], 'rolled_back')
        self.assertEqual(resp.json()[0]['release_version'], '1.1.0')

        payload = {'device_id': 'device-1', 'release_id': str(self.release.pk)}
        resp = self.client.post(reverse('clear_rollback'), payload, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['state'], 'served')
        self.assertEqual(resp.json()['cleared_by'], 'ops')

        resp = self.client.post(reverse('clear_rollback'), payload, format='json')
        self.assertEqual(resp.status_code, 404)


class ManagementCommandTests(TestCase):
    def test_create_app(self):
        out = StringIO()
        call_command('create_app', 'Shop Front', stdout=out)
        app = App.objects.get(slug='shop-front')
        self.assertEqual(app.default_channel.name, 'production')
        self.assertEqual(app.channels.count(), 3)
        self.assertIn('production (default)', out.getvalue())

    def test_create_app_duplicate_slug(self):
        call_command('create_app', 'Shop', stdout=StringIO())
        with self.assertRaises(CommandError):
            call_command('create_app', 'Other Shop', slug='shop', stdout=StringIO())

    def test_clear_rollback(self):
        app = make_app()
        release = make_release(app, '1.1.0')
        DeviceReleaseState.objects.create(
            device_id='device-1', release=release, state=DeviceReleaseState.State.ROLLED_BACK, failure_count=3
        )
        out = StringIO()
        call_command('clear_rollback', 'device-1', str(release.pk), by='alice', stdout=out)
        state = DeviceReleaseState.objects.get(device_id='device-1', release=release)
        self.assertEqual(state.state, DeviceReleaseState.State.SERVED)
        self.assertEqual(state.cleared_by, 'alice')

        with self.assertRaises(CommandError):
            call_command('clear_rollback', 'device-1', str(release.pk), stdout=StringIO())
        with self.assertRaises(CommandError):
            call_command('clear_rollback', 'device-1', 'not-a-uuid', stdout=StringIO())
