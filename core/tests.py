from django.db import IntegrityError, transaction
from django.test import TestCase
from django.utils import timezone

from core.models import App, Device
from ota.decisions import DeviceCheckIn


class AppTests(TestCase):
    def test_live_excludes_soft_deleted(self):
        live = App.objects.create(name='Live', slug='live')
        App.objects.create(name='Gone', slug='gone', deleted_at=timezone.now())
        self.assertEqual(list(App.objects.live()), [live])

    def test_slug_is_unique(self):
        App.objects.create(name='Demo', slug='demo')
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                App.objects.create(name='Demo 2', slug='demo')


class DeviceCheckInTests(TestCase):
    def setUp(self):
        self.app = App.objects.create(name='Demo', slug='demo')

    def check_in(self, **kwargs):
        values = {'device_id': 'device-1', 'app_id': self.app.pk, 'current_version': '1.0.0', 'platform': 'android'}
        values.update(kwargs)
        return DeviceCheckIn(**values)

    def test_first_check_in_creates_device(self):
        device, created = Device.record_check_in(self.check_in(custom={'tier': 'free'}))
        self.assertTrue(created)
        self.assertEqual(device.platform, 'android')
        self.assertEqual(device.custom_attributes, {'tier': 'free'})

    def test_later_check_in_refreshes_snapshot(self):
        first, _ = Device.record_check_in(self.check_in())
        second, created = Device.record_check_in(self.check_in(current_version='1.2.0', os_version='14'))
        self.assertFalse(created)
        self.assertEqual(first.pk, second.pk)
        second.refresh_from_db()
        self.assertEqual(second.current_version, '1.2.0')
        self.assertEqual(second.os_version, '14')
        self.assertEqual(second.first_seen_at, first.first_seen_at)
        self.assertGreaterEqual(second.last_seen_at, first.last_seen_at)

    def test_same_device_id_in_two_apps(self):
        other = App.objects.create(name='Other', slug='other')
        Device.record_check_in(self.check_in())
        Device.record_check_in(self.check_in(app_id=other.pk))
        self.assertEqual(Device.objects.filter(device_id='device-1').count(), 2)
