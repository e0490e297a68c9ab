from django.test import TestCase

from ota import releases
from ota.exceptions import (
    InvalidReleaseTransition,
    InvalidRolloutPercentage,
    InvalidTargetingRules,
    RolloutDecreaseError,
)
from ota.models import Release

from .helpers import channel, make_app, make_release

Status = Release.Status


class ReleaseLifecycleTests(TestCase):
    def setUp(self):
        self.app = make_app()
        self.draft = make_release(self.app, '1.1.0', percentage=None)

    def test_created_as_draft(self):
        self.assertEqual(self.draft.status, Status.DRAFT)
        self.assertEqual(self.draft.rollout_percentage, 0)
        self.assertIsNone(channel(self.app).active_release)

    def test_blank_bounds_stored_as_null(self):
        release = make_release(self.app, '1.2.0', percentage=None, min_os_version='', max_app_version='')
        self.assertIsNone(release.min_os_version)
        self.assertIsNone(release.max_app_version)

    def test_create_rejects_bad_targeting(self):
        with self.assertRaises(InvalidTargetingRules):
            make_release(self.app, '1.2.0', percentage=None, targeting_rules={'rules': [{'field': 'x', 'op': 'like'}]})

    def test_partial_rollout_is_rolling(self):
        release = releases.start_rollout(self.draft, 25)
        self.assertEqual(release.status, Status.ROLLING)
        self.assertEqual(release.rollout_percentage, 25)
        self.assertEqual(channel(self.app).active_release, release)

    def test_full_rollout_is_active(self):
        release = releases.start_rollout(self.draft)
        self.assertEqual(release.status, Status.ACTIVE)
        self.assertEqual(release.rollout_percentage, 100)

    def test_reaching_full_rollout_activates(self):
        release = releases.start_rollout(self.draft, 10)
        release = releases.set_rollout_percentage(release, 100)
        self.assertEqual(release.status, Status.ACTIVE)

    def test_percentage_never_decreases(self):
        release = releases.start_rollout(self.draft, 50)
        with self.assertRaises(RolloutDecreaseError):
            releases.set_rollout_percentage(release, 20)
        release = releases.pause(release)
        with self.assertRaises(RolloutDecreaseError):
            releases.set_rollout_percentage(release, 20)
        self.assertEqual(Release.objects.get(pk=release.pk).rollout_percentage, 50)

    def test_percentage_bounds(self):
        for value in (-1, 101, 50.5, '50', True, None):
            with self.assertRaises(InvalidRolloutPercentage, msg=repr(value)):
                releases.start_rollout(self.draft, value)

    def test_pause_and_resume(self):
        release = releases.start_rollout(self.draft, 40)
        release = releases.pause(release)
        self.assertEqual(release.status, Status.PAUSED)
        release = releases.resume(release)
        self.assertEqual(release.status, Status.ROLLING)

    def test_raise_while_paused_then_resume_activates(self):
        release = releases.pause(releases.start_rollout(self.draft, 40))
        release = releases.set_rollout_percentage(release, 100)
        self.assertEqual(release.status, Status.PAUSED)
        self.assertEqual(releases.resume(release).status, Status.ACTIVE)

    def test_resume_requires_paused(self):
        release = releases.start_rollout(self.draft, 40)
        with self.assertRaises(InvalidReleaseTransition):
            releases.resume(release)

    def test_terminal_statuses(self):
        disabled = releases.disable(releases.start_rollout(self.draft))
        self.assertEqual(disabled.status, Status.DISABLED)
        with self.assertRaises(InvalidReleaseTransition):
            releases.start_rollout(disabled)
        with self.assertRaises(InvalidReleaseTransition):
            releases.set_rollout_percentage(disabled, 100)

        failed = releases.mark_failed(make_release(self.app, '1.2.0', percentage=30))
        self.assertEqual(failed.status, Status.FAILED)
        with self.assertRaises(InvalidReleaseTransition):
            releases.pause(failed)

    def test_complete_only_from_active(self):
        rolling = make_release(self.app, '1.2.0', percentage=30)
        with self.assertRaises(InvalidReleaseTransition):
            releases.complete(rolling)
        done = releases.complete(make_release(self.app, '1.3.0'))
        self.assertEqual(done.status, Status.COMPLETE)

    def test_draft_cannot_pause(self):
        with self.assertRaises(InvalidReleaseTransition):
            releases.pause(self.draft)

    def test_newer_rollout_takes_channel_pointer(self):
        first = releases.start_rollout(self.draft)
        second = make_release(self.app, '1.2.0')
        self.assertEqual(channel(self.app).active_release, second)
        self.assertNotEqual(first, second)

    def test_soft_delete(self):
        release = releases.start_rollout(self.draft)
        releases.soft_delete(release)
        self.assertIsNotNone(Release.objects.get(pk=release.pk).deleted_at)
        self.assertIsNone(channel(self.app).active_release)
        self.assertFalse(Release.objects.servable().filter(pk=release.pk).exists())
