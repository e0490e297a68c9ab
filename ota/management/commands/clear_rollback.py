"""
Management command: clear_rollback

Lifts the rollback block a device holds on a release, so the release can be
served to that device again (e.g. after shipping a fix for the crash that
triggered the rollback).

Usage:
    python manage.py clear_rollback <device_id> <release_id>
    python manage.py clear_rollback <device_id> <release_id> --by alice
"""
import logging

from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError

from ota.rollback import RollbackSafetyTracker

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Clear a device's rollback block on a release"

    def add_arguments(self, parser):
        parser.add_argument('device_id')
        parser.add_argument('release_id')
        parser.add_argument('--by', default='manage.py', help='Operator name recorded on the state row')

    def handle(self, *args, **options):
        device_id = options['device_id']
        release_id = options['release_id']

        try:
            state = RollbackSafetyTracker().clear_rollback(device_id, release_id, cleared_by=options['by'])
        except ValidationError:
            raise CommandError(f"'{release_id}' is not a valid release id")
        if state is None:
            raise CommandError(f"Device {device_id} is not rolled back on release {release_id}")

        logger.info(f"Rollback cleared via manage.py - Device: {device_id}, Release: {release_id}")

        self.stdout.write(self.style.SUCCESS(
            f"Cleared rollback of release {state.release.version} for device {device_id}"
        ))
