"""
Management command: create_app

Creates an app and provisions its default channels (production, staging,
development), with production as the default channel.

Usage:
    python manage.py create_app "My App"
    python manage.py create_app "My App" --slug my-app
"""
import logging

from django.core.management.base import BaseCommand, CommandError
from django.db import transaction
from django.utils.text import slugify

from core.models import App
from ota.channel_resolver import ChannelResolver

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Create an app and provision its default channels'

    def add_arguments(self, parser):
        parser.add_argument('name', help='Display name of the app')
        parser.add_argument('--slug', help='URL slug (default: derived from the name)')

    def handle(self, *args, **options):
        name = options['name']
        slug = options.get('slug') or slugify(name)
        if not slug:
            raise CommandError(f"Cannot derive a slug from '{name}'; pass --slug")
        if App.objects.filter(slug=slug).exists():
            raise CommandError(f"App with slug '{slug}' already exists")

        with transaction.atomic():
            app = App.objects.create(name=name, slug=slug)
            channels = ChannelResolver().provision_default_channels(app)
        logger.info(f"App created via manage.py - {app.slug} ({app.pk})")

        self.stdout.write(self.style.SUCCESS(f"Created app {app.name} ({app.pk})"))
        for channel in channels:
            marker = ' (default)' if channel.is_default else ''
            self.stdout.write(f"  channel {channel.name}{marker}")
