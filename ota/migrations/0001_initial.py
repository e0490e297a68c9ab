# Generated migration for OTA app

import django.core.validators
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('core', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Channel',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(max_length=50, validators=[django.core.validators.RegexValidator('^[a-z0-9]+(-[a-z0-9]+)*$', message='Channel names are lowercase letters, digits and single hyphens')])),
                ('display_name', models.CharField(blank=True, default='', max_length=100)),
                ('description', models.TextField(blank=True, default='')),
                ('is_default', models.BooleanField(default=False)),
                ('targeting_rules', models.JSONField(blank=True, help_text='Rule set a device must match to receive releases from this channel', null=True)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('app', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='channels', to='core.app')),
            ],
            options={
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='Release',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('version', models.CharField(help_text='Bundle version, e.g. 1.4.2', max_length=64)),
                ('status', models.CharField(choices=[('draft', 'Draft'), ('rolling', 'Rolling Out'), ('active', 'Active'), ('paused', 'Paused'), ('disabled', 'Disabled'), ('failed', 'Failed'), ('complete', 'Complete')], db_index=True, default='draft', max_length=16)),
                ('rollout_percentage', models.PositiveSmallIntegerField(default=0, validators=[django.core.validators.MinValueValidator(0), django.core.validators.MaxValueValidator(100)])),
                ('bundle_ref', models.CharField(help_text='Storage key of the bundle', max_length=512)),
                ('bundle_hash', models.CharField(blank=True, default='', help_text='SHA256 of the bundle', max_length=128)),
                ('bundle_size', models.PositiveBigIntegerField(default=0)),
                ('min_os_version', models.CharField(blank=True, max_length=32, null=True)),
                ('min_app_version', models.CharField(blank=True, max_length=32, null=True)),
                ('max_app_version', models.CharField(blank=True, max_length=32, null=True)),
                ('targeting_rules', models.JSONField(blank=True, null=True)),
                ('release_notes', models.TextField(blank=True, default='')),
                ('rollback_count', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
                ('app', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='releases', to='core.app')),
                ('channel', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='releases', to='ota.channel')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['app', 'channel', 'status'], name='ota_release_app_chan_st_idx')],
            },
        ),
        migrations.AddField(
            model_name='channel',
            name='active_release',
            field=models.ForeignKey(blank=True, help_text='Release whose rollout was started most recently', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='ota.release'),
        ),
        migrations.AddConstraint(
            model_name='channel',
            constraint=models.UniqueConstraint(fields=('app', 'name'), name='ota_channel_unique_name_per_app'),
        ),
        migrations.AddConstraint(
            model_name='channel',
            constraint=models.UniqueConstraint(condition=models.Q(('is_default', True)), fields=('app',), name='ota_channel_one_default_per_app'),
        ),
        migrations.CreateModel(
            name='RollbackReport',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('device_id', models.CharField(db_index=True, max_length=128)),
                ('reason', models.CharField(choices=[('crash_detected', 'Crash Detected'), ('health_check_failed', 'Health Check Failed'), ('manual', 'Manual'), ('hash_mismatch', 'Hash Mismatch')], max_length=32)),
                ('previous_version', models.CharField(blank=True, max_length=64, null=True)),
                ('failed_events', models.JSONField(blank=True, null=True)),
                ('failed_endpoints', models.JSONField(blank=True, help_text='Requests that failed the health check: method, url, status', null=True)),
                ('timestamp', models.DateTimeField(default=django.utils.timezone.now, help_text='When the device observed the failure')),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('release', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='rollback_reports', to='ota.release')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['release', '-created_at'], name='ota_rbreport_release_idx'),
                    models.Index(fields=['device_id', 'release'], name='ota_rbreport_device_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='DeviceReleaseState',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('device_id', models.CharField(max_length=128)),
                ('state', models.CharField(choices=[('served', 'Served'), ('pending_confirmation', 'Pending Confirmation'), ('confirmed', 'Confirmed'), ('rolled_back', 'Rolled Back')], db_index=True, default='served', max_length=32)),
                ('failure_count', models.PositiveIntegerField(default=0)),
                ('served_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('pending_since', models.DateTimeField(blank=True, null=True)),
                ('confirmed_at', models.DateTimeField(blank=True, null=True)),
                ('rolled_back_at', models.DateTimeField(blank=True, null=True)),
                ('rollback_reason', models.CharField(blank=True, choices=[('crash_detected', 'Crash Detected'), ('health_check_failed', 'Health Check Failed'), ('manual', 'Manual'), ('hash_mismatch', 'Hash Mismatch'), ('confirmation_timeout', 'Confirmation Timeout')], max_length=32, null=True)),
                ('cleared_at', models.DateTimeField(blank=True, null=True)),
                ('cleared_by', models.CharField(blank=True, max_length=150, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('release', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='device_states', to='ota.release')),
            ],
            options={
                'verbose_name': 'Device Release State',
                'verbose_name_plural': 'Device Release States',
                'indexes': [models.Index(fields=['device_id', 'state'], name='ota_devstate_device_state_idx')],
            },
        ),
        migrations.AddConstraint(
            model_name='devicereleasestate',
            constraint=models.UniqueConstraint(fields=('device_id', 'release'), name='ota_device_release_state_unique'),
        ),
    ]
