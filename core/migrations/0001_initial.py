# Generated migration for core app

from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='App',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(max_length=100)),
                ('slug', models.SlugField(max_length=64, unique=True)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('deleted_at', models.DateTimeField(blank=True, help_text='Soft delete marker', null=True)),
            ],
            options={
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='Device',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('device_id', models.CharField(help_text='Stable opaque per-install identifier', max_length=128)),
                ('platform', models.CharField(blank=True, default='', max_length=16)),
                ('os_version', models.CharField(blank=True, default='', max_length=32)),
                ('app_version', models.CharField(blank=True, default='', max_length=32)),
                ('current_version', models.CharField(blank=True, default='', help_text='Bundle version running on the device', max_length=32)),
                ('locale', models.CharField(blank=True, default='', max_length=16)),
                ('custom_attributes', models.JSONField(blank=True, default=dict)),
                ('first_seen_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('last_seen_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('app', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='devices', to='core.app')),
            ],
            options={
                'indexes': [models.Index(fields=['app', '-last_seen_at'], name='core_device_app_seen_idx')],
            },
        ),
        migrations.AddConstraint(
            model_name='device',
            constraint=models.UniqueConstraint(fields=('app', 'device_id'), name='core_device_unique_per_app'),
        ),
    ]
