# Generated migration for core app

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    dependencies = [
        ('core', '0001_initial'),
        ('ota', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='app',
            name='default_channel',
            field=models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='ota.channel'),
        ),
    ]
