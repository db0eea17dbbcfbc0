# Generated migration for websites app
from django.db import migrations, models
import django.core.validators
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Website',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(max_length=100)),
                ('domain', models.CharField(max_length=255, unique=True, validators=[django.core.validators.MinLengthValidator(3)])),
                ('environment', models.CharField(choices=[('local', 'Local PHP server'), ('container', 'Container stack')], default='local', max_length=20)),
                ('status', models.CharField(choices=[('stopped', 'Stopped'), ('starting', 'Starting'), ('running', 'Running'), ('stopping', 'Stopping'), ('error', 'Error')], default='stopped', max_length=20)),
                ('status_reason', models.CharField(blank=True, default='', help_text='Error code for the error status', max_length=50)),
                ('error_message', models.TextField(blank=True, default='')),
                ('port', models.PositiveIntegerField(blank=True, help_text='Reserved host port', null=True)),
                ('preferred_port', models.PositiveIntegerField(blank=True, help_text='Port used by the last start', null=True)),
                ('config', models.JSONField(default=dict)),
                ('root_path', models.CharField(help_text='Site directory', max_length=500)),
                ('backend_state', models.JSONField(blank=True, default=dict, help_text='Driver-owned resource identifiers')),
                ('version', models.PositiveIntegerField(default=1, help_text='Compare-and-swap token')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('last_accessed', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'verbose_name': 'Website',
                'verbose_name_plural': 'Websites',
                'db_table': 'websites_website',
                'ordering': ['-created_at'],
            },
        ),
    ]
