"""
Serializers for websites app.
"""
import re

from rest_framework import serializers

from .config import DATABASE_ENGINES, PHP_VERSIONS, WEB_SERVERS
from .models import Website

DOMAIN_RE = re.compile(r'^([a-z0-9]+(-[a-z0-9]+)*\.)+[a-z]{2,}$', re.IGNORECASE)


class WebsiteSerializer(serializers.ModelSerializer):
    """Serializer for Website model."""
    url = serializers.CharField(read_only=True)

    class Meta:
        model = Website
        fields = [
            'id', 'name', 'domain', 'environment', 'status', 'status_reason',
            'error_message', 'port', 'url', 'config', 'root_path',
            'created_at', 'updated_at', 'last_accessed'
        ]
        read_only_fields = fields
        # Note: backend_state is intentionally excluded, it holds database passwords


class SiteCreateSerializer(serializers.Serializer):
    """Validates the configuration submitted to createSite."""
    name = serializers.CharField(max_length=100)
    domain = serializers.CharField(max_length=255, required=False, allow_blank=True)
    environment = serializers.ChoiceField(choices=[c[0] for c in Website.ENVIRONMENT_CHOICES], required=False)
    php_version = serializers.ChoiceField(choices=PHP_VERSIONS, required=False)
    wordpress_version = serializers.CharField(max_length=20, required=False)
    database_engine = serializers.ChoiceField(choices=DATABASE_ENGINES, required=False)
    database_version = serializers.CharField(max_length=20, required=False)
    web_server = serializers.ChoiceField(choices=WEB_SERVERS, required=False)
    ssl = serializers.BooleanField(required=False, default=False)
    multisite = serializers.BooleanField(required=False, default=False)
    port = serializers.IntegerField(required=False, min_value=1024, max_value=65535)

    def validate_name(self, value: str) -> str:
        value = value.strip()
        if not value:
            raise serializers.ValidationError('Site name is required')
        return value

    def validate_domain(self, value: str) -> str:
        value = value.strip().lower()
        if value and not DOMAIN_RE.match(value):
            raise serializers.ValidationError(
                'Invalid domain format. Please enter a valid domain name (e.g., example.local)'
            )
        return value


class EnvironmentTargetSerializer(serializers.Serializer):
    environment = serializers.ChoiceField(choices=[c[0] for c in Website.ENVIRONMENT_CHOICES])


class CloneSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100)
