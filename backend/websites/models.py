"""
Websites app models for PressDock.
"""
import uuid

from django.core.validators import MinLengthValidator
from django.db import models

from .config import ENVIRONMENT_CONTAINER, ENVIRONMENT_LOCAL, SiteConfig


class Website(models.Model):
    """A managed WordPress site (the registry's site record)."""
    ENVIRONMENT_LOCAL = ENVIRONMENT_LOCAL
    ENVIRONMENT_CONTAINER = ENVIRONMENT_CONTAINER
    ENVIRONMENT_CHOICES = [
        (ENVIRONMENT_LOCAL, 'Local PHP server'),
        (ENVIRONMENT_CONTAINER, 'Container stack'),
    ]

    STATUS_STOPPED = 'stopped'
    STATUS_STARTING = 'starting'
    STATUS_RUNNING = 'running'
    STATUS_STOPPING = 'stopping'
    STATUS_ERROR = 'error'
    STATUS_CHOICES = [
        (STATUS_STOPPED, 'Stopped'),
        (STATUS_STARTING, 'Starting'),
        (STATUS_RUNNING, 'Running'),
        (STATUS_STOPPING, 'Stopping'),
        (STATUS_ERROR, 'Error'),
    ]

    # Statuses whose port must be unique across all records
    ACTIVE_STATUSES = (STATUS_STARTING, STATUS_RUNNING)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100)
    domain = models.CharField(max_length=255, unique=True, validators=[MinLengthValidator(3)])
    environment = models.CharField(max_length=20, choices=ENVIRONMENT_CHOICES, default=ENVIRONMENT_LOCAL)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_STOPPED)
    status_reason = models.CharField(max_length=50, blank=True, default='', help_text="Error code for the error status")
    error_message = models.TextField(blank=True, default='')
    port = models.PositiveIntegerField(blank=True, null=True, help_text="Reserved host port")
    preferred_port = models.PositiveIntegerField(blank=True, null=True, help_text="Port used by the last start")
    config = models.JSONField(default=dict)
    root_path = models.CharField(max_length=500, help_text="Site directory")
    backend_state = models.JSONField(default=dict, blank=True, help_text="Driver-owned resource identifiers")
    version = models.PositiveIntegerField(default=1, help_text="Compare-and-swap token")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    last_accessed = models.DateTimeField(blank=True, null=True)

    class Meta:
        db_table = 'websites_website'
        verbose_name = 'Website'
        verbose_name_plural = 'Websites'
        ordering = ['-created_at']

    def __str__(self) -> str:
        return f"{self.domain} ({self.environment}, {self.status})"

    @property
    def site_config(self) -> SiteConfig:
        return SiteConfig.from_dict(self.config)

    @property
    def content_path(self) -> str:
        """Directory holding the WordPress files, shared by both backends."""
        return f"{self.root_path.rstrip('/')}/wordpress"

    @property
    def url(self) -> str:
        if not self.port:
            return ''
        return f"http://localhost:{self.port}"
