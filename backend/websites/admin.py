"""
Admin configuration for websites app.
"""
from django.contrib import admin
from .models import Website


@admin.register(Website)
class WebsiteAdmin(admin.ModelAdmin):
    """Admin interface for Website model."""
    list_display = ['domain', 'name', 'environment', 'status', 'port', 'created_at']
    list_filter = ['environment', 'status', 'created_at']
    search_fields = ['domain', 'name']
    # Lifecycle fields only change through the orchestrator
    readonly_fields = [
        'status', 'status_reason', 'error_message', 'port', 'preferred_port',
        'backend_state', 'version', 'created_at', 'updated_at', 'last_accessed'
    ]
