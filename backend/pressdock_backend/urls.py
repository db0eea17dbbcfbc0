"""
URL configuration for pressdock_backend project.
"""
from django.contrib import admin
from django.urls import path, include

from environments.views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/sites/', include('websites.urls')),
    path('api/environment/', include('environments.urls')),
    path('api/health/', health_check, name='health_check'),
]
