"""
URLs for environments app.
"""
from django.urls import path
from . import views

urlpatterns = [
    path('capabilities/', views.capabilities, name='environment_capabilities'),
    path('current/', views.current_environment, name='environment_current'),
    path('switch/', views.switch_environment, name='environment_switch'),
]
