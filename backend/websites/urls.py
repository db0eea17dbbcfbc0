"""
URLs for websites app.
"""
from django.urls import path
from . import views

urlpatterns = [
    path('', views.websites_list, name='websites_list'),
    path('<uuid:website_id>/', views.website_detail, name='website_detail'),
    path('<uuid:website_id>/start/', views.website_start, name='website_start'),
    path('<uuid:website_id>/stop/', views.website_stop, name='website_stop'),
    path('<uuid:website_id>/clone/', views.website_clone, name='website_clone'),
    path('<uuid:website_id>/migrate/', views.website_migrate, name='website_migrate'),
]
