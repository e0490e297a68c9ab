from django.urls import path
from . import views

urlpatterns = [
    # SDK endpoints
    path('updates/check', views.update_check, name='update_check'),
    path('devices/<str:device_id>/outcome', views.device_outcome, name='device_outcome'),
    path('devices/<str:device_id>/rollback-report', views.rollback_report, name='rollback_report'),

    # Device state (admin)
    path('devices/<str:device_id>/releases/', views.device_release_states, name='device_release_states'),
    path('rollbacks/clear/', views.clear_rollback, name='clear_rollback'),

    # Channel management
    path('apps/<uuid:app_id>/channels/', views.channels, name='channels'),
    path('apps/<uuid:app_id>/channels/<str:name>/', views.channel_detail, name='channel_detail'),

    # Release management
    path('apps/<uuid:app_id>/releases/', views.app_releases, name='app_releases'),
    path('releases/<uuid:release_id>/', views.release_detail, name='release_detail'),
    path('releases/<uuid:release_id>/rollout/', views.release_rollout, name='release_rollout'),
    path('releases/<uuid:release_id>/rollback-reports/', views.release_rollback_reports, name='release_rollback_reports'),
    path('releases/<uuid:release_id>/<str:action>/', views.release_action, name='release_action'),

    # Health check
    path('health/', views.ota_health, name='ota_health'),
]
