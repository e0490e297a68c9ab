from django.contrib import admin
from .models import App, Device


@admin.register(App)
class AppAdmin(admin.ModelAdmin):
    list_display = ['name', 'slug', 'default_channel', 'created_at', 'deleted_at']
    search_fields = ['name', 'slug']
    readonly_fields = ['id', 'default_channel', 'created_at']


@admin.register(Device)
class DeviceAdmin(admin.ModelAdmin):
    list_display = ['device_id', 'app', 'platform', 'app_version', 'current_version', 'last_seen_at']
    list_filter = ['platform', 'app']
    search_fields = ['device_id']
    readonly_fields = ['first_seen_at', 'last_seen_at']
