from django.contrib import admin
from .models import Channel, DeviceReleaseState, Release, RollbackReport


@admin.register(Channel)
class ChannelAdmin(admin.ModelAdmin):
    list_display = ['name', 'app', 'is_default', 'active_release', 'updated_at']
    list_filter = ['is_default', 'app']
    search_fields = ['name', 'display_name', 'app__slug']
    # Default swaps and renames go through the API so invariants are checked
    readonly_fields = ['name', 'is_default', 'active_release', 'created_at', 'updated_at']

    fieldsets = (
        ('Channel', {
            'fields': ('app', 'name', 'display_name', 'description', 'is_default')
        }),
        ('Targeting', {
            'fields': ('targeting_rules',)
        }),
        ('Serving', {
            'fields': ('active_release',)
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Release)
class ReleaseAdmin(admin.ModelAdmin):
    list_display = ['version', 'app', 'channel', 'status', 'rollout_percentage', 'rollback_count', 'created_at']
    list_filter = ['status', 'app', 'channel']
    search_fields = ['version', 'bundle_ref', 'app__slug']
    readonly_fields = ['status', 'rollout_percentage', 'rollback_count', 'created_at', 'updated_at', 'deleted_at']

    fieldsets = (
        ('Release Info', {
            'fields': ('app', 'channel', 'version', 'release_notes')
        }),
        ('Bundle', {
            'fields': ('bundle_ref', 'bundle_hash', 'bundle_size')
        }),
        ('Eligibility', {
            'fields': ('min_os_version', 'min_app_version', 'max_app_version', 'targeting_rules')
        }),
        ('Rollout', {
            'fields': ('status', 'rollout_percentage', 'rollback_count')
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at', 'deleted_at'),
            'classes': ('collapse',)
        }),
    )

    def has_delete_permission(self, request, obj=None):
        # Releases are only soft deleted
        return False


@admin.register(RollbackReport)
class RollbackReportAdmin(admin.ModelAdmin):
    list_display = ['device_id', 'release', 'reason', 'timestamp', 'created_at']
    list_filter = ['reason', 'created_at']
    search_fields = ['device_id', 'release__version']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        # Append-only
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(DeviceReleaseState)
class DeviceReleaseStateAdmin(admin.ModelAdmin):
    list_display = ['device_id', 'release', 'state', 'failure_count', 'updated_at']
    list_filter = ['state']
    search_fields = ['device_id', 'release__version']
    readonly_fields = [
        'device_id', 'release', 'state', 'failure_count', 'served_at', 'pending_since',
        'confirmed_at', 'rolled_back_at', 'rollback_reason', 'cleared_at', 'cleared_by', 'updated_at',
    ]

    def has_add_permission(self, request):
        return False
