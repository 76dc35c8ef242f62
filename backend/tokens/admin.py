from django.contrib import admin

from .models import AccessToken


@admin.register(AccessToken)
class AccessTokenAdmin(admin.ModelAdmin):
    list_display = ("id", "code", "is_active", "device_fingerprint", "bound_at", "expires_at", "created_at")
    list_filter = ("is_active",)
    search_fields = ("code", "device_fingerprint")
    actions = ("deactivate", "reactivate", "reset_device")

    @admin.action(description="Deactivate selected codes")
    def deactivate(self, request, queryset):
        queryset.update(is_active=False)

    @admin.action(description="Reactivate selected codes")
    def reactivate(self, request, queryset):
        queryset.update(is_active=True)

    @admin.action(description="Reset device binding")
    def reset_device(self, request, queryset):
        queryset.update(device_fingerprint=None, bound_at=None)
