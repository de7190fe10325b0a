from django.contrib import admin

from .models import Plan, PurchaseRecord


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "amount", "duration_days", "is_active", "updated_at")
    list_filter = ("is_active",)
    search_fields = ("name",)


@admin.register(PurchaseRecord)
class PurchaseRecordAdmin(admin.ModelAdmin):
    list_display = ("id", "owner", "plan", "amount", "status", "starts_at", "ends_at", "created_at")
    list_filter = ("status", "created_at")
    search_fields = ("owner__username", "owner__email", "plan__name")
    readonly_fields = ("created_at", "updated_at")
