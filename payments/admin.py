from django.contrib import admin
from .models import Transaction

@admin.register(Transaction)
class TransactionAdmin(admin.ModelAdmin):
    list_display = ("id", "status", "amount", "method", "external_handle", "purchase", "settled_at", "created_at")
    search_fields = ("id", "external_handle", "purchase__owner__username", "purchase__owner__email")
    list_filter = ("status", "method", "created_at")
    readonly_fields = ("id", "external_handle", "amount", "raw_response", "settled_at", "created_at", "updated_at")
