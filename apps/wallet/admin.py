"""
Django Admin configuration for the Wallet app
"""

from django.contrib import admin
from .models import OfflineTransaction, PendingDeduction


@admin.register(PendingDeduction)
class PendingDeductionAdmin(admin.ModelAdmin):
    list_display = ['user_id', 'amount', 'zone_name', 'segment_count', 'updated_at']
    search_fields = ['user_id', 'zone_name']
    readonly_fields = ['segments', 'created_at', 'updated_at']

    fieldsets = (
        ('Owner', {
            'fields': ('user_id',)
        }),
        ('Deduction', {
            'fields': ('amount', 'distance_meters', 'zone_id', 'zone_name')
        }),
        ('Last Segment', {
            'fields': ('entry_lat', 'entry_lng', 'exit_lat', 'exit_lng'),
            'classes': ('collapse',)
        }),
        ('Segments', {
            'fields': ('segments',),
            'classes': ('collapse',)
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    def segment_count(self, obj):
        return len(obj.segments or [])
    segment_count.short_description = 'Segments'


@admin.register(OfflineTransaction)
class OfflineTransactionAdmin(admin.ModelAdmin):
    list_display = ['charge_id', 'user_id', 'zone_name', 'amount', 'distance_description', 'occurred_at', 'created_at']
    list_filter = ['calculation_method', 'created_at']
    search_fields = ['charge_id', 'user_id', 'trip_id', 'zone_name']
    readonly_fields = ['charge_id', 'created_at']
    ordering = ['created_at', 'id']
