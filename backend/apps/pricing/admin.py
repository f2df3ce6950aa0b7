from django.contrib import admin
from import_export.admin import ImportExportModelAdmin

from .models import DeliveryZone


@admin.register(DeliveryZone)
class DeliveryZoneAdmin(ImportExportModelAdmin):
    list_display = ('name', 'min_distance', 'max_distance', 'base_fee', 'per_km_rate', 'is_active')
    list_filter = ('is_active',)
    list_editable = ('is_active',)
    ordering = ('max_distance',)
