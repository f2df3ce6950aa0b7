from django.contrib import admin
from import_export import resources
from import_export.admin import ImportExportModelAdmin

from .models import Store


class StoreResource(resources.ModelResource):
    class Meta:
        model = Store
        fields = ('id', 'name', 'owner', 'address', 'area', 'latitude', 'longitude', 'is_active', 'created_at')
        export_order = fields


@admin.register(Store)
class StoreAdmin(ImportExportModelAdmin):
    resource_class = StoreResource
    list_display = ('name', 'owner', 'area', 'is_active', 'created_at')
    list_filter = ('is_active', 'area')
    search_fields = ('name', 'owner__phone', 'address')
    raw_id_fields = ('owner',)
