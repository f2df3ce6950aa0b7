from django.contrib import admin
from import_export import resources
from import_export.admin import ImportExportModelAdmin

from .models import Order, OrderItem


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0


class OrderResource(resources.ModelResource):
    class Meta:
        model = Order
        fields = (
            'id', 'customer', 'store', 'status', 'payment_method', 'total_amount',
            'customer_name', 'shipping_address', 'created_at',
        )
        export_order = fields


@admin.register(Order)
class OrderAdmin(ImportExportModelAdmin):
    resource_class = OrderResource
    list_display = ('id', 'customer', 'store', 'status', 'total_amount', 'created_at')
    list_filter = ('status', 'payment_method')
    search_fields = ('id', 'customer__phone', 'customer_name', 'store__name')
    list_select_related = ('customer', 'store')
    raw_id_fields = ('customer', 'store')
    inlines = [OrderItemInline]
