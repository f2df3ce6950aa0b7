from django.contrib import admin
from django.utils.html import format_html
from import_export import resources, fields
from import_export.widgets import ForeignKeyWidget
from import_export.admin import ImportExportModelAdmin

from apps.orders.models import Order
from apps.partners.models import DeliveryPartner
from apps.utils.exceptions import BusinessLogicException
from .models import (
    Delivery,
    DeliveryNotification,
    DeliveryStatusHistory,
    DeliveryLocationTracking,
    DeliveryRoute,
)
from .services import AssignmentService, StatusTransitionService
from .states import DeliveryStatus, TERMINAL_STATUSES


class DeliveryResource(resources.ModelResource):
    order = fields.Field(
        column_name='order_id',
        attribute='order',
        widget=ForeignKeyWidget(Order, 'id')
    )

    # Linking partner by user's phone number
    delivery_partner = fields.Field(
        column_name='partner_phone',
        attribute='delivery_partner',
        widget=ForeignKeyWidget(DeliveryPartner, 'user__phone')
    )

    class Meta:
        model = Delivery
        fields = (
            'id',
            'order',
            'delivery_partner',
            'status',
            'delivery_fee',
            'partner_earnings',
            'estimated_distance',
            'estimated_time',
            'actual_time',
            'assigned_at',
            'picked_up_at',
            'delivered_at',
            'customer_rating',
            'created_at',
        )
        export_order = fields


class StatusHistoryInline(admin.TabularInline):
    model = DeliveryStatusHistory
    extra = 0
    can_delete = False
    fields = ('status', 'description', 'updated_by', 'timestamp')
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Delivery)
class DeliveryAdmin(ImportExportModelAdmin):
    resource_class = DeliveryResource

    list_display = (
        'order_id_display',
        'partner_info',
        'status_badge',
        'delivery_fee',
        'customer_rating',
        'created_at_date'
    )
    list_filter = ('status', 'created_at', 'updated_at')
    search_fields = (
        'order__id',
        'delivery_partner__user__phone',
        'delivery_partner__user__first_name',
    )
    list_select_related = ('order', 'delivery_partner', 'delivery_partner__user')
    raw_id_fields = ('order', 'delivery_partner')
    list_per_page = 25
    inlines = [StatusHistoryInline]
    actions = ['rebroadcast', 'cancel_deliveries']

    fieldsets = (
        ('Order & Partner', {
            'fields': ('order', 'delivery_partner', 'status')
        }),
        ('Addresses', {
            'fields': (
                'pickup_address', 'pickup_latitude', 'pickup_longitude',
                'delivery_address', 'delivery_latitude', 'delivery_longitude',
                'special_instructions',
            )
        }),
        ('Money & Estimates', {
            'fields': ('delivery_fee', 'partner_earnings', 'estimated_distance', 'estimated_time', 'actual_time')
        }),
        ('Rating', {
            'fields': ('customer_rating', 'customer_feedback')
        }),
        ('Timestamps', {
            'fields': ('assigned_at', 'picked_up_at', 'delivered_at', 'created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    # Status only moves through the transition service
    readonly_fields = (
        'status', 'delivery_partner', 'assigned_at', 'picked_up_at', 'delivered_at',
        'created_at', 'updated_at', 'customer_rating', 'customer_feedback',
    )

    def order_id_display(self, obj):
        return f"#{obj.order_id}"
    order_id_display.short_description = "Order ID"
    order_id_display.admin_order_field = 'order__id'

    def partner_info(self, obj):
        if obj.delivery_partner:
            return f"{obj.delivery_partner.user.phone}"
        return "Unassigned"
    partner_info.short_description = "Partner"
    partner_info.admin_order_field = 'delivery_partner__user__phone'

    def status_badge(self, obj):
        colors = {
            'pending': '#ffc107',
            'assigned': '#007bff',
            'picked_up': '#17a2b8',
            'en_route_delivery': '#17a2b8',
            'delivered': '#28a745',
            'cancelled': '#dc3545',
        }
        color = colors.get(obj.status, '#6c757d')
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 8px; border-radius: 4px; font-size: 0.8em;">{}</span>',
            color,
            obj.get_status_display()
        )
    status_badge.short_description = "Delivery Status"

    def created_at_date(self, obj):
        return obj.created_at.strftime('%d/%m/%Y %H:%M')
    created_at_date.short_description = "Created"
    created_at_date.admin_order_field = 'created_at'

    @admin.action(description='Re-offer selected pending deliveries to partners')
    def rebroadcast(self, request, queryset):
        offered = 0
        for delivery in queryset.filter(status=DeliveryStatus.PENDING):
            offered += len(AssignmentService.broadcast(delivery.order_id))
        self.message_user(request, f"{offered} new offers sent.")

    @admin.action(description='Cancel selected deliveries')
    def cancel_deliveries(self, request, queryset):
        cancelled = 0
        for delivery in queryset.exclude(status__in=TERMINAL_STATUSES):
            try:
                StatusTransitionService.transition(
                    delivery.id, DeliveryStatus.CANCELLED, request.user, description="Cancelled by admin"
                )
                cancelled += 1
            except BusinessLogicException as e:
                self.message_user(request, f"Delivery {delivery.id}: {e.message}", level='warning')
        self.message_user(request, f"{cancelled} deliveries cancelled.")


@admin.register(DeliveryNotification)
class DeliveryOfferAdmin(admin.ModelAdmin):
    list_display = ('order', 'delivery_partner', 'status', 'created_at', 'responded_at')
    list_filter = ('status', 'created_at')
    search_fields = ('order__id', 'delivery_partner__user__phone')
    raw_id_fields = ('order', 'delivery', 'delivery_partner')
    readonly_fields = ('notification_data', 'created_at', 'responded_at')


@admin.register(DeliveryStatusHistory)
class DeliveryStatusHistoryAdmin(admin.ModelAdmin):
    list_display = ('delivery', 'status', 'updated_by', 'timestamp')
    list_filter = ('status',)
    search_fields = ('delivery__order__id',)

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(DeliveryLocationTracking)
class DeliveryLocationAdmin(admin.ModelAdmin):
    list_display = ('delivery', 'delivery_partner', 'current_latitude', 'current_longitude', 'is_active', 'timestamp')
    list_filter = ('is_active',)
    raw_id_fields = ('delivery', 'delivery_partner')


@admin.register(DeliveryRoute)
class DeliveryRouteAdmin(admin.ModelAdmin):
    list_display = ('delivery', 'source', 'distance_meters', 'estimated_duration_seconds', 'actual_duration_seconds')
    list_filter = ('source',)
    raw_id_fields = ('delivery',)
