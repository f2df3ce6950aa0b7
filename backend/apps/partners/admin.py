from django.contrib import admin
from django.contrib.auth import get_user_model
from django.utils.html import format_html
from import_export import resources, fields
from import_export.widgets import ForeignKeyWidget
from import_export.admin import ImportExportModelAdmin

from .models import DeliveryPartner
from .services import PartnerService

User = get_user_model()


class DeliveryPartnerResource(resources.ModelResource):
    user = fields.Field(
        column_name='user_phone',
        attribute='user',
        widget=ForeignKeyWidget(User, 'phone')
    )

    class Meta:
        model = DeliveryPartner
        fields = (
            'id', 'user', 'vehicle_type', 'vehicle_number', 'status', 'is_active',
            'is_available', 'total_deliveries', 'total_earnings', 'created_at',
        )
        export_order = fields


@admin.register(DeliveryPartner)
class DeliveryPartnerAdmin(ImportExportModelAdmin):
    resource_class = DeliveryPartnerResource
    list_display = ('user', 'vehicle_type', 'status_badge', 'is_available', 'is_active', 'total_deliveries')
    list_filter = ('status', 'is_available', 'is_active', 'vehicle_type')
    search_fields = ('user__phone', 'user__first_name', 'vehicle_number')
    list_select_related = ('user',)
    raw_id_fields = ('user', 'approved_by')
    readonly_fields = ('approval_date', 'total_deliveries', 'total_earnings', 'created_at')
    actions = ['approve_partners', 'mark_offline']

    @admin.display(description="Status")
    def status_badge(self, obj):
        colors = {'pending': 'orange', 'approved': 'green', 'rejected': 'red'}
        return format_html(
            '<span style="color: {}; font-weight: bold;">{}</span>',
            colors.get(obj.status, 'gray'),
            obj.get_status_display()
        )

    @admin.action(description='Approve selected partners')
    def approve_partners(self, request, queryset):
        for profile in queryset:
            PartnerService.approve(profile, approved_by=request.user)
        self.message_user(request, f"{queryset.count()} partners approved.")

    @admin.action(description='Force selected partners offline')
    def mark_offline(self, request, queryset):
        updated = queryset.update(is_available=False)
        self.message_user(request, f"{updated} partners marked offline.")
