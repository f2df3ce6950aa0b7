from django import forms
from django.contrib import admin
from django.contrib.auth.admin import UserAdmin
from django.utils.html import format_html
from import_export import resources, fields, widgets
from import_export.admin import ImportExportModelAdmin, ImportExportMixin
from .models import User, UserRole


class PhoneUserCreationForm(forms.ModelForm):
    class Meta:
        model = User
        fields = ('phone', 'first_name', 'last_name', 'email')

    def save(self, commit=True):
        user = super().save(commit=False)
        user.set_unusable_password()
        if commit:
            user.save()
        return user


class UserRoleInline(admin.TabularInline):
    model = UserRole
    extra = 1
    fields = ('role',)


class UserResource(resources.ModelResource):
    class Meta:
        model = User
        import_id_fields = ('phone',)
        fields = ('id', 'phone', 'first_name', 'last_name', 'email', 'is_active', 'is_staff', 'created_at')


class UserRoleResource(resources.ModelResource):
    user = fields.Field(
        column_name='user',
        attribute='user',
        widget=widgets.ForeignKeyWidget(User, 'phone')
    )

    class Meta:
        model = UserRole
        fields = ('id', 'user', 'role')


ROLE_COLORS = {
    'customer': '#6c757d',
    'shopkeeper': '#007bff',
    'delivery_partner': '#28a745',
}


@admin.register(User)
class PhoneUserAdmin(ImportExportMixin, UserAdmin):
    resource_class = UserResource
    add_form = PhoneUserCreationForm

    list_display = ('phone', 'full_name', 'roles_display', 'is_active', 'is_staff', 'created_at')
    list_filter = ('is_active', 'is_staff', 'roles__role')
    search_fields = ('phone', 'email', 'first_name', 'last_name')
    ordering = ('-created_at',)
    list_per_page = 25
    inlines = [UserRoleInline]

    fieldsets = (
        ('Authentication Info', {'fields': ('phone',)}),
        ('Personal Info', {'fields': ('first_name', 'last_name', 'email')}),
        ('Permissions', {'fields': ('is_active', 'is_staff', 'is_superuser', 'groups', 'user_permissions')}),
        ('Important Dates', {'fields': ('last_login', 'created_at'), 'classes': ('collapse',)}),
    )
    add_fieldsets = (
        ('Authentication Info', {'classes': ('wide',), 'fields': ('phone', 'first_name', 'last_name', 'email')}),
    )
    readonly_fields = ('created_at', 'last_login')

    @admin.display(description="Roles")
    def roles_display(self, obj):
        roles = [r.get_role_display() for r in obj.roles.all()]
        if not roles:
            return format_html('<span style="color: orange;">No roles</span>')
        return ", ".join(roles)


@admin.register(UserRole)
class UserRoleAdmin(ImportExportModelAdmin):
    resource_class = UserRoleResource
    list_display = ('user', 'role_badge', 'created_at')
    list_filter = ('role',)
    search_fields = ('user__phone', 'user__first_name', 'user__last_name')
    list_select_related = ('user',)
    raw_id_fields = ('user',)

    @admin.display(description="Role")
    def role_badge(self, obj):
        return format_html(
            '<span style="background-color: {}; color: white; padding: 2px 6px; border-radius: 3px;">{}</span>',
            ROLE_COLORS.get(obj.role, '#6c757d'),
            obj.get_role_display()
        )
