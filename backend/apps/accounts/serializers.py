# apps/accounts/serializers.py
from rest_framework import serializers
from .models import User


class UserSerializer(serializers.ModelSerializer):
    roles = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = (
            "id",
            "phone",
            "email",
            "first_name",
            "last_name",
            "roles",
            "is_active",
            "created_at"
        )
        read_only_fields = ("id", "phone", "is_active", "created_at")

    def get_roles(self, obj):
        return list(obj.roles.values_list("role", flat=True))


class LogoutSerializer(serializers.Serializer):
    refresh = serializers.CharField(required=False)
