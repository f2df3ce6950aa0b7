import time

from django.core.cache import cache
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from rest_framework import status
from rest_framework_simplejwt.tokens import RefreshToken, UntypedToken
from rest_framework_simplejwt.exceptions import TokenError

from .authentication import blocklist_key
from .serializers import UserSerializer, LogoutSerializer


class MeAPIView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        return Response(UserSerializer(request.user).data)


class LogoutAPIView(APIView):
    """
    Revokes the presented access token (and refresh token, if sent).
    Revoked tokens are refused by HTTP and by the WebSocket auth handshake.
    """
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = LogoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        auth_header = request.headers.get("Authorization", "")
        parts = auth_header.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            try:
                token = UntypedToken(parts[1])
            except TokenError:
                token = None
            if token is not None:
                ttl = int(token["exp"] - time.time())
                if ttl > 0:
                    cache.set(blocklist_key(token["jti"]), "true", timeout=ttl)

        refresh = serializer.validated_data.get("refresh")
        if refresh:
            try:
                token = RefreshToken(refresh)
            except TokenError:
                return Response(
                    {"error": {"code": "invalid_token", "message": "Invalid refresh token"}},
                    status=status.HTTP_400_BAD_REQUEST,
                )
            cache.set(blocklist_key(token["jti"]), "true", timeout=86400 * 7)

        return Response({"status": "logged_out"})
