# apps/accounts/authentication.py
from rest_framework_simplejwt.authentication import JWTAuthentication
from rest_framework_simplejwt.exceptions import InvalidToken, AuthenticationFailed
from django.core.cache import cache


def blocklist_key(jti):
    return f"blocklist:{jti}"


class SecureJWTAuthentication(JWTAuthentication):
    """
    Extends JWT Authentication with forceful logout (revocation via the cache blocklist).
    Shared by the HTTP API and the WebSocket handshake.
    """
    def get_validated_token(self, raw_token):
        try:
            validated_token = super().get_validated_token(raw_token)
        except InvalidToken:
            raise InvalidToken("Token is invalid or expired")

        jti = validated_token.get('jti')
        if jti and cache.get(blocklist_key(jti)):
            raise AuthenticationFailed("This session has been logged out.")

        return validated_token

    def authenticate_raw(self, raw_token):
        """
        Validates a bare token string (no Authorization header).
        Returns (user, validated_token); raises InvalidToken / AuthenticationFailed.
        """
        if isinstance(raw_token, str):
            raw_token = raw_token.encode()
        validated_token = self.get_validated_token(raw_token)
        return self.get_user(validated_token), validated_token
