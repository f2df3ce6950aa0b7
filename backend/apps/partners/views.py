from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from rest_framework import status

from .serializers import DeliveryPartnerSerializer, PartnerAvailabilitySerializer
from .services import PartnerService


def _profile_or_none(user):
    return getattr(user, "delivery_partner_profile", None)


class MyPartnerProfileAPIView(APIView):
    """
    Partner app home: profile, approval state and current load.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request):
        profile = _profile_or_none(request.user)
        if profile is None:
            return Response(
                {"error": {"code": "not_a_partner", "message": "User is not a registered delivery partner"}},
                status=status.HTTP_403_FORBIDDEN,
            )
        return Response(DeliveryPartnerSerializer(profile).data)


class PartnerAvailabilityAPIView(APIView):
    """
    Toggle Online/Offline status.
    """
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = PartnerAvailabilitySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        profile = _profile_or_none(request.user)
        if profile is None:
            return Response(
                {"error": {"code": "not_a_partner", "message": "User is not a registered delivery partner"}},
                status=status.HTTP_403_FORBIDDEN,
            )

        available = serializer.validated_data["is_available"]
        PartnerService.set_availability(profile, available)

        return Response({
            "status": "availability updated",
            "is_available": available
        })
