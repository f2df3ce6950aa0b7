from rest_framework import generics
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from .models import DeliveryZone
from .serializers import DeliveryZoneSerializer, FeeQuoteSerializer
from .services import DeliveryFeeService


class CalculateDeliveryFeeAPIView(APIView):
    """
    Public fee quote used at checkout.
    """
    permission_classes = [AllowAny]

    def post(self, request):
        quote = DeliveryFeeService.calculate(request.data.get("distance"))
        return Response(FeeQuoteSerializer(quote).data)


class DeliveryZoneListAPIView(generics.ListAPIView):
    permission_classes = [AllowAny]
    pagination_class = None
    serializer_class = DeliveryZoneSerializer
    queryset = DeliveryZone.objects.filter(is_active=True).order_by("max_distance")
