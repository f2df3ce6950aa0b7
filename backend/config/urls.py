# config/urls.py
from django.contrib import admin
from django.urls import path, include
from django.conf import settings
from django.conf.urls.static import static
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView

urlpatterns = [
    # Monitoring
    path('', include('django_prometheus.urls')),
    path('health/', include('apps.core.urls')),

    # Admin
    path('admin/', admin.site.urls),

    # API Routes
    path('api/auth/', include('apps.accounts.urls')),
    path('api/partners/', include('apps.partners.urls')),
    path('api/', include('apps.pricing.urls')),
    path('api/', include('apps.notifications.urls')),
    path('api/', include('apps.delivery.urls')),

    # API Documentation
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/docs/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
]

if settings.DEBUG:
    urlpatterns += static(settings.MEDIA_URL, document_root=settings.MEDIA_ROOT)
    urlpatterns += static(settings.STATIC_URL, document_root=settings.STATIC_ROOT)
