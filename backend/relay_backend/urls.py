from django.urls import path, include

from .views import health_check, index

urlpatterns = [
    path("", index),
    path("health/", health_check), # Health check endpoint

    # HTTP broadcast to connected WebSocket clients
    path("", include("realtime.urls")),
]
