from django.urls import re_path

from .views import broadcast_event

urlpatterns = [
    # Accepted with and without the trailing slash
    re_path(r"^broadcast/?$", broadcast_event, name="broadcast"),
]
