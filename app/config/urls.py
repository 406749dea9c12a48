"""
URL configuration for the publishing service.

URL Structure:
    /                              - ReDoc API documentation
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (load balancers, Docker)
    /schema/                       - OpenAPI schema (YAML)
    /api/v1/publishing/            - Publishing endpoints
        chunks/                    - Upload one chunk of a session
        sessions/{id}/finalize/    - Merge a complete session into an artifact
        jobs/                      - Submit an artifact to the platform
        jobs/{id}/                 - Publish job status
        credentials/status/        - Platform token status for current user
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
api_v1_patterns = [
    path("publishing/", include("publishing.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    # Admin
    path("admin/", admin.site.urls),
    # Health check (Docker, Kubernetes, load balancers)
    path("health/", health_check, name="health_check"),
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

admin.site.site_header = "Publishing Admin"
admin.site.site_title = "Publishing Admin"
admin.site.index_title = "Uploads, credentials and publish jobs"
