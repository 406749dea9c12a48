"""
URL configuration for publishing app.

Publishing - Upload:
    POST /chunks/                          - Upload one chunk
    POST /sessions/{id}/finalize/          - Merge a complete upload

Publishing - Jobs:
    POST /jobs/                            - Publish media
    GET /jobs/{id}/                        - Get job status

Publishing - Credentials:
    GET /credentials/status/               - Get connection status
"""

from django.urls import path

from publishing.views import (
    ChunkUploadView,
    CredentialStatusView,
    PublishJobCreateView,
    PublishJobDetailView,
    SessionFinalizeView,
)

app_name = "publishing"

urlpatterns = [
    # Upload
    path("chunks/", ChunkUploadView.as_view(), name="chunk-upload"),
    path(
        "sessions/<uuid:session_id>/finalize/",
        SessionFinalizeView.as_view(),
        name="session-finalize",
    ),
    # Jobs
    path("jobs/", PublishJobCreateView.as_view(), name="job-create"),
    path("jobs/<uuid:job_id>/", PublishJobDetailView.as_view(), name="job-detail"),
    # Credentials
    path(
        "credentials/status/",
        CredentialStatusView.as_view(),
        name="credential-status",
    ),
]
