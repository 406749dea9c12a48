"""
API views for chunked uploads and publishing.

Provides:
- ChunkUploadView: Receive one chunk of a resumable upload
- SessionFinalizeView: Merge a complete upload into an artifact
- PublishJobCreateView: Submit an artifact to the platform
- PublishJobDetailView: Get the status of a publish job
- CredentialStatusView: Report the health of the platform connection

Errors raised by the services are mapped to HTTP statuses by
error_response(); bodies only carry the sanitized message and error code.
"""

from __future__ import annotations

import logging

from django.conf import settings
from django.db import transaction
from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.parsers import FormParser, JSONParser, MultiPartParser
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.circuit_breaker import CircuitOpenError
from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

from publishing.exceptions import (
    PollingTimeoutError,
    ReconnectRequiredError,
    TransientUpstreamError,
)
from publishing.models import Artifact, PublishJob
from publishing.serializers import (
    ChunkReceiptSerializer,
    ChunkUploadSerializer,
    ErrorSerializer,
    FinalizeResultSerializer,
    PublishJobSerializer,
    PublishRequestSerializer,
    TokenStatusSerializer,
)
from publishing.services import (
    ChunkStore,
    MergeAssembler,
    PublishSubmitter,
    get_credential_manager,
)
from publishing.state_machines import PublishJobState
from publishing.tasks import cleanup_publish_job, merge_upload_session, poll_publish_job

logger = logging.getLogger(__name__)

# Checked in order; first match wins
ERROR_STATUS_MAP: list[tuple[type[BaseApplicationError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ReconnectRequiredError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (PollingTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (CircuitOpenError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (TransientUpstreamError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ExternalServiceError, status.HTTP_502_BAD_GATEWAY),
]


def error_response(error: BaseApplicationError) -> Response:
    """Translate a service error into a sanitized API response."""
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_class, mapped in ERROR_STATUS_MAP:
        if isinstance(error, error_class):
            http_status = mapped
            break

    log = logger.warning if http_status < 500 else logger.error
    log(
        "Request failed: %s",
        error.error_code,
        extra={"error_code": error.error_code, "details": error.details},
    )
    return Response(error.to_dict(), status=http_status)


class ChunkUploadView(APIView):
    """
    Receive one chunk of a resumable upload.

    POST /api/v1/publishing/chunks/

    Request:
        Content-Type: multipart/form-data
        - session_id: Client-chosen upload id
        - index: Zero-based chunk index
        - total_chunks: Number of chunks in the upload
        - chunk: Chunk bytes

    Response:
        200 OK: Chunk stored; ``complete`` tells whether all chunks arrived
        400 Bad Request: Invalid chunk, foreign or closed session, or expired session
    """

    permission_classes = [IsAuthenticated]
    parser_classes = [MultiPartParser, FormParser]

    @extend_schema(
        operation_id="upload_publish_chunk",
        summary="Upload chunk",
        description=(
            "Store one chunk of a resumable upload. Chunks may arrive in any "
            "order and may be re-sent. When the last missing chunk arrives the "
            "merge is queued automatically."
        ),
        request=ChunkUploadSerializer,
        responses={
            200: OpenApiResponse(response=ChunkReceiptSerializer, description="Chunk stored"),
            400: OpenApiResponse(response=ErrorSerializer, description="Invalid chunk or session"),
        },
        tags=["Publishing - Upload"],
    )
    def post(self, request):
        serializer = ChunkUploadSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        try:
            receipt = ChunkStore().receive_chunk(
                session_id=data["session_id"],
                index=data["index"],
                total_chunks=data["total_chunks"],
                owner=request.user,
                data=data["chunk"].read(),
            )
        except BaseApplicationError as e:
            return error_response(e)

        if receipt.complete and settings.PUBLISHING_AUTO_MERGE:
            session_id = str(receipt.session_id)
            transaction.on_commit(lambda: merge_upload_session.delay(session_id))

        return Response(ChunkReceiptSerializer(receipt).data, status=status.HTTP_200_OK)


class SessionFinalizeView(APIView):
    """
    Merge a complete upload.

    POST /api/v1/publishing/sessions/{session_id}/finalize/

    Idempotent: finalizing an already merged session returns the same artifact.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="finalize_publish_session",
        summary="Finalize upload",
        request=None,
        responses={
            200: OpenApiResponse(response=FinalizeResultSerializer, description="Artifact ready"),
            400: OpenApiResponse(response=ErrorSerializer, description="Unknown or incomplete upload"),
            409: OpenApiResponse(response=ErrorSerializer, description="Merge already running"),
        },
        tags=["Publishing - Upload"],
    )
    def post(self, request, session_id):
        try:
            result = MergeAssembler().finalize_session(session_id, request.user)
        except BaseApplicationError as e:
            return error_response(e)

        return Response(FinalizeResultSerializer(result).data, status=status.HTTP_200_OK)


class PublishJobCreateView(APIView):
    """
    Submit media to the platform.

    POST /api/v1/publishing/jobs/

    Response:
        201 Created: Job recorded. ``state`` is ``submitted`` when the platform
            accepted the request, ``failed`` (with ``last_error``) when it did not
        400 Bad Request: Invalid request
        409 Conflict: Account must be reconnected
    """

    permission_classes = [IsAuthenticated]
    parser_classes = [JSONParser, FormParser]

    @extend_schema(
        operation_id="create_publish_job",
        summary="Publish media",
        request=PublishRequestSerializer,
        responses={
            201: OpenApiResponse(response=PublishJobSerializer, description="Job recorded"),
            400: OpenApiResponse(response=ErrorSerializer, description="Invalid request"),
            404: OpenApiResponse(response=ErrorSerializer, description="Unknown artifact"),
            409: OpenApiResponse(response=ErrorSerializer, description="Reconnect required"),
        },
        tags=["Publishing - Jobs"],
    )
    def post(self, request):
        serializer = PublishRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        artifact = None
        artifact_url = data.get("artifact_url")
        if "artifact_id" in data:
            artifact = Artifact.objects.filter(
                pk=data["artifact_id"], owner=request.user, deleted_at__isnull=True
            ).first()
            if artifact is None:
                return error_response(NotFoundError("Artifact not found"))
            artifact_url = artifact.public_url

        try:
            job = PublishSubmitter().submit_publish(
                owner=request.user,
                artifact_url=artifact_url,
                media_type=data["media_type"],
                caption=data.get("caption", ""),
                post_settings=data.get("settings"),
                artifact=artifact,
            )
        except BaseApplicationError as e:
            return error_response(e)

        job_id = str(job.id)
        if job.state == PublishJobState.SUBMITTED:
            transaction.on_commit(lambda: poll_publish_job.delay(job_id))
        else:
            transaction.on_commit(lambda: cleanup_publish_job.delay(job_id))

        return Response(PublishJobSerializer(job).data, status=status.HTTP_201_CREATED)


class PublishJobDetailView(APIView):
    """
    Get a publish job.

    GET /api/v1/publishing/jobs/{job_id}/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_publish_job",
        summary="Get publish job",
        responses={
            200: PublishJobSerializer,
            404: OpenApiResponse(response=ErrorSerializer, description="Job not found"),
        },
        tags=["Publishing - Jobs"],
    )
    def get(self, request, job_id):
        job = PublishJob.objects.filter(pk=job_id, owner=request.user).first()
        if job is None:
            return error_response(NotFoundError("Publish job not found"))
        return Response(PublishJobSerializer(job).data)


class CredentialStatusView(APIView):
    """
    Report the health of the user's platform connection.

    GET /api/v1/publishing/credentials/status/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_credential_status",
        summary="Get connection status",
        responses={200: TokenStatusSerializer},
        tags=["Publishing - Credentials"],
    )
    def get(self, request):
        report = get_credential_manager().get_token_status(request.user.pk)
        return Response(TokenStatusSerializer(report.to_dict()).data)
