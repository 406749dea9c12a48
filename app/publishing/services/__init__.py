"""
Publishing services.

Pipeline order:
    ChunkStore -> MergeAssembler -> PublishSubmitter -> StatusPoller -> CleanupCoordinator

The CredentialLifecycleManager supplies access tokens to the submitter and
the poller.
"""

from publishing.services.chunk_store import ChunkReceipt, ChunkStore
from publishing.services.cleanup import CleanupCoordinator, CleanupResult
from publishing.services.credentials import (
    AccessToken,
    CredentialCache,
    CredentialLifecycleManager,
    CredentialRecord,
    DatabaseCredentialStore,
    TokenStatusReport,
    get_credential_manager,
    reset_credential_manager,
)
from publishing.services.merge import FinalizeResult, MergeAssembler, sniff_content_type
from publishing.services.poller import StatusPoller
from publishing.services.submitter import PublishSubmitter

__all__ = [
    "AccessToken",
    "ChunkReceipt",
    "ChunkStore",
    "CleanupCoordinator",
    "CleanupResult",
    "CredentialCache",
    "CredentialLifecycleManager",
    "CredentialRecord",
    "DatabaseCredentialStore",
    "FinalizeResult",
    "MergeAssembler",
    "PublishSubmitter",
    "StatusPoller",
    "TokenStatusReport",
    "get_credential_manager",
    "reset_credential_manager",
    "sniff_content_type",
]
