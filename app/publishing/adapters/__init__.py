"""
Adapters for external platform APIs.
"""

from publishing.adapters.tiktok import (
    PostSettings,
    PublishStatus,
    TikTokClient,
    TokenGrant,
    get_tiktok_client,
)

__all__ = [
    "PostSettings",
    "PublishStatus",
    "TikTokClient",
    "TokenGrant",
    "get_tiktok_client",
]
