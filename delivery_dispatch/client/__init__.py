"""
Mobile-side offline sync layer.

Usage:
    from delivery_dispatch.client import OfflineSyncAgent

    async with OfflineSyncAgent.from_settings() as agent:
        await agent.enqueue_or_send("PATCH", "/orders/abc", {"status": "IN_DELIVERY"})
"""

from delivery_dispatch.client.local_store import LocalStore, LocalStoreUnavailable
from delivery_dispatch.client.sync_agent import (
    AppState,
    DrainReport,
    FailedMutation,
    OfflineSyncAgent,
    PermanentFailure,
    QueuedMutation,
    ReadResult,
    SendResult,
    SyncError,
    TransientNetworkFailure,
)

__all__ = [
    "AppState",
    "DrainReport",
    "FailedMutation",
    "LocalStore",
    "LocalStoreUnavailable",
    "OfflineSyncAgent",
    "PermanentFailure",
    "QueuedMutation",
    "ReadResult",
    "SendResult",
    "SyncError",
    "TransientNetworkFailure",
]
