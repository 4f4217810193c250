from .consent import ConsentDecision, ConsentRecord, ConsentState
from .lineage import LineageEntry
from .sync import SyncRequest, SyncResponse

__all__ = [
    "ConsentDecision",
    "ConsentRecord",
    "ConsentState",
    "LineageEntry",
    "SyncRequest",
    "SyncResponse",
]
