from xui_sync.errors import (
    ClientNotFound,
    DecodeError,
    DuplicateEmail,
    DuplicateIdentifier,
    EmptyIdentifier,
    EngineError,
    InboundNotFound,
    LastClientError,
    MutationRejected,
    PortConflict,
    XUISyncError,
)
from xui_sync.live import Outcome, SyncResult

__version__ = "0.1.0"
