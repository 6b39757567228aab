"""
Cooling engine errors

Local errors (NotFoundError, AlreadyTerminalError, StorageError) are raised to the
caller. SyncError stays inside the reconciler: offline is a supported mode.
"""


class CoolingError(Exception):
    """Base class for cooling engine errors"""


class NotFoundError(CoolingError):
    def __init__(self, session_id: str):
        super().__init__(f"Cooling session not found: {session_id}")
        self.session_id = session_id


class AlreadyTerminalError(CoolingError):
    def __init__(self, session_id: str, status):
        super().__init__(f"Cooling session {session_id} is already {getattr(status, 'value', status)}")
        self.session_id = session_id
        self.status = status


class StorageError(CoolingError):
    """Local store write or read failed"""


class SyncError(CoolingError):
    """Remote store unreachable or rejected the request"""
