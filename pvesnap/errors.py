"""Exceptions raised by the Proxmox client, resolver and snapshot engine."""

from typing import List, Optional


class ProxmoxError(Exception):
    """Base class for every pvesnap error. ``kind`` names the error category."""
    kind = 'Error'

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ProxmoxNetworkError(ProxmoxError):
    kind = 'NetworkError'


class ProxmoxAuthError(ProxmoxError):
    kind = 'AuthError'


class ProxmoxAPIError(ProxmoxError):
    kind = 'ApiError'

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        if status_code is not None:
            message = f"HTTP {status_code}: {message}"
        super().__init__(message)


class NotFoundError(ProxmoxError):
    kind = 'NotFoundError'


class AmbiguousNameError(ProxmoxError):
    kind = 'AmbiguousNameError'

    def __init__(self, name: str, candidates: List[int]):
        self.name = name
        self.candidates = sorted(candidates)
        ids = ', '.join(str(c) for c in self.candidates)
        super().__init__(f"Name '{name}' matches multiple guests ({ids}); use the numeric ID instead")


class SnapshotNameError(ProxmoxError):
    kind = 'ValidationError'


class SnapshotExistsError(ProxmoxError):
    kind = 'ValidationError'


class EncryptedDiskError(ProxmoxError):
    kind = 'UnsupportedForEncryptedDiskError'


class TaskFailedError(ProxmoxError):
    kind = 'TaskFailed'

    def __init__(self, upid: str, exit_status: str):
        self.upid = upid
        self.exit_status = exit_status
        super().__init__(exit_status)


class TaskTimeoutError(ProxmoxError):
    # The task may still be running on the node: outcome unknown.
    kind = 'TimeoutError'

    def __init__(self, upid: str, timeout: float):
        self.upid = upid
        self.timeout = timeout
        super().__init__(f"Task {upid} did not finish within {timeout:g} seconds; outcome unknown")


class ConfigError(ProxmoxError):
    kind = 'ConfigError'
