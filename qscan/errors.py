class QScanError(Exception):
    """Base class for fatal qscan errors."""


class ConfigurationError(QScanError, ValueError):
    """Malformed target/port spec, or nothing left to scan."""


class PrivilegeError(QScanError, PermissionError):
    """Raw probe sockets are not available (ping modes)."""


class PartialResolutionWarning(UserWarning):
    """
    One token of a target spec could not be resolved.
    The run goes on with whatever did resolve.
    """

    def __init__(self, token: str, reason: str):
        super().__init__(f"Could not resolve target '{token}': {reason}")
        self.token = token
        self.reason = reason
