"""
Bitaxe Dashboard - Error Types
================================
Exception classes shared by the gateway components.

    ConfigError          -> configuration document missing or unparsable
    KeyFileError         -> token key file missing or incomplete (boot fatal)
    UpstreamError        -> a single upstream device/service call failed
    CredentialStoreError -> access.json missing or unreadable
"""


class ConfigError(Exception):
    """The configuration document could not be loaded."""


class KeyFileError(Exception):
    """The session token key file is missing, unreadable or incomplete."""


class CredentialStoreError(Exception):
    """The credential store (access.json) could not be read."""


class UpstreamError(Exception):
    """
    A call to one upstream endpoint failed.

    Attributes:
        message:     Human readable description, shown on the dashboard tile.
        status_code: Upstream HTTP status when the device answered with a
                     non-2xx code, None for network and parse failures.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
