from __future__ import annotations


class HyperWaError(Exception):
    """Base error for the hyperwa bot."""


class ConfigError(HyperWaError):
    """Invalid or missing configuration value."""


class StoreUnavailable(HyperWaError):
    """The session database could not be reached."""


class ArchiveError(HyperWaError):
    """Auth archive could not be built or read."""


class PackError(ArchiveError):
    """A path could not be added to the auth archive."""


class UnpackError(ArchiveError):
    """Archive bytes are malformed or unsafe to extract."""


class CredentialIntegrityError(HyperWaError):
    """
    Restored credentials are unusable.

    Raised when `creds.json` is missing, unparsable, or lacks one of the
    mandatory key fields.
    """

    def __init__(self, message: str, *, missing: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.missing = missing


class TransientDisconnect(HyperWaError):
    """Connection closed for a reason worth retrying."""

    def __init__(self, status_code: int | None = None) -> None:
        super().__init__(f"connection closed (status={status_code})")
        self.status_code = status_code


class PermanentLogout(HyperWaError):
    """The linked device was logged out remotely; re-pairing is required."""
