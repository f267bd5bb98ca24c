"""
errors.py — Error taxonomy for the DropVault core.

Crypto and token errors surface to the caller. Scheduler and notification
failures are logged where they happen and never reach request handlers.
"""


class DropVaultError(Exception):
    """Base class for every error raised by the core."""


class AuthenticationFailed(DropVaultError):
    """Wrong password or secret. Terminal for the request, never retried."""


class NotFound(DropVaultError):
    """No matching file or share token."""


class Expired(DropVaultError):
    """Share token is past its expiration date."""


class Exhausted(DropVaultError):
    """Share token has no downloads left."""


class Forbidden(DropVaultError):
    """Token secret does not match the stored hash."""


class InvalidShareRequest(DropVaultError):
    """Malformed share creation input."""


class InvalidSchedule(DropVaultError):
    """Cron expression could not be parsed. The previous schedule keeps running."""


class StorageFailure(DropVaultError):
    """Blob or persistence I/O error."""


# Everything a share link can fail with that should look the same from outside
SHARE_ACCESS_ERRORS = (NotFound, Expired, Exhausted, Forbidden, AuthenticationFailed)
