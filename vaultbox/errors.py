# vaultbox/errors.py
"""
Error taxonomy for the emergency-access core.

Each error carries the HTTP status the API reports it with. Precondition
failures (409s) are final answers, not transient faults: callers must not retry.
"""


class VaultError(Exception):
    status_code = 400
    default_message = "request could not be processed"

    def __init__(self, message=None):
        super().__init__(message or self.default_message)


class NotFound(VaultError):
    status_code = 404
    default_message = "not found"


class Forbidden(VaultError):
    status_code = 403
    default_message = "access denied"


class NotATrustedContact(Forbidden):
    default_message = "not a trusted contact"


class AccessDenied(Forbidden):
    default_message = "emergency access denied"


class InvalidToken(VaultError):
    status_code = 401
    default_message = "invalid or expired access token"


class Unauthorized(VaultError):
    status_code = 401
    default_message = "unauthorized"


class AlreadyResolved(VaultError):
    status_code = 409
    default_message = "access request already resolved"


class DuplicatePendingRequest(VaultError):
    status_code = 409
    default_message = "an access request is already pending for this contact"


class AlreadyHasContact(VaultError):
    status_code = 409
    default_message = "a trusted contact is already designated"


class InvalidContactState(VaultError):
    status_code = 409
    default_message = "trusted contact is not in a state that allows this"


class DecryptionFailed(VaultError):
    default_message = "decryption failed"


class InvalidPeriod(VaultError):
    status_code = 422
    default_message = "period is out of range"
