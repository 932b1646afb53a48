"""Error taxonomy shared by the OAuth service, its adapters and the HTTP layer."""

from typing import Optional


class OAuthServiceError(Exception):
    """Base error carrying a stable, client-facing error code."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "message": self.message}


class InvalidArgumentError(OAuthServiceError):
    code = "invalid_argument"
    status_code = 400


class InvalidProviderError(OAuthServiceError):
    code = "invalid_provider"
    status_code = 400

    def __init__(self, provider: str):
        super().__init__(f"Unsupported provider: {provider}")
        self.provider = provider


class UnauthenticatedError(OAuthServiceError):
    code = "unauthenticated"
    status_code = 401


class PermissionDeniedError(OAuthServiceError):
    code = "permission_denied"
    status_code = 403


class NotFoundError(OAuthServiceError):
    code = "not_found"
    status_code = 404


class FailedPreconditionError(OAuthServiceError):
    code = "failed_precondition"
    status_code = 412


class ExpiredStateError(OAuthServiceError):
    code = "expired_state"
    status_code = 410


class InternalError(OAuthServiceError):
    code = "internal"
    status_code = 500


class ConfigurationError(FailedPreconditionError):
    """Raised when credentials or secrets needed for an operation are missing."""


class DecryptionError(FailedPreconditionError):
    """Raised when an encrypted envelope cannot be turned back into plaintext."""


class EnvelopeFormatError(DecryptionError):
    """The stored value is not a well-formed iv:tag:ciphertext envelope."""


class ReconnectRequiredError(DecryptionError):
    """Authentication tag verification failed; the account must be re-connected."""


class ProviderError(OAuthServiceError):
    """An upstream provider call failed.

    Permanent failures (revoked grants, rejected clients) will never succeed on
    retry and surface as ``failed_precondition``. Everything else is treated as
    transient.
    """

    def __init__(
        self,
        message: str,
        permanent: bool = False,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.permanent = permanent
        self.upstream_status = status_code
        self.error_code = error_code
        if permanent:
            self.code = FailedPreconditionError.code
            self.status_code = FailedPreconditionError.status_code


class CallbackError(OAuthServiceError):
    """A callback failed after its OAuth state was read.

    Carries enough of the state for the HTTP layer to send the browser back
    to where it came from.
    """

    def __init__(self, cause: OAuthServiceError, redirect_url: Optional[str], provider: Optional[str]):
        super().__init__(cause.message)
        self.cause = cause
        self.code = cause.code
        self.status_code = cause.status_code
        self.redirect_url = redirect_url
        self.provider = provider
