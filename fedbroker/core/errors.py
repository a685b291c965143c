"""Error taxonomy for the token broker."""


class BrokerError(Exception):
    """Base class for all broker failures."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class StorageUnavailable(BrokerError):
    """The key-value store could not be read or written."""


class SigningFailed(BrokerError):
    """The signing key could not produce an assertion."""


class KeyNotInitialized(BrokerError):
    """No signing key material has been generated yet."""

    def __init__(self, message: str = "Public key or key ID not found") -> None:
        super().__init__(message)


class ConfigurationIncomplete(BrokerError):
    """Required broker configuration is missing."""


class InvalidTransition(BrokerError):
    """A lifecycle event is not allowed in the current state."""


class ExchangeFailed(BrokerError):
    """The external authority did not issue a token for a service.

    Attributes:
        service: Service name whose exchange failed
        cause: Underlying error or rejection description
        error_code: OAuth2 error code returned by the authority, if any
        status_code: HTTP status code, if a response was received
    """

    def __init__(
        self,
        service: str,
        cause: str,
        *,
        error_code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.service = service
        self.cause = cause
        self.error_code = error_code
        self.status_code = status_code
        parts = [f"Failed to obtain access token for {service}: {cause}"]
        if error_code:
            parts.append(f"[{error_code}]")
        if status_code is not None:
            parts.append(f"(status {status_code})")
        super().__init__(" ".join(parts))
