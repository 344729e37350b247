def format_exception(exc: BaseException) -> str:
    details = str(exc).strip()
    if not details and getattr(exc, "args", None):
        details = ", ".join(str(a) for a in exc.args if a)
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__


class HsmClientError(RuntimeError):
    """Base client error."""


class HsmConfigurationError(HsmClientError):
    """Configuration is invalid or incomplete."""


class HsmConnectionError(HsmClientError):
    """The backend could not be reached or refused authentication."""


class UnsupportedAlgorithmError(HsmClientError):
    """The requested algorithm is unknown or not supported by this backend."""


class MalformedInputError(HsmClientError, ValueError):
    """A label, payload or signature could not be interpreted."""


class HsmOperationError(HsmClientError):
    """An HSM operation failed."""


class KeyNotFoundError(HsmOperationError, LookupError):
    """The requested slot, token or key label does not exist."""


class KeyGenerationError(HsmOperationError):
    """The backend rejected key pair generation."""


class SigningError(HsmOperationError):
    """The backend failed to produce a signature."""


class DeletionError(HsmOperationError):
    """The backend failed to delete a key pair."""
