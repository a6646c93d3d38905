class RelayError(Exception):
    """Base class for all errors raised by the CD relay."""

    pass


class TransportError(RelayError):
    """Raised when a call to the builder, gateway, GitHub or audit endpoint fails."""

    pass


class ValidationError(RelayError, ValueError):
    """Raised when a build context or image reference is not acceptable."""

    pass


class ConfigurationError(RelayError):
    """Raised when required configuration is missing or malformed."""

    pass


class EngineError(RelayError):
    """Raised when the build engine reports a failed solve."""

    pass


class CredentialError(RelayError):
    """Raised when an installation token cannot be minted or a status cannot be posted."""

    pass
