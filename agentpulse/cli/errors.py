"""User-facing CLI errors."""


class CliUsageError(ValueError):
    """Base class for user-facing CLI configuration and usage errors."""


class ConfigLoadError(CliUsageError):
    """Raised when the monitor configuration cannot be loaded."""

    def __init__(self, details: str) -> None:
        super().__init__(f"Could not load config: {details}")


class InvalidProviderError(CliUsageError):
    """Raised when a hook names a provider the monitor does not know."""

    def __init__(self, value: str, allowed: str) -> None:
        super().__init__(f"Invalid provider '{value}'. Allowed values: {allowed}.")


class InvalidPayloadError(CliUsageError):
    """Raised when a hook payload is not a usable JSON object."""

    def __init__(self, details: str) -> None:
        super().__init__(f"Invalid hook payload: {details}")
