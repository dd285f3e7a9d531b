class MeterError(Exception):
    """
    MeterError is the base class for every error the meter
    reports to its callers.
    """

    # short reason tag used in refresh reports and metrics labels
    reason: "str" = "error"


class ConfigError(MeterError):
    reason = "config"


class UnsupportedWindowError(MeterError):
    reason = "unsupported_window"

    def __init__(self, window: "object") -> "None":
        self.window = window
        super().__init__(f"Unsupported window '{window}'. Use 1d, 7d, or 30d.")


class UnsupportedProviderError(MeterError):
    reason = "unsupported_provider"

    def __init__(self, provider: "str") -> "None":
        self.provider = provider
        super().__init__(f"Unsupported provider '{provider}'.")


class UnsupportedExportFormatError(MeterError):
    reason = "unsupported_format"

    def __init__(self, fmt: "str") -> "None":
        self.format = fmt
        super().__init__(f"Unsupported export format '{fmt}'. Use json or csv.")


class NoCredentialError(MeterError):
    reason = "no_credential"

    def __init__(self, provider: "str") -> "None":
        self.provider = provider
        super().__init__(
            f"No API key found for provider '{provider}'. "
            "Store one with add-provider or set the environment variable."
        )


class KeyringUnavailableError(MeterError):
    reason = "keyring_unavailable"


class NetworkFailureError(MeterError):
    reason = "network"


class FetchError(NetworkFailureError):
    """
    FetchError is raised by adapters when a usage call fails at
    the transport level or returns a non-2xx status.
    """

    def __init__(
        self,
        provider: "str",
        message: "str",
        status_code: "int | None" = None,
    ) -> "None":
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class StorageError(MeterError):
    reason = "storage"


class ProviderNotVerifiedError(MeterError):
    reason = "not_verified"

    def __init__(self, provider: "str") -> "None":
        self.provider = provider
        super().__init__(
            f"Provider '{provider}' has no successful connection test. "
            "Run a connection test before enabling it."
        )
