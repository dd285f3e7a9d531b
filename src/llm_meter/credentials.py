import os
from typing import Mapping

import keyring
import structlog
from keyring.errors import KeyringError, PasswordDeleteError

from llm_meter.config import normalize_provider_name
from llm_meter.errors import KeyringUnavailableError, NoCredentialError

logger = structlog.get_logger()

SERVICE_NAME = "llm-meter"


def env_var_name(provider: "str") -> "str":
    """
    maps a provider name to its API key variable, e.g.
    'openai' -> 'OPENAI_API_KEY'.
    """
    return f"{normalize_provider_name(provider).upper().replace('-', '_')}_API_KEY"


def _entry_user(provider: "str") -> "str":
    return f"provider:{normalize_provider_name(provider)}"


class CredentialStore:
    """
    CredentialStore resolves provider API keys, checking the OS
    keyring first and the <PROVIDER>_API_KEY environment variable
    second. A broken or missing keyring backend only disables the
    first step.
    """

    def __init__(
        self,
        service_name: "str" = SERVICE_NAME,
        environ: "Mapping[str, str] | None" = None,
    ) -> "None":
        self._service = service_name
        self._environ = environ

    def _env(self) -> "Mapping[str, str]":
        return os.environ if self._environ is None else self._environ

    def _keyring_get(self, provider: "str") -> "str | None":
        try:
            return keyring.get_password(self._service, _entry_user(provider))
        except KeyringError as exc:
            raise KeyringUnavailableError(f"keyring read failed: {exc}") from exc

    def get_api_key(self, provider: "str") -> "str":
        provider = normalize_provider_name(provider)

        try:
            value = self._keyring_get(provider)
        except KeyringUnavailableError as exc:
            logger.warning("keyring_unavailable", provider=provider, error=str(exc))
            value = None

        if value:
            return value

        value = self._env().get(env_var_name(provider), "")
        if value:
            return value

        raise NoCredentialError(provider)

    def has_api_key(self, provider: "str") -> "bool":
        try:
            self.get_api_key(provider)
        except NoCredentialError:
            return False
        return True

    def set_api_key(self, provider: "str", key: "str") -> "None":
        try:
            keyring.set_password(self._service, _entry_user(provider), key)
        except KeyringError as exc:
            raise KeyringUnavailableError(f"keyring write failed: {exc}") from exc
        logger.info("api_key_stored", provider=normalize_provider_name(provider))

    def delete_api_key(self, provider: "str") -> "None":
        """
        removes the keyring entry. A missing entry is not an error.
        """
        try:
            keyring.delete_password(self._service, _entry_user(provider))
        except PasswordDeleteError:
            return
        except KeyringError as exc:
            raise KeyringUnavailableError(f"keyring delete failed: {exc}") from exc
