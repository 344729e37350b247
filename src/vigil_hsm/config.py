from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import HsmConfigurationError

DEFAULT_VAULT_URL = "http://127.0.0.1:8200"
DEFAULT_TRANSIT_MOUNT = "transit"
DEFAULT_VAULT_TIMEOUT = 30

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Pkcs11Config:
    """Runtime configuration for PKCS#11 module access."""

    module_path: str
    token_label: str | None = None
    slot_no: int | None = None
    user_pin: str | None = field(default=None, repr=False)
    user_pin_env: str = "HSM_USER_PIN"

    @classmethod
    def from_env(cls) -> "Pkcs11Config":
        module_path = os.environ.get("HSM_PKCS11_MODULE")
        token_label = os.environ.get("HSM_TOKEN_LABEL") or None
        slot_raw = os.environ.get("HSM_SLOT")
        user_pin_env = os.environ.get("HSM_USER_PIN_ENV", "HSM_USER_PIN")

        if not module_path:
            raise HsmConfigurationError("HSM_PKCS11_MODULE is required.")
        if not Path(module_path).exists():
            raise HsmConfigurationError(
                f"PKCS#11 module path does not exist: {module_path}"
            )

        slot_no: int | None = None
        if slot_raw:
            try:
                slot_no = int(slot_raw)
            except ValueError as exc:
                raise HsmConfigurationError(
                    f"HSM_SLOT must be an integer, got: {slot_raw}"
                ) from exc
            if slot_no < 0:
                raise HsmConfigurationError(f"HSM_SLOT must be >= 0, got: {slot_raw}")

        return cls(
            module_path=module_path,
            token_label=token_label,
            slot_no=slot_no,
            user_pin_env=user_pin_env,
        )

    def resolve_user_pin(self) -> str:
        if self.user_pin:
            return self.user_pin
        pin = os.environ.get(self.user_pin_env)
        if not pin:
            raise HsmConfigurationError(f"{self.user_pin_env} is required.")
        return pin


@dataclass(frozen=True)
class VaultConfig:
    """Runtime configuration for a Vault transit secrets engine."""

    url: str = DEFAULT_VAULT_URL
    token: str | None = field(default=None, repr=False)
    token_env: str = "VAULT_TOKEN"
    mount_point: str = DEFAULT_TRANSIT_MOUNT
    namespace: str | None = None
    verify: bool | str = True
    timeout: int = DEFAULT_VAULT_TIMEOUT

    @classmethod
    def from_env(cls) -> "VaultConfig":
        url = os.environ.get("VAULT_ADDR", DEFAULT_VAULT_URL)
        token_env = os.environ.get("VAULT_TOKEN_ENV", "VAULT_TOKEN")
        mount_point = os.environ.get("VIGIL_VAULT_TRANSIT_MOUNT", DEFAULT_TRANSIT_MOUNT)
        namespace = os.environ.get("VAULT_NAMESPACE") or None
        ca_cert = os.environ.get("VAULT_CACERT")
        skip_verify = os.environ.get("VAULT_SKIP_VERIFY", "").strip().lower()
        timeout_raw = os.environ.get("VIGIL_VAULT_TIMEOUT", str(DEFAULT_VAULT_TIMEOUT))

        if not url.startswith(("http://", "https://")):
            raise HsmConfigurationError(
                f"VAULT_ADDR must be an http(s) URL, got: {url}"
            )
        mount_point = mount_point.strip("/")
        if not mount_point:
            raise HsmConfigurationError("VIGIL_VAULT_TRANSIT_MOUNT must not be empty.")

        try:
            timeout = int(timeout_raw)
        except ValueError as exc:
            raise HsmConfigurationError(
                f"VIGIL_VAULT_TIMEOUT must be an integer, got: {timeout_raw}"
            ) from exc
        if timeout <= 0:
            raise HsmConfigurationError(
                f"VIGIL_VAULT_TIMEOUT must be > 0, got: {timeout_raw}"
            )

        verify: bool | str = True
        if skip_verify in _TRUE_VALUES:
            verify = False
        elif ca_cert:
            if not Path(ca_cert).exists():
                raise HsmConfigurationError(f"VAULT_CACERT does not exist: {ca_cert}")
            verify = ca_cert

        return cls(
            url=url,
            token_env=token_env,
            mount_point=mount_point,
            namespace=namespace,
            verify=verify,
            timeout=timeout,
        )

    def token_value(self) -> str:
        if self.token:
            return self.token
        token = os.environ.get(self.token_env)
        if not token:
            raise HsmConfigurationError(f"{self.token_env} is required.")
        return token
