from __future__ import annotations

import logging
from enum import Enum

from .config import Pkcs11Config, VaultConfig
from .contract import HsmBackend
from .exceptions import HsmConfigurationError
from .pkcs11_backend import Pkcs11Backend
from .vault_backend import VaultTransitBackend

_logger = logging.getLogger("vigil_hsm.selector")


class BackendKind(str, Enum):
    PKCS11 = "pkcs11"
    VAULT = "vault"

    @classmethod
    def parse(cls, value: "BackendKind | str") -> "BackendKind":
        if isinstance(value, BackendKind):
            return value
        normalized = str(value).strip().lower()
        # SoftHSM is the usual local PKCS#11 module.
        if normalized == "softhsm":
            return cls.PKCS11
        for member in cls:
            if member.value == normalized:
                return member
        raise HsmConfigurationError(
            f"Unknown backend '{value}'. Available: pkcs11, softhsm, vault"
        )


def create_backend(
    kind: BackendKind | str,
    config: Pkcs11Config | VaultConfig | None = None,
) -> HsmBackend:
    """
    Construct the adapter for kind without connecting it.

    When config is omitted it is read from the environment.
    """
    resolved = BackendKind.parse(kind)
    if resolved is BackendKind.PKCS11:
        if config is None:
            config = Pkcs11Config.from_env()
        if not isinstance(config, Pkcs11Config):
            raise HsmConfigurationError(
                f"pkcs11 backend requires Pkcs11Config, got {type(config).__name__}."
            )
        backend: HsmBackend = Pkcs11Backend(config)
    else:
        if config is None:
            config = VaultConfig.from_env()
        if not isinstance(config, VaultConfig):
            raise HsmConfigurationError(
                f"vault backend requires VaultConfig, got {type(config).__name__}."
            )
        backend = VaultTransitBackend(config)

    _logger.debug("Selected backend=%s", backend.name)
    return backend
