"""Hardware-backed asymmetric key operations over PKCS#11 and Vault transit."""

from .config import Pkcs11Config, VaultConfig
from .contract import GeneratedKeyPair, HsmBackend, KeyAlgorithm, KeyInfo
from .exceptions import (
    DeletionError,
    HsmClientError,
    HsmConfigurationError,
    HsmConnectionError,
    HsmOperationError,
    KeyGenerationError,
    KeyNotFoundError,
    MalformedInputError,
    SigningError,
    UnsupportedAlgorithmError,
)
from .logging_utils import configure_logging
from .pkcs11_backend import MECHANISM_SPECS, MechanismSpec, Pkcs11Backend, SlotInfo
from .public_keys import public_key_hex_to_pem
from .selector import BackendKind, create_backend
from .vault_backend import TRANSIT_KEY_TYPES, VaultTransitBackend

__all__ = [
    "MECHANISM_SPECS",
    "TRANSIT_KEY_TYPES",
    "BackendKind",
    "DeletionError",
    "GeneratedKeyPair",
    "HsmBackend",
    "HsmClientError",
    "HsmConfigurationError",
    "HsmConnectionError",
    "HsmOperationError",
    "KeyAlgorithm",
    "KeyGenerationError",
    "KeyInfo",
    "KeyNotFoundError",
    "MalformedInputError",
    "MechanismSpec",
    "Pkcs11Backend",
    "Pkcs11Config",
    "SigningError",
    "SlotInfo",
    "UnsupportedAlgorithmError",
    "VaultConfig",
    "VaultTransitBackend",
    "configure_logging",
    "create_backend",
    "public_key_hex_to_pem",
]
