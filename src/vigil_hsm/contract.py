from __future__ import annotations

import abc
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

from .exceptions import MalformedInputError, UnsupportedAlgorithmError


class KeyAlgorithm(str, Enum):
    """Algorithm vocabulary shared by every backend."""

    RSA = "rsa"
    ECDSA = "ecdsa"
    ED25519 = "ed25519"

    @classmethod
    def parse(cls, value: "KeyAlgorithm | str") -> "KeyAlgorithm":
        if isinstance(value, KeyAlgorithm):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower().replace("-", "").replace("_", "")
            for member in cls:
                if member.value == normalized:
                    return member
        available = ", ".join(member.value for member in cls)
        raise UnsupportedAlgorithmError(
            f"Unknown key algorithm '{value}'. Available: {available}"
        )


@dataclass(frozen=True)
class GeneratedKeyPair:
    """
    Result of generate_key_pair().

    public_key_hex is the hex-encoded DER SubjectPublicKeyInfo of the new key.
    key_id is informational only: it is not a key-management identifier and
    must not be used to look keys up.
    """

    label: str
    algorithm: KeyAlgorithm
    public_key_hex: str
    key_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "label": self.label,
            "algorithm": self.algorithm.value,
            "public_key_hex": self.public_key_hex,
            "key_id": self.key_id,
        }


@dataclass(frozen=True)
class KeyInfo:
    """
    Listing entry for a key pair held by a backend.

    key_id is the backend object identifier (the PKCS#11 CKA_ID as hex) and is
    empty where the backend has none besides the label. version is the latest
    key version for backends that version keys (Vault transit), else None.
    """

    label: str
    key_id: str
    algorithm: KeyAlgorithm | None
    version: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "key_id": self.key_id,
            "algorithm": self.algorithm.value if self.algorithm else "unknown",
            "version": self.version,
        }


def new_key_id() -> str:
    # Millisecond timestamp first so ids sort by generation time.
    return f"{time.time_ns() // 1_000_000:012x}{secrets.token_hex(4)}"


def coerce_payload(payload: Any) -> bytes:
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    raise MalformedInputError(
        f"Payload must be bytes or str, got {type(payload).__name__}."
    )


def require_label(label: Any) -> str:
    if not isinstance(label, str) or not label.strip():
        raise MalformedInputError("Key label must be a non-empty string.")
    return label


class HsmBackend(abc.ABC):
    """
    Capability contract every key backend satisfies.

    State model: uninitialized -> initialized -> (close) -> uninitialized.
    Every key operation initializes implicitly when needed, and initialize()
    is idempotent. An instance holds mutable session or connection state with
    no locking, so callers must serialize access to it across threads.
    """

    name: ClassVar[str] = "abstract"
    default_algorithm: ClassVar[KeyAlgorithm]
    supported_algorithms: ClassVar[frozenset[KeyAlgorithm]]

    def __enter__(self) -> "HsmBackend":
        self.initialize()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def resolve_algorithm(self, algorithm: KeyAlgorithm | str | None) -> KeyAlgorithm:
        """Map an optional caller algorithm onto one this backend supports."""
        if algorithm is None:
            return self.default_algorithm
        resolved = KeyAlgorithm.parse(algorithm)
        if resolved not in self.supported_algorithms:
            available = ", ".join(
                sorted(member.value for member in self.supported_algorithms)
            )
            raise UnsupportedAlgorithmError(
                f"Algorithm '{resolved.value}' is not supported by the {self.name} "
                f"backend. Available: {available}"
            )
        return resolved

    @abc.abstractmethod
    def initialize(self) -> None:
        """Connect to the backend; a no-op when already initialized."""

    @abc.abstractmethod
    def is_initialized(self) -> bool:
        """Pure state query."""

    @abc.abstractmethod
    def generate_key_pair(
        self, label: str, algorithm: KeyAlgorithm | str | None = None
    ) -> GeneratedKeyPair:
        """Create a key pair named label."""

    @abc.abstractmethod
    def sign(
        self, label: str, payload: bytes | str, algorithm: KeyAlgorithm | str | None = None
    ) -> str:
        """Sign the exact payload bytes and return the backend-native signature."""

    @abc.abstractmethod
    def verify(
        self,
        label: str,
        payload: bytes | str,
        signature: str,
        algorithm: KeyAlgorithm | str | None = None,
    ) -> bool:
        """
        Return whether signature is valid for payload.

        Raises KeyNotFoundError when label does not resolve; every other
        failure yields False.
        """

    @abc.abstractmethod
    def delete_key_pair(self, label: str) -> None:
        """Destroy both halves of the key pair named label."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release resources; safe to call repeatedly or before initialize()."""

    @abc.abstractmethod
    def get_public_key(self, label: str) -> str:
        """Hex DER SubjectPublicKeyInfo of the current public key for label."""

    @abc.abstractmethod
    def list_keys(self) -> list[KeyInfo]:
        """Key pairs held by the backend, sorted by label."""
