from __future__ import annotations

import base64
import logging
from typing import Any

import hvac
import hvac.exceptions
import requests

from .config import VaultConfig
from .contract import (
    GeneratedKeyPair,
    HsmBackend,
    KeyAlgorithm,
    KeyInfo,
    coerce_payload,
    new_key_id,
    require_label,
)
from .exceptions import (
    DeletionError,
    HsmConnectionError,
    HsmOperationError,
    KeyGenerationError,
    KeyNotFoundError,
    MalformedInputError,
    SigningError,
    format_exception,
)
from .public_keys import transit_public_key_to_der

_logger = logging.getLogger("vigil_hsm.vault")

TRANSIT_KEY_TYPES: dict[KeyAlgorithm, str] = {
    KeyAlgorithm.RSA: "rsa-2048",
    KeyAlgorithm.ECDSA: "ecdsa-p256",
    KeyAlgorithm.ED25519: "ed25519",
}

_TRANSIT_KEY_ALGORITHMS: dict[str, KeyAlgorithm] = {
    key_type: algorithm for algorithm, key_type in TRANSIT_KEY_TYPES.items()
}

# Transit reports a missing key as 404 on reads and as 400 with one of these
# messages on sign/verify/config writes.
_MISSING_KEY_MARKERS = ("not found", "could be found", "no such key")

_BACKEND_ERRORS = (hvac.exceptions.VaultError, requests.exceptions.RequestException)


def _is_missing_key(exc: Exception) -> bool:
    if isinstance(exc, hvac.exceptions.InvalidPath):
        return True
    if isinstance(exc, hvac.exceptions.InvalidRequest):
        message = str(exc).lower()
        return any(marker in message for marker in _MISSING_KEY_MARKERS)
    return False


def _encode_input(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _latest_version(key_data: dict[str, Any]) -> int | None:
    latest = key_data.get("latest_version")
    if latest is None and key_data.get("keys"):
        latest = max(key_data["keys"], key=int)
    return int(latest) if latest is not None else None


class VaultTransitBackend(HsmBackend):
    """
    Key backend delegating to a HashiCorp Vault transit secrets engine.

    Signatures are Vault's own ``vault:v<N>:<base64>`` strings. They embed the
    key version and must be handed back to verify() exactly as returned.

    verify() answers False for any failure other than a missing key, so an
    unreachable Vault is indistinguishable from an invalid signature there.
    """

    name = "vault"
    default_algorithm = KeyAlgorithm.ED25519
    supported_algorithms = frozenset(TRANSIT_KEY_TYPES)

    def __init__(self, config: VaultConfig) -> None:
        self._config = config
        self._client: hvac.Client | None = None

    @property
    def config(self) -> VaultConfig:
        return self._config

    @property
    def client(self) -> hvac.Client:
        if self._client is None:
            raise HsmOperationError("Vault connection is not initialized.")
        return self._client

    @property
    def _transit(self) -> Any:
        return self.client.secrets.transit

    def is_initialized(self) -> bool:
        return self._client is not None

    def initialize(self) -> None:
        if self._client is not None:
            _logger.debug("Vault connection already initialized.")
            return

        client = hvac.Client(
            url=self._config.url,
            token=self._config.token_value(),
            verify=self._config.verify,
            timeout=self._config.timeout,
            namespace=self._config.namespace,
        )
        try:
            # sys/seal-status answers 200 whether or not Vault is sealed.
            if client.sys.is_sealed():
                raise HsmConnectionError(f"Vault at {self._config.url} is sealed.")
            if not client.is_authenticated():
                raise HsmConnectionError(
                    f"Vault at {self._config.url} rejected the configured token."
                )
        except HsmConnectionError:
            _logger.error("Vault initialization failed url=%s", self._config.url)
            raise
        except Exception as exc:
            _logger.exception("Failed to reach Vault url=%s", self._config.url)
            raise HsmConnectionError(
                f"Failed to initialize Vault connection: {format_exception(exc)}"
            ) from exc

        self._client = client
        _logger.info(
            "Vault connection initialized url=%s mount_point=%s",
            self._config.url,
            self._config.mount_point,
        )

    def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            _logger.debug("Vault connection already closed.")
            return
        try:
            client.adapter.close()
        except Exception as exc:
            _logger.warning(
                "Suppressed Vault adapter teardown failure: %s", format_exception(exc)
            )
        _logger.info("Vault connection closed.")

    def _read_key(self, label: str) -> dict[str, Any]:
        try:
            response = self._transit.read_key(
                name=label, mount_point=self._config.mount_point
            )
        except _BACKEND_ERRORS as exc:
            if _is_missing_key(exc):
                raise KeyNotFoundError(f"Transit key '{label}' not found.") from exc
            _logger.exception("Failed to read transit key label=%s", label)
            raise HsmOperationError(
                f"Failed to read transit key '{label}': {format_exception(exc)}"
            ) from exc
        return response["data"]

    @staticmethod
    def _latest_public_key(label: str, key_data: dict[str, Any]) -> str:
        versions = key_data.get("keys") or {}
        if not versions:
            raise HsmOperationError(f"Transit key '{label}' has no key versions.")
        latest_version = max(versions, key=int)
        public_key = versions[latest_version].get("public_key")
        if not public_key:
            raise HsmOperationError(
                f"Transit key '{label}' version {latest_version} has no public key."
            )
        return public_key

    def generate_key_pair(
        self, label: str, algorithm: KeyAlgorithm | str | None = None
    ) -> GeneratedKeyPair:
        label = require_label(label)
        resolved = self.resolve_algorithm(algorithm)
        key_type = TRANSIT_KEY_TYPES[resolved]
        self.initialize()

        try:
            response = self._transit.create_key(
                name=label,
                key_type=key_type,
                exportable=True,
                mount_point=self._config.mount_point,
            )
            if isinstance(response, dict) and response.get("warnings"):
                _logger.warning(
                    "Vault warnings creating label=%s: %s", label, response["warnings"]
                )
            key_data = self._read_key(label)
            if key_data.get("type") != key_type:
                raise KeyGenerationError(
                    f"Transit key '{label}' already exists with type "
                    f"'{key_data.get('type')}', requested '{key_type}'."
                )
            public_key = self._latest_public_key(label, key_data)
            public_key_hex = transit_public_key_to_der(public_key, resolved).hex()
        except KeyGenerationError:
            _logger.error("Transit key type conflict label=%s", label)
            raise
        except Exception as exc:
            _logger.exception(
                "Failed to generate transit key label=%s algorithm=%s", label, resolved.value
            )
            raise KeyGenerationError(
                f"Failed to generate key pair in Vault '{label}': {format_exception(exc)}"
            ) from exc

        key_id = new_key_id()
        _logger.info(
            "Generated transit key label=%s type=%s key_id=%s", label, key_type, key_id
        )
        return GeneratedKeyPair(
            label=label,
            algorithm=resolved,
            public_key_hex=public_key_hex,
            key_id=key_id,
        )

    def sign(
        self, label: str, payload: bytes | str, algorithm: KeyAlgorithm | str | None = None
    ) -> str:
        label = require_label(label)
        data = coerce_payload(payload)
        if algorithm is not None:
            self.resolve_algorithm(algorithm)
        self.initialize()

        try:
            response = self._transit.sign_data(
                name=label,
                hash_input=_encode_input(data),
                mount_point=self._config.mount_point,
            )
        except _BACKEND_ERRORS as exc:
            if _is_missing_key(exc):
                raise KeyNotFoundError(f"Transit key '{label}' not found.") from exc
            _logger.exception("Transit signing failed label=%s", label)
            raise SigningError(
                f"Failed to sign with Vault key '{label}': {format_exception(exc)}"
            ) from exc

        signature = response["data"]["signature"]
        _logger.info("Signed payload label=%s signature_size=%d", label, len(signature))
        return signature

    def verify(
        self,
        label: str,
        payload: bytes | str,
        signature: str,
        algorithm: KeyAlgorithm | str | None = None,
    ) -> bool:
        label = require_label(label)
        if algorithm is not None:
            self.resolve_algorithm(algorithm)
        try:
            data = coerce_payload(payload)
        except MalformedInputError as exc:
            _logger.warning("Signature verification rejected payload label=%s: %s", label, exc)
            return False
        if not isinstance(signature, str):
            _logger.warning("Signature verification rejected non-string signature label=%s", label)
            return False
        self.initialize()

        try:
            response = self._transit.verify_signed_data(
                name=label,
                hash_input=_encode_input(data),
                signature=signature,
                mount_point=self._config.mount_point,
            )
        except _BACKEND_ERRORS as exc:
            if _is_missing_key(exc):
                raise KeyNotFoundError(f"Transit key '{label}' not found.") from exc
            _logger.warning(
                "Signature verification errored label=%s: %s", label, format_exception(exc)
            )
            return False

        valid = response["data"].get("valid") is True
        _logger.info("Verified signature label=%s result=%s", label, valid)
        return valid

    def delete_key_pair(self, label: str) -> None:
        label = require_label(label)
        self.initialize()

        try:
            self._transit.update_key_configuration(
                name=label,
                deletion_allowed=True,
                mount_point=self._config.mount_point,
            )
            self._transit.delete_key(name=label, mount_point=self._config.mount_point)
        except _BACKEND_ERRORS as exc:
            if _is_missing_key(exc):
                raise KeyNotFoundError(f"Transit key '{label}' not found.") from exc
            _logger.exception("Failed to delete transit key label=%s", label)
            raise DeletionError(
                f"Failed to delete key pair in Vault '{label}': {format_exception(exc)}"
            ) from exc
        _logger.info("Deleted transit key label=%s", label)

    def get_public_key(self, label: str) -> str:
        label = require_label(label)
        self.initialize()
        key_data = self._read_key(label)
        algorithm = _TRANSIT_KEY_ALGORITHMS.get(key_data.get("type", ""))
        if algorithm is None:
            raise HsmOperationError(
                f"Transit key '{label}' has non-signing type '{key_data.get('type')}'."
            )
        try:
            return transit_public_key_to_der(
                self._latest_public_key(label, key_data), algorithm
            ).hex()
        except ValueError as exc:
            raise HsmOperationError(
                f"Unable to decode public key '{label}': {format_exception(exc)}"
            ) from exc

    def list_keys(self) -> list[KeyInfo]:
        self.initialize()
        try:
            response = self._transit.list_keys(mount_point=self._config.mount_point)
        except hvac.exceptions.InvalidPath:
            # Vault answers 404 when the mount holds no keys.
            return []
        except _BACKEND_ERRORS as exc:
            _logger.exception("Failed to list transit keys.")
            raise HsmOperationError(f"Failed to list keys: {format_exception(exc)}") from exc

        result = []
        for label in response["data"].get("keys", []):
            key_data = self._read_key(label)
            result.append(
                KeyInfo(
                    label=label,
                    key_id="",
                    algorithm=_TRANSIT_KEY_ALGORITHMS.get(key_data.get("type", "")),
                    version=_latest_version(key_data),
                )
            )
        return sorted(result, key=lambda info: info.label)
