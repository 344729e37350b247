from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

import pkcs11
import pkcs11.util.ec as ec_util
from pkcs11 import Attribute, KeyType, Mechanism, ObjectClass, SlotFlag

from .config import Pkcs11Config
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
from .public_keys import pkcs11_public_key_to_der

_logger = logging.getLogger("vigil_hsm.pkcs11")


@dataclass(frozen=True)
class MechanismSpec:
    """PKCS#11 key generation and signing parameters for a contract algorithm."""

    key_type: KeyType
    mechanism: Mechanism
    curve: str | None = None


@dataclass(frozen=True)
class SlotInfo:
    """Slot enumeration entry returned by list_slots()."""

    slot_id: int
    description: str
    manufacturer_id: str
    token_label: str
    token_present: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "description": self.description,
            "manufacturer_id": self.manufacturer_id,
            "token_label": self.token_label,
            "token_present": self.token_present,
        }


MECHANISM_SPECS: dict[KeyAlgorithm, MechanismSpec] = {
    KeyAlgorithm.RSA: MechanismSpec(
        key_type=KeyType.RSA,
        mechanism=Mechanism.SHA256_RSA_PKCS,
    ),
    KeyAlgorithm.ECDSA: MechanismSpec(
        key_type=KeyType.EC,
        mechanism=Mechanism.ECDSA_SHA256,
        curve="secp256r1",
    ),
}

_KEY_TYPE_ALGORITHMS: dict[KeyType, KeyAlgorithm] = {
    spec.key_type: algorithm for algorithm, spec in MECHANISM_SPECS.items()
}


def _object_id(obj: pkcs11.Object) -> bytes:
    try:
        value = obj[Attribute.ID]
    except (KeyError, TypeError, pkcs11.exceptions.PKCS11Error):
        return b""
    return bytes(value or b"")


def _key_algorithm(key: pkcs11.Object) -> KeyAlgorithm | None:
    try:
        return _KEY_TYPE_ALGORITHMS.get(key[Attribute.KEY_TYPE])
    except (KeyError, TypeError, pkcs11.exceptions.PKCS11Error):
        # Some providers may not expose KEY_TYPE for loaded objects.
        return None


@dataclass
class _TokenLogin:
    """User login on one token, shared by every adapter with a session there."""

    session: pkcs11.Session
    owned: bool
    users: int = 0


@dataclass
class _LoadedModule:
    lib: pkcs11.lib
    users: int = 0
    logins: dict[int, _TokenLogin] = field(default_factory=dict)


# Login state is token-wide for the whole process, so adapters on one module
# share a login session and a reference count, guarded by _modules_lock.
_modules: dict[str, _LoadedModule] = {}
_modules_lock = threading.Lock()


def _acquire_module(module_path: str) -> _LoadedModule:
    loaded = _modules.get(module_path)
    if loaded is None:
        try:
            lib = pkcs11.lib(module_path)
        except Exception as exc:
            _logger.exception("Failed to load PKCS#11 module path=%s", module_path)
            raise HsmConnectionError(
                f"Failed to load PKCS#11 module '{module_path}': {format_exception(exc)}"
            ) from exc
        loaded = _modules[module_path] = _LoadedModule(lib=lib)
        _logger.debug("Loaded PKCS#11 module path=%s", module_path)
    loaded.users += 1
    return loaded


def _release_module(module_path: str) -> None:
    loaded = _modules.get(module_path)
    if loaded is None:
        return
    loaded.users -= 1
    if loaded.users > 0:
        return

    del _modules[module_path]
    for slot_id in list(loaded.logins):
        _close_login(loaded.logins.pop(slot_id))
    try:
        # C_Finalize also reclaims sessions a failed login or logout left open.
        loaded.lib.finalize()
    except Exception as exc:
        _logger.warning(
            "Suppressed PKCS#11 module finalize failure path=%s: %s",
            module_path,
            format_exception(exc),
        )
    else:
        _logger.debug("Finalized PKCS#11 module path=%s", module_path)


def _acquire_login(loaded: _LoadedModule, slot: pkcs11.Slot, pin: str) -> None:
    login = loaded.logins.get(slot.slot_id)
    if login is None:
        token = slot.get_token()
        try:
            session = token.open(user_pin=pin, rw=True)
            owned = True
        except pkcs11.exceptions.UserAlreadyLoggedIn:
            # Someone else in this process logged in; new sessions inherit it.
            session = token.open(rw=True)
            owned = False
        login = loaded.logins[slot.slot_id] = _TokenLogin(session=session, owned=owned)
        _logger.debug("PKCS#11 token login slot=%s owned=%s", slot.slot_id, owned)
    login.users += 1


def _close_login(login: _TokenLogin) -> None:
    try:
        # Logs the token out first when this process performed the login.
        login.session.close()
    except Exception as exc:
        _logger.warning("Suppressed PKCS#11 logout failure: %s", format_exception(exc))


def _release_login(loaded: _LoadedModule, slot_id: int) -> None:
    login = loaded.logins.get(slot_id)
    if login is None:
        return
    login.users -= 1
    if login.users <= 0:
        del loaded.logins[slot_id]
        _close_login(login)


def _open_session(loaded: _LoadedModule, slot: pkcs11.Slot, pin: str) -> pkcs11.Session:
    try:
        _acquire_login(loaded, slot, pin)
    except Exception as exc:
        _logger.exception("Failed to log in to PKCS#11 token slot=%s", slot.slot_id)
        raise HsmConnectionError(
            f"Failed to open PKCS#11 session: {format_exception(exc)}"
        ) from exc
    try:
        return slot.get_token().open(rw=True)
    except Exception as exc:
        _release_login(loaded, slot.slot_id)
        _logger.exception("Failed to open PKCS#11 session slot=%s", slot.slot_id)
        raise HsmConnectionError(
            f"Failed to open PKCS#11 session: {format_exception(exc)}"
        ) from exc


class Pkcs11Backend(HsmBackend):
    """
    Key backend driving a PKCS#11 module through python-pkcs11.

    Key pairs are token objects: both halves carry the caller label and share
    a CKA_ID derived from the generation time. Private keys are generated
    sensitive and non-extractable. Signatures are returned as lowercase hex.

    Labels are not unique on a token. When several objects of one class share
    a label, lookups resolve to the one with the greatest CKA_ID, which is the
    most recently generated pair, and a warning is logged.

    Adapters on one module share a single login per token, held on its own
    session; each adapter works in a separate session that inherits it. The
    last adapter to close logs out and finalizes the module.
    """

    name = "pkcs11"
    default_algorithm = KeyAlgorithm.RSA
    supported_algorithms = frozenset(MECHANISM_SPECS)

    def __init__(self, config: Pkcs11Config, *, rsa_bits: int = 2048) -> None:
        if rsa_bits not in {2048, 3072, 4096}:
            raise ValueError("RSA key size must be one of: 2048, 3072, 4096.")
        self._config = config
        self._rsa_bits = rsa_bits
        self._module: _LoadedModule | None = None
        self._slot: pkcs11.Slot | None = None
        self._session: pkcs11.Session | None = None

    @property
    def config(self) -> Pkcs11Config:
        return self._config

    @property
    def session(self) -> pkcs11.Session:
        if self._session is None:
            raise HsmOperationError("Session is not open.")
        return self._session

    def is_initialized(self) -> bool:
        return self._session is not None

    def initialize(self) -> None:
        if self._session is not None:
            _logger.debug("PKCS#11 session already open.")
            return

        pin = self._config.resolve_user_pin()
        module_path = self._config.module_path
        with _modules_lock:
            loaded = _acquire_module(module_path)
            try:
                slot = self._resolve_slot(loaded.lib)
                session = _open_session(loaded, slot, pin)
            except Exception:
                _release_module(module_path)
                raise
            self._module = loaded
            self._slot = slot
            self._session = session
        _logger.info("PKCS#11 session opened slot=%s", slot.slot_id)

    def _resolve_slot(self, lib: pkcs11.lib) -> pkcs11.Slot:
        try:
            slots = list(lib.get_slots(token_present=True))
        except Exception as exc:
            _logger.exception("Failed to enumerate PKCS#11 slots.")
            raise HsmConnectionError(
                f"Failed to enumerate PKCS#11 slots: {format_exception(exc)}"
            ) from exc

        token_label = self._config.token_label
        if token_label:
            for slot in slots:
                try:
                    label = slot.get_token().label.strip()
                except pkcs11.exceptions.PKCS11Error:
                    continue
                if label == token_label:
                    _logger.debug("Resolved token_label=%s to slot=%s", token_label, slot.slot_id)
                    return slot
            raise KeyNotFoundError(f"Token with label '{token_label}' not found.")

        slot_no = self._config.slot_no
        if slot_no is not None:
            if not 0 <= slot_no < len(slots):
                raise KeyNotFoundError(
                    f"Slot index {slot_no} not found ({len(slots)} slots with a token)."
                )
            return slots[slot_no]

        if not slots:
            raise KeyNotFoundError("No PKCS#11 slots with a present token are available.")
        return slots[0]

    def close(self) -> None:
        with _modules_lock:
            was_open = self._session is not None
            if self._session is not None:
                try:
                    self._session.close()
                except Exception as exc:
                    _logger.warning(
                        "Suppressed PKCS#11 session teardown failure: %s",
                        format_exception(exc),
                    )
            if self._module is not None:
                if self._slot is not None:
                    _release_login(self._module, self._slot.slot_id)
                _release_module(self._config.module_path)

            self._session = None
            self._slot = None
            self._module = None
        if was_open:
            _logger.info("PKCS#11 session closed.")
        else:
            _logger.debug("PKCS#11 session already closed.")

    def _find_objects(self, label: str, object_class: ObjectClass) -> list[pkcs11.Object]:
        try:
            return list(
                self.session.get_objects(
                    {Attribute.CLASS: object_class, Attribute.LABEL: label}
                )
            )
        except Exception as exc:
            _logger.exception("Failed to search objects label=%s class=%s", label, object_class)
            raise HsmOperationError(
                f"Failed to search for '{label}': {format_exception(exc)}"
            ) from exc

    def _find_key(self, label: str, object_class: ObjectClass) -> pkcs11.Object:
        matches = self._find_objects(label, object_class)
        kind = "Private" if object_class == ObjectClass.PRIVATE_KEY else "Public"
        if not matches:
            _logger.debug("%s key not found label=%s", kind, label)
            raise KeyNotFoundError(f"{kind} key '{label}' not found.")
        if len(matches) > 1:
            _logger.warning(
                "%d %s keys share label=%s; using the newest by CKA_ID",
                len(matches),
                kind.lower(),
                label,
            )
        return max(matches, key=_object_id)

    def find_private_key(self, label: str) -> pkcs11.PrivateKey:
        self.initialize()
        return self._find_key(require_label(label), ObjectClass.PRIVATE_KEY)

    def find_public_key(self, label: str) -> pkcs11.PublicKey:
        self.initialize()
        return self._find_key(require_label(label), ObjectClass.PUBLIC_KEY)

    def generate_key_pair(
        self, label: str, algorithm: KeyAlgorithm | str | None = None
    ) -> GeneratedKeyPair:
        label = require_label(label)
        resolved = self.resolve_algorithm(algorithm)
        spec = MECHANISM_SPECS[resolved]
        self.initialize()

        key_id = new_key_id()
        public_template = {
            Attribute.LABEL: label,
            Attribute.TOKEN: True,
            Attribute.VERIFY: True,
        }
        private_template = {
            Attribute.LABEL: label,
            Attribute.TOKEN: True,
            Attribute.PRIVATE: True,
            Attribute.SENSITIVE: True,
            Attribute.EXTRACTABLE: False,
            Attribute.SIGN: True,
        }
        try:
            if spec.key_type == KeyType.RSA:
                public_key, _private_key = self.session.generate_keypair(
                    KeyType.RSA,
                    self._rsa_bits,
                    id=bytes.fromhex(key_id),
                    store=True,
                    public_template=public_template,
                    private_template=private_template,
                )
            else:
                parameters = self.session.create_domain_parameters(
                    KeyType.EC,
                    {Attribute.EC_PARAMS: ec_util.encode_named_curve_parameters(spec.curve)},
                    local=True,
                )
                public_key, _private_key = parameters.generate_keypair(
                    id=bytes.fromhex(key_id),
                    store=True,
                    public_template=public_template,
                    private_template=private_template,
                )
            public_key_hex = pkcs11_public_key_to_der(public_key).hex()
        except Exception as exc:
            _logger.exception(
                "Failed to generate keypair label=%s algorithm=%s", label, resolved.value
            )
            raise KeyGenerationError(
                f"Failed to generate {resolved.value} key pair '{label}': "
                f"{format_exception(exc)}"
            ) from exc

        _logger.info(
            "Generated keypair label=%s algorithm=%s key_id=%s", label, resolved.value, key_id
        )
        return GeneratedKeyPair(
            label=label,
            algorithm=resolved,
            public_key_hex=public_key_hex,
            key_id=key_id,
        )

    def _signing_algorithm(
        self, key: pkcs11.Object, algorithm: KeyAlgorithm | str | None
    ) -> KeyAlgorithm:
        key_algorithm = _key_algorithm(key)
        if algorithm is None:
            return key_algorithm or self.default_algorithm
        requested = self.resolve_algorithm(algorithm)
        if key_algorithm is not None and key_algorithm is not requested:
            raise SigningError(
                f"Algorithm '{requested.value}' does not match key type "
                f"'{key_algorithm.value}'."
            )
        return requested

    def sign(
        self, label: str, payload: bytes | str, algorithm: KeyAlgorithm | str | None = None
    ) -> str:
        data = coerce_payload(payload)
        if algorithm is not None:
            self.resolve_algorithm(algorithm)
        private_key = self.find_private_key(label)
        resolved = self._signing_algorithm(private_key, algorithm)

        try:
            signature = private_key.sign(data, mechanism=MECHANISM_SPECS[resolved].mechanism)
        except Exception as exc:
            _logger.exception("Signing failed label=%s algorithm=%s", label, resolved.value)
            raise SigningError(
                f"Signing failed for '{label}' ({resolved.value}): {format_exception(exc)}"
            ) from exc

        _logger.info(
            "Signed payload label=%s algorithm=%s signature_size=%d",
            label,
            resolved.value,
            len(signature),
        )
        return bytes(signature).hex()

    def verify(
        self,
        label: str,
        payload: bytes | str,
        signature: str,
        algorithm: KeyAlgorithm | str | None = None,
    ) -> bool:
        if algorithm is not None:
            self.resolve_algorithm(algorithm)
        public_key = self.find_public_key(label)

        try:
            data = coerce_payload(payload)
            signature_bytes = bytes.fromhex(signature)
            resolved = self._signing_algorithm(public_key, algorithm)
        except (MalformedInputError, SigningError, TypeError, ValueError) as exc:
            _logger.warning(
                "Signature verification rejected input label=%s: %s",
                label,
                format_exception(exc),
            )
            return False

        try:
            verified = public_key.verify(
                data,
                signature_bytes,
                mechanism=MECHANISM_SPECS[resolved].mechanism,
            )
        except pkcs11.exceptions.SignatureInvalid:
            verified = False
        except Exception as exc:
            _logger.warning(
                "Signature verification errored label=%s algorithm=%s: %s",
                label,
                resolved.value,
                format_exception(exc),
            )
            return False

        _logger.info(
            "Verified signature label=%s algorithm=%s result=%s",
            label,
            resolved.value,
            bool(verified),
        )
        return bool(verified)

    def delete_key_pair(self, label: str) -> None:
        label = require_label(label)
        self.initialize()
        objects = self._find_objects(label, ObjectClass.PRIVATE_KEY)
        objects.extend(self._find_objects(label, ObjectClass.PUBLIC_KEY))
        if not objects:
            raise KeyNotFoundError(f"Key pair '{label}' not found.")

        try:
            for obj in objects:
                obj.destroy()
        except Exception as exc:
            _logger.exception("Failed to delete keypair label=%s", label)
            raise DeletionError(
                f"Failed to delete key pair '{label}': {format_exception(exc)}"
            ) from exc
        _logger.info("Deleted keypair label=%s objects=%d", label, len(objects))

    def get_public_key(self, label: str) -> str:
        public_key = self.find_public_key(label)
        try:
            return pkcs11_public_key_to_der(public_key).hex()
        except Exception as exc:
            raise HsmOperationError(
                f"Unable to export public key '{label}': {format_exception(exc)}"
            ) from exc

    def list_keys(self) -> list[KeyInfo]:
        self.initialize()
        try:
            private_keys = list(
                self.session.get_objects({Attribute.CLASS: ObjectClass.PRIVATE_KEY})
            )
            result = [
                KeyInfo(
                    label=obj[Attribute.LABEL] or "",
                    key_id=_object_id(obj).hex(),
                    algorithm=_key_algorithm(obj),
                )
                for obj in private_keys
            ]
        except Exception as exc:
            _logger.exception("Failed to list keys.")
            raise HsmOperationError(f"Failed to list keys: {format_exception(exc)}") from exc
        return sorted(result, key=lambda info: (info.label, info.key_id))

    def list_slots(self) -> list[SlotInfo]:
        self.initialize()
        if self._module is None:
            raise HsmOperationError("PKCS#11 module is not loaded.")
        lib = self._module.lib
        try:
            result: list[SlotInfo] = []
            for slot in lib.get_slots(token_present=False):
                token_present = bool(slot.flags & SlotFlag.TOKEN_PRESENT)
                token_label = slot.get_token().label.strip() if token_present else ""
                result.append(
                    SlotInfo(
                        slot_id=slot.slot_id,
                        description=slot.slot_description.strip(),
                        manufacturer_id=slot.manufacturer_id.strip(),
                        token_label=token_label,
                        token_present=token_present,
                    )
                )
        except Exception as exc:
            _logger.exception("Failed to list slots.")
            raise HsmOperationError(f"Failed to list slots: {format_exception(exc)}") from exc
        return result
