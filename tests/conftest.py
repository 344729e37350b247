from __future__ import annotations

import base64
import hashlib
import hmac
import os
from dataclasses import dataclass, field
from typing import Any

import hvac
import hvac.exceptions
import pkcs11
import pkcs11.util.ec as ec_util
import pytest
import requests
from asn1crypto import core, keys, pem
from pkcs11 import Attribute, KeyType, ObjectClass, SlotFlag, UserType

from vigil_hsm import Pkcs11Config, VaultConfig, pkcs11_backend

FAKE_PIN = "123456"
FAKE_VAULT_TOKEN = "dev-token"


# --- In-memory PKCS#11 driver -------------------------------------------------


class FakeObject:
    def __init__(self, token: "FakeToken", attrs: dict[Attribute, Any], secret: bytes) -> None:
        self._token = token
        self.attrs = attrs
        self._secret = secret

    def __getitem__(self, key: Attribute) -> Any:
        if key not in self.attrs:
            raise pkcs11.exceptions.AttributeTypeInvalid()
        return self.attrs[key]

    def destroy(self) -> None:
        if self._token.fail_destroy:
            raise pkcs11.exceptions.ActionProhibited()
        self._token.objects.remove(self)

    def sign(self, data: bytes, mechanism: Any = None) -> bytes:
        self._token.mechanisms.append(mechanism)
        return hmac.new(self._secret, data, hashlib.sha256).digest()

    def verify(self, data: bytes, signature: bytes, mechanism: Any = None) -> bool:
        self._token.mechanisms.append(mechanism)
        if len(signature) != 32:
            raise pkcs11.exceptions.SignatureLenRange()
        expected = hmac.new(self._secret, data, hashlib.sha256).digest()
        if not hmac.compare_digest(expected, signature):
            raise pkcs11.exceptions.SignatureInvalid()
        return True


class FakeDomainParameters:
    def __init__(self, session: "FakeSession", attrs: dict[Attribute, Any]) -> None:
        self._session = session
        self._attrs = attrs

    def generate_keypair(self, **kwargs: Any) -> tuple[FakeObject, FakeObject]:
        return self._session._create_pair(
            KeyType.EC,
            {
                Attribute.EC_PARAMS: self._attrs[Attribute.EC_PARAMS],
                Attribute.EC_POINT: core.OctetString(b"\x04" + os.urandom(64)).dump(),
            },
            **kwargs,
        )


class FakeSession:
    def __init__(self, token: "FakeToken") -> None:
        self.token = token
        self.user_type = UserType.NOBODY
        self.closed = False

    def get_objects(self, attrs: dict[Attribute, Any]):
        for obj in list(self.token.objects):
            # Private objects are only visible while the token is logged in.
            if obj.attrs.get(Attribute.PRIVATE) and not self.token.logged_in:
                continue
            if all(obj.attrs.get(key) == value for key, value in attrs.items()):
                yield obj

    def _create_pair(
        self,
        key_type: KeyType,
        public_material: dict[Attribute, Any],
        *,
        id: bytes | None = None,
        store: bool = True,
        public_template: dict[Attribute, Any] | None = None,
        private_template: dict[Attribute, Any] | None = None,
    ) -> tuple[FakeObject, FakeObject]:
        if self.token.fail_generate:
            raise pkcs11.exceptions.DeviceMemory()
        secret = os.urandom(32)
        common = {Attribute.KEY_TYPE: key_type, Attribute.ID: id}
        public = FakeObject(
            self.token,
            {
                Attribute.CLASS: ObjectClass.PUBLIC_KEY,
                **common,
                **public_material,
                **(public_template or {}),
            },
            secret,
        )
        private = FakeObject(
            self.token,
            {Attribute.CLASS: ObjectClass.PRIVATE_KEY, **common, **(private_template or {})},
            secret,
        )
        self.token.objects.extend([public, private])
        return public, private

    def generate_keypair(self, key_type: KeyType, bits: int, **kwargs: Any):
        modulus = (1 << (bits - 1)) | int.from_bytes(os.urandom(bits // 8), "big")
        return self._create_pair(
            key_type,
            {
                Attribute.MODULUS: modulus.to_bytes(bits // 8, "big"),
                Attribute.PUBLIC_EXPONENT: b"\x01\x00\x01",
            },
            **kwargs,
        )

    def create_domain_parameters(self, key_type: KeyType, attrs: dict, local: bool = True):
        return FakeDomainParameters(self, attrs)

    def close(self) -> None:
        # Mirrors Session.close(): C_Logout must succeed before C_CloseSession.
        if self.user_type != UserType.NOBODY:
            self.token.logout()
        if self.token.fail_close:
            raise pkcs11.exceptions.SessionClosed()
        self.closed = True


class FakeToken:
    def __init__(self, label: str, pin: str = FAKE_PIN) -> None:
        self.label = label
        self.pin = pin
        self.objects: list[FakeObject] = []
        self.mechanisms: list[Any] = []
        self.sessions: list[FakeSession] = []
        self.logged_in = False
        self.fail_close = False
        self.fail_logout = False
        self.fail_destroy = False
        self.fail_generate = False

    @property
    def open_sessions(self) -> list[FakeSession]:
        return [session for session in self.sessions if not session.closed]

    def open(self, user_pin: str | None = None, rw: bool = False) -> FakeSession:
        # C_OpenSession happens before C_Login, so a failed login leaks the handle.
        session = FakeSession(self)
        self.sessions.append(session)
        if user_pin is not None:
            if self.logged_in:
                raise pkcs11.exceptions.UserAlreadyLoggedIn()
            if user_pin != self.pin:
                raise pkcs11.exceptions.PinIncorrect()
            self.logged_in = True
            session.user_type = UserType.USER
        return session

    def logout(self) -> None:
        if self.fail_logout or not self.logged_in:
            raise pkcs11.exceptions.UserNotLoggedIn()
        self.logged_in = False

    def reset(self) -> None:
        for session in self.sessions:
            session.closed = True
        self.logged_in = False


class FakeSlot:
    def __init__(self, slot_id: int, token: FakeToken | None) -> None:
        self.slot_id = slot_id
        self.slot_description = f"Fake slot {slot_id}   "
        self.manufacturer_id = "Vigil Test  "
        self.flags = SlotFlag.TOKEN_PRESENT if token is not None else SlotFlag(0)
        self._token = token

    def get_token(self) -> FakeToken:
        if self._token is None:
            raise pkcs11.exceptions.TokenNotPresent()
        return self._token


class FakeLib:
    def __init__(self, slots: list[FakeSlot]) -> None:
        self.slots = slots
        self.finalize_calls = 0
        self.fail_finalize = False

    def get_slots(self, token_present: bool = False) -> list[FakeSlot]:
        if token_present:
            return [slot for slot in self.slots if slot.flags & SlotFlag.TOKEN_PRESENT]
        return list(self.slots)

    def finalize(self) -> None:
        self.finalize_calls += 1
        if self.fail_finalize:
            raise pkcs11.exceptions.GeneralError()
        # C_Finalize closes every session and drops every login.
        for slot in self.slots:
            if slot._token is not None:
                slot._token.reset()


@dataclass
class FakePkcs11Module:
    lib: FakeLib
    tokens: dict[str, FakeToken]
    loads: list[str] = field(default_factory=list)

    def load(self, path: str) -> FakeLib:
        self.loads.append(path)
        return self.lib


@pytest.fixture
def fake_pkcs11(monkeypatch: pytest.MonkeyPatch) -> FakePkcs11Module:
    alpha = FakeToken("alpha-token")
    vigil = FakeToken("vigil-token")
    module = FakePkcs11Module(
        lib=FakeLib([FakeSlot(0, None), FakeSlot(11, alpha), FakeSlot(42, vigil)]),
        tokens={"alpha-token": alpha, "vigil-token": vigil},
    )
    monkeypatch.setattr(pkcs11, "lib", module.load)
    monkeypatch.setattr(pkcs11_backend, "_modules", {})
    return module


@pytest.fixture
def pkcs11_config() -> Pkcs11Config:
    return Pkcs11Config(
        module_path="/fake/libsofthsm2.so",
        token_label="vigil-token",
        user_pin=FAKE_PIN,
    )


# --- In-memory Vault transit engine -------------------------------------------


def _fake_public_key(key_type: str) -> str:
    if key_type == "ed25519":
        return base64.b64encode(os.urandom(32)).decode("ascii")
    if key_type.startswith("rsa"):
        modulus = (1 << 2047) | int.from_bytes(os.urandom(256), "big")
        info = keys.PublicKeyInfo(
            {
                "algorithm": {"algorithm": "rsa"},
                "public_key": keys.RSAPublicKey(
                    {"modulus": modulus, "public_exponent": 65537}
                ),
            }
        )
    else:
        info = keys.PublicKeyInfo(
            {
                "algorithm": {
                    "algorithm": "ec",
                    "parameters": keys.ECDomainParameters.load(
                        ec_util.encode_named_curve_parameters("secp256r1")
                    ),
                },
                "public_key": b"\x04" + os.urandom(64),
            }
        )
    return pem.armor("PUBLIC KEY", info.dump()).decode("ascii")


@dataclass
class FakeTransitKey:
    key_type: str
    secrets: dict[int, bytes]
    public_keys: dict[int, str]
    deletion_allowed: bool = False


class FakeVaultServer:
    KEY_TYPES = {"rsa-2048", "ecdsa-p256", "ed25519", "aes256-gcm96"}

    def __init__(self) -> None:
        self.token = FAKE_VAULT_TOKEN
        self.keys: dict[str, FakeTransitKey] = {}
        self.sealed = False
        self.down = False
        self.clients: list["FakeVaultClient"] = []
        self.fail_next: Exception | None = None
        self.mount_points: list[str] = []

    def _check(self, mount_point: str) -> None:
        self.mount_points.append(mount_point)
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc

    def _require(self, name: str, message: str) -> FakeTransitKey:
        key = self.keys.get(name)
        if key is None:
            raise hvac.exceptions.InvalidRequest(message.format(name=name))
        return key

    def rotate(self, name: str) -> int:
        key = self.keys[name]
        version = max(key.secrets) + 1
        key.secrets[version] = os.urandom(32)
        key.public_keys[version] = _fake_public_key(key.key_type)
        return version

    def _signature(self, key: FakeTransitKey, version: int, data: bytes) -> str:
        raw = hmac.new(key.secrets[version], data, hashlib.sha256).digest()
        return f"vault:v{version}:{base64.b64encode(raw).decode('ascii')}"


class FakeTransit:
    def __init__(self, server: FakeVaultServer) -> None:
        self._server = server

    def create_key(self, name: str, key_type: str, exportable: bool, mount_point: str):
        self._server._check(mount_point)
        if key_type not in self._server.KEY_TYPES:
            raise hvac.exceptions.InvalidRequest(f"unknown key type {key_type}")
        if name in self._server.keys:
            return {"warnings": [f"key {name} already existed"]}
        self._server.keys[name] = FakeTransitKey(
            key_type=key_type,
            secrets={1: os.urandom(32)},
            public_keys={1: _fake_public_key(key_type)},
        )
        return None

    def read_key(self, name: str, mount_point: str):
        self._server._check(mount_point)
        key = self._server.keys.get(name)
        if key is None:
            raise hvac.exceptions.InvalidPath()
        return {
            "data": {
                "type": key.key_type,
                "latest_version": max(key.secrets),
                "keys": {
                    str(version): {"public_key": public_key}
                    for version, public_key in key.public_keys.items()
                },
            }
        }

    def sign_data(self, name: str, hash_input: str, mount_point: str):
        self._server._check(mount_point)
        key = self._server._require(name, "signing key not found")
        data = base64.b64decode(hash_input)
        return {"data": {"signature": self._server._signature(key, max(key.secrets), data)}}

    def verify_signed_data(self, name: str, hash_input: str, signature: str, mount_point: str):
        self._server._check(mount_point)
        key = self._server._require(name, "signature verification key not found")
        parts = signature.split(":")
        if len(parts) != 3 or parts[0] != "vault" or not parts[1].startswith("v"):
            raise hvac.exceptions.InvalidRequest("invalid signature format")
        version = int(parts[1][1:])
        if version not in key.secrets:
            raise hvac.exceptions.InvalidRequest("invalid key version")
        data = base64.b64decode(hash_input)
        expected = self._server._signature(key, version, data)
        return {"data": {"valid": hmac.compare_digest(expected, signature)}}

    def update_key_configuration(self, name: str, deletion_allowed: bool, mount_point: str):
        self._server._check(mount_point)
        key = self._server._require(name, "no existing key named {name} could be found")
        key.deletion_allowed = deletion_allowed

    def delete_key(self, name: str, mount_point: str):
        self._server._check(mount_point)
        key = self._server.keys.get(name)
        if key is None:
            return None
        if not key.deletion_allowed:
            raise hvac.exceptions.InvalidRequest("deletion is not allowed for this key")
        del self._server.keys[name]
        return None

    def list_keys(self, mount_point: str):
        self._server._check(mount_point)
        if not self._server.keys:
            raise hvac.exceptions.InvalidPath()
        return {"data": {"keys": sorted(self._server.keys)}}


class _FakeSys:
    def __init__(self, server: FakeVaultServer) -> None:
        self._server = server

    def is_sealed(self) -> bool:
        if self._server.down:
            raise requests.exceptions.ConnectionError("connection refused")
        return self._server.sealed


class _FakeSecrets:
    def __init__(self, server: FakeVaultServer) -> None:
        self.transit = FakeTransit(server)


class _FakeAdapter:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeVaultClient:
    def __init__(self, server: FakeVaultServer, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self._server = server
        self.sys = _FakeSys(server)
        self.secrets = _FakeSecrets(server)
        self.adapter = _FakeAdapter()

    def is_authenticated(self) -> bool:
        if self._server.sealed:
            raise hvac.exceptions.VaultDown("Vault is sealed")
        return self.kwargs.get("token") == self._server.token


@pytest.fixture
def fake_vault(monkeypatch: pytest.MonkeyPatch) -> FakeVaultServer:
    server = FakeVaultServer()

    def _client(**kwargs: Any) -> FakeVaultClient:
        client = FakeVaultClient(server, **kwargs)
        server.clients.append(client)
        return client

    monkeypatch.setattr(hvac, "Client", _client)
    return server


@pytest.fixture
def vault_config() -> VaultConfig:
    return VaultConfig(url="http://127.0.0.1:8200", token=FAKE_VAULT_TOKEN)
