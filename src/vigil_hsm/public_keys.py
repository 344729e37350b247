"""Normalize backend public keys to hex-encoded DER SubjectPublicKeyInfo."""

from __future__ import annotations

import base64
import binascii

import pkcs11
from asn1crypto import core, keys, pem
from pkcs11 import Attribute, KeyType

from .contract import KeyAlgorithm

# SubjectPublicKeyInfo header for a raw 32-byte Ed25519 key (RFC 8410).
_ED25519_SPKI_PREFIX = bytes.fromhex("302a300506032b6570032100")


def _load_pem_or_der(data: bytes | str, expected_pem_type: str) -> bytes:
    if isinstance(data, str):
        payload = data.encode("utf-8")
    else:
        payload = data

    if pem.detect(payload):
        pem_type, _headers, der_bytes = pem.unarmor(payload)
        if pem_type != expected_pem_type:
            raise ValueError(
                f"Expected PEM type '{expected_pem_type}', received '{pem_type}'."
            )
        return der_bytes
    return payload


def pkcs11_public_key_to_public_key_info(
    public_key: pkcs11.PublicKey,
) -> keys.PublicKeyInfo:
    key_type = public_key[Attribute.KEY_TYPE]
    if key_type == KeyType.RSA:
        modulus = int.from_bytes(public_key[Attribute.MODULUS], byteorder="big")
        exponent = int.from_bytes(
            public_key[Attribute.PUBLIC_EXPONENT], byteorder="big"
        )
        return keys.PublicKeyInfo(
            {
                "algorithm": {"algorithm": "rsa"},
                "public_key": keys.RSAPublicKey(
                    {
                        "modulus": modulus,
                        "public_exponent": exponent,
                    }
                ),
            }
        )

    if key_type == KeyType.EC:
        ec_params = public_key[Attribute.EC_PARAMS]
        ec_point = public_key[Attribute.EC_POINT]
        try:
            # SoftHSM and most modules wrap CKA_EC_POINT in a DER OCTET STRING.
            ec_point = core.OctetString.load(ec_point).native
        except ValueError:
            pass
        return keys.PublicKeyInfo(
            {
                "algorithm": {
                    "algorithm": "ec",
                    "parameters": keys.ECDomainParameters.load(ec_params),
                },
                "public_key": ec_point,
            }
        )

    raise ValueError(f"Unsupported PKCS#11 public key type: {key_type}")


def pkcs11_public_key_to_der(public_key: pkcs11.PublicKey) -> bytes:
    return pkcs11_public_key_to_public_key_info(public_key).dump()


def transit_public_key_to_der(public_key: str, algorithm: KeyAlgorithm) -> bytes:
    """
    Convert the public_key field of a transit key version to DER.

    Vault returns PEM for RSA and ECDSA keys and bare base64 for Ed25519.
    """
    if algorithm is KeyAlgorithm.ED25519:
        try:
            raw = base64.b64decode(public_key.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise ValueError("Invalid base64 Ed25519 public key.") from exc
        if len(raw) != 32:
            raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}.")
        return _ED25519_SPKI_PREFIX + raw

    der = _load_pem_or_der(public_key, "PUBLIC KEY")
    info = keys.PublicKeyInfo.load(der)
    key_algorithm = info["algorithm"]["algorithm"].native
    expected = "rsa" if algorithm is KeyAlgorithm.RSA else "ec"
    if key_algorithm != expected:
        raise ValueError(
            f"Expected a {expected} public key for {algorithm.value}, got {key_algorithm}."
        )
    return info.dump()


def public_key_hex_to_pem(public_key_hex: str) -> bytes:
    return pem.armor("PUBLIC KEY", bytes.fromhex(public_key_hex))
