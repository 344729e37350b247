from __future__ import annotations

import argparse
import base64
import binascii
import json
import sys
import time
from pathlib import Path

if __package__ in (None, ""):
    repo_src = Path(__file__).resolve().parents[1] / "src"
    if str(repo_src) not in sys.path:
        sys.path.insert(0, str(repo_src))

try:
    from vigil_hsm import (
        HsmBackend,
        HsmClientError,
        KeyAlgorithm,
        configure_logging,
        create_backend,
        public_key_hex_to_pem,
    )
except ModuleNotFoundError as exc:
    if exc.name in {"pkcs11", "hvac", "asn1crypto"}:
        raise SystemExit(
            f"Missing dependency: {exc.name}\n"
            "Install it with:\n"
            "  python3 -m pip install -e ."
        ) from exc
    raise

BACKEND_CHOICES = ("vault", "pkcs11", "softhsm")
ALGORITHM_CHOICES = tuple(member.value for member in KeyAlgorithm)

HELP_EPILOG = """Examples:
  # Vault dev server (VAULT_ADDR, VAULT_TOKEN)
  python3 examples/vigil_cli.py generate release-key --backend vault --algorithm rsa
  python3 examples/vigil_cli.py sign release-key "$(printf 'Hello' | base64)" --backend vault

  # SoftHSM (HSM_PKCS11_MODULE, HSM_TOKEN_LABEL, HSM_USER_PIN)
  python3 examples/vigil_cli.py demo --backend softhsm
"""


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--backend",
        choices=BACKEND_CHOICES,
        default="vault",
        help="Key backend; connection settings come from the environment.",
    )
    parser.add_argument(
        "--algorithm",
        choices=ALGORITHM_CHOICES,
        default=None,
        help="Key algorithm (default: the backend's own default).",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate, sign, verify and delete keys on a PKCS#11 module or Vault transit.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    parser.add_argument("--verbose", action="store_true", help="Also log to stderr.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser("generate", help="Generate a key pair.")
    generate.add_argument("label")
    generate.add_argument("--pem", action="store_true", help="Print the public key as PEM.")
    _add_common(generate)

    sign = subparsers.add_parser("sign", help="Sign base64-encoded data.")
    sign.add_argument("label")
    sign.add_argument("data_b64", help="Data to sign, base64 encoded.")
    _add_common(sign)

    verify = subparsers.add_parser("verify", help="Verify a signature over base64 data.")
    verify.add_argument("label")
    verify.add_argument("data_b64", help="Signed data, base64 encoded.")
    verify.add_argument("signature", help="Signature exactly as printed by sign.")
    _add_common(verify)

    delete = subparsers.add_parser("delete", help="Delete a key pair.")
    delete.add_argument("label")
    _add_common(delete)

    list_keys = subparsers.add_parser("list", help="List key pairs held by the backend.")
    _add_common(list_keys)

    demo = subparsers.add_parser("demo", help="Generate, sign, verify and delete a throwaway key.")
    demo.add_argument("--message", default="Hello from vigil-hsm!")
    _add_common(demo)
    return parser


def _decode_data(data_b64: str) -> bytes:
    try:
        return base64.b64decode(data_b64.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError("Data must be valid base64.") from exc


def _run_generate(backend: HsmBackend, args: argparse.Namespace) -> int:
    generated = backend.generate_key_pair(args.label, args.algorithm)
    if args.pem:
        print(public_key_hex_to_pem(generated.public_key_hex).decode("ascii"), end="")
    else:
        print(json.dumps(generated.to_dict(), indent=2))
    return 0


def _run_verify(backend: HsmBackend, args: argparse.Namespace) -> int:
    valid = backend.verify(args.label, _decode_data(args.data_b64), args.signature, args.algorithm)
    print(f"Signature valid: {valid}")
    return 0 if valid else 2


def _run_demo(backend: HsmBackend, args: argparse.Namespace) -> int:
    label = f"demo-key-{int(time.time() * 1000)}"
    payload = args.message.encode("utf-8")

    generated = backend.generate_key_pair(label, args.algorithm)
    print(f"Key pair generated: {label} ({generated.algorithm.value})")
    try:
        signature = backend.sign(label, payload, args.algorithm)
        print(f"Payload signed, signature length: {len(signature)}")
        valid = backend.verify(label, payload, signature, args.algorithm)
        print(f"Signature verified: {valid}")
    finally:
        backend.delete_key_pair(label)
        print("Key pair deleted")
    return 0 if valid else 2


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        configure_logging(console=args.verbose)
        with create_backend(args.backend) as backend:
            if args.command == "generate":
                return _run_generate(backend, args)
            if args.command == "sign":
                print(backend.sign(args.label, _decode_data(args.data_b64), args.algorithm))
                return 0
            if args.command == "verify":
                return _run_verify(backend, args)
            if args.command == "delete":
                backend.delete_key_pair(args.label)
                print(f"Deleted key pair: {args.label}")
                return 0
            if args.command == "list":
                for info in backend.list_keys():
                    print(json.dumps(info.to_dict()))
                return 0
            return _run_demo(backend, args)
    except (HsmClientError, ValueError) as exc:
        print(f"vigil CLI error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
