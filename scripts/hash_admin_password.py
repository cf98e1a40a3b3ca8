#!/usr/bin/env python3
"""Mint the argon2id hash for ADMIN_PASSWORD_HASH.

Usage:
    # Using environment variables:
    ADMIN_PASSWORD='S3cure!Passphrase' python scripts/hash_admin_password.py

    # Or with command line args:
    python scripts/hash_admin_password.py --password 'S3cure!Passphrase'

    # Let the script pick a strong random password:
    python scripts/hash_admin_password.py --generate

The password must score as strong (length, mixed case, digits, special
characters, no repeated patterns). Weak passwords are refused here, since
login only reports strength.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from ventaro.service.auth import PasswordManager  # noqa: E402


def hash_admin_password(password: str, passwords: PasswordManager | None = None) -> str:
    """Return the argon2id hash of ``password`` or raise ValueError if it is weak."""
    passwords = passwords or PasswordManager()
    strength = passwords.check_strength(password)
    if not strength.is_strong:
        raise ValueError("; ".join(strength.feedback) or "Password is too weak")
    return passwords.hash(password)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate ADMIN_PASSWORD_HASH for the Ventaro admin login",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--generate",
        action="store_true",
        help="Generate a random strong password and print it with its hash",
    )
    parser.add_argument("--length", type=int, default=20, help="Length of a generated password")
    args = parser.parse_args(argv)

    password = args.password
    if args.generate:
        password = PasswordManager.generate_secure_password(args.length)
    if not password:
        print("Error: --password, --generate or ADMIN_PASSWORD environment variable required")
        return 1

    try:
        hashed = hash_admin_password(password)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    if args.generate:
        print(f"ADMIN_PASSWORD={password}")
    print(f"ADMIN_PASSWORD_HASH={hashed}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
