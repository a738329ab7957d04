#!/usr/bin/env python3
"""Generate secrets for a new deployment.

Usage:
    # Print a fresh ENCRYPTION_KEY line ready for .env
    python scripts/generate_encryption_key.py

    # Also print a JWT_SECRET line
    python scripts/generate_encryption_key.py --with-jwt-secret

    # Print only the raw key (for piping into a secret manager)
    python scripts/generate_encryption_key.py --raw

Rotating ENCRYPTION_KEY or JWT_SECRET invalidates every issued token; all
users will have to sign in again.
"""
from __future__ import annotations

import argparse
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from haroval.service.cipher import generate_key  # noqa: E402


def main():
    parser = argparse.ArgumentParser(
        description="Generate an AES-256-GCM token encryption key for Haroval",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--raw",
        action="store_true",
        help="Print only the base64 key, without the ENCRYPTION_KEY= prefix",
    )
    parser.add_argument(
        "--with-jwt-secret",
        action="store_true",
        help="Also print a JWT_SECRET line",
    )
    args = parser.parse_args()

    key = generate_key()
    if args.raw:
        print(key)
        return

    print("Add the following to your .env file:\n")
    print(f"ENCRYPTION_KEY={key}")
    if args.with_jwt_secret:
        print(f"JWT_SECRET={secrets.token_urlsafe(64)}")
    print("\nKeep these values secret and never commit them to version control.")


if __name__ == "__main__":
    main()
