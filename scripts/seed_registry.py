#!/usr/bin/env python3
"""
Seed the document registry (owners, documents, grants).

Reads a JSON manifest and upserts every owner and document by slug, then
records the user grants.  Running it twice is safe.  Optionally prints a
signed JWT for a user so restricted documents can be tried from curl.

Manifest shape:

    {
      "owners": [{"slug": "acme", "name": "Acme Health", "default_chunk_limit": 30,
                  "forced_backend": null}],
      "documents": [{"slug": "smh", "title": "St. Mary's Handbook", "owner": "acme",
                     "access_level": "open", "passcode": null, "forced_backend": null,
                     "filename": "smh.pdf", "year": 2024, "active": true}],
      "grants": [{"user_id": "user-1", "document": "smh"}]
    }

Usage:
    python scripts/seed_registry.py manifest.json
    python scripts/seed_registry.py manifest.json --db database/registry.sqlite
    python scripts/seed_registry.py manifest.json --token-for user-1
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from docqa.auth import create_token
from docqa.config import get_settings
from docqa.infrastructure.registry_store import SQLiteDocumentRegistry

BOLD = "\033[1m"
GREEN = "\033[92m"
RED = "\033[91m"
RESET = "\033[0m"


def seed(registry: SQLiteDocumentRegistry, manifest: dict) -> tuple[int, int, int]:
    """Apply *manifest* to *registry*; returns (owners, documents, grants) written."""
    owners = manifest.get("owners", [])
    documents = manifest.get("documents", [])
    grants = manifest.get("grants", [])

    for owner in owners:
        registry.upsert_owner(
            owner["slug"],
            owner["name"],
            default_chunk_limit=owner.get("default_chunk_limit"),
            forced_backend=owner.get("forced_backend"),
        )

    for doc in documents:
        registry.upsert_document(
            doc["slug"],
            doc["title"],
            doc["owner"],
            access_level=doc.get("access_level", "open"),
            passcode=doc.get("passcode"),
            forced_backend=doc.get("forced_backend"),
            filename=doc.get("filename"),
            year=doc.get("year"),
            active=doc.get("active", True),
        )

    for grant in grants:
        registry.grant(grant["user_id"], grant["document"])

    return len(owners), len(documents), len(grants)


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the document registry from a JSON manifest.")
    parser.add_argument("manifest", type=Path, help="Path to the JSON manifest")
    parser.add_argument("--db", type=Path, default=None, help="Registry database (default: from settings)")
    parser.add_argument("--token-for", default=None, help="Print a signed JWT for this user id")
    args = parser.parse_args()

    settings = get_settings()
    db_path = args.db or settings.registry_db_path

    try:
        manifest = json.loads(args.manifest.read_text())
    except (OSError, json.JSONDecodeError) as e:
        print(f"{RED}Could not read manifest:{RESET} {e}")
        sys.exit(1)

    registry = SQLiteDocumentRegistry(db_path)
    registry.connect()
    try:
        owners, documents, grants = seed(registry, manifest)
    except (KeyError, ValueError) as e:
        print(f"{RED}Seeding failed:{RESET} {e}")
        sys.exit(1)
    finally:
        registry.close()

    print(f"{BOLD}Registry seeded{RESET} at {db_path}")
    print(f"  owners={GREEN}{owners}{RESET} documents={GREEN}{documents}{RESET} grants={GREEN}{grants}{RESET}")

    if args.token_for:
        print()
        print(f"Bearer token for {BOLD}{args.token_for}{RESET}:")
        print(create_token(args.token_for, settings))


if __name__ == "__main__":
    main()
