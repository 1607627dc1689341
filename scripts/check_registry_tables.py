"""Registry tables probe.

Checks that the Supabase env vars are present and that every table the class
registry reads from answers a one-row select with the configured key.

Usage:
    python scripts/check_registry_tables.py
"""

import os

from dotenv import load_dotenv
from postgrest.exceptions import APIError
from supabase import create_client

REGISTRY_TABLES = (
    "class_registries",
    "class_objectives",
    "evaluations",
    "class_types",
    "content_classes",
    "profiles",
)


def main() -> int:
    load_dotenv(".env")
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_KEY")

    print("SUPABASE_URL:", url)
    print("SUPABASE_SERVICE_KEY (prefix):", key[:12] + "..." if key else None)

    if not url or not key:
        print("Missing SUPABASE_URL or SUPABASE_SERVICE_KEY")
        return 1

    client = create_client(url, key)
    failures = 0
    for table in REGISTRY_TABLES:
        try:
            response = client.table(table).select("id").limit(1).execute()
            print(f"✅ {table}: reachable ({len(response.data)} row sampled)")
        except APIError as exc:
            failures += 1
            print(f"❌ {table}: {exc.code} {exc.message}")

    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
