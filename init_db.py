#!/usr/bin/env python3
"""Create the reports table without starting the web server."""

from app import build_report_store, load_settings


def main():
    store = build_report_store(load_settings())
    store.create_cache_schema()
    if store.primary is not None:
        if store.test_primary_connection():
            store.create_primary_schema()
        else:
            print("⚠️ Primary database unavailable; only the local cache was prepared")
    print(f"DB initialized at {store.cache.label}")


if __name__ == "__main__":
    main()
