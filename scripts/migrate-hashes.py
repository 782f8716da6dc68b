#!/usr/bin/env python3
"""CLI tool for migrating search hashes from unsalted to salted format.

Runs in the trusted context (needs KEY_MATERIAL and DB_URL). See
``app.migrate_hashes`` for options.
"""

from __future__ import annotations

import os
import sys

# Allow running from repo root: add backend/ to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from app.migrate_hashes import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
