#!/usr/bin/env python3
"""Import a cell profile data file described by a meta file.

Usage:
  python scripts/import_profile.py --data data_cibersort.txt --meta meta_cibersort.txt [--bulk]
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure src is on the import path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from Cellmatrix.cli import main  # type: ignore  # noqa: E402

if __name__ == "__main__":
    raise SystemExit(main(["import", *sys.argv[1:]]))
