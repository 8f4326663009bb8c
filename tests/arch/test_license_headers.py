# tests/arch/test_license_headers.py
# Copyright (c) Demand Refresh contributors.
# SPDX-License-Identifier: MIT
"""Every source and migration module carries the project license header."""

from __future__ import annotations

from pathlib import Path
from typing import Final

ROOT: Final[Path] = Path(__file__).resolve().parents[2]
SCANNED: Final[tuple[str, ...]] = ("src/demand_refresh", "migrations")
HEADER: Final[tuple[str, str]] = (
    "# Copyright (c) Demand Refresh contributors.",
    "# SPDX-License-Identifier: MIT",
)


def _header_offenders() -> list[str]:
    offenders = []
    for base in SCANNED:
        for path in sorted((ROOT / base).rglob("*.py")):
            lines = path.read_text(encoding="utf-8").splitlines()[:4]
            found = any(tuple(lines[i : i + 2]) == HEADER for i in range(len(lines) - 1))
            if not found:
                offenders.append(str(path.relative_to(ROOT)))
    return offenders


def test_modules_share_one_license_header() -> None:
    assert _header_offenders() == []
