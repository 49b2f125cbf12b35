"""
cairn/runtime/version.py

Kubernetes version strings ("v1.22.4", "1.19.1-rc.0", "v1.25.3+k0s.0") compared
numerically, component by component.
"""

from __future__ import annotations

import re
from typing import Tuple

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)(?:\.(\d+))?")


def normalize_version(version: str) -> str:
    """Strip the leading 'v' and any pre-release/build suffix."""
    major, minor, patch = parse_version(version)
    return f"{major}.{minor}.{patch}"


def parse_version(version: str) -> Tuple[int, int, int]:
    """
    Raises:
        ValueError: if `version` does not start with MAJOR.MINOR.
    """
    m = _VERSION_RE.match(version.strip())
    if not m:
        raise ValueError(f"invalid version {version!r}")
    return int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)


def version_at_least(version: str, minimum: str) -> bool:
    return parse_version(version) >= parse_version(minimum)


def with_v_prefix(version: str) -> str:
    return version if version.startswith("v") else f"v{version}"
