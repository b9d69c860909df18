"""Content hashing for configuration documents."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def config_hash(config_obj: Any) -> str:
    """Return the canonical SHA-256 hash for a configuration object."""
    data = canonical_dumps(config_obj).encode("utf-8")
    digest = hashlib.sha256(data).hexdigest()
    return f"sha256:{digest}"


def content_hash(config_obj: dict) -> str:
    """Hash a configuration document ignoring its identity fields.

    Two documents that differ only in ``id`` or ``name`` describe the same
    rule set and hash equal.
    """
    body = {k: v for k, v in (config_obj or {}).items() if k not in ("id", "name")}
    return config_hash(body)
