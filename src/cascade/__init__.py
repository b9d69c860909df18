"""Cascade configurator kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps, check_serializable, document_dumps
from .config_hash import config_hash, content_hash

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "check_serializable",
    "document_dumps",
    "config_hash",
    "content_hash",
]
