"""Relationship-level diff between a published configuration and the current one."""

from __future__ import annotations

from typing import Dict, List

from config_model import ConfigurationModel, RelatedEntityConfig


def relationship_key(related: RelatedEntityConfig) -> tuple[str, str, str]:
    return related.key()


def diff(previous: ConfigurationModel | None, current: ConfigurationModel) -> Dict[str, List[RelatedEntityConfig]]:
    """Return the previously published relationships missing from ``current``.

    A changed relationship is an upsert of the whole entry, so only presence
    by composite key is compared.
    """
    if previous is None:
        return {"toRetract": []}
    current_keys = {relationship_key(r) for r in current.related_entities}
    to_retract: List[RelatedEntityConfig] = []
    seen: set[tuple[str, str, str]] = set()
    for related in previous.related_entities:
        key = relationship_key(related)
        if key in current_keys or key in seen:
            continue
        seen.add(key)
        to_retract.append(related)
    return {"toRetract": to_retract}
