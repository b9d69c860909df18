"""Match a configured related entity against catalog child relationships."""

from __future__ import annotations

import logging
from typing import Sequence

from app.catalog import RelationshipDescriptor
from config_model import RelatedEntityConfig

logger = logging.getLogger("cascade.session")


def _eq(a: str | None, b: str | None) -> bool:
    return (a or "").casefold() == (b or "").casefold()


def resolve_relationship(
    related: RelatedEntityConfig,
    relationships: Sequence[RelationshipDescriptor],
) -> RelationshipDescriptor | None:
    """Resolve by schema name, then child entity plus lookup, then unique candidate.

    Ambiguous candidates are never guessed.
    """
    if related is None or not relationships:
        return None

    if related.relationship_name:
        for rel in relationships:
            if _eq(rel.schema_name, related.relationship_name):
                return rel

    if related.lookup_field_name:
        for rel in relationships:
            if _eq(rel.referencing_entity, related.entity_name) and _eq(rel.referencing_attribute, related.lookup_field_name):
                return rel

    candidates = [rel for rel in relationships if _eq(rel.referencing_entity, related.entity_name)]
    if len(candidates) == 1:
        return candidates[0]
    if len(candidates) > 1:
        logger.warning(
            "relationship_ambiguous entity=%s candidates=%s",
            related.entity_name,
            ",".join(sorted(c.schema_name for c in candidates)),
        )
    else:
        logger.warning("relationship_not_found entity=%s relationship=%s", related.entity_name, related.relationship_name)
    return None
