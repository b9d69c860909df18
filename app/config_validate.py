"""Catalog-backed validation run before a configuration is published."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from app.catalog import CatalogError, EntityMetadata, MetadataCatalog
from config_model import ConfigurationModel, FilterCriterion, Issue, _issue

logger = logging.getLogger("cascade.publisher")

COMPONENT_ENTITY = 1
COMPONENT_ATTRIBUTE = 2
COMPONENT_RELATIONSHIP = 3


def _attributes(meta: EntityMetadata | None) -> Dict[str, Any]:
    if meta is None:
        return {}
    return {a.logical_name.casefold(): a for a in meta.attributes}


def _missing(component_type: int, metadata_id: str | None, description: str) -> dict | None:
    if not metadata_id:
        return None
    return {"componentType": component_type, "objectId": metadata_id, "description": description}


async def validate_configuration(
    model: ConfigurationModel,
    catalog: MetadataCatalog,
    solution: str | None = None,
) -> dict:
    """Collect structural and catalog errors plus solution-membership warnings.

    ``missingComponents`` lists entities, attributes and relationships that are
    referenced by the configuration but absent from ``solution``.
    """
    errors: List[Issue] = list(model.validate())
    warnings: List[Issue] = []
    missing: List[dict] = []

    solution_entities: set[str] = set()
    if solution:
        try:
            solution_entities = {e.logical_name.casefold() for e in await catalog.list_entities(solution)}
        except CatalogError as exc:
            warnings.append(_issue("SOLUTION_UNVERIFIED", f"Could not verify solution contents: {exc}", "solution"))

    def outside_solution(name: str) -> bool:
        return bool(solution_entities) and name.casefold() not in solution_entities

    def note_missing(component_type: int, metadata_id: str | None, description: str) -> None:
        entry = _missing(component_type, metadata_id, description)
        if entry is not None and entry not in missing:
            missing.append(entry)

    parent_meta: EntityMetadata | None = None
    try:
        parent_meta = await catalog.get_entity_metadata(model.parent_entity)
    except CatalogError:
        errors.append(
            _issue("PARENT_NOT_FOUND", f"Parent entity '{model.parent_entity}' does not exist in this environment.", "parentEntity")
        )
    if parent_meta is not None and outside_solution(model.parent_entity):
        warnings.append(
            _issue(
                "PARENT_NOT_IN_SOLUTION",
                f"Parent entity '{model.parent_entity}' is not in solution '{solution}'. Add it to keep the solution compatible.",
                "parentEntity",
            )
        )
        note_missing(COMPONENT_ENTITY, parent_meta.metadata_id, f"Entity: {model.parent_entity}")
    parent_attributes = _attributes(parent_meta)

    for idx, related in enumerate(model.related_entities):
        path = f"relatedEntities[{idx}]"
        try:
            child_meta = await catalog.get_entity_metadata(related.entity_name)
        except CatalogError:
            errors.append(
                _issue("CHILD_NOT_FOUND", f"Child entity '{related.entity_name}' does not exist in this environment.", f"{path}.entityName")
            )
            continue
        child_outside = outside_solution(related.entity_name)
        if child_outside:
            warnings.append(
                _issue(
                    "CHILD_NOT_IN_SOLUTION",
                    f"Child entity '{related.entity_name}' is not in solution '{solution}'. Add it to keep the solution compatible.",
                    f"{path}.entityName",
                )
            )
            note_missing(COMPONENT_ENTITY, child_meta.metadata_id, f"Entity: {related.entity_name}")
        child_attributes = _attributes(child_meta)

        if related.use_relationship:
            relationships = parent_meta.one_to_many_relationships if parent_meta else ()
            match = None
            for rel in relationships:
                by_schema = rel.schema_name.casefold() == (related.relationship_name or "").casefold()
                by_lookup = (
                    rel.referencing_entity.casefold() == related.entity_name.casefold()
                    and rel.referencing_attribute.casefold() == (related.lookup_field_name or "").casefold()
                )
                if by_schema or by_lookup:
                    match = rel
                    break
            if match is None:
                errors.append(
                    _issue(
                        "RELATIONSHIP_NOT_FOUND",
                        f"Relationship not found for child '{related.entity_name}'. Expected schema "
                        f"'{related.relationship_name or '(unspecified)'}' or lookup '{related.lookup_field_name or '(unspecified)'}'.",
                        f"{path}.relationshipName",
                    )
                )
            elif child_outside:
                note_missing(COMPONENT_RELATIONSHIP, match.metadata_id, f"Relationship: {match.schema_name}")

        lookup = related.lookup_field_name
        if lookup and lookup.casefold() not in child_attributes:
            errors.append(
                _issue("LOOKUP_NOT_FOUND", f"Lookup field '{lookup}' not found on child '{related.entity_name}'.", f"{path}.lookupFieldName")
            )

        for m_idx, mapping in enumerate(related.field_mappings):
            m_path = f"{path}.fieldMappings[{m_idx}]"
            if not mapping.is_valid:
                continue
            if mapping.source_field.casefold() not in parent_attributes:
                errors.append(
                    _issue(
                        "SOURCE_FIELD_NOT_FOUND",
                        f"Source field '{mapping.source_field}' not found on parent '{model.parent_entity}'.",
                        f"{m_path}.sourceField",
                    )
                )
            target = child_attributes.get(mapping.target_field.casefold())
            if target is None:
                errors.append(
                    _issue(
                        "TARGET_FIELD_NOT_FOUND",
                        f"Target field '{mapping.target_field}' not found on child '{related.entity_name}'.",
                        f"{m_path}.targetField",
                    )
                )
            elif child_outside:
                note_missing(COMPONENT_ATTRIBUTE, target.metadata_id, f"Field: {related.entity_name}.{mapping.target_field}")

        for chunk in (related.filter_criteria or "").split(";"):
            if not chunk.strip():
                continue
            criterion = FilterCriterion.from_filter_string(chunk)
            if criterion is None:
                errors.append(
                    _issue("FILTER_INVALID", f"Invalid filter format '{chunk}' for child '{related.entity_name}'.", f"{path}.filterCriteria")
                )
                continue
            if not criterion.field.strip():
                errors.append(
                    _issue("FILTER_FIELD_REQUIRED", f"Filter field is missing for child '{related.entity_name}'.", f"{path}.filterCriteria")
                )
                continue
            attr = child_attributes.get(criterion.field.casefold())
            if attr is None:
                errors.append(
                    _issue(
                        "FILTER_FIELD_NOT_FOUND",
                        f"Filter field '{criterion.field}' not found on child '{related.entity_name}'.",
                        f"{path}.filterCriteria",
                    )
                )
            elif child_outside:
                note_missing(COMPONENT_ATTRIBUTE, attr.metadata_id, f"Field: {related.entity_name}.{criterion.field}")

    if errors:
        logger.info("configuration_invalid parent=%s errors=%s", model.parent_entity, len(errors))
    return {"ok": not errors, "errors": errors, "warnings": warnings, "missingComponents": missing}
