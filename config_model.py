"""Cascade configuration model with JSON projection and structural validation."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List

from cascade.canonical_json import document_dumps


Issue = Dict[str, Any]

FILTER_OPERATORS = ("eq", "ne", "gt", "lt", "in", "notin", "null", "notnull", "like")


@dataclass
class ConfigurationError(Exception):
    message: str
    code: str = "CONFIG_INVALID"
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def _opt_str(value: Any, path: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigurationError(f"{path} must be a string or null", code="CONFIG_TYPE", path=path)
    return value or None


def _bool(value: Any, default: bool, path: str) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigurationError(f"{path} must be a boolean", code="CONFIG_TYPE", path=path)
    return value


@dataclass
class FieldMapping:
    source_field: str = ""
    target_field: str = ""
    is_trigger_field: bool = True

    @property
    def is_valid(self) -> bool:
        return not _blank(self.source_field) and not _blank(self.target_field)

    def to_dict(self) -> dict:
        return {
            "sourceField": self.source_field,
            "targetField": self.target_field,
            "isTriggerField": self.is_trigger_field,
        }

    @classmethod
    def from_dict(cls, data: Any, path: str = "fieldMappings") -> "FieldMapping":
        if not isinstance(data, dict):
            raise ConfigurationError("field mapping must be an object", code="CONFIG_TYPE", path=path)
        return cls(
            source_field=_opt_str(data.get("sourceField"), f"{path}.sourceField") or "",
            target_field=_opt_str(data.get("targetField"), f"{path}.targetField") or "",
            is_trigger_field=_bool(data.get("isTriggerField"), True, f"{path}.isTriggerField"),
        )


@dataclass
class FilterCriterion:
    field: str = ""
    operator: str = "eq"
    value: str | None = None

    @property
    def is_valid(self) -> bool:
        return not _blank(self.field)

    def to_filter_string(self) -> str:
        return f"{self.field}|{self.operator}|{self.value or ''}"

    @classmethod
    def from_filter_string(cls, text: str) -> "FilterCriterion | None":
        if _blank(text):
            return None
        parts = text.split("|")
        if len(parts) < 2:
            return None
        return cls(field=parts[0], operator=parts[1], value=parts[2] if len(parts) > 2 else None)


def parse_filter_criteria(text: str | None) -> list[FilterCriterion]:
    """Parse ``field|op|value;field|op|value``; malformed triples are skipped."""
    criteria: list[FilterCriterion] = []
    for chunk in (text or "").split(";"):
        if not chunk:
            continue
        criterion = FilterCriterion.from_filter_string(chunk)
        if criterion is not None:
            criteria.append(criterion)
    return criteria


def join_filter_criteria(criteria: List[FilterCriterion]) -> str:
    return ";".join(c.to_filter_string() for c in criteria if c.is_valid)


@dataclass
class RelatedEntityConfig:
    entity_name: str
    relationship_name: str | None = None
    use_relationship: bool = True
    lookup_field_name: str | None = None
    filter_criteria: str = ""
    field_mappings: List[FieldMapping] = field(default_factory=list)

    def key(self) -> tuple[str, str, str]:
        return (
            (self.entity_name or "").casefold(),
            (self.relationship_name or "").casefold(),
            (self.lookup_field_name or "").casefold(),
        )

    def to_dict(self) -> dict:
        return {
            "entityName": self.entity_name,
            "relationshipName": self.relationship_name,
            "useRelationship": self.use_relationship,
            "lookupFieldName": self.lookup_field_name,
            "filterCriteria": self.filter_criteria,
            "fieldMappings": [m.to_dict() for m in self.field_mappings],
        }

    @classmethod
    def from_dict(cls, data: Any, path: str = "relatedEntities") -> "RelatedEntityConfig":
        if not isinstance(data, dict):
            raise ConfigurationError("related entity must be an object", code="CONFIG_TYPE", path=path)
        entity_name = _opt_str(data.get("entityName"), f"{path}.entityName")
        if not entity_name:
            raise ConfigurationError("entityName is required", code="CONFIG_REQUIRED", path=f"{path}.entityName")
        relationship_name = _opt_str(data.get("relationshipName"), f"{path}.relationshipName")
        lookup_field_name = _opt_str(data.get("lookupFieldName"), f"{path}.lookupFieldName")
        use_relationship = _bool(data.get("useRelationship"), True, f"{path}.useRelationship")
        if not relationship_name and not lookup_field_name:
            raise ConfigurationError(
                "relationshipName or lookupFieldName is required",
                code="CONFIG_REQUIRED",
                path=f"{path}.relationshipName",
            )
        if not use_relationship and not lookup_field_name:
            raise ConfigurationError(
                "lookupFieldName is required when useRelationship is false",
                code="CONFIG_REQUIRED",
                path=f"{path}.lookupFieldName",
            )
        mappings_raw = data.get("fieldMappings") or []
        if not isinstance(mappings_raw, list):
            raise ConfigurationError("fieldMappings must be a list", code="CONFIG_TYPE", path=f"{path}.fieldMappings")
        return cls(
            entity_name=entity_name,
            relationship_name=relationship_name,
            use_relationship=use_relationship,
            lookup_field_name=lookup_field_name,
            filter_criteria=_opt_str(data.get("filterCriteria"), f"{path}.filterCriteria") or "",
            field_mappings=[
                FieldMapping.from_dict(item, f"{path}.fieldMappings[{idx}]")
                for idx, item in enumerate(mappings_raw)
            ],
        )

    def validate(self, path: str = "relatedEntities") -> list[Issue]:
        errors: list[Issue] = []
        if _blank(self.entity_name):
            errors.append(_issue("ENTITY_NAME_REQUIRED", "entityName is required", f"{path}.entityName"))
        if self.use_relationship and _blank(self.relationship_name) and _blank(self.lookup_field_name):
            errors.append(
                _issue("RELATIONSHIP_REQUIRED", "relationshipName is required when useRelationship is true", f"{path}.relationshipName")
            )
        if not self.use_relationship and _blank(self.lookup_field_name):
            errors.append(
                _issue("LOOKUP_REQUIRED", "lookupFieldName is required when useRelationship is false", f"{path}.lookupFieldName")
            )
        if not self.field_mappings:
            errors.append(
                _issue("MAPPINGS_REQUIRED", f"At least one field mapping is required for '{self.entity_name}'", f"{path}.fieldMappings")
            )
        for idx, mapping in enumerate(self.field_mappings):
            if not mapping.is_valid:
                errors.append(
                    _issue(
                        "MAPPING_INCOMPLETE",
                        f"Mapping is missing source or target field for child '{self.entity_name}'",
                        f"{path}.fieldMappings[{idx}]",
                    )
                )
        return errors


@dataclass
class ConfigurationModel:
    parent_entity: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    is_active: bool = True
    enable_tracing: bool = True
    related_entities: List[RelatedEntityConfig] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.name and self.parent_entity:
            self.name = f"{self.parent_entity} cascade configuration"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "parentEntity": self.parent_entity,
            "isActive": self.is_active,
            "enableTracing": self.enable_tracing,
            "relatedEntities": [r.to_dict() for r in self.related_entities],
        }

    def to_json(self) -> str:
        return document_dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> "ConfigurationModel":
        if not isinstance(data, dict):
            raise ConfigurationError("configuration must be an object", code="CONFIG_TYPE", path="$")
        parent = _opt_str(data.get("parentEntity"), "parentEntity")
        if not parent:
            raise ConfigurationError("parentEntity is required", code="CONFIG_REQUIRED", path="parentEntity")
        related_raw = data.get("relatedEntities") or []
        if not isinstance(related_raw, list):
            raise ConfigurationError("relatedEntities must be a list", code="CONFIG_TYPE", path="relatedEntities")
        related = [
            RelatedEntityConfig.from_dict(item, f"relatedEntities[{idx}]")
            for idx, item in enumerate(related_raw)
        ]
        return cls(
            parent_entity=parent,
            id=_opt_str(data.get("id"), "id") or str(uuid.uuid4()),
            name=_opt_str(data.get("name"), "name") or "",
            is_active=_bool(data.get("isActive"), True, "isActive"),
            enable_tracing=_bool(data.get("enableTracing"), True, "enableTracing"),
            related_entities=related,
        )

    @classmethod
    def from_json(cls, text: str | None) -> "ConfigurationModel":
        if _blank(text):
            raise ConfigurationError("configuration JSON is empty", code="CONFIG_EMPTY", path="$")
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid JSON: {exc}", code="CONFIG_JSON_INVALID", path="$") from exc
        return cls.from_dict(data)

    def validate(self) -> list[Issue]:
        """Return every structural error; an empty list means publishable."""
        errors: list[Issue] = []
        if _blank(self.parent_entity):
            errors.append(_issue("PARENT_REQUIRED", "parentEntity is required", "parentEntity"))
        seen: set[tuple[str, str, str]] = set()
        for idx, related in enumerate(self.related_entities):
            path = f"relatedEntities[{idx}]"
            errors.extend(related.validate(path))
            key = related.key()
            if key in seen:
                errors.append(_issue("RELATED_DUPLICATE", f"Duplicate relationship for '{related.entity_name}'", path))
            seen.add(key)
        return errors
