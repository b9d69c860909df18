"""Editable state of one parent-to-child relationship tab."""

from __future__ import annotations

import dataclasses
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, List

from app.catalog import AttributeDescriptor, MetadataCatalog, RelationshipDescriptor
from config_model import FieldMapping, FilterCriterion, RelatedEntityConfig, join_filter_criteria, parse_filter_criteria

logger = logging.getLogger("cascade.tabs")

Listener = Callable[["RelationshipTabState", str], None]


def _blank(value: str | None) -> bool:
    return not (value or "").strip()


@dataclass(frozen=True)
class FieldMappingRow:
    source_field: str = ""
    target_field: str = ""
    is_trigger_field: bool = True

    @property
    def is_empty(self) -> bool:
        return _blank(self.source_field) and _blank(self.target_field)

    @property
    def is_valid(self) -> bool:
        return not _blank(self.source_field) and not _blank(self.target_field)

    def to_mapping(self) -> FieldMapping:
        return FieldMapping(self.source_field.strip(), self.target_field.strip(), self.is_trigger_field)


@dataclass(frozen=True)
class FilterCriterionRow:
    field: str = ""
    operator: str = "eq"
    value: str = ""

    @property
    def is_empty(self) -> bool:
        return _blank(self.field) and _blank(self.value)

    @property
    def is_valid(self) -> bool:
        return not _blank(self.field)

    def to_criterion(self) -> FilterCriterion:
        return FilterCriterion(self.field.strip(), self.operator or "eq", self.value or None)


def _with_trailing_empty(rows: list, empty) -> list:
    items = list(rows)
    while items and items[-1].is_empty:
        items.pop()
    items.append(empty)
    return items


class RelationshipTabState:
    """Mirror of one RelatedEntityConfig plus its attribute catalogs.

    Row lists always end with exactly one empty row. Every mutation notifies
    subscribers with a short reason string.
    """

    def __init__(
        self,
        parent_entity: str,
        child_entity: str,
        relationship_name: str | None = None,
        lookup_field_name: str | None = None,
        use_relationship: bool = True,
        child_display_name: str = "",
        tab_id: str | None = None,
    ) -> None:
        self.id = tab_id or uuid.uuid4().hex
        self.parent_entity = parent_entity
        self.child_entity = child_entity
        self.relationship_name = relationship_name or None
        self.lookup_field_name = lookup_field_name or None
        self.use_relationship = use_relationship
        self.child_display_name = child_display_name
        self.published = False
        self.mappings: List[FieldMappingRow] = [FieldMappingRow()]
        self.filters: List[FilterCriterionRow] = [FilterCriterionRow()]
        self.parent_attributes: List[AttributeDescriptor] = []
        self.child_attributes: List[AttributeDescriptor] = []
        self._listeners: List[Listener] = []
        self._loaded_key: str | None = None
        self._loading_key: str | None = None

    @property
    def title(self) -> str:
        name = self.child_display_name or self.child_entity
        detail = self.relationship_name or self.lookup_field_name
        return f"{name} ({detail})" if detail else name

    def key(self) -> tuple[str, str, str]:
        return (
            (self.child_entity or "").casefold(),
            (self.relationship_name or "").casefold(),
            (self.lookup_field_name or "").casefold(),
        )

    def matches(self, entity_name: str, relationship_name: str | None, lookup_field_name: str | None) -> bool:
        if (self.child_entity or "").casefold() != (entity_name or "").casefold():
            return False
        if relationship_name and self.relationship_name:
            return self.relationship_name.casefold() == relationship_name.casefold()
        if lookup_field_name and self.lookup_field_name:
            return self.lookup_field_name.casefold() == lookup_field_name.casefold()
        return False

    def attributes_key(self) -> str:
        return f"{self.parent_entity}|{self.child_entity}".casefold()

    def subscribe(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> bool:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return False
        return True

    def dispose(self) -> None:
        self._listeners.clear()

    def _notify(self, reason: str) -> None:
        for listener in list(self._listeners):
            listener(self, reason)

    def set_mapping(self, index: int, **changes) -> FieldMappingRow:
        if index < 0 or index >= len(self.mappings):
            raise IndexError(f"mapping row {index} out of range")
        row = dataclasses.replace(self.mappings[index], **changes)
        rows = list(self.mappings)
        rows[index] = row
        self.mappings = _with_trailing_empty(rows, FieldMappingRow())
        self._notify("mapping_changed")
        return row

    def remove_mapping(self, index: int) -> bool:
        if index < 0 or index >= len(self.mappings) - 1:
            return False
        rows = list(self.mappings)
        del rows[index]
        self.mappings = _with_trailing_empty(rows, FieldMappingRow())
        self._notify("mapping_removed")
        return True

    def set_filter(self, index: int, **changes) -> FilterCriterionRow:
        if index < 0 or index >= len(self.filters):
            raise IndexError(f"filter row {index} out of range")
        row = dataclasses.replace(self.filters[index], **changes)
        rows = list(self.filters)
        rows[index] = row
        self.filters = _with_trailing_empty(rows, FilterCriterionRow())
        self._notify("filter_changed")
        return row

    def remove_filter(self, index: int) -> bool:
        if index < 0 or index >= len(self.filters) - 1:
            return False
        rows = list(self.filters)
        del rows[index]
        self.filters = _with_trailing_empty(rows, FilterCriterionRow())
        self._notify("filter_removed")
        return True

    def load_from_config(self, config: RelatedEntityConfig) -> None:
        self.relationship_name = config.relationship_name or self.relationship_name
        self.lookup_field_name = config.lookup_field_name or self.lookup_field_name
        self.use_relationship = config.use_relationship
        self.mappings = _with_trailing_empty(
            [FieldMappingRow(m.source_field, m.target_field, m.is_trigger_field) for m in config.field_mappings],
            FieldMappingRow(),
        )
        self.filters = _with_trailing_empty(
            [FilterCriterionRow(c.field, c.operator, c.value or "") for c in parse_filter_criteria(config.filter_criteria)],
            FilterCriterionRow(),
        )
        self._notify("config_loaded")

    def select_relationship(self, relationship: RelationshipDescriptor) -> None:
        changed_child = (self.child_entity or "").casefold() != relationship.referencing_entity.casefold()
        self.child_entity = relationship.referencing_entity
        self.relationship_name = relationship.schema_name or None
        self.lookup_field_name = relationship.referencing_attribute or self.lookup_field_name
        self.child_display_name = relationship.child_entity_display_name or self.child_display_name
        if changed_child:
            self.child_attributes = []
            self._loaded_key = None
        self._notify("relationship_selected")

    async def load_attributes(self, catalog: MetadataCatalog) -> bool:
        """Load parent and child attribute catalogs for the current key.

        Returns ``False`` when a load for the same key is already in flight or
        the result was discarded because the key changed meanwhile.
        """
        key = self.attributes_key()
        if self._loaded_key == key:
            return True
        if self._loading_key == key:
            return False
        self._loading_key = key
        try:
            parent_attributes = await catalog.list_attributes(self.parent_entity, include_read_only=True, include_logical=True)
            child_attributes = await catalog.list_attributes(self.child_entity, include_read_only=False, include_logical=True)
        finally:
            if self._loading_key == key:
                self._loading_key = None
        if self.attributes_key() != key:
            logger.info("tab_attributes_stale tab_id=%s key=%s current=%s", self.id, key, self.attributes_key())
            return False
        self.parent_attributes = parent_attributes
        self.child_attributes = child_attributes
        self._loaded_key = key
        if self.use_relationship and _blank(self.lookup_field_name):
            logger.warning("tab_lookup_unresolved tab_id=%s child=%s", self.id, self.child_entity)
        logger.info(
            "tab_attributes_loaded tab_id=%s parent_count=%s child_count=%s",
            self.id,
            len(parent_attributes),
            len(child_attributes),
        )
        return True

    def to_related_config(self) -> RelatedEntityConfig:
        return RelatedEntityConfig(
            entity_name=self.child_entity,
            relationship_name=self.relationship_name,
            use_relationship=self.use_relationship,
            lookup_field_name=self.lookup_field_name,
            filter_criteria=join_filter_criteria([r.to_criterion() for r in self.filters if r.is_valid]),
            field_mappings=[r.to_mapping() for r in self.mappings if r.is_valid],
        )

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "childEntity": self.child_entity,
            "relationshipName": self.relationship_name,
            "lookupFieldName": self.lookup_field_name,
            "useRelationship": self.use_relationship,
            "published": self.published,
            "mappings": [dataclasses.asdict(r) for r in self.mappings],
            "filters": [dataclasses.asdict(r) for r in self.filters],
            "parentAttributes": [a.logical_name for a in self.parent_attributes],
            "childAttributes": [a.logical_name for a in self.child_attributes],
        }
