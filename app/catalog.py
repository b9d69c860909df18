"""Metadata catalog clients: descriptors, in-memory catalog and Dataverse Web API adapter."""

from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

import httpx

logger = logging.getLogger("cascade.catalog")

DEFAULT_SOLUTION = os.getenv("CASCADE_DEFAULT_SOLUTION", "Default").strip() or "Default"
SYSTEM_SOLUTIONS = {"active", "basic", "common"}
_HIDDEN_FRIENDLY_NAMES = {"common data service default solution"}
_API_PATH = "/api/data/v9.2"


class CatalogError(RuntimeError):
    pass


@dataclass(frozen=True)
class SolutionDescriptor:
    unique_name: str
    friendly_name: str = ""
    id: str | None = None


@dataclass(frozen=True)
class EntityDescriptor:
    logical_name: str
    display_name: str = ""
    metadata_id: str | None = None


@dataclass(frozen=True)
class RelationshipDescriptor:
    schema_name: str
    referencing_entity: str
    referencing_attribute: str = ""
    display_name: str = ""
    child_entity_display_name: str = ""
    lookup_field_display_name: str = ""
    metadata_id: str | None = None


@dataclass(frozen=True)
class AttributeDescriptor:
    logical_name: str
    display_name: str = ""
    attribute_type: str = ""
    is_valid_for_update: bool = True
    is_logical: bool = False
    metadata_id: str | None = None


@dataclass(frozen=True)
class EntityMetadata:
    logical_name: str
    display_name: str = ""
    metadata_id: str | None = None
    attributes: Tuple[AttributeDescriptor, ...] = ()
    one_to_many_relationships: Tuple[RelationshipDescriptor, ...] = ()

    def attribute_names(self) -> set[str]:
        return {a.logical_name.casefold() for a in self.attributes}


@dataclass(frozen=True)
class FormDescriptor:
    id: str
    name: str
    fields: Tuple[str, ...] = ()


def filter_solutions(solutions: List[SolutionDescriptor]) -> list[SolutionDescriptor]:
    """Drop system solutions and pin the default solution first."""
    visible = [
        s
        for s in solutions
        if s.unique_name.casefold() not in SYSTEM_SOLUTIONS
        and (s.friendly_name or "").casefold() not in _HIDDEN_FRIENDLY_NAMES
    ]
    visible.sort(key=lambda s: (s.friendly_name or s.unique_name).casefold())
    default = [s for s in visible if s.unique_name.casefold() == DEFAULT_SOLUTION.casefold()]
    rest = [s for s in visible if s.unique_name.casefold() != DEFAULT_SOLUTION.casefold()]
    return default + rest


def filter_attributes(
    attributes: List[AttributeDescriptor], include_read_only: bool, include_logical: bool
) -> list[AttributeDescriptor]:
    items = [
        a
        for a in attributes
        if (include_logical or not a.is_logical) and (include_read_only or a.is_valid_for_update)
    ]
    items.sort(key=lambda a: (a.display_name or a.logical_name).casefold())
    return items


class MetadataCatalog:
    async def list_unmanaged_solutions(self) -> list[SolutionDescriptor]:
        raise NotImplementedError

    async def list_entities(self, solution: str) -> list[EntityDescriptor]:
        raise NotImplementedError

    async def list_child_relationships(self, parent_entity: str, solution: str | None = None) -> list[RelationshipDescriptor]:
        raise NotImplementedError

    async def list_attributes(self, entity: str, include_read_only: bool = False, include_logical: bool = False) -> list[AttributeDescriptor]:
        raise NotImplementedError

    async def get_entity_metadata(self, entity: str) -> EntityMetadata:
        raise NotImplementedError

    async def list_form_fields(self, solution_id: str | None, entity: str) -> list[FormDescriptor]:
        raise NotImplementedError


class MemoryCatalog(MetadataCatalog):
    """In-process catalog seeded from plain descriptors."""

    def __init__(self) -> None:
        self._solutions: List[SolutionDescriptor] = []
        self._solution_entities: Dict[str, List[str]] = {}
        self._entities: Dict[str, EntityMetadata] = {}
        self._forms: Dict[str, List[FormDescriptor]] = {}
        self.calls: List[tuple] = []

    def add_solution(self, unique_name: str, friendly_name: str = "", entities: List[str] | None = None, solution_id: str | None = None) -> SolutionDescriptor:
        solution = SolutionDescriptor(unique_name=unique_name, friendly_name=friendly_name or unique_name, id=solution_id or unique_name)
        self._solutions.append(solution)
        self._solution_entities[unique_name.casefold()] = list(entities or [])
        return solution

    def add_entity(
        self,
        logical_name: str,
        display_name: str = "",
        attributes: List[AttributeDescriptor] | None = None,
        relationships: List[RelationshipDescriptor] | None = None,
    ) -> EntityMetadata:
        meta = EntityMetadata(
            logical_name=logical_name,
            display_name=display_name or logical_name,
            metadata_id=f"meta-{logical_name}",
            attributes=tuple(attributes or ()),
            one_to_many_relationships=tuple(relationships or ()),
        )
        self._entities[logical_name.casefold()] = meta
        return meta

    def add_form(self, entity: str, form: FormDescriptor) -> None:
        self._forms.setdefault(entity.casefold(), []).append(form)

    async def list_unmanaged_solutions(self) -> list[SolutionDescriptor]:
        self.calls.append(("list_unmanaged_solutions",))
        return filter_solutions(list(self._solutions))

    async def list_entities(self, solution: str) -> list[EntityDescriptor]:
        self.calls.append(("list_entities", solution))
        names = self._solution_entities.get((solution or "").casefold())
        if names is None:
            raise CatalogError(f"Solution '{solution}' not found")
        items = []
        for name in names:
            meta = self._entities.get(name.casefold())
            if meta is None:
                continue
            items.append(EntityDescriptor(meta.logical_name, meta.display_name, meta.metadata_id))
        items.sort(key=lambda e: (e.display_name or e.logical_name).casefold())
        return items

    async def list_child_relationships(self, parent_entity: str, solution: str | None = None) -> list[RelationshipDescriptor]:
        self.calls.append(("list_child_relationships", parent_entity, solution))
        meta = self._entities.get((parent_entity or "").casefold())
        if meta is None:
            return []
        relationships = list(meta.one_to_many_relationships)
        if solution:
            allowed = {n.casefold() for n in self._solution_entities.get(solution.casefold(), [])}
            relationships = [r for r in relationships if r.referencing_entity.casefold() in allowed]
        relationships.sort(key=lambda r: (r.display_name or r.schema_name).casefold())
        return relationships

    async def list_attributes(self, entity: str, include_read_only: bool = False, include_logical: bool = False) -> list[AttributeDescriptor]:
        self.calls.append(("list_attributes", entity, include_read_only, include_logical))
        meta = self._entities.get((entity or "").casefold())
        if meta is None:
            raise CatalogError(f"Entity '{entity}' not found")
        return filter_attributes(list(meta.attributes), include_read_only, include_logical)

    async def get_entity_metadata(self, entity: str) -> EntityMetadata:
        self.calls.append(("get_entity_metadata", entity))
        meta = self._entities.get((entity or "").casefold())
        if meta is None:
            raise CatalogError(f"Entity '{entity}' not found")
        return meta

    async def list_form_fields(self, solution_id: str | None, entity: str) -> list[FormDescriptor]:
        self.calls.append(("list_form_fields", solution_id, entity))
        return copy.deepcopy(self._forms.get((entity or "").casefold(), []))


def _label(node: Any) -> str:
    if not isinstance(node, dict):
        return ""
    localized = node.get("UserLocalizedLabel")
    if isinstance(localized, dict):
        return localized.get("Label") or ""
    return ""


def _odata_str(value: str) -> str:
    return value.replace("'", "''")


_DATAFIELD_RE = re.compile(r'datafieldname="([^"]+)"')


class DataverseCatalogClient(MetadataCatalog):
    """Catalog backed by the Dataverse Web API.

    Solution entity sets and child relationships are cached per key for the
    lifetime of the client.
    """

    def __init__(self, base_url: str, headers: dict | None = None, timeout: float = 30.0, client: httpx.AsyncClient | None = None) -> None:
        self._base_url = base_url.rstrip("/") + _API_PATH
        self._client = client or httpx.AsyncClient(headers=headers or {}, timeout=timeout)
        self._solution_entities_cache: Dict[str, list[EntityDescriptor]] = {}
        self._relationship_cache: Dict[str, list[RelationshipDescriptor]] = {}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict | None = None) -> dict:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            resp = await self._client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise CatalogError(f"Catalog request failed: {exc}") from exc
        if resp.status_code == 404:
            raise CatalogError(f"Not found: {path}")
        if resp.status_code >= 400:
            raise CatalogError(f"Catalog error: {resp.status_code} {resp.text}")
        try:
            return resp.json()
        except ValueError as exc:
            raise CatalogError(f"Catalog response is not JSON: {exc}") from exc

    async def _solution_id(self, unique_name: str) -> str:
        data = await self._get(
            "solutions",
            {"$select": "solutionid,uniquename", "$filter": f"uniquename eq '{_odata_str(unique_name)}'"},
        )
        rows = data.get("value") or []
        if not rows:
            raise CatalogError(f"Solution '{unique_name}' not found")
        return rows[0]["solutionid"]

    async def list_unmanaged_solutions(self) -> list[SolutionDescriptor]:
        data = await self._get(
            "solutions",
            {"$select": "solutionid,uniquename,friendlyname", "$filter": "ismanaged eq false and isvisible eq true"},
        )
        solutions = [
            SolutionDescriptor(unique_name=row.get("uniquename") or "", friendly_name=row.get("friendlyname") or "", id=row.get("solutionid"))
            for row in data.get("value") or []
        ]
        logger.info("catalog_solutions_loaded count=%s", len(solutions))
        return filter_solutions(solutions)

    async def list_entities(self, solution: str) -> list[EntityDescriptor]:
        cache_key = (solution or "").casefold()
        if cache_key in self._solution_entities_cache:
            return list(self._solution_entities_cache[cache_key])
        solution_id = await self._solution_id(solution)
        components = await self._get(
            "solutioncomponents",
            {"$select": "objectid", "$filter": f"_solutionid_value eq {solution_id} and componenttype eq 1"},
        )
        entities: list[EntityDescriptor] = []
        for row in components.get("value") or []:
            object_id = row.get("objectid")
            if not object_id:
                continue
            try:
                meta = await self._get(f"EntityDefinitions({object_id})", {"$select": "LogicalName,DisplayName,MetadataId"})
            except CatalogError as exc:
                logger.warning("catalog_entity_skipped object_id=%s error=%s", object_id, exc)
                continue
            entities.append(
                EntityDescriptor(meta.get("LogicalName") or "", _label(meta.get("DisplayName")), meta.get("MetadataId"))
            )
        entities.sort(key=lambda e: (e.display_name or e.logical_name).casefold())
        self._solution_entities_cache[cache_key] = entities
        logger.info("catalog_entities_loaded solution=%s count=%s", solution, len(entities))
        return list(entities)

    async def list_child_relationships(self, parent_entity: str, solution: str | None = None) -> list[RelationshipDescriptor]:
        cache_key = f"{solution or 'Active'}|{parent_entity}".casefold()
        if cache_key in self._relationship_cache:
            return list(self._relationship_cache[cache_key])
        meta = await self.get_entity_metadata(parent_entity)
        relationships = list(meta.one_to_many_relationships)
        if solution:
            allowed = {e.logical_name.casefold() for e in await self.list_entities(solution)}
            relationships = [r for r in relationships if r.referencing_entity.casefold() in allowed]
        relationships.sort(key=lambda r: (r.display_name or r.schema_name).casefold())
        self._relationship_cache[cache_key] = relationships
        return list(relationships)

    async def list_attributes(self, entity: str, include_read_only: bool = False, include_logical: bool = False) -> list[AttributeDescriptor]:
        meta = await self.get_entity_metadata(entity)
        return filter_attributes(list(meta.attributes), include_read_only, include_logical)

    async def get_entity_metadata(self, entity: str) -> EntityMetadata:
        if not entity:
            raise CatalogError("entity is required")
        data = await self._get(
            f"EntityDefinitions(LogicalName='{_odata_str(entity)}')",
            {
                "$select": "LogicalName,DisplayName,MetadataId",
                "$expand": (
                    "Attributes($select=LogicalName,DisplayName,AttributeType,IsValidForUpdate,IsLogical,MetadataId),"
                    "OneToManyRelationships($select=SchemaName,ReferencingEntity,ReferencingAttribute,MetadataId)"
                ),
            },
        )
        attributes = tuple(
            AttributeDescriptor(
                logical_name=a.get("LogicalName") or "",
                display_name=_label(a.get("DisplayName")),
                attribute_type=a.get("AttributeType") or "",
                is_valid_for_update=bool(a.get("IsValidForUpdate")),
                is_logical=bool(a.get("IsLogical")),
                metadata_id=a.get("MetadataId"),
            )
            for a in data.get("Attributes") or []
        )
        relationships = tuple(
            RelationshipDescriptor(
                schema_name=r.get("SchemaName") or "",
                referencing_entity=r.get("ReferencingEntity") or "",
                referencing_attribute=r.get("ReferencingAttribute") or "",
                display_name=r.get("SchemaName") or "",
                child_entity_display_name=r.get("ReferencingEntity") or "",
                lookup_field_display_name=r.get("ReferencingAttribute") or "",
                metadata_id=r.get("MetadataId"),
            )
            for r in data.get("OneToManyRelationships") or []
        )
        return EntityMetadata(
            logical_name=data.get("LogicalName") or entity,
            display_name=_label(data.get("DisplayName")),
            metadata_id=data.get("MetadataId"),
            attributes=attributes,
            one_to_many_relationships=relationships,
        )

    async def list_form_fields(self, solution_id: str | None, entity: str) -> list[FormDescriptor]:
        data = await self._get(
            "systemforms",
            {"$select": "formid,name,formxml", "$filter": f"objecttypecode eq '{_odata_str(entity)}' and type eq 2"},
        )
        forms = []
        for row in data.get("value") or []:
            fields = tuple(dict.fromkeys(_DATAFIELD_RE.findall(row.get("formxml") or "")))
            forms.append(FormDescriptor(id=row.get("formid") or "", name=row.get("name") or "", fields=fields))
        return forms
