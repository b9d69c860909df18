"""Publish collaborators: automation registration, step upsert, retraction and solution components."""

from __future__ import annotations

import base64
import copy
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List

import anyio
import httpx

from config_model import ConfigurationError, ConfigurationModel, RelatedEntityConfig

logger = logging.getLogger("cascade.publisher")

Progress = Callable[[str], None]

AUTOMATION_TYPE_NAME = "CascadeFields.Plugin.CascadeFieldsPlugin"
AUTOMATION_ASSEMBLY_NAME = "CascadeFields.Plugin"
PRE_IMAGE_NAME = "PreImage"

COMPONENT_ASSEMBLY = 91
COMPONENT_TYPE = 90
COMPONENT_STEP = 92
COMPONENT_IMAGE = 93

_API_PATH = "/api/data/v9.2"


class PublishError(RuntimeError):
    pass


STEP_NAME_PREFIX = "CascadeFields: "


def step_name(parent_entity: str) -> str:
    return f"{STEP_NAME_PREFIX}{parent_entity}"


def _noop(_message: str) -> None:
    return None


def version_tuple(value: str | None) -> tuple[int, ...]:
    parts = []
    for chunk in (value or "").split("."):
        try:
            parts.append(int(chunk))
        except ValueError:
            parts.append(0)
    while parts and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def ensure_trigger_fields(model: ConfigurationModel, progress: Progress = _noop) -> ConfigurationModel:
    """Return a copy where every mapping is a trigger when none is."""
    prepared = copy.deepcopy(model)
    mappings = [m for r in prepared.related_entities for m in r.field_mappings]
    if mappings and not any(m.is_trigger_field for m in mappings):
        progress("No trigger fields found - marking all fields as triggers...")
        for mapping in mappings:
            mapping.is_trigger_field = True
    return prepared


def trigger_fields(model: ConfigurationModel) -> list[str]:
    names = [m.source_field for r in model.related_entities for m in r.field_mappings if m.is_trigger_field]
    return list(dict.fromkeys(names))


def source_fields(model: ConfigurationModel) -> list[str]:
    names = [m.source_field for r in model.related_entities for m in r.field_mappings]
    return list(dict.fromkeys(names))


def _parse_stored(raw: str, parent_entity: str) -> ConfigurationModel:
    try:
        return ConfigurationModel.from_json(raw)
    except ConfigurationError as exc:
        raise PublishError(f"Published configuration for '{parent_entity}' is not readable: {exc.message}") from exc


def configured_relationships(raw: str) -> list[dict]:
    """One row per related entity of a stored configuration document.

    An unreadable document yields a single row carrying the parse error so it
    stays visible for troubleshooting.
    """
    try:
        model = ConfigurationModel.from_json(raw)
    except ConfigurationError as exc:
        return [
            {
                "parentEntity": None,
                "childEntity": None,
                "relationshipName": None,
                "lookupFieldName": None,
                "rawJson": raw,
                "error": exc.message,
            }
        ]
    return [
        {
            "parentEntity": model.parent_entity,
            "childEntity": related.entity_name,
            "relationshipName": related.relationship_name,
            "lookupFieldName": related.lookup_field_name,
            "rawJson": raw,
            "error": None,
        }
        for related in model.related_entities
    ]


def _sort_rows(rows: List[dict]) -> List[dict]:
    return sorted(rows, key=lambda r: ((r["parentEntity"] or "").casefold(), (r["childEntity"] or "").casefold()))


def _without(model: ConfigurationModel, relationships: Iterable[RelatedEntityConfig]) -> ConfigurationModel:
    drop = {r.key() for r in relationships}
    trimmed = copy.deepcopy(model)
    trimmed.related_entities = [r for r in trimmed.related_entities if r.key() not in drop]
    return trimmed


class Publisher:
    async def get_existing_configuration_json(self, parent_entity: str) -> str | None:
        raise NotImplementedError

    async def list_existing_configurations(self) -> list[dict]:
        raise NotImplementedError

    async def check_remote_automation_status(self, local_package_version: str | None) -> dict:
        raise NotImplementedError

    async def register_or_update_automation(self, package_path: str, solution_unique_name: str | None = None) -> dict:
        raise NotImplementedError

    async def publish(self, model: ConfigurationModel, progress: Progress = _noop) -> list[dict]:
        raise NotImplementedError

    async def retract(self, parent_entity: str, relationships: List[RelatedEntityConfig], progress: Progress = _noop) -> None:
        raise NotImplementedError

    async def add_components_to_solution(self, solution_unique_name: str, components: List[dict], progress: Progress = _noop) -> int:
        raise NotImplementedError


class MemoryPublisher(Publisher):
    """In-process publisher keeping one configuration document per parent entity."""

    def __init__(self, registered_version: str | None = None) -> None:
        self.configurations: Dict[str, str] = {}
        self.registered_version = registered_version
        self.solution_components: Dict[str, List[dict]] = {}
        self.calls: List[tuple] = []
        self.fail_on: set[str] = set()

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise PublishError(f"{operation} failed")

    async def get_existing_configuration_json(self, parent_entity: str) -> str | None:
        self.calls.append(("get_existing_configuration_json", parent_entity))
        self._maybe_fail("get_existing_configuration_json")
        for key, raw in self.configurations.items():
            if key.casefold() == (parent_entity or "").casefold():
                return raw
        return None

    async def list_existing_configurations(self) -> list[dict]:
        self.calls.append(("list_existing_configurations",))
        self._maybe_fail("list_existing_configurations")
        rows = [row for raw in self.configurations.values() if raw for row in configured_relationships(raw)]
        return _sort_rows(rows)

    async def check_remote_automation_status(self, local_package_version: str | None) -> dict:
        self.calls.append(("check_remote_automation_status", local_package_version))
        registered = self.registered_version is not None
        needs_update = bool(
            registered
            and local_package_version
            and version_tuple(local_package_version) > version_tuple(self.registered_version)
        )
        return {"isRegistered": registered, "needsUpdate": needs_update, "registeredVersion": self.registered_version}

    async def register_or_update_automation(self, package_path: str, solution_unique_name: str | None = None) -> dict:
        self.calls.append(("register_or_update_automation", package_path, solution_unique_name))
        self._maybe_fail("register_or_update_automation")
        self.registered_version = self.registered_version or "1.0.0.0"
        return {"assemblyId": "memory-assembly", "version": self.registered_version}

    async def publish(self, model: ConfigurationModel, progress: Progress = _noop) -> list[dict]:
        self.calls.append(("publish", model.parent_entity, [r.key() for r in model.related_entities]))
        self._maybe_fail("publish")
        prepared = ensure_trigger_fields(model, progress)
        self.configurations[prepared.parent_entity] = json.dumps(prepared.to_dict())
        progress("Publish complete: step and preimage upserted.")
        return [
            {"componentType": COMPONENT_STEP, "objectId": f"step-{prepared.parent_entity}"},
            {"componentType": COMPONENT_IMAGE, "objectId": f"image-{prepared.parent_entity}"},
        ]

    async def retract(self, parent_entity: str, relationships: List[RelatedEntityConfig], progress: Progress = _noop) -> None:
        self.calls.append(("retract", parent_entity, [r.key() for r in relationships]))
        self._maybe_fail("retract")
        raw = self.configurations.get(parent_entity)
        if raw is None:
            return
        trimmed = _without(_parse_stored(raw, parent_entity), relationships)
        self.configurations[parent_entity] = json.dumps(trimmed.to_dict())
        progress(f"Retracted {len(relationships)} relationship(s).")

    async def add_components_to_solution(self, solution_unique_name: str, components: List[dict], progress: Progress = _noop) -> int:
        self.calls.append(("add_components_to_solution", solution_unique_name, len(components)))
        existing = self.solution_components.setdefault(solution_unique_name, [])
        added = 0
        for component in components:
            if component not in existing:
                existing.append(dict(component))
                added += 1
        progress(f"Solution component assignment complete ({added} components added).")
        return added


def _odata_str(value: str) -> str:
    return value.replace("'", "''")


class DataversePublisher(Publisher):
    """Publisher backed by the Dataverse Web API step registration entities."""

    def __init__(self, base_url: str, headers: dict | None = None, timeout: float = 60.0, client: httpx.AsyncClient | None = None) -> None:
        self._base_url = base_url.rstrip("/") + _API_PATH
        self._client = client or httpx.AsyncClient(headers=headers or {}, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, params: dict | None = None, body: dict | None = None) -> dict:
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = {"Prefer": "return=representation"} if method in {"POST", "PATCH"} else None
        try:
            resp = await self._client.request(method, url, params=params, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise PublishError(f"Publish request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise PublishError(f"Publish error: {resp.status_code} {resp.text}")
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise PublishError(f"Publish response is not JSON: {exc}") from exc

    async def _first(self, entity_set: str, select: str, filter_expr: str) -> dict | None:
        data = await self._request("GET", entity_set, {"$select": select, "$filter": filter_expr, "$top": "1"})
        rows = data.get("value") or []
        return rows[0] if rows else None

    async def _plugin_type(self) -> dict | None:
        return await self._first(
            "plugintypes",
            "plugintypeid,_pluginassemblyid_value",
            f"typename eq '{AUTOMATION_TYPE_NAME}'",
        )

    async def _existing_step(self, parent_entity: str) -> dict | None:
        return await self._first(
            "sdkmessageprocessingsteps",
            "sdkmessageprocessingstepid,name,configuration",
            f"name eq '{_odata_str(step_name(parent_entity))}'",
        )

    async def get_existing_configuration_json(self, parent_entity: str) -> str | None:
        step = await self._existing_step(parent_entity)
        if not step:
            return None
        return step.get("configuration") or None

    async def list_existing_configurations(self) -> list[dict]:
        data = await self._request(
            "GET",
            "sdkmessageprocessingsteps",
            {
                "$select": "sdkmessageprocessingstepid,name,configuration",
                "$filter": f"startswith(name,'{_odata_str(STEP_NAME_PREFIX)}') and configuration ne null",
            },
        )
        rows = []
        for step in data.get("value") or []:
            raw = step.get("configuration")
            if raw and raw.strip():
                rows.extend(configured_relationships(raw))
        logger.info("configurations_listed steps=%s rows=%s", len(data.get("value") or []), len(rows))
        return _sort_rows(rows)

    async def check_remote_automation_status(self, local_package_version: str | None) -> dict:
        assembly = await self._first("pluginassemblies", "pluginassemblyid,version", f"name eq '{AUTOMATION_ASSEMBLY_NAME}'")
        if not assembly:
            return {"isRegistered": False, "needsUpdate": False, "registeredVersion": None}
        registered_version = assembly.get("version")
        needs_update = bool(local_package_version) and version_tuple(local_package_version) > version_tuple(registered_version)
        return {"isRegistered": True, "needsUpdate": needs_update, "registeredVersion": registered_version}

    async def register_or_update_automation(self, package_path: str, solution_unique_name: str | None = None) -> dict:
        path = Path(package_path)
        try:
            content = await anyio.to_thread.run_sync(path.read_bytes)
        except OSError as exc:
            raise PublishError(f"Automation package not readable: {exc}") from exc
        body = {
            "name": AUTOMATION_ASSEMBLY_NAME,
            "content": base64.b64encode(content).decode("ascii"),
            "isolationmode": 2,
            "sourcetype": 0,
        }
        existing = await self._first("pluginassemblies", "pluginassemblyid,version", f"name eq '{AUTOMATION_ASSEMBLY_NAME}'")
        if existing:
            assembly_id = existing["pluginassemblyid"]
            await self._request("PATCH", f"pluginassemblies({assembly_id})", body=body)
            logger.info("automation_updated assembly_id=%s", assembly_id)
        else:
            created = await self._request("POST", "pluginassemblies", body=body)
            assembly_id = created.get("pluginassemblyid")
            logger.info("automation_registered assembly_id=%s", assembly_id)
        plugin_type = await self._plugin_type()
        if not plugin_type:
            plugin_type = await self._request(
                "POST",
                "plugintypes",
                body={
                    "typename": AUTOMATION_TYPE_NAME,
                    "name": "CascadeFields Plugin",
                    "friendlyname": "CascadeFields Plugin",
                    "pluginassemblyid@odata.bind": f"/pluginassemblies({assembly_id})",
                },
            )
        if solution_unique_name:
            await self.add_components_to_solution(
                solution_unique_name,
                [
                    {"componentType": COMPONENT_ASSEMBLY, "objectId": assembly_id},
                    {"componentType": COMPONENT_TYPE, "objectId": plugin_type.get("plugintypeid")},
                ],
            )
        return {"assemblyId": assembly_id, "pluginTypeId": plugin_type.get("plugintypeid")}

    async def _message_filter(self, parent_entity: str) -> tuple[str, str]:
        message = await self._first("sdkmessages", "sdkmessageid,name", "name eq 'Update'")
        if not message:
            raise PublishError("SDK message 'Update' not found.")
        message_id = message["sdkmessageid"]
        msg_filter = await self._first(
            "sdkmessagefilters",
            "sdkmessagefilterid",
            f"_sdkmessageid_value eq {message_id} and primaryobjecttypecode eq '{_odata_str(parent_entity)}'",
        )
        if not msg_filter:
            raise PublishError(f"SDK Message Filter for '{parent_entity}' not found.")
        return message_id, msg_filter["sdkmessagefilterid"]

    async def _upsert_step(self, model: ConfigurationModel, plugin_type_id: str, progress: Progress) -> str:
        message_id, filter_id = await self._message_filter(model.parent_entity)
        body: Dict[str, Any] = {
            "name": step_name(model.parent_entity),
            "plugintypeid@odata.bind": f"/plugintypes({plugin_type_id})",
            "sdkmessageid@odata.bind": f"/sdkmessages({message_id})",
            "sdkmessagefilterid@odata.bind": f"/sdkmessagefilters({filter_id})",
            "stage": 40,
            "mode": 1,
            "rank": 1,
            "supporteddeployment": 0,
            "configuration": json.dumps(model.to_dict()),
        }
        triggers = trigger_fields(model)
        if triggers:
            body["filteringattributes"] = ",".join(triggers)
        existing = await self._existing_step(model.parent_entity)
        if existing:
            step_id = existing["sdkmessageprocessingstepid"]
            await self._request("PATCH", f"sdkmessageprocessingsteps({step_id})", body=body)
            progress("Updated processing step.")
            return step_id
        created = await self._request("POST", "sdkmessageprocessingsteps", body=body)
        progress("Created processing step.")
        return created["sdkmessageprocessingstepid"]

    async def _upsert_pre_image(self, step_id: str, model: ConfigurationModel, progress: Progress) -> str:
        body = {
            "sdkmessageprocessingstepid@odata.bind": f"/sdkmessageprocessingsteps({step_id})",
            "name": PRE_IMAGE_NAME,
            "entityalias": PRE_IMAGE_NAME,
            "imagetype": 0,
            "messagepropertyname": "Target",
            "attributes": ",".join(source_fields(model)),
        }
        existing = await self._first(
            "sdkmessageprocessingstepimages",
            "sdkmessageprocessingstepimageid",
            f"_sdkmessageprocessingstepid_value eq {step_id} and name eq '{PRE_IMAGE_NAME}'",
        )
        if existing:
            image_id = existing["sdkmessageprocessingstepimageid"]
            await self._request("PATCH", f"sdkmessageprocessingstepimages({image_id})", body=body)
            progress("Updated pre-image.")
            return image_id
        created = await self._request("POST", "sdkmessageprocessingstepimages", body=body)
        progress("Created pre-image.")
        return created["sdkmessageprocessingstepimageid"]

    async def publish(self, model: ConfigurationModel, progress: Progress = _noop) -> list[dict]:
        progress("Validating configuration...")
        prepared = ensure_trigger_fields(model, progress)
        plugin_type = await self._plugin_type()
        if not plugin_type:
            raise PublishError("CascadeFields plugin type not found. Register the automation package first.")
        progress("Resolving SDK message and filters...")
        step_id = await self._upsert_step(prepared, plugin_type["plugintypeid"], progress)
        image_id = await self._upsert_pre_image(step_id, prepared, progress)
        progress("Publish complete: step and preimage upserted.")
        logger.info("configuration_published parent=%s step_id=%s", prepared.parent_entity, step_id)
        components = [
            {"componentType": COMPONENT_TYPE, "objectId": plugin_type["plugintypeid"]},
            {"componentType": COMPONENT_STEP, "objectId": step_id},
            {"componentType": COMPONENT_IMAGE, "objectId": image_id},
        ]
        if plugin_type.get("_pluginassemblyid_value"):
            components.insert(0, {"componentType": COMPONENT_ASSEMBLY, "objectId": plugin_type["_pluginassemblyid_value"]})
        return components

    async def retract(self, parent_entity: str, relationships: List[RelatedEntityConfig], progress: Progress = _noop) -> None:
        if not relationships:
            return
        step = await self._existing_step(parent_entity)
        if not step or not step.get("configuration"):
            progress("No published step found; nothing to retract.")
            return
        trimmed = _without(_parse_stored(step["configuration"], parent_entity), relationships)
        body: Dict[str, Any] = {"configuration": json.dumps(trimmed.to_dict())}
        body["filteringattributes"] = ",".join(trigger_fields(trimmed)) or None
        await self._request("PATCH", f"sdkmessageprocessingsteps({step['sdkmessageprocessingstepid']})", body=body)
        progress(f"Retracted {len(relationships)} relationship(s).")
        logger.info("configuration_retracted parent=%s count=%s", parent_entity, len(relationships))

    async def add_components_to_solution(self, solution_unique_name: str, components: List[dict], progress: Progress = _noop) -> int:
        added = 0
        for component in components:
            if not component.get("objectId"):
                continue
            try:
                await self._request(
                    "POST",
                    "AddSolutionComponent",
                    body={
                        "ComponentId": component["objectId"],
                        "ComponentType": component["componentType"],
                        "SolutionUniqueName": solution_unique_name,
                        "AddRequiredComponents": False,
                    },
                )
            except PublishError as exc:
                progress(f"Warning: Failed to add component to solution: {exc}")
                logger.warning("solution_component_failed solution=%s component=%s error=%s", solution_unique_name, component, exc)
                continue
            added += 1
        progress(f"Solution component assignment complete ({added} components added).")
        return added
