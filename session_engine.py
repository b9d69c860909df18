"""Configuration session engine.

Keeps the relationship tabs, the generated configuration JSON, the persisted
session snapshot and the last published configuration consistent while the
user edits, switches parent entities, reconnects or restores a prior session.
"""

from __future__ import annotations

import copy
import logging
import os
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List

import anyio

from app.catalog import (
    DEFAULT_SOLUTION,
    CatalogError,
    EntityDescriptor,
    MetadataCatalog,
    RelationshipDescriptor,
    SolutionDescriptor,
)
from app.config_validate import validate_configuration
from app.publisher import PublishError, Publisher
from app.stores import SessionState, SessionStoreError
from cascade.config_hash import content_hash
from config_model import ConfigurationError, ConfigurationModel, RelatedEntityConfig, _issue
from event_bus import (
    PUBLISH_PROGRESS,
    SESSION_JSON_CHANGED,
    SESSION_RESTORED,
    SESSION_STATUS,
    TAB_ADDED,
    TAB_REMOVED,
    TAB_SELECTED,
    EventBus,
)
from publish_diff import diff
from relationship_resolver import resolve_relationship
from save_scheduler import SaveScheduler
from tab_state import RelationshipTabState

logger = logging.getLogger("cascade.session")

Prompt = Callable[[str, str], Awaitable[bool]]

PROMPT_SWITCH_SOLUTION = "switch_solution"
PROMPT_REGISTER_AUTOMATION = "register_automation"
PROMPT_UPDATE_AUTOMATION = "update_automation"
PROMPT_CONTINUE_WITHOUT_PACKAGE = "continue_without_package"
PROMPT_REMOVE_PUBLISHED = "remove_published"

IDLE = "idle"
BUSY = "busy"


async def decline_prompt(kind: str, message: str) -> bool:
    return False


class RestorePhase(str, Enum):
    IDLE = "idle"
    LOADING_SOLUTIONS = "loading_solutions"
    SOLUTION_SELECTED = "solution_selected"
    ENTITIES_LOADED = "entities_loaded"
    PARENT_SELECTED = "parent_selected"
    RESTORED = "restored"


class RestoreOutcome(str, Enum):
    RESTORED = "restored"
    SOLUTION_MISSING = "solution_missing"
    PARENT_MISSING = "parent_missing"
    INVALID_JSON = "invalid_json"
    ERROR = "error"


@dataclass
class OperationFamily:
    """Reentrancy state of one family of async operations.

    ``pending`` holds the last request received while busy; earlier ones are
    overwritten. Families whose calls may overlap use ``enter``/``leave`` and
    stay busy until the last in-flight call leaves.
    """

    name: str
    state: str = IDLE
    pending: Any = None
    in_flight: int = 0

    @property
    def busy(self) -> bool:
        return self.state == BUSY

    def begin(self) -> None:
        self.state = BUSY

    def enter(self) -> None:
        self.in_flight += 1
        self.state = BUSY

    def leave(self) -> None:
        self.in_flight = max(0, self.in_flight - 1)
        if not self.in_flight:
            self.state = IDLE

    def defer(self, request: Any) -> None:
        self.pending = request

    def take_pending(self) -> Any:
        pending, self.pending = self.pending, None
        return pending

    def end(self) -> Any:
        self.state = IDLE
        return self.take_pending()


@dataclass
class _RestoreContext:
    state: SessionState
    model: ConfigurationModel | None = None
    solution: SolutionDescriptor | None = None
    parent: EntityDescriptor | None = None


def _same(a: str | None, b: str | None) -> bool:
    return (a or "").casefold() == (b or "").casefold()


def _publish_result(errors: list, warnings: list | None = None, retracted: list | None = None, missing: list | None = None) -> dict:
    return {
        "ok": not errors,
        "errors": errors,
        "warnings": warnings or [],
        "retracted": retracted or [],
        "missingComponents": missing or [],
    }


class ConfigurationSessionEngine:
    def __init__(
        self,
        catalog: MetadataCatalog,
        publisher: Publisher,
        store,
        bus: EventBus | None = None,
        prompt: Prompt | None = None,
        save_delay_ms: int | None = None,
        package_path: str | None = None,
        package_version: str | None = None,
        default_solution: str | None = None,
    ) -> None:
        self.catalog = catalog
        self.publisher = publisher
        self.store = store
        self.bus = bus or EventBus()
        self.prompt = prompt or decline_prompt
        self.scheduler = SaveScheduler(store, save_delay_ms)
        self.package_path = package_path if package_path is not None else os.getenv("CASCADE_PACKAGE_PATH")
        self.package_version = package_version if package_version is not None else os.getenv("CASCADE_PACKAGE_VERSION")
        self.default_solution = default_solution or DEFAULT_SOLUTION
        self.families: Dict[str, OperationFamily] = {
            name: OperationFamily(name) for name in ("restore", "solutions", "entities", "attributes", "publish")
        }
        self.connection_id: str | None = None
        self.restore_phase = RestorePhase.IDLE
        self.last_restore_outcome: RestoreOutcome | None = None
        self.status = ""
        self._reset()

    def _reset(self) -> None:
        self.solutions: List[SolutionDescriptor] = []
        self.solution: SolutionDescriptor | None = None
        self.entities: List[EntityDescriptor] = []
        self.parent_entity: str | None = None
        self.relationships: List[RelationshipDescriptor] = []
        self.tabs: List[RelationshipTabState] = []
        self.selected_tab_id: str | None = None
        self.config_id = str(uuid.uuid4())
        self.config_name = ""
        self.is_active = True
        self.enable_tracing = True
        self.published_snapshot: ConfigurationModel | None = None
        self.json = ""

    # -- notifications -------------------------------------------------

    def _emit(self, name: str, payload: dict) -> None:
        self.bus.emit(name, payload, self.connection_id)

    def _set_status(self, message: str, level: str = "info") -> None:
        self.status = message
        log = logger.warning if level == "warning" else logger.info
        log("session_status connection_id=%s level=%s message=%s", self.connection_id, level, message)
        self._emit(SESSION_STATUS, {"message": message, "level": level})

    def _progress(self, message: str) -> None:
        logger.info("publish_progress connection_id=%s message=%s", self.connection_id, message)
        self._emit(PUBLISH_PROGRESS, {"message": message})

    async def _ask(self, kind: str, message: str) -> bool:
        try:
            approved = bool(await self.prompt(kind, message))
        except Exception:
            logger.exception("prompt_failed kind=%s", kind)
            return False
        logger.info("prompt_answered kind=%s approved=%s", kind, approved)
        return approved

    # -- JSON projection and persistence -------------------------------

    def build_model(self) -> ConfigurationModel:
        return ConfigurationModel(
            parent_entity=self.parent_entity or "",
            id=self.config_id,
            name=self.config_name,
            is_active=self.is_active,
            enable_tracing=self.enable_tracing,
            related_entities=[tab.to_related_config() for tab in self.tabs],
        )

    def regenerate_json(self) -> str:
        """Rebuild the configuration JSON from the parent, the flags and the tabs."""
        text = self.build_model().to_json() if self.parent_entity else ""
        if text != self.json:
            self.json = text
            self._emit(SESSION_JSON_CHANGED, {"json": text, "tabCount": len(self.tabs)})
        return self.json

    @property
    def has_unpublished_changes(self) -> bool:
        if not self.parent_entity:
            return False
        if self.published_snapshot is None:
            return bool(self.tabs)
        return content_hash(self.published_snapshot.to_dict()) != content_hash(self.build_model().to_dict())

    def _session_snapshot(self) -> SessionState:
        return SessionState(
            connection_id=self.connection_id or "",
            solution_unique_name=self.solution.unique_name if self.solution else None,
            parent_entity_logical_name=self.parent_entity,
            configuration_json=self.json or None,
        )

    def _schedule_save(self) -> None:
        if not self.connection_id or self.families["restore"].busy:
            return
        self.scheduler.schedule(self._session_snapshot())

    async def flush_pending_save(self) -> bool:
        return await self.scheduler.flush()

    async def _load_session(self, connection_id: str) -> SessionState | None:
        try:
            return await anyio.to_thread.run_sync(self.store.load, connection_id)
        except SessionStoreError as exc:
            logger.warning("session_load_failed connection_id=%s error=%s", connection_id, exc)
            return None

    async def _clear_stored_session(self) -> None:
        self.scheduler.cancel()
        if not self.connection_id:
            return
        try:
            await anyio.to_thread.run_sync(self.store.clear, self.connection_id)
        except SessionStoreError as exc:
            logger.warning("session_clear_failed connection_id=%s error=%s", self.connection_id, exc)

    async def clear_session(self) -> None:
        await self._clear_stored_session()
        self._clear_tabs()
        kept = (self.connection_id, self.solutions, self.solution, self.entities)
        self._reset()
        self.connection_id, self.solutions, self.solution, self.entities = kept
        self._set_status("Session cleared.")

    # -- tab collection ------------------------------------------------

    def _on_tab_changed(self, tab: RelationshipTabState, reason: str) -> None:
        logger.debug("tab_changed tab_id=%s reason=%s", tab.id, reason)
        self.regenerate_json()
        self._schedule_save()

    def _clear_tabs(self) -> None:
        for tab in self.tabs:
            tab.unsubscribe(self._on_tab_changed)
            tab.dispose()
        self.tabs = []
        self.selected_tab_id = None

    def get_tab(self, tab_id: str) -> RelationshipTabState | None:
        for tab in self.tabs:
            if tab.id == tab_id:
                return tab
        return None

    def select_tab(self, tab_id: str) -> RelationshipTabState | None:
        tab = self.get_tab(tab_id)
        if tab is None:
            return None
        self.selected_tab_id = tab.id
        self._emit(TAB_SELECTED, {"tabId": tab.id, "title": tab.title})
        return tab

    def _find_tab(self, entity_name: str, relationship_name: str | None, lookup_field_name: str | None) -> RelationshipTabState | None:
        for tab in self.tabs:
            if tab.matches(entity_name, relationship_name, lookup_field_name):
                return tab
        return None

    async def _load_tab_attributes(self, tab: RelationshipTabState) -> None:
        family = self.families["attributes"]
        family.enter()
        try:
            await tab.load_attributes(self.catalog)
        except CatalogError as exc:
            logger.warning("tab_attributes_failed tab_id=%s child=%s error=%s", tab.id, tab.child_entity, exc)
            self._set_status(f"Could not load attributes for '{tab.child_entity}': {exc}", "warning")
        finally:
            family.leave()

    def _resolve_related(self, related: RelatedEntityConfig) -> tuple[RelatedEntityConfig, RelationshipDescriptor | None]:
        resolved = resolve_relationship(related, self.relationships)
        normalized = copy.deepcopy(related)
        if resolved is not None and not normalized.lookup_field_name:
            normalized.lookup_field_name = resolved.referencing_attribute or None
        return normalized, resolved

    async def _add_tab(
        self,
        entity_name: str,
        relationship_name: str | None,
        lookup_field_name: str | None,
        child_display_name: str = "",
        config: RelatedEntityConfig | None = None,
    ) -> tuple[RelationshipTabState, bool]:
        """Shared add path for manual picks and applied configurations."""
        existing = self._find_tab(entity_name, relationship_name, lookup_field_name)
        if existing is not None:
            if config is not None:
                existing.load_from_config(config)
            self.select_tab(existing.id)
            logger.info("tab_reused tab_id=%s child=%s", existing.id, entity_name)
            return existing, False
        tab = RelationshipTabState(
            parent_entity=self.parent_entity or "",
            child_entity=entity_name,
            relationship_name=relationship_name,
            lookup_field_name=lookup_field_name,
            use_relationship=config.use_relationship if config is not None else True,
            child_display_name=child_display_name,
        )
        if config is not None:
            tab.load_from_config(config)
        tab.subscribe(self._on_tab_changed)
        self.tabs.append(tab)
        self.selected_tab_id = tab.id
        self._emit(TAB_ADDED, {"tabId": tab.id, "title": tab.title})
        await self._load_tab_attributes(tab)
        self.regenerate_json()
        self._schedule_save()
        return tab, True

    def list_available_relationships(self) -> list[RelationshipDescriptor]:
        configured = {(tab.child_entity or "").casefold() for tab in self.tabs}
        return [r for r in self.relationships if r.referencing_entity.casefold() not in configured]

    async def add_relationship(self, schema_name: str) -> RelationshipTabState | None:
        if not self.parent_entity:
            self._set_status("Select a parent entity first.", "warning")
            return None
        relationship = next((r for r in self.relationships if _same(r.schema_name, schema_name)), None)
        if relationship is None:
            self._set_status(f"Relationship '{schema_name}' not found for '{self.parent_entity}'.", "warning")
            return None
        tab, _created = await self._add_tab(
            relationship.referencing_entity,
            relationship.schema_name,
            relationship.referencing_attribute or None,
            relationship.child_entity_display_name,
        )
        return tab

    async def remove_relationship(self, tab_id: str) -> bool:
        tab = self.get_tab(tab_id)
        if tab is None:
            return False
        if tab.published:
            approved = await self._ask(
                PROMPT_REMOVE_PUBLISHED,
                f"'{tab.title}' is published. It will be retracted on the next publish. Remove it?",
            )
            if not approved:
                self._set_status(f"Kept published relationship '{tab.title}'.")
                return False
        tab.unsubscribe(self._on_tab_changed)
        tab.dispose()
        self.tabs.remove(tab)
        if self.selected_tab_id == tab.id:
            self.selected_tab_id = self.tabs[-1].id if self.tabs else None
        self._emit(TAB_REMOVED, {"tabId": tab.id, "title": tab.title, "published": tab.published})
        self.regenerate_json()
        self._schedule_save()
        return True

    def set_flags(self, is_active: bool | None = None, enable_tracing: bool | None = None) -> str:
        if is_active is not None:
            self.is_active = bool(is_active)
        if enable_tracing is not None:
            self.enable_tracing = bool(enable_tracing)
        self.regenerate_json()
        self._schedule_save()
        return self.json

    # -- solutions, entities, parent -----------------------------------

    def _find_solution(self, unique_name: str | None) -> SolutionDescriptor | None:
        for solution in self.solutions:
            if _same(solution.unique_name, unique_name):
                return solution
        return None

    async def _load_solutions(self) -> list[SolutionDescriptor]:
        family = self.families["solutions"]
        if family.busy:
            family.defer(True)
            return self.solutions
        family.begin()
        try:
            while True:
                try:
                    self.solutions = await self.catalog.list_unmanaged_solutions()
                except CatalogError as exc:
                    if not family.take_pending():
                        raise
                    logger.warning("solutions_load_failed retry=queued error=%s", exc)
                    continue
                if not family.take_pending():
                    break
        finally:
            family.end()
        logger.info("solutions_loaded count=%s", len(self.solutions))
        return self.solutions

    async def select_solution(self, unique_name: str) -> bool:
        """Load the entities of a solution.

        A call made while a load is in flight only records the request; the
        last recorded one is loaded when the in-flight load completes, whether
        that load succeeded or failed. Returns whether the last load succeeded.
        """
        family = self.families["entities"]
        if family.busy:
            family.defer(unique_name)
            logger.info("solution_selection_queued solution=%s", unique_name)
            return False
        family.begin()
        loaded = changed = False
        try:
            target = unique_name
            while target:
                loaded = await self._load_solution_entities(target)
                changed = changed or loaded
                pending = family.take_pending()
                target = pending if pending and not _same(pending, target) else None
        finally:
            family.end()
        if changed:
            self._schedule_save()
        return loaded

    async def _load_solution_entities(self, unique_name: str) -> bool:
        solution = self._find_solution(unique_name)
        if solution is None and self.solutions:
            self._set_status(f"Solution '{unique_name}' not found.", "warning")
            return False
        try:
            entities = await self.catalog.list_entities(unique_name)
        except CatalogError as exc:
            self._set_status(f"Could not load entities for '{unique_name}': {exc}", "warning")
            return False
        self.solution = solution or SolutionDescriptor(unique_name=unique_name, friendly_name=unique_name)
        self.entities = entities
        logger.info("solution_selected solution=%s entities=%s", unique_name, len(entities))
        return True

    def _find_entity(self, logical_name: str | None) -> EntityDescriptor | None:
        for entity in self.entities:
            if _same(entity.logical_name, logical_name):
                return entity
        return None

    async def _set_parent(self, logical_name: str) -> None:
        self._clear_tabs()
        self.parent_entity = logical_name
        self.config_id = str(uuid.uuid4())
        self.config_name = ""
        self.is_active = True
        self.enable_tracing = True
        self.published_snapshot = None
        try:
            self.relationships = await self.catalog.list_child_relationships(logical_name)
        except CatalogError as exc:
            self.relationships = []
            self._set_status(f"Could not load relationships for '{logical_name}': {exc}", "warning")

    async def _fetch_remote_configuration(self, parent_entity: str) -> str | None:
        try:
            return await self.publisher.get_existing_configuration_json(parent_entity)
        except PublishError as exc:
            self._set_status(f"Could not read the published configuration for '{parent_entity}': {exc}", "warning")
            return None

    async def select_parent_entity(self, logical_name: str) -> bool:
        if self.solution is None:
            self._set_status("Select a solution first.", "warning")
            return False
        entity = self._find_entity(logical_name)
        if entity is None:
            self._set_status(f"Entity '{logical_name}' is not in the selected solution.", "warning")
            return False
        await self._set_parent(entity.logical_name)
        remote = await self._fetch_remote_configuration(self.parent_entity)
        if remote:
            result = await self.apply_configuration(remote, mark_as_published=True)
            if result["ok"]:
                self._set_status(f"Loaded published configuration for '{self.parent_entity}'.")
                return True
        self.regenerate_json()
        self._schedule_save()
        self._set_status(f"Started a new configuration for '{self.parent_entity}'.")
        return True

    async def list_existing_configurations(self) -> list[dict]:
        """Published relationships across all parents, one row per related entity."""
        try:
            return await self.publisher.list_existing_configurations()
        except PublishError as exc:
            self._set_status(f"Could not list published configurations: {exc}", "warning")
            return []

    async def load_existing_configuration(self, parent_entity: str) -> dict:
        """Load the published configuration of ``parent_entity`` into the session."""
        remote = await self._fetch_remote_configuration(parent_entity)
        if not remote:
            message = f"No published configuration found for '{parent_entity}'."
            self._set_status(message, "warning")
            return {"ok": False, "errors": [_issue("CONFIGURATION_NOT_FOUND", message, "parentEntity")], "warnings": []}
        result = await self.apply_configuration(remote, mark_as_published=True)
        if result["ok"]:
            self._set_status(f"Loaded published configuration for '{self.parent_entity}'.")
        return result

    # -- apply ---------------------------------------------------------

    async def _resolve_parent_solution(self, parent_entity: str) -> list[dict]:
        """Switch to the default solution when only it contains ``parent_entity``."""
        if not self.entities or self._find_entity(parent_entity) is not None:
            return []
        if not self.solutions:
            await self._load_solutions()
        default = self._find_solution(self.default_solution)
        if default is None or (self.solution is not None and _same(self.solution.unique_name, default.unique_name)):
            return [_issue("PARENT_NOT_FOUND", f"Parent entity '{parent_entity}' is not in the selected solution.", "parentEntity")]
        default_entities = await self.catalog.list_entities(default.unique_name)
        if not any(_same(e.logical_name, parent_entity) for e in default_entities):
            return [_issue("PARENT_NOT_FOUND", f"Parent entity '{parent_entity}' was not found.", "parentEntity")]
        current = self.solution.unique_name if self.solution else ""
        approved = await self._ask(
            PROMPT_SWITCH_SOLUTION,
            f"'{parent_entity}' is not in solution '{current}' but is in '{default.unique_name}'. Switch solution?",
        )
        if not approved:
            return [_issue("PARENT_NOT_IN_SOLUTION", f"Parent entity '{parent_entity}' is not in solution '{current}'.", "parentEntity")]
        await self.select_solution(default.unique_name)
        return []

    async def apply_configuration(self, text: str, mark_as_published: bool = False) -> dict:
        """Parse ``text`` and rebuild the tabs from it through the shared add path.

        Tabs not present in the applied configuration are dropped. A parse
        failure leaves the current state untouched.
        """
        try:
            model = ConfigurationModel.from_json(text)
        except ConfigurationError as exc:
            self._set_status(f"Configuration not applied: {exc.message}", "warning")
            return {"ok": False, "errors": [_issue(exc.code, exc.message, exc.path)], "warnings": []}
        try:
            errors = await self._resolve_parent_solution(model.parent_entity)
        except CatalogError as exc:
            errors = [_issue("CATALOG_ERROR", str(exc), "parentEntity")]
        if errors:
            self._set_status(errors[0]["message"], "warning")
            return {"ok": False, "errors": errors, "warnings": []}

        if not _same(self.parent_entity, model.parent_entity):
            entity = self._find_entity(model.parent_entity)
            await self._set_parent(entity.logical_name if entity else model.parent_entity)
        self.config_id = model.id
        self.config_name = model.name
        self.is_active = model.is_active
        self.enable_tracing = model.enable_tracing

        kept: List[RelationshipTabState] = []
        for related in model.related_entities:
            normalized, resolved = self._resolve_related(related)
            tab, _created = await self._add_tab(
                normalized.entity_name,
                normalized.relationship_name,
                normalized.lookup_field_name,
                resolved.child_entity_display_name if resolved else "",
                config=normalized,
            )
            kept.append(tab)
        for tab in [t for t in self.tabs if all(t is not k for k in kept)]:
            tab.unsubscribe(self._on_tab_changed)
            tab.dispose()
            self.tabs.remove(tab)
            self._emit(TAB_REMOVED, {"tabId": tab.id, "title": tab.title, "published": tab.published})
        if self.selected_tab_id and self.get_tab(self.selected_tab_id) is None:
            self.selected_tab_id = self.tabs[0].id if self.tabs else None

        if mark_as_published:
            self.published_snapshot = self.build_model()
        self._mark_published_tabs()
        self.regenerate_json()
        self._schedule_save()
        logger.info(
            "configuration_applied parent=%s related=%s published=%s",
            self.parent_entity,
            len(model.related_entities),
            mark_as_published,
        )
        return {"ok": True, "errors": [], "warnings": []}

    def _mark_published_tabs(self) -> None:
        published_keys = set()
        if self.published_snapshot is not None:
            published_keys = {r.key() for r in self.published_snapshot.related_entities}
        for tab in self.tabs:
            tab.published = tab.key() in published_keys

    # -- restore chain -------------------------------------------------

    async def initialize(self, connection_id: str) -> dict:
        restore = self.families["restore"]
        if restore.busy:
            restore.defer(connection_id)
            logger.info("restore_queued connection_id=%s", connection_id)
            return {"queued": True, "connectionId": connection_id}
        if self.connection_id and self.connection_id != connection_id:
            await self.scheduler.flush()
        self.scheduler.cancel()
        self._clear_tabs()
        self._reset()
        self.connection_id = connection_id
        self.last_restore_outcome = None
        state = await self._load_session(connection_id)
        if state is not None and state.is_valid:
            queued = await self._run_restore_chain(state)
            if queued and queued != connection_id:
                return await self.initialize(queued)
        else:
            await self._start_fresh()
        return self.describe()

    async def _start_fresh(self) -> None:
        try:
            await self._load_solutions()
        except CatalogError as exc:
            self._set_status(f"Could not load solutions: {exc}", "warning")
            return
        default = self._find_solution(self.default_solution)
        if default is None:
            self._set_status("Select a solution.")
            return
        await self.select_solution(default.unique_name)
        self._set_status(f"Connected. Solution '{default.unique_name}' selected.")

    async def _run_restore_chain(self, state: SessionState) -> str | None:
        restore = self.families["restore"]
        restore.begin()
        ctx = _RestoreContext(state=state)
        step: RestorePhase | RestoreOutcome = RestorePhase.LOADING_SOLUTIONS
        try:
            while isinstance(step, RestorePhase):
                self.restore_phase = step
                logger.info("restore_phase connection_id=%s phase=%s", state.connection_id, step.value)
                step = await self._restore_step(step, ctx)
        except Exception:
            logger.exception("restore_failed connection_id=%s phase=%s", state.connection_id, self.restore_phase.value)
            step = RestoreOutcome.ERROR
        return await self._end_restore_chain(step, ctx)

    async def _restore_step(self, phase: RestorePhase, ctx: _RestoreContext) -> RestorePhase | RestoreOutcome:
        if phase is RestorePhase.LOADING_SOLUTIONS:
            if (ctx.state.configuration_json or "").strip():
                try:
                    ctx.model = ConfigurationModel.from_json(ctx.state.configuration_json)
                except ConfigurationError as exc:
                    logger.warning("restore_json_invalid connection_id=%s error=%s", ctx.state.connection_id, exc)
                    return RestoreOutcome.INVALID_JSON
            await self._load_solutions()
            ctx.solution = self._find_solution(ctx.state.solution_unique_name)
            if ctx.solution is None:
                return RestoreOutcome.SOLUTION_MISSING
            return RestorePhase.SOLUTION_SELECTED
        if phase is RestorePhase.SOLUTION_SELECTED:
            if not await self.select_solution(ctx.solution.unique_name):
                return RestoreOutcome.SOLUTION_MISSING
            return RestorePhase.ENTITIES_LOADED
        if phase is RestorePhase.ENTITIES_LOADED:
            ctx.parent = self._find_entity(ctx.state.parent_entity_logical_name)
            if ctx.parent is None:
                return RestoreOutcome.PARENT_MISSING
            return RestorePhase.PARENT_SELECTED
        if phase is RestorePhase.PARENT_SELECTED:
            await self._set_parent(ctx.parent.logical_name)
            await self._seed_published_snapshot(ctx.parent.logical_name)
            if ctx.model is not None:
                result = await self.apply_configuration(ctx.model.to_json())
                if not result["ok"]:
                    return RestoreOutcome.ERROR
            else:
                self.regenerate_json()
            return RestorePhase.RESTORED
        return RestoreOutcome.RESTORED

    async def _seed_published_snapshot(self, parent_entity: str) -> None:
        remote = await self._fetch_remote_configuration(parent_entity)
        if not remote:
            return
        try:
            model = ConfigurationModel.from_json(remote)
        except ConfigurationError as exc:
            logger.warning("published_configuration_invalid parent=%s error=%s", parent_entity, exc)
            return
        model.related_entities = [self._resolve_related(r)[0] for r in model.related_entities]
        self.published_snapshot = model

    async def _end_restore_chain(self, outcome: RestoreOutcome, ctx: _RestoreContext) -> str | None:
        """Single exit of the restore chain; clears the restore family once."""
        restore = self.families["restore"]
        try:
            if outcome is not RestoreOutcome.RESTORED:
                self._clear_tabs()
                self.parent_entity = None
                self.relationships = []
                self.published_snapshot = None
                self.regenerate_json()
                if outcome is RestoreOutcome.INVALID_JSON:
                    await self._clear_stored_session()
                if self.solution is None:
                    await self._start_fresh()
        except Exception:
            logger.exception("restore_fallback_failed connection_id=%s", ctx.state.connection_id)
        finally:
            self.restore_phase = RestorePhase.IDLE
            self.last_restore_outcome = outcome
            queued = restore.end()
        messages = {
            RestoreOutcome.RESTORED: f"Restored session for '{self.parent_entity}'.",
            RestoreOutcome.SOLUTION_MISSING: f"Saved solution '{ctx.state.solution_unique_name}' was not found; starting fresh.",
            RestoreOutcome.PARENT_MISSING: f"Saved parent entity '{ctx.state.parent_entity_logical_name}' was not found; starting fresh.",
            RestoreOutcome.INVALID_JSON: "Saved configuration could not be read; the session was cleared.",
            RestoreOutcome.ERROR: "Session restore failed; starting fresh.",
        }
        level = "info" if outcome is RestoreOutcome.RESTORED else "warning"
        self._set_status(messages[outcome], level)
        self._emit(SESSION_RESTORED, {"outcome": outcome.value})
        logger.info("restore_ended connection_id=%s outcome=%s", ctx.state.connection_id, outcome.value)
        if outcome is RestoreOutcome.RESTORED:
            self._schedule_save()
        return queued

    # -- publish -------------------------------------------------------

    async def _ensure_automation(self) -> list[dict]:
        try:
            status = await self.publisher.check_remote_automation_status(self.package_version)
        except PublishError as exc:
            logger.warning("automation_status_failed error=%s", exc)
            return []
        solution_name = self.solution.unique_name if self.solution else None
        if not status.get("isRegistered"):
            if self.package_path and await self._ask(
                PROMPT_REGISTER_AUTOMATION, "The cascade automation is not registered. Register it now?"
            ):
                try:
                    await self.publisher.register_or_update_automation(self.package_path, solution_name)
                except PublishError as exc:
                    return [_issue("AUTOMATION_REGISTER_FAILED", str(exc))]
                self._progress("Automation package registered.")
                return []
            if await self._ask(
                PROMPT_CONTINUE_WITHOUT_PACKAGE, "Continue publishing without registering the automation package?"
            ):
                return []
            return [_issue("AUTOMATION_NOT_REGISTERED", "The cascade automation is not registered.")]
        if status.get("needsUpdate") and self.package_path:
            if await self._ask(
                PROMPT_UPDATE_AUTOMATION,
                f"Registered automation version {status.get('registeredVersion')} is older than {self.package_version}. Update it?",
            ):
                try:
                    await self.publisher.register_or_update_automation(self.package_path, solution_name)
                except PublishError as exc:
                    return [_issue("AUTOMATION_UPDATE_FAILED", str(exc))]
                self._progress("Automation package updated.")
        return []

    async def publish(self) -> dict:
        """Validate, retract removed relationships, upsert the configuration."""
        family = self.families["publish"]
        if family.busy:
            return _publish_result([_issue("PUBLISH_IN_PROGRESS", "A publish is already running.")])
        if not self.parent_entity:
            return _publish_result([_issue("PARENT_REQUIRED", "Select a parent entity first.", "parentEntity")])
        family.begin()
        try:
            return await self._publish()
        finally:
            family.end()

    async def _publish(self) -> dict:
        model = self.build_model()
        solution_name = self.solution.unique_name if self.solution else None
        self._progress("Validating configuration...")
        validation = await validate_configuration(model, self.catalog, solution_name)
        warnings = validation["warnings"]
        if not validation["ok"]:
            self._set_status(f"Publish blocked: {len(validation['errors'])} validation error(s).", "warning")
            return _publish_result(validation["errors"], warnings, missing=validation["missingComponents"])

        errors = await self._ensure_automation()
        if errors:
            self._set_status(errors[0]["message"], "warning")
            return _publish_result(errors, warnings, missing=validation["missingComponents"])

        to_retract = diff(self.published_snapshot, model)["toRetract"]
        if to_retract:
            self._progress(f"Retracting {len(to_retract)} removed relationship(s)...")
            try:
                await self.publisher.retract(model.parent_entity, to_retract, self._progress)
            except PublishError as exc:
                self._set_status(f"Retraction failed; nothing was published: {exc}", "warning")
                return _publish_result([_issue("RETRACT_FAILED", str(exc))], warnings, missing=validation["missingComponents"])
        retracted = [r.to_dict() for r in to_retract]

        try:
            components = await self.publisher.publish(model, self._progress)
        except PublishError as exc:
            self._set_status(f"Publish failed after retraction: {exc}", "warning")
            return _publish_result([_issue("PUBLISH_FAILED", str(exc))], warnings, retracted, validation["missingComponents"])

        if solution_name and not _same(solution_name, self.default_solution) and components:
            self._progress("Adding components to solution...")
            try:
                await self.publisher.add_components_to_solution(solution_name, components, self._progress)
            except PublishError as exc:
                warnings.append(_issue("SOLUTION_COMPONENTS_FAILED", str(exc)))

        self.published_snapshot = copy.deepcopy(model)
        self._mark_published_tabs()
        self._set_status(f"Published configuration for '{model.parent_entity}'.")
        logger.info("publish_completed parent=%s related=%s retracted=%s", model.parent_entity, len(model.related_entities), len(retracted))
        return _publish_result([], warnings, retracted, validation["missingComponents"])

    # -- inspection ----------------------------------------------------

    def describe(self) -> dict:
        return {
            "connectionId": self.connection_id,
            "status": self.status,
            "restoreOutcome": self.last_restore_outcome.value if self.last_restore_outcome else None,
            "solution": self.solution.unique_name if self.solution else None,
            "solutions": [s.unique_name for s in self.solutions],
            "entities": [e.logical_name for e in self.entities],
            "parentEntity": self.parent_entity,
            "selectedTabId": self.selected_tab_id,
            "tabs": [tab.snapshot() for tab in self.tabs],
            "json": self.json,
            "hasUnpublishedChanges": self.has_unpublished_changes,
            "families": {name: family.state for name, family in self.families.items()},
        }
