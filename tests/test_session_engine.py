import asyncio
import json
import os
import sys
import unittest
from unittest.mock import AsyncMock, patch


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.catalog import AttributeDescriptor, CatalogError, MemoryCatalog, RelationshipDescriptor
from app.publisher import MemoryPublisher
from app.stores import MemorySessionStore, SessionState
from event_bus import SESSION_RESTORED
from session_engine import (
    PROMPT_CONTINUE_WITHOUT_PACKAGE,
    PROMPT_REMOVE_PUBLISHED,
    PROMPT_SWITCH_SOLUTION,
    ConfigurationSessionEngine,
    RestoreOutcome,
    RestorePhase,
)


class _GatedCatalog(MemoryCatalog):
    """Catalog whose listings can be held open or made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.entities_gate: asyncio.Event | None = None
        self.solutions_gate: asyncio.Event | None = None
        self.attribute_gates: dict = {}
        self.failing_solutions: set = set()
        self.solution_list_failures = 0

    async def list_unmanaged_solutions(self):
        if self.solutions_gate is not None:
            await self.solutions_gate.wait()
        if self.solution_list_failures:
            self.solution_list_failures -= 1
            self.calls.append(("list_unmanaged_solutions",))
            raise CatalogError("solution listing unavailable")
        return await super().list_unmanaged_solutions()

    async def list_entities(self, solution):
        if self.entities_gate is not None:
            await self.entities_gate.wait()
        if solution.casefold() in self.failing_solutions:
            self.calls.append(("list_entities", solution))
            raise CatalogError(f"entities of '{solution}' unavailable")
        return await super().list_entities(solution)

    async def list_attributes(self, entity, include_read_only=False, include_logical=False):
        gate = self.attribute_gates.get(entity)
        if gate is not None:
            await gate.wait()
        return await super().list_attributes(entity, include_read_only, include_logical)


class _Prompt:
    def __init__(self, approve=()) -> None:
        self.approve = set(approve)
        self.kinds = []

    async def __call__(self, kind: str, message: str) -> bool:
        self.kinds.append(kind)
        return kind in self.approve


def _catalog() -> _GatedCatalog:
    catalog = _GatedCatalog()
    catalog.add_solution("Default", "Default Solution", ["account", "contact", "opportunity"])
    catalog.add_solution("Sales", "Sales", ["account", "contact"])
    catalog.add_solution("Marketing", "Marketing", ["account"])
    catalog.add_solution("Active", "Active")
    catalog.add_entity(
        "account",
        "Account",
        attributes=[
            AttributeDescriptor("address1_city", "City"),
            AttributeDescriptor("telephone1", "Phone"),
            AttributeDescriptor("name", "Account Name"),
        ],
        relationships=[
            RelationshipDescriptor("contact_customer_accounts", "contact", "parentcustomerid", child_entity_display_name="Contact"),
            RelationshipDescriptor("opportunity_parent_account", "opportunity", "parentaccountid", child_entity_display_name="Opportunity"),
        ],
    )
    catalog.add_entity(
        "contact",
        "Contact",
        attributes=[
            AttributeDescriptor("address1_city", "City"),
            AttributeDescriptor("parentcustomerid", "Company Name"),
            AttributeDescriptor("telephone1", "Business Phone"),
            AttributeDescriptor("statecode", "Status"),
        ],
    )
    catalog.add_entity(
        "opportunity",
        "Opportunity",
        attributes=[
            AttributeDescriptor("parentaccountid", "Account"),
            AttributeDescriptor("description", "Description"),
            AttributeDescriptor("name", "Topic"),
        ],
    )
    return catalog


def _contact_related(**overrides) -> dict:
    related = {
        "entityName": "contact",
        "relationshipName": "contact_customer_accounts",
        "useRelationship": True,
        "lookupFieldName": "parentcustomerid",
        "filterCriteria": "statecode|eq|0",
        "fieldMappings": [
            {"sourceField": "address1_city", "targetField": "address1_city", "isTriggerField": True},
            {"sourceField": "telephone1", "targetField": "telephone1", "isTriggerField": False},
        ],
    }
    related.update(overrides)
    return related


def _opportunity_related() -> dict:
    return {
        "entityName": "opportunity",
        "relationshipName": "opportunity_parent_account",
        "useRelationship": True,
        "lookupFieldName": "parentaccountid",
        "filterCriteria": "",
        "fieldMappings": [{"sourceField": "name", "targetField": "description", "isTriggerField": True}],
    }


def _document(*related: dict, parent: str = "account") -> dict:
    return {
        "id": "7f1c2a9e-0000-4000-8000-000000000001",
        "name": f"{parent} cascade configuration",
        "parentEntity": parent,
        "isActive": True,
        "enableTracing": False,
        "relatedEntities": list(related),
    }


def _text(doc: dict) -> str:
    return json.dumps(doc, indent=2, ensure_ascii=False)


class _EngineCase(unittest.IsolatedAsyncioTestCase):
    def _engine(self, registered_version="1.0.0.0", approve=()) -> ConfigurationSessionEngine:
        self.catalog = _catalog()
        self.publisher = MemoryPublisher(registered_version)
        self.store = MemorySessionStore()
        self.prompt = _Prompt(approve)
        engine = ConfigurationSessionEngine(
            self.catalog,
            self.publisher,
            self.store,
            prompt=self.prompt,
            save_delay_ms=10,
            package_path="",
            package_version="",
        )
        self.addAsyncCleanup(engine.scheduler.flush)
        return engine

    async def _with_account(self, engine: ConfigurationSessionEngine) -> None:
        await engine.initialize("conn-1")
        self.assertTrue(await engine.select_parent_entity("account"))

    def _assert_restore_ended(self, engine: ConfigurationSessionEngine, state: dict) -> None:
        self.assertFalse(engine.families["restore"].busy)
        self.assertIs(engine.restore_phase, RestorePhase.IDLE)
        self.assertEqual(state["families"]["restore"], "idle")


class TestSessionEditing(_EngineCase):
    async def test_fresh_initialize_selects_default_solution(self) -> None:
        engine = self._engine()
        state = await engine.initialize("conn-1")
        self.assertEqual(state["solution"], "Default")
        self.assertEqual(state["solutions"], ["Default", "Marketing", "Sales"])
        self.assertEqual(state["entities"], ["account", "contact", "opportunity"])
        self.assertIsNone(state["parentEntity"])
        self.assertEqual(engine.json, "")

    async def test_apply_round_trips_document_exactly(self) -> None:
        engine = self._engine()
        await self._with_account(engine)
        doc = _document(_contact_related(), _opportunity_related())
        result = await engine.apply_configuration(_text(doc))
        self.assertTrue(result["ok"])
        self.assertEqual(engine.json, _text(doc))
        self.assertEqual([t.child_entity for t in engine.tabs], ["contact", "opportunity"])

    async def test_apply_is_idempotent(self) -> None:
        engine = self._engine()
        await self._with_account(engine)
        text = _text(_document(_contact_related()))
        await engine.apply_configuration(text)
        tab_ids = [t.id for t in engine.tabs]
        first = engine.json
        await engine.apply_configuration(text)
        self.assertEqual([t.id for t in engine.tabs], tab_ids)
        self.assertEqual(engine.json, first)

    async def test_apply_drops_tabs_missing_from_document(self) -> None:
        engine = self._engine()
        await self._with_account(engine)
        await engine.apply_configuration(_text(_document(_contact_related(), _opportunity_related())))
        await engine.apply_configuration(_text(_document(_opportunity_related())))
        self.assertEqual([t.child_entity for t in engine.tabs], ["opportunity"])

    async def test_invalid_apply_leaves_state_unchanged(self) -> None:
        engine = self._engine()
        await self._with_account(engine)
        await engine.apply_configuration(_text(_document(_contact_related())))
        before = (engine.json, [t.id for t in engine.tabs])
        result = await engine.apply_configuration("{not json")
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"][0]["code"], "CONFIG_JSON_INVALID")
        self.assertEqual((engine.json, [t.id for t in engine.tabs]), before)

    async def test_duplicate_add_reuses_tab(self) -> None:
        engine = self._engine()
        await self._with_account(engine)
        first = await engine.add_relationship("contact_customer_accounts")
        second = await engine.add_relationship("Contact_Customer_Accounts")
        self.assertIs(first, second)
        self.assertEqual(len(engine.tabs), 1)
        self.assertEqual(first.lookup_field_name, "parentcustomerid")
        self.assertEqual(first.title, "Contact (contact_customer_accounts)")

    async def test_add_reuses_tab_matched_by_lookup(self) -> None:
        engine = self._engine()
        await self._with_account(engine)
        await engine.apply_configuration(_text(_document(_contact_related(relationshipName=None))))
        existing = engine.tabs[0]
        self.assertIsNone(existing.relationship_name)
        self.assertEqual(existing.lookup_field_name, "parentcustomerid")
        tab = await engine.add_relationship("contact_customer_accounts")
        self.assertEqual(tab.id, existing.id)
        self.assertEqual(len(engine.tabs), 1)
        self.assertEqual(engine.selected_tab_id, existing.id)

    async def test_available_relationships_exclude_configured_children(self) -> None:
        engine = self._engine()
        await self._with_account(engine)
        self.assertEqual(len(engine.list_available_relationships()), 2)
        await engine.add_relationship("contact_customer_accounts")
        self.assertEqual([r.schema_name for r in engine.list_available_relationships()], ["opportunity_parent_account"])

    async def test_tab_edit_regenerates_json_and_saves(self) -> None:
        engine = self._engine()
        await self._with_account(engine)
        tab = await engine.add_relationship("contact_customer_accounts")
        tab.set_mapping(0, source_field="telephone1", target_field="telephone1")
        doc = json.loads(engine.json)
        self.assertEqual(doc["relatedEntities"][0]["fieldMappings"][0]["sourceField"], "telephone1")
        self.assertTrue(await engine.flush_pending_save())
        saved = self.store.load("conn-1")
        self.assertEqual(saved.configuration_json, engine.json)
        self.assertEqual(saved.solution_unique_name, "Default")
        self.assertEqual(saved.parent_entity_logical_name, "account")

    async def test_flags_change_json(self) -> None:
        engine = self._engine()
        await self._with_account(engine)
        engine.set_flags(is_active=False)
        self.assertFalse(json.loads(engine.json)["isActive"])

    async def test_parent_outside_solution_prompts_switch(self) -> None:
        engine = self._engine(approve={PROMPT_SWITCH_SOLUTION})
        await engine.initialize("conn-1")
        await engine.select_solution("Marketing")
        result = await engine.apply_configuration(_text(_document(parent="contact")))
        self.assertTrue(result["ok"])
        self.assertEqual(self.prompt.kinds, [PROMPT_SWITCH_SOLUTION])
        self.assertEqual(engine.solution.unique_name, "Default")
        self.assertEqual(engine.parent_entity, "contact")

    async def test_declined_switch_rejects_apply(self) -> None:
        engine = self._engine()
        await engine.initialize("conn-1")
        await engine.select_solution("Marketing")
        result = await engine.apply_configuration(_text(_document(parent="contact")))
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"][0]["code"], "PARENT_NOT_IN_SOLUTION")
        self.assertEqual(engine.solution.unique_name, "Marketing")
        self.assertIsNone(engine.parent_entity)

    async def test_last_solution_request_wins(self) -> None:
        engine = self._engine()
        await engine.initialize("conn-1")
        self.catalog.entities_gate = asyncio.Event()
        self.catalog.calls.clear()
        first = asyncio.create_task(engine.select_solution("Sales"))
        await asyncio.sleep(0)
        self.assertFalse(await engine.select_solution("Default"))
        self.assertFalse(await engine.select_solution("Marketing"))
        self.catalog.entities_gate.set()
        self.assertTrue(await first)
        self.assertEqual(engine.solution.unique_name, "Marketing")
        self.assertEqual(engine.entities[0].logical_name, "account")
        requested = [c[1] for c in self.catalog.calls if c[0] == "list_entities"]
        self.assertEqual(requested, ["Sales", "Marketing"])
        self.assertFalse(engine.families["entities"].busy)

    async def test_queued_solution_loads_after_failed_load(self) -> None:
        engine = self._engine()
        await engine.initialize("conn-1")
        self.catalog.entities_gate = asyncio.Event()
        self.catalog.failing_solutions.add("sales")
        first = asyncio.create_task(engine.select_solution("Sales"))
        await asyncio.sleep(0)
        self.assertFalse(await engine.select_solution("Marketing"))
        self.catalog.entities_gate.set()
        self.assertTrue(await first)
        self.assertEqual(engine.solution.unique_name, "Marketing")
        self.assertEqual([e.logical_name for e in engine.entities], ["account"])
        self.assertFalse(engine.families["entities"].busy)
        self.assertIsNone(engine.families["entities"].pending)

    async def test_failed_last_load_keeps_previous_solution(self) -> None:
        engine = self._engine()
        await engine.initialize("conn-1")
        self.catalog.failing_solutions.add("sales")
        self.assertFalse(await engine.select_solution("Sales"))
        self.assertEqual(engine.solution.unique_name, "Default")
        self.assertIn("Sales", engine.status)

    async def test_queued_solution_reload_retries_after_failure(self) -> None:
        engine = self._engine()
        await engine.initialize("conn-1")
        self.catalog.calls.clear()
        self.catalog.solutions_gate = asyncio.Event()
        self.catalog.solution_list_failures = 1
        first = asyncio.create_task(engine._load_solutions())
        await asyncio.sleep(0)
        await engine._load_solutions()
        self.catalog.solutions_gate.set()
        solutions = await first
        self.assertEqual([s.unique_name for s in solutions], ["Default", "Marketing", "Sales"])
        self.assertEqual(len([c for c in self.catalog.calls if c[0] == "list_unmanaged_solutions"]), 2)
        self.assertFalse(engine.families["solutions"].busy)

    async def test_overlapping_attribute_loads_keep_family_busy(self) -> None:
        engine = self._engine()
        await self._with_account(engine)
        contact_gate, opportunity_gate = asyncio.Event(), asyncio.Event()
        self.catalog.attribute_gates = {"contact": contact_gate, "opportunity": opportunity_gate}
        family = engine.families["attributes"]
        first = asyncio.create_task(engine.add_relationship("contact_customer_accounts"))
        second = asyncio.create_task(engine.add_relationship("opportunity_parent_account"))
        for _ in range(200):
            if family.in_flight == 2:
                break
            await asyncio.sleep(0.005)
        self.assertEqual(family.in_flight, 2)
        contact_gate.set()
        contact_tab = await first
        self.assertTrue(contact_tab.child_attributes)
        self.assertTrue(family.busy)
        self.assertEqual(engine.describe()["families"]["attributes"], "busy")
        opportunity_gate.set()
        await second
        self.assertFalse(family.busy)
        self.assertEqual(engine.describe()["families"]["attributes"], "idle")

    async def test_clear_session_keeps_solution_and_checks_parent(self) -> None:
        engine = self._engine()
        await self._with_account(engine)
        await engine.clear_session()
        self.assertIsNone(engine.parent_entity)
        self.assertEqual(engine.solution.unique_name, "Default")
        self.assertFalse(await engine.select_parent_entity("not_an_entity"))
        self.assertIsNone(engine.parent_entity)
        self.assertTrue(await engine.select_parent_entity("contact"))

    async def test_parent_requires_selected_solution(self) -> None:
        engine = self._engine()
        self.assertFalse(await engine.select_parent_entity("account"))
        self.assertEqual(engine.status, "Select a solution first.")
        self.assertIsNone(engine.parent_entity)

    async def test_existing_configurations_load_as_published(self) -> None:
        engine = self._engine()
        self.publisher.configurations["account"] = _text(_document(_contact_related(), _opportunity_related()))
        await engine.initialize("conn-1")
        rows = await engine.list_existing_configurations()
        self.assertEqual([(r["parentEntity"], r["childEntity"]) for r in rows], [("account", "contact"), ("account", "opportunity")])
        result = await engine.load_existing_configuration("account")
        self.assertTrue(result["ok"])
        self.assertEqual(engine.parent_entity, "account")
        self.assertTrue(all(t.published for t in engine.tabs))
        self.assertFalse(engine.has_unpublished_changes)

    async def test_load_missing_configuration_reports_not_found(self) -> None:
        engine = self._engine()
        await engine.initialize("conn-1")
        result = await engine.load_existing_configuration("contact")
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"][0]["code"], "CONFIGURATION_NOT_FOUND")
        self.assertIsNone(engine.parent_entity)

    async def test_listing_failure_reports_status(self) -> None:
        engine = self._engine()
        await engine.initialize("conn-1")
        self.publisher.fail_on.add("list_existing_configurations")
        self.assertEqual(await engine.list_existing_configurations(), [])
        self.assertIn("Could not list published configurations", engine.status)


class TestSessionRestore(_EngineCase):
    async def test_restores_saved_session_with_published_flags(self) -> None:
        engine = self._engine()
        restored = []
        engine.bus.subscribe(SESSION_RESTORED, lambda evt: restored.append(evt["payload"]["outcome"]))
        self.publisher.configurations["account"] = _text(_document(_contact_related()))
        saved = _text(_document(_contact_related(), _opportunity_related()))
        self.store.save(SessionState("conn-1", "Default", "account", saved))
        state = await engine.initialize("conn-1")
        self.assertEqual(state["restoreOutcome"], RestoreOutcome.RESTORED.value)
        self.assertEqual(restored, ["restored"])
        self.assertEqual(engine.json, saved)
        flags = {t.child_entity: t.published for t in engine.tabs}
        self.assertEqual(flags, {"contact": True, "opportunity": False})
        self.assertTrue(engine.has_unpublished_changes)
        self.assertFalse(engine.families["restore"].busy)

    async def test_missing_parent_keeps_solution(self) -> None:
        engine = self._engine()
        self.store.save(SessionState("conn-1", "Marketing", "contact", _text(_document(parent="contact"))))
        state = await engine.initialize("conn-1")
        self.assertEqual(state["restoreOutcome"], RestoreOutcome.PARENT_MISSING.value)
        self._assert_restore_ended(engine, state)
        self.assertEqual(engine.solution.unique_name, "Marketing")
        self.assertIsNone(engine.parent_entity)
        self.assertEqual(engine.tabs, [])
        self.assertIsNotNone(self.store.load("conn-1"))

    async def test_missing_solution_starts_fresh(self) -> None:
        engine = self._engine()
        self.store.save(SessionState("conn-1", "Retired", "account", None))
        state = await engine.initialize("conn-1")
        self.assertEqual(state["restoreOutcome"], RestoreOutcome.SOLUTION_MISSING.value)
        self._assert_restore_ended(engine, state)
        self.assertEqual(engine.solution.unique_name, "Default")
        self.assertIsNotNone(self.store.load("conn-1"))

    async def test_invalid_saved_json_clears_session(self) -> None:
        engine = self._engine()
        self.store.save(SessionState("conn-1", "Sales", "account", "{broken"))
        state = await engine.initialize("conn-1")
        self.assertEqual(state["restoreOutcome"], RestoreOutcome.INVALID_JSON.value)
        self._assert_restore_ended(engine, state)
        self.assertIsNone(self.store.load("conn-1"))
        self.assertEqual(engine.solution.unique_name, "Default")
        self.assertIsNone(engine.parent_entity)

    async def test_failed_apply_during_restore_ends_with_error(self) -> None:
        engine = self._engine()
        restored = []
        engine.bus.subscribe(SESSION_RESTORED, lambda evt: restored.append(evt["payload"]["outcome"]))
        self.store.save(SessionState("conn-1", "Default", "account", _text(_document(_contact_related()))))
        rejected = {"ok": False, "errors": [{"code": "CATALOG_ERROR", "message": "down", "path": None, "detail": None}], "warnings": []}
        with patch.object(engine, "apply_configuration", AsyncMock(return_value=rejected)):
            state = await engine.initialize("conn-1")
        self.assertEqual(state["restoreOutcome"], RestoreOutcome.ERROR.value)
        self._assert_restore_ended(engine, state)
        self.assertEqual(restored, ["error"])
        self.assertIsNone(engine.parent_entity)
        self.assertEqual(engine.tabs, [])
        self.assertEqual(engine.solution.unique_name, "Default")
        self.assertIsNotNone(self.store.load("conn-1"))

    async def test_initialize_during_restore_is_queued(self) -> None:
        engine = self._engine()
        self.store.save(SessionState("conn-1", "Default", "account", None))
        self.catalog.solutions_gate = asyncio.Event()
        first = asyncio.create_task(engine.initialize("conn-1"))
        for _ in range(200):
            if engine.families["restore"].busy:
                break
            await asyncio.sleep(0.005)
        self.assertTrue(engine.families["restore"].busy)
        queued = await engine.initialize("conn-2")
        self.assertEqual(queued, {"queued": True, "connectionId": "conn-2"})
        self.catalog.solutions_gate.set()
        state = await first
        self.assertEqual(state["connectionId"], "conn-2")
        self.assertIsNone(state["parentEntity"])
        self.assertEqual(state["solution"], "Default")


class TestSessionPublish(_EngineCase):
    async def test_removed_published_relationship_is_retracted_first(self) -> None:
        engine = self._engine(approve={PROMPT_REMOVE_PUBLISHED})
        self.publisher.configurations["account"] = _text(_document(_contact_related()))
        await self._with_account(engine)
        tab = engine.tabs[0]
        self.assertTrue(tab.published)
        self.assertFalse(engine.has_unpublished_changes)
        self.assertTrue(await engine.remove_relationship(tab.id))
        self.assertEqual(self.prompt.kinds, [PROMPT_REMOVE_PUBLISHED])
        self.assertTrue(engine.has_unpublished_changes)

        result = await engine.publish()
        self.assertTrue(result["ok"])
        self.assertEqual([r["entityName"] for r in result["retracted"]], ["contact"])
        ops = [c for c in self.publisher.calls if c[0] in ("retract", "publish")]
        self.assertEqual(ops[0], ("retract", "account", [("contact", "contact_customer_accounts", "parentcustomerid")]))
        self.assertEqual(ops[1], ("publish", "account", []))
        self.assertFalse(engine.has_unpublished_changes)
        stored = json.loads(self.publisher.configurations["account"])
        self.assertEqual(stored["relatedEntities"], [])

    async def test_declined_removal_keeps_published_tab(self) -> None:
        engine = self._engine()
        self.publisher.configurations["account"] = _text(_document(_contact_related()))
        await self._with_account(engine)
        self.assertFalse(await engine.remove_relationship(engine.tabs[0].id))
        self.assertEqual(len(engine.tabs), 1)

    async def test_validation_errors_block_publish(self) -> None:
        engine = self._engine()
        await self._with_account(engine)
        tab = await engine.add_relationship("contact_customer_accounts")
        tab.set_mapping(0, source_field="bogus", target_field="address1_city")
        result = await engine.publish()
        self.assertFalse(result["ok"])
        self.assertIn("SOURCE_FIELD_NOT_FOUND", [e["code"] for e in result["errors"]])
        self.assertFalse([c for c in self.publisher.calls if c[0] == "publish"])

    async def test_retract_failure_aborts_publish(self) -> None:
        engine = self._engine(approve={PROMPT_REMOVE_PUBLISHED})
        self.publisher.configurations["account"] = _text(_document(_contact_related(), _opportunity_related()))
        await self._with_account(engine)
        await engine.remove_relationship(engine.tabs[0].id)
        self.publisher.fail_on.add("retract")
        result = await engine.publish()
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"][0]["code"], "RETRACT_FAILED")
        self.assertFalse([c for c in self.publisher.calls if c[0] == "publish"])
        self.assertTrue(engine.has_unpublished_changes)

    async def test_unreadable_published_configuration_fails_retraction(self) -> None:
        engine = self._engine(approve={PROMPT_REMOVE_PUBLISHED})
        self.publisher.configurations["account"] = _text(_document(_contact_related()))
        await self._with_account(engine)
        self.assertTrue(await engine.remove_relationship(engine.tabs[0].id))
        self.publisher.configurations["account"] = "{corrupt"
        result = await engine.publish()
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"][0]["code"], "RETRACT_FAILED")
        self.assertIn("not readable", result["errors"][0]["message"])
        self.assertFalse([c for c in self.publisher.calls if c[0] == "publish"])
        self.assertFalse(engine.families["publish"].busy)

    async def test_unregistered_automation_declined(self) -> None:
        engine = self._engine(registered_version=None)
        await self._with_account(engine)
        tab = await engine.add_relationship("contact_customer_accounts")
        tab.set_mapping(0, source_field="address1_city", target_field="address1_city")
        result = await engine.publish()
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"][0]["code"], "AUTOMATION_NOT_REGISTERED")
        self.assertEqual(self.prompt.kinds, [PROMPT_CONTINUE_WITHOUT_PACKAGE])

    async def test_unregistered_automation_continue(self) -> None:
        engine = self._engine(registered_version=None, approve={PROMPT_CONTINUE_WITHOUT_PACKAGE})
        await self._with_account(engine)
        tab = await engine.add_relationship("contact_customer_accounts")
        tab.set_mapping(0, source_field="address1_city", target_field="address1_city")
        result = await engine.publish()
        self.assertTrue(result["ok"])
        self.assertTrue(engine.tabs[0].published)

    async def test_components_added_outside_default_solution(self) -> None:
        engine = self._engine()
        await engine.initialize("conn-1")
        await engine.select_solution("Sales")
        await engine.select_parent_entity("account")
        tab = await engine.add_relationship("contact_customer_accounts")
        tab.set_mapping(0, source_field="address1_city", target_field="address1_city")
        result = await engine.publish()
        self.assertTrue(result["ok"])
        self.assertEqual(len(self.publisher.solution_components["Sales"]), 2)

    async def test_publish_requires_parent(self) -> None:
        engine = self._engine()
        await engine.initialize("conn-1")
        result = await engine.publish()
        self.assertEqual(result["errors"][0]["code"], "PARENT_REQUIRED")


if __name__ == "__main__":
    unittest.main()
