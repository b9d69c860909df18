import json
import os
import sys
import unittest

import httpx


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.publisher import (
    COMPONENT_IMAGE,
    COMPONENT_STEP,
    DataversePublisher,
    MemoryPublisher,
    PublishError,
    ensure_trigger_fields,
    step_name,
    trigger_fields,
    version_tuple,
)
from config_model import ConfigurationModel, FieldMapping, RelatedEntityConfig


def _model() -> ConfigurationModel:
    return ConfigurationModel(
        parent_entity="account",
        id="cfg-1",
        related_entities=[
            RelatedEntityConfig(
                "contact",
                "contact_customer_accounts",
                True,
                "parentcustomerid",
                field_mappings=[FieldMapping("address1_city", "address1_city", False)],
            ),
            RelatedEntityConfig(
                "opportunity",
                "opportunity_parent_account",
                True,
                "parentaccountid",
                field_mappings=[FieldMapping("telephone1", "description", False)],
            ),
        ],
    )


class TestPublishHelpers(unittest.TestCase):
    def test_version_tuple_ignores_trailing_zeros(self) -> None:
        self.assertEqual(version_tuple("1.2.0.0"), (1, 2))
        self.assertGreater(version_tuple("1.10"), version_tuple("1.9.9"))
        self.assertEqual(version_tuple(None), ())

    def test_all_mappings_become_triggers_when_none_are(self) -> None:
        messages = []
        model = _model()
        prepared = ensure_trigger_fields(model, messages.append)
        self.assertEqual(trigger_fields(prepared), ["address1_city", "telephone1"])
        self.assertEqual(trigger_fields(model), [])
        self.assertEqual(len(messages), 1)

    def test_existing_triggers_kept(self) -> None:
        model = _model()
        model.related_entities[0].field_mappings[0].is_trigger_field = True
        self.assertEqual(trigger_fields(ensure_trigger_fields(model)), ["address1_city"])


class TestMemoryPublisher(unittest.IsolatedAsyncioTestCase):
    async def test_publish_then_retract(self) -> None:
        publisher = MemoryPublisher("1.0.0.0")
        model = _model()
        components = await publisher.publish(model)
        self.assertEqual([c["componentType"] for c in components], [COMPONENT_STEP, COMPONENT_IMAGE])
        await publisher.retract("account", [model.related_entities[0]])
        stored = ConfigurationModel.from_json(await publisher.get_existing_configuration_json("Account"))
        self.assertEqual([r.entity_name for r in stored.related_entities], ["opportunity"])

    async def test_status_reports_update(self) -> None:
        publisher = MemoryPublisher("1.0.0.0")
        status = await publisher.check_remote_automation_status("1.0.1.0")
        self.assertEqual(status, {"isRegistered": True, "needsUpdate": True, "registeredVersion": "1.0.0.0"})
        unregistered = await MemoryPublisher().check_remote_automation_status("1.0.0.0")
        self.assertFalse(unregistered["isRegistered"])

    async def test_existing_configurations_listed_per_relationship(self) -> None:
        publisher = MemoryPublisher("1.0.0.0")
        await publisher.publish(_model())
        publisher.configurations["lead"] = "{broken"
        rows = await publisher.list_existing_configurations()
        self.assertEqual(
            [(r["parentEntity"], r["childEntity"]) for r in rows],
            [(None, None), ("account", "contact"), ("account", "opportunity")],
        )
        self.assertEqual(rows[0]["rawJson"], "{broken")
        self.assertTrue(rows[0]["error"])
        self.assertIsNone(rows[1]["error"])

    async def test_unreadable_stored_configuration_fails_retract(self) -> None:
        publisher = MemoryPublisher("1.0.0.0")
        publisher.configurations["account"] = "{broken"
        with self.assertRaises(PublishError) as ctx:
            await publisher.retract("account", [_model().related_entities[0]])
        self.assertIn("not readable", str(ctx.exception))

    async def test_failures_raise(self) -> None:
        publisher = MemoryPublisher("1.0.0.0")
        publisher.fail_on.add("retract")
        with self.assertRaises(PublishError):
            await publisher.retract("account", [])


class _FakeDataverse:
    def __init__(self, configuration: str | None = None) -> None:
        self.requests = []
        self.configuration = configuration

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path.rsplit("/", 1)[-1]
        self.requests.append((request.method, path, body))
        if request.method == "GET":
            if path == "plugintypes":
                return httpx.Response(200, json={"value": [{"plugintypeid": "pt-1", "_pluginassemblyid_value": "asm-1"}]})
            if path == "sdkmessages":
                return httpx.Response(200, json={"value": [{"sdkmessageid": "msg-1", "name": "Update"}]})
            if path == "sdkmessagefilters":
                return httpx.Response(200, json={"value": [{"sdkmessagefilterid": "flt-1"}]})
            if path == "sdkmessageprocessingsteps":
                rows = []
                if self.configuration is not None:
                    rows = [{"sdkmessageprocessingstepid": "step-1", "name": step_name("account"), "configuration": self.configuration}]
                return httpx.Response(200, json={"value": rows})
            if path == "sdkmessageprocessingstepimages":
                return httpx.Response(200, json={"value": []})
            if path == "pluginassemblies":
                return httpx.Response(200, json={"value": [{"pluginassemblyid": "asm-1", "version": "1.0.0.0"}]})
        if request.method == "POST":
            if path == "sdkmessageprocessingsteps":
                return httpx.Response(201, json={"sdkmessageprocessingstepid": "step-new"})
            if path == "sdkmessageprocessingstepimages":
                return httpx.Response(201, json={"sdkmessageprocessingstepimageid": "img-new"})
            if path == "AddSolutionComponent":
                if body["ComponentType"] == COMPONENT_IMAGE:
                    return httpx.Response(400, json={"error": {"message": "denied"}})
                return httpx.Response(200, json={"id": "sc"})
        if request.method == "PATCH":
            return httpx.Response(204)
        return httpx.Response(404)


class TestDataversePublisher(unittest.IsolatedAsyncioTestCase):
    async def _publisher(self, fake: _FakeDataverse) -> DataversePublisher:
        client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
        publisher = DataversePublisher("https://org.example", client=client)
        self.addAsyncCleanup(publisher.aclose)
        return publisher

    async def test_publish_creates_step_and_image(self) -> None:
        fake = _FakeDataverse()
        publisher = await self._publisher(fake)
        components = await publisher.publish(_model())
        self.assertEqual([c["objectId"] for c in components], ["asm-1", "pt-1", "step-new", "img-new"])
        step_post = [b for m, p, b in fake.requests if m == "POST" and p == "sdkmessageprocessingsteps"][0]
        self.assertEqual(step_post["stage"], 40)
        self.assertEqual(step_post["filteringattributes"], "address1_city,telephone1")
        stored = json.loads(step_post["configuration"])
        self.assertTrue(all(m["isTriggerField"] for r in stored["relatedEntities"] for m in r["fieldMappings"]))

    async def test_retract_patches_trimmed_configuration(self) -> None:
        model = _model()
        fake = _FakeDataverse(json.dumps(model.to_dict()))
        publisher = await self._publisher(fake)
        await publisher.retract("account", [model.related_entities[1]])
        patch = [b for m, p, b in fake.requests if m == "PATCH"][0]
        remaining = json.loads(patch["configuration"])["relatedEntities"]
        self.assertEqual([r["entityName"] for r in remaining], ["contact"])

    async def test_retract_without_step_is_noop(self) -> None:
        fake = _FakeDataverse()
        publisher = await self._publisher(fake)
        await publisher.retract("account", [_model().related_entities[0]])
        self.assertFalse([r for r in fake.requests if r[0] == "PATCH"])

    async def test_retract_with_unreadable_step_configuration(self) -> None:
        fake = _FakeDataverse("{corrupt")
        publisher = await self._publisher(fake)
        with self.assertRaises(PublishError):
            await publisher.retract("account", [_model().related_entities[0]])
        self.assertFalse([r for r in fake.requests if r[0] == "PATCH"])

    async def test_non_json_response_raises_publish_error(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>")))
        publisher = DataversePublisher("https://org.example", client=client)
        self.addAsyncCleanup(publisher.aclose)
        with self.assertRaises(PublishError):
            await publisher.get_existing_configuration_json("account")

    async def test_lists_configured_steps_by_name_prefix(self) -> None:
        fake = _FakeDataverse(json.dumps(_model().to_dict()))
        publisher = await self._publisher(fake)
        rows = await publisher.list_existing_configurations()
        self.assertEqual([r["childEntity"] for r in rows], ["contact", "opportunity"])
        self.assertEqual(rows[0]["relationshipName"], "contact_customer_accounts")
        self.assertEqual([r[1] for r in fake.requests], ["sdkmessageprocessingsteps"])

    async def test_component_failures_become_warnings(self) -> None:
        messages = []
        publisher = await self._publisher(_FakeDataverse())
        added = await publisher.add_components_to_solution(
            "Sales",
            [{"componentType": COMPONENT_STEP, "objectId": "step-1"}, {"componentType": COMPONENT_IMAGE, "objectId": "img-1"}],
            messages.append,
        )
        self.assertEqual(added, 1)
        self.assertTrue(any(m.startswith("Warning:") for m in messages))

    async def test_remote_status(self) -> None:
        publisher = await self._publisher(_FakeDataverse())
        status = await publisher.check_remote_automation_status("2.0.0.0")
        self.assertTrue(status["isRegistered"])
        self.assertTrue(status["needsUpdate"])


if __name__ == "__main__":
    unittest.main()
