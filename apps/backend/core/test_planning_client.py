import sys

import pytest

from core import iflow_client, planning_client
from core.planning_client import IFlowPlanningModel, flatten_messages


class TextBlock:
    def __init__(self, text: str):
        self.text = text


class AssistantMessage:
    def __init__(self, content):
        self.content = content


class TaskFinishMessage:
    pass


class FakeClient:
    def __init__(self, chunks: list[str]):
        self._chunks = chunks
        self.queries: list[str] = []
        self.entered = False

    async def __aenter__(self):
        self.entered = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def query(self, prompt: str) -> None:
        self.queries.append(prompt)

    async def receive_response(self):
        for chunk in self._chunks:
            yield AssistantMessage([TextBlock(chunk)])
        yield TaskFinishMessage()
        yield AssistantMessage([TextBlock("after finish")])


def test_flatten_messages_splits_system_prompt():
    system, query = flatten_messages(
        [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "ok"},
            {"role": "user", "content": "second"},
        ]
    )
    assert system == "be brief"
    assert query == "first\n\n[assistant]\nok\n\nsecond"


@pytest.mark.asyncio
async def test_request_collects_text_until_finish():
    fake = FakeClient(['{"kind": ', '"tasks"}'])
    seen = {}

    def factory(**kwargs):
        seen.update(kwargs)
        return fake

    model = IFlowPlanningModel(model="glm-4.7", client_factory=factory)
    text = await model.request(
        [{"role": "system", "content": "plan"}, {"role": "user", "content": "open wifi"}]
    )

    assert text == '{"kind": "tasks"}'
    assert fake.entered
    assert fake.queries == ["open wifi"]
    assert seen["system_prompt"] == "plan"
    assert seen["model"] == "glm-4.7"


@pytest.mark.asyncio
async def test_request_rejects_empty_response():
    model = IFlowPlanningModel(client_factory=lambda **_: FakeClient(["   "]))
    with pytest.raises(RuntimeError):
        await model.request([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_default_factory_is_iflow_client(monkeypatch):
    fake = FakeClient(["done"])
    monkeypatch.setattr(planning_client, "create_iflow_client", lambda **_: fake)

    model = IFlowPlanningModel()
    assert await model.request([{"role": "user", "content": "hi"}]) == "done"


def test_missing_sdk_raises_install_hint(monkeypatch):
    # A None entry makes the import fail as if the package were absent.
    monkeypatch.setitem(sys.modules, "iflow_sdk", None)
    with pytest.raises(RuntimeError, match="iflow-sdk is required"):
        iflow_client.create_iflow_client(model="glm-4.7")


def test_resolve_auth_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("IFLOW_HOME", str(tmp_path))
    monkeypatch.setenv("IFLOW_API_KEY", "secret")
    monkeypatch.setenv("IFLOW_BASE_URL", "https://example.invalid")
    monkeypatch.setenv("IFLOW_AUTH_METHOD_ID", "iflow")

    method, info = iflow_client._resolve_iflow_auth(model_name="glm-4.7")

    assert method == "iflow"
    assert info == {"apiKey": "secret", "baseUrl": "https://example.invalid", "modelName": "glm-4.7"}
