"""AI assistant client: submit, poll, fail and time out."""

import httpx
import orjson
import pytest

from sheetflow.core.config import Settings
from sheetflow.core.exceptions import AIResponseTimeoutError, AIServiceError
from sheetflow.services.ai_client import AIAssistantClient
from sheetflow.services.handlers import handle_ai_query
from sheetflow.services.execution.models import StepContext

from tests.helpers import SALES_ROWS


def _client(handler, **overrides) -> AIAssistantClient:
    settings = Settings(ai_service_url="http://assistant.test/", ai_poll_interval=0.01, **overrides)
    return AIAssistantClient(settings, transport=httpx.MockTransport(handler))


class FakeAssistant:
    """Completes a run after a fixed number of polls."""

    def __init__(self, polls_before_done: int = 2, final_status: str = "completed"):
        self.polls_before_done = polls_before_done
        self.final_status = final_status
        self.polls = 0
        self.prompts = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path == "/runs":
            self.prompts.append(orjson.loads(request.read())["prompt"])
            return httpx.Response(200, json={"id": "run-1", "status": "queued"})
        if request.method == "GET" and request.url.path == "/runs/run-1":
            self.polls += 1
            if self.polls < self.polls_before_done:
                return httpx.Response(200, json={"id": "run-1", "status": "in_progress"})
            return httpx.Response(200, json={"id": "run-1", "status": self.final_status,
                                             "content": "Sales peak in the east.", "error": "quota"})
        return httpx.Response(404)


class TestQuery:
    @pytest.mark.asyncio
    async def test_polls_until_completed(self):
        assistant = FakeAssistant(polls_before_done=3)
        answer = await _client(assistant).query("Where do sales peak?")
        assert answer["run_id"] == "run-1"
        assert answer["content"] == "Sales peak in the east."
        assert assistant.polls == 3
        assert assistant.prompts == ["Where do sales peak?"]

    @pytest.mark.asyncio
    async def test_failed_run(self):
        with pytest.raises(AIServiceError, match="failed: quota"):
            await _client(FakeAssistant(final_status="failed")).query("x")

    @pytest.mark.asyncio
    async def test_wall_clock_limit(self):
        assistant = FakeAssistant(polls_before_done=10_000)
        with pytest.raises(AIResponseTimeoutError):
            await _client(assistant).query("x", timeout=0.05)

    @pytest.mark.asyncio
    async def test_server_error(self):
        client = _client(lambda request: httpx.Response(502, text="bad gateway"))
        with pytest.raises(AIServiceError, match="502"):
            await client.query("x")

    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        client = AIAssistantClient(Settings(ai_service_url=None))
        assert not client.enabled
        with pytest.raises(AIServiceError):
            await client.query("x")


class TestAssistantHandler:
    @pytest.mark.asyncio
    async def test_answer_is_attached_to_analysis(self):
        client = _client(FakeAssistant(polls_before_done=1))
        context = StepContext(execution_id="e1", workflow_id="wf", node_id="ai", node_type="aiQuery",
                              input_data={"data": SALES_ROWS})
        output = await handle_ai_query("ai", "aiQuery", {
            "prompt": "Summarize", "use_assistant": True, "analysis_type": "general",
        }, context, ai_client=client)

        assert output["success"]
        assert output["result"]["answer"] == "Sales peak in the east."
        assert output["result"]["runId"] == "run-1"
        assert "amount" in output["result"]["analysis"]["statistics"]
