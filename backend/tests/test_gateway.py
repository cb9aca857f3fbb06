"""
StagePilot - Agent Gateway Tests
================================

HttpAgentGateway against httpx.MockTransport, plus the simulated agent.
"""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from stagepilot.core.config import Settings
from stagepilot.core.exceptions import GatewayError
from stagepilot.core.models import Message, MessageRole, PipelineStage, StageStatus
from stagepilot.core.pipeline.gateway import (
    HttpAgentGateway,
    SimulatedAgentGateway,
    create_agent_gateway,
)


BASE_URL = "http://agents.test"


def make_stage(name="Requirements Gathering", endpoint="/api/pipeline/requirements-gatherer"):
    return PipelineStage(
        id=7,
        chat_id=1,
        name=name,
        position=0,
        status=StageStatus.IN_PROGRESS,
        pipeline_endpoint=endpoint,
    )


def make_history(*turns):
    return [
        Message(
            id=index,
            stage_id=7,
            role=role,
            content=content,
            created_at=datetime.now(timezone.utc),
        )
        for index, (role, content) in enumerate(turns, start=1)
    ]


def make_gateway(handler, timeout=5.0) -> HttpAgentGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpAgentGateway(
        base_url=BASE_URL,
        default_endpoint="/api/pipeline/chat",
        model_name="gpt-4",
        timeout=timeout,
        client=client,
    )


def agent_json(content, role="assistant", **extra):
    return {"response": {"role": role, "content": content}, **extra}


# ==========================================================================
# HTTP Gateway
# ==========================================================================

class TestHttpAgentGateway:
    """Request shape and error mapping."""

    async def test_posts_history_to_stage_endpoint(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=agent_json("Which platforms?", approval_needed=False))

        gateway = make_gateway(handler)
        history = make_history(
            (MessageRole.USER, "An expense tracker"),
        )

        reply = await gateway.respond(make_stage(), history)

        assert reply.role == MessageRole.ASSISTANT
        assert reply.content == "Which platforms?"
        assert reply.approval_needed is False

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == f"{BASE_URL}/api/pipeline/requirements-gatherer"
        body = json.loads(request.content)
        assert body == {
            "prompt_model_name": "gpt-4",
            "message_history": [{"role": "user", "content": "An expense tracker"}],
            "stage_id": 7,
        }
        await gateway.close()

    async def test_missing_flag_is_none(self):
        gateway = make_gateway(lambda request: httpx.Response(200, json=agent_json("ok")))

        reply = await gateway.respond(make_stage(), [])

        assert reply.approval_needed is None

    async def test_agent_role_normalized(self):
        gateway = make_gateway(
            lambda request: httpx.Response(200, json=agent_json("hi", role="agent", approval_needed=True))
        )

        reply = await gateway.kickoff(make_stage(), [])

        assert reply.role == MessageRole.ASSISTANT
        assert reply.approval_needed is True

    async def test_default_endpoint_without_stage_endpoint(self):
        urls = []

        def handler(request):
            urls.append(str(request.url))
            return httpx.Response(200, json=agent_json("ok"))

        gateway = make_gateway(handler)
        await gateway.respond(make_stage(endpoint=None), [])

        assert urls == [f"{BASE_URL}/api/pipeline/chat"]

    def test_absolute_endpoint_used_as_is(self):
        gateway = make_gateway(lambda request: httpx.Response(200))

        url = gateway.endpoint_url(make_stage(endpoint="https://elsewhere.test/review"))

        assert url == "https://elsewhere.test/review"

    async def test_server_error_raises(self):
        gateway = make_gateway(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(GatewayError) as exc_info:
            await gateway.respond(make_stage(), [])

        assert exc_info.value.status_code == 502
        assert exc_info.value.timeout is False

    async def test_transport_timeout_raises_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        gateway = make_gateway(handler)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.respond(make_stage(), [])

        assert exc_info.value.timeout is True
        assert exc_info.value.status_code == 504
        assert exc_info.value.code == "GATEWAY_TIMEOUT"

    async def test_overall_deadline_enforced(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json=agent_json("late"))

        gateway = make_gateway(handler, timeout=0.01)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.respond(make_stage(), [])

        assert exc_info.value.timeout is True

    async def test_unreachable_service(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        gateway = make_gateway(handler)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.respond(make_stage(), [])

        assert exc_info.value.status_code == 502

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"reply": "wrong shape"}),
            httpx.Response(200, json=agent_json("hi", role="robot")),
            httpx.Response(200, json=agent_json("I approve", role="user")),
        ],
    )
    async def test_malformed_reply_raises(self, response):
        gateway = make_gateway(lambda request: response)

        with pytest.raises(GatewayError):
            await gateway.respond(make_stage(), [])

    async def test_system_reply_accepted(self):
        gateway = make_gateway(lambda request: httpx.Response(200, json=agent_json("note", role="system")))

        reply = await gateway.respond(make_stage(), [])

        assert reply.role == MessageRole.SYSTEM

    async def test_unparseable_endpoint_raises(self):
        gateway = make_gateway(lambda request: httpx.Response(200, json=agent_json("ok")))

        with pytest.raises(GatewayError) as exc_info:
            await gateway.respond(make_stage(endpoint="http://agents.test:notaport/agent"), [])

        assert exc_info.value.status_code == 502
        assert exc_info.value.timeout is False

    async def test_transport_rejecting_url_raises(self):
        def handler(request):
            raise httpx.InvalidURL("No host in URL")

        gateway = make_gateway(handler)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.respond(make_stage(endpoint="http:///agent"), [])

        assert exc_info.value.status_code == 502

    async def test_close_leaves_injected_client_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        gateway = HttpAgentGateway(
            base_url=BASE_URL,
            default_endpoint="/api/pipeline/chat",
            model_name="gpt-4",
            client=client,
        )

        await gateway.close()

        assert client.is_closed is False
        await client.aclose()


# ==========================================================================
# Simulated Gateway
# ==========================================================================

class TestSimulatedAgentGateway:
    """Canned development agent."""

    async def test_confirmation_requests_approval(self):
        gateway = SimulatedAgentGateway()
        history = make_history(
            (MessageRole.USER, "An expense tracker"),
            (MessageRole.ASSISTANT, "Anything else?"),
            (MessageRole.USER, "Yes, that's correct"),
        )

        reply = await gateway.respond(make_stage(), history)

        assert reply.approval_needed is True

    async def test_other_requirements_reply_asks_for_details(self):
        gateway = SimulatedAgentGateway()

        reply = await gateway.respond(make_stage(), make_history((MessageRole.USER, "A budget app")))

        assert reply.approval_needed is False
        assert "more details" in reply.content

    async def test_later_stage_reply(self):
        gateway = SimulatedAgentGateway()

        reply = await gateway.respond(make_stage(name="Code Review"), [])

        assert reply.content.startswith("I've reviewed the code changes")
        assert reply.approval_needed is False

    async def test_kickoff_names_stage(self):
        reply = await SimulatedAgentGateway().kickoff(make_stage(name="Implementation"), [])

        assert reply.content == "Starting Implementation. How would you like to proceed?"
        assert reply.role == MessageRole.ASSISTANT


class TestGatewayFactory:
    async def test_simulated_by_default(self):
        gateway = create_agent_gateway(Settings(AGENT_GATEWAY_MODE="simulated"))

        assert isinstance(gateway, SimulatedAgentGateway)

    async def test_http_mode(self):
        gateway = create_agent_gateway(
            Settings(AGENT_GATEWAY_MODE="http", AGENT_SERVICE_URL="http://agents.test/")
        )

        assert isinstance(gateway, HttpAgentGateway)
        assert gateway.base_url == "http://agents.test"
        await gateway.close()

        assert gateway._client.is_closed is True
