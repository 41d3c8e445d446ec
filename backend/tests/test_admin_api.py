"""Tests for the admin HTTP API (executions, circuit breakers, recovery, health)."""

import asyncio

import pytest

from modules.base_module import FunctionModule, ModuleCall

API = "/api/v1"


async def wait_for_status(client, execution_id, statuses, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        resp = await client.get(f"{API}/executions/{execution_id}")
        data = resp.json()
        if data["status"] in statuses:
            return data
        if loop.time() > deadline:
            raise AssertionError(f"execution stuck in {data['status']}")
        await asyncio.sleep(0.01)


@pytest.fixture
def greeting_chain(chains):
    chains.register({"id": "greet", "steps": [
        {"type": "module_call", "id": "hello", "target": "echo", "operation": "run",
         "params": {"greeting": "hello {{ input.name }}"}, "retry_count": 0},
    ]})


@pytest.fixture
def blocking_chain(chains, modules):
    release = asyncio.Event()

    async def hold(request: ModuleCall):
        await release.wait()
        return "released"

    modules.register("hold", FunctionModule("hold", hold))
    chains.register({"id": "blocking", "steps": [
        {"type": "module_call", "id": "wait", "target": "hold", "operation": "wait", "retry_count": 0},
    ]})
    yield release
    release.set()


# ─── Health ───

@pytest.mark.unit
class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, client, greeting_chain):
        resp = await client.get(f"{API}/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["supervisor"] == "running"
        assert data["chains"] == 1
        assert set(data["modules"]) >= {"echo", "broken"}

    @pytest.mark.asyncio
    async def test_degraded_when_circuit_open(self, client, breakers):
        for _ in range(3):
            await breakers.acquire("crm")
            await breakers.record_failure("crm", "down")
        data = (await client.get(f"{API}/health")).json()
        assert data["status"] == "degraded"
        assert data["open_circuits"] == ["crm"]

    @pytest.mark.asyncio
    async def test_status(self, client):
        resp = await client.get(f"{API}/health/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["checkpoint_backend"] == "file"
        assert data["supervisor"]["running"] is True

    @pytest.mark.asyncio
    async def test_request_id_propagated(self, client):
        resp = await client.get(f"{API}/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers.get("x-request-id") == "req-123"


# ─── Executions ───

@pytest.mark.integration
class TestExecutions:
    @pytest.mark.asyncio
    async def test_submit_and_fetch(self, client, greeting_chain):
        resp = await client.post(f"{API}/executions/", json={
            "chain_id": "greet", "trigger_id": "t-1", "input": {"name": "ada"},
        })
        assert resp.status_code == 202
        submitted = resp.json()
        assert submitted["chain_id"] == "greet"
        assert submitted["trigger_id"] == "t-1"
        assert submitted["execution_id"].startswith("exec-")

        data = await wait_for_status(client, submitted["execution_id"], {"completed"})
        assert data["result"]["output"] == {"greeting": "hello ada"}
        assert data["result"]["step_results"][0]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_submit_unknown_chain(self, client):
        resp = await client.post(f"{API}/executions/", json={"chain_id": "nope"})
        assert resp.status_code == 404
        body = resp.json()
        assert body["error_type"] == "ChainNotFoundError"
        assert "nope" in body["detail"]

    @pytest.mark.asyncio
    async def test_submit_invalid_body(self, client):
        resp = await client.post(f"{API}/executions/", json={"input": {}})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_get_unknown_execution(self, client):
        resp = await client.get(f"{API}/executions/exec-missing")
        assert resp.status_code == 404
        assert resp.json()["error_type"] == "ExecutionNotFoundError"

    @pytest.mark.asyncio
    async def test_list_with_filter(self, client, greeting_chain):
        submitted = (await client.post(f"{API}/executions/", json={"chain_id": "greet"})).json()
        await wait_for_status(client, submitted["execution_id"], {"completed"})

        listing = (await client.get(f"{API}/executions/")).json()
        assert listing["total"] == 1
        assert listing["executions"][0]["execution_id"] == submitted["execution_id"]

        failed = (await client.get(f"{API}/executions/", params={"status": "failed"})).json()
        assert failed["total"] == 0

    @pytest.mark.asyncio
    async def test_live_progress_while_running(self, client, blocking_chain):
        submitted = (await client.post(f"{API}/executions/", json={"chain_id": "blocking"})).json()
        data = await wait_for_status(client, submitted["execution_id"], {"running"})
        assert data["result"] is None

        blocking_chain.set()
        data = await wait_for_status(client, submitted["execution_id"], {"completed"})
        assert data["result"]["output"] == "released"

    @pytest.mark.asyncio
    async def test_cancel_running(self, client, blocking_chain):
        submitted = (await client.post(f"{API}/executions/", json={"chain_id": "blocking"})).json()
        execution_id = submitted["execution_id"]
        await wait_for_status(client, execution_id, {"running"})

        resp = await client.post(f"{API}/executions/{execution_id}/cancel")
        assert resp.status_code == 200
        data = await wait_for_status(client, execution_id, {"cancelled"})
        assert data["result"]["status"] == "cancelled"

        again = await client.post(f"{API}/executions/{execution_id}/cancel")
        assert again.status_code == 400

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, client):
        resp = await client.post(f"{API}/executions/exec-missing/cancel")
        assert resp.status_code == 404


# ─── Circuit breakers ───

@pytest.mark.integration
class TestCircuitBreakers:
    @pytest.mark.asyncio
    async def test_list_get_reset(self, client, breakers):
        for _ in range(3):
            await breakers.acquire("crm")
            await breakers.record_failure("crm", "down")
        await breakers.acquire("billing")

        listing = (await client.get(f"{API}/circuit-breakers/")).json()
        assert set(listing) == {"crm", "billing"}
        assert listing["crm"]["state"] == "open"

        detail = (await client.get(f"{API}/circuit-breakers/crm")).json()
        assert detail["failure_count"] == 3
        assert detail["last_error"] == "down"

        resp = await client.post(f"{API}/circuit-breakers/crm/reset")
        assert resp.status_code == 200
        assert (await client.get(f"{API}/circuit-breakers/crm")).status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_key(self, client):
        assert (await client.get(f"{API}/circuit-breakers/ghost")).status_code == 404
        assert (await client.post(f"{API}/circuit-breakers/ghost/reset")).status_code == 404


# ─── Recovery ───

@pytest.mark.integration
class TestRecoveryLog:
    @pytest.mark.asyncio
    async def test_empty_log(self, client):
        data = (await client.get(f"{API}/recovery/")).json()
        assert data == {"entries": [], "recovered": 0, "needs_manual_restart": 0}

    @pytest.mark.asyncio
    async def test_log_entries(self, client, runtime):
        await runtime.recovery.recover_execution("exec-gone")
        data = (await client.get(f"{API}/recovery/")).json()
        assert len(data["entries"]) == 1
        assert data["entries"][0]["execution_id"] == "exec-gone"
        assert data["entries"][0]["error"] == "No checkpoint found"
