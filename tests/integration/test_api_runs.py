"""Integration tests for the run API endpoints."""

import asyncio
import json

import pytest
from httpx import AsyncClient

from exec_relay.core.session import SessionRegistry

SLEEPER = 'import time\nprint("ready", flush=True)\ntime.sleep(60)\n'


async def wait_done(client: AsyncClient, session_id: str, timeout: float = 15.0) -> dict:
    """Poll the snapshot until the run reaches a terminal state."""
    for _ in range(int(timeout / 0.05)):
        response = await client.get(f"/api/v1/runs/{session_id}")
        data = response.json()
        if data["state"] not in ("queued", "running"):
            return data
        await asyncio.sleep(0.05)
    raise AssertionError(f"run {session_id} did not finish")


def parse_sse(body: str) -> list[dict]:
    messages = []
    for block in body.strip().split("\n\n"):
        fields = dict(line.split(": ", 1) for line in block.splitlines() if ": " in line)
        if "data" in fields:
            messages.append({**fields, "id": int(fields["id"])})
    return messages


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    @pytest.mark.asyncio
    async def test_health_returns_ok(self, client: AsyncClient) -> None:
        """Test health endpoint returns healthy status."""
        response = await client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data
        assert data["active_runs"] == 0


class TestInfoEndpoint:
    """Tests for /info endpoint."""

    @pytest.mark.asyncio
    async def test_info_returns_server_info(self, client: AsyncClient) -> None:
        """Test info endpoint returns server information."""
        response = await client.get("/api/v1/info")

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Exec Relay"
        assert data["languages"]["python"] is True
        assert data["isolation"]["mode"] == "none"
        assert data["history_per_workspace"] > 0


class TestRunsEndpoint:
    """Tests for /runs endpoints."""

    @pytest.mark.asyncio
    async def test_submit_and_get(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/runs",
            json={"workspace_id": "w1", "language": "python", "source": "print(40 + 2)"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["session_id"].startswith("run_")
        assert data["state"] == "running"
        assert data["workspace_id"] == "w1"

        final = await wait_done(client, data["session_id"])
        assert final["state"] == "succeeded"
        assert final["exit_code"] == 0

    @pytest.mark.asyncio
    async def test_submit_with_limits(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/runs",
            json={
                "workspace_id": "w1",
                "language": "python",
                "source": "while True:\n    pass\n",
                "limits": {"wall_timeout_seconds": 0.5},
            },
        )

        assert response.status_code == 201
        assert response.json()["limits"]["wall_timeout_seconds"] == 0.5
        final = await wait_done(client, response.json()["session_id"])
        assert final["state"] == "timed_out"

    @pytest.mark.asyncio
    async def test_busy_workspace(self, client: AsyncClient) -> None:
        first = await client.post(
            "/api/v1/runs",
            json={"workspace_id": "w1", "language": "python", "source": SLEEPER},
        )
        first_id = first.json()["session_id"]

        second = await client.post(
            "/api/v1/runs",
            json={"workspace_id": "w1", "language": "python", "source": "print(1)"},
        )

        assert second.status_code == 409
        body = second.json()
        assert body["success"] is False
        assert body["error"]["code"] == "busy"
        assert body["error"]["details"]["active_session_id"] == first_id
        assert "request_id" in body["meta"]

        runs = (await client.get("/api/v1/runs", params={"workspace_id": "w1"})).json()
        assert runs["total"] == 1
        assert runs["runs"][0]["state"] == "running"

        cancel = await client.post(f"/api/v1/runs/{first_id}/cancel")
        assert cancel.status_code == 200
        await wait_done(client, first_id)

    @pytest.mark.asyncio
    async def test_invalid_language(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/runs",
            json={"workspace_id": "w1", "language": "cobol", "source": "x"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_language"

    @pytest.mark.asyncio
    async def test_malformed_body(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/runs", json={"workspace_id": "w1"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "bad_request"

    @pytest.mark.asyncio
    async def test_limit_above_maximum(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/runs",
            json={
                "workspace_id": "w1",
                "language": "python",
                "source": "print(1)",
                "limits": {"wall_timeout_seconds": 100000},
            },
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "bad_request"

    @pytest.mark.asyncio
    async def test_get_unknown_run(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/runs/run_nope")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    @pytest.mark.asyncio
    async def test_cancel(self, client: AsyncClient, registry: SessionRegistry) -> None:
        response = await client.post(
            "/api/v1/runs",
            json={"workspace_id": "w1", "language": "python", "source": SLEEPER},
        )
        session_id = response.json()["session_id"]
        session = await registry.get(session_id)
        await session.stream.get_since(1, timeout=10)

        cancel = await client.post(f"/api/v1/runs/{session_id}/cancel")

        assert cancel.status_code == 200
        assert cancel.json()["ok"] is True
        final = await wait_done(client, session_id)
        assert final["state"] == "cancelled"

        again = await client.post(f"/api/v1/runs/{session_id}/cancel")
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "already_terminal"
        assert (await client.get(f"/api/v1/runs/{session_id}")).json()["state"] == "cancelled"


class TestEventsEndpoint:
    """Tests for event replay endpoints."""

    @pytest.mark.asyncio
    async def test_long_poll_since(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/runs",
            json={"workspace_id": "w1", "language": "python", "source": "print('a')\nprint('b')"},
        )
        session_id = response.json()["session_id"]
        await wait_done(client, session_id)

        all_events = (await client.get(f"/api/v1/runs/{session_id}/events")).json()
        tail = (
            await client.get(f"/api/v1/runs/{session_id}/events", params={"since": 2})
        ).json()

        assert all_events["closed"] is True
        seqs = [e["seq"] for e in all_events["events"]]
        assert seqs == list(range(1, all_events["last_seq"] + 1))
        assert tail["events"] == all_events["events"][2:]
        payloads = [e["payload"] for e in all_events["events"] if e["kind"] == "stdout"]
        assert payloads == ["a", "b"]

    @pytest.mark.asyncio
    async def test_long_poll_waits(self, client: AsyncClient, registry: SessionRegistry) -> None:
        response = await client.post(
            "/api/v1/runs",
            json={"workspace_id": "w1", "language": "python", "source": SLEEPER},
        )
        session_id = response.json()["session_id"]

        polled = await client.get(
            f"/api/v1/runs/{session_id}/events", params={"since": 1, "timeout": 10}
        )

        events = polled.json()["events"]
        assert events[0]["seq"] == 2
        assert events[0]["payload"] == "ready"
        await registry.cancel(session_id)
        await wait_done(client, session_id)

    @pytest.mark.asyncio
    async def test_sse_stream_replay(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/runs",
            json={"workspace_id": "w1", "language": "python", "source": "print(1)\nprint(2)"},
        )
        session_id = response.json()["session_id"]
        await wait_done(client, session_id)

        stream = await client.get(f"/api/v1/runs/{session_id}/events/stream")

        assert stream.status_code == 200
        assert stream.headers["content-type"].startswith("text/event-stream")
        messages = parse_sse(stream.text)
        assert [m["id"] for m in messages] == list(range(1, len(messages) + 1))
        last = json.loads(messages[-1]["data"])
        assert last["payload"] == "Exited(0)"
        assert messages[1]["event"] == "stdout"

    @pytest.mark.asyncio
    async def test_sse_resumes_after_last_event_id(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/runs",
            json={"workspace_id": "w1", "language": "python", "source": "print(1)\nprint(2)"},
        )
        session_id = response.json()["session_id"]
        await wait_done(client, session_id)

        stream = await client.get(
            f"/api/v1/runs/{session_id}/events/stream", headers={"Last-Event-ID": "2"}
        )

        messages = parse_sse(stream.text)
        assert messages[0]["id"] == 3


class TestProblemsEndpoints:
    """Tests for run and workspace problems."""

    @pytest.mark.asyncio
    async def test_run_and_workspace_problems(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/runs",
            json={
                "workspace_id": "w1",
                "language": "python",
                "source": "x = 1\nraise TypeError('nope')\n",
            },
        )
        session_id = response.json()["session_id"]
        await wait_done(client, session_id)

        run_problems = (await client.get(f"/api/v1/runs/{session_id}/problems")).json()
        ws_problems = (await client.get("/api/v1/workspaces/w1/problems")).json()

        assert len(run_problems["problems"]) == 1
        problem = run_problems["problems"][0]
        assert problem["severity"] == "error"
        assert problem["line"] == 2
        assert problem["column"] is None
        assert ws_problems["session_id"] == session_id
        assert ws_problems["problems"] == run_problems["problems"]

    @pytest.mark.asyncio
    async def test_unknown_workspace_has_no_problems(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/workspaces/nobody/problems")

        assert response.status_code == 200
        assert response.json() == {"problems": [], "session_id": None}

    @pytest.mark.asyncio
    async def test_workspace_history(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/runs",
            json={"workspace_id": "hist", "language": "python", "source": "print(1)"},
        )
        session_id = response.json()["session_id"]
        await wait_done(client, session_id)

        history: dict = {"total": 0}
        for _ in range(100):
            history = (await client.get("/api/v1/workspaces/hist/history")).json()
            if history["total"]:
                break
            await asyncio.sleep(0.05)

        assert history["total"] == 1
        assert history["runs"][0]["run"]["session_id"] == session_id
        assert history["runs"][0]["event_count"] >= 3
