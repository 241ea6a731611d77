import threading
import time
import unittest

from fastapi.testclient import TestClient

from fakes import DONE_FRAME, UPSTREAM_URL, ScriptedUpstream, chat_frame, parse_events
from chatrelay.config import GatewayConfig
from chatrelay.gateway import create_app

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


def chat_body(stream: bool, content: str = "Hello") -> dict:
    return {"messages": [{"role": "user", "content": content}], "stream": stream}


def make_app(upstream: ScriptedUpstream, **overrides):
    config = GatewayConfig(upstream_url=UPSTREAM_URL, cancel_grace_seconds=0.5, **overrides)
    return create_app(config, upstream_transport=upstream.transport())


def wait_for_inflight(client: TestClient, headers: dict, timeout: float = 2.0) -> list[str]:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        request_ids = client.get("/v1/chat/inflight", headers=headers).json()["request_ids"]
        if request_ids:
            return request_ids
        time.sleep(0.02)
    return []


class GatewayChatTests(unittest.TestCase):
    def test_streams_start_deltas_and_done(self) -> None:
        upstream = ScriptedUpstream(chunks=[chat_frame("Hel"), chat_frame("lo"), DONE_FRAME])

        with TestClient(make_app(upstream)) as client:
            response = client.post("/v1/chat", json=chat_body(stream=True), headers=ALICE)
            inflight = client.get("/v1/chat/inflight", headers=ALICE).json()

        events = parse_events(response.content)
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/event-stream"))
        self.assertEqual([name for name, _ in events], ["start", "delta", "delta", "done"])
        self.assertEqual("".join(data.get("content", "") for _, data in events), "Hello")
        self.assertEqual(inflight["request_ids"], [])

    def test_stream_reports_upstream_failure_as_error_event(self) -> None:
        upstream = ScriptedUpstream(status_code=500, body=b"internal")

        with TestClient(make_app(upstream)) as client:
            response = client.post("/v1/chat", json=chat_body(stream=True), headers=ALICE)

        events = parse_events(response.content)
        self.assertEqual(response.status_code, 200)
        self.assertEqual([name for name, _ in events], ["start", "error"])
        self.assertEqual(events[-1][1]["upstream_status"], 500)

    def test_non_streaming_returns_json(self) -> None:
        upstream = ScriptedUpstream(
            json_body={"choices": [{"message": {"role": "assistant", "content": "Hi"}, "finish_reason": "stop"}]}
        )

        with TestClient(make_app(upstream, default_model="small-model")) as client:
            response = client.post("/v1/chat", json=chat_body(stream=False), headers=ALICE)

        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(body["content"], "Hi")
        self.assertEqual(body["model"], "small-model")
        self.assertTrue(body["request_id"])
        self.assertEqual(upstream.payloads[0]["model"], "small-model")

    def test_non_streaming_upstream_failure_is_502(self) -> None:
        upstream = ScriptedUpstream(status_code=503, body=b"overloaded")

        with TestClient(make_app(upstream)) as client:
            response = client.post("/v1/chat", json=chat_body(stream=False), headers=ALICE)

        detail = response.json()["detail"]
        self.assertEqual(response.status_code, 502)
        self.assertEqual(detail["upstream_status"], 503)
        self.assertTrue(detail["request_id"])

    def test_invalid_requests_never_reach_upstream(self) -> None:
        upstream = ScriptedUpstream(chunks=[DONE_FRAME])
        invalid = [
            {"messages": []},
            {"messages": [{"role": "tool", "content": "x"}]},
            {"messages": [{"role": "user", "content": "   "}]},
            {"messages": [{"role": "user", "content": "x" * 10_001}]},
            {"messages": [{"role": "user", "content": "x"}] * 51},
            {"messages": [{"role": "user", "content": "x" * 10_000}] * 6},
            {"messages": [{"role": "user", "content": "x"}], "temperature": 2.5},
            {"messages": [{"role": "user", "content": "x"}], "max_tokens": 0},
            {"messages": [{"role": "user", "content": "x"}], "max_tokens": 9000},
        ]

        with TestClient(make_app(upstream)) as client:
            statuses = [client.post("/v1/chat", json=body, headers=ALICE).status_code for body in invalid]

        self.assertEqual(statuses, [422] * len(invalid))
        self.assertEqual(upstream.payloads, [])


class GatewayStopTests(unittest.TestCase):
    def test_stop_interrupts_stream_and_checks_owner(self) -> None:
        upstream = ScriptedUpstream(chunks=[chat_frame("Hi")], hang=True)
        streamed: list = []

        with TestClient(make_app(upstream)) as client:
            def run_stream() -> None:
                streamed.append(client.post("/v1/chat", json=chat_body(stream=True), headers=ALICE))

            stream_thread = threading.Thread(target=run_stream)
            stream_thread.start()
            [request_id] = wait_for_inflight(client, ALICE)

            foreign = client.post("/v1/chat/stop", json={"request_id": request_id}, headers=BOB)
            own = client.post("/v1/chat/stop", json={"request_id": request_id}, headers=ALICE)
            again = client.post("/v1/chat/stop", json={"request_id": request_id}, headers=ALICE)
            stream_thread.join(timeout=5.0)

        self.assertEqual(foreign.status_code, 403)
        self.assertEqual(own.status_code, 200)
        self.assertEqual(own.json(), {"stopped": [request_id], "count": 1})
        self.assertEqual(again.status_code, 404)

        names = [name for name, _ in parse_events(streamed[0].content)]
        self.assertEqual(names[0], "start")
        self.assertEqual(names[-1], "stopped")
        self.assertNotIn("done", names)
        self.assertTrue(upstream.cancel_observed.wait(timeout=2.0))

    def test_stop_interrupts_non_streaming_request_with_409(self) -> None:
        upstream = ScriptedUpstream(json_body={"choices": []}, hang=True)
        completed: list = []

        with TestClient(make_app(upstream)) as client:
            def run_request() -> None:
                completed.append(client.post("/v1/chat", json=chat_body(stream=False), headers=ALICE))

            request_thread = threading.Thread(target=run_request)
            request_thread.start()
            [request_id] = wait_for_inflight(client, ALICE)

            stop = client.post("/v1/chat/stop", json={"stop_all": True}, headers=ALICE)
            request_thread.join(timeout=5.0)

        self.assertEqual(stop.json(), {"stopped": [request_id], "count": 1})
        self.assertEqual(completed[0].status_code, 409)
        self.assertEqual(
            completed[0].json()["detail"],
            {"request_id": request_id, "status": "stopped", "reason": "stopped"},
        )

    def test_stop_validation_and_unknown_ids(self) -> None:
        upstream = ScriptedUpstream()

        with TestClient(make_app(upstream)) as client:
            missing = client.post("/v1/chat/stop", json={}, headers=ALICE)
            unknown = client.post("/v1/chat/stop", json={"request_id": "nope"}, headers=ALICE)
            nothing = client.post("/v1/chat/stop", json={"stop_all": True}, headers=ALICE)

        self.assertEqual(missing.status_code, 400)
        self.assertEqual(unknown.status_code, 404)
        self.assertEqual(nothing.json(), {"stopped": [], "count": 0})


class GatewayOpsTests(unittest.TestCase):
    def test_health_and_metrics(self) -> None:
        upstream = ScriptedUpstream(chunks=[chat_frame("x"), DONE_FRAME])

        with TestClient(make_app(upstream)) as client:
            client.post("/v1/chat", json=chat_body(stream=True))
            health = client.get("/health").json()
            metrics = client.get("/metrics")

        self.assertEqual(health, {"status": "ok", "inflight_requests": 0, "janitor_running": True})
        self.assertEqual(metrics.status_code, 200)
        self.assertIn("chatrelay_requests_total", metrics.text)
        self.assertIn("chatrelay_frames_forwarded_total", metrics.text)
