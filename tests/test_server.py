import json
import time
import unittest

import httpx
from fastapi import HTTPException
from fastapi.testclient import TestClient

from routecast.app.dispatch import DispatchQueue
from routecast.app.models import JobStatus
from routecast.app.server import ControlServer, bind_sockets, create_app, is_authorized, normalize_path

from .fakes import FakeRunner

RENDER_BODY = {"jobId": "job-1", "routeJson": [{"id": "h1", "x": 10, "y": 20}]}


class HelperTests(unittest.TestCase):
    def test_is_authorized(self) -> None:
        self.assertTrue(is_authorized(None, ""))
        self.assertFalse(is_authorized(None, "s3cret"))
        self.assertFalse(is_authorized("Bearer wrong", "s3cret"))
        self.assertFalse(is_authorized("Basic s3cret", "s3cret"))
        self.assertTrue(is_authorized("Bearer s3cret", "s3cret"))
        self.assertTrue(is_authorized("bearer s3cret", "s3cret"))
        self.assertFalse(is_authorized("Bearer S3CRET", "s3cret"))

    def test_normalize_path(self) -> None:
        self.assertEqual(normalize_path("/Health/"), "/health")
        self.assertEqual(normalize_path("/"), "/")


class ControlApiTests(unittest.TestCase):
    def make_client(self, runner=None, secret: str = "", no_runner: bool = False) -> TestClient:
        self.runner = None if no_runner else (runner or FakeRunner())
        self.dispatch = DispatchQueue()
        app = create_app(self.runner, self.dispatch, secret)
        return TestClient(app, raise_server_exceptions=False)

    def test_health_reports_runner_state(self) -> None:
        client = self.make_client(FakeRunner("busy"))
        r = client.get("/health")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json(), {"status": "busy"})
        self.assertEqual(int(r.headers["content-length"]), len(r.content))
        self.assertTrue(r.headers["content-type"].startswith("application/json"))

    def test_paths_are_case_insensitive_and_slash_trimmed(self) -> None:
        client = self.make_client()
        self.assertEqual(client.get("/HEALTH/").json(), {"status": "idle"})

    def test_status_unknown_job(self) -> None:
        client = self.make_client()
        r = client.get("/status", params={"jobId": "doesnotexist"})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["state"], "unknown")
        self.assertEqual(r.json()["message"], "no-such-job")
        self.assertEqual(client.get("/status").json()["state"], "unknown")

    def test_status_is_repeatable(self) -> None:
        runner = FakeRunner()
        runner.statuses["j"] = JobStatus.finished("j", True, "upload complete")
        client = self.make_client(runner)
        first = client.get("/status?jobId=j").json()
        self.assertEqual(first["state"], "completed")
        self.assertEqual(client.get("/status?jobId=j").json(), first)

    def test_missing_runner(self) -> None:
        client = self.make_client(no_runner=True)
        self.assertEqual(client.get("/status?jobId=x").status_code, 503)
        r = client.post("/render", content=json.dumps(RENDER_BODY))
        self.assertEqual(r.status_code, 503)
        self.assertEqual(r.json(), {"error": "job-runner-missing"})
        self.assertEqual(client.get("/health").json(), {"status": "unknown"})

    def test_render_is_accepted_and_dispatched(self) -> None:
        client = self.make_client()
        r = client.post("/render", content=json.dumps(RENDER_BODY))
        self.assertEqual(r.status_code, 202)
        self.assertEqual(r.json(), {"jobId": "job-1", "status": "queued"})
        # acceptance does not run the job; the main loop does
        self.assertEqual(self.runner.enqueued, [])
        self.assertEqual(self.dispatch.drain(), 1)
        self.assertEqual(self.runner.enqueued[0].job_id, "job-1")

    def test_render_validation_errors(self) -> None:
        client = self.make_client()
        cases = [
            (b"", "empty-body"),
            (b"not json", "invalid-json"),
            (json.dumps({"routeJson": RENDER_BODY["routeJson"]}).encode(), "missing-job-id"),
            (json.dumps({"jobId": "a", "routeJson": []}).encode(), "missing-route-json"),
            (json.dumps({"jobId": "a", "routeJson": [{"id": "no-position"}]}).encode(), "invalid-payload"),
        ]
        for body, code in cases:
            with self.subTest(code=code):
                r = client.post("/render", content=body)
                self.assertEqual(r.status_code, 400)
                self.assertEqual(r.json()["error"], code)
        self.assertEqual(self.dispatch.pending(), 0)

    def test_auth_gate_with_secret(self) -> None:
        client = self.make_client(secret="s3cret")
        missing = client.get("/health")
        wrong = client.get("/health", headers={"Authorization": "Bearer nope"})
        right = client.get("/health", headers={"Authorization": "Bearer s3cret"})
        self.assertEqual((missing.status_code, wrong.status_code, right.status_code), (401, 401, 200))
        self.assertEqual(missing.json(), {"error": "unauthorized"})
        self.assertEqual(right.json(), {"status": "idle"})

    def test_auth_gate_without_secret(self) -> None:
        client = self.make_client()
        responses = [
            client.get("/health"),
            client.get("/health", headers={"Authorization": "Bearer nope"}),
            client.get("/health", headers={"Authorization": "Bearer s3cret"}),
        ]
        self.assertEqual([r.status_code for r in responses], [200, 200, 200])

    def test_unknown_routes_are_404(self) -> None:
        client = self.make_client()
        for method, path in (("GET", "/nope"), ("GET", "/render"), ("DELETE", "/health"), ("POST", "/status")):
            with self.subTest(method=method, path=path):
                r = client.request(method, path)
                self.assertEqual(r.status_code, 404)
                self.assertEqual(r.json(), {"error": "not-found"})

    def test_unexpected_error_is_500(self) -> None:
        runner = FakeRunner()

        def broken(job_id):
            raise RuntimeError("store exploded")

        runner.get_status = broken
        client = self.make_client(runner)
        with self.assertLogs("routecast", level="ERROR"):
            r = client.get("/status?jobId=x")
        self.assertEqual(r.status_code, 500)
        self.assertEqual(r.json(), {"error": "server-error"})

    def test_raised_http_errors_use_fixed_codes(self) -> None:
        runner = FakeRunner()
        client = self.make_client(runner)
        for status_code, code in ((400, "bad-request"), (422, "bad-request"), (503, "server-error")):

            def refuse(job_id, status_code=status_code):
                raise HTTPException(status_code=status_code, detail="free text from a handler")

            runner.get_status = refuse
            with self.subTest(status_code=status_code):
                r = client.get("/status?jobId=x")
                self.assertEqual(r.status_code, status_code)
                self.assertEqual(r.json(), {"error": code})


class ControlServerTests(unittest.TestCase):
    def test_unbindable_hosts_leave_server_down(self) -> None:
        app = create_app(FakeRunner(), DispatchQueue())
        server = ControlServer(app, ["host.invalid."], 0)
        with self.assertLogs("routecast", level="ERROR"):
            self.assertFalse(server.start())
        self.assertFalse(server.started)
        server.stop()

    def test_duplicate_hosts_bind_once(self) -> None:
        sockets = bind_sockets(["127.0.0.1", "http://127.0.0.1"], 0)
        try:
            self.assertEqual(len(sockets), 1)
        finally:
            for s in sockets:
                s.close()

    def test_serves_over_loopback(self) -> None:
        app = create_app(FakeRunner(), DispatchQueue(), "tok")
        server = ControlServer(app, ["127.0.0.1"], 0)
        self.assertTrue(server.start())
        try:
            deadline = time.monotonic() + 10
            while not server.started and time.monotonic() < deadline:
                time.sleep(0.05)
            host, port = server.addresses()[0]
            r = httpx.get(f"http://{host}:{port}/health", headers={"Authorization": "Bearer tok"})
            self.assertEqual(r.json(), {"status": "idle"})
        finally:
            server.stop()
        self.assertEqual(server.sockets, [])
