"""Unit tests for the Debricked provider: auth token caching, upload/finish, status polling, normalization."""

import json
import os
import tempfile
import unittest
from unittest.mock import MagicMock

import httpx
from pydantic import SecretStr

from vigil.models import Scan
from vigil.services.mapping import ENTITY_FILE, ENTITY_SCAN, MAPPING_CI_UPLOAD, MAPPING_FILE
from vigil.services.providers.base import ProviderError
from vigil.services.providers.debricked import DebrickedAuthService, DebrickedProviderAdapter

BASE = "https://debricked.test"


def _settings(refresh_token: str | None = None, username: str = "ci@example.test", password: str = "pw") -> MagicMock:
    settings = MagicMock()
    settings.DEBRICKED_BASE_URL = BASE
    settings.DEBRICKED_USERNAME = username
    settings.DEBRICKED_PASSWORD = SecretStr(password) if password else None
    settings.DEBRICKED_REFRESH_TOKEN = SecretStr(refresh_token) if refresh_token else None
    settings.DEBRICKED_REQUEST_TIMEOUT_SEC = 5.0
    return settings


class Recorder:
    """MockTransport handler that routes by path and records every request."""

    def __init__(self, routes: dict) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "no route"})
        if callable(route):
            return route(request)
        return route

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def _client(recorder: Recorder) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(recorder))


class TestDebrickedAuthService(unittest.TestCase):
    def test_refresh_token_used_and_cached(self) -> None:
        rec = Recorder({("POST", "/api/login_refresh"): httpx.Response(200, json={"token": "jwt-r"})})
        auth = DebrickedAuthService(_settings(refresh_token="rt"), _client(rec))
        self.assertEqual(auth.get_token(), "jwt-r")
        self.assertEqual(auth.get_token(), "jwt-r")
        self.assertEqual(rec.paths(), ["/api/login_refresh"])
        self.assertIn(b"refresh_token=rt", rec.requests[0].content)

    def test_falls_back_to_login_check(self) -> None:
        rec = Recorder(
            {
                ("POST", "/api/login_refresh"): httpx.Response(401, json={"message": "expired"}),
                ("POST", "/api/login_check"): httpx.Response(200, json={"token": "jwt-p"}),
            }
        )
        auth = DebrickedAuthService(_settings(refresh_token="rt"), _client(rec))
        self.assertEqual(auth.get_token(), "jwt-p")
        self.assertEqual(rec.paths(), ["/api/login_refresh", "/api/login_check"])
        self.assertIn(b"_username=ci%40example.test", rec.requests[1].content)

    def test_clear_token_forces_new_login(self) -> None:
        rec = Recorder({("POST", "/api/login_check"): httpx.Response(200, json={"token": "jwt"})})
        auth = DebrickedAuthService(_settings(), _client(rec))
        auth.get_token()
        auth.clear_token()
        auth.get_token()
        self.assertEqual(len(rec.requests), 2)

    def test_missing_credentials(self) -> None:
        rec = Recorder({})
        auth = DebrickedAuthService(_settings(username="", password=""), _client(rec))
        with self.assertRaises(ProviderError):
            auth.get_token()
        self.assertEqual(rec.requests, [])

    def test_login_without_token(self) -> None:
        rec = Recorder({("POST", "/api/login_check"): httpx.Response(200, json={})})
        auth = DebrickedAuthService(_settings(), _client(rec))
        with self.assertRaises(ProviderError):
            auth.get_token()


class AdapterTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.paths = []
        for name in ("package-lock.json", "yarn.lock"):
            path = os.path.join(self.tmp.name, name)
            with open(path, "w", encoding="utf-8") as fh:
                fh.write("{}")
            self.paths.append(path)
        self.mapping = MagicMock()
        self.mapping.find_by_linked_entity.return_value = None
        self.auth = MagicMock()
        self.auth.get_token.return_value = "jwt"
        self.scan = Scan(id=8, repository_id=2, status="uploaded")

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def adapter(self, rec: Recorder) -> DebrickedProviderAdapter:
        return DebrickedProviderAdapter(_settings(), self.mapping, self.auth, _client(rec))


class TestUploadAndCreateScan(AdapterTestCase):
    def _upload_route(self):
        counter = iter([9, 10])

        def route(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"ciUploadId": 123, "files": [{"dependencyFileId": next(counter)}]})

        return route

    def test_uploads_each_file_then_finishes(self) -> None:
        rec = Recorder(
            {
                ("POST", "/api/1.0/open/uploads/dependencies/files"): self._upload_route(),
                ("POST", "/api/1.0/open/finishes/dependencies/files/uploads"): httpx.Response(204),
            }
        )
        result = self.adapter(rec).upload_and_create_scan(
            self.scan,
            self.paths,
            {"repository_name": "acme/web", "branch_name": "main", "file_ids": {self.paths[0]: 1, self.paths[1]: 2}},
        )

        self.assertEqual(result.remote_upload_id, "123")
        self.assertEqual(result.remote_file_ids, ["9", "10"])
        self.assertEqual(result.raw, {"ciUploadId": "123", "status": "finished"})
        self.assertEqual(
            rec.paths(),
            [
                "/api/1.0/open/uploads/dependencies/files",
                "/api/1.0/open/uploads/dependencies/files",
                "/api/1.0/open/finishes/dependencies/files/uploads",
            ],
        )
        first, second, finish = rec.requests
        self.assertEqual(first.headers["Authorization"], "Bearer jwt")
        self.assertIn(b'name="fileData"; filename="package-lock.json"', first.content)
        self.assertIn(b"acme/web", first.content)
        self.assertNotIn(b'name="ciUploadId"', first.content)
        self.assertIn(b'name="ciUploadId"', second.content)
        self.assertEqual(json.loads(finish.content), {"ciUploadId": "123", "branchName": "main"})

        calls = [c.args for c in self.mapping.create.call_args_list]
        self.assertEqual(calls[0][:5], ("debricked", MAPPING_FILE, "9", ENTITY_FILE, 1))
        self.assertEqual(calls[1][:5], ("debricked", MAPPING_FILE, "10", ENTITY_FILE, 2))
        self.assertEqual(calls[2], ("debricked", MAPPING_CI_UPLOAD, "123", ENTITY_SCAN, 8, {"files": ["9", "10"]}))

    def test_reuses_previous_upload_id(self) -> None:
        self.mapping.find_by_linked_entity.return_value = MagicMock(external_id="old-1")
        rec = Recorder(
            {
                ("POST", "/api/1.0/open/uploads/dependencies/files"): httpx.Response(200, json={"files": []}),
                ("POST", "/api/1.0/open/finishes/dependencies/files/uploads"): httpx.Response(
                    200, json={"message": "ok"}
                ),
            }
        )
        result = self.adapter(rec).upload_and_create_scan(self.scan, self.paths[:1], {"repository_name": "r"})
        self.assertEqual(result.remote_upload_id, "old-1")
        self.assertEqual(result.raw, {"message": "ok"})

    def test_no_upload_id_anywhere(self) -> None:
        rec = Recorder(
            {("POST", "/api/1.0/open/uploads/dependencies/files"): httpx.Response(200, json={"files": []})}
        )
        with self.assertRaises(ProviderError):
            self.adapter(rec).upload_and_create_scan(self.scan, self.paths[:1], {"repository_name": "r"})
        self.mapping.create.assert_not_called()

    def test_upload_http_error_aborts(self) -> None:
        rec = Recorder(
            {("POST", "/api/1.0/open/uploads/dependencies/files"): httpx.Response(500, text="boom")}
        )
        with self.assertRaises(ProviderError) as ctx:
            self.adapter(rec).upload_and_create_scan(self.scan, self.paths, {"repository_name": "r"})
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(len(rec.requests), 1)

    def test_missing_local_file(self) -> None:
        rec = Recorder({})
        with self.assertRaises(ProviderError):
            self.adapter(rec).upload_and_create_scan(
                self.scan, [os.path.join(self.tmp.name, "gone.json")], {"repository_name": "r"}
            )

    def test_unauthorized_clears_token(self) -> None:
        rec = Recorder(
            {("POST", "/api/1.0/open/uploads/dependencies/files"): httpx.Response(401, json={})}
        )
        with self.assertRaises(ProviderError):
            self.adapter(rec).upload_and_create_scan(self.scan, self.paths[:1], {"repository_name": "r"})
        self.auth.clear_token.assert_called_once()


class TestPollScanStatus(AdapterTestCase):
    def _poll(self, response: httpx.Response):
        rec = Recorder({("GET", "/api/1.0/open/ci/upload/status"): response})
        return self.adapter(rec).poll_scan_status("ci-5"), rec

    def test_completed_at_100(self) -> None:
        status, rec = self._poll(
            httpx.Response(200, json={"progress": 100, "vulnerabilitiesFound": 3, "detailsUrl": "https://d/1"})
        )
        self.assertTrue(status.scan_completed)
        self.assertEqual(status.progress, 100)
        self.assertEqual(status.vulnerabilities_found, 3)
        self.assertEqual(status.details_url, "https://d/1")
        self.assertEqual(rec.requests[0].url.params["ciUploadId"], "ci-5")

    def test_in_progress(self) -> None:
        status, _ = self._poll(httpx.Response(200, json={"progress": 45}))
        self.assertFalse(status.scan_completed)
        self.assertEqual(status.vulnerabilities_found, 0)
        self.assertIsNone(status.details_url)

    def test_malformed_json(self) -> None:
        with self.assertRaises(ProviderError):
            self._poll(httpx.Response(200, text="<html>"))

    def test_http_error(self) -> None:
        with self.assertRaises(ProviderError):
            self._poll(httpx.Response(503, text="maintenance"))

    def test_transport_error(self) -> None:
        def boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        rec = Recorder({("GET", "/api/1.0/open/ci/upload/status"): boom})
        with self.assertRaises(ProviderError):
            self.adapter(rec).poll_scan_status("ci-5")


class TestNormalizeScanResult(AdapterTestCase):
    def test_completed_without_vulnerability_fields(self) -> None:
        result = self.adapter(Recorder({})).normalize_scan_result({"scanCompleted": True})
        self.assertEqual(result.status, "completed")
        self.assertEqual(result.vulnerabilities, [])
        self.assertEqual(result.vulnerability_count, 0)

    def test_running(self) -> None:
        result = self.adapter(Recorder({})).normalize_scan_result({"progress": 40})
        self.assertEqual(result.status, "running")

    def test_cve_events_mapped(self) -> None:
        raw = {
            "progress": 100,
            "vulnerabilitiesFound": 1,
            "automationRules": [
                {
                    "hasCves": True,
                    "triggerEvents": [
                        {
                            "dependency": "log4j-core (Maven)",
                            "cve": "CVE-2021-44228",
                            "cvss3": 10.0,
                            "cvss2": 9.3,
                            "licenses": ["Apache-2.0"],
                            "dependencyLink": "https://d/dep",
                        },
                        {"dependency": "no-cve (npm)"},
                    ],
                }
            ],
        }
        result = self.adapter(Recorder({})).normalize_scan_result(raw)
        self.assertEqual(result.vulnerability_count, 1)
        self.assertEqual(len(result.vulnerabilities), 1)
        v = result.vulnerabilities[0]
        self.assertEqual(v.title, "CVE-2021-44228")
        self.assertEqual(v.severity, "critical")
        self.assertEqual(v.score, 10.0)
        self.assertEqual((v.package_name, v.ecosystem), ("log4j-core", "Maven"))
        self.assertEqual(v.references["dependency_link"], "https://d/dep")
        self.assertEqual(v.references["cvss2"], 9.3)
        self.assertEqual(v.package_metadata["licenses"], ["Apache-2.0"])
        self.assertEqual(v.package_metadata["raw_event"]["cve"], "CVE-2021-44228")


if __name__ == "__main__":
    unittest.main()
