"""HTTP tests for /api/v1/scans with the scan service replaced by a mock."""

import unittest
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from vigil.api.v1.scans import get_scan_service
from vigil.main import app
from vigil.models import FileInScan
from vigil.schemas.scan import ScanDetail, ScanSummaryResponse
from vigil.services.scans import RepositoryNotFoundError, ScanNotFoundError, UploadValidationError


def _summary(status: str = "pending") -> ScanSummaryResponse:
    return ScanSummaryResponse(repository_id=1, scan=ScanDetail(id=6, status=status))


class TestScansApi(unittest.TestCase):
    def setUp(self) -> None:
        self.service = MagicMock()
        self.service.get_scan_summary.return_value = _summary()
        app.dependency_overrides[get_scan_service] = lambda: self.service
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

    def test_create_scan(self) -> None:
        self.service.create_scan.return_value = MagicMock(id=6)
        resp = self.client.post("/api/v1/scans", json={"repository_id": 1, "branch": "main"})
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["scan"]["status"], "pending")
        self.service.create_scan.assert_called_once_with(1, branch="main", provider_code=None, requested_by=None)

    def test_create_scan_unknown_repository(self) -> None:
        self.service.create_scan.side_effect = RepositoryNotFoundError(9)
        resp = self.client.post("/api/v1/scans", json={"repository_id": 9})
        self.assertEqual(resp.status_code, 404)

    def test_upload_files_with_completion_flag(self) -> None:
        self.service.handle_uploaded_files.return_value = [
            FileInScan(id=1, file_name="package-lock.json", file_path="uploads/6/a-package-lock.json", size=2, status="uploaded")
        ]
        self.service.get_scan_summary.return_value = _summary("uploaded")

        resp = self.client.post(
            "/api/v1/scans/6/files",
            files={"lockfile": ("package-lock.json", b"{}", "application/json")},
            data={"upload_complete": "true"},
        )

        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["status"], "uploaded")
        args = self.service.handle_uploaded_files.call_args
        self.assertEqual(args.args[0], 6)
        self.assertEqual([(f.filename, f.content) for f in args.args[1]], [("package-lock.json", b"{}")])
        self.assertTrue(args.kwargs["upload_complete"])

    def test_upload_rejects_json_body(self) -> None:
        resp = self.client.post("/api/v1/scans/6/files", json={"files": []})
        self.assertEqual(resp.status_code, 415)

    def test_upload_validation_error(self) -> None:
        self.service.handle_uploaded_files.side_effect = UploadValidationError("Extension .exe not allowed")
        resp = self.client.post("/api/v1/scans/6/files", files={"f": ("x.exe", b"1")})
        self.assertEqual(resp.status_code, 422)
        self.assertIn(".exe", resp.json()["detail"])

    def test_get_missing_scan(self) -> None:
        self.service.get_scan_summary.side_effect = ScanNotFoundError(404)
        self.assertEqual(self.client.get("/api/v1/scans/404").status_code, 404)


if __name__ == "__main__":
    unittest.main()
