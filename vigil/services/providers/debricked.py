"""Debricked provider: JWT auth, dependency-file upload, CI upload status polling."""

import logging
import os
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from vigil.core.config import Settings
from vigil.models import Scan
from vigil.schemas.provider import NormalizedScanResult, PollStatus, UploadResult, VulnerabilityRecord
from vigil.services.ingestion import score_to_severity, split_package_ecosystem
from vigil.services.mapping import (
    ENTITY_FILE,
    ENTITY_SCAN,
    MAPPING_CI_UPLOAD,
    MAPPING_FILE,
    ExternalMappingService,
)
from vigil.services.providers.base import ProviderAdapter, ProviderError

logger = logging.getLogger(__name__)

PROVIDER_CODE = "debricked"

# Issued tokens are treated as valid for 55 minutes; reuse stops 60 s before that.
TOKEN_LIFETIME = timedelta(minutes=55)
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)


def _error_detail(resp: httpx.Response) -> str:
    try:
        return (resp.text or "")[:500] or "no response body"
    except Exception:
        return "unreadable response body"


def _json_body(resp: httpx.Response, what: str) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as e:
        raise ProviderError(f"Debricked returned malformed JSON for {what}", resp.status_code) from e
    if not isinstance(data, dict):
        raise ProviderError(f"Debricked returned unexpected JSON for {what}", resp.status_code)
    return data


class DebrickedAuthService:
    """
    Obtains and caches a Debricked bearer token.

    Tries the refresh-token flow first and falls back to username/password.
    """

    def __init__(self, settings: Settings, client: httpx.Client) -> None:
        self._base_url = settings.DEBRICKED_BASE_URL.rstrip("/")
        self._username = (settings.DEBRICKED_USERNAME or "").strip()
        self._password = (
            settings.DEBRICKED_PASSWORD.get_secret_value() if settings.DEBRICKED_PASSWORD else ""
        )
        self._refresh_token = (
            settings.DEBRICKED_REFRESH_TOKEN.get_secret_value()
            if settings.DEBRICKED_REFRESH_TOKEN
            else ""
        )
        self._client = client
        self._token: str | None = None
        self._expires_at: datetime | None = None

    def get_token(self) -> str:
        now = datetime.now(UTC)
        if self._token and self._expires_at and self._expires_at > now + TOKEN_EXPIRY_SKEW:
            return self._token

        if self._refresh_token:
            try:
                token = self._request_token(
                    "/api/login_refresh", {"refresh_token": self._refresh_token}
                )
                if token:
                    return self._store(token)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(
                    "Debricked refresh token failed; falling back to username/password",
                    extra={"error": str(e)},
                )

        if not self._username or not self._password:
            raise ProviderError("Debricked credentials are not configured")
        try:
            token = self._request_token(
                "/api/login_check",
                {"_username": self._username, "_password": self._password},
            )
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"Debricked login failed: {e}") from e
        if not token:
            raise ProviderError("Debricked login_check failed: no token returned")
        return self._store(token)

    def clear_token(self) -> None:
        self._token = None
        self._expires_at = None

    def _request_token(self, path: str, form: dict[str, str]) -> str | None:
        resp = self._client.post(f"{self._base_url}{path}", data=form)
        if resp.status_code >= 400:
            logger.warning(
                "Debricked token request rejected",
                extra={"path": path, "status_code": resp.status_code},
            )
            return None
        data = resp.json()
        token = data.get("token") if isinstance(data, dict) else None
        return token or None

    def _store(self, token: str) -> str:
        self._token = token
        self._expires_at = datetime.now(UTC) + TOKEN_LIFETIME
        return token


class DebrickedProviderAdapter(ProviderAdapter):
    """Debricked open API: upload dependency files, finish the CI upload, poll its status."""

    def __init__(
        self,
        settings: Settings,
        mapping: ExternalMappingService,
        auth: DebrickedAuthService,
        client: httpx.Client,
    ) -> None:
        self._api_url = f"{settings.DEBRICKED_BASE_URL.rstrip('/')}/api/1.0"
        self._timeout = settings.DEBRICKED_REQUEST_TIMEOUT_SEC
        self._mapping = mapping
        self._auth = auth
        self._client = client

    def provider_code(self) -> str:
        return PROVIDER_CODE

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._auth.get_token()}"}

    def _send(self, method: str, path: str, what: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._api_url}{path}"
        try:
            resp = self._client.request(
                method, url, headers=self._headers(), timeout=self._timeout, **kwargs
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"Debricked {what} request failed: {e}") from e
        if resp.status_code == 401:
            self._auth.clear_token()
        if resp.status_code >= 400:
            logger.error(
                "Debricked request failed",
                extra={"what": what, "status_code": resp.status_code},
            )
            raise ProviderError(
                f"Debricked {what} failed with status {resp.status_code}: {_error_detail(resp)}",
                resp.status_code,
            )
        return resp

    def _upload_file(
        self,
        local_path: str,
        file_name: str,
        repository_name: str,
        commit_name: str,
        ci_upload_id: str | None,
    ) -> dict[str, Any]:
        form = {"repositoryName": repository_name, "commitName": commit_name}
        if ci_upload_id:
            form["ciUploadId"] = ci_upload_id
        logger.info(
            "Uploading file to Debricked",
            extra={"file": file_name, "repository": repository_name, "commit": commit_name},
        )
        try:
            with open(local_path, "rb") as fh:
                resp = self._send(
                    "POST",
                    "/open/uploads/dependencies/files",
                    "upload",
                    data=form,
                    files={"fileData": (file_name, fh, "application/octet-stream")},
                )
        except OSError as e:
            raise ProviderError(f"Cannot read upload file {file_name}: {e}") from e
        return _json_body(resp, "upload")

    def upload_and_create_scan(
        self,
        scan: Scan,
        local_paths: list[str],
        options: dict[str, Any] | None = None,
    ) -> UploadResult:
        """
        Upload each file, then finish the CI upload.

        options: repository_name, commit_name, branch_name, repository_url, author,
        file_names (path -> original name), file_ids (path -> FileInScan id).
        """
        options = options or {}
        repository_name = options.get("repository_name") or (
            scan.repository.name if scan.repository is not None else str(scan.repository_id)
        )
        commit_name = str(options.get("commit_name") or scan.id)
        file_names: dict[str, str] = options.get("file_names") or {}
        file_ids: dict[str, Any] = options.get("file_ids") or {}

        remote_file_ids: list[str] = []
        ci_upload_id: str | None = None

        for local_path in local_paths:
            file_name = file_names.get(local_path) or os.path.basename(local_path)
            data = self._upload_file(
                local_path, file_name, repository_name, commit_name, ci_upload_id
            )
            for f in data.get("files") or []:
                if not isinstance(f, dict):
                    continue
                remote_id = f.get("dependencyFileId") or f.get("id")
                if remote_id is None:
                    continue
                remote_file_ids.append(str(remote_id))
                self._mapping.create(
                    PROVIDER_CODE,
                    MAPPING_FILE,
                    str(remote_id),
                    ENTITY_FILE,
                    file_ids.get(local_path, local_path),
                    f,
                )
            returned = data.get("ciUploadId") or data.get("uploadId")
            if returned:
                ci_upload_id = str(returned)

        if not ci_upload_id:
            existing = self._mapping.find_by_linked_entity(
                PROVIDER_CODE, MAPPING_CI_UPLOAD, ENTITY_SCAN, scan.id
            )
            if existing is None or not existing.external_id:
                raise ProviderError("Debricked did not return ciUploadId on upload")
            ci_upload_id = existing.external_id
            logger.info(
                "Reusing ci upload id from earlier attempt",
                extra={"scan_id": scan.id, "ci_upload_id": ci_upload_id},
            )

        self._mapping.create(
            PROVIDER_CODE,
            MAPPING_CI_UPLOAD,
            ci_upload_id,
            ENTITY_SCAN,
            scan.id,
            {"files": remote_file_ids},
        )

        finish_payload: dict[str, Any] = {"ciUploadId": ci_upload_id}
        for key, field in (
            ("repository_url", "repositoryUrl"),
            ("branch_name", "branchName"),
            ("author", "author"),
        ):
            if options.get(key):
                finish_payload[field] = options[key]
        resp = self._send(
            "POST",
            "/open/finishes/dependencies/files/uploads",
            "finish",
            json=finish_payload,
        )
        if resp.status_code == 204 or not resp.content:
            raw: dict[str, Any] = {"ciUploadId": ci_upload_id, "status": "finished"}
        else:
            raw = _json_body(resp, "finish")

        logger.info(
            "Debricked scan started",
            extra={"scan_id": scan.id, "ci_upload_id": ci_upload_id, "files": len(local_paths)},
        )
        return UploadResult(remote_upload_id=ci_upload_id, remote_file_ids=remote_file_ids, raw=raw)

    def poll_scan_status(self, remote_upload_id: str) -> PollStatus:
        resp = self._send(
            "GET",
            "/open/ci/upload/status",
            "status",
            params={"ciUploadId": remote_upload_id},
        )
        data = _json_body(resp, "status")
        try:
            progress = int(data.get("progress") or 0)
            found = int(data.get("vulnerabilitiesFound") or 0)
        except (TypeError, ValueError) as e:
            raise ProviderError("Debricked status response has non-numeric fields") from e
        progress = max(0, min(100, progress))
        logger.debug(
            "Debricked scan status polled",
            extra={"ci_upload_id": remote_upload_id, "progress": progress, "vulnerabilities_found": found},
        )
        return PollStatus(
            progress=progress,
            scan_completed=progress == 100,
            vulnerabilities_found=max(0, found),
            details_url=data.get("detailsUrl"),
            raw=data,
        )

    def normalize_scan_result(self, raw: dict[str, Any]) -> NormalizedScanResult:
        try:
            progress = int(raw.get("progress") or 0)
        except (TypeError, ValueError):
            progress = 0
        completed = bool(raw.get("scanCompleted")) or progress >= 100
        try:
            count = int(raw.get("vulnerabilitiesFound") or 0)
        except (TypeError, ValueError):
            count = 0
        return NormalizedScanResult(
            status="completed" if completed else "running",
            vulnerabilities=[_to_record(event) for event in _cve_events(raw)],
            vulnerability_count=max(0, count),
        )


def _cve_events(raw: dict[str, Any]) -> list[dict[str, Any]]:
    """CVE trigger events of every automation rule that reports CVEs."""
    events = []
    for rule in raw.get("automationRules") or []:
        if not isinstance(rule, dict) or not rule.get("hasCves"):
            continue
        for event in rule.get("triggerEvents") or []:
            if isinstance(event, dict) and event.get("cve"):
                events.append(event)
    return events


def _to_record(event: dict[str, Any]) -> VulnerabilityRecord:
    cvss3 = event.get("cvss3")
    try:
        score = float(cvss3) if cvss3 is not None else None
    except (TypeError, ValueError):
        score = None
    package_name, ecosystem = split_package_ecosystem(event.get("dependency"))
    return VulnerabilityRecord(
        title=event.get("cve") or "Unknown Vulnerability",
        cve=event.get("cve"),
        severity=score_to_severity(score),
        score=score,
        package_name=package_name,
        ecosystem=ecosystem,
        references={
            "cve_link": event.get("cveLink"),
            "dependency_link": event.get("dependencyLink"),
            "cvss2": event.get("cvss2"),
            "cvss3": cvss3,
        },
        package_metadata={
            "licenses": event.get("licenses") or [],
            "raw_event": event,
        },
    )
