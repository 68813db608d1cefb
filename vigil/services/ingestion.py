"""Turn a completed provider result into ScanResult, Vulnerability and FileScanResult rows."""

import logging
import re
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from vigil.models import FileInScan, FileScanResult, Scan, ScanResult, Vulnerability
from vigil.schemas.findings import SeverityLevel
from vigil.schemas.provider import PollStatus, VulnerabilityRecord

logger = logging.getLogger(__name__)

# "lodash (npm)" -> ("lodash", "npm")
_DEPENDENCY_PATTERN = re.compile(r"^(.+?)\s*\((.+?)\)$")

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def score_to_severity(score: float | int | str | None) -> SeverityLevel:
    """Bucket a CVSS-like score: >=9 critical, >=7 high, >=4 medium, >0 low, else info."""
    try:
        value = float(score) if score is not None else 0.0
    except (TypeError, ValueError):
        value = 0.0
    if value >= 9.0:
        return "critical"
    if value >= 7.0:
        return "high"
    if value >= 4.0:
        return "medium"
    if value > 0:
        return "low"
    return "info"


def split_package_ecosystem(dependency: str | None) -> tuple[str | None, str | None]:
    """Split "name (ecosystem)"; when the pattern does not match the whole string is the name."""
    if not dependency:
        return None, None
    match = _DEPENDENCY_PATTERN.match(dependency.strip())
    if match is None:
        return dependency.strip(), None
    return match.group(1), match.group(2)


def build_vulnerabilities(scan_id: int, records: list[VulnerabilityRecord]) -> list[Vulnerability]:
    rows = []
    for rec in records:
        rows.append(
            Vulnerability(
                scan_id=scan_id,
                title=rec.title,
                cve=rec.cve,
                severity=rec.severity,
                score=rec.score,
                package_name=rec.package_name,
                package_version=rec.package_version,
                ecosystem=rec.ecosystem,
                references=rec.references,
                package_metadata=rec.package_metadata,
                ignored=False,
            )
        )
        logger.debug(
            "Vulnerability staged",
            extra={
                "scan_id": scan_id,
                "cve": rec.cve,
                "package": rec.package_name,
                "severity": rec.severity,
            },
        )
    return rows


def build_file_results(
    files: list[FileInScan],
    scan_result: ScanResult,
    scanned_at: datetime,
) -> list[FileScanResult]:
    """One completed FileScanResult per uploaded file, snapshotting the file's metadata."""
    return [
        FileScanResult(
            file=f,
            scan_result=scan_result,
            status="completed",
            raw_payload={
                "file_name": f.file_name,
                "file_path": f.file_path,
                "size": f.size,
                "scanned_at": scanned_at.strftime(_TIMESTAMP_FORMAT),
            },
        )
        for f in files
    ]


def stage_scan_results(
    session: Session,
    scan: Scan,
    files: list[FileInScan],
    poll: PollStatus,
    vulnerabilities: list[VulnerabilityRecord],
    provider_code: str,
    remote_upload_id: str,
    now: datetime | None = None,
) -> ScanResult:
    """
    Stage all result rows for a completed scan in the session without committing.

    The caller commits them together with the status change so the scan is never
    observed as completed without its results (or the other way round).
    vulnerability_count is overwritten from the provider's total, never incremented.
    """
    now = now or datetime.now(UTC)
    completed_at = now.strftime(_TIMESTAMP_FORMAT)

    scan.raw_summary = {
        "provider": provider_code,
        "ci_upload_id": remote_upload_id,
        "vulnerabilities_found": poll.vulnerabilities_found,
        "details_url": poll.details_url,
        "completed_at": completed_at,
        "raw": poll.raw,
    }
    scan.vulnerability_count = poll.vulnerabilities_found

    scan_result = ScanResult(
        scan_id=scan.id,
        status="completed",
        vulnerability_count=poll.vulnerabilities_found,
        summary_json={
            "provider": provider_code,
            "details_url": poll.details_url,
            "total_vulnerabilities": poll.vulnerabilities_found,
            "scan_completed_at": completed_at,
        },
    )
    session.add(scan_result)

    rows: list[Any] = build_vulnerabilities(scan.id, vulnerabilities)
    rows.extend(build_file_results(files, scan_result, now))
    session.add_all(rows)

    logger.info(
        "Scan results staged",
        extra={
            "scan_id": scan.id,
            "vulnerabilities": len(vulnerabilities),
            "files": len(files),
            "vulnerability_count": poll.vulnerabilities_found,
        },
    )
    return scan_result
