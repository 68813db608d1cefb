"""ORM models for scans, their uploaded files, and ingested results."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from vigil.models.base import Base


class Scan(Base):
    """
    One dependency-vulnerability scan of a repository snapshot.

    status is only changed through ScanStateMachine.transition; version is the
    optimistic concurrency token checked on every UPDATE.
    """

    __tablename__ = "scans"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'uploaded', 'queued', 'running', 'completed', 'failed', 'timeout')",
            name="ck_scans_status",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(
        Integer,
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    branch = Column(String(255), nullable=True)
    provider_code = Column(String(64), nullable=True)
    requested_by = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False, default="pending", index=True)
    vulnerability_count = Column(Integer, nullable=False, default=0)
    raw_summary = Column(JSONB, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())
    version = Column(Integer, nullable=False)

    repository = relationship("Repository")
    files = relationship("FileInScan", back_populates="scan", order_by="FileInScan.id")

    __mapper_args__ = {"version_id_col": version}


class FileInScan(Base):
    """One uploaded dependency file (lock file, manifest) belonging to a scan."""

    __tablename__ = "files_in_scan"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(
        Integer,
        ForeignKey("scans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_name = Column(String(1024), nullable=False)
    file_path = Column(String(2048), nullable=False)
    size = Column(Integer, nullable=True)
    status = Column(String(32), nullable=False, default="uploaded")
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    scan = relationship("Scan", back_populates="files")


class ScanResult(Base):
    """Provider summary for a completed scan (one per scan)."""

    __tablename__ = "scan_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(
        Integer,
        ForeignKey("scans.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    status = Column(String(32), nullable=False, default="unknown")
    vulnerability_count = Column(Integer, nullable=False, default=0)
    summary_json = Column(JSONB, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    scan = relationship("Scan")


class FileScanResult(Base):
    """Per-file outcome of a completed scan, with a snapshot of the file at ingestion."""

    __tablename__ = "file_scan_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    file_id = Column(
        Integer,
        ForeignKey("files_in_scan.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    scan_result_id = Column(
        Integer,
        ForeignKey("scan_results.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(String(32), nullable=False, default="unknown")
    raw_payload = Column(JSONB, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    file = relationship("FileInScan")
    scan_result = relationship("ScanResult")


class Vulnerability(Base):
    """
    One CVE reported by the provider for a scan.

    Created only by result ingestion; ignored is the only field changed afterwards.
    """

    __tablename__ = "vulnerabilities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(
        Integer,
        ForeignKey("scans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(String(1024), nullable=False)
    cve = Column(String(128), nullable=True, index=True)
    severity = Column(String(32), nullable=False, default="info")
    score = Column(Float, nullable=True)
    package_name = Column(String(1024), nullable=True)
    package_version = Column(String(256), nullable=True)
    ecosystem = Column(String(128), nullable=True)
    references = Column(JSONB, nullable=True)
    package_metadata = Column(JSONB, nullable=True)
    description = Column(Text, nullable=True)
    ignored = Column(Boolean, nullable=False, default=False)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    scan = relationship("Scan")
