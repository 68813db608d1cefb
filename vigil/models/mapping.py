"""ORM model linking internal entities to provider-side identifiers."""

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from vigil.models.base import Base


class ExternalMapping(Base):
    """
    (provider, type, external id) -> internal entity.

    type is "file" (uploaded file -> provider file id) or "ci_upload"
    (scan -> provider upload id). A scan has at most one ci_upload mapping.
    """

    __tablename__ = "external_mappings"
    __table_args__ = (
        UniqueConstraint(
            "provider_code",
            "type",
            "external_id",
            name="uq_external_mappings_provider_type_external",
        ),
        Index(
            "uq_external_mappings_ci_upload_linked",
            "provider_code",
            "type",
            "linked_entity_type",
            "linked_entity_id",
            unique=True,
            postgresql_where=text("type = 'ci_upload'"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_code = Column(String(64), nullable=False)
    type = Column(String(64), nullable=False)
    external_id = Column(String(1024), nullable=False)
    linked_entity_type = Column(String(128), nullable=False)
    linked_entity_id = Column(String(255), nullable=False)
    raw_payload = Column(JSONB, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())
