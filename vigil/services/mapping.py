"""Durable links between internal entities and provider-side identifiers."""

import logging
from typing import Any

from sqlalchemy.orm import Session

from vigil.models import ExternalMapping

logger = logging.getLogger(__name__)

# Mapping types
MAPPING_FILE = "file"
MAPPING_CI_UPLOAD = "ci_upload"

# Linked entity types
ENTITY_SCAN = "scan"
ENTITY_FILE = "file_in_scan"


class ExternalMappingService:
    """Create and look up ExternalMapping rows. Every write is committed immediately."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def create(
        self,
        provider_code: str,
        mapping_type: str,
        external_id: str,
        linked_entity_type: str,
        linked_entity_id: str | int,
        raw_payload: dict[str, Any] | None = None,
    ) -> int:
        """
        Persist a mapping and return its id.

        Idempotent: an existing row for (provider, type, external id) has its raw
        payload refreshed. For ci_upload, an existing row for the same linked
        entity is re-pointed at the new external id (one upload per scan).
        """
        linked_id = str(linked_entity_id)
        row = self.find(provider_code, mapping_type, external_id)
        if row is None and mapping_type == MAPPING_CI_UPLOAD:
            row = self.find_by_linked_entity(
                provider_code, mapping_type, linked_entity_type, linked_id
            )
            if row is not None:
                logger.info(
                    "Re-pointing ci_upload mapping",
                    extra={
                        "provider": provider_code,
                        "linked_entity_id": linked_id,
                        "old_external_id": row.external_id,
                        "new_external_id": external_id,
                    },
                )
                row.external_id = external_id

        if row is None:
            row = ExternalMapping(
                provider_code=provider_code,
                type=mapping_type,
                external_id=external_id,
                linked_entity_type=linked_entity_type,
                linked_entity_id=linked_id,
                raw_payload=raw_payload,
            )
            self._session.add(row)
        elif raw_payload is not None:
            row.raw_payload = raw_payload

        self._session.commit()
        logger.debug(
            "Mapping stored",
            extra={
                "provider": provider_code,
                "type": mapping_type,
                "external_id": external_id,
                "linked_entity_type": linked_entity_type,
                "linked_entity_id": linked_id,
            },
        )
        return row.id

    def find(
        self, provider_code: str, mapping_type: str, external_id: str
    ) -> ExternalMapping | None:
        return (
            self._session.query(ExternalMapping)
            .filter(
                ExternalMapping.provider_code == provider_code,
                ExternalMapping.type == mapping_type,
                ExternalMapping.external_id == external_id,
            )
            .first()
        )

    def find_by_linked_entity(
        self,
        provider_code: str,
        mapping_type: str,
        linked_entity_type: str,
        linked_entity_id: str | int,
    ) -> ExternalMapping | None:
        return (
            self._session.query(ExternalMapping)
            .filter(
                ExternalMapping.provider_code == provider_code,
                ExternalMapping.type == mapping_type,
                ExternalMapping.linked_entity_type == linked_entity_type,
                ExternalMapping.linked_entity_id == str(linked_entity_id),
            )
            .first()
        )

    def update_raw(
        self,
        provider_code: str,
        mapping_type: str,
        external_id: str,
        raw_payload: dict[str, Any],
    ) -> bool:
        """Replace the raw payload of an existing mapping. Returns False if none exists."""
        row = self.find(provider_code, mapping_type, external_id)
        if row is None:
            return False
        row.raw_payload = raw_payload
        self._session.commit()
        return True
