"""Unit tests for vigil.services.mapping.ExternalMappingService."""

import unittest
from unittest.mock import MagicMock

from vigil.models import ExternalMapping
from vigil.services.mapping import (
    ENTITY_FILE,
    ENTITY_SCAN,
    MAPPING_CI_UPLOAD,
    MAPPING_FILE,
    ExternalMappingService,
)


class MappingTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session = MagicMock()
        self.first = self.session.query.return_value.filter.return_value.first
        self.first.return_value = None
        self.service = ExternalMappingService(self.session)


class TestCreate(MappingTestCase):
    def test_new_mapping_is_added_and_committed(self) -> None:
        self.service.create("debricked", MAPPING_FILE, "991", ENTITY_FILE, 12, {"id": 991})

        self.session.add.assert_called_once()
        row = self.session.add.call_args.args[0]
        self.assertIsInstance(row, ExternalMapping)
        self.assertEqual(row.type, MAPPING_FILE)
        self.assertEqual(row.external_id, "991")
        self.assertEqual(row.linked_entity_type, ENTITY_FILE)
        self.assertEqual(row.linked_entity_id, "12")
        self.assertEqual(row.raw_payload, {"id": 991})
        self.session.commit.assert_called_once()

    def test_existing_external_id_is_refreshed_not_duplicated(self) -> None:
        existing = ExternalMapping(id=3, provider_code="debricked", type=MAPPING_FILE, external_id="991",
                                   linked_entity_type=ENTITY_FILE, linked_entity_id="12", raw_payload={"v": 1})
        self.first.return_value = existing

        mapping_id = self.service.create("debricked", MAPPING_FILE, "991", ENTITY_FILE, 12, {"v": 2})

        self.assertEqual(mapping_id, 3)
        self.session.add.assert_not_called()
        self.assertEqual(existing.raw_payload, {"v": 2})
        self.session.commit.assert_called_once()

    def test_existing_keeps_raw_when_none_given(self) -> None:
        existing = ExternalMapping(id=3, external_id="991", raw_payload={"v": 1})
        self.first.return_value = existing
        self.service.create("debricked", MAPPING_FILE, "991", ENTITY_FILE, 12)
        self.assertEqual(existing.raw_payload, {"v": 1})

    def test_ci_upload_repoints_previous_upload_for_scan(self) -> None:
        previous = ExternalMapping(id=8, provider_code="debricked", type=MAPPING_CI_UPLOAD, external_id="100",
                                   linked_entity_type=ENTITY_SCAN, linked_entity_id="5")
        # lookup by external id misses, lookup by linked scan hits
        self.first.side_effect = [None, previous]

        mapping_id = self.service.create("debricked", MAPPING_CI_UPLOAD, "200", ENTITY_SCAN, 5, {"files": [1]})

        self.assertEqual(mapping_id, 8)
        self.assertEqual(previous.external_id, "200")
        self.assertEqual(previous.raw_payload, {"files": [1]})
        self.session.add.assert_not_called()

    def test_file_mapping_never_repoints(self) -> None:
        self.service.create("debricked", MAPPING_FILE, "77", ENTITY_FILE, 1)
        self.assertEqual(self.first.call_count, 1)
        self.session.add.assert_called_once()


class TestLookup(MappingTestCase):
    def test_find_returns_row(self) -> None:
        row = ExternalMapping(id=1, external_id="abc")
        self.first.return_value = row
        self.assertIs(self.service.find("debricked", MAPPING_CI_UPLOAD, "abc"), row)

    def test_find_by_linked_entity_missing(self) -> None:
        self.assertIsNone(self.service.find_by_linked_entity("debricked", MAPPING_CI_UPLOAD, ENTITY_SCAN, 5))


class TestUpdateRaw(MappingTestCase):
    def test_missing_mapping_returns_false(self) -> None:
        self.assertFalse(self.service.update_raw("debricked", MAPPING_CI_UPLOAD, "x", {"a": 1}))
        self.session.commit.assert_not_called()

    def test_existing_mapping_updated(self) -> None:
        row = ExternalMapping(id=1, external_id="x", raw_payload={})
        self.first.return_value = row
        self.assertTrue(self.service.update_raw("debricked", MAPPING_CI_UPLOAD, "x", {"a": 1}))
        self.assertEqual(row.raw_payload, {"a": 1})
        self.session.commit.assert_called_once()


if __name__ == "__main__":
    unittest.main()
