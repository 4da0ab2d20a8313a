"""Tests for the Record Normalizer."""

import json
from datetime import datetime

import pytest

from audit_kernel.errors import MalformedRecordError
from audit_kernel.models.config import NormalizerConfig
from audit_kernel.models.record import Record
from audit_kernel.normalization.normalizer import RecordNormalizer


def _make_crm_row(**overrides) -> dict:
    row = {
        "Id": "a0X000000000001",
        "Name": "PS-4215",
        "Account__c": "Acme Re",
        "Status__c": "Tenant Request Completed",
        "TenantRequestAction__c": "Update",
        "CreatedDate": "2025-03-01T09:30:00.000+0000",
        "LastModifiedDate": "2025-03-02T10:00:00.000+0000",
        "Payload_Data__c": json.dumps({
            "properties": {"provisioningDetail": {"entitlements": {
                "appEntitlements": [{"productCode": "APP-1", "packageName": "pkg", "quantity": 2}],
            }}},
        }),
    }
    row.update(overrides)
    return row


class TestRecordNormalizer:
    def setup_method(self):
        self.normalizer = RecordNormalizer()

    def test_normalizes_crm_row(self):
        record = self.normalizer.normalize(_make_crm_row())
        assert record.identity == "PS-4215"
        assert record.source_id == "a0X000000000001"
        assert record.account == "Acme Re"
        assert record.status == "Tenant Request Completed"
        assert record.request_action == "Update"
        assert record.created_at == datetime(2025, 3, 1, 9, 30)
        assert record.last_modified == datetime(2025, 3, 2, 10, 0)
        assert [e.product_code for e in record.entitlements] == ["APP-1"]
        assert record.payload_parse_failed is False

    def test_normalizes_canonical_dict(self):
        record = self.normalizer.normalize({
            "identity": "REQ-100",
            "account": "A",
            "status": "New",
            "payload": {"modelEntitlements": [{"productCode": "PROD-X", "endDate": "2025-11-13"}]},
        })
        assert record.identity == "REQ-100"
        assert record.entitlements[0].product_code == "PROD-X"

    def test_bad_payload_flags_record(self):
        record = self.normalizer.normalize(_make_crm_row(Payload_Data__c="{broken"))
        assert record.entitlements == []
        assert record.payload_parse_failed is True

    def test_missing_identity_raises(self):
        with pytest.raises(MalformedRecordError) as exc:
            self.normalizer.normalize(_make_crm_row(Name="  "))
        assert exc.value.details["source_id"] == "a0X000000000001"

    def test_non_mapping_raises(self):
        with pytest.raises(MalformedRecordError):
            self.normalizer.normalize(["PS-1"])

    def test_record_passes_through(self):
        record = Record(identity="REQ-1")
        assert self.normalizer.normalize(record) is record

    def test_dotted_field_paths(self):
        config = NormalizerConfig(account_fields=["Account__r.Name"])
        normalizer = RecordNormalizer(config)
        record = normalizer.normalize(_make_crm_row(Account__r={"Name": "Nested Co"}))
        assert record.account == "Nested Co"
