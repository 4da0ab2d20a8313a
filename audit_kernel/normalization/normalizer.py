"""
Record Normalizer — maps a raw upstream record onto the canonical Record.

Field names are resolved through NormalizerConfig, so the same normalizer
reads both CRM-shaped rows ("Name", "Status__c", ...) and canonical dicts.
Dotted names ("Account__r.Name") follow nested objects.
"""

from typing import Any, Dict, List, Optional

from audit_kernel.errors import MalformedRecordError
from audit_kernel.models.config import NormalizerConfig
from audit_kernel.models.record import Record
from audit_kernel.normalization.dates import parse_timestamp
from audit_kernel.normalization.entitlements import EntitlementParser


def _lookup(raw: Dict[str, Any], path: str) -> Any:
    value: Any = raw
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class RecordNormalizer:
    """Produces canonical records; stateless and thread-safe."""

    def __init__(
        self,
        config: Optional[NormalizerConfig] = None,
        parser: Optional[EntitlementParser] = None,
    ):
        self.config = config or NormalizerConfig()
        self.parser = parser or EntitlementParser()

    def _resolve(self, raw: Dict[str, Any], candidates: List[str]) -> Any:
        for path in candidates:
            value = _lookup(raw, path)
            if value not in (None, ""):
                return value
        return None

    def normalize(self, raw: Any) -> Record:
        """Normalize one raw record. Raises MalformedRecordError when the
        record has no identity; payload problems never raise."""
        if isinstance(raw, Record):
            return raw
        if not isinstance(raw, dict):
            raise MalformedRecordError(
                f"Raw record must be a mapping, got {type(raw).__name__}"
            )

        cfg = self.config
        identity = _text(self._resolve(raw, cfg.identity_fields))
        if identity is None:
            raise MalformedRecordError(
                "Raw record has no identity",
                {"source_id": _text(self._resolve(raw, cfg.source_id_fields))},
            )

        parsed = self.parser.parse_payload(self._resolve(raw, cfg.payload_fields))

        return Record(
            identity=identity,
            source_id=_text(self._resolve(raw, cfg.source_id_fields)),
            account=_text(self._resolve(raw, cfg.account_fields)),
            status=_text(self._resolve(raw, cfg.status_fields)),
            request_action=_text(self._resolve(raw, cfg.request_action_fields)),
            entitlements=parsed.entitlements,
            created_at=parse_timestamp(self._resolve(raw, cfg.created_at_fields)),
            last_modified=parse_timestamp(self._resolve(raw, cfg.last_modified_fields)),
            payload_parse_failed=parsed.failed,
        )
