"""
Entitlement Parser — flattens a record's embedded payload into entitlements.

Behavioral Contract:
- Never raises. A payload that cannot be decoded yields an empty list and
  is reported as failed; items that cannot be read are dropped and the
  payload is reported as failed, so rules treat the list as unreliable.
- Recognizes model, data and app groups, either under
  properties.provisioningDetail.entitlements, under a top-level
  "entitlements" object, or at the top level of the payload.
- Unparseable dates become None, never errors.
"""

import json
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from audit_kernel.errors import MalformedPayloadError
from audit_kernel.models.record import Entitlement, EntitlementCategory
from audit_kernel.normalization.dates import parse_date
from audit_kernel.observability.logging import get_logger

logger = get_logger("audit_kernel.normalization.entitlements")

# Group keys in payload order; productEntitlements is the legacy name for models.
_GROUPS: Tuple[Tuple[str, EntitlementCategory], ...] = (
    ("modelEntitlements", EntitlementCategory.MODEL),
    ("productEntitlements", EntitlementCategory.MODEL),
    ("dataEntitlements", EntitlementCategory.DATA),
    ("appEntitlements", EntitlementCategory.APP),
)

_CODE_KEYS = ("productCode", "product_code", "ProductCode", "code", "id", "name")
_NAME_KEYS = ("name", "productName", "product_name")
_PACKAGE_KEYS = ("packageName", "package_name", "PackageName")
_START_KEYS = ("startDate", "start_date", "StartDate")
_END_KEYS = ("endDate", "end_date", "EndDate")


class ParsedPayload(NamedTuple):
    entitlements: List[Entitlement]
    failed: bool
    error: Optional[str] = None


def _first(item: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_quantity(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


class EntitlementParser:
    """Stateless payload parser; safe to share between worker threads."""

    def parse(self, raw_payload: Any) -> List[Entitlement]:
        return self.parse_payload(raw_payload).entitlements

    def parse_payload(self, raw_payload: Any) -> ParsedPayload:
        if raw_payload is None or raw_payload == "" or raw_payload == b"":
            return ParsedPayload([], failed=False)

        try:
            payload = self._decode(raw_payload)
            entitlements, dropped = self._extract(payload)
        except MalformedPayloadError as e:
            logger.warning("Payload could not be parsed", error=e.message)
            return ParsedPayload([], failed=True, error=e.message)

        if dropped:
            message = f"{dropped} entitlement item(s) could not be read"
            logger.warning("Payload partially parsed", dropped=dropped)
            return ParsedPayload(entitlements, failed=True, error=message)
        return ParsedPayload(entitlements, failed=False)

    def _decode(self, raw_payload: Any) -> Dict[str, Any]:
        if isinstance(raw_payload, dict):
            return raw_payload
        if isinstance(raw_payload, bytes):
            try:
                raw_payload = raw_payload.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedPayloadError(f"Payload is not UTF-8: {e}")
        if not isinstance(raw_payload, str):
            raise MalformedPayloadError(f"Unsupported payload type: {type(raw_payload).__name__}")
        try:
            payload = json.loads(raw_payload)
        except json.JSONDecodeError as e:
            raise MalformedPayloadError(f"Invalid JSON: {e.msg}")
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Payload is not a JSON object")
        return payload

    def _containers(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Entitlement containers in precedence order, nested first."""
        containers = []
        properties = payload.get("properties")
        if isinstance(properties, dict):
            detail = properties.get("provisioningDetail")
            if isinstance(detail, dict) and isinstance(detail.get("entitlements"), dict):
                containers.append(detail["entitlements"])
        if not containers and isinstance(payload.get("entitlements"), dict):
            containers.append(payload["entitlements"])
        containers.append(payload)
        return containers

    def _extract(self, payload: Dict[str, Any]) -> Tuple[List[Entitlement], int]:
        entitlements: List[Entitlement] = []
        counters = {category: 0 for category in EntitlementCategory}
        dropped = 0

        for container in self._containers(payload):
            for key, category in _GROUPS:
                group = container.get(key)
                if group is None:
                    continue
                if not isinstance(group, list):
                    dropped += 1
                    continue
                for item in group:
                    entitlement = self._build(item, category, counters[category])
                    if entitlement is None:
                        dropped += 1
                        continue
                    counters[category] += 1
                    entitlements.append(entitlement)

        return entitlements, dropped

    def _build(
        self, item: Any, category: EntitlementCategory, index: int
    ) -> Optional[Entitlement]:
        if not isinstance(item, dict):
            return None
        code = _first(item, _CODE_KEYS)
        if code is None:
            return None

        package = _first(item, _PACKAGE_KEYS)
        if package is None:
            # Keep blank package names visible to the naming rule
            package = next((item[k] for k in _PACKAGE_KEYS if k in item and item[k] is not None), None)
        name = _first(item, _NAME_KEYS)

        return Entitlement(
            product_code=str(code),
            category=category,
            product_name=str(name) if name is not None else None,
            package_name=str(package) if package is not None else None,
            quantity=_parse_quantity(item.get("quantity")),
            start_date=parse_date(_first(item, _START_KEYS)),
            end_date=parse_date(_first(item, _END_KEYS)),
            index=index,
        )
