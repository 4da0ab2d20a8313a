"""
Upstream record source boundary.

The orchestrator only needs fetch_page(since, continuation). For the kernel
prototype, InMemoryRecordSource serves pages from a list of raw records.
In production, this would page through the CRM's query API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from audit_kernel.errors import TransientUpstreamError
from audit_kernel.models.run import RecordPage
from audit_kernel.normalization.dates import parse_timestamp


class RecordSource(Protocol):
    def fetch_page(
        self, since: Optional[datetime], continuation: Optional[str]
    ) -> RecordPage:
        """Return one page of raw records modified after `since` (all records
        when None). A page without a continuation token is the last one."""
        ...


class InMemoryRecordSource:
    """Pages over raw record dicts held in memory.

    `failures` queues transient failures: each fetch pops the head and
    raises TransientUpstreamError when it is truthy.
    """

    def __init__(
        self,
        records: Optional[List[Dict[str, Any]]] = None,
        page_size: int = 100,
        modified_field: str = "last_modified",
    ):
        self.records: List[Dict[str, Any]] = list(records or [])
        self.page_size = page_size
        self.modified_field = modified_field
        self.failures: List[bool] = []
        self.calls: List[Dict[str, Any]] = []

    def add(self, *records: Dict[str, Any]) -> None:
        self.records.extend(records)

    def replace(self, records: List[Dict[str, Any]]) -> None:
        self.records = list(records)

    def fail_next(self, times: int = 1) -> None:
        self.failures.extend([True] * times)

    def _matches(self, record: Any, since: Optional[datetime]) -> bool:
        # Non-mapping rows pass through and fail in normalization
        if since is None or not isinstance(record, dict):
            return True
        modified = parse_timestamp(record.get(self.modified_field))
        # Records without a modification time are always re-offered
        return modified is None or modified >= since

    def fetch_page(
        self, since: Optional[datetime], continuation: Optional[str]
    ) -> RecordPage:
        self.calls.append({"since": since, "continuation": continuation})
        if self.failures and self.failures.pop(0):
            raise TransientUpstreamError(
                "Upstream query timed out", {"continuation": continuation}
            )

        selected = [r for r in self.records if self._matches(r, since)]
        offset = int(continuation) if continuation else 0
        page = selected[offset:offset + self.page_size]
        next_offset = offset + self.page_size
        return RecordPage(
            records=page,
            continuation=str(next_offset) if next_offset < len(selected) else None,
        )
