from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, FrozenSet, List, Protocol, Tuple

import structlog

from stackwright.core.errors import BackendError
from stackwright.discovery.models import RecordHandle
from stackwright.resources.models import Endpoint

logger = structlog.get_logger()


class DnsRecordApi(Protocol):
    """DNS record operations consumed by the service-discovery binder."""

    async def upsert_record(self, namespace: str, name: str, record_type: str) -> RecordHandle:
        ...

    async def add_endpoint(self, record: RecordHandle, endpoint: Endpoint) -> None:
        ...

    async def remove_endpoint(self, record: RecordHandle, endpoint: Endpoint) -> None:
        ...

    async def delete_record(self, record: RecordHandle) -> None:
        ...

    async def describe_record(self, record: RecordHandle) -> FrozenSet[Endpoint]:
        """Authoritative endpoint set currently published for the record."""
        ...


@dataclass
class _Fault:
    error: BackendError
    # Ambiguous faults apply the mutation and still report an error.
    applied: bool = False


class InMemoryDnsRegistry:
    """In-process DNS registry with fault injection.

    ``observations`` records ``(fqdn, endpoint_count)`` after every
    mutation so callers can check what resolvers would have seen.
    """

    def __init__(self) -> None:
        self._records: Dict[RecordHandle, set[Endpoint]] = {}
        self._faults: Dict[str, Deque[_Fault]] = defaultdict(deque)
        self.calls: List[Tuple[str, str]] = []
        self.observations: List[Tuple[str, int]] = []

    def fail_next(self, operation: str, error: BackendError, *, times: int = 1, applied: bool = False) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        for _ in range(times):
            self._faults[operation].append(_Fault(error, applied))

    def resolve(self, namespace: str, name: str, record_type: str = "A") -> FrozenSet[Endpoint]:
        return frozenset(self._records.get(RecordHandle(namespace, name, record_type), set()))

    def has_record(self, record: RecordHandle) -> bool:
        return record in self._records

    def _check(self, operation: str, record_name: str) -> _Fault | None:
        self.calls.append((operation, record_name))
        queue = self._faults.get(operation)
        if queue:
            fault = queue.popleft()
            if not fault.applied:
                raise fault.error
            return fault
        return None

    def _observe(self, record: RecordHandle) -> None:
        self.observations.append((record.fqdn, len(self._records.get(record, ()))))

    async def upsert_record(self, namespace: str, name: str, record_type: str) -> RecordHandle:
        record = RecordHandle(namespace, name, record_type)
        fault = self._check("upsert_record", record.fqdn)
        self._records.setdefault(record, set())
        logger.debug("dns_record_upserted", record=record.fqdn, type=record_type)
        if fault:
            raise fault.error
        return record

    async def add_endpoint(self, record: RecordHandle, endpoint: Endpoint) -> None:
        fault = self._check("add_endpoint", record.fqdn)
        if record not in self._records:
            raise BackendError(f"Record {record.fqdn} does not exist")
        self._records[record].add(endpoint)
        self._observe(record)
        if fault:
            raise fault.error

    async def remove_endpoint(self, record: RecordHandle, endpoint: Endpoint) -> None:
        fault = self._check("remove_endpoint", record.fqdn)
        self._records.get(record, set()).discard(endpoint)
        self._observe(record)
        if fault:
            raise fault.error

    async def delete_record(self, record: RecordHandle) -> None:
        fault = self._check("delete_record", record.fqdn)
        if self._records.get(record):
            raise BackendError(
                f"Record {record.fqdn} still has endpoints",
                details={"record": record.fqdn},
            )
        self._records.pop(record, None)
        if fault:
            raise fault.error

    async def describe_record(self, record: RecordHandle) -> FrozenSet[Endpoint]:
        self._check("describe_record", record.fqdn)
        return frozenset(self._records.get(record, set()))
