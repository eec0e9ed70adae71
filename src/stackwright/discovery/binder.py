"""
Service discovery binder.

Keeps a namespace-scoped DNS name resolvable to exactly the live
endpoints of the compute task it targets. Each binding moves through

    Unbound -> Registering -> Bound <-> Updating -> Deregistering -> Unbound

Endpoint changes for a binding are queued and applied one at a time in
arrival order by a dedicated consumer task. Updates are incremental:
new endpoints are added before stale ones are removed, so the record
never drops to zero entries while the task still has live endpoints.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, TypeVar

import structlog

from stackwright.core.errors import BackendError, BindingConsistencyError
from stackwright.core.retry import RetryPolicy
from stackwright.discovery.dns import DnsRecordApi
from stackwright.discovery.endpoints import EndpointSource
from stackwright.discovery.models import BindingState, RecordHandle, ServiceBinding
from stackwright.resources.models import Endpoint

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class _Channel:
    queue: asyncio.Queue[FrozenSet[Endpoint]] = field(default_factory=asyncio.Queue)
    bound: asyncio.Event = field(default_factory=asyncio.Event)
    consumer: asyncio.Task[None] | None = None
    pump: asyncio.Task[None] | None = None


class ServiceDiscoveryBinder:
    """Owns every ServiceBinding and drives their state machines."""

    def __init__(
        self,
        dns: DnsRecordApi,
        *,
        allow_empty: bool = False,
        retry_policy: RetryPolicy | None = None,
        max_reconcile_rounds: int = 3,
        max_stream_restarts: int = 5,
    ) -> None:
        self._dns = dns
        self._allow_empty = allow_empty
        self._retry = retry_policy or RetryPolicy()
        self._max_rounds = max_reconcile_rounds
        self._max_restarts = max_stream_restarts
        self._bindings: Dict[str, ServiceBinding] = {}
        self._channels: Dict[str, _Channel] = {}

    # === Lookups ===

    def get(self, registration_id: str) -> ServiceBinding | None:
        return self._bindings.get(registration_id)

    def bindings(self) -> list[ServiceBinding]:
        return [self._bindings[k] for k in sorted(self._bindings)]

    def raise_for_failures(self) -> None:
        """Raise if any binding has given up reconciling."""
        for binding in self.bindings():
            if binding.error:
                raise BindingConsistencyError(
                    binding.error,
                    {"registration": binding.registration_id, "record": binding.fqdn},
                )

    # === Lifecycle ===

    async def register(
        self,
        registration_id: str,
        *,
        namespace: str,
        name: str,
        record_type: str,
        target_task_id: str,
    ) -> ServiceBinding:
        """Create the DNS record with an empty endpoint set."""
        existing = self._bindings.get(registration_id)
        if existing is not None and existing.state in (
            BindingState.REGISTERING,
            BindingState.BOUND,
            BindingState.UPDATING,
        ):
            return existing

        binding = ServiceBinding(
            registration_id=registration_id,
            namespace=namespace,
            name=name,
            record_type=record_type,
            target_task_id=target_task_id,
        )
        binding.transition(BindingState.REGISTERING)
        self._bindings[registration_id] = binding
        try:
            binding.record = await self._call(
                self._dns.upsert_record, namespace, name, record_type
            )
        except BackendError:
            self._bindings.pop(registration_id, None)
            raise

        logger.info("binding_registering", registration=registration_id, record=binding.fqdn)
        return binding

    async def bind(
        self,
        registration_id: str,
        source: EndpointSource,
        *,
        timeout: float | None = None,
    ) -> ServiceBinding:
        """Follow the target task's endpoints and wait for the binding to be Bound."""
        binding = self._require(registration_id)
        channel = self._channel(binding)
        if channel.pump is None or channel.pump.done():
            channel.pump = asyncio.create_task(
                self._pump(binding, source, channel),
                name=f"endpoints:{registration_id}",
            )

        if self._allow_empty and binding.state is BindingState.REGISTERING:
            binding.transition(BindingState.BOUND)
            channel.bound.set()

        try:
            await asyncio.wait_for(channel.bound.wait(), timeout)
        except asyncio.TimeoutError as exc:
            raise BindingConsistencyError(
                f"No endpoints attached to {binding.fqdn} within {timeout}s",
                {"registration": registration_id, "task": binding.target_task_id},
            ) from exc

        if binding.error:
            raise BindingConsistencyError(binding.error, {"registration": registration_id})
        logger.info(
            "binding_bound",
            registration=registration_id,
            record=binding.fqdn,
            endpoints=len(binding.current_endpoints),
        )
        return binding

    async def submit(self, registration_id: str, endpoints: Iterable[Endpoint]) -> None:
        """Queue an endpoint change for the binding."""
        binding = self._require(registration_id)
        await self._channel(binding).queue.put(frozenset(endpoints))

    async def wait_idle(self, registration_id: str) -> None:
        """Wait until every queued change for the binding has been applied."""
        channel = self._channels.get(registration_id)
        if channel is not None:
            await channel.queue.join()

    async def deregister(
        self,
        registration_id: str,
        *,
        record: RecordHandle | None = None,
    ) -> None:
        """Remove every endpoint, then delete the record.

        ``record`` lets a fresh process tear down a record it did not
        register itself.
        """
        binding = self._bindings.get(registration_id)
        if binding is None:
            if record is None:
                return
            binding = ServiceBinding(
                registration_id=registration_id,
                namespace=record.namespace,
                name=record.name,
                record_type=record.record_type,
                target_task_id="",
                state=BindingState.BOUND,
                record=record,
            )
            self._bindings[registration_id] = binding

        await self._stop_channel(registration_id)
        if binding.state is not BindingState.DEREGISTERING:
            binding.transition(BindingState.DEREGISTERING)
        binding.desired_endpoints = set()

        if binding.record is not None:
            published = await self._call(self._dns.describe_record, binding.record)
            binding.current_endpoints = set(published)
            for endpoint in sorted(published):
                await self._call(self._dns.remove_endpoint, binding.record, endpoint)
                binding.current_endpoints.discard(endpoint)
            await self._call(self._dns.delete_record, binding.record)

        binding.transition(BindingState.UNBOUND)
        self._bindings.pop(registration_id, None)
        logger.info("binding_deregistered", registration=registration_id, record=binding.fqdn)

    async def close(self) -> None:
        """Stop every consumer without touching DNS."""
        for registration_id in list(self._channels):
            await self._stop_channel(registration_id)

    # === Internals ===

    def _require(self, registration_id: str) -> ServiceBinding:
        binding = self._bindings.get(registration_id)
        if binding is None:
            raise BindingConsistencyError(
                f"No binding registered for '{registration_id}'",
                {"registration": registration_id},
            )
        return binding

    def _channel(self, binding: ServiceBinding) -> _Channel:
        channel = self._channels.get(binding.registration_id)
        if channel is None:
            channel = _Channel()
            channel.consumer = asyncio.create_task(
                self._consume(binding, channel),
                name=f"binding:{binding.registration_id}",
            )
            self._channels[binding.registration_id] = channel
        return channel

    async def _stop_channel(self, registration_id: str) -> None:
        channel = self._channels.pop(registration_id, None)
        if channel is None:
            return
        for task in (channel.pump, channel.consumer):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _pump(self, binding: ServiceBinding, source: EndpointSource, channel: _Channel) -> None:
        """Forward endpoint notifications into the binding's queue, resubscribing on breaks."""
        restarts = 0
        while True:
            try:
                async for change in source.subscribe(binding.target_task_id):
                    restarts = 0
                    await channel.queue.put(change.endpoints)
                return
            except BackendError as exc:
                restarts += 1
                if restarts > self._max_restarts:
                    binding.error = f"Endpoint stream for {binding.target_task_id} lost: {exc}"
                    logger.error(
                        "endpoint_stream_lost",
                        registration=binding.registration_id,
                        error=str(exc),
                    )
                    channel.bound.set()
                    return
                logger.warning(
                    "endpoint_stream_restart",
                    registration=binding.registration_id,
                    attempt=restarts,
                    error=str(exc),
                )
                await asyncio.sleep(min(self._retry.min_seconds * restarts, self._retry.max_seconds))

    async def _consume(self, binding: ServiceBinding, channel: _Channel) -> None:
        while True:
            endpoints = await channel.queue.get()
            try:
                await self._apply_change(binding, endpoints, channel)
            except (BindingConsistencyError, BackendError) as exc:
                binding.error = exc.message
                logger.error(
                    "binding_inconsistent",
                    registration=binding.registration_id,
                    record=binding.fqdn,
                    error=exc.message,
                )
                # unblock anyone waiting on the initial bind
                channel.bound.set()
            finally:
                channel.queue.task_done()

    async def _apply_change(
        self,
        binding: ServiceBinding,
        endpoints: FrozenSet[Endpoint],
        channel: _Channel,
    ) -> None:
        binding.desired_endpoints = set(endpoints)

        if binding.state is BindingState.REGISTERING:
            await self._reconcile(binding)
            if binding.current_endpoints or self._allow_empty:
                binding.transition(BindingState.BOUND)
                channel.bound.set()
            return

        if binding.state is not BindingState.BOUND:
            logger.debug(
                "binding_change_ignored",
                registration=binding.registration_id,
                state=binding.state.value,
            )
            return

        binding.transition(BindingState.UPDATING)
        try:
            await self._reconcile(binding)
        finally:
            binding.transition(BindingState.BOUND)
        binding.error = None

    async def _reconcile(self, binding: ServiceBinding) -> None:
        """Converge the published record onto ``desired_endpoints``."""
        record = binding.record
        if record is None:
            raise BindingConsistencyError(
                f"Binding '{binding.registration_id}' has no DNS record to reconcile",
                {"registration": binding.registration_id},
            )

        for round_number in range(1, self._max_rounds + 1):
            to_add = sorted(binding.desired_endpoints - binding.current_endpoints)
            to_remove = sorted(binding.current_endpoints - binding.desired_endpoints)
            if not to_add and not to_remove:
                return

            try:
                for endpoint in to_add:
                    await self._call(self._dns.add_endpoint, record, endpoint)
                    binding.current_endpoints.add(endpoint)
                for endpoint in to_remove:
                    await self._call(self._dns.remove_endpoint, record, endpoint)
                    binding.current_endpoints.discard(endpoint)
                logger.debug(
                    "binding_updated",
                    registration=binding.registration_id,
                    added=[str(e) for e in to_add],
                    removed=[str(e) for e in to_remove],
                )
            except BackendError as exc:
                if not exc.transient:
                    raise BindingConsistencyError(
                        f"DNS update for {binding.fqdn} rejected: {exc.message}",
                        {"registration": binding.registration_id},
                    ) from exc
                # Outcome unknown: trust the published record, not our bookkeeping.
                logger.warning(
                    "binding_reread",
                    registration=binding.registration_id,
                    round=round_number,
                    error=exc.message,
                )
                published = await self._call(self._dns.describe_record, record)
                binding.current_endpoints = set(published)

        if binding.current_endpoints != binding.desired_endpoints:
            raise BindingConsistencyError(
                f"Record {binding.fqdn} did not converge after {self._max_rounds} rounds",
                {
                    "registration": binding.registration_id,
                    "current": sorted(str(e) for e in binding.current_endpoints),
                    "desired": sorted(str(e) for e in binding.desired_endpoints),
                },
            )

    async def _call(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        async for attempt in self._retry.retrying():
            with attempt:
                return await fn(*args)
        raise AssertionError("unreachable")  # pragma: no cover
