"""The slice of a Matter stack the bridge depends on.

The bridge never touches attribute storage, sessions or the binding table
directly. It posts work with ``schedule_work`` and drives interactions
through the bound-device-changed callback, which the stack calls once per
matching binding entry after ``notify_bound_cluster_changed``.

``SimulatedMatterStack`` implements the interface in memory so the bridge
can run stand-alone and be tested without a real fabric.
"""
from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from mcbridge.core.values import BoolValue, ScalarValue, Uint16Value
from mcbridge.errors import ExternalAttributeFailure

from .interactions import BindingEntry, BindingKind

logger = logging.getLogger("mcbridge.matter.stack")

WorkFn = Callable[[Any], None]
SuccessCallback = Callable[[Union[bool, int, bytes, None]], None]
FailureCallback = Callable[[Exception], None]


@dataclass(frozen=True)
class PeerDevice:
    """An operational session to a bound node."""

    fabric_index: int
    node_id: int


BoundDeviceChangedHandler = Callable[[BindingEntry, Optional[PeerDevice], Any], None]
ContextReleaseHandler = Callable[[Any], None]


class ExternalAttributeHandler(ABC):
    """Serves attributes the stack keeps in external storage.

    The stack calls these synchronously from its work queue thread when a
    controller accesses an attribute of an externally stored endpoint. Each
    method returns True on success.
    """

    @abstractmethod
    def read(self, endpoint: int, cluster_id: int, attribute_id: int, buffer: bytearray) -> bool:
        """Fill ``buffer``, which is sized to the attribute."""

    @abstractmethod
    def write(self, endpoint: int, cluster_id: int, attribute_id: int, data: bytes) -> bool:
        pass

    @abstractmethod
    def invoke(self, endpoint: int, cluster_id: int, command_id: int) -> bool:
        pass


# --- Work queues ---


class WorkQueue(ABC):
    """Runs posted callables one at a time, in order."""

    @abstractmethod
    def post(self, fn: WorkFn, ctx: Any = None) -> None:
        pass

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


class ImmediateWorkQueue(WorkQueue):
    """Runs work inline on the caller's thread. Nested posts are deferred
    until the outer item finishes, so ordering matches a real queue."""

    def __init__(self) -> None:
        self._pending: List[Tuple[WorkFn, Any]] = []
        self._running = False

    def post(self, fn: WorkFn, ctx: Any = None) -> None:
        self._pending.append((fn, ctx))
        if self._running:
            return
        self._running = True
        try:
            while self._pending:
                item, item_ctx = self._pending.pop(0)
                _run_work(item, item_ctx)
        finally:
            self._running = False


class ThreadedWorkQueue(WorkQueue):
    """Single worker thread draining a FIFO of work items."""

    def __init__(self, name: str = "matter-work") -> None:
        self._name = name
        self._q: "queue.Queue[Optional[Tuple[WorkFn, Any]]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        if self._worker is None:
            return
        self._q.put(None)
        self._worker.join(timeout=timeout)
        self._worker = None

    def post(self, fn: WorkFn, ctx: Any = None) -> None:
        self._q.put((fn, ctx))

    def _run(self) -> None:
        while True:
            item = self._q.get()
            if item is None:
                break
            _run_work(*item)


def _run_work(fn: WorkFn, ctx: Any) -> None:
    try:
        fn(ctx)
    except Exception:
        logger.exception("Work item %r failed", getattr(fn, "__name__", fn))


# --- Stack interface ---


class MatterStack(ABC):
    @abstractmethod
    def schedule_work(self, fn: WorkFn, ctx: Any = None) -> None:
        pass

    @abstractmethod
    def register_bound_device_changed_handler(self, handler: BoundDeviceChangedHandler) -> None:
        pass

    @abstractmethod
    def register_bound_device_context_release_handler(self, handler: ContextReleaseHandler) -> None:
        pass

    @abstractmethod
    def register_external_attribute_handler(self, handler: ExternalAttributeHandler) -> None:
        """Route accesses to externally stored attributes through ``handler``."""

    @abstractmethod
    def notify_bound_cluster_changed(self, local_endpoint: int, cluster_id: int, context: Any) -> None:
        """Call the bound-device-changed handler for each matching binding,
        then release ``context``."""

    @abstractmethod
    def read_attribute(self, peer: PeerDevice, endpoint: int, cluster_id: int, attribute_id: int,
                       on_success: SuccessCallback, on_failure: FailureCallback) -> None:
        pass

    @abstractmethod
    def write_attribute(self, peer: PeerDevice, endpoint: int, cluster_id: int, attribute_id: int,
                        value: ScalarValue, on_success: SuccessCallback, on_failure: FailureCallback) -> None:
        pass

    @abstractmethod
    def invoke_command(self, peer: PeerDevice, endpoint: int, cluster_id: int, command_id: int,
                       on_success: SuccessCallback, on_failure: FailureCallback) -> None:
        pass

    @abstractmethod
    def invoke_group_command(self, fabric_index: int, group_id: int, cluster_id: int, command_id: int) -> None:
        pass

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


# --- In-memory stack ---

ON_OFF_CLUSTER = 0x0006
ON_OFF_ATTRIBUTE = 0x0000

AttributeKey = Tuple[int, int, int, int]  # node, endpoint, cluster, attribute
LocalKey = Tuple[int, int, int]  # endpoint, cluster, attribute


class SimulatedMatterStack(MatterStack):
    """Binding table plus attribute store for a handful of fake nodes.

    Completion callbacks are posted back onto the work queue, so reads
    finish after the call that started them, as on a real fabric.

    The bridge's own endpoints listed in ``external_endpoints`` keep their
    attributes in external storage: controller access to them goes through
    the registered external attribute handler.
    """

    def __init__(
        self,
        bindings: Iterable[BindingEntry] = (),
        work_queue: Optional[WorkQueue] = None,
        groups: Optional[Dict[int, Iterable[Tuple[int, int]]]] = None,
        external_endpoints: Iterable[int] = (),
    ):
        self.bindings: List[BindingEntry] = list(bindings)
        self.work_queue = work_queue or ThreadedWorkQueue()
        # group id -> {(node id, endpoint)}
        self.groups: Dict[int, Set[Tuple[int, int]]] = {
            gid: set(members) for gid, members in (groups or {}).items()
        }
        self._attributes: Dict[AttributeKey, Union[bool, int]] = {}
        self.external_endpoints: Set[int] = set(external_endpoints)
        self._local: Dict[LocalKey, bytes] = {}
        self._external: Optional[ExternalAttributeHandler] = None
        self._lock = threading.Lock()
        self._changed_handler: Optional[BoundDeviceChangedHandler] = None
        self._release_handler: Optional[ContextReleaseHandler] = None
        self.history: List[Tuple[Any, ...]] = []

    def start(self) -> None:
        self.work_queue.start()

    def stop(self) -> None:
        self.work_queue.stop()

    # --- attribute store ---

    def set_attribute(self, node_id: int, endpoint: int, cluster_id: int, attribute_id: int,
                      value: Union[bool, int]) -> None:
        with self._lock:
            self._attributes[(node_id, endpoint, cluster_id, attribute_id)] = value

    def get_attribute(self, node_id: int, endpoint: int, cluster_id: int, attribute_id: int) -> Union[bool, int]:
        with self._lock:
            return self._attributes[(node_id, endpoint, cluster_id, attribute_id)]

    # --- MatterStack ---

    def schedule_work(self, fn: WorkFn, ctx: Any = None) -> None:
        self.work_queue.post(fn, ctx)

    def register_bound_device_changed_handler(self, handler: BoundDeviceChangedHandler) -> None:
        self._changed_handler = handler

    def register_bound_device_context_release_handler(self, handler: ContextReleaseHandler) -> None:
        self._release_handler = handler

    def register_external_attribute_handler(self, handler: ExternalAttributeHandler) -> None:
        self._external = handler

    def notify_bound_cluster_changed(self, local_endpoint: int, cluster_id: int, context: Any) -> None:
        try:
            for binding in self.bindings:
                if binding.local_endpoint != local_endpoint:
                    continue
                if binding.cluster_id is not None and binding.cluster_id != cluster_id:
                    continue
                peer = None
                if binding.kind is BindingKind.UNICAST:
                    peer = PeerDevice(binding.fabric_index, binding.node_id)
                if self._changed_handler:
                    self._changed_handler(binding, peer, context)
        finally:
            if self._release_handler:
                self._release_handler(context)

    def read_attribute(self, peer, endpoint, cluster_id, attribute_id, on_success, on_failure) -> None:
        self.history.append(("read", peer.node_id, endpoint, cluster_id, attribute_id))
        try:
            value = self.get_attribute(peer.node_id, endpoint, cluster_id, attribute_id)
        except KeyError:
            error = KeyError(f"Unsupported attribute 0x{attribute_id:04X} on cluster 0x{cluster_id:04X}")
            self.schedule_work(lambda _: on_failure(error))
            return
        self.schedule_work(lambda _: on_success(value))

    def write_attribute(self, peer, endpoint, cluster_id, attribute_id, value, on_success, on_failure) -> None:
        self.history.append(("write", peer.node_id, endpoint, cluster_id, attribute_id, value))
        plain = value.value if isinstance(value, (BoolValue, Uint16Value)) else value
        self.set_attribute(peer.node_id, endpoint, cluster_id, attribute_id, plain)
        self.schedule_work(lambda _: on_success(None))

    def invoke_command(self, peer, endpoint, cluster_id, command_id, on_success, on_failure) -> None:
        self.history.append(("invoke", peer.node_id, endpoint, cluster_id, command_id))
        try:
            self._apply_command(peer.node_id, endpoint, cluster_id, command_id)
        except KeyError as exc:
            self.schedule_work(lambda _: on_failure(exc))
            return
        self.schedule_work(lambda _: on_success(None))

    def invoke_group_command(self, fabric_index, group_id, cluster_id, command_id) -> None:
        self.history.append(("group-invoke", fabric_index, group_id, cluster_id, command_id))
        for node_id, endpoint in sorted(self.groups.get(group_id, ())):
            try:
                self._apply_command(node_id, endpoint, cluster_id, command_id)
            except KeyError as exc:
                logger.warning("Group 0x%X member 0x%X rejected command: %s", group_id, node_id, exc)

    # --- controller access to the bridge's own endpoints ---

    def set_local_attribute(self, endpoint: int, cluster_id: int, attribute_id: int, data: bytes) -> None:
        with self._lock:
            self._local[(endpoint, cluster_id, attribute_id)] = bytes(data)

    def read_local_attribute(self, endpoint: int, cluster_id: int, attribute_id: int, size: int,
                             on_success: SuccessCallback, on_failure: FailureCallback) -> None:
        """Read ``size`` bytes of a bridge attribute, as a controller would."""

        def run(_ctx: Any) -> None:
            self.history.append(("local-read", endpoint, cluster_id, attribute_id))
            if endpoint in self.external_endpoints:
                buffer = bytearray(size)
                if self._external_access("read", endpoint, cluster_id, attribute_id, buffer):
                    on_success(bytes(buffer))
                else:
                    on_failure(_external_failure("read", endpoint, cluster_id, attribute_id))
                return
            with self._lock:
                data = self._local.get((endpoint, cluster_id, attribute_id))
            if data is None:
                on_failure(KeyError(f"Unsupported attribute 0x{attribute_id:04X} on cluster 0x{cluster_id:04X}"))
            else:
                on_success(data[:size])

        self.schedule_work(run)

    def write_local_attribute(self, endpoint: int, cluster_id: int, attribute_id: int, data: bytes,
                              on_success: SuccessCallback, on_failure: FailureCallback) -> None:
        def run(_ctx: Any) -> None:
            self.history.append(("local-write", endpoint, cluster_id, attribute_id, bytes(data)))
            if endpoint in self.external_endpoints:
                if self._external_access("write", endpoint, cluster_id, attribute_id, bytes(data)):
                    on_success(None)
                else:
                    on_failure(_external_failure("write", endpoint, cluster_id, attribute_id))
                return
            self.set_local_attribute(endpoint, cluster_id, attribute_id, data)
            on_success(None)

        self.schedule_work(run)

    def invoke_local_command(self, endpoint: int, cluster_id: int, command_id: int,
                             on_success: SuccessCallback, on_failure: FailureCallback) -> None:
        """Instant action on a bridge endpoint. Only external endpoints take commands."""

        def run(_ctx: Any) -> None:
            self.history.append(("local-invoke", endpoint, cluster_id, command_id))
            if endpoint in self.external_endpoints and self._external_access(
                "invoke", endpoint, cluster_id, command_id
            ):
                on_success(None)
            else:
                on_failure(_external_failure("invoke", endpoint, cluster_id, command_id))

        self.schedule_work(run)

    def _external_access(self, operation: str, *args: Any) -> bool:
        if self._external is None:
            logger.warning("No external attribute handler for %s on endpoint %d", operation, args[0])
            return False
        return getattr(self._external, operation)(*args)

    def _apply_command(self, node_id: int, endpoint: int, cluster_id: int, command_id: int) -> None:
        if cluster_id != ON_OFF_CLUSTER:
            raise KeyError(f"Cluster 0x{cluster_id:04X} has no commands")
        with self._lock:
            key = (node_id, endpoint, cluster_id, ON_OFF_ATTRIBUTE)
            current = bool(self._attributes.get(key, False))
            if command_id == 0x00:
                self._attributes[key] = False
            elif command_id == 0x01:
                self._attributes[key] = True
            elif command_id == 0x02:
                self._attributes[key] = not current
            else:
                raise KeyError(f"Unsupported OnOff command 0x{command_id:02X}")


def _external_failure(operation: str, endpoint: int, cluster_id: int, target_id: int) -> ExternalAttributeFailure:
    return ExternalAttributeFailure(
        f"External {operation} of 0x{target_id:04X} on endpoint {endpoint} cluster 0x{cluster_id:04X} failed"
    )
