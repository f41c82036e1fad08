"""
BreathLens - Device Resource Manager
=====================================
Owns every device-side buffer used by the magnification engine.

Responsibilities:
- Allocate buffers against a peak-memory budget
- Upload host data, dispatch kernels, read results back (all asynchronous)
- Order dependent operations on the same buffer (no torn reads)
- Release buffers and keep allocation accounting

The "device" is a CPU reference device: buffers are numpy arrays and work runs
on a thread pool. The contract is the same one a GPU backend would honour.

This module does NOT know what the kernels compute.
"""

import itertools
import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Flag, auto
from threading import Lock
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from runtime.errors import (
    DeviceIOError,
    DeviceLostError,
    KernelError,
    MagnificationError,
    OutOfMemoryError,
    ResourceError,
    UnsupportedCapabilityError,
)


logger = logging.getLogger(__name__)

DEFAULT_MEMORY_BUDGET = 512 * 1024 * 1024  # 512 MiB


class BufferUsage(Flag):
    """Usage flags declared at allocation time."""
    STORAGE = auto()    # kernels may write
    COPY_SRC = auto()   # may be read back
    COPY_DST = auto()   # may be uploaded into
    MAP_READ = auto()   # host-mappable for readback


FRAME_USAGE = BufferUsage.STORAGE | BufferUsage.COPY_SRC | BufferUsage.COPY_DST


@dataclass(frozen=True)
class DeviceHandle:
    """Opaque reference to one device buffer."""
    handle_id: int
    shape: Tuple[int, ...]
    dtype: str
    usage: BufferUsage
    owner: str
    nbytes: int

    def __repr__(self) -> str:
        dims = "×".join(str(s) for s in self.shape)
        return f"DeviceHandle(#{self.handle_id}, {dims} {self.dtype}, owner={self.owner})"


@dataclass
class Kernel:
    """
    A registered device kernel.

    Attributes:
        fn: Callable taking (buffers, **params); writes its outputs in place
        writes: Binding names the kernel writes; every other binding is read
    """
    fn: Callable[..., None]
    writes: Tuple[str, ...]


@dataclass
class _Allocation:
    handle: DeviceHandle
    array: np.ndarray
    last_write: Optional[Future] = None
    reads: List[Future] = field(default_factory=list)

    def pending(self) -> List[Future]:
        futures = [f for f in self.reads if not f.done()]
        if self.last_write is not None and not self.last_write.done():
            futures.append(self.last_write)
        return futures


class ResourceManager:
    """
    Budgeted buffer allocator and asynchronous work queue.

    Every upload, dispatch and readback returns a Future. Operations that read
    a buffer wait for its last write; operations that write a buffer also wait
    for the reads issued since that write.
    """

    def __init__(
        self,
        memory_budget_bytes: int = DEFAULT_MEMORY_BUDGET,
        max_workers: int = 4,
        enable_buffer_reuse: bool = True
    ):
        """
        Initialize the resource manager.

        Args:
            memory_budget_bytes: Peak bytes of live buffers allowed at once
            max_workers: Worker threads executing device work
            enable_buffer_reuse: Recycle released buffers of the same shape
        """
        if memory_budget_bytes <= 0:
            raise ValueError("memory_budget_bytes must be positive")
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")

        self.memory_budget_bytes = memory_budget_bytes
        self.enable_buffer_reuse = enable_buffer_reuse

        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="breathlens-device"
        )
        self._lock = Lock()
        self._ids = itertools.count(1)

        # Live allocations: handle_id -> allocation record
        self._allocations: Dict[int, _Allocation] = {}

        # Buffer pool for reuse
        # Key: (shape, dtype), Value: list of free arrays
        self._pool: Dict[Tuple[Tuple[int, ...], str], List[np.ndarray]] = {}

        self._kernels: Dict[str, Kernel] = {}

        self.bytes_in_use = 0
        self.peak_bytes = 0
        self.total_allocations = 0

        self._device_lost: Optional[str] = None
        self._closed = False

        logger.info(
            "[ResourceManager] Initialized (budget %.1f MiB, %d workers)",
            memory_budget_bytes / (1024 * 1024), max_workers
        )

    # ------------------------------------------------------------------
    # Kernels
    # ------------------------------------------------------------------

    def register_kernel(self, kernel_id: str, fn: Callable[..., None], writes: Sequence[str]):
        """Register a kernel under an id used by dispatch_kernel()."""
        self._kernels[kernel_id] = Kernel(fn=fn, writes=tuple(writes))

    def register_kernels(self, kernels: Mapping[str, Kernel]):
        """Register several kernels at once."""
        for kernel_id, kernel in kernels.items():
            self._kernels[kernel_id] = kernel

    def has_kernel(self, kernel_id: str) -> bool:
        return kernel_id in self._kernels

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(
        self,
        shape: Sequence[int],
        usage: BufferUsage,
        dtype=np.float32,
        owner: str = "engine"
    ) -> DeviceHandle:
        """
        Allocate a zero-filled device buffer.

        Args:
            shape: Buffer dimensions
            usage: Declared usage flags
            dtype: Element type
            owner: Component that owns the buffer (for diagnostics)

        Returns:
            DeviceHandle for the new buffer

        Raises:
            OutOfMemoryError: If the budget would be exceeded
            UnsupportedCapabilityError: If the shape is invalid
            DeviceLostError: If the device has been lost
        """
        self._check_device()

        shape = tuple(int(s) for s in shape)
        if not shape or any(s <= 0 for s in shape):
            raise UnsupportedCapabilityError(f"Invalid buffer shape {shape}")

        dtype = np.dtype(dtype)
        nbytes = int(np.prod(shape)) * dtype.itemsize

        with self._lock:
            if self.bytes_in_use + nbytes > self.memory_budget_bytes:
                raise OutOfMemoryError(
                    f"Allocating {nbytes} bytes for '{owner}' exceeds the memory budget "
                    f"({self.bytes_in_use} of {self.memory_budget_bytes} bytes in use)"
                )

            array = self._take_from_pool(shape, dtype.name)
            if array is None:
                try:
                    array = np.zeros(shape, dtype=dtype)
                except MemoryError as e:
                    raise OutOfMemoryError(
                        f"Host could not back a {nbytes}-byte buffer for '{owner}'"
                    ) from e

            handle = DeviceHandle(
                handle_id=next(self._ids),
                shape=shape,
                dtype=dtype.name,
                usage=usage,
                owner=owner,
                nbytes=nbytes
            )
            self._allocations[handle.handle_id] = _Allocation(handle=handle, array=array)

            self.bytes_in_use += nbytes
            self.peak_bytes = max(self.peak_bytes, self.bytes_in_use)
            self.total_allocations += 1

        logger.debug("[ResourceManager] Allocated %r", handle)
        return handle

    def _take_from_pool(self, shape: Tuple[int, ...], dtype: str) -> Optional[np.ndarray]:
        if not self.enable_buffer_reuse:
            return None

        free = self._pool.get((shape, dtype))
        if not free:
            return None

        array = free.pop()
        array.fill(0)
        return array

    # ------------------------------------------------------------------
    # Asynchronous operations
    # ------------------------------------------------------------------

    def upload(self, handle: DeviceHandle, data: np.ndarray) -> Future:
        """
        Copy host data into a device buffer.

        Args:
            handle: Destination buffer (needs COPY_DST)
            data: Host array with the buffer's shape; converted to its dtype

        Returns:
            Future resolving to None once the buffer holds the data

        Raises:
            DeviceIOError: If the data layout does not match the buffer
        """
        allocation = self._lookup(handle)
        self._require(handle, BufferUsage.COPY_DST, "upload")

        data = np.asarray(data)
        if data.shape != handle.shape:
            raise DeviceIOError(
                f"Upload of shape {data.shape} into {handle!r} is an unsupported format"
            )

        target = allocation.array

        def transfer():
            target[...] = data

        return self._submit(
            transfer,
            reads=(),
            writes=(allocation,),
            error_type=DeviceIOError,
            description=f"Upload into {handle!r}"
        )

    def dispatch_kernel(
        self,
        kernel_id: str,
        bindings: Mapping[str, DeviceHandle],
        work_size: Sequence[int],
        **params
    ) -> Future:
        """
        Run a registered kernel over bound buffers.

        Args:
            kernel_id: Id passed to register_kernel()
            bindings: Binding name -> buffer
            work_size: Dispatch grid; must match every written buffer's leading dims
            **params: Scalar parameters forwarded to the kernel

        Returns:
            Future resolving to None once all written buffers are committed
        """
        self._check_device()

        kernel = self._kernels.get(kernel_id)
        if kernel is None:
            raise UnsupportedCapabilityError(f"Unknown kernel '{kernel_id}'")

        missing = [name for name in kernel.writes if name not in bindings]
        if missing:
            raise UnsupportedCapabilityError(
                f"Kernel '{kernel_id}' is missing output bindings: {', '.join(missing)}"
            )

        work_size = tuple(int(s) for s in work_size)
        reads: List[_Allocation] = []
        writes: List[_Allocation] = []
        arrays: Dict[str, np.ndarray] = {}

        for name, handle in bindings.items():
            allocation = self._lookup(handle)
            arrays[name] = allocation.array

            if name in kernel.writes:
                self._require(handle, BufferUsage.STORAGE, f"kernel '{kernel_id}'")
                if handle.shape[:len(work_size)] != work_size:
                    raise UnsupportedCapabilityError(
                        f"Kernel '{kernel_id}' work size {work_size} does not cover "
                        f"binding '{name}' {handle.shape}"
                    )
                writes.append(allocation)
            else:
                reads.append(allocation)

        def run():
            kernel.fn(arrays, **params)

        return self._submit(
            run,
            reads=reads,
            writes=writes,
            error_type=KernelError,
            description=f"Kernel '{kernel_id}'"
        )

    def readback(self, handle: DeviceHandle) -> Future:
        """
        Copy a device buffer back to the host.

        Returns:
            Future resolving to a fresh numpy array
        """
        allocation = self._lookup(handle)
        if not handle.usage & (BufferUsage.COPY_SRC | BufferUsage.MAP_READ):
            raise UnsupportedCapabilityError(f"{handle!r} was not allocated for readback")

        source = allocation.array

        def transfer():
            return source.copy()

        return self._submit(
            transfer,
            reads=(allocation,),
            writes=(),
            error_type=DeviceIOError,
            description=f"Readback of {handle!r}"
        )

    def fence(self, handles: Iterable[DeviceHandle]) -> Future:
        """Future that completes once the last writes to `handles` are done."""
        allocations = [self._lookup(h) for h in handles]
        return self._submit(
            lambda: None,
            reads=allocations,
            writes=(),
            error_type=KernelError,
            description="Fence"
        )

    def _submit(
        self,
        work: Callable,
        reads: Sequence[_Allocation],
        writes: Sequence[_Allocation],
        error_type,
        description: str
    ) -> Future:
        self._check_device()

        with self._lock:
            producers = []
            readers = []
            for allocation in (*reads, *writes):
                if allocation.last_write is not None and allocation.last_write not in producers:
                    producers.append(allocation.last_write)
            for allocation in writes:
                readers.extend(f for f in allocation.reads if not f.done())

            future = self._executor.submit(
                self._execute, work, producers, readers, error_type, description
            )

            for allocation in reads:
                allocation.reads = [f for f in allocation.reads if not f.done()]
                allocation.reads.append(future)
            for allocation in writes:
                allocation.last_write = future
                allocation.reads = []

        return future

    def _execute(self, work, producers, readers, error_type, description):
        # Earlier readers only need to finish; a failed producer fails us too.
        if readers:
            wait(readers)
        for producer in producers:
            producer.result()

        if self._device_lost is not None:
            raise DeviceLostError(f"{description}: device lost ({self._device_lost})")

        try:
            return work()
        except MagnificationError:
            raise
        except MemoryError as e:
            raise OutOfMemoryError(f"{description}: out of memory") from e
        except Exception as e:
            raise error_type(f"{description} failed: {e}") from e

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release(self, handle: DeviceHandle):
        """
        Release a device buffer.

        Pending work touching the buffer is allowed to finish first. Releasing
        an unknown or already released handle logs a warning and does nothing.
        """
        with self._lock:
            allocation = self._allocations.pop(handle.handle_id, None)
            if allocation is None:
                logger.warning(
                    "[ResourceManager] Attempted to release unknown handle %r", handle
                )
                return
            pending = allocation.pending()
            self.bytes_in_use -= handle.nbytes

        if pending:
            wait(pending)

        if self.enable_buffer_reuse and not self._closed:
            with self._lock:
                key = (handle.shape, handle.dtype)
                self._pool.setdefault(key, []).append(allocation.array)

        logger.debug("[ResourceManager] Released %r", handle)

    def release_many(self, handles: Iterable[DeviceHandle]) -> List[Exception]:
        """
        Best-effort release of several handles.

        Failures are logged and collected; the remaining handles are still
        released.

        Returns:
            Exceptions raised by individual releases (empty on full success)
        """
        errors: List[Exception] = []
        for handle in handles:
            try:
                self.release(handle)
            except Exception as e:
                logger.warning(
                    "[ResourceManager] Failed to release %r: %s", handle, e, exc_info=True
                )
                errors.append(e)
        return errors

    # ------------------------------------------------------------------
    # Device state and accounting
    # ------------------------------------------------------------------

    def mark_device_lost(self, reason: str = "device reset"):
        """Fail every later operation with DeviceLostError. Release keeps working."""
        self._device_lost = reason
        logger.error("[ResourceManager] Device lost: %s", reason)

    @property
    def device_lost(self) -> bool:
        return self._device_lost is not None

    def synchronize(self):
        """Block until all submitted work has finished."""
        with self._lock:
            pending = [f for a in self._allocations.values() for f in a.pending()]
        if pending:
            wait(pending)

    def outstanding_handles(self) -> List[DeviceHandle]:
        """Handles allocated and not yet released."""
        with self._lock:
            return [a.handle for a in self._allocations.values()]

    def get_stats(self) -> dict:
        """
        Get allocation statistics.

        Returns:
            Dictionary with handle counts and byte totals
        """
        with self._lock:
            pooled = sum(len(free) for free in self._pool.values())
            return {
                'live_handles': len(self._allocations),
                'pooled_buffers': pooled,
                'bytes_in_use': self.bytes_in_use,
                'peak_bytes': self.peak_bytes,
                'total_allocations': self.total_allocations,
                'memory_budget_bytes': self.memory_budget_bytes,
            }

    def shutdown(self):
        """Wait for pending work, stop the workers and drop pooled buffers."""
        if self._closed:
            return

        self.synchronize()
        self._closed = True
        self._executor.shutdown(wait=True)

        with self._lock:
            self._pool.clear()
            leaked = len(self._allocations)

        if leaked:
            logger.warning("[ResourceManager] Shut down with %d live handles", leaked)
        logger.info("[ResourceManager] Shut down (peak %d bytes)", self.peak_bytes)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_device(self):
        if self._closed:
            raise ResourceError("Resource manager has been shut down")
        if self._device_lost is not None:
            raise DeviceLostError(f"Device lost ({self._device_lost})")

    def _lookup(self, handle: DeviceHandle) -> _Allocation:
        with self._lock:
            allocation = self._allocations.get(handle.handle_id)
        if allocation is None:
            raise ResourceError(f"{handle!r} is not allocated")
        return allocation

    @staticmethod
    def _require(handle: DeviceHandle, flag: BufferUsage, operation: str):
        if not handle.usage & flag:
            raise UnsupportedCapabilityError(
                f"{handle!r} lacks {flag.name} usage required for {operation}"
            )
