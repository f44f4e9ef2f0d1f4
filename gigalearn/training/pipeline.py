# Double-buffered host -> device batch transfer
# Overlaps the copy of batch i+1 with the update on batch i

import threading
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import nullcontext
from enum import Enum
from typing import Dict, List, Optional, Sequence

import torch

from .experience import ExperienceTensors


logger = logging.getLogger(__name__)


class SlotState(Enum):
    NOT_PREFETCHED = 0
    PREFETCH_IN_FLIGHT = 1
    READY = 2


class BatchPipeline:
    """Prefetches batches to the training device on a single worker thread.

    At most one prefetch is in flight. Starting a new prefetch waits for the
    previous one, and get_batch releases its slot, so the pipeline holds at
    most two device batches. When every batch already lives on the target
    device, all calls pass through.
    """

    def __init__(self, device: torch.device, name: str = "batch-prefetch"):
        """Initialize pipeline.

        Args:
            device: Target device for batches
            name: Worker thread name prefix
        """
        self.device = torch.device(device)
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)

        if self.device.type == "cuda":
            self._stream = torch.cuda.Stream(device=self.device)
        else:
            self._stream = None

        self._batches: List[ExperienceTensors] = []
        self._states: List[SlotState] = []
        self._futures: Dict[int, Future] = {}
        self._pending: Optional[Future] = None
        self._passthrough = True
        self._closed = False

    def __len__(self) -> int:
        return len(self._batches)

    def __enter__(self) -> "BatchPipeline":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def set_batches(self, batches: Sequence[ExperienceTensors]) -> None:
        """Replace the batch list and reset every slot."""
        self.wait_pending()
        with self._lock:
            self._batches = list(batches)
            self._states = [SlotState.NOT_PREFETCHED] * len(self._batches)
            self._futures = {}
            self._passthrough = all(b.is_on_device(self.device) for b in self._batches)

    def slot_state(self, index: int) -> SlotState:
        with self._lock:
            return self._states[index]

    def start_prefetch(self, index: int) -> None:
        """Launch the async copy of one batch.

        No-op for an out-of-range index or a batch that was already launched.
        """
        if self._passthrough:
            return

        with self._lock:
            if index < 0 or index >= len(self._batches):
                return
            if self._states[index] != SlotState.NOT_PREFETCHED:
                return

        self.wait_pending()

        with self._lock:
            if self._states[index] != SlotState.NOT_PREFETCHED:
                return
            self._states[index] = SlotState.PREFETCH_IN_FLIGHT
            future = self._executor.submit(self._transfer, index)
            self._futures[index] = future
            self._pending = future

    def prefetch_next(self, index: int) -> None:
        self.start_prefetch(index + 1)

    def get_batch(self, index: int) -> ExperienceTensors:
        """Return batch on the target device.

        Waits for an in-flight prefetch, otherwise copies synchronously.
        """
        if self._passthrough:
            return self._batches[index]

        with self._lock:
            batch = self._batches[index]
            future = self._futures.pop(index, None)

        if future is None:
            return batch.to_device(self.device)

        result = future.result()
        with self._lock:
            if self._pending is future:
                self._pending = None

        if self._stream is not None:
            consumer = torch.cuda.current_stream(self.device)
            for _, t in result.defined_fields():
                t.record_stream(consumer)
        return result

    def wait_pending(self) -> None:
        """Block until the in-flight prefetch (if any) completes."""
        with self._lock:
            future = self._pending

        if future is None:
            return

        future.result()
        with self._lock:
            if self._pending is future:
                self._pending = None

    def close(self) -> None:
        if self._closed:
            return
        try:
            self.wait_pending()
        finally:
            self._executor.shutdown(wait=True)
            self._closed = True

    def _transfer(self, index: int) -> ExperienceTensors:
        with self._lock:
            batch = self._batches[index]

        stream_ctx = torch.cuda.stream(self._stream) if self._stream is not None else nullcontext()
        with stream_ctx:
            if self._stream is not None:
                batch = batch.map(lambda t: t.pin_memory() if t.device.type == "cpu" else t)
            result = batch.to_device(self.device, non_blocking=True)
        if self._stream is not None:
            self._stream.synchronize()

        with self._lock:
            if index < len(self._states):
                self._states[index] = SlotState.READY
        return result
