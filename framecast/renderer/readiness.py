"""
Readiness registry for one renderer instance.

Asynchronous scene-side work (asset and font loads, fetches) registers a
delay handle before it starts and resolves it when done. A frame may only be
captured once the registry is empty. Each registry belongs to exactly one
renderer instance and is never shared between workers.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from config import DELAY_DEFAULT_TIMEOUT_MS
from framecast.errors import ReadinessTimeout, RenderCancelled, RenderError
from utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class DelayHandle:
    """One outstanding async precondition of the current frame."""

    handle_id: int
    label: str
    created_at: float
    timeout_ms: int
    retries: int
    retries_remaining: int
    _timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class ReadinessRegistry:
    """
    Tracks outstanding delay handles and the terminal failure of an instance.

    Timers run on the event loop that calls begin_delay(). On timeout a handle
    with retries left is re-armed (the wait is retried, not the stalled work);
    without retries the whole registry fails.
    """

    def __init__(self, name: str = "renderer"):
        self.name = name
        self._handles: Dict[int, DelayHandle] = {}
        self._next_id = 0
        self._failure: Optional[RenderError] = None
        self._changed = asyncio.Event()

    # ------------------------------------------------------------------
    # Scene-facing operations
    # ------------------------------------------------------------------
    def begin_delay(
        self,
        label: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        retries: Optional[int] = None,
    ) -> int:
        """Register a blocker and return its handle id."""
        self._next_id += 1
        handle = DelayHandle(
            handle_id=self._next_id,
            label=label or "Unnamed delay",
            created_at=time.monotonic(),
            timeout_ms=DELAY_DEFAULT_TIMEOUT_MS if timeout_ms is None else int(timeout_ms),
            retries=int(retries or 0),
            retries_remaining=int(retries or 0),
        )
        self._handles[handle.handle_id] = handle
        if handle.timeout_ms > 0:
            self._arm(handle)
        logger.debug(f"[readiness:{self.name}] begin #{handle.handle_id} '{handle.label}'")
        return handle.handle_id

    def end_delay(self, handle_id: int) -> None:
        """Resolve a blocker. Unknown ids were already resolved or failed."""
        handle = self._handles.pop(int(handle_id), None)
        if handle is None:
            logger.warning(
                f"[readiness:{self.name}] end_delay() called with unknown handle {handle_id}. "
                f"It may have already been resolved or timed out."
            )
            return
        handle.disarm()
        logger.debug(f"[readiness:{self.name}] end #{handle.handle_id} '{handle.label}'")
        self._notify()

    def fail_all(self, error: RenderError) -> None:
        """Clear every blocker and put the instance into its terminal state."""
        for handle in self._handles.values():
            handle.disarm()
        self._handles.clear()
        if self._failure is None:
            self._failure = error
            logger.error(f"[readiness:{self.name}] render failed: {error}")
        self._notify()

    def cancel(self, message: Optional[str] = None) -> None:
        """Scene-side cancellation (cancelRender on the page)."""
        self.fail_all(RenderCancelled(f"Render cancelled by scene: {message or 'no reason given'}"))

    def clear(self) -> None:
        """Drop all handles without failing. Mainly for teardown."""
        for handle in self._handles.values():
            handle.disarm()
        self._handles.clear()
        self._notify()

    # ------------------------------------------------------------------
    # Renderer-facing operations
    # ------------------------------------------------------------------
    @property
    def failure(self) -> Optional[RenderError]:
        return self._failure

    @property
    def is_pending(self) -> bool:
        return bool(self._handles)

    @property
    def pending_count(self) -> int:
        return len(self._handles)

    def pending_labels(self) -> List[str]:
        return [handle.label for handle in self._handles.values()]

    def pending(self) -> List[dict]:
        now = time.monotonic()
        return [
            {
                "handle": handle.handle_id,
                "label": handle.label,
                "age_ms": int((now - handle.created_at) * 1000),
            }
            for handle in self._handles.values()
        ]

    def get(self, handle_id: int) -> Optional[DelayHandle]:
        return self._handles.get(handle_id)

    async def wait_until_ready(self, timeout_ms: int) -> None:
        """
        Block until no handle is outstanding.

        Raises:
            RenderError: the registry's terminal failure, if any
            ReadinessTimeout: timeout_ms elapsed with handles still pending
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        while True:
            if self._failure is not None:
                raise self._failure
            if not self._handles:
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                labels = self.pending_labels()
                raise ReadinessTimeout(
                    f"Frame not ready after {timeout_ms}ms, waiting on: "
                    + ", ".join(f'"{label}"' for label in labels),
                    labels=labels,
                )
            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _notify(self) -> None:
        self._changed.set()

    def _arm(self, handle: DelayHandle) -> None:
        loop = asyncio.get_running_loop()
        handle._timer = loop.call_later(handle.timeout_ms / 1000, self._on_timeout, handle.handle_id)

    def _on_timeout(self, handle_id: int) -> None:
        handle = self._handles.get(handle_id)
        if handle is None:
            return
        handle._timer = None
        if handle.retries_remaining > 0:
            handle.retries_remaining -= 1
            used = handle.retries - handle.retries_remaining
            logger.warning(
                f"[readiness:{self.name}] delay retry ({used}/{handle.retries}): '{handle.label}'"
            )
            self._arm(handle)
            return
        self.fail_all(
            ReadinessTimeout(
                f"delay timed out after {handle.timeout_ms}ms. "
                f'Label: "{handle.label}", handle: {handle.handle_id}. '
                f"An asset failed to load, a fetch never completed, "
                f"or the delay was never resolved.",
                labels=[handle.label],
            )
        )
