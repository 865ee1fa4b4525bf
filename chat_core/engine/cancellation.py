"""Single-slot cancellation registry.

The registry enforces "only one live stream at a time". It owns a
monotonically increasing generation counter: every ``supersede`` and every
``cancel_current`` bumps it, so a session can tell at write time whether it
is still the current writer.
"""

from typing import Callable, List, Optional

from chat_core.domain.exceptions import Cancelled
from chat_core.infrastructure.logging.logger import logger


class CancellationHandle:
    """Cooperative cancellation flag stamped with a generation."""

    def __init__(self) -> None:
        self.generation: int = 0
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancel (immediately if already cancelled)."""

        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        """Raise ``Cancelled`` once the handle has been triggered."""

        if self._cancelled:
            raise Cancelled(code="CANCELLED", message="stream cancelled", generation=self.generation)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                # a failing close hook must not keep the other hooks from running
                logger.exception("Cancellation callback failed")

    def __repr__(self) -> str:
        return f"CancellationHandle(generation={self.generation}, cancelled={self._cancelled})"


class CancellationRegistry:
    def __init__(self) -> None:
        self._current: Optional[CancellationHandle] = None
        self._generation = 0

    @property
    def current(self) -> Optional[CancellationHandle]:
        return self._current

    @property
    def generation(self) -> int:
        return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def new_handle(self) -> CancellationHandle:
        handle = CancellationHandle()
        self.supersede(handle)
        return handle

    def supersede(self, new_handle: CancellationHandle) -> int:
        """Trigger and drop the current handle, install ``new_handle``.

        Fire-and-forget: the superseded session observes its handle and
        stops on its own. Returns the generation stamped on ``new_handle``.
        """

        old = self._current
        self._generation += 1
        new_handle.generation = self._generation
        self._current = new_handle
        if old is not None:
            logger.info(
                "Superseded stream",
                extra={"extra": {"old_generation": old.generation, "generation": self._generation}},
            )
            old.cancel()
        return self._generation

    def cancel_current(self) -> None:
        """Trigger and clear the current handle; a no-op when empty."""

        old = self._current
        if old is None:
            return
        self._current = None
        self._generation += 1
        old.cancel()

    def release(self, handle: CancellationHandle) -> None:
        """Empty the slot after ``handle``'s session ended on its own."""

        if self._current is handle:
            self._current = None

    def bump(self) -> int:
        """Invalidate pending async results without touching the slot."""

        self._generation += 1
        return self._generation
