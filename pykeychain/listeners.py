"""Key chain event listeners and their dispatch.

Each listener is registered together with the executor its callbacks run on.
Dispatch posts to that executor and returns immediately, so a chain never
waits for its listeners. The default executor is ``USER_THREAD``, a single
worker shared by the whole process, which keeps callbacks in the order the
chains raised them.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .metrics import LISTENER_ERRORS_TOTAL
from .models import KeyAddedEvent

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from .models import KeyRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyChainEventListener(Protocol):
    """Observer of keys being added to a chain."""

    def on_keys_added(self, event: KeyAddedEvent) -> None: ...


class _SameThreadExecutor(Executor):
    """Runs submitted callables immediately on the calling thread."""

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future[Any]:
        future: Future[Any] = Future()
        try:
            result = fn(*args, **kwargs)
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(result)
        return future


USER_THREAD: Executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pykeychain-user")
SAME_THREAD: Executor = _SameThreadExecutor()


def wait_for_user_code(timeout: float | None = 5.0) -> None:
    """Block until every callback already queued on USER_THREAD has run."""
    USER_THREAD.submit(lambda: None).result(timeout=timeout)


@dataclass(frozen=True, slots=True)
class ListenerRegistration:
    """A listener paired with the executor its callbacks run on."""

    listener: KeyChainEventListener
    executor: Executor


def _deliver(listener: KeyChainEventListener, event: KeyAddedEvent) -> None:
    try:
        listener.on_keys_added(event)
    except Exception:
        LISTENER_ERRORS_TOTAL.inc()
        logger.exception(f"Key chain event listener {listener!r} failed")


class EventNotifier:
    """Registry of listeners for one chain.

    Registrations are kept in an immutable tuple that is replaced on every
    change, so dispatch always walks a stable snapshot.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._registrations: tuple[ListenerRegistration, ...] = ()

    def add(self, listener: KeyChainEventListener, executor: Executor | None = None) -> None:
        """Register a listener.

        Args:
            listener: The observer
            executor: Where callbacks run; USER_THREAD when omitted

        """
        registration = ListenerRegistration(listener, USER_THREAD if executor is None else executor)
        with self._lock:
            self._registrations = (*self._registrations, registration)

    def remove(self, listener: KeyChainEventListener) -> bool:
        """Remove the most recent registration of ``listener``.

        Returns:
            True if a registration was found and removed

        """
        with self._lock:
            registrations = self._registrations
            for i in range(len(registrations) - 1, -1, -1):
                if registrations[i].listener is listener:
                    self._registrations = registrations[:i] + registrations[i + 1 :]
                    return True
        return False

    @property
    def registrations(self) -> tuple[ListenerRegistration, ...]:
        return self._registrations

    def __len__(self) -> int:
        return len(self._registrations)

    def notify_keys_added(self, keys: Sequence[KeyRecord]) -> None:
        """Post one event carrying ``keys`` to every registered listener."""
        if not keys:
            return

        event = KeyAddedEvent(tuple(keys))
        for registration in self._registrations:
            try:
                registration.executor.submit(_deliver, registration.listener, event)
            except RuntimeError as e:
                # Executor already shut down
                LISTENER_ERRORS_TOTAL.inc()
                logger.warning(f"Could not schedule key chain event for {registration.listener!r}: {e}")
