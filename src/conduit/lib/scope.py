"""Release capability and exactly-once scoped cleanup.

Everything the harness tears down is released through one operation,
``aclose()``. Objects that only offer ``close()`` (sync or async) are
wrapped once by ``as_releasable`` so callers never inspect which flavour a
component supports.

``ScopedResourceGuard`` starts several resources concurrently and
guarantees their release exactly once when the scope exits, however it
exits. If only some resources started, only those are released.

Examples:
    Start two server sessions and dispose both on exit::

        >>> async with ScopedResourceGuard([time_server, fs_server]) as guard:
        ...     await do_work()
        >>> guard.cleanup_errors
        []
"""

import asyncio
import inspect
import logging
import threading
from collections.abc import Sequence
from types import TracebackType
from typing import Generic, Protocol, Self, TypeVar, runtime_checkable

from conduit.lib.errors import InvalidStateError

logger = logging.getLogger(__name__)


@runtime_checkable
class Releasable(Protocol):
    """Anything that can give its resources back."""

    async def aclose(self) -> None: ...


class Startable(Releasable, Protocol):
    """A releasable resource with an async start step."""

    async def start(self) -> object: ...


class _CloseAdapter:
    """Presents a ``close()``-only object as ``Releasable``."""

    def __init__(self, target: object) -> None:
        self.target = target

    async def aclose(self) -> None:
        close = getattr(self.target, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


def as_releasable(resource: object) -> Releasable:
    """Return ``resource`` itself if it has ``aclose()``, else a close() adapter.

    Objects with neither method release as a no-op.
    """
    if isinstance(resource, Releasable):
        return resource
    return _CloseAdapter(resource)


R = TypeVar("R", bound=Startable)


class ScopedResourceGuard(Generic[R]):
    """Start resources together, release them exactly once.

    Acquisition runs when the scope is entered (``async with`` or an
    explicit ``acquire()``). Cleanup failures never replace the exception
    that is ending the scope: they are logged, kept in ``cleanup_errors``
    and attached to that exception as notes.
    """

    def __init__(self, resources: Sequence[R]) -> None:
        self.resources = list(resources)
        self.acquired: list[R] = []
        self.cleanup_errors: list[Exception] = []
        self._lock = threading.Lock()
        self._entered = False
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def acquire(self) -> Self:
        """Start every resource concurrently and wait for all of them.

        Raises:
            InvalidStateError: If the guard was already entered.
            Exception: The first start failure, after releasing whatever
                did start. Further failures are attached as notes.
        """
        with self._lock:
            if self._entered:
                raise InvalidStateError("Scope already acquired.")
            self._entered = True

        logger.info("Starting %d resources", len(self.resources))

        async def start_one(resource: R) -> None:
            await resource.start()
            self.acquired.append(resource)

        try:
            results = await asyncio.gather(
                *(start_one(r) for r in self.resources), return_exceptions=True
            )
        except BaseException as e:
            await self.release(e)
            raise

        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            primary = failures[0]
            for other in failures[1:]:
                primary.add_note(f"another resource also failed to start: {other!r}")
            logger.error(
                "%d of %d resources failed to start", len(failures), len(self.resources)
            )
            await self.release(primary)
            raise primary

        logger.info("All %d resources started", len(self.resources))
        return self

    async def release(self, primary: BaseException | None = None) -> None:
        """Release acquired resources in reverse order. Runs at most once."""
        with self._lock:
            if self._released:
                return
            self._released = True

        for resource in reversed(self.acquired):
            try:
                await as_releasable(resource).aclose()
            except Exception as e:
                logger.exception("Cleanup failed for %r", resource)
                self.cleanup_errors.append(e)

        if primary is not None:
            for error in self.cleanup_errors:
                primary.add_note(f"cleanup also failed: {error!r}")
        logger.info("Released %d resources", len(self.acquired))

    async def __aenter__(self) -> Self:
        return await self.acquire()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.release(exc_val)
