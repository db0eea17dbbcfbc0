"""
Per-site lifecycle state machine.

Operations on one site are serialized by a per-site lock that is taken without
blocking: a second start/stop while one is in flight fails fast with
OperationInProgress. Driver calls run on a worker pool and are awaited with a
timeout.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from contextlib import contextmanager
from typing import Callable, Dict, Optional

from django.utils import timezone

from websites.models import Website
from .drivers import BackendDriver, Handle
from .errors import (
    BackendUnavailable,
    InvalidTransition,
    OperationInProgress,
    OrchestratorError,
    PortConflict,
    ProcessSpawnFailure,
    StartTimeout,
)

logger = logging.getLogger(__name__)


def late_result_pending(exc: Exception) -> bool:
    """Whether ``exc`` is a start timeout whose late result still owns its port."""
    return isinstance(exc, StartTimeout) and exc.late_result_pending


class SiteLifecycle:
    """Drives site records through stopped -> starting -> running -> stopping -> stopped."""

    def __init__(self, registry, allocator, drivers: Dict[str, BackendDriver],
                 start_timeout: float = 120.0, workers: int = 8):
        self.registry = registry
        self.allocator = allocator
        self.drivers = drivers
        self.start_timeout = start_timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='pressdock-site')

    def _lock_for(self, site_id) -> threading.Lock:
        key = str(site_id)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, site_id):
        """Hold the site's lock for the duration of an operation."""
        lock = self._lock_for(site_id)
        if not lock.acquire(blocking=False):
            raise OperationInProgress(f"Another operation is running on site {site_id}", site_id=str(site_id))
        try:
            yield
        finally:
            lock.release()

    def is_busy(self, site_id) -> bool:
        return self._lock_for(site_id).locked()

    def forget(self, site_id) -> None:
        with self._locks_guard:
            self._locks.pop(str(site_id), None)

    def driver_for(self, environment: str) -> BackendDriver:
        driver = self.drivers.get(environment)
        if driver is None:
            raise BackendUnavailable(f"No driver for environment {environment}")
        return driver

    def run(self, fn: Callable, *args, timeout: Optional[float] = None,
            on_late_result: Optional[Callable[[Future], None]] = None):
        """Run a blocking driver call on the worker pool, bounded by ``timeout``."""
        timeout = self.start_timeout if timeout is None else timeout
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=max(timeout, 0))
        except FuturesTimeout:
            error = StartTimeout(f"{getattr(fn, '__name__', 'operation')} did not finish within {timeout:.0f}s")
            if on_late_result is not None:
                error.late_result_pending = True
                future.add_done_callback(on_late_result)
            raise error

    def run_start(self, driver: BackendDriver, handle: Handle, port: int, deadline: float,
                  destroy: bool = False):
        """Call ``driver.start`` on the worker pool until ``deadline``.

        On timeout the port stays reserved until the late result has been
        handled: a late success is torn down (and destroyed when ``destroy``),
        then the port is released.
        """
        return self.run(driver.start, handle, port, timeout=deadline - time.monotonic(),
                        on_late_result=self._late_start_cleanup(driver, handle, port, destroy))

    def start(self, site_id, timeout: Optional[float] = None) -> Website:
        with self.hold(site_id):
            record = self.registry.get(site_id)
            if record.status in (Website.STATUS_STARTING, Website.STATUS_STOPPING):
                raise OperationInProgress(f"Site {record.domain} is {record.status}", site_id=str(record.pk))
            if record.status not in (Website.STATUS_STOPPED, Website.STATUS_ERROR):
                raise InvalidTransition(f"Site {record.domain} is already {record.status}", site_id=str(record.pk))
            driver = self.driver_for(record.environment)
            if not driver.available():
                raise BackendUnavailable(
                    f"The {record.environment} backend is not available", site_id=str(record.pk)
                )
            return self.start_locked(record, driver, timeout)

    def start_locked(self, record: Website, driver: BackendDriver, timeout: Optional[float] = None) -> Website:
        """Start a record whose lock the caller already holds."""
        deadline = time.monotonic() + (self.start_timeout if timeout is None else timeout)
        record = self.registry.transition(
            record.pk, Website.STATUS_STARTING, expected=(Website.STATUS_STOPPED, Website.STATUS_ERROR)
        )
        logger.info(f"Starting {record.domain} on {record.environment} backend")
        port = None
        handle: Optional[Handle] = None
        try:
            port = record.port or self.allocator.reserve(preferred=record.preferred_port)
            if record.backend_state:
                handle = driver.handle_for(record)
            else:
                handle = self.run(driver.provision, record, timeout=deadline - time.monotonic())
            try:
                info = self.run_start(driver, handle, port, deadline)
            except PortConflict:
                logger.warning(f"Port {port} taken while starting {record.domain}, retrying on a new port")
                failed_port = port
                self.allocator.release(failed_port)
                port = None
                port = self.allocator.reserve(exclude={failed_port})
                info = self.run_start(driver, handle, port, deadline)
        except Exception as exc:
            error = exc if isinstance(exc, OrchestratorError) else ProcessSpawnFailure(str(exc))
            logger.error(f"Failed to start {record.domain}: {error.code}: {error.reason}")
            if handle is not None:
                self._best_effort_stop(driver, handle)
            if not late_result_pending(exc):
                self.allocator.release(port)
            self.registry.fail(
                record.pk, error, port=None,
                backend_state=handle.state if handle is not None else record.backend_state,
            )
            if error is exc:
                raise
            raise error from exc

        record = self.registry.transition(
            record.pk,
            Website.STATUS_RUNNING,
            expected=(Website.STATUS_STARTING,),
            port=info.port,
            preferred_port=info.port,
            backend_state=info.state,
            last_accessed=timezone.now(),
        )
        logger.info(f"Site {record.domain} running at {info.url}")
        return record

    def stop(self, site_id) -> Website:
        with self.hold(site_id):
            record = self.registry.get(site_id)
            if record.status == Website.STATUS_STOPPED:
                return record
            return self.stop_locked(record)

    def stop_locked(self, record: Website) -> Website:
        """Stop a record whose lock the caller already holds.

        Teardown errors are logged; the record always ends stopped.
        """
        if record.status != Website.STATUS_STOPPING:
            record = self.registry.transition(record.pk, Website.STATUS_STOPPING)
        logger.info(f"Stopping {record.domain}")
        driver = self.drivers.get(record.environment)
        backend_state = record.backend_state
        if driver is not None:
            handle = driver.handle_for(record)
            self._best_effort_stop(driver, handle)
            backend_state = handle.state
        self.allocator.release(record.port)
        return self.registry.transition(
            record.pk, Website.STATUS_STOPPED, port=None, backend_state=backend_state
        )

    def _best_effort_stop(self, driver: BackendDriver, handle: Handle) -> None:
        try:
            self.run(driver.stop, handle)
        except Exception as e:
            logger.warning(f"Teardown of {handle.domain} on {driver.name} backend failed: {e}")

    def _late_start_cleanup(self, driver: BackendDriver, handle: Handle, port: Optional[int],
                            destroy: bool = False) -> Callable[[Future], None]:
        def cleanup(future: Future) -> None:
            try:
                if future.cancelled() or future.exception() is not None:
                    return
                logger.warning(f"Timed-out start of {handle.domain} completed late, tearing it down")
                try:
                    driver.stop(handle)
                except Exception as e:
                    logger.warning(f"Late teardown of {handle.domain} failed: {e}")
                if destroy:
                    try:
                        driver.destroy(handle)
                    except Exception as e:
                        logger.warning(f"Late removal of {handle.domain} resources failed: {e}")
            finally:
                self.allocator.release(port)
        return cleanup

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
