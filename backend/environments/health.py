"""
Background reachability checks for running sites.
"""
import http.client
import logging
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Tuple

from django.db import close_old_connections

from websites.models import Website
from .errors import HealthCheckFailed, OrchestratorError

logger = logging.getLogger(__name__)


def probe(port: int, domain: str = 'localhost', host: str = '127.0.0.1', timeout: float = 3.0) -> bool:
    """Return True if an HTTP server answers on ``host:port``.

    Any HTTP response counts: a WordPress error page still proves the site is
    being served.
    """
    connection = http.client.HTTPConnection(host, port, timeout=timeout)
    try:
        connection.request('HEAD', '/', headers={'Host': domain})
        connection.getresponse()
        return True
    except (OSError, http.client.HTTPException):
        return False
    finally:
        connection.close()


def probe_until(port: int, domain: str = 'localhost', host: str = '127.0.0.1', attempts: int = 10,
                timeout: float = 3.0, delay: float = 1.0) -> bool:
    """Probe up to ``attempts`` times, pausing ``delay`` seconds between tries."""
    for attempt in range(attempts):
        if probe(port, domain, host=host, timeout=timeout):
            return True
        if attempt < attempts - 1:
            time.sleep(delay)
    return False


class HealthMonitor:
    """Periodically probes running sites and flags or clears health failures.

    Only ``status`` and the failure diagnostics are written; drivers are never
    called from here.
    """

    def __init__(self, registry, interval: float = 15.0, timeout: float = 3.0, failure_threshold: int = 3,
                 host: str = '127.0.0.1', probe_fn=None):
        self.registry = registry
        self.interval = interval
        self.timeout = timeout
        self.failure_threshold = failure_threshold
        self.host = host
        self.probe_fn = probe_fn or probe
        # site id -> (run marker, consecutive failures)
        self._failures: Dict[str, Tuple[Optional[datetime], int]] = {}
        self._failures_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name='pressdock-health', daemon=True)
        self._thread.start()
        logger.info(f"Health monitor started (every {self.interval:.0f}s)")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self.interval + self.timeout)
            self._thread = None

    def failures(self, site_id) -> int:
        with self._failures_lock:
            return self._failures.get(str(site_id), (None, 0))[1]

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Health sweep failed")
            finally:
                close_old_connections()

    def run_once(self) -> Dict[str, bool]:
        """Probe every eligible site once. Returns site id -> reachable."""
        results = {}
        for record in self.registry.list():
            if not self._eligible(record) or not record.port:
                continue
            site_id = str(record.pk)
            healthy = self.probe_fn(record.port, record.domain, host=self.host, timeout=self.timeout)
            results[site_id] = healthy
            if healthy:
                self._record_success(record)
            else:
                self._record_failure(record)
        self._prune(results)
        return results

    def _prune(self, probed) -> None:
        """Forget counters of sites that are stopped, deleted or otherwise not probed."""
        with self._failures_lock:
            for site_id in list(self._failures):
                if site_id not in probed:
                    del self._failures[site_id]

    def _eligible(self, record: Website) -> bool:
        if record.status == Website.STATUS_RUNNING:
            return True
        return record.status == Website.STATUS_ERROR and record.status_reason == HealthCheckFailed.code

    def _record_success(self, record: Website) -> None:
        with self._failures_lock:
            self._failures.pop(str(record.pk), None)
        if record.status != Website.STATUS_ERROR:
            return

        def recover(current: Website):
            if current.status != Website.STATUS_ERROR or current.status_reason != HealthCheckFailed.code:
                return None
            return {'status': Website.STATUS_RUNNING, 'status_reason': '', 'error_message': ''}

        try:
            updated = self.registry.update(record.pk, recover)
        except OrchestratorError as e:
            logger.warning(f"Could not clear health failure of {record.domain}: {e}")
            return
        if updated.status == Website.STATUS_RUNNING:
            logger.info(f"Site {record.domain} reachable again, back to running")

    def _record_failure(self, record: Website) -> None:
        site_id = str(record.pk)
        # Each start stamps last_accessed, so failures from an earlier run do not carry over
        marker = record.last_accessed
        with self._failures_lock:
            previous, count = self._failures.get(site_id, (marker, 0))
            count = count + 1 if previous == marker else 1
            self._failures[site_id] = (marker, count)
        logger.debug(f"Health probe failed for {record.domain} ({count}/{self.failure_threshold})")
        if count < self.failure_threshold or record.status != Website.STATUS_RUNNING:
            return

        reason = f"{record.domain} unreachable on port {record.port} after {count} consecutive probes"

        def mark_failed(current: Website):
            if current.status != Website.STATUS_RUNNING:
                return None
            return {
                'status': Website.STATUS_ERROR,
                'status_reason': HealthCheckFailed.code,
                'error_message': reason,
            }

        try:
            updated = self.registry.update(record.pk, mark_failed)
        except OrchestratorError as e:
            logger.warning(f"Could not flag health failure of {record.domain}: {e}")
            return
        if updated.status == Website.STATUS_ERROR:
            logger.warning(f"Site {record.domain} failed health checks: {reason}")
