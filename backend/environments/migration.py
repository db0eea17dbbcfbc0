"""
Moves a site from one backend to the other.

The source backend is only read from until the target is up and healthy; a
failed migration destroys whatever was created for the target and leaves the
record's environment, port, config and backend state as they were.
"""
import logging
import os
import shutil
import time
from typing import Callable, Optional

from django.utils import timezone

from websites.config import SiteConfig
from websites.models import Website
from .drivers import BackendDriver, Handle
from .drivers.base import RESOURCE_DIR
from .errors import (
    BackendUnavailable,
    HealthCheckFailed,
    InvalidTransition,
    MigrationFailed,
    OrchestratorError,
    ValidationError,
)
from .health import probe_until
from .lifecycle import late_result_pending

logger = logging.getLogger(__name__)


class MigrationCoordinator:

    def __init__(self, lifecycle, probe_attempts: int = 10, step_retries: int = 2,
                 probe_fn: Callable = probe_until, probe_delay: float = 1.0):
        self.lifecycle = lifecycle
        self.registry = lifecycle.registry
        self.allocator = lifecycle.allocator
        self.probe_attempts = probe_attempts
        self.step_retries = step_retries
        self.probe_fn = probe_fn
        self.probe_delay = probe_delay

    def migrate(self, site_id, target: str, timeout: Optional[float] = None) -> Website:
        with self.lifecycle.hold(site_id):
            record = self.registry.get(site_id)
            if target == record.environment:
                raise ValidationError(f"Site {record.domain} already runs on the {target} backend",
                                      site_id=str(record.pk))
            target_driver = self.lifecycle.driver_for(target)
            source_driver = self.lifecycle.driver_for(record.environment)
            if not target_driver.available():
                raise BackendUnavailable(f"The {target} backend is not available", site_id=str(record.pk))

            if record.status in (Website.STATUS_RUNNING, Website.STATUS_STARTING):
                logger.info(f"Stopping {record.domain} before migrating it to {target}")
                record = self.lifecycle.stop_locked(record)
            if record.status not in (Website.STATUS_STOPPED, Website.STATUS_ERROR):
                raise InvalidTransition(f"Site {record.domain} must be stopped before migrating",
                                        site_id=str(record.pk))
            return self._migrate_locked(record, source_driver, target_driver, target, timeout)

    def _migrate_locked(self, record: Website, source_driver: BackendDriver, target_driver: BackendDriver,
                        target: str, timeout: Optional[float]) -> Website:
        deadline = time.monotonic() + (self.lifecycle.start_timeout if timeout is None else timeout)
        source_handle = source_driver.handle_for(record)
        target_config = SiteConfig.from_dict(record.config).derive_for(target)
        bundle_dir = os.path.join(
            record.root_path, RESOURCE_DIR, 'migration', timezone.now().strftime('%Y%m%d%H%M%S')
        )
        target_handle: Optional[Handle] = None
        port = None
        logger.info(f"Migrating {record.domain} from {record.environment} to {target}")

        try:
            bundle = self._step('export', deadline, source_driver.export, source_handle, bundle_dir)
            target_handle = self._step('provision', deadline, target_driver.provision, record, target_config)
            self._step('import', deadline, target_driver.import_bundle, target_handle, bundle)

            self.registry.transition(record.pk, Website.STATUS_STARTING,
                                     expected=(Website.STATUS_STOPPED, Website.STATUS_ERROR))
            port = self.allocator.reserve()
            info = self.lifecycle.run_start(target_driver, target_handle, port, deadline, destroy=True)
            if not self.probe_fn(info.port, record.domain, host=target_driver.host,
                                 attempts=self.probe_attempts, delay=self.probe_delay):
                raise HealthCheckFailed(f"{record.domain} did not answer on port {info.port} after migration")
        except Exception as exc:
            if late_result_pending(exc):
                # Released by the late-start cleanup once the timed-out start returns
                port = None
            self._rollback(record, target_driver, target_handle, port, exc)
            raise MigrationFailed(
                f"Migration of {record.domain} to {target} failed: {exc}", site_id=str(record.pk)
            ) from exc
        finally:
            shutil.rmtree(bundle_dir, ignore_errors=True)

        migrated = self.registry.transition(
            record.pk,
            Website.STATUS_RUNNING,
            expected=(Website.STATUS_STARTING,),
            environment=target,
            port=info.port,
            preferred_port=info.port,
            config=target_config.to_dict(),
            backend_state=info.state,
            last_accessed=timezone.now(),
        )
        # Freed only after the record points at the target
        self.allocator.release(record.port)
        try:
            source_driver.destroy(source_handle)
        except OrchestratorError as e:
            logger.warning(f"Could not remove {record.environment} resources of {record.domain}: {e}")
        logger.info(f"Migrated {migrated.domain} to {target}, serving on port {info.port}")
        return migrated

    def _step(self, name: str, deadline: float, fn: Callable, *args):
        """Run one migration step on the worker pool, retrying it on failure."""
        attempts = self.step_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self.lifecycle.run(fn, *args, timeout=deadline - time.monotonic())
            except OrchestratorError as e:
                if attempt == attempts or deadline - time.monotonic() <= 0:
                    raise
                logger.warning(f"Migration step {name} failed ({e}), retry {attempt}/{self.step_retries}")

    def _rollback(self, record: Website, target_driver: BackendDriver, target_handle: Optional[Handle],
                  port: Optional[int], exc: Exception) -> None:
        logger.error(f"Migration of {record.domain} failed, rolling back target resources: {exc}")
        if target_handle is not None:
            try:
                target_driver.stop(target_handle)
            except Exception as e:
                logger.warning(f"Stopping {target_driver.name} resources of {record.domain} during rollback failed: {e}")
            try:
                target_driver.destroy(target_handle)
            except Exception as e:
                logger.warning(f"Rollback of {target_driver.name} resources for {record.domain} failed: {e}")
        self.allocator.release(port)
        error = MigrationFailed(f"Migration failed: {exc}", site_id=str(record.pk))
        self.registry.fail(
            record.pk,
            error,
            environment=record.environment,
            port=record.port,
            config=record.config,
            backend_state=record.backend_state,
        )
