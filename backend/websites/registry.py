"""
Site registry: the durable catalog of site records.

All writes go through ``update``, a compare-and-swap on ``Website.version`` so
that a health-check write and a user-triggered transition never overwrite each
other. The mutation is re-applied to the fresh record when the swap loses.
"""
import logging
import os
import threading
from typing import Callable, Dict, List, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError
from django.db.models import F
from django.utils import timezone

from environments.errors import (
    DuplicateDomain,
    InvalidTransition,
    OperationInProgress,
    OrchestratorError,
    OrphanedAfterRestart,
    SiteNotFound,
)
from .models import Website

logger = logging.getLogger(__name__)

# Legal status edges; any status may also move to error
TRANSITIONS = {
    Website.STATUS_STOPPED: {Website.STATUS_STARTING},
    Website.STATUS_STARTING: {Website.STATUS_RUNNING, Website.STATUS_STOPPING},
    Website.STATUS_RUNNING: {Website.STATUS_STOPPING},
    Website.STATUS_STOPPING: {Website.STATUS_STOPPED},
    Website.STATUS_ERROR: {Website.STATUS_STARTING, Website.STATUS_STOPPING, Website.STATUS_RUNNING},
}

Mutation = Callable[[Website], Optional[Dict]]


def can_transition(current: str, target: str) -> bool:
    if target == Website.STATUS_ERROR:
        return True
    return target in TRANSITIONS.get(current, set())


class SiteRegistry:
    """Catalog of site records backed by the Django database."""

    MAX_CAS_ATTEMPTS = 10

    def __init__(self, sites_root: str):
        self.sites_root = sites_root
        self._create_lock = threading.Lock()

    def get(self, site_id) -> Website:
        try:
            return Website.objects.get(pk=site_id)
        except (Website.DoesNotExist, DjangoValidationError, ValueError):
            raise SiteNotFound(f"Site {site_id} not found", site_id=str(site_id))

    def list(self) -> List[Website]:
        return list(Website.objects.all())

    def exists_domain(self, domain: str) -> bool:
        return Website.objects.filter(domain__iexact=domain).exists()

    def site_path(self, domain: str) -> str:
        return os.path.join(self.sites_root, domain)

    def create(self, name: str, domain: str, environment: str, config: dict,
               port: Optional[int] = None) -> Website:
        """Insert a new stopped record. Raises DuplicateDomain."""
        with self._create_lock:
            if self.exists_domain(domain):
                raise DuplicateDomain(f"A site with domain {domain} already exists")
            try:
                website = Website.objects.create(
                    name=name,
                    domain=domain,
                    environment=environment,
                    status=Website.STATUS_STOPPED,
                    port=port,
                    preferred_port=port,
                    config=config,
                    root_path=self.site_path(domain),
                )
            except IntegrityError:
                raise DuplicateDomain(f"A site with domain {domain} already exists")
        logger.info(f"Registered site {website.domain} ({website.id}) in {environment} environment")
        return website

    def update(self, site_id, mutation: Mutation) -> Website:
        """Apply ``mutation`` with compare-and-swap semantics.

        ``mutation`` receives the current record and returns a dict of field
        changes, or None to leave the record alone. It may raise to abort.
        """
        for attempt in range(self.MAX_CAS_ATTEMPTS):
            record = self.get(site_id)
            changes = mutation(record)
            if not changes:
                return record
            rows = Website.objects.filter(pk=record.pk, version=record.version).update(
                version=F('version') + 1,
                updated_at=timezone.now(),
                **changes
            )
            if rows == 1:
                return self.get(site_id)
            logger.debug(f"CAS conflict on site {site_id} (attempt {attempt + 1}), retrying")
        raise OperationInProgress(f"Site {site_id} is being modified concurrently", site_id=str(site_id))

    def transition(self, site_id, target: str, expected: Optional[tuple] = None, **changes) -> Website:
        """Move a record to ``target`` status along a legal edge."""
        def mutation(record: Website) -> dict:
            if expected is not None and record.status not in expected:
                raise InvalidTransition(
                    f"Site {record.domain} is {record.status}, expected one of {', '.join(expected)}",
                    site_id=str(record.pk),
                )
            if not can_transition(record.status, target):
                raise InvalidTransition(
                    f"Cannot move site {record.domain} from {record.status} to {target}",
                    site_id=str(record.pk),
                )
            update = {'status': target}
            if target != Website.STATUS_ERROR:
                update['status_reason'] = ''
                update['error_message'] = ''
            update.update(changes)
            return update

        record = self.update(site_id, mutation)
        logger.debug(f"Site {record.domain} -> {record.status}")
        return record

    def fail(self, site_id, error: OrchestratorError, **changes) -> Website:
        """Move a record to the error status with ``error`` attached."""
        return self.transition(
            site_id,
            Website.STATUS_ERROR,
            status_reason=error.code,
            error_message=error.reason,
            **changes
        )

    def touch(self, site_id) -> Website:
        return self.update(site_id, lambda record: {'last_accessed': timezone.now()})

    def remove(self, site_id) -> bool:
        deleted, _ = Website.objects.filter(pk=site_id).delete()
        if deleted:
            logger.info(f"Removed site {site_id} from registry")
        return bool(deleted)

    def reconcile(self, drivers: dict, allocator) -> Dict[str, List[str]]:
        """Align persisted records with the processes and containers that actually exist.

        Must run before the registry serves requests after a restart.
        """
        summary = {'kept': [], 'orphaned': [], 'stopped': []}
        for record in self.list():
            driver = drivers.get(record.environment)
            if record.status in Website.ACTIVE_STATUSES:
                if self._is_alive(driver, record):
                    if record.port:
                        allocator.claim(record.port)
                    summary['kept'].append(str(record.pk))
                    continue
                error = OrphanedAfterRestart(
                    f"No running {record.environment} resources found for {record.domain} after restart",
                    site_id=str(record.pk),
                )
                self.fail(record.pk, error, port=None)
                summary['orphaned'].append(str(record.pk))
                logger.warning(f"Site {record.domain} orphaned after restart")
            elif record.status == Website.STATUS_STOPPING:
                if driver is not None:
                    try:
                        driver.stop(driver.handle_for(record))
                    except OrchestratorError as e:
                        logger.warning(f"Teardown of {record.domain} during reconciliation failed: {e}")
                self.transition(record.pk, Website.STATUS_STOPPED, port=None)
                summary['stopped'].append(str(record.pk))
            elif record.port:
                allocator.claim(record.port)
        logger.info(
            f"Reconciliation finished: {len(summary['kept'])} kept, "
            f"{len(summary['orphaned'])} orphaned, {len(summary['stopped'])} stopped"
        )
        return summary

    def _is_alive(self, driver, record: Website) -> bool:
        if driver is None:
            return False
        try:
            return driver.is_running(driver.handle_for(record))
        except OrchestratorError as e:
            logger.warning(f"Could not inspect {record.domain}: {e}")
            return False
