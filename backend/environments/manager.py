"""
Environment manager: the API surface the desktop UI talks to.

One instance is built at startup (see ``EnvironmentsConfig``), reconciles the
registry with the OS, starts the health monitor and then serves requests.
"""
import logging
import os
import re
import shutil
import threading
from pathlib import Path
from typing import Dict, List, Optional

from django.conf import settings

from websites.config import ENVIRONMENT_CONTAINER, ENVIRONMENT_LOCAL, SiteConfig
from websites.models import Website
from websites.registry import SiteRegistry
from websites.serializers import SiteCreateSerializer
from .drivers import BackendDriver, drivers_from_settings
from .errors import BackendUnavailable, DuplicateDomain, ValidationError
from .health import HealthMonitor
from .lifecycle import SiteLifecycle
from .migration import MigrationCoordinator
from .ports import PortAllocator
from .utils import detect_docker, detect_php

logger = logging.getLogger(__name__)

ENVIRONMENTS = (ENVIRONMENT_LOCAL, ENVIRONMENT_CONTAINER)


def slugify_domain(name: str) -> str:
    """Default domain for a site name: ``My Shop`` -> ``my-shop.local``."""
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')
    return f"{slug or 'site'}.local"


class EnvironmentManager:

    def __init__(self, registry: SiteRegistry, allocator: PortAllocator, drivers: Dict[str, BackendDriver],
                 lifecycle: SiteLifecycle, migrations: MigrationCoordinator, monitor: HealthMonitor,
                 default_environment: str = ENVIRONMENT_LOCAL, php_binary: str = 'php',
                 docker_binary: str = 'docker'):
        self.registry = registry
        self.allocator = allocator
        self.drivers = drivers
        self.lifecycle = lifecycle
        self.migrations = migrations
        self.monitor = monitor
        self.default_environment = default_environment
        self.php_binary = php_binary
        self.docker_binary = docker_binary
        self._started = False
        self._start_lock = threading.Lock()

    @classmethod
    def from_settings(cls) -> 'EnvironmentManager':
        registry = SiteRegistry(settings.PRESSDOCK_SITES_ROOT)
        allocator = PortAllocator(
            settings.PRESSDOCK_PORT_RANGE_START,
            settings.PRESSDOCK_PORT_RANGE_END,
            host=settings.PRESSDOCK_BIND_HOST,
        )
        drivers = drivers_from_settings()
        lifecycle = SiteLifecycle(
            registry, allocator, drivers,
            start_timeout=settings.PRESSDOCK_START_TIMEOUT,
            workers=settings.PRESSDOCK_WORKERS,
        )
        migrations = MigrationCoordinator(
            lifecycle,
            probe_attempts=settings.PRESSDOCK_MIGRATION_PROBE_ATTEMPTS,
            step_retries=settings.PRESSDOCK_MIGRATION_STEP_RETRIES,
        )
        monitor = HealthMonitor(
            registry,
            interval=settings.PRESSDOCK_HEALTH_INTERVAL,
            timeout=settings.PRESSDOCK_HEALTH_TIMEOUT,
            failure_threshold=settings.PRESSDOCK_HEALTH_FAILURE_THRESHOLD,
            host=settings.PRESSDOCK_BIND_HOST,
        )
        return cls(
            registry, allocator, drivers, lifecycle, migrations, monitor,
            default_environment=settings.PRESSDOCK_DEFAULT_ENVIRONMENT,
            php_binary=settings.PRESSDOCK_PHP_BINARY,
            docker_binary=settings.PRESSDOCK_DOCKER_BINARY,
        )

    def start(self, monitor: bool = True) -> dict:
        """Reconcile persisted records with the OS, then begin health monitoring."""
        with self._start_lock:
            if self._started:
                return {}
            os.makedirs(self.registry.sites_root, exist_ok=True)
            summary = self.registry.reconcile(self.drivers, self.allocator)
            if monitor:
                self.monitor.start()
            self._started = True
            return summary

    def shutdown(self) -> None:
        self.monitor.stop()
        self.lifecycle.shutdown()

    # environment.*

    def get_capabilities(self) -> dict:
        php = detect_php(self.php_binary)
        docker = detect_docker(self.docker_binary)
        return {
            ENVIRONMENT_LOCAL: {
                'available': php['available'],
                'preferred': not docker['available'] or not php['available'],
                'version': php['version'],
                'description': (
                    f"Local PHP {php['version']} + built-in server" if php['available']
                    else "Local PHP not available - install PHP"
                ),
            },
            ENVIRONMENT_CONTAINER: {
                'available': docker['available'],
                'preferred': docker['available'],
                'version': docker['version'],
                'description': (
                    "Docker containers with web server + PHP-FPM + database" if docker['available']
                    else "Docker not available - install Docker with the compose plugin"
                ),
            },
        }

    def get_current_environment(self) -> str:
        return self.default_environment

    def switch_environment(self, target: str) -> str:
        """Change the backend used for new sites; existing sites are not touched."""
        if target not in ENVIRONMENTS:
            raise ValidationError(f"Unknown environment {target}")
        if not self.lifecycle.driver_for(target).available():
            raise BackendUnavailable(f"The {target} backend is not available")
        self.default_environment = target
        logger.info(f"Default environment for new sites is now {target}")
        return target

    # sites.*

    def list_sites(self) -> List[Website]:
        return self.registry.list()

    def get_site(self, site_id) -> Website:
        return self.registry.get(site_id)

    def create_site(self, data: dict) -> Website:
        serializer = SiteCreateSerializer(data=data)
        if not serializer.is_valid():
            raise ValidationError('Invalid site configuration', fields=serializer.errors)
        values = serializer.validated_data
        environment = values.get('environment') or self.default_environment
        domain = (values.get('domain') or slugify_domain(values['name'])).lower()
        if self.registry.exists_domain(domain):
            raise DuplicateDomain(f"A site with domain {domain} already exists")
        config = SiteConfig.resolve(values, environment)

        port = self.allocator.reserve(preferred=values.get('port'))
        try:
            record = self.registry.create(values['name'], domain, environment, config.to_dict(), port=port)
        except Exception:
            self.allocator.release(port)
            raise
        os.makedirs(record.content_path, exist_ok=True)
        return record

    def start_site(self, site_id, timeout: Optional[float] = None) -> Website:
        return self.lifecycle.start(site_id, timeout=timeout)

    def stop_site(self, site_id) -> Website:
        return self.lifecycle.stop(site_id)

    def delete_site(self, site_id, delete_files: bool = False) -> None:
        with self.lifecycle.hold(site_id):
            record = self.registry.get(site_id)
            if record.status != Website.STATUS_STOPPED:
                record = self.lifecycle.stop_locked(record)
            driver = self.drivers.get(record.environment)
            if driver is not None and record.backend_state:
                driver.destroy(driver.handle_for(record))
            self.allocator.release(record.port)
            self.registry.remove(record.pk)
            if delete_files:
                self._remove_site_dir(record)
        self.lifecycle.forget(site_id)
        logger.info(f"Deleted site {record.domain}")

    def clone_site(self, site_id, new_name: str) -> Website:
        domain = slugify_domain(new_name)
        if self.registry.exists_domain(domain):
            raise DuplicateDomain(f"A site with domain {domain} already exists")
        with self.lifecycle.hold(site_id):
            source = self.registry.get(site_id)
            driver = self.lifecycle.driver_for(source.environment)
            port = self.allocator.reserve()
            try:
                clone = self.registry.create(new_name, domain, source.environment, source.config, port=port)
            except Exception:
                self.allocator.release(port)
                raise
            try:
                os.makedirs(clone.content_path, exist_ok=True)
                if os.path.isdir(source.content_path):
                    shutil.copytree(source.content_path, clone.content_path, dirs_exist_ok=True)
                handle = self.lifecycle.run(driver.clone, driver.handle_for(source), clone)
            except Exception as exc:
                logger.error(f"Cloning {source.domain} failed: {exc}")
                self.allocator.release(port)
                self.registry.remove(clone.pk)
                shutil.rmtree(clone.root_path, ignore_errors=True)
                raise
            clone = self.registry.update(clone.pk, lambda record: {'backend_state': handle.state})
        logger.info(f"Cloned {source.domain} to {clone.domain}")
        return clone

    def migrate_site(self, site_id, target: str, timeout: Optional[float] = None) -> Website:
        if target not in ENVIRONMENTS:
            raise ValidationError(f"Unknown environment {target}")
        return self.migrations.migrate(site_id, target, timeout=timeout)

    def _remove_site_dir(self, record: Website) -> None:
        path = Path(record.root_path).resolve()
        root = Path(self.registry.sites_root).resolve()
        if not path.is_relative_to(root) or path == root or path.name != record.domain:
            logger.error(f"Refusing to remove unsafe site path {path}")
            return
        shutil.rmtree(path, ignore_errors=True)
        logger.info(f"Removed site directory {path}")
