"""
Tests for environments app.
"""
import os
import shutil
import socket
import subprocess
import tempfile
import threading
import time
from unittest.mock import patch, MagicMock

import psutil
from django.apps import apps
from django.db import connection
from django.test import TestCase, TransactionTestCase
from rest_framework.test import APIClient

from websites.config import ENGINE_MYSQL, ENGINE_SQLITE, WEB_SERVER_APACHE, SiteConfig
from websites.models import Website
from websites.registry import SiteRegistry
from .commands import CommandExecutor
from .drivers import BackendDriver, ContainerDriver, LocalDriver, RunningInfo
from .drivers.container import render_nginx_config
from .errors import (
    BackendUnavailable,
    DuplicateDomain,
    InvalidTransition,
    MigrationFailed,
    OperationInProgress,
    PortConflict,
    PortsExhausted,
    ProcessSpawnFailure,
    SiteNotFound,
    StartTimeout,
    ValidationError,
)
from .health import HealthMonitor
from .lifecycle import SiteLifecycle
from .manager import EnvironmentManager, slugify_domain
from .migration import MigrationCoordinator
from .ports import PortAllocator, is_port_free
from .utils import detect_docker, detect_php


class FakeDriver(BackendDriver):
    """In-memory backend that records every call made to it."""

    def __init__(self, name='local', available=True):
        self.name = name
        self.is_available = available
        self.calls = []
        self.running = set()
        self.start_errors = []
        self.start_gate = None
        self.start_entered = threading.Event()
        self.loaded = []

    def available(self):
        return self.is_available

    def provision(self, record, config=None):
        self.calls.append(('provision', str(record.pk)))
        handle = self.handle_for(record, config)
        handle.state = {'backend': self.name}
        os.makedirs(handle.resource_dir, exist_ok=True)
        return handle

    def start(self, handle, port):
        self.calls.append(('start', handle.site_id, port))
        self.start_entered.set()
        if self.start_gate is not None:
            self.start_gate.wait(5)
        if self.start_errors:
            error = self.start_errors.pop(0)
            if error is not None:
                raise error
        self.running.add(handle.site_id)
        handle.state['port'] = port
        return RunningInfo(port=port, url=self.site_url(port), state=dict(handle.state))

    def stop(self, handle):
        self.calls.append(('stop', handle.site_id))
        self.running.discard(handle.site_id)
        handle.state.pop('port', None)

    def destroy(self, handle):
        self.calls.append(('destroy', handle.site_id))
        self.running.discard(handle.site_id)
        shutil.rmtree(handle.resource_dir, ignore_errors=True)
        handle.state.clear()

    def is_running(self, handle):
        return handle.site_id in self.running

    def dump_database(self, handle, dump_path):
        with open(dump_path, 'w') as f:
            f.write(f"-- dump of {handle.domain}\n")

    def load_database(self, handle, dump_path):
        self.loaded.append(handle.site_id)

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


def always(result):
    return lambda *args, **kwargs: result


def build_manager(sites_root, drivers, start_timeout=5.0, probe_fn=None, port_range=(18100, 18199)):
    registry = SiteRegistry(sites_root)
    allocator = PortAllocator(*port_range)
    lifecycle = SiteLifecycle(registry, allocator, drivers, start_timeout=start_timeout, workers=4)
    migrations = MigrationCoordinator(
        lifecycle, probe_attempts=1, step_retries=1, probe_fn=probe_fn or always(True), probe_delay=0
    )
    monitor = HealthMonitor(registry, probe_fn=always(True))
    return EnvironmentManager(registry, allocator, drivers, lifecycle, migrations, monitor)


class OrchestratorMixin:
    """Manager wired to fake local and container drivers in a temporary sites root."""

    def setUp(self):
        self.sites_root = tempfile.mkdtemp(prefix='pressdock-test-')
        self.local = FakeDriver('local')
        self.container = FakeDriver('container')
        self.manager = build_manager(self.sites_root, {'local': self.local, 'container': self.container})
        self.registry = self.manager.registry
        self.allocator = self.manager.allocator
        self.lifecycle = self.manager.lifecycle

    def tearDown(self):
        self.manager.shutdown()
        shutil.rmtree(self.sites_root, ignore_errors=True)

    def make_site(self, name='Shop', environment='local', **data):
        return self.manager.create_site(dict(name=name, environment=environment, **data))

    def wait_until(self, predicate, timeout=5.0):
        """Poll ``predicate`` until it holds; fail the test after ``timeout`` seconds."""
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                self.fail('Condition not reached in time')
            time.sleep(0.02)


class OrchestratorTestCase(OrchestratorMixin, TestCase):
    pass


class PortAllocatorTest(TestCase):
    """Test port allocation."""

    def free_port(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(('127.0.0.1', 0))
            return sock.getsockname()[1]

    def test_skips_port_bound_by_other_process(self):
        """A port bound outside the allocator is never handed out."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(('127.0.0.1', 0))
        busy = sock.getsockname()[1]
        try:
            self.assertFalse(is_port_free(busy))
            allocator = PortAllocator(busy, busy + 5)
            port = allocator.reserve(preferred=busy)
            self.assertNotEqual(port, busy)
        finally:
            sock.close()

    def test_preferred_port_used_when_free(self):
        port = self.free_port()
        allocator = PortAllocator(18200, 18299)
        self.assertEqual(allocator.reserve(preferred=port), port)
        self.assertIn(port, allocator.reserved())

    def test_exhausted(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(('127.0.0.1', 0))
        busy = sock.getsockname()[1]
        try:
            allocator = PortAllocator(busy, busy)
            with self.assertRaises(PortsExhausted):
                allocator.reserve()
        finally:
            sock.close()

    def test_release_and_exclude(self):
        allocator = PortAllocator(18300, 18399)
        first = allocator.reserve()
        allocator.release(first)
        self.assertNotIn(first, allocator.reserved())
        second = allocator.reserve(exclude={first})
        self.assertNotEqual(first, second)

    def test_concurrent_reservations_are_unique(self):
        """Ports handed to concurrent callers never collide."""
        allocator = PortAllocator(18400, 18499)
        results = []
        results_lock = threading.Lock()

        def worker():
            port = allocator.reserve()
            with results_lock:
                results.append(port)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(results), 20)
        self.assertEqual(len(set(results)), 20)


class LifecycleTest(OrchestratorTestCase):
    """Test start/stop state machine."""

    def test_start_and_stop(self):
        site = self.make_site()
        reserved = site.port
        site = self.manager.start_site(site.pk)
        self.assertEqual(site.status, Website.STATUS_RUNNING)
        self.assertEqual(site.port, reserved)
        self.assertEqual(site.url, f"http://localhost:{reserved}")
        self.assertIsNotNone(site.last_accessed)
        self.assertEqual(len(self.local.called('provision')), 1)

        site = self.manager.stop_site(site.pk)
        self.assertEqual(site.status, Website.STATUS_STOPPED)
        self.assertIsNone(site.port)
        self.assertEqual(site.preferred_port, reserved)
        self.assertNotIn(reserved, self.allocator.reserved())

    def test_restart_does_not_provision_again(self):
        site = self.make_site()
        self.manager.start_site(site.pk)
        self.manager.stop_site(site.pk)
        self.manager.start_site(site.pk)
        self.assertEqual(len(self.local.called('provision')), 1)
        self.assertEqual(len(self.local.called('start')), 2)

    def test_stop_stopped_site_is_noop(self):
        site = self.make_site()
        version = site.version
        site = self.manager.stop_site(site.pk)
        self.assertEqual(site.status, Website.STATUS_STOPPED)
        self.assertEqual(site.version, version)
        self.assertEqual(self.local.calls, [])

    def test_start_running_site_rejected(self):
        site = self.make_site()
        self.manager.start_site(site.pk)
        with self.assertRaises(InvalidTransition):
            self.manager.start_site(site.pk)

    def test_backend_unavailable_leaves_record_untouched(self):
        self.container.is_available = False
        site = self.make_site(environment='container')
        with self.assertRaises(BackendUnavailable):
            self.manager.start_site(site.pk)
        site.refresh_from_db()
        self.assertEqual(site.status, Website.STATUS_STOPPED)
        self.assertEqual(self.container.calls, [])

    def test_port_conflict_retries_on_new_port(self):
        site = self.make_site()
        self.local.start_errors = [PortConflict('busy')]
        site = self.manager.start_site(site.pk)
        starts = self.local.called('start')
        self.assertEqual(len(starts), 2)
        self.assertEqual(site.status, Website.STATUS_RUNNING)
        self.assertEqual(site.port, starts[1][2])
        self.assertNotEqual(starts[0][2], starts[1][2])
        self.assertNotIn(starts[0][2], self.allocator.reserved())

    def test_spawn_failure_puts_site_in_error(self):
        site = self.make_site()
        self.local.start_errors = [ProcessSpawnFailure('php exited')]
        with self.assertRaises(ProcessSpawnFailure):
            self.manager.start_site(site.pk)
        site.refresh_from_db()
        self.assertEqual(site.status, Website.STATUS_ERROR)
        self.assertEqual(site.status_reason, 'ProcessSpawnFailure')
        self.assertIsNone(site.port)

        # error -> starting is a legal edge
        site = self.manager.start_site(site.pk)
        self.assertEqual(site.status, Website.STATUS_RUNNING)
        self.assertEqual(site.status_reason, '')

    def test_unexpected_driver_error_wrapped(self):
        site = self.make_site()
        self.local.start_errors = [RuntimeError('boom')]
        with self.assertRaises(ProcessSpawnFailure):
            self.manager.start_site(site.pk)
        site.refresh_from_db()
        self.assertEqual(site.status_reason, 'ProcessSpawnFailure')

    def test_start_timeout(self):
        self.lifecycle.start_timeout = 0.3
        site = self.make_site()
        self.local.start_gate = threading.Event()
        try:
            with self.assertRaises(StartTimeout):
                self.manager.start_site(site.pk)
        finally:
            self.local.start_gate.set()
        site.refresh_from_db()
        self.assertEqual(site.status, Website.STATUS_ERROR)
        self.assertEqual(site.status_reason, 'StartTimeout')
        self.assertIsNone(site.port)

    def test_timed_out_start_keeps_port_until_late_result(self):
        """A start that completes after its timeout is torn down, then its port is freed."""
        self.lifecycle.start_timeout = 0.3
        site = self.make_site()
        gate = self.local.start_gate = threading.Event()
        try:
            with self.assertRaises(StartTimeout):
                self.manager.start_site(site.pk)
            port = self.local.called('start')[0][2]
            self.assertIn(port, self.allocator.reserved())
        finally:
            gate.set()

        self.wait_until(lambda: port not in self.allocator.reserved())
        self.assertNotIn(str(site.pk), self.local.running)
        self.assertEqual(len(self.local.called('stop')), 2)
        self.assertEqual(self.local.called('destroy'), [])

    def test_concurrent_start_invokes_driver_once(self):
        """A second start while one is in flight fails fast."""
        site = self.make_site()
        self.local.start_gate = threading.Event()
        errors = []

        def second_start():
            self.local.start_entered.wait(5)
            try:
                self.lifecycle.start(site.pk)
            except OperationInProgress as e:
                errors.append(e)
            finally:
                self.local.start_gate.set()

        thread = threading.Thread(target=second_start)
        thread.start()
        site = self.manager.start_site(site.pk)
        thread.join()

        self.assertEqual(site.status, Website.STATUS_RUNNING)
        self.assertEqual(len(errors), 1)
        self.assertEqual(len(self.local.called('start')), 1)

    def test_start_unknown_site(self):
        with self.assertRaises(SiteNotFound):
            self.manager.start_site('00000000-0000-0000-0000-000000000000')


class MigrationTest(OrchestratorTestCase):
    """Test moving sites between backends."""

    def test_migrate_running_site(self):
        site = self.make_site()
        self.manager.start_site(site.pk)
        site = self.manager.migrate_site(site.pk, 'container')

        self.assertEqual(site.environment, 'container')
        self.assertEqual(site.status, Website.STATUS_RUNNING)
        self.assertEqual(site.backend_state['backend'], 'container')
        self.assertIn('web', site.config['images'])
        self.assertEqual(site.config['database_engine'], ENGINE_SQLITE)
        self.assertEqual(len(self.local.called('destroy')), 1)
        self.assertEqual(self.container.loaded, [str(site.pk)])
        self.assertIn(site.port, self.allocator.reserved())
        self.assertEqual(os.listdir(os.path.join(site.root_path, '.pressdock', 'migration')), [])

    def test_failed_migration_restores_record(self):
        self.manager.migrations.probe_fn = always(False)
        site = self.make_site()
        before = Website.objects.get(pk=site.pk)

        with self.assertRaises(MigrationFailed):
            self.manager.migrate_site(site.pk, 'container')

        site.refresh_from_db()
        self.assertEqual(site.environment, 'local')
        self.assertEqual(site.status, Website.STATUS_ERROR)
        self.assertEqual(site.status_reason, 'MigrationFailed')
        self.assertEqual(site.port, before.port)
        self.assertEqual(site.config, before.config)
        self.assertEqual(site.backend_state, before.backend_state)
        self.assertEqual(len(self.container.called('destroy')), 1)
        self.assertEqual(self.local.called('destroy'), [])
        self.assertEqual(self.allocator.reserved(), {before.port})

    def test_rollback_destroys_target_when_stop_fails(self):
        self.manager.migrations.probe_fn = always(False)
        self.container.stop = MagicMock(side_effect=ProcessSpawnFailure('compose down failed'))
        site = self.make_site()

        with self.assertRaises(MigrationFailed):
            self.manager.migrate_site(site.pk, 'container')

        self.container.stop.assert_called_once()
        self.assertEqual(len(self.container.called('destroy')), 1)
        site.refresh_from_db()
        self.assertEqual(site.environment, 'local')
        self.assertEqual(site.status_reason, 'MigrationFailed')
        self.assertEqual(self.allocator.reserved(), {site.port})

    def test_target_start_finishing_after_timeout_is_removed(self):
        """The target stack of a timed-out migration is torn down once its start returns."""
        site = self.make_site()
        gate = self.container.start_gate = threading.Event()
        try:
            with self.assertRaises(MigrationFailed):
                self.manager.migrate_site(site.pk, 'container', timeout=0.5)
            port = self.container.called('start')[0][2]
            self.assertIn(port, self.allocator.reserved())
            site.refresh_from_db()
            self.assertEqual(site.environment, 'local')
            self.assertEqual(site.status, Website.STATUS_ERROR)
        finally:
            gate.set()

        self.wait_until(lambda: port not in self.allocator.reserved())
        self.assertNotIn(str(site.pk), self.container.running)
        self.assertEqual(len(self.container.called('destroy')), 2)
        self.assertEqual(self.allocator.reserved(), {site.port})

    def test_step_is_retried(self):
        site = self.make_site()
        original = self.container.provision
        attempts = []

        def flaky_provision(record, config=None):
            attempts.append(1)
            if len(attempts) == 1:
                raise ProcessSpawnFailure('transient')
            return original(record, config)

        self.container.provision = flaky_provision
        site = self.manager.migrate_site(site.pk, 'container')
        self.assertEqual(site.environment, 'container')
        self.assertEqual(len(attempts), 2)

    def test_same_environment_rejected(self):
        site = self.make_site()
        with self.assertRaises(ValidationError):
            self.manager.migrate_site(site.pk, 'local')

    def test_target_unavailable(self):
        self.container.is_available = False
        site = self.make_site()
        with self.assertRaises(BackendUnavailable):
            self.manager.migrate_site(site.pk, 'container')
        site.refresh_from_db()
        self.assertEqual(site.environment, 'local')
        self.assertEqual(site.status, Website.STATUS_STOPPED)


class HealthMonitorTest(OrchestratorTestCase):
    """Test background health checks."""

    def running_site(self):
        site = self.make_site()
        return self.manager.start_site(site.pk)

    def test_failure_threshold_then_recovery(self):
        site = self.running_site()
        reachable = {'value': False}
        monitor = HealthMonitor(
            self.registry, failure_threshold=3, probe_fn=lambda *a, **k: reachable['value']
        )

        monitor.run_once()
        monitor.run_once()
        site.refresh_from_db()
        self.assertEqual(site.status, Website.STATUS_RUNNING)
        self.assertEqual(monitor.failures(site.pk), 2)

        monitor.run_once()
        site.refresh_from_db()
        self.assertEqual(site.status, Website.STATUS_ERROR)
        self.assertEqual(site.status_reason, 'HealthCheckFailed')

        reachable['value'] = True
        monitor.run_once()
        site.refresh_from_db()
        self.assertEqual(site.status, Website.STATUS_RUNNING)
        self.assertEqual(site.status_reason, '')
        self.assertEqual(monitor.failures(site.pk), 0)

    def test_success_resets_counter(self):
        site = self.running_site()
        results = iter([False, False, True, False, False])
        monitor = HealthMonitor(self.registry, failure_threshold=3, probe_fn=lambda *a, **k: next(results))
        for _ in range(5):
            monitor.run_once()
        site.refresh_from_db()
        self.assertEqual(site.status, Website.STATUS_RUNNING)

    def test_restart_starts_a_fresh_count(self):
        site = self.running_site()
        monitor = HealthMonitor(self.registry, failure_threshold=3, probe_fn=always(False))
        monitor.run_once()
        monitor.run_once()
        self.assertEqual(monitor.failures(site.pk), 2)

        self.manager.stop_site(site.pk)
        self.manager.start_site(site.pk)
        monitor.run_once()

        site.refresh_from_db()
        self.assertEqual(site.status, Website.STATUS_RUNNING)
        self.assertEqual(monitor.failures(site.pk), 1)

    def test_counters_of_stopped_sites_are_dropped(self):
        site = self.running_site()
        monitor = HealthMonitor(self.registry, probe_fn=always(False))
        monitor.run_once()
        self.assertEqual(monitor.failures(site.pk), 1)

        self.manager.stop_site(site.pk)
        self.assertEqual(monitor.run_once(), {})
        self.assertEqual(monitor.failures(site.pk), 0)

    def test_stopped_sites_not_probed(self):
        self.make_site()
        probe = MagicMock(return_value=False)
        monitor = HealthMonitor(self.registry, probe_fn=probe)
        self.assertEqual(monitor.run_once(), {})
        probe.assert_not_called()

    def test_other_errors_not_recovered(self):
        site = self.running_site()
        self.registry.fail(site.pk, ProcessSpawnFailure('crashed'))
        monitor = HealthMonitor(self.registry, probe_fn=always(True))
        monitor.run_once()
        site.refresh_from_db()
        self.assertEqual(site.status, Website.STATUS_ERROR)
        self.assertEqual(site.status_reason, 'ProcessSpawnFailure')


class EnvironmentManagerTest(OrchestratorTestCase):
    """Test the orchestrator facade."""

    def test_slugify_domain(self):
        self.assertEqual(slugify_domain('My Shop'), 'my-shop.local')
        self.assertEqual(slugify_domain('***'), 'site.local')

    def test_create_site_defaults(self):
        site = self.make_site(name='My Shop')
        self.assertEqual(site.domain, 'my-shop.local')
        self.assertEqual(site.status, Website.STATUS_STOPPED)
        self.assertEqual(site.config['database_engine'], ENGINE_SQLITE)
        self.assertEqual(site.root_path, os.path.join(self.sites_root, 'my-shop.local'))
        self.assertTrue(os.path.isdir(site.content_path))
        self.assertIn(site.port, self.allocator.reserved())

    def test_create_container_site_defaults_to_mysql(self):
        site = self.make_site(environment='container', web_server=WEB_SERVER_APACHE)
        self.assertEqual(site.config['database_engine'], ENGINE_MYSQL)
        self.assertEqual(site.config['images']['db'], 'mysql:8.0')
        self.assertEqual(site.config['images']['web'], 'wordpress:php8.1-apache')

    def test_create_uses_default_environment(self):
        self.manager.switch_environment('container')
        site = self.manager.create_site({'name': 'Blog'})
        self.assertEqual(site.environment, 'container')

    def test_create_invalid(self):
        with self.assertRaises(ValidationError) as ctx:
            self.manager.create_site({'name': 'Blog', 'domain': 'not a domain', 'php_version': '5.6'})
        self.assertIn('domain', ctx.exception.fields)
        self.assertIn('php_version', ctx.exception.fields)
        self.assertEqual(Website.objects.count(), 0)

    def test_duplicate_domain(self):
        self.make_site(name='Blog', domain='blog.local')
        reserved = self.allocator.reserved()
        with self.assertRaises(DuplicateDomain):
            self.make_site(name='Other', domain='BLOG.local')
        self.assertEqual(self.allocator.reserved(), reserved)

    def test_switch_environment_unavailable(self):
        self.container.is_available = False
        with self.assertRaises(BackendUnavailable):
            self.manager.switch_environment('container')
        self.assertEqual(self.manager.get_current_environment(), 'local')

    @patch('environments.manager.detect_docker')
    @patch('environments.manager.detect_php')
    def test_capabilities(self, mock_php, mock_docker):
        mock_php.return_value = {'available': True, 'version': '8.2.10', 'path': 'php'}
        mock_docker.return_value = {'available': False, 'version': '', 'compose': False}
        capabilities = self.manager.get_capabilities()
        self.assertTrue(capabilities['local']['available'])
        self.assertTrue(capabilities['local']['preferred'])
        self.assertFalse(capabilities['container']['available'])
        self.assertIn('8.2.10', capabilities['local']['description'])

    def test_delete_running_site(self):
        site = self.make_site()
        site = self.manager.start_site(site.pk)
        port = site.port
        self.manager.delete_site(site.pk, delete_files=True)
        self.assertFalse(Website.objects.filter(pk=site.pk).exists())
        self.assertEqual(len(self.local.called('stop')), 1)
        self.assertEqual(len(self.local.called('destroy')), 1)
        self.assertNotIn(port, self.allocator.reserved())
        self.assertFalse(os.path.exists(site.root_path))

    def test_delete_keeps_files_by_default(self):
        site = self.make_site()
        self.manager.delete_site(site.pk)
        self.assertTrue(os.path.isdir(site.content_path))

    def test_delete_refuses_path_outside_sites_root(self):
        site = self.make_site()
        outside = tempfile.mkdtemp(prefix='pressdock-outside-')
        self.addCleanup(shutil.rmtree, outside, True)
        site.root_path = outside
        self.manager._remove_site_dir(site)
        self.assertTrue(os.path.isdir(outside))

    def test_clone_site(self):
        site = self.make_site(name='Shop')
        with open(os.path.join(site.content_path, 'index.php'), 'w') as f:
            f.write('<?php echo "shop";')
        clone = self.manager.clone_site(site.pk, 'Shop Copy')

        self.assertEqual(clone.domain, 'shop-copy.local')
        self.assertEqual(clone.environment, 'local')
        self.assertEqual(clone.status, Website.STATUS_STOPPED)
        self.assertNotEqual(clone.port, site.port)
        self.assertEqual(clone.backend_state, {'backend': 'local'})
        self.assertTrue(os.path.exists(os.path.join(clone.content_path, 'index.php')))
        self.assertEqual(self.local.loaded, [str(clone.pk)])

    def test_reconcile_on_start(self):
        running = self.manager.start_site(self.make_site(name='Alive').pk)
        orphan = self.manager.start_site(self.make_site(name='Gone').pk)
        self.local.running.discard(str(orphan.pk))

        manager = build_manager(self.sites_root, {'local': self.local, 'container': self.container})
        self.addCleanup(manager.shutdown)
        summary = manager.start(monitor=False)

        self.assertEqual(summary['kept'], [str(running.pk)])
        self.assertEqual(summary['orphaned'], [str(orphan.pk)])
        orphan.refresh_from_db()
        self.assertEqual(orphan.status, Website.STATUS_ERROR)
        self.assertEqual(orphan.status_reason, 'OrphanedAfterRestart')
        self.assertIsNone(orphan.port)
        self.assertIn(running.port, manager.allocator.reserved())


class ConcurrentCreateTest(OrchestratorMixin, TransactionTestCase):
    """Creates racing on the same domain, each on its own database connection."""

    def test_one_of_two_creates_wins(self):
        barrier = threading.Barrier(2)
        created = []
        duplicates = []
        results_lock = threading.Lock()

        def create():
            try:
                barrier.wait(5)
                record = self.manager.create_site({'name': 'Shop', 'domain': 'shop.local'})
                with results_lock:
                    created.append(record)
            except DuplicateDomain as e:
                with results_lock:
                    duplicates.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=create) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(created), 1)
        self.assertEqual(len(duplicates), 1)
        self.assertEqual(Website.objects.filter(domain='shop.local').count(), 1)
        self.assertEqual(self.allocator.reserved(), {created[0].port})


class LocalDriverTest(TestCase):
    """Test the PHP built-in server backend."""

    def setUp(self):
        self.root = tempfile.mkdtemp(prefix='pressdock-local-')
        self.driver = LocalDriver(php_binary='php', stop_timeout=1)
        self.record = Website(
            name='Blog', domain='blog.local', environment='local',
            root_path=os.path.join(self.root, 'blog.local'),
            config=SiteConfig.resolve({}, 'local').to_dict(),
        )

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_provision_sqlite(self):
        handle = self.driver.provision(self.record)
        self.assertTrue(os.path.exists(handle.state['database_path']))
        self.assertTrue(os.path.exists(os.path.join(handle.resource_dir, 'site.json')))
        self.assertEqual(handle.state['document_root'], handle.content_path)

    def test_export_import_sqlite(self):
        """A bundle carries the content archive and the database into another site."""
        import sqlite3
        source = self.driver.provision(self.record)
        connection = sqlite3.connect(source.state['database_path'])
        connection.execute('CREATE TABLE wp_options (option_name TEXT, option_value TEXT)')
        connection.execute("INSERT INTO wp_options VALUES ('blogname', 'Blog')")
        connection.commit()
        connection.close()
        with open(os.path.join(source.content_path, 'index.php'), 'w') as f:
            f.write('<?php')

        other = Website(
            name='Copy', domain='copy.local', environment='local',
            root_path=os.path.join(self.root, 'copy.local'), config=self.record.config,
        )
        target = self.driver.clone(source, other)

        self.assertTrue(os.path.exists(os.path.join(target.content_path, 'index.php')))
        connection = sqlite3.connect(target.state['database_path'])
        rows = connection.execute('SELECT option_value FROM wp_options').fetchall()
        connection.close()
        self.assertEqual(rows, [('Blog',)])

    @patch('environments.drivers.local.port_is_open', return_value=False)
    @patch('environments.drivers.local.subprocess.Popen')
    def test_start_port_in_use(self, mock_popen, mock_open_port):
        handle = self.driver.provision(self.record)

        def spawn(cmd, stdout=None, **kwargs):
            stdout.write(b'Failed to listen on 127.0.0.1:8080 (reason: Address already in use)\n')
            stdout.flush()
            process = MagicMock(pid=4242, returncode=1)
            process.poll.return_value = 1
            return process

        mock_popen.side_effect = spawn
        with self.assertRaises(PortConflict):
            self.driver.start(handle, 8080)
        cmd = mock_popen.call_args[0][0]
        self.assertEqual(cmd[:3], ['php', '-S', '127.0.0.1:8080'])

    @patch('environments.drivers.local.port_is_open', return_value=True)
    @patch('environments.drivers.local.subprocess.Popen')
    def test_start_records_pid(self, mock_popen, mock_open_port):
        handle = self.driver.provision(self.record)
        process = MagicMock(pid=4242)
        process.poll.return_value = None
        mock_popen.return_value = process
        info = self.driver.start(handle, 8081)
        self.assertEqual(info.port, 8081)
        self.assertEqual(info.state['pid'], 4242)
        self.assertEqual(info.url, 'http://localhost:8081')

    @patch('environments.drivers.local.psutil.Process')
    @patch('environments.drivers.local.process_matches', return_value=True)
    def test_stop_kills_after_timeout(self, mock_matches, mock_process):
        handle = self.driver.handle_for(self.record)
        handle.state = {'pid': 4242, 'port': 8081}
        process = mock_process.return_value
        process.wait.side_effect = [psutil.TimeoutExpired(1), None]
        self.driver.stop(handle)
        process.terminate.assert_called_once()
        process.kill.assert_called_once()
        self.assertNotIn('pid', handle.state)

    @patch('environments.drivers.local.psutil.Process')
    @patch('environments.drivers.local.process_matches', return_value=False)
    def test_stop_ignores_recycled_pid(self, mock_matches, mock_process):
        handle = self.driver.handle_for(self.record)
        handle.state = {'pid': 4242}
        self.driver.stop(handle)
        mock_process.assert_not_called()
        self.assertFalse(self.driver.is_running(handle))


class ContainerDriverTest(TestCase):
    """Test the Compose backend."""

    def setUp(self):
        self.root = tempfile.mkdtemp(prefix='pressdock-container-')
        self.driver = ContainerDriver(docker_binary='docker', ready_timeout=0.1)
        self.record = Website(
            name='Shop', domain='shop.local', environment='container',
            root_path=os.path.join(self.root, 'shop.local'),
            config=SiteConfig.resolve({}, 'container').to_dict(),
        )

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def provision(self, record=None):
        with patch.object(ContainerDriver, 'available', return_value=True):
            return self.driver.provision(record or self.record)

    def test_compose_spec_nginx_mysql(self):
        handle = self.provision()
        spec = self.driver.build_compose_spec(handle, 8085)
        services = spec['services']
        self.assertEqual(set(services), {'web', 'php', 'db'})
        self.assertEqual(services['web']['ports'], ['8085:80'])
        self.assertEqual(services['php']['image'], 'wordpress:php8.1-fpm')
        self.assertEqual(services['db']['image'], 'mysql:8.0')
        self.assertEqual(services['php']['environment']['WORDPRESS_DB_HOST'], 'db:3306')
        self.assertEqual(services['web']['labels']['pressdock.site'], handle.site_id)
        self.assertIn('db_data', spec['volumes'])
        self.assertTrue(os.path.exists(handle.state['compose_file']))

    def test_compose_spec_apache_sqlite(self):
        self.record.config = SiteConfig.resolve(
            {'web_server': WEB_SERVER_APACHE, 'database_engine': ENGINE_SQLITE}, 'container'
        ).to_dict()
        handle = self.provision()
        spec = self.driver.build_compose_spec(handle)
        self.assertEqual(set(spec['services']), {'web'})
        self.assertNotIn('ports', spec['services']['web'])
        self.assertNotIn('volumes', spec)

    def test_render_nginx_config(self):
        config = render_nginx_config('shop.local')
        self.assertIn('server_name shop.local www.shop.local localhost;', config)
        self.assertIn('fastcgi_pass php:9000;', config)

    @patch('environments.drivers.container.run_command')
    def test_start_port_conflict(self, mock_run_command):
        handle = self.provision()
        mock_run_command.side_effect = [
            (1, '', 'Bind for 0.0.0.0:8085 failed: port is already allocated'),
            (0, '', ''),
        ]
        with patch.object(ContainerDriver, 'available', return_value=True):
            with self.assertRaises(PortConflict):
                self.driver.start(handle, 8085)
        down = mock_run_command.call_args_list[1][0][0]
        self.assertEqual(down[-1], 'down')

    @patch('environments.drivers.container.run_command')
    def test_provision_requires_engine(self, mock_run_command):
        with patch.object(ContainerDriver, 'available', return_value=False):
            with self.assertRaises(BackendUnavailable):
                self.driver.provision(self.record)
        mock_run_command.assert_not_called()

    @patch('environments.drivers.container.run_command')
    def test_load_mysql_dump_goes_to_initdb(self, mock_run_command):
        handle = self.provision()
        dump = os.path.join(self.root, 'database.sql')
        with open(dump, 'w') as f:
            f.write('CREATE TABLE wp_posts (id INT);')
        self.driver.load_database(handle, dump)
        self.assertTrue(os.path.exists(os.path.join(handle.resource_dir, 'initdb', '10-import.sql')))

    @patch('environments.drivers.container.run_command')
    def test_stop_without_stack_is_noop(self, mock_run_command):
        handle = self.driver.handle_for(self.record)
        self.driver.stop(handle)
        mock_run_command.assert_not_called()


class UtilsTest(TestCase):
    """Test environment detection helpers."""

    @patch('environments.utils.run_command')
    def test_detect_php(self, mock_run_command):
        mock_run_command.return_value = (0, 'PHP 8.2.12 (cli) (built: Oct 24 2023)', '')
        info = detect_php()
        self.assertTrue(info['available'])
        self.assertEqual(info['version'], '8.2.12')

    @patch('environments.utils.run_command')
    def test_detect_php_missing(self, mock_run_command):
        mock_run_command.return_value = (127, '', 'php: command not found')
        self.assertFalse(detect_php()['available'])

    @patch('environments.utils.run_command')
    def test_detect_docker_without_compose(self, mock_run_command):
        mock_run_command.side_effect = [(0, '24.0.7\n', ''), (1, '', 'unknown command')]
        info = detect_docker()
        self.assertFalse(info['available'])
        self.assertEqual(info['version'], '24.0.7')

    @patch('environments.commands.subprocess.run')
    def test_command_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(['docker'], 1)
        exit_code, stdout, stderr = CommandExecutor(timeout=1).run_command(['docker', 'info'])
        self.assertEqual(exit_code, 124)


class EnvironmentViewsTest(OrchestratorTestCase):
    """Test environment API endpoints."""

    def setUp(self):
        super().setUp()
        self.client = APIClient()
        config = apps.get_app_config('environments')
        config.set_manager(self.manager)
        self.addCleanup(config.set_manager, None)

    def test_health_check(self):
        response = self.client.get('/api/health/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], 'healthy')

    def test_current_and_switch(self):
        response = self.client.get('/api/environment/current/')
        self.assertEqual(response.data, {'environment': 'local'})
        response = self.client.post('/api/environment/switch/', {'environment': 'container'}, format='json')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.manager.get_current_environment(), 'container')

    def test_switch_unavailable(self):
        self.container.is_available = False
        response = self.client.post('/api/environment/switch/', {'environment': 'container'}, format='json')
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data['code'], 'BackendUnavailable')

    def test_switch_unknown(self):
        response = self.client.post('/api/environment/switch/', {'environment': 'vagrant'}, format='json')
        self.assertEqual(response.status_code, 400)

    @patch('environments.manager.detect_docker')
    @patch('environments.manager.detect_php')
    def test_capabilities(self, mock_php, mock_docker):
        mock_php.return_value = {'available': False, 'version': '', 'path': ''}
        mock_docker.return_value = {'available': True, 'version': '24.0.7', 'compose': True}
        response = self.client.get('/api/environment/capabilities/')
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['container']['preferred'])
