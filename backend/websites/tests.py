"""
Tests for websites app.
"""
import shutil
import tempfile
import uuid
from unittest.mock import MagicMock

from django.apps import apps
from django.test import TestCase
from rest_framework.test import APIClient

from environments.errors import (
    DuplicateDomain,
    InvalidTransition,
    OperationInProgress,
    ProcessSpawnFailure,
    SiteNotFound,
)
from environments.ports import PortAllocator
from environments.tests import FakeDriver, build_manager
from .config import (
    ENGINE_MARIADB,
    ENGINE_SQLITE,
    NGINX_IMAGE,
    SiteConfig,
)
from .models import Website
from .registry import SiteRegistry, can_transition


class WebsiteModelTest(TestCase):
    """Test Website model."""

    def test_create_website(self):
        """Test site record creation."""
        website = Website.objects.create(
            name='Blog',
            domain='blog.local',
            root_path='/tmp/sites/blog.local',
            config=SiteConfig.resolve({}, 'local').to_dict(),
        )
        self.assertEqual(website.status, Website.STATUS_STOPPED)
        self.assertEqual(website.environment, Website.ENVIRONMENT_LOCAL)
        self.assertEqual(website.version, 1)
        self.assertEqual(website.content_path, '/tmp/sites/blog.local/wordpress')
        self.assertEqual(website.url, '')
        self.assertEqual(website.site_config.database_engine, ENGINE_SQLITE)


class SiteConfigTest(TestCase):
    """Test configuration defaults."""

    def test_local_defaults(self):
        config = SiteConfig.resolve({}, 'local')
        self.assertEqual(config.php_version, '8.1')
        self.assertEqual(config.database_engine, ENGINE_SQLITE)
        self.assertEqual(config.images, {})

    def test_engine_switch_changes_default_version(self):
        config = SiteConfig.resolve({'database_engine': ENGINE_MARIADB}, 'container')
        self.assertEqual(config.database_version, '10.11')
        self.assertEqual(config.images['db'], 'mariadb:10.11')
        self.assertEqual(config.images['web'], NGINX_IMAGE)

    def test_derive_for_keeps_site_choices(self):
        config = SiteConfig.resolve({'php_version': '8.3', 'multisite': True}, 'container')
        local = config.derive_for('local')
        self.assertEqual(local.php_version, '8.3')
        self.assertTrue(local.multisite)
        self.assertEqual(local.images, {})
        self.assertEqual(SiteConfig.from_dict(config.to_dict()), config)


class SiteRegistryTest(TestCase):
    """Test the site registry."""

    def setUp(self):
        self.sites_root = tempfile.mkdtemp(prefix='pressdock-registry-')
        self.registry = SiteRegistry(self.sites_root)

    def tearDown(self):
        shutil.rmtree(self.sites_root, ignore_errors=True)

    def create(self, domain='blog.local', port=None):
        return self.registry.create('Blog', domain, 'local', SiteConfig().to_dict(), port=port)

    def test_create_and_get(self):
        site = self.create(port=8080)
        self.assertEqual(self.registry.get(site.pk).domain, 'blog.local')
        self.assertEqual(site.preferred_port, 8080)
        self.assertEqual(site.root_path, f"{self.sites_root}/blog.local")

    def test_get_unknown(self):
        with self.assertRaises(SiteNotFound):
            self.registry.get(uuid.uuid4())
        with self.assertRaises(SiteNotFound):
            self.registry.get('not-a-uuid')

    def test_duplicate_domain_case_insensitive(self):
        self.create()
        with self.assertRaises(DuplicateDomain):
            self.create(domain='Blog.Local')

    def test_legal_walk(self):
        site = self.create()
        for status in ('starting', 'running', 'stopping', 'stopped'):
            site = self.registry.transition(site.pk, status)
            self.assertEqual(site.status, status)
        self.assertEqual(site.version, 5)

    def test_illegal_transition(self):
        site = self.create()
        with self.assertRaises(InvalidTransition):
            self.registry.transition(site.pk, Website.STATUS_RUNNING)
        site.refresh_from_db()
        self.assertEqual(site.status, Website.STATUS_STOPPED)

    def test_transition_table(self):
        self.assertTrue(can_transition('running', 'error'))
        self.assertTrue(can_transition('error', 'running'))
        self.assertFalse(can_transition('stopped', 'stopping'))
        self.assertFalse(can_transition('running', 'starting'))

    def test_fail_and_clear(self):
        site = self.create()
        site = self.registry.fail(site.pk, ProcessSpawnFailure('php exited'))
        self.assertEqual(site.status, Website.STATUS_ERROR)
        self.assertEqual(site.status_reason, 'ProcessSpawnFailure')
        self.assertEqual(site.error_message, 'php exited')
        site = self.registry.transition(site.pk, Website.STATUS_STARTING)
        self.assertEqual(site.status_reason, '')
        self.assertEqual(site.error_message, '')

    def test_update_retries_lost_swap(self):
        """A concurrent write between read and swap makes the mutation re-run."""
        site = self.create()
        seen = []

        def mutation(record):
            seen.append(record.version)
            if len(seen) == 1:
                Website.objects.filter(pk=record.pk).update(version=record.version + 1, name='Renamed')
            return {'status_reason': 'checked'}

        site = self.registry.update(site.pk, mutation)
        self.assertEqual(seen, [1, 2])
        self.assertEqual(site.name, 'Renamed')
        self.assertEqual(site.status_reason, 'checked')
        self.assertEqual(site.version, 3)

    def test_update_gives_up(self):
        site = self.create()

        def mutation(record):
            Website.objects.filter(pk=record.pk).update(version=record.version + 1)
            return {'name': 'Never'}

        with self.assertRaises(OperationInProgress):
            self.registry.update(site.pk, mutation)

    def test_update_without_changes(self):
        site = self.create()
        self.assertEqual(self.registry.update(site.pk, lambda record: None).version, site.version)

    def test_reconcile(self):
        alive = self.create(domain='alive.local', port=8081)
        gone = self.create(domain='gone.local', port=8082)
        halted = self.create(domain='halted.local', port=8083)
        idle = self.create(domain='idle.local', port=8084)
        for site in (alive, gone):
            self.registry.transition(site.pk, 'starting')
            self.registry.transition(site.pk, 'running')
        self.registry.transition(halted.pk, 'starting')
        self.registry.transition(halted.pk, 'stopping')

        driver = FakeDriver('local')
        driver.running.add(str(alive.pk))
        allocator = MagicMock(spec=PortAllocator)
        summary = self.registry.reconcile({'local': driver}, allocator)

        self.assertEqual(summary['kept'], [str(alive.pk)])
        self.assertEqual(summary['orphaned'], [str(gone.pk)])
        self.assertEqual(summary['stopped'], [str(halted.pk)])
        gone.refresh_from_db()
        self.assertEqual(gone.status, Website.STATUS_ERROR)
        self.assertEqual(gone.status_reason, 'OrphanedAfterRestart')
        self.assertIsNone(gone.port)
        halted.refresh_from_db()
        self.assertEqual(halted.status, Website.STATUS_STOPPED)
        self.assertEqual(driver.called('stop'), [('stop', str(halted.pk))])
        claimed = sorted(call[0][0] for call in allocator.claim.call_args_list)
        self.assertEqual(claimed, [alive.port, idle.port])


class WebsiteViewsTest(TestCase):
    """Test site API endpoints."""

    def setUp(self):
        self.sites_root = tempfile.mkdtemp(prefix='pressdock-views-')
        self.local = FakeDriver('local')
        self.container = FakeDriver('container')
        self.manager = build_manager(self.sites_root, {'local': self.local, 'container': self.container})
        config = apps.get_app_config('environments')
        config.set_manager(self.manager)
        self.addCleanup(config.set_manager, None)
        self.client = APIClient()

    def tearDown(self):
        self.manager.shutdown()
        shutil.rmtree(self.sites_root, ignore_errors=True)

    def create(self, **data):
        data.setdefault('name', 'My Shop')
        return self.client.post('/api/sites/', data, format='json')

    def test_create_and_list(self):
        response = self.create()
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['domain'], 'my-shop.local')
        self.assertEqual(response.data['status'], 'stopped')
        self.assertNotIn('backend_state', response.data)

        response = self.client.get('/api/sites/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)

    def test_create_invalid(self):
        response = self.create(domain='bad domain')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['code'], 'ValidationError')
        self.assertIn('domain', response.data['fields'])

    def test_create_duplicate(self):
        self.create()
        response = self.create()
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['code'], 'DuplicateDomain')

    def test_start_stop(self):
        site_id = self.create().data['id']
        response = self.client.post(f'/api/sites/{site_id}/start/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], 'running')
        self.assertTrue(response.data['url'].startswith('http://localhost:'))

        response = self.client.post(f'/api/sites/{site_id}/start/')
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['code'], 'InvalidTransition')
        self.assertEqual(response.data['site']['status'], 'running')

        response = self.client.post(f'/api/sites/{site_id}/stop/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], 'stopped')
        self.assertIsNone(response.data['port'])

    def test_start_failure_returns_site(self):
        site_id = self.create().data['id']
        self.local.start_errors = [ProcessSpawnFailure('php exited')]
        response = self.client.post(f'/api/sites/{site_id}/start/')
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.data['site']['status'], 'error')
        self.assertEqual(response.data['site']['status_reason'], 'ProcessSpawnFailure')

    def test_migrate(self):
        site_id = self.create().data['id']
        response = self.client.post(f'/api/sites/{site_id}/migrate/', {'environment': 'container'}, format='json')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['environment'], 'container')
        self.assertEqual(response.data['status'], 'running')

    def test_clone(self):
        site_id = self.create().data['id']
        response = self.client.post(f'/api/sites/{site_id}/clone/', {'name': 'Staging'}, format='json')
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['domain'], 'staging.local')

    def test_detail_and_delete(self):
        site_id = self.create().data['id']
        response = self.client.get(f'/api/sites/{site_id}/')
        self.assertEqual(response.status_code, 200)
        response = self.client.delete(f'/api/sites/{site_id}/?delete_files=true')
        self.assertEqual(response.status_code, 200)
        self.assertFalse(Website.objects.filter(pk=site_id).exists())

    def test_unknown_site(self):
        response = self.client.get(f'/api/sites/{uuid.uuid4()}/')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data['code'], 'SiteNotFound')
        self.assertIsNone(response.data['site'])
