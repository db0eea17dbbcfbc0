"""
Tests for project-level setup.
"""
import logging
import os
import shutil
import tempfile
from unittest.mock import patch

from django.apps import apps
from django.test import TestCase

from environments.apps import ensure_database_dir
from .log_handlers import LogDirRotatingFileHandler


class LogHandlerTest(TestCase):
    """Test the rotating log file handler."""

    def setUp(self):
        self.root = tempfile.mkdtemp(prefix='pressdock-logs-')

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_directory_created_on_first_record(self):
        log_dir = os.path.join(self.root, 'home', 'logs')
        handler = LogDirRotatingFileHandler(os.path.join(log_dir, 'pressdock.log'), maxBytes=1024, backupCount=1)
        try:
            self.assertFalse(os.path.exists(log_dir))
            handler.emit(logging.LogRecord('pressdock', logging.INFO, __file__, 1, 'site started', None, None))
            self.assertTrue(os.path.isfile(os.path.join(log_dir, 'pressdock.log')))
        finally:
            handler.close()

    def test_settings_use_lazy_handler(self):
        from django.conf import settings
        handler = settings.LOGGING['handlers']['file']
        self.assertEqual(handler['class'], 'pressdock_backend.log_handlers.LogDirRotatingFileHandler')


class DatabaseDirTest(TestCase):
    """Test creation of the registry database directory."""

    def setUp(self):
        self.root = tempfile.mkdtemp(prefix='pressdock-db-')

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_created_for_sqlite_file(self):
        name = os.path.join(self.root, 'home', 'pressdock.sqlite3')
        databases = {'default': {'ENGINE': 'django.db.backends.sqlite3', 'NAME': name}}
        with patch('environments.apps.settings') as mock_settings:
            mock_settings.DATABASES = databases
            ensure_database_dir()
        self.assertTrue(os.path.isdir(os.path.join(self.root, 'home')))

    def test_in_memory_database_ignored(self):
        databases = {'default': {'ENGINE': 'django.db.backends.sqlite3', 'NAME': ':memory:'}}
        with patch('environments.apps.settings') as mock_settings, \
                patch('environments.apps.os.makedirs') as mock_makedirs:
            mock_settings.DATABASES = databases
            ensure_database_dir()
        mock_makedirs.assert_not_called()

    def test_ready_prepares_database_dir(self):
        config = apps.get_app_config('environments')
        manager = config._manager
        with patch('environments.apps.ensure_database_dir') as mock_ensure:
            config.ready()
        config.set_manager(manager)
        mock_ensure.assert_called_once_with()
