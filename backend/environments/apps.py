"""
App configuration for environments app.
"""
import os
import threading

from django.apps import AppConfig
from django.conf import settings


def ensure_database_dir() -> None:
    """Create the directory of the SQLite registry database before the first connection."""
    database = settings.DATABASES['default']
    name = str(database.get('NAME') or '')
    if database.get('ENGINE') != 'django.db.backends.sqlite3' or not name or name.startswith(':memory:') \
            or name.startswith('file:'):
        return
    directory = os.path.dirname(os.path.abspath(name))
    os.makedirs(directory, exist_ok=True)


class EnvironmentsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'environments'

    def ready(self):
        self._manager = None
        self._manager_lock = threading.Lock()
        ensure_database_dir()

    def get_manager(self):
        """The orchestrator instance serving the API, reconciled before first use."""
        with self._manager_lock:
            if self._manager is None:
                from .manager import EnvironmentManager
                manager = EnvironmentManager.from_settings()
                manager.start()
                self._manager = manager
            return self._manager

    def set_manager(self, manager) -> None:
        with self._manager_lock:
            self._manager = manager
