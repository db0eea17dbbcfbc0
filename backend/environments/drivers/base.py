"""
Capability contract shared by the local and container backends.
"""
import logging
import os
import shutil
import socket
import sqlite3
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from websites.config import SiteConfig
from ..errors import BackendUnavailable

logger = logging.getLogger(__name__)

# Backend resources live below the site directory, next to the content
RESOURCE_DIR = '.pressdock'


@dataclass
class Handle:
    """Identifies the backend resources of one site.

    ``state`` is persisted as ``Website.backend_state`` so that a handle can be
    rebuilt after a restart.
    """
    site_id: str
    backend: str
    domain: str
    root_path: str
    config: SiteConfig
    state: dict = field(default_factory=dict)

    @property
    def content_path(self) -> str:
        return os.path.join(self.root_path, 'wordpress')

    @property
    def resource_dir(self) -> str:
        return os.path.join(self.root_path, RESOURCE_DIR, self.backend)


@dataclass
class RunningInfo:
    port: int
    url: str
    state: dict = field(default_factory=dict)


@dataclass
class MigrationBundle:
    """Backend-neutral copy of a site: content archive plus database dump."""
    directory: str
    archive_path: str
    dump_path: str
    database_engine: str


def port_is_open(host: str, port: int, timeout: float = 0.5) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def dump_sqlite(database_path: str, dump_path: str) -> None:
    connection = sqlite3.connect(database_path)
    try:
        with open(dump_path, 'w', encoding='utf-8') as f:
            for line in connection.iterdump():
                f.write(f"{line}\n")
    finally:
        connection.close()


def load_sqlite(database_path: str, dump_path: str) -> None:
    """Replace the database at ``database_path`` with the contents of a dump."""
    if os.path.exists(database_path):
        os.remove(database_path)
    with open(dump_path, encoding='utf-8') as f:
        script = f.read()
    connection = sqlite3.connect(database_path)
    try:
        connection.executescript(script)
        connection.commit()
    finally:
        connection.close()


def tail(path: str, size: int = 2000) -> str:
    try:
        with open(path, 'rb') as f:
            f.seek(0, os.SEEK_END)
            f.seek(max(0, f.tell() - size))
            return f.read().decode('utf-8', errors='replace')
    except OSError:
        return ''


class BackendDriver(ABC):
    """Turns a site record into running or stopped OS resources."""

    name = ''
    ready_timeout = 30.0
    host = '127.0.0.1'

    @abstractmethod
    def available(self) -> bool:
        """Whether the backend can be used on this machine right now."""

    def require_available(self) -> None:
        if not self.available():
            raise BackendUnavailable(f"The {self.name} backend is not available")

    def handle_for(self, record, config: Optional[SiteConfig] = None) -> Handle:
        return Handle(
            site_id=str(record.pk),
            backend=self.name,
            domain=record.domain,
            root_path=record.root_path,
            config=config or record.site_config,
            state=dict(record.backend_state or {}),
        )

    @abstractmethod
    def provision(self, record, config: Optional[SiteConfig] = None) -> Handle:
        """Prepare everything needed to run the site without serving traffic."""

    @abstractmethod
    def start(self, handle: Handle, port: int) -> RunningInfo:
        """Bring the site to a serving state bound to ``port``."""

    @abstractmethod
    def stop(self, handle: Handle) -> None:
        """Tear down serving resources, keeping site data. Idempotent."""

    @abstractmethod
    def destroy(self, handle: Handle) -> None:
        """Remove all backend resources, never the content directory. Idempotent."""

    @abstractmethod
    def is_running(self, handle: Handle) -> bool:
        """Whether the backing process or stack is alive."""

    @abstractmethod
    def dump_database(self, handle: Handle, dump_path: str) -> None:
        """Write the site's database as SQL text to ``dump_path``."""

    @abstractmethod
    def load_database(self, handle: Handle, dump_path: str) -> None:
        """Load an SQL dump into the site's database resources."""

    def export(self, handle: Handle, bundle_dir: str) -> MigrationBundle:
        os.makedirs(bundle_dir, exist_ok=True)
        os.makedirs(handle.content_path, exist_ok=True)
        archive_path = shutil.make_archive(
            os.path.join(bundle_dir, 'content'), 'gztar', root_dir=handle.content_path
        )
        dump_path = os.path.join(bundle_dir, 'database.sql')
        self.dump_database(handle, dump_path)
        logger.info(f"Exported {handle.domain} from {self.name} backend to {bundle_dir}")
        return MigrationBundle(
            directory=bundle_dir,
            archive_path=archive_path,
            dump_path=dump_path,
            database_engine=handle.config.database_engine,
        )

    def import_bundle(self, handle: Handle, bundle: MigrationBundle) -> None:
        if not os.path.isdir(handle.content_path) or not os.listdir(handle.content_path):
            os.makedirs(handle.content_path, exist_ok=True)
            shutil.unpack_archive(bundle.archive_path, handle.content_path, 'gztar')
        self.load_database(handle, bundle.dump_path)
        logger.info(f"Imported bundle into {handle.domain} on {self.name} backend")

    def clone(self, handle: Handle, new_record) -> Handle:
        """Copy this site's backend resources (and content) for ``new_record``."""
        new_handle = self.provision(new_record)
        bundle_dir = os.path.join(new_handle.root_path, RESOURCE_DIR, 'clone')
        try:
            bundle = self.export(handle, bundle_dir)
            self.import_bundle(new_handle, bundle)
        except Exception:
            self.destroy(new_handle)
            raise
        finally:
            shutil.rmtree(bundle_dir, ignore_errors=True)
        return new_handle

    def wait_until_serving(self, port: int, timeout: Optional[float] = None) -> bool:
        deadline = time.monotonic() + (timeout if timeout is not None else self.ready_timeout)
        while time.monotonic() < deadline:
            if port_is_open(self.host, port):
                return True
            time.sleep(0.2)
        return False

    def site_url(self, port: int) -> str:
        return f"http://localhost:{port}"
