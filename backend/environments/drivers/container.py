"""
Container backend: a Docker Compose stack of web server, PHP-FPM and database.
"""
import json
import logging
import os
import shutil
import sqlite3
import time
from typing import Optional, Tuple

from django.conf import settings

from websites.config import (
    ENGINE_SQLITE,
    ENVIRONMENT_CONTAINER,
    WEB_SERVER_APACHE,
    SiteConfig,
)
from ..commands import run_command
from ..errors import BackendUnavailable, PortConflict, ProcessSpawnFailure
from ..utils import detect_docker, generate_password
from .base import BackendDriver, Handle, RunningInfo, dump_sqlite, load_sqlite

logger = logging.getLogger(__name__)

COMPOSE_FILE = 'docker-compose.json'
DB_NAME = 'wordpress'
DB_USER = 'wordpress'
SQLITE_MOUNT = '/var/www/pressdock/database.sqlite'
PORT_CONFLICT_MARKERS = ('port is already allocated', 'address already in use')


def render_nginx_config(domain: str) -> str:
    """Server block for the nginx container, passing PHP to the php service."""
    return f"""server {{
    listen 80;
    server_name {domain} www.{domain} localhost;
    root /var/www/html;
    index index.php index.html;

    client_max_body_size 64M;

    location / {{
        try_files $uri $uri/ /index.php?$args;
    }}

    location ~ \\.php$ {{
        fastcgi_pass php:9000;
        fastcgi_index index.php;
        fastcgi_param SCRIPT_FILENAME $document_root$fastcgi_script_name;
        include fastcgi_params;
    }}

    location ~ /\\.ht {{
        deny all;
    }}
}}
"""


def project_name(site_id: str) -> str:
    return f"pressdock_{site_id.replace('-', '')[:12]}".lower()


class ContainerDriver(BackendDriver):
    """Runs a site as a Compose project named after the site id."""

    name = ENVIRONMENT_CONTAINER

    def __init__(self, docker_binary: str = 'docker', host: str = '127.0.0.1', ready_timeout: float = 60.0,
                 command_timeout: Optional[float] = None):
        self.docker_binary = docker_binary
        self.host = host
        self.ready_timeout = ready_timeout
        self.command_timeout = command_timeout

    @classmethod
    def from_settings(cls) -> 'ContainerDriver':
        return cls(
            docker_binary=settings.PRESSDOCK_DOCKER_BINARY,
            host=settings.PRESSDOCK_BIND_HOST,
            command_timeout=settings.PRESSDOCK_COMMAND_TIMEOUT,
        )

    def available(self) -> bool:
        return detect_docker(self.docker_binary)['available']

    def provision(self, record, config: Optional[SiteConfig] = None) -> Handle:
        self.require_available()
        config = config or record.site_config
        if not config.images:
            config = config.derive_for(ENVIRONMENT_CONTAINER)
        handle = self.handle_for(record, config)
        os.makedirs(handle.resource_dir, exist_ok=True)
        os.makedirs(handle.content_path, exist_ok=True)

        handle.state = {
            'project': project_name(handle.site_id),
            'compose_file': os.path.join(handle.resource_dir, COMPOSE_FILE),
            'db_password': generate_password(),
            'db_root_password': generate_password(),
        }
        if config.database_engine == ENGINE_SQLITE:
            database_path = os.path.join(handle.resource_dir, 'database.sqlite')
            sqlite3.connect(database_path).close()
            handle.state['database_path'] = database_path
        else:
            os.makedirs(os.path.join(handle.resource_dir, 'initdb'), exist_ok=True)
        if config.web_server != WEB_SERVER_APACHE:
            with open(os.path.join(handle.resource_dir, 'nginx.conf'), 'w') as f:
                f.write(render_nginx_config(handle.domain))

        self.write_compose_file(handle)
        logger.info(f"Provisioned container stack {handle.state['project']} for {handle.domain}")
        return handle

    def build_compose_spec(self, handle: Handle, port: Optional[int] = None) -> dict:
        config = handle.config
        images = config.images or config.derive_for(ENVIRONMENT_CONTAINER).images
        uses_db = config.database_engine != ENGINE_SQLITE
        content_mount = f"{handle.content_path}:/var/www/html"

        def labels(service: str) -> dict:
            return {
                'pressdock.site': handle.site_id,
                'pressdock.service': service,
                'pressdock.managed': 'true',
            }

        config_extra = "define('WP_DEBUG_LOG', true); define('WP_DEBUG_DISPLAY', false);"
        if config.multisite:
            config_extra += " define('WP_ALLOW_MULTISITE', true);"
        wordpress_env = {
            'WORDPRESS_DEBUG': '1',
            'WORDPRESS_CONFIG_EXTRA': config_extra,
        }
        php_volumes = [content_mount]
        if uses_db:
            wordpress_env.update({
                'WORDPRESS_DB_HOST': 'db:3306',
                'WORDPRESS_DB_NAME': DB_NAME,
                'WORDPRESS_DB_USER': DB_USER,
                'WORDPRESS_DB_PASSWORD': handle.state.get('db_password', ''),
            })
        else:
            php_volumes.append(f"{handle.state.get('database_path')}:{SQLITE_MOUNT}")
            wordpress_env['PRESSDOCK_SQLITE_PATH'] = SQLITE_MOUNT

        services = {}
        if config.web_server == WEB_SERVER_APACHE:
            services['web'] = {
                'image': images['web'],
                'environment': wordpress_env,
                'volumes': php_volumes,
                'labels': labels('web'),
                'restart': 'unless-stopped',
            }
        else:
            services['php'] = {
                'image': images['php'],
                'environment': wordpress_env,
                'volumes': php_volumes,
                'labels': labels('php'),
                'restart': 'unless-stopped',
            }
            services['web'] = {
                'image': images['web'],
                'volumes': [
                    content_mount,
                    f"{os.path.join(handle.resource_dir, 'nginx.conf')}:/etc/nginx/conf.d/default.conf:ro",
                ],
                'depends_on': ['php'],
                'labels': labels('web'),
                'restart': 'unless-stopped',
            }
        if port:
            services['web']['ports'] = [f"{port}:80"]

        spec = {'name': handle.state['project'], 'services': services}
        if uses_db:
            services['db'] = {
                'image': images['db'],
                'environment': {
                    'MYSQL_ROOT_PASSWORD': handle.state.get('db_root_password', ''),
                    'MYSQL_DATABASE': DB_NAME,
                    'MYSQL_USER': DB_USER,
                    'MYSQL_PASSWORD': handle.state.get('db_password', ''),
                },
                'volumes': [
                    'db_data:/var/lib/mysql',
                    f"{os.path.join(handle.resource_dir, 'initdb')}:/docker-entrypoint-initdb.d:ro",
                ],
                'labels': labels('db'),
                'restart': 'unless-stopped',
            }
            dependant = 'web' if config.web_server == WEB_SERVER_APACHE else 'php'
            services[dependant]['depends_on'] = ['db']
            spec['volumes'] = {'db_data': {}}
        return spec

    def write_compose_file(self, handle: Handle, port: Optional[int] = None) -> str:
        # JSON is valid YAML, so Compose reads this file directly
        path = handle.state['compose_file']
        with open(path, 'w') as f:
            json.dump(self.build_compose_spec(handle, port), f, indent=2)
        return path

    def start(self, handle: Handle, port: int) -> RunningInfo:
        self.require_available()
        self.write_compose_file(handle, port)
        exit_code, _, stderr = self._compose(handle, 'up', '-d', '--remove-orphans')
        if exit_code != 0:
            if any(marker in stderr.lower() for marker in PORT_CONFLICT_MARKERS):
                self._compose(handle, 'down')
                raise PortConflict(f"Port {port} is already in use", site_id=handle.site_id)
            raise ProcessSpawnFailure(f"docker compose up failed: {stderr.strip()[-500:]}", site_id=handle.site_id)
        if not self.wait_until_serving(port):
            raise ProcessSpawnFailure(
                f"Web container did not accept connections on port {port} within {self.ready_timeout:.0f}s",
                site_id=handle.site_id,
            )
        handle.state['port'] = port
        logger.info(f"Container stack {handle.state['project']} running on port {port}")
        return RunningInfo(port=port, url=self.site_url(port), state=dict(handle.state))

    def stop(self, handle: Handle) -> None:
        handle.state.pop('port', None)
        if not self._has_stack(handle):
            return
        if not self.available():
            logger.warning(f"Container engine unavailable, cannot stop {handle.domain}")
            return
        exit_code, _, stderr = self._compose(handle, 'down')
        if exit_code != 0:
            raise ProcessSpawnFailure(f"docker compose down failed: {stderr.strip()}", site_id=handle.site_id)
        logger.info(f"Stopped container stack {handle.state['project']}")

    def destroy(self, handle: Handle) -> None:
        handle.state.pop('port', None)
        if self._has_stack(handle):
            if not self.available():
                raise BackendUnavailable(f"Cannot remove containers of {handle.domain}: container engine unavailable")
            exit_code, _, stderr = self._compose(handle, 'down', '-v', '--remove-orphans')
            if exit_code != 0:
                raise ProcessSpawnFailure(f"docker compose down failed: {stderr.strip()}", site_id=handle.site_id)
        shutil.rmtree(handle.resource_dir, ignore_errors=True)
        handle.state.clear()
        logger.info(f"Destroyed container resources for {handle.domain}")

    def is_running(self, handle: Handle) -> bool:
        if not self._has_stack(handle):
            return False
        exit_code, stdout, _ = self._compose(handle, 'ps', '--status', 'running', '-q')
        return exit_code == 0 and bool(stdout.strip())

    def dump_database(self, handle: Handle, dump_path: str) -> None:
        if handle.config.database_engine == ENGINE_SQLITE:
            dump_sqlite(handle.state['database_path'], dump_path)
            return
        self.require_available()
        started = False
        exit_code, stdout, _ = self._compose(handle, 'ps', '--status', 'running', '-q', 'db')
        if not stdout.strip():
            self._compose(handle, 'up', '-d', 'db')
            started = True
        try:
            self._wait_for_database(handle)
            exit_code, stdout, stderr = self._compose(
                handle, 'exec', '-T', 'db', 'mysqldump', '-uroot',
                f"-p{handle.state.get('db_root_password', '')}", '--single-transaction', DB_NAME,
            )
            if exit_code != 0:
                raise ProcessSpawnFailure(f"mysqldump in container failed: {stderr.strip()}", site_id=handle.site_id)
            with open(dump_path, 'w', encoding='utf-8') as f:
                f.write(stdout)
        finally:
            if started:
                self._compose(handle, 'stop', 'db')

    def load_database(self, handle: Handle, dump_path: str) -> None:
        if handle.config.database_engine == ENGINE_SQLITE:
            database_path = os.path.join(handle.resource_dir, 'database.sqlite')
            load_sqlite(database_path, dump_path)
            handle.state['database_path'] = database_path
            return
        # The database image imports initdb scripts when its volume is first created
        initdb = os.path.join(handle.resource_dir, 'initdb')
        os.makedirs(initdb, exist_ok=True)
        shutil.copyfile(dump_path, os.path.join(initdb, '10-import.sql'))

    def _wait_for_database(self, handle: Handle, timeout: float = 60.0) -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            exit_code, _, _ = self._compose(
                handle, 'exec', '-T', 'db', 'mysqladmin', 'ping', '-uroot',
                f"-p{handle.state.get('db_root_password', '')}", '--silent',
            )
            if exit_code == 0:
                return
            time.sleep(1)
        raise ProcessSpawnFailure(f"Database container of {handle.domain} did not become ready", site_id=handle.site_id)

    def _has_stack(self, handle: Handle) -> bool:
        compose_file = handle.state.get('compose_file')
        return bool(compose_file) and os.path.exists(compose_file)

    def _compose(self, handle: Handle, *args) -> Tuple[int, str, str]:
        cmd = [
            self.docker_binary, 'compose',
            '-p', handle.state['project'],
            '-f', handle.state['compose_file'],
        ] + list(args)
        return run_command(cmd, timeout=self.command_timeout, cwd=handle.resource_dir)
