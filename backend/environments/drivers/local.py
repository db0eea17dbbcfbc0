"""
Local backend: PHP's built-in web server plus SQLite or a shared MySQL server.
"""
import json
import logging
import os
import shutil
import sqlite3
import subprocess
import time
from typing import Optional

import psutil
from django.conf import settings

from websites.config import ENGINE_SQLITE, SiteConfig
from ..commands import run_command
from ..errors import PortConflict, ProcessSpawnFailure
from ..utils import detect_php, process_matches
from .base import BackendDriver, Handle, RunningInfo, dump_sqlite, load_sqlite, port_is_open, tail

logger = logging.getLogger(__name__)


def schema_name(site_id: str) -> str:
    """Per-site MySQL schema, derived from the site id."""
    return f"wp_{site_id.replace('-', '')[:16]}"


class LocalDriver(BackendDriver):
    """Runs a site with ``php -S`` bound to the allocated port."""

    name = 'local'

    def __init__(self, php_binary: str = 'php', host: str = '127.0.0.1', stop_timeout: float = 10.0,
                 ready_timeout: float = 15.0, mysql: Optional[dict] = None):
        self.php_binary = php_binary
        self.host = host
        self.stop_timeout = stop_timeout
        self.ready_timeout = ready_timeout
        self.mysql = mysql or {}

    @classmethod
    def from_settings(cls) -> 'LocalDriver':
        return cls(
            php_binary=settings.PRESSDOCK_PHP_BINARY,
            host=settings.PRESSDOCK_BIND_HOST,
            stop_timeout=settings.PRESSDOCK_STOP_TIMEOUT,
            mysql={
                'host': settings.PRESSDOCK_MYSQL_HOST,
                'port': settings.PRESSDOCK_MYSQL_PORT,
                'user': settings.PRESSDOCK_MYSQL_USER,
                'password': settings.PRESSDOCK_MYSQL_PASSWORD,
            },
        )

    def available(self) -> bool:
        return detect_php(self.php_binary)['available']

    def provision(self, record, config: Optional[SiteConfig] = None) -> Handle:
        handle = self.handle_for(record, config)
        handle.state = {'document_root': handle.content_path}
        os.makedirs(handle.resource_dir, exist_ok=True)
        os.makedirs(handle.content_path, exist_ok=True)

        if handle.config.database_engine == ENGINE_SQLITE:
            database_path = self._database_path(handle)
            sqlite3.connect(database_path).close()
            handle.state['database_path'] = database_path
        else:
            schema = schema_name(handle.site_id)
            self._mysql(['-e', f'CREATE DATABASE IF NOT EXISTS `{schema}`;'])
            handle.state['database_schema'] = schema

        manifest = {
            'site_id': handle.site_id,
            'domain': handle.domain,
            'document_root': handle.content_path,
            'php_version': handle.config.php_version,
            'database': {
                'engine': handle.config.database_engine,
                'path': handle.state.get('database_path', ''),
                'schema': handle.state.get('database_schema', ''),
                'host': self.mysql.get('host', ''),
                'port': self.mysql.get('port', ''),
            },
        }
        with open(os.path.join(handle.resource_dir, 'site.json'), 'w') as f:
            json.dump(manifest, f, indent=2)
        logger.info(f"Provisioned local resources for {handle.domain}")
        return handle

    def start(self, handle: Handle, port: int) -> RunningInfo:
        # A leftover server from an earlier run would hold the old port
        self.stop(handle)
        os.makedirs(handle.resource_dir, exist_ok=True)
        os.makedirs(handle.content_path, exist_ok=True)
        log_path = os.path.join(handle.resource_dir, 'server.log')
        cmd = [self.php_binary, '-S', f'{self.host}:{port}', '-t', handle.content_path]

        with open(log_path, 'ab') as log_file:
            try:
                process = subprocess.Popen(
                    cmd,
                    cwd=handle.content_path,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as e:
                raise ProcessSpawnFailure(f"Could not start PHP server: {e}", site_id=handle.site_id)

        deadline = time.monotonic() + self.ready_timeout
        while time.monotonic() < deadline:
            if process.poll() is not None:
                output = tail(log_path)
                if 'Address already in use' in output:
                    raise PortConflict(f"Port {port} is already in use", site_id=handle.site_id)
                raise ProcessSpawnFailure(
                    f"PHP server exited with code {process.returncode}: {output.strip()[-500:]}",
                    site_id=handle.site_id,
                )
            if port_is_open(self.host, port):
                handle.state['pid'] = process.pid
                handle.state['port'] = port
                logger.info(f"PHP server for {handle.domain} running on port {port} (pid {process.pid})")
                return RunningInfo(port=port, url=self.site_url(port), state=dict(handle.state))
            time.sleep(0.2)

        process.kill()
        process.wait()
        raise ProcessSpawnFailure(
            f"PHP server did not accept connections on port {port} within {self.ready_timeout:.0f}s",
            site_id=handle.site_id,
        )

    def stop(self, handle: Handle) -> None:
        pid = handle.state.pop('pid', None)
        handle.state.pop('port', None)
        if not pid or not self._owns(pid, handle):
            return
        try:
            process = psutil.Process(pid)
            process.terminate()
            try:
                process.wait(timeout=self.stop_timeout)
            except psutil.TimeoutExpired:
                logger.warning(f"PHP server {pid} for {handle.domain} ignored SIGTERM, killing")
                process.kill()
                process.wait(timeout=self.stop_timeout)
        except psutil.NoSuchProcess:
            return
        logger.info(f"Stopped PHP server for {handle.domain} (pid {pid})")

    def destroy(self, handle: Handle) -> None:
        self.stop(handle)
        schema = handle.state.get('database_schema')
        if schema:
            self._mysql(['-e', f'DROP DATABASE IF EXISTS `{schema}`;'])
        shutil.rmtree(handle.resource_dir, ignore_errors=True)
        handle.state.clear()
        logger.info(f"Destroyed local resources for {handle.domain}")

    def is_running(self, handle: Handle) -> bool:
        pid = handle.state.get('pid')
        return bool(pid) and self._owns(pid, handle)

    def dump_database(self, handle: Handle, dump_path: str) -> None:
        if handle.config.database_engine == ENGINE_SQLITE:
            dump_sqlite(self._database_path(handle), dump_path)
            return
        schema = handle.state.get('database_schema') or schema_name(handle.site_id)
        output = self._mysql_command('mysqldump', ['--single-transaction', schema])
        with open(dump_path, 'w', encoding='utf-8') as f:
            f.write(output)

    def load_database(self, handle: Handle, dump_path: str) -> None:
        if handle.config.database_engine == ENGINE_SQLITE:
            database_path = self._database_path(handle)
            load_sqlite(database_path, dump_path)
            handle.state['database_path'] = database_path
            return
        schema = handle.state.get('database_schema') or schema_name(handle.site_id)
        with open(dump_path, encoding='utf-8') as f:
            self._mysql([schema], input_text=f.read())

    def _database_path(self, handle: Handle) -> str:
        return handle.state.get('database_path') or os.path.join(handle.resource_dir, 'database.sqlite')

    def _owns(self, pid: int, handle: Handle) -> bool:
        # Guards against a recycled pid belonging to an unrelated process
        return process_matches(pid, handle.content_path)

    def _mysql(self, args, input_text: Optional[str] = None) -> str:
        return self._mysql_command('mysql', args, input_text=input_text)

    def _mysql_command(self, program: str, args, input_text: Optional[str] = None) -> str:
        cmd = [
            program,
            '-h', str(self.mysql.get('host', '127.0.0.1')),
            '-P', str(self.mysql.get('port', 3306)),
            '-u', str(self.mysql.get('user', 'root')),
        ] + list(args)
        env = {'MYSQL_PWD': self.mysql['password']} if self.mysql.get('password') else None
        exit_code, stdout, stderr = run_command(cmd, env=env, input_text=input_text)
        if exit_code != 0:
            raise ProcessSpawnFailure(f"{program} failed: {stderr.strip()}")
        return stdout
