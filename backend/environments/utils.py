"""
Environment utilities: detecting the PHP runtime and the container engine.
"""
import logging
import re
import secrets
import string
from typing import Dict

import psutil

from .commands import run_command

logger = logging.getLogger(__name__)

PHP_VERSION_RE = re.compile(r'PHP (\d+\.\d+\.\d+)')


def generate_password(length: int = 24) -> str:
    """Generate a random password safe to embed in a compose file."""
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))


def detect_php(php_binary: str = 'php') -> Dict:
    """Check whether a PHP CLI is installed and return its version."""
    exit_code, stdout, stderr = run_command([php_binary, '--version'], timeout=10)
    if exit_code != 0:
        logger.debug(f"PHP not available via {php_binary}: {stderr.strip()}")
        return {'available': False, 'version': '', 'path': ''}
    match = PHP_VERSION_RE.search(stdout)
    if not match:
        return {'available': False, 'version': '', 'path': ''}
    return {'available': True, 'version': match.group(1), 'path': php_binary}


def detect_docker(docker_binary: str = 'docker') -> Dict:
    """Check whether the Docker daemon answers and Compose v2 is installed."""
    exit_code, stdout, stderr = run_command(
        [docker_binary, 'info', '--format', '{{.ServerVersion}}'], timeout=10
    )
    if exit_code != 0:
        logger.debug(f"Docker not available: {stderr.strip()}")
        return {'available': False, 'version': '', 'compose': False}
    version = stdout.strip()
    exit_code, _, _ = run_command([docker_binary, 'compose', 'version'], timeout=10)
    return {'available': exit_code == 0, 'version': version, 'compose': exit_code == 0}


def process_matches(pid: int, needle: str) -> bool:
    """Return True if ``pid`` is alive and its command line contains ``needle``."""
    try:
        process = psutil.Process(pid)
        if process.status() == psutil.STATUS_ZOMBIE:
            return False
        return needle in ' '.join(process.cmdline())
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False
