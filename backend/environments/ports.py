"""
Host port allocation for site web servers.
"""
import logging
import socket
import threading
from typing import Iterable, Optional, Set

from .errors import PortsExhausted

logger = logging.getLogger(__name__)


def is_port_free(port: int, host: str = '127.0.0.1') -> bool:
    """Return True if ``port`` can be bound on ``host`` right now."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


class PortAllocator:
    """Hands out host ports from a fixed pool.

    The reservation set and the bind test are both covered by one lock, so two
    concurrent ``reserve`` calls can never return the same port.
    """

    def __init__(self, start: int = 8080, end: int = 8999, host: str = '127.0.0.1'):
        if start > end:
            raise ValueError(f"Invalid port range {start}-{end}")
        self.start = start
        self.end = end
        self.host = host
        self._reserved: Set[int] = set()
        self._lock = threading.Lock()

    def reserve(self, preferred: Optional[int] = None, exclude: Iterable[int] = ()) -> int:
        excluded = set(exclude)
        with self._lock:
            candidates = []
            if preferred:
                candidates.append(preferred)
            candidates.extend(range(self.start, self.end + 1))
            for port in candidates:
                if port in self._reserved or port in excluded:
                    continue
                if not is_port_free(port, self.host):
                    logger.debug(f"Port {port} is bound by another process, probing next")
                    continue
                self._reserved.add(port)
                logger.debug(f"Reserved port {port}")
                return port
        raise PortsExhausted(f"No free port in range {self.start}-{self.end}")

    def release(self, port: Optional[int]) -> None:
        if not port:
            return
        with self._lock:
            self._reserved.discard(port)
        logger.debug(f"Released port {port}")

    def claim(self, port: int) -> None:
        """Mark ``port`` as reserved without a bind test (it belongs to a live site)."""
        with self._lock:
            self._reserved.add(port)

    def reserved(self) -> Set[int]:
        with self._lock:
            return set(self._reserved)
