"""
Endpoint discovery: find the loopback port a worker process listens on.
"""

from dataclasses import dataclass
from typing import List, Optional

import psutil

from .errors import EndpointDiscoveryError

LOOPBACK_HOSTS = ("127.0.0.1", "::1", "localhost")


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    @property
    def base_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}/"


class PsutilEndpointDiscoverer:
    """
    Inspects the listening inet sockets of a pid.

    Loopback addresses win over wildcard binds. When the OS refuses
    introspection (common on macOS for other users' processes) the port the
    worker advertised in its readiness line is used instead.
    """

    def __init__(self, host: str = "127.0.0.1"):
        self.host = host

    @staticmethod
    def _is_process_alive(pid: int) -> bool:
        try:
            return psutil.pid_exists(pid)
        except psutil.Error:
            return False

    def _listening(self, pid: int) -> List[Endpoint]:
        proc = psutil.Process(pid)
        # net_connections() replaced connections() in psutil 6
        connections = getattr(proc, "net_connections", None) or proc.connections
        found = []
        for conn in connections(kind="inet"):
            if conn.status != psutil.CONN_LISTEN or not conn.laddr:
                continue
            found.append(Endpoint(conn.laddr.ip, conn.laddr.port))
        # Loopback first, then wildcard
        found.sort(key=lambda e: 0 if e.host in LOOPBACK_HOSTS else 1)
        return found

    def _routable(self, endpoint: Endpoint) -> Endpoint:
        if endpoint.host in ("0.0.0.0", "::"):
            return Endpoint(self.host, endpoint.port)
        return endpoint

    def discover(self, pid: int, advertised_port: Optional[int] = None) -> Endpoint:
        if not self._is_process_alive(pid):
            raise EndpointDiscoveryError(f"worker process {pid} is not running")

        try:
            candidates = self._listening(pid)
        except psutil.AccessDenied:
            candidates = []
        except psutil.NoSuchProcess:
            raise EndpointDiscoveryError(f"worker process {pid} exited during discovery")

        if advertised_port is not None:
            for endpoint in candidates:
                if endpoint.port == advertised_port:
                    return self._routable(endpoint)

        if candidates:
            return self._routable(candidates[0])

        if advertised_port:
            return Endpoint(self.host, advertised_port)

        raise EndpointDiscoveryError(f"no listening socket found for worker process {pid}")
