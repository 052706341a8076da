"""
Local metadata reader backed by the Docker Engine API.

Requests go straight to the Engine API over its Unix socket through a
requests session, so no docker CLI or SDK is needed inside the container.
"""

import logging
import os
import socket as _socket
from dataclasses import dataclass
from typing import Any, Dict, List
from urllib.parse import quote

import requests
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool
from requests.adapters import HTTPAdapter as _HTTPAdapter

from freshness import LocalImageMetadata, parse_timestamp

logger = logging.getLogger(__name__)

DOCKER_SOCKET_PATH = os.environ.get('DOCKER_SOCKET', '/var/run/docker.sock')
REQUEST_TIMEOUT = 10


class MonitorError(Exception):
    """Base class for errors raised while checking images."""


class RuntimeUnavailable(MonitorError):
    """The container runtime could not be reached or answered with an error."""


class ImageNotFoundLocally(MonitorError):
    """The image a container was created from is no longer present."""


class ContainerNotFound(MonitorError):
    """The container disappeared between listing and inspection."""


@dataclass(frozen=True)
class ContainerRecord:
    """Snapshot of one container taken at the start of a check."""
    id: str
    name: str
    image: str
    running: bool


# ---------------------------------------------------------------------------
# Unix socket transport
# ---------------------------------------------------------------------------

class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool backed by a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that routes all requests through a Unix socket.

    One pool is shared by every request so keep-alive connections are reused.
    """

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        self._pool = None
        super().__init__()

    def _get_pool(self) -> _UnixSocketPool:
        if self._pool is None:
            self._pool = _UnixSocketPool(self._socket_path)
        return self._pool

    def get_connection(self, url: str, proxies=None):
        return self._get_pool()

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return self._get_pool()

    def close(self):
        super().close()
        if self._pool is not None:
            self._pool.close()
            self._pool = None


class DockerClient:
    """Minimal read-only Docker Engine API client over the Unix socket."""

    def __init__(self, socket_path: str = DOCKER_SOCKET_PATH, timeout: float = REQUEST_TIMEOUT):
        self.timeout = timeout
        self._session = requests.Session()
        self._session.mount('http+unix://', _UnixSocketAdapter(socket_path))

    def _url(self, path: str) -> str:
        return f'http+unix://docker{path}'

    def get(self, path: str, **kwargs) -> requests.Response:
        r = self._session.get(self._url(path), timeout=self.timeout, **kwargs)
        r.raise_for_status()
        return r

    def close(self):
        self._session.close()


# ---------------------------------------------------------------------------

def _status_of(error: requests.HTTPError):
    return error.response.status_code if error.response is not None else None


class DockerRuntime:
    """Reads containers and image metadata from the local Docker daemon."""

    def __init__(self, client: DockerClient = None):
        self._docker = client or DockerClient()

    def ping(self) -> bool:
        """Return True when the daemon answers ``/_ping``."""
        try:
            self._docker.get('/_ping')
            return True
        except requests.RequestException as e:
            logger.debug(f"Docker ping failed: {e}")
            return False

    def list_containers(self) -> List[ContainerRecord]:
        """List all containers, stopped ones included, in daemon order.

        Raises:
            RuntimeUnavailable: the daemon cannot be queried
        """
        try:
            response = self._docker.get('/containers/json', params={'all': '1'})
            entries = response.json()
        except requests.RequestException as e:
            raise RuntimeUnavailable(f"Failed to list containers: {e}") from e
        except ValueError as e:
            raise RuntimeUnavailable(f"Invalid container list from Docker: {e}") from e

        containers = []
        for entry in entries or []:
            # API returns Names as a list with leading slashes, e.g. ["/mycontainer"]
            names = entry.get('Names') or []
            container_id = entry.get('Id', '')
            name = names[0].lstrip('/') if names else container_id[:12]
            containers.append(ContainerRecord(
                id=container_id,
                name=name,
                image=entry.get('Image', ''),
                running=entry.get('State', '') == 'running',
            ))
        return containers

    def inspect_container(self, container_id: str) -> str:
        """Return the image reference a container was configured with.

        Raises:
            ContainerNotFound: the container no longer exists
            RuntimeUnavailable: the daemon cannot be queried
        """
        try:
            response = self._docker.get(f'/containers/{container_id}/json')
            info: Dict[str, Any] = response.json()
        except requests.HTTPError as e:
            if _status_of(e) == 404:
                raise ContainerNotFound(f"Container '{container_id}' not found") from e
            raise RuntimeUnavailable(f"Error inspecting container '{container_id}': {e}") from e
        except requests.RequestException as e:
            raise RuntimeUnavailable(f"Error inspecting container '{container_id}': {e}") from e
        except ValueError as e:
            raise RuntimeUnavailable(f"Invalid inspect output for '{container_id}': {e}") from e

        return (info.get('Config') or {}).get('Image') or ''

    def inspect_image(self, image_ref: str) -> LocalImageMetadata:
        """Read the digest and creation time of a local image.

        The digest is the first entry of ``RepoDigests`` (``repo@sha256:...``),
        or None for images that were built locally and never pushed or pulled.

        Raises:
            ImageNotFoundLocally: the image is not present in the daemon
            RuntimeUnavailable: the daemon cannot be queried
        """
        try:
            response = self._docker.get(f'/images/{quote(image_ref, safe="/:@")}/json')
            info: Dict[str, Any] = response.json()
        except requests.HTTPError as e:
            if _status_of(e) == 404:
                raise ImageNotFoundLocally(f"Image '{image_ref}' not found locally") from e
            raise RuntimeUnavailable(f"Error inspecting image '{image_ref}': {e}") from e
        except requests.RequestException as e:
            raise RuntimeUnavailable(f"Error inspecting image '{image_ref}': {e}") from e
        except ValueError as e:
            raise RuntimeUnavailable(f"Invalid inspect output for image '{image_ref}': {e}") from e

        repo_digests = info.get('RepoDigests') or []
        return LocalImageMetadata(
            digest=repo_digests[0] if repo_digests else None,
            created_at=parse_timestamp(info.get('Created')),
        )
