"""
Remote metadata fetcher for the Docker Hub tag metadata endpoint.

One GET per repository:tag; the response carries the tag's digest and
last update time, either at the top level or per platform image.
"""

import logging
from typing import Any, Dict, Optional

import requests

from docker_api import MonitorError
from freshness import RemoteImageMetadata, parse_timestamp
from image_ref import ImageReference

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_URL = "https://registry.hub.docker.com/v2/repositories/{repository}/tags/{tag}"
REQUEST_TIMEOUT = 10


class RegistryUnreachable(MonitorError):
    """The registry could not be queried or returned an unusable answer."""


def _resolve_digest(data: Dict[str, Any]) -> Optional[str]:
    """Top-level digest, else the first platform image exposing one."""
    if data.get('digest'):
        return data['digest']
    for image in data.get('images') or []:
        if isinstance(image, dict) and image.get('digest'):
            return image['digest']
    return None


def _resolve_last_updated(data: Dict[str, Any]):
    """Top-level last_updated, else the newest last_updated of the platform images."""
    top_level = parse_timestamp(data.get('last_updated'))
    if top_level is not None:
        return top_level

    timestamps = [
        parse_timestamp(image.get('last_updated'))
        for image in data.get('images') or []
        if isinstance(image, dict)
    ]
    timestamps = [ts for ts in timestamps if ts is not None]
    return max(timestamps) if timestamps else None


class RegistryClient:
    """Fetches the latest published metadata for a repository:tag."""

    def __init__(self, url_template: str = DEFAULT_REGISTRY_URL,
                 timeout: float = REQUEST_TIMEOUT, session: requests.Session = None):
        self.url_template = url_template
        self.timeout = timeout
        self._session = session or requests.Session()

    def url_for(self, ref: ImageReference) -> str:
        return self.url_template.format(repository=ref.repository, tag=ref.tag)

    def fetch(self, ref: ImageReference) -> RemoteImageMetadata:
        """Query the registry for ``ref``.

        A response without any digest is not an error: the returned metadata
        has ``digest_available`` set to False.

        Raises:
            RegistryUnreachable: network error, timeout, non-2xx status or a
                body that is not a JSON object
        """
        url = self.url_for(ref)
        try:
            response = self._session.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise RegistryUnreachable(f"Registry returned status {status} for {ref}") from e
        except requests.RequestException as e:
            raise RegistryUnreachable(f"Error querying registry for {ref}: {e}") from e
        except ValueError as e:
            raise RegistryUnreachable(f"Invalid registry response for {ref}: {e}") from e

        if not isinstance(data, dict):
            raise RegistryUnreachable(f"Unexpected registry response for {ref}")

        raw_digest = _resolve_digest(data)
        if raw_digest is None:
            logger.warning(f"Registry did not report a digest for {ref}")

        return RemoteImageMetadata(
            digest=f"{ref.repository}@{raw_digest}" if raw_digest else None,
            last_updated_at=_resolve_last_updated(data),
            digest_available=raw_digest is not None,
        )
