"""Image reference parsing.

Turns the image string a container was created from into the canonical
repository/tag pair used to query the registry.
"""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"


@dataclass(frozen=True)
class ImageReference:
    """Normalized repository/tag pair."""
    repository: str
    tag: str

    def __str__(self) -> str:
        return f"{self.repository}:{self.tag}"


def _split_first(raw: str):
    repo, _, tag = raw.partition(':')
    return repo, tag


def _split_last(raw: str):
    repo, _, tag = raw.rpartition(':')
    return repo, tag


def parse(raw: str) -> ImageReference:
    """Parse an image reference, repairing anything malformed.

    Never raises.  Examples::

        nginx                                  -> library/nginx:latest
        nginx:1.25                             -> library/nginx:1.25
        myrepo/app                             -> myrepo/app:latest
        registry.example.com:5000/team/app:v2  -> registry.example.com:5000/team/app:v2
        nginx:1.25@sha256:abc                  -> library/nginx:1.25
    """
    # Digest-pinned references are looked up by their tag
    raw = raw.split('@', 1)[0]

    parts = raw.split('/')
    if len(parts) > 1:
        first = parts[0]
        if ':' in first and '.' in first:
            # host:port prefix, only the last colon can separate the tag
            repo, tag = _split_last(raw)
        else:
            repo, tag = _split_first(raw)
    else:
        repo, tag = _split_first(raw)

    if not tag or '/' in tag:
        if tag:
            logger.debug(f"Split of '{raw}' picked the wrong colon, using default tag")
        repo, tag = raw, DEFAULT_TAG

    if '/' not in repo:
        repo = f"{DEFAULT_NAMESPACE}/{repo}"

    return ImageReference(repository=repo, tag=tag)


def format_reference(ref: ImageReference) -> str:
    """Return ``repository:tag`` for a parsed reference."""
    return str(ref)
