#!/usr/bin/env python3
"""
Docker Image Freshness Monitor

This script lists every container known to the local Docker daemon, looks
up the image each one was created from in the registry, and reports which
containers are running an image older than the one currently published
for the same repository:tag.
"""

__version__ = "1.0.0"

import json
import sys
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional
import argparse
import os

import jsonschema

from docker_api import (ContainerRecord, DockerClient, DockerRuntime, MonitorError,
                        RuntimeUnavailable, DOCKER_SOCKET_PATH, REQUEST_TIMEOUT)
from freshness import (FreshnessVerdict, LocalImageMetadata, RemoteImageMetadata,
                       evaluate)
from hub_api import DEFAULT_REGISTRY_URL, RegistryClient, RegistryUnreachable
from image_ref import ImageReference, parse
from log_broadcast import BroadcastHandler, LogBroadcaster, broadcaster as default_broadcaster


# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "docker_socket": {"type": "string"},
        "registry_url": {"type": "string"},
        "request_timeout": {"type": "number", "exclusiveMinimum": 0},
        "max_workers": {"type": "integer", "minimum": 1}
    }
}

ProgressCallback = Callable[[str, Dict[str, Any]], None]


@dataclass
class ContainerResult:
    """Outcome of checking one container.

    ``local``, ``remote`` and ``verdict`` are None when the corresponding
    step could not run; ``error`` then says why.
    """
    container: ContainerRecord
    reference: Optional[ImageReference] = None
    local: Optional[LocalImageMetadata] = None
    remote: Optional[RemoteImageMetadata] = None
    verdict: Optional[FreshnessVerdict] = None
    error: Optional[str] = None

    @property
    def has_update(self) -> bool:
        return self.verdict.has_update if self.verdict else False

    @property
    def days_since_update(self) -> int:
        return self.verdict.days_since_remote_update if self.verdict else 0

    def to_dict(self) -> Dict[str, Any]:
        remote_digest = self.remote.digest if self.remote else None
        latest_digest = remote_digest.split('@', 1)[-1] if remote_digest else None
        return {
            'containerId': self.container.id,
            'containerName': self.container.name,
            'image': self.container.image,
            'isRunning': self.container.running,
            'hasUpdate': self.has_update,
            'daysSinceUpdate': self.days_since_update,
            'latestDigest': latest_digest,
            'localDigest': self.local.digest if self.local else None,
            'remoteDigest': remote_digest,
            'hasRemoteDigest': bool(self.remote and self.remote.digest_available),
            'reason': self.verdict.rationale.value if self.verdict else None,
            'error': self.error,
        }


@dataclass
class CheckReport:
    """Result of one check over all containers."""
    success: bool
    results: List[ContainerResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def total_containers(self) -> int:
        return len(self.results)

    @property
    def containers_with_update(self) -> int:
        return sum(1 for r in self.results if r.has_update)

    def to_dict(self) -> Dict[str, Any]:
        report = {
            'success': self.success,
            'containers': [r.to_dict() for r in self.results],
            'totalContainers': self.total_containers,
            'containersWithUpdate': self.containers_with_update,
        }
        if self.error is not None:
            report['error'] = self.error
        return report


class ImageFreshnessMonitor:
    def __init__(self, config_file: Optional[str] = None, log_level: str = "INFO",
                 runtime: Optional[DockerRuntime] = None,
                 registry: Optional[RegistryClient] = None,
                 broadcaster: Optional[LogBroadcaster] = None):
        """
        Initialize the Image Freshness Monitor.

        Args:
            config_file: Path to JSON configuration file (optional)
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
            runtime: Local metadata reader (default: Docker over its Unix socket)
            registry: Remote metadata fetcher (default: Docker Hub tag endpoint)
            broadcaster: Receives every progress line (default: process-wide one)
        """
        self.config_file = config_file
        self.broadcaster = broadcaster or default_broadcaster

        # Setup logging
        self.logger = self._setup_logging(log_level)

        self.config = self._load_config()

        timeout = self.config.get('request_timeout', REQUEST_TIMEOUT)
        self.max_workers = self.config.get('max_workers', 1)
        self.runtime = runtime or DockerRuntime(
            DockerClient(self.config.get('docker_socket', DOCKER_SOCKET_PATH), timeout)
        )
        self.registry = registry or RegistryClient(
            self.config.get('registry_url', DEFAULT_REGISTRY_URL), timeout
        )

    def _setup_logging(self, level: str) -> logging.Logger:
        """Setup logging configuration."""
        logger = logging.getLogger('ImageFreshnessMonitor')
        logger.setLevel(getattr(logging, level.upper()))

        if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        # One broadcast handler per process, pointed at the latest broadcaster
        for h in [h for h in logger.handlers if isinstance(h, BroadcastHandler)]:
            logger.removeHandler(h)
        logger.addHandler(BroadcastHandler(self.broadcaster))

        return logger

    def _load_config(self) -> Dict[str, Any]:
        """Load and validate configuration from JSON file."""
        if not self.config_file:
            return {}

        try:
            with open(self.config_file, 'r') as f:
                config = json.load(f)

            # Validate against schema
            jsonschema.validate(config, CONFIG_SCHEMA)
            return config

        except FileNotFoundError:
            self.logger.error(f"Config file {self.config_file} not found")
            raise
        except json.JSONDecodeError as e:
            self.logger.error(f"Error parsing config file: {e}")
            raise
        except jsonschema.ValidationError as e:
            self.logger.error(f"Configuration validation failed: {e.message}")
            raise

    def _resolve_image(self, container: ContainerRecord) -> ContainerRecord:
        """Replace the listed image with the one from the container's config."""
        try:
            configured = self.runtime.inspect_container(container.id)
        except MonitorError as e:
            self.logger.warning(f"  Could not inspect {container.name}, using listed image: {e}")
            return container
        if configured and configured != container.image:
            return replace(container, image=configured)
        return container

    def check_container(self, container: ContainerRecord) -> ContainerResult:
        """Run the freshness pipeline for one container.

        Per-container failures never propagate; they produce a result
        without a verdict instead.
        """
        self.logger.info(f"Checking container: {container.name}")
        container = self._resolve_image(container)
        self.logger.info(f"  {container.name} uses image {container.image}")

        reference = parse(container.image)
        self.logger.info(f"  Parsed reference: repository={reference.repository}, tag={reference.tag}")

        try:
            local = self.runtime.inspect_image(container.image)
        except MonitorError as e:
            self.logger.warning(f"  Cannot read local image for {container.name}: {e}")
            return ContainerResult(container, reference, error=f"cannot read local image: {e}")

        created = local.created_at.isoformat() if local.created_at else 'unknown'
        self.logger.info(f"  Local image created {created}, digest {local.digest or 'none'}")

        try:
            remote = self.registry.fetch(reference)
        except RegistryUnreachable as e:
            self.logger.warning(f"  Registry lookup failed for {reference}: {e}")
            return ContainerResult(container, reference, local, error=f"registry unreachable: {e}")

        updated = remote.last_updated_at.isoformat() if remote.last_updated_at else 'unknown'
        digest = remote.digest if remote.digest_available else 'cannot determine digest'
        self.logger.info(f"  Remote image updated {updated}, digest {digest}")

        verdict = evaluate(local, remote)
        if verdict.has_update:
            self.logger.info(
                f"  UPDATE AVAILABLE for {container.name}: published "
                f"{verdict.days_since_remote_update} day(s) ago ({verdict.rationale.value})"
            )
        else:
            self.logger.info(f"  {container.name} is up to date ({verdict.rationale.value})")

        return ContainerResult(container, reference, local, remote, verdict)

    def _check_container_safely(self, container: ContainerRecord) -> ContainerResult:
        try:
            return self.check_container(container)
        except Exception as e:
            self.logger.exception(f"  Unexpected error checking {container.name}")
            return ContainerResult(container, error=f"unexpected error: {e}")

    def check_all(self, progress_callback: Optional[ProgressCallback] = None) -> CheckReport:
        """Check every container and build the report.

        Only a failure to list containers fails the whole check.

        Args:
            progress_callback: Optional function(event_type, data) called for progress updates
        """
        self.logger.info("Starting image update check...")
        try:
            containers = self.runtime.list_containers()
        except RuntimeUnavailable as e:
            self.logger.error(f"Check failed: {e}")
            return CheckReport(success=False, error=str(e))

        total = len(containers)
        self.logger.info(f"Found {total} container(s)")

        def run(indexed):
            idx, container = indexed
            if progress_callback:
                progress_callback('checking_container', {
                    'container': container.name,
                    'progress': idx,
                    'total': total
                })
            result = self._check_container_safely(container)
            if progress_callback:
                progress_callback('container_checked', result.to_dict())
            return result

        indexed = list(enumerate(containers, 1))
        if self.max_workers > 1 and total > 1:
            # map() yields in submission order, so discovery order is kept
            with ThreadPoolExecutor(max_workers=min(self.max_workers, total)) as executor:
                results = list(executor.map(run, indexed))
        else:
            results = [run(item) for item in indexed]

        report = CheckReport(success=True, results=results)
        self.logger.info(
            f"Check complete: {report.containers_with_update} of "
            f"{report.total_containers} container(s) need an update"
        )
        return report

    def run_once(self, as_json: bool = False) -> CheckReport:
        """Run a check and print the JSON report if asked."""
        report = self.check_all()
        if as_json:
            print(json.dumps(report.to_dict(), indent=2))
        elif report.success:
            for result in report.results:
                if result.has_update:
                    self.logger.info(f"{result.container.name}: {result.container.image} is outdated")
        return report


def main():
    parser = argparse.ArgumentParser(
        description='Report containers running outdated images'
    )
    parser.add_argument(
        'config',
        nargs='?',
        default=os.environ.get('CONFIG_FILE'),
        help='Path to configuration JSON file (env: CONFIG_FILE, optional)'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print the report as JSON on stdout'
    )
    parser.add_argument(
        '--daemon',
        action='store_true',
        default=os.environ.get('DAEMON', '').lower() == 'true',
        help='Run continuously, checking at intervals (env: DAEMON)'
    )
    parser.add_argument(
        '--interval',
        type=int,
        default=int(os.environ.get('CHECK_INTERVAL', '3600')),
        help='Check interval in seconds when running as daemon (env: CHECK_INTERVAL, default: 3600)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    args = parser.parse_args()

    try:
        monitor = ImageFreshnessMonitor(args.config, args.log_level)

        if args.daemon:
            monitor.logger.info(f"Running in daemon mode, checking every {args.interval} seconds")
            while True:
                try:
                    monitor.run_once(args.json)
                    monitor.logger.info(f"Sleeping for {args.interval} seconds...")
                    time.sleep(args.interval)
                except KeyboardInterrupt:
                    monitor.logger.info("Exiting...")
                    break
                except Exception as e:
                    monitor.logger.error(f"Error during update check: {e}")
                    time.sleep(args.interval)
        else:
            report = monitor.run_once(args.json)
            if not report.success:
                sys.exit(1)

    except Exception as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
