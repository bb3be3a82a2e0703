"""Pooled Google Compute Engine client connections.

A connection bundles the compute_v1 clients the provider calls. The pool
hands out ``PooledConnection`` boxes: the box object is what circulates in
the pool, its ``connection`` attribute can be dropped and rebuilt so a
reconnect never changes the identity of the pooled object.
"""
from __future__ import annotations

import queue
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

import google.auth
import requests
from google.api_core import exceptions as api_exceptions
from google.cloud import compute_v1

from . import logging_config
from .errors import ConnectionPoolTimeout

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_PROVIDER)

SCOPES = [
    "https://www.googleapis.com/auth/compute",
    "https://www.googleapis.com/auth/cloud-platform",
]

# Failures of the transport rather than of the request itself
TRANSIENT_ERRORS = (
    api_exceptions.ServiceUnavailable,
    api_exceptions.DeadlineExceeded,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    ConnectionError,
    TimeoutError,
)


class ComputeConnection:
    """The set of compute_v1 clients used for one pooled connection."""

    def __init__(self, credentials=None):
        self.instances = compute_v1.InstancesClient(credentials=credentials)
        self.disks = compute_v1.DisksClient(credentials=credentials)
        self.snapshots = compute_v1.SnapshotsClient(credentials=credentials)
        self.zone_operations = compute_v1.ZoneOperationsClient(credentials=credentials)
        self.global_operations = compute_v1.GlobalOperationsClient(credentials=credentials)


def connect_to_gce(max_tries: int = 3, retry_factor: float = 10,
                   sleep: Callable[[float], None] = time.sleep) -> ComputeConnection:
    """Build a ComputeConnection from application default credentials.

    Failed attempts are retried with a linear backoff of
    ``attempt * retry_factor`` seconds; the last failure is raised.
    """
    attempt = 1
    while True:
        try:
            credentials, _ = google.auth.default(scopes=SCOPES)
            connection = ComputeConnection(credentials=credentials)
            logger.debug("Opened compute connection (attempt %d)", attempt)
            return connection
        except Exception as e:
            if attempt >= max_tries:
                logger.error("Failed to connect to GCE after %d attempts: %s", attempt, e)
                raise
            logger.warning("Failed to connect to GCE (attempt %d/%d): %s", attempt, max_tries, e)
            sleep(attempt * retry_factor)
            attempt += 1


class PooledConnection:
    """Mutable box around a ComputeConnection."""

    def __init__(self, connection: Optional[ComputeConnection] = None):
        self.connection = connection

    def reset(self) -> None:
        self.connection = None


class ConnectionPool:
    """Fixed-size pool of PooledConnection boxes.

    Boxes start empty and are connected on first use, see ``ensure_connection``.
    """

    def __init__(self, size: int, timeout: float,
                 connect: Callable[[], ComputeConnection] = connect_to_gce):
        if size < 1:
            raise ValueError(f"Invalid connection pool size: {size} (must be > 0)")
        self.size = size
        self.timeout = timeout
        self._connect = connect
        self._available: "queue.Queue[PooledConnection]" = queue.Queue(maxsize=size)
        for _ in range(size):
            self._available.put(PooledConnection())
        logger.debug("Created a connection pool of size %d with timeout %s", size, timeout)

    @contextmanager
    def checkout(self) -> Iterator[PooledConnection]:
        """Borrow a box for the duration of one logical call.

        The box is returned on every exit path. A transport failure empties
        the box so the next borrower reconnects.
        """
        try:
            box = self._available.get(timeout=self.timeout)
        except queue.Empty:
            raise ConnectionPoolTimeout(
                f"No compute connection available after {self.timeout}s"
            )
        try:
            yield box
        except TRANSIENT_ERRORS:
            logger.warning("Dropping compute connection after transport failure")
            box.reset()
            raise
        finally:
            self._available.put(box)

    def ensure_connection(self, box: PooledConnection) -> ComputeConnection:
        if box.connection is None:
            box.connection = self._connect()
        return box.connection

    @contextmanager
    def connection(self) -> Iterator[ComputeConnection]:
        """Checkout a box and yield a live connection from it."""
        with self.checkout() as box:
            yield self.ensure_connection(box)
