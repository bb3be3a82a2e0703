"""Polling of asynchronous compute operations to a terminal state."""
from __future__ import annotations

import time
from typing import Iterable, List

from google.api_core import exceptions as api_exceptions
from google.cloud import compute_v1

from . import logging_config
from .connection import TRANSIENT_ERRORS, ComputeConnection
from .errors import OperationFailedError
from .naming import short_name

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_PROVIDER)

DONE = compute_v1.Operation.Status.DONE

DEFAULT_RETRIES = 5
DESTROY_RETRIES = 10


def _refresh(connection: ComputeConnection, project: str,
             operation: compute_v1.Operation) -> compute_v1.Operation:
    # Snapshot deletion and other global operations carry no zone
    if operation.zone:
        return connection.zone_operations.wait(
            project=project, zone=short_name(operation.zone), operation=operation.name
        )
    return connection.global_operations.wait(project=project, operation=operation.name)


def raise_for_errors(operation: compute_v1.Operation, pool_name: str = "") -> None:
    """Raise OperationFailedError when a finished operation reports errors."""
    errors = [(e.code, e.message) for e in operation.error.errors]
    if not errors:
        return
    detail = " ".join(f"{code}:{message}" for code, message in errors)
    raise OperationFailedError(
        f"Pool {pool_name} operation {operation.name} ({operation.operation_type}) "
        f"failed with error: {detail}",
        errors=errors,
    )


def wait_for_operation(connection: ComputeConnection, project: str,
                       operation: compute_v1.Operation, retries: int = DEFAULT_RETRIES,
                       pool_name: str = "") -> compute_v1.Operation:
    """Block until ``operation`` is DONE and return the final handle.

    Transport failures while re-fetching are retried ``retries`` times in
    total before being raised. An operation record that disappears (404) is
    assumed finished and the last known handle is returned.

    Raises:
        OperationFailedError: the DONE operation carries sub-errors.
    """
    start = time.time()
    retries_left = retries
    while operation.status != DONE:
        try:
            operation = _refresh(connection, project, operation)
        except api_exceptions.NotFound:
            logger.debug("[%s] operation %s no longer exists, assuming done", pool_name, operation.name)
            return operation
        except TRANSIENT_ERRORS as e:
            if retries_left <= 0:
                raise
            retries_left -= 1
            logger.warning("[%s] polling %s failed (%s), %d retries left",
                           pool_name, operation.name, e, retries_left)

    raise_for_errors(operation, pool_name)
    logging_config.UnifiedLogger.log_operation(
        logger, pool_name, operation.name, "DONE", (time.time() - start) * 1000
    )
    return operation


def wait_for_operations(connection: ComputeConnection, project: str,
                        operations: Iterable[compute_v1.Operation], retries: int = DEFAULT_RETRIES,
                        pool_name: str = "") -> List[compute_v1.Operation]:
    """Fan-in: wait on every submitted operation, in submission order."""
    return [
        wait_for_operation(connection, project, operation, retries=retries, pool_name=pool_name)
        for operation in operations
    ]
