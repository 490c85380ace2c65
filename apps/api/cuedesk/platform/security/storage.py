from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from cuedesk.metrics import observe_storage_transient_error
from cuedesk.platform.security.errors import TransientError


logger = logging.getLogger("cuedesk.authz.storage")


@contextmanager
def translate_storage_errors(operation: str) -> Iterator[None]:
    """Surface connection loss and pool exhaustion as a retryable error, never as a denial."""

    try:
        yield
    except (OperationalError, DisconnectionError, PoolTimeoutError) as exc:
        observe_storage_transient_error(operation)
        logger.warning("storage.transient_error", extra={"action": operation, "error": str(exc)})
        raise TransientError(details={"operation": operation}) from exc
