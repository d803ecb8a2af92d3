import os
import tempfile
from contextlib import contextmanager
from typing import Iterator, Optional

from filelock import FileLock, Timeout

from marketplace.config import settings
from marketplace.errors import ResourceBusy


def _locks_dir() -> str:
    path = os.path.join(tempfile.gettempdir(), "relay_marketplace_locks")
    os.makedirs(path, exist_ok=True)
    return path


@contextmanager
def package_lock(package_id: int, timeout: Optional[float] = None) -> Iterator[None]:
    """
    Serialise state changes on one package across requests and workers.

    The lock is held for the whole transaction, so callers must enter it
    before `smart_transaction` and leave it after the commit.
    """
    timeout = settings.PACKAGE_LOCK_TIMEOUT_SECONDS if timeout is None else timeout
    lock = FileLock(os.path.join(_locks_dir(), f"package_{package_id}.lock"))
    try:
        with lock.acquire(timeout=timeout):
            yield
    except Timeout:
        raise ResourceBusy("Package is being updated by another request; try again")
