"""State-file locking, atomic JSON document writes and tolerant reads."""

from __future__ import annotations

import errno
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator

try:  # pragma: no cover - platform specific
    import msvcrt
except ImportError:  # pragma: no cover - platform specific
    msvcrt = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific
    import fcntl
except ImportError:  # pragma: no cover - platform specific
    fcntl = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

E_STATE_LOCKED = "E_STATE_LOCKED"
E_JSON_CORRUPT = "E_JSON_CORRUPT"
E_STATE_IO = "E_STATE_IO"

_TRANSIENT_REPLACE_WINERRORS = {5, 32, 33}
_TRANSIENT_REPLACE_ERRNOS = {errno.EACCES, errno.EBUSY, errno.EPERM}
_REPLACE_RETRIES = 8
_REPLACE_BASE_DELAY_SECONDS = 0.03


class StateFileLockError(RuntimeError):
    """Raised when the state-file lock cannot be acquired in time."""

    code = E_STATE_LOCKED


class StateWriteError(RuntimeError):
    """A state document could not be made durable.

    The caller's in-memory state is already mutated; retry the flush, not the
    logical operation.
    """

    code = E_STATE_IO

    def __init__(self, path: str, cause: BaseException) -> None:
        super().__init__(f"{E_STATE_IO}: write failed path={path} err={cause}")
        self.path = path
        self.cause = cause


def _ensure_lock_byte(handle: Any) -> None:
    handle.seek(0, os.SEEK_END)
    if handle.tell() == 0:
        handle.write(b"0")
        handle.flush()
        try:
            os.fsync(handle.fileno())
        except OSError:
            pass
    handle.seek(0)


def _try_lock(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
            return
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc


def _unlock(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def state_file_lock(
    target_path: str,
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
) -> Iterator[None]:
    """Hold `<state>.lock` exclusively for the duration of the block."""

    lock_path = f"{str(target_path)}.lock"
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    timeout = max(0.05, float(timeout_seconds))
    poll = max(0.01, float(poll_seconds))
    deadline = time.monotonic() + timeout

    handle = open(lock_path, "a+b")
    locked = False
    try:
        _ensure_lock_byte(handle)
        while True:
            try:
                _try_lock(handle)
                locked = True
                break
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise StateFileLockError(
                        f"{E_STATE_LOCKED}: state lock timeout path={target_path}"
                    ) from exc
                time.sleep(poll)
        yield
    finally:
        if locked:
            try:
                _unlock(handle)
            except OSError:
                pass
        handle.close()


def _replace_with_retry(tmp_path: str, abs_path: str) -> None:
    for attempt in range(_REPLACE_RETRIES + 1):
        try:
            os.replace(tmp_path, abs_path)
            return
        except OSError as exc:
            winerror = int(getattr(exc, "winerror", 0) or 0)
            transient = winerror in _TRANSIENT_REPLACE_WINERRORS or exc.errno in _TRANSIENT_REPLACE_ERRNOS
            if not transient or attempt >= _REPLACE_RETRIES:
                raise
            time.sleep(_REPLACE_BASE_DELAY_SECONDS * (1.5**attempt))


def atomic_write_json(path: str, payload: Any, *, indent: int = 2) -> None:
    """Write JSON via temp file + fsync + replace in the same directory."""

    abs_path = str(path)
    state_dir = os.path.dirname(abs_path) or "."
    os.makedirs(state_dir, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        prefix=f"{os.path.basename(abs_path)}.",
        suffix=".tmp",
        dir=state_dir,
        text=True,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=indent)
            f.flush()
            os.fsync(f.fileno())
        _replace_with_retry(tmp_path, abs_path)
    except BaseException:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def write_json_atomic_locked(
    path: str,
    payload: Any,
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
    indent: int = 2,
) -> None:
    """Acquire the file lock and write JSON atomically."""

    with state_file_lock(path, timeout_seconds=timeout_seconds, poll_seconds=poll_seconds):
        atomic_write_json(path, payload, indent=indent)


def read_json_document(
    path: str,
    default_factory: Callable[[], Any],
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
) -> Any:
    """Read a JSON document under the file lock.

    A missing file yields `default_factory()`. A corrupt file is moved aside
    to `<file>.corrupt-<unix ts>` and also yields the default.
    """

    if not os.path.exists(path):
        return default_factory()
    with state_file_lock(path, timeout_seconds=timeout_seconds, poll_seconds=poll_seconds):
        try:
            with open(path, "r", encoding="utf-8-sig") as f:
                return json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            quarantine = f"{path}.corrupt-{int(time.time())}"
            logger.error("%s: state document unreadable path=%s err=%s moved_to=%s", E_JSON_CORRUPT, path, exc, quarantine)
            os.replace(path, quarantine)
            return default_factory()
