"""Common utilities shared by the feature engine."""

import logging
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 120,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def retry_on_conflict(
    fn: Callable[[], T],
    is_conflict: Callable[[Exception], bool],
    attempts: int = 5,
    backoff: float = 0.1,
) -> T:
    """Call fn until it succeeds or raises something other than a conflict.

    fn is expected to do a full fetch-mutate-write cycle so every attempt
    works on a fresh copy. Conflicts are retried up to `attempts` times with
    linear backoff; the last conflict is re-raised when attempts run out.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:
            if not is_conflict(e) or attempt == attempts:
                if is_conflict(e):
                    logger.warning(f"Giving up after {attempts} conflicting attempts")
                raise
            logger.debug(f"Conflict on attempt {attempt}/{attempts}, retrying...")
            if backoff:
                time.sleep(backoff * attempt)
    raise AssertionError("unreachable")


def wait_until(check: Callable[[], bool], timeout: float = 60, interval: float = 2) -> bool:
    """Poll check() until it returns True or the timeout elapses."""
    start = time.time()
    while True:
        if check():
            return True
        if time.time() - start >= timeout:
            return False
        time.sleep(interval)
