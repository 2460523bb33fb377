"""XLA environment helpers.

XLA reads its flags once, when the JAX backend initializes. Configuration here
is one-shot per process: the first call wins, later calls with a different
value only log that they came too late.
"""

from __future__ import annotations

import logging
import os

_EIGEN_FLAG = "--xla_cpu_multi_thread_eigen="
_CONFIGURED_THREADS: int | None = None


def _update_xla_flags(existing: str, n_threads: int) -> tuple[str, bool]:
    """Set the Eigen multi-threading flag in XLA_FLAGS for n_threads.

    XLA owns its intra-op pool size; the only knob it exposes through XLA_FLAGS
    is whether Eigen may use more than one thread.

    :param str existing: Existing XLA_FLAGS value.
    :param int n_threads: Desired thread count.
    :return tuple[str, bool]: (updated_flags, changed)
    """
    tokens = [tok for tok in existing.split() if tok]
    filtered = [tok for tok in tokens if not tok.startswith(_EIGEN_FLAG)]
    multi = "true" if int(n_threads) > 1 else "false"
    updated = [*filtered, f"{_EIGEN_FLAG}{multi}"]
    return " ".join(updated).strip(), updated != tokens


def configure_cpu_threads(n_threads: int, *, logger: logging.Logger | None = None) -> bool:
    """Pin the XLA CPU thread pool size.

    :param int n_threads: Thread count (already resolved, > 0).
    :param logger: Optional logger override.
    :return bool: True if this thread count is the one in effect.
    """
    global _CONFIGURED_THREADS
    log = logger or logging.getLogger(__name__)

    if _CONFIGURED_THREADS is not None:
        if _CONFIGURED_THREADS != int(n_threads):
            log.debug(
                "XLA threads already fixed at %d for this process; ignoring request for %d.",
                _CONFIGURED_THREADS,
                n_threads,
            )
        return _CONFIGURED_THREADS == int(n_threads)

    existing = os.environ.get("XLA_FLAGS", "")
    updated, changed = _update_xla_flags(existing, n_threads)
    if changed:
        os.environ["XLA_FLAGS"] = updated
        log.debug("Setting XLA_FLAGS=%s", updated)
    _CONFIGURED_THREADS = int(n_threads)
    return True


def configured_threads() -> int | None:
    """Thread count fixed by `configure_cpu_threads`, if any."""
    return _CONFIGURED_THREADS
