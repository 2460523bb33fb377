"""Device selection utilities.

`n_gpu_layers` is the offload knob of the original runtime. The reference
engine is small enough that a model is either fully on an accelerator or fully
on CPU, so any positive value means "use the first accelerator if there is one".

Silent CPU fallback hides real problems, so it is always logged.
"""

from __future__ import annotations

import logging

import jax

logger = logging.getLogger(__name__)


def select_device(n_gpu_layers: int) -> jax.Device:
    """Pick the device a model should live on.

    :param int n_gpu_layers: <= 0 forces CPU; > 0 prefers an accelerator.
    :raises RuntimeError: If JAX reports no devices at all.
    :return jax.Device: The chosen device.
    """
    devs = jax.devices()
    if not devs:
        raise RuntimeError("JAX reports no devices. JAX installation is broken.")

    if n_gpu_layers <= 0:
        try:
            return jax.devices("cpu")[0]
        except RuntimeError:
            return devs[0]

    for dev in devs:
        if dev.platform != "cpu":
            return dev
    logger.warning("n_gpu_layers=%d requested but no accelerator found; using CPU.", n_gpu_layers)
    return devs[0]

