"""Persistence (Orbax) for base models and LoRA adapters.

Stance:
- An adapter that cannot be reloaded onto the same base model is not an
  adapter; it is a pile of floats. Every artifact carries enough JSON metadata
  to rebuild its skeleton before Orbax restores the arrays.
- Orbax only ever sees a flat `{"0000": array, ...}` dict. Pytree structure
  comes from the skeleton the caller builds, never from the files.

Layouts:

    <model_dir>/model_config.json     architecture + tokenizer + versions
    <model_dir>/params/               Orbax StandardCheckpointer tree

    <adapter_dir>/adapter_config.json rank, alpha, skip_layers + versions
    <adapter_dir>/params/             Orbax StandardCheckpointer tree
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import jax

from lorafit.utils.tree import abstract_tree

logger = logging.getLogger(__name__)

MODEL_CONFIG = "model_config.json"
ADAPTER_CONFIG = "adapter_config.json"
PARAMS_DIR = "params"


@dataclass(frozen=True)
class ArtifactMeta:
    """Metadata stored alongside a saved model or adapter.

    Keep this JSON-serializable.
    """

    kind: str
    timestamp: str

    # Versions for debugging (not for strict gating)
    python: str
    jax: str | None
    orbax: str | None
    lorafit: str

    # What the skeleton needs
    config: dict[str, Any]

    # Parameter count, checked on restore
    n_leaves: int

    def to_dict(self) -> dict[str, Any]:
        """Convert metadata to a JSON-serializable dictionary.

        :return dict[str, Any]: All fields as a nested dict.
        """
        return asdict(self)


def _safe_version(pkg: str) -> str | None:
    """Get package version string, returning None if not installed.

    :param str pkg: Package name to look up.
    :return str | None: Version string or None if unavailable.
    """
    try:
        import importlib.metadata as im

        return im.version(pkg)
    except Exception:
        return None


def build_meta(*, kind: str, config: dict[str, Any], n_leaves: int) -> ArtifactMeta:
    """Build artifact metadata with version info.

    :param str kind: "model" or "adapter".
    :param dict[str, Any] config: What is needed to rebuild the skeleton.
    :param int n_leaves: Number of array leaves saved.
    :return ArtifactMeta: Populated metadata object.
    """
    import platform

    return ArtifactMeta(
        kind=kind,
        timestamp=datetime.now().isoformat(timespec="seconds"),
        python=platform.python_version(),
        jax=_safe_version("jax"),
        orbax=_safe_version("orbax-checkpoint"),
        lorafit=_safe_version("lorafit") or "0.0.0",
        config=config,
        n_leaves=int(n_leaves),
    )


def _flat(tree: Any) -> dict[str, Any]:
    leaves = jax.tree_util.tree_leaves(tree)
    return {f"{i:04d}": leaf for i, leaf in enumerate(leaves)}


def _save_params(directory: Path, params: Any) -> int:
    import orbax.checkpoint as ocp

    flat = _flat(params)
    ckptr = ocp.StandardCheckpointer()
    ckptr.save(directory.resolve() / PARAMS_DIR, flat, force=True)
    ckptr.wait_until_finished()
    return len(flat)


def _restore_params(directory: Path, like: Any) -> Any:
    """Restore arrays into the structure of `like` (a params pytree skeleton)."""
    import orbax.checkpoint as ocp

    leaves, treedef = jax.tree_util.tree_flatten(like)
    target = abstract_tree({f"{i:04d}": leaf for i, leaf in enumerate(leaves)})
    ckptr = ocp.StandardCheckpointer()
    restored = ckptr.restore(directory.resolve() / PARAMS_DIR, target)
    return jax.tree_util.tree_unflatten(treedef, [restored[k] for k in sorted(restored)])


def _write_json(path: Path, meta: ArtifactMeta) -> None:
    path.write_text(json.dumps(meta.to_dict(), indent=2, sort_keys=True))


def _read_json(path: Path, *, kind: str) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"{path.name} not found in {path.parent}. Is this a lorafit {kind}?")
    data = json.loads(path.read_text())
    if data.get("kind") != kind:
        raise ValueError(f"{path} describes a {data.get('kind')!r}, expected {kind!r}")
    return data


# ------------------------------ Models -------------------------------------


def save_model(directory: str | Path, params: Any, *, config: dict[str, Any]) -> Path:
    """Save base model weights and their metadata.

    :param directory: Target model directory (created if missing).
    :param Any params: Array-only params pytree (eqx.filter(model, eqx.is_array)).
    :param dict[str, Any] config: {"architecture": {...}, "tokenizer": {...}}.
    :return Path: The model directory.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    n = _save_params(directory, params)
    _write_json(directory / MODEL_CONFIG, build_meta(kind="model", config=config, n_leaves=n))
    logger.info("Saved model (%d tensors) to %s", n, directory)
    return directory


def read_model_config(directory: str | Path) -> dict[str, Any]:
    """Read the JSON side of a saved model.

    :param directory: Model directory.
    :raises FileNotFoundError: If model_config.json is missing.
    :return dict[str, Any]: The stored `config` block.
    """
    return _read_json(Path(directory) / MODEL_CONFIG, kind="model")["config"]


def restore_model_params(directory: str | Path, like: Any) -> Any:
    """Restore base model weights into the structure of a skeleton.

    :param directory: Model directory.
    :param Any like: Params pytree skeleton with matching shapes.
    :return Any: Restored params pytree.
    """
    return _restore_params(Path(directory), like)


# ------------------------------ Adapters -----------------------------------


def save_adapter(directory: str | Path, params: Any, *, config: dict[str, Any]) -> Path:
    """Save LoRA adapter tensors and their metadata.

    :param directory: Target adapter directory (created if missing).
    :param Any params: Array-only adapter pytree.
    :param dict[str, Any] config: {"rank", "alpha", "skip_layers", "d_model", "num_layers"}.
    :return Path: The adapter directory.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    n = _save_params(directory, params)
    _write_json(directory / ADAPTER_CONFIG, build_meta(kind="adapter", config=config, n_leaves=n))
    logger.debug("Saved adapter (%d tensors) to %s", n, directory)
    return directory


def read_adapter_config(directory: str | Path) -> dict[str, Any]:
    """Read the JSON side of a saved adapter.

    :param directory: Adapter directory.
    :raises FileNotFoundError: If adapter_config.json is missing.
    :return dict[str, Any]: The stored `config` block.
    """
    return _read_json(Path(directory) / ADAPTER_CONFIG, kind="adapter")["config"]


def restore_adapter_params(directory: str | Path, like: Any) -> Any:
    """Restore adapter tensors into the structure of a skeleton.

    :param directory: Adapter directory.
    :param Any like: Adapter params skeleton with matching shapes.
    :return Any: Restored adapter params pytree.
    """
    return _restore_params(Path(directory), like)
