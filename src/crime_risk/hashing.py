"""
Hashing and provenance sidecars.

Each main output gets a `<stem>_metadata.json` sidecar recording the input
file hashes, the config digest, the git commit and the library versions, so
a table can be traced back to the run that built it. Raw downloads are
recorded in `data/raw/_manifest.json`.
"""

import hashlib
import json
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from crime_risk.io_utils import atomic_write_json, read_json
from crime_risk.logging_utils import get_versions
from crime_risk.paths import METADATA_DIR, RAW_DIR


def hash_file(path: Union[str, Path], algorithm: str = "sha256") -> str:
    """
    Hex digest of a file, read in chunks.

    Raises:
        FileNotFoundError: If the file does not exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Cannot hash non-existent file: {path}")

    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def hash_dict(d: Dict[str, Any], algorithm: str = "sha256") -> str:
    """Digest of a dictionary via key-sorted JSON."""
    h = hashlib.new(algorithm)
    h.update(json.dumps(d, sort_keys=True, default=str).encode("utf-8"))
    return h.hexdigest()


def _git(*args: str) -> Optional[str]:
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def get_git_info() -> Dict[str, Any]:
    """Current commit and dirty flag (None outside a git checkout)."""
    status = _git("status", "--porcelain")
    return {
        "commit": _git("rev-parse", "HEAD"),
        "dirty": None if status is None else len(status) > 0,
    }


def create_metadata_sidecar(
    output_path: Union[str, Path],
    inputs: Dict[str, str],
    config: Dict[str, Any],
    run_id: str,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build the metadata dict for an output file.

    Missing inputs are recorded with `hash: None, missing: True` rather than
    failing; the stage that produced the output has already succeeded.
    """
    input_hashes = {}
    for name, path in inputs.items():
        path = Path(path)
        if path.exists():
            input_hashes[name] = {"path": str(path), "hash": hash_file(path)}
        else:
            input_hashes[name] = {"path": str(path), "hash": None, "missing": True}

    metadata = {
        "output_file": str(output_path),
        "run_id": run_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "inputs": input_hashes,
        "config_digest": hash_dict(config),
        "git": get_git_info(),
        "versions": get_versions(),
    }
    if extra:
        metadata["extra"] = extra

    return metadata


def write_metadata_sidecar(
    output_path: Union[str, Path],
    inputs: Dict[str, str],
    config: Dict[str, Any],
    run_id: str,
    extra: Optional[Dict[str, Any]] = None,
    metadata_dir: Optional[Path] = None,
) -> Path:
    """
    Write `<output stem>_metadata.json` into the metadata directory.

    Returns:
        Path to the written sidecar file
    """
    metadata_dir = metadata_dir or METADATA_DIR
    output_path = Path(output_path)

    metadata = create_metadata_sidecar(output_path, inputs, config, run_id, extra)
    sidecar_path = metadata_dir / f"{output_path.stem}_metadata.json"
    atomic_write_json(metadata, sidecar_path)

    return sidecar_path


def append_to_manifest(
    entry: Dict[str, Any],
    manifest_path: Optional[Path] = None,
) -> Path:
    """
    Append a download record to the raw-data manifest.

    The record gets the sha256 of its `file_path` if that file exists.
    """
    manifest_path = manifest_path or RAW_DIR / "_manifest.json"
    manifest = read_json(manifest_path) if manifest_path.exists() else {"downloads": []}

    entry = dict(entry)
    file_path = entry.get("file_path")
    if file_path and Path(file_path).exists():
        entry["sha256"] = hash_file(file_path)

    manifest["downloads"].append(entry)
    manifest["last_updated"] = datetime.now(timezone.utc).isoformat()
    atomic_write_json(manifest, manifest_path)

    return manifest_path
