"""Filesystem helpers: atomic writes, gzip-aware JSON and safe path segments."""

import gzip
import json
import os
import re
import tempfile
from pathlib import Path

GZIP_SUFFIX = ".gz"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_filename(name: str) -> str:
    """Replace every character outside [A-Za-z0-9_-] with an underscore."""
    return _UNSAFE_CHARS.sub("_", name)


def write_atomic(path: Path, data: bytes) -> None:
    """Write bytes to a sibling temp file, then rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_text(path: Path, text: str) -> None:
    write_atomic(path, text.encode("utf-8"))


def compressed_path(path: Path) -> Path:
    return path.with_name(path.name + GZIP_SUFFIX)


def write_json(path: Path, data, compress: bool = False) -> Path:
    """Write ``data`` as JSON to ``path`` (or ``path.gz`` when compressing).

    The counterpart in the other encoding is removed so readers, which prefer
    the compressed file, never see a stale copy after the flag is toggled.
    Returns the path actually written.
    """
    payload = json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8")
    if compress:
        target, stale = compressed_path(path), path
        payload = gzip.compress(payload)
    else:
        target, stale = path, compressed_path(path)

    write_atomic(target, payload)
    stale.unlink(missing_ok=True)
    return target


def existing_json_path(path: Path) -> Path | None:
    """Return the compressed path if present, else the plain one, else None."""
    gz = compressed_path(path)
    if gz.exists():
        return gz
    if path.exists():
        return path
    return None


def read_json(path: Path, default=None):
    """Read JSON from ``path.gz`` or ``path``; return ``default`` if neither exists."""
    found = existing_json_path(path)
    if found is None:
        return default

    if found.suffix == GZIP_SUFFIX:
        raw = gzip.decompress(found.read_bytes())
    else:
        raw = found.read_bytes()
    return json.loads(raw.decode("utf-8"))
