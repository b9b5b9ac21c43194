"""Flat ``KEY=value`` config files (the per-service ``.env``)."""
from __future__ import annotations

import os
import re
import tempfile


KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_key(key: str) -> None:
    if not KEY_RE.match(key):
        raise ValueError(f"Invalid config key '{key}'.")


def _split(line: str) -> tuple[str, str] | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    key, value = stripped.split("=", 1)
    key = key.strip()
    if key.startswith("export "):
        key = key[len("export "):].strip()
    return key, value.strip()


def read(path: str) -> dict[str, str]:
    with open(path, encoding="utf-8") as fh:
        out: dict[str, str] = {}
        for line in fh:
            kv = _split(line)
            if kv:
                out[kv[0]] = kv[1]
        return out


def get(path: str, key: str, default: str | None = None) -> str | None:
    if not os.path.isfile(path):
        return default
    return read(path).get(key, default)


def set_value(path: str, key: str, value: str) -> bool:
    """Replace ``key``'s line if present, else append it.

    Every existing line for the key collapses into one. Returns True when the
    file changed; applying the same value twice is a no-op.
    """
    _validate_key(key)
    if "\n" in value or "\r" in value:
        raise ValueError("Config values must be single-line.")
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Config file '{path}' not found.")

    with open(path, encoding="utf-8") as fh:
        original = fh.read()

    lines = original.splitlines()
    new_line = f"{key}={value}"
    out: list[str] = []
    placed = False
    for line in lines:
        kv = _split(line)
        if kv and kv[0] == key:
            if not placed:
                out.append(new_line)
                placed = True
            continue
        out.append(line)
    if not placed:
        out.append(new_line)

    updated = "\n".join(out) + "\n"
    if updated == original:
        return False

    # Write-then-rename so a crash never leaves a half-written config behind.
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(prefix=".env.", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(updated)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    return True
