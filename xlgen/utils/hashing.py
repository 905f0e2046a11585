# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Hashing utilities for xlgen.

Weight files can ship with a ``checksums.sha256`` manifest next to them
("<hex digest>  <filename>" per line, the format ``sha256sum`` writes).
The loader checks the weights against it before building a model.
``state_dict_sha256`` fingerprints in-memory parameters, which is how tests
check that seeded initialization is reproducible.
"""

import hashlib
from pathlib import Path
from typing import Mapping

import torch

HASH_ALGORITHM = "sha256"
HASH_BUFFER_SIZE = 65536  # 64 KiB
CHECKSUM_MANIFEST = "checksums.sha256"


def compute_sha256(file_path: Path) -> str:
    """
    SHA256 hex digest of a file, read in 64 KiB chunks.

    Raises:
        FileNotFoundError: If the file doesn't exist.
    """
    hasher = hashlib.sha256()
    with open(file_path, "rb") as f:
        while True:
            chunk = f.read(HASH_BUFFER_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


def verify_checksum(file_path: Path, expected_hash: str) -> bool:
    return compute_sha256(file_path) == expected_hash.strip().lower()


def read_checksum_manifest(manifest_path: Path) -> dict[str, str]:
    """
    Parse a ``sha256sum`` style manifest into ``{filename: digest}``.

    Blank lines and ``#`` comments are ignored. A leading ``*`` on the
    filename (binary mode marker) is dropped.
    """
    entries: dict[str, str] = {}
    for line_no, line in enumerate(manifest_path.read_text(encoding="utf-8").splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(maxsplit=1)
        if len(parts) != 2:
            raise ValueError(f"{manifest_path}:{line_no}: expected '<digest>  <filename>', got {line!r}")
        digest, filename = parts
        entries[filename.strip().lstrip("*")] = digest.lower()
    return entries


def state_dict_sha256(state_dict: Mapping[str, torch.Tensor]) -> str:
    """Digest over parameter names, shapes, dtypes and values, in key order."""
    hasher = hashlib.sha256()
    for name in sorted(state_dict):
        tensor = state_dict[name].detach().cpu().contiguous()
        hasher.update(name.encode("utf-8"))
        hasher.update(str(tuple(tensor.shape)).encode("utf-8"))
        hasher.update(str(tensor.dtype).encode("utf-8"))
        hasher.update(tensor.view(torch.uint8).numpy().tobytes() if tensor.numel() else b"")
    return hasher.hexdigest()
