"""File helpers shared by the snapshot writer and the project registry."""

import os
from pathlib import Path


def write_atomic(path: Path, content: str) -> None:
    """
    Replace ``path`` with ``content`` via a temp file and rename.

    Readers see either the old file or the new one. The temp file is
    removed if the write fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
