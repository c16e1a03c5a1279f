# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Crash-safe file replacement: temp sibling, fsync, rename."""

import os
import stat
import tempfile
from pathlib import Path
from typing import Optional, Union

DEFAULT_FILE_MODE = 0o644


def atomic_write(target: Union[str, Path], data: bytes, mode: Optional[int] = None) -> Path:
    """
    Replace ``target`` with ``data`` so readers see the old or the new content,
    never a partial file.

    Args:
        target: Destination file
        data: New content
        mode: Permission bits; defaults to the existing file's bits, else 0o644

    Returns:
        The destination path
    """
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)

    if mode is None:
        try:
            mode = stat.S_IMODE(target.stat().st_mode)
        except FileNotFoundError:
            mode = DEFAULT_FILE_MODE

    fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".melody-tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise

    return target
