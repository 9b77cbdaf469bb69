"""
Atomic file output.

Every artifact the pipeline produces goes through `atomic_writer`: the
payload lands in a temp file next to its destination, is fsync'd and then
renamed over the final path, so readers never observe a half-written file.
"""

from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Any, Iterator, Union

from archive_digest.errors import OutputExistsError

PathLike = Union[str, Path]

DEFAULT_FILE_MODE = 0o644


@contextmanager
def atomic_writer(
    path: PathLike,
    *,
    overwrite: bool = True,
    mode: int = DEFAULT_FILE_MODE,
) -> Iterator[IO[str]]:
    """Open a temp file that replaces `path` when the block exits cleanly.

    Raises OutputExistsError before creating anything when `overwrite` is
    False and `path` already exists. On any exception inside the block the
    temp file is removed and the destination is left untouched.
    """
    path = Path(path)
    if not overwrite and path.exists():
        raise OutputExistsError(path)

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.stem}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            yield fh
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def write_text_atomic(
    path: PathLike,
    text: str,
    *,
    overwrite: bool = True,
    mode: int = DEFAULT_FILE_MODE,
) -> int:
    """Write `text` plus a trailing newline atomically.

    Returns the number of payload bytes written (newline excluded).
    """
    with atomic_writer(path, overwrite=overwrite, mode=mode) as fh:
        fh.write(text)
        fh.write("\n")
    return len(text.encode("utf-8"))


def dump_json(obj: Any, *, pretty: bool = False) -> str:
    """Serialize to JSON: compact by default, 2-space indented when pretty."""
    if pretty:
        return json.dumps(obj, indent=2, ensure_ascii=False)
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def write_json_atomic(
    path: PathLike,
    obj: Any,
    *,
    pretty: bool = False,
    overwrite: bool = True,
    mode: int = DEFAULT_FILE_MODE,
) -> int:
    return write_text_atomic(path, dump_json(obj, pretty=pretty), overwrite=overwrite, mode=mode)


def write_jsonl_atomic(path: PathLike, rows: Any, *, overwrite: bool = True) -> int:
    """Write an iterable of dicts as JSON Lines, replacing `path`."""
    count = 0
    with atomic_writer(path, overwrite=overwrite) as fh:
        for row in rows:
            fh.write(json.dumps(row, ensure_ascii=False))
            fh.write("\n")
            count += 1
    return count


def read_json(path: PathLike) -> Any:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


__all__ = [
    "atomic_writer",
    "write_text_atomic",
    "write_json_atomic",
    "write_jsonl_atomic",
    "dump_json",
    "read_json",
    "DEFAULT_FILE_MODE",
]
