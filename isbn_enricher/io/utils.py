from __future__ import annotations

import json
import os
import tempfile
from typing import Callable, Iterable


def atomic_write_text(write_fn: Callable[[str], None], out_path: str) -> None:
    """write_fn fills a temp file beside out_path, which then replaces out_path in one rename."""
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    d = os.path.dirname(out_path) or "."
    with tempfile.NamedTemporaryFile("w", delete=False, dir=d, encoding="utf-8") as tf:
        tmp_path = tf.name
    try:
        write_fn(tmp_path)
        os.replace(tmp_path, out_path)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


def write_ndjson(rows: Iterable[dict], out_path: str) -> int:
    rows = list(rows)

    def _write(path: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            for row in rows:
                f.write(json.dumps(row, ensure_ascii=False, sort_keys=True))
                f.write("\n")

    atomic_write_text(_write, out_path)
    return len(rows)
