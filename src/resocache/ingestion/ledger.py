from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Optional


def safe_append_ledger_entry(path: Path, entry: dict[str, Any]) -> None:
    """Append a single JSON line to an ingest ledger file.

    This is best-effort: ingestion should not fail if the ledger cannot be written.
    """

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(entry, ensure_ascii=False, separators=(",", ":"), default=str)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(payload + "\n")
    except OSError:
        return


def read_latest_ledger_entry(
    path: Path, match: Optional[Callable[[dict[str, Any]], bool]] = None
) -> dict[str, Any] | None:
    """Return the latest valid JSON entry (optionally the latest matching one), or None."""

    if not path.exists():
        return None

    try:
        with path.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            if end <= 0:
                return None

            chunk_size = 8192
            buffer = b""
            pos = end
            while pos > 0:
                read_size = min(chunk_size, pos)
                pos -= read_size
                f.seek(pos)
                buffer = f.read(read_size) + buffer
                if b"\n" not in buffer and pos > 0:
                    continue
                lines = buffer.splitlines()
                # The first line may be cut mid-record until the whole file has been read.
                complete = lines if pos == 0 else lines[1:]
                for raw_line in reversed(complete):
                    line = raw_line.strip()
                    if not line:
                        continue
                    try:
                        parsed = json.loads(line.decode("utf-8", errors="ignore"))
                    except ValueError:
                        continue
                    if isinstance(parsed, dict) and (match is None or match(parsed)):
                        return parsed
                if pos > 0:
                    buffer = lines[0] if lines else b""
            return None
    except OSError:
        return None
