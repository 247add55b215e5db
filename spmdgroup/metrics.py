"""Run summary records written by the manager."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict


def append_metrics_jsonl(path: Path, record: Dict[str, Any]) -> None:
    """Append ``record`` as a JSON line to ``path``.

    Only the manager holds the aggregate, so callers on worker tasks have
    nothing to write and never call this.
    """

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record) + "\n")
