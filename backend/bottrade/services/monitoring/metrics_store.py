from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict


def write_metrics(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, default=str), encoding="utf-8")
    tmp.replace(path)  # atomic replace


def read_metrics(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {"available": False, "message": "metrics not yet available"}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return {"available": False, "message": "metrics file is being written"}
