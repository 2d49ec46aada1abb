# model_surgeon/reporting/json_reporter.py
"""
JSON output for any result value (reports, engine messages, alignments).
"""

from __future__ import annotations

import json
from typing import Any

from model_surgeon.engine.messages import Message, to_wire
from model_surgeon.observability import to_dict


def to_json_dict(value: Any) -> Any:
    """Engine messages keep their ``type`` tag; everything else goes through ``to_dict``."""
    if isinstance(value, Message):
        return to_wire(value)
    return to_dict(value)


def write_json(value: Any, path: str) -> None:
    """Write ``value`` to ``path`` as pretty JSON."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump(to_json_dict(value), f, indent=2, ensure_ascii=False)
