"""
Tolerant parsing of completion-service output.

Models wrap JSON in code fences, add prose around it, or drop fields. The
reader here locates the outermost JSON object and exposes each field through
a getter that falls back to its own default, so one bad field never spoils
the rest of the response.
"""

from typing import Any, Dict, List, Optional
import json
import logging
import re

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def extract_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the first JSON object found in ``text``, or None."""
    if not text or not text.strip():
        return None
    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)]
    candidates.append(text)
    for candidate in candidates:
        candidate = candidate.strip()
        start = candidate.find("{")
        end = candidate.rfind("}")
        if start == -1 or end <= start:
            continue
        try:
            parsed = json.loads(candidate[start:end + 1])
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


class LLMFields:
    """Field-by-field access to a parsed response, every field defaultable."""

    def __init__(self, data: Optional[Dict[str, Any]]):
        self.data = data or {}
        self.parsed = data is not None

    @classmethod
    def from_text(cls, text: Optional[str]) -> "LLMFields":
        data = extract_json(text)
        if data is None and text:
            logger.warning("Completion output is not JSON: %r", text[:120])
        return cls(data)

    def text(self, key: str, default: str = "") -> str:
        value = self.data.get(key)
        if value is None:
            return default
        if isinstance(value, (dict, list)):
            return default
        return str(value).strip()

    def flag(self, key: str, default: bool = False) -> bool:
        value = self.data.get(key)
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("true", "yes", "1"):
                return True
            if lowered in ("false", "no", "0"):
                return False
        if isinstance(value, (int, float)):
            return value != 0
        return default

    def number(self, key: str, default: float = 0.0) -> float:
        value = self.data.get(key)
        if isinstance(value, bool):
            return default
        try:
            number = float(value)
        except (TypeError, ValueError):
            return default
        if number != number:  # NaN
            return default
        return number

    def items(self, key: str) -> List[str]:
        """A list of strings; a single string becomes a one-item list."""
        value = self.data.get(key)
        if isinstance(value, str):
            return [value.strip()] if value.strip() else []
        if not isinstance(value, list):
            return []
        out = []
        for item in value:
            if isinstance(item, (dict, list)) or item is None:
                continue
            item = str(item).strip()
            if item:
                out.append(item)
        return out

    def records(self, key: str) -> List[Dict[str, Any]]:
        value = self.data.get(key)
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]


def text_lines(text: Optional[str]) -> List[str]:
    """Bullet-ish lines of a non-JSON reply, stripped of list markers."""
    lines = []
    for line in (text or "").splitlines():
        line = line.strip().lstrip("-*•").strip()
        line = re.sub(r"^\d+[.)]\s*", "", line)
        if line:
            lines.append(line)
    return lines
