"""
Sanitizers for values that end up in log lines.

Workload files, tags and registry answers come from outside the process; a
newline in any of them could forge a log entry.
"""

import re
from typing import Any

_CONTROL = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_NOT_IMAGE_REF = re.compile(r"[^A-Za-z0-9._/:@-]")

# Longest reference the registry API accepts
MAX_IMAGE_REF_LENGTH = 255


def sanitize_for_log(value: Any, max_length: int = 100) -> str:
    """
    Strip control characters and cap the length of ``value``.

    Truncated output ends with "...".
    """
    cleaned = _CONTROL.sub("", str(value))
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[:max_length] + "..."


def sanitize_image_ref(image_ref: str) -> str:
    """Keep only characters that can appear in a registry/repository:tag@digest reference."""
    return _NOT_IMAGE_REF.sub("", image_ref)[:MAX_IMAGE_REF_LENGTH]
