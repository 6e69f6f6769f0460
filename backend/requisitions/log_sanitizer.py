"""
Log sanitizer for user-supplied text.

Comments, split reasons and item descriptions come straight from request
bodies. Passing them through ``sanitize_for_log`` before they reach a log
line stops a crafted value from forging extra log entries (CWE-117).

Usage:
    from requisitions.log_sanitizer import sanitize_for_log

    logger.info("requisition_split", extra={"reason": sanitize_for_log(reason)})
"""
import re
from typing import Any

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_for_log(value: Any, max_length: int = 500) -> str:
    """
    Return ``value`` as a single printable line, truncated to ``max_length``.

        >>> sanitize_for_log("line1\\nline2")
        'line1[LF]line2'
        >>> sanitize_for_log(None)
        '[None]'
    """
    if value is None:
        return "[None]"
    text = str(value)
    text = text.replace("\r\n", "[CRLF]").replace("\n", "[LF]").replace("\r", "[CR]")
    text = _CONTROL_CHARS.sub("[CTRL]", text)
    text = text.replace("\t", "[TAB]")
    if len(text) > max_length:
        text = text[:max_length] + "...(truncated)"
    return text
