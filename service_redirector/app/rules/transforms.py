"""
Capture-group transforms applied by rules that declare a ``process``.

The four transforms mirror the browser primitives rule feeds are written
against (``encodeURIComponent``, ``decodeURIComponent``, ``btoa`` and
``atob``), including the inputs those primitives reject.
"""

import base64
import binascii
import re
from enum import Enum
from typing import Optional
from urllib.parse import quote, unquote_to_bytes


class ProcessKind(str, Enum):
    """Known capture-group transforms."""
    URL_ENCODE = "urlEncode"
    URL_DECODE = "urlDecode"
    BASE64_ENCODE = "base64Encode"
    BASE64_DECODE = "base64Decode"


class TransformError(ValueError):
    """Raised when a transform rejects its input."""

    def __init__(self, process: str, value: str, reason: str):
        super().__init__(f"{process} failed for {value!r}: {reason}")
        self.process = process
        self.value = value
        self.reason = reason


# Characters encodeURIComponent leaves alone besides ASCII alphanumerics
_URI_COMPONENT_SAFE = "-_.!~*'()"
_BAD_PERCENT_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_BASE64_WHITESPACE = re.compile(r"[\t\n\f\r ]+")


def url_encode(value: str) -> str:
    try:
        return quote(value, safe=_URI_COMPONENT_SAFE, encoding="utf-8", errors="strict")
    except UnicodeEncodeError as e:
        raise TransformError(ProcessKind.URL_ENCODE.value, value, "lone surrogate") from e


def url_decode(value: str) -> str:
    if _BAD_PERCENT_ESCAPE.search(value):
        raise TransformError(ProcessKind.URL_DECODE.value, value, "malformed percent escape")
    try:
        return unquote_to_bytes(value).decode("utf-8")
    except UnicodeError as e:
        raise TransformError(ProcessKind.URL_DECODE.value, value, "invalid UTF-8 sequence") from e


def base64_encode(value: str) -> str:
    try:
        raw = value.encode("latin-1")
    except UnicodeEncodeError as e:
        raise TransformError(ProcessKind.BASE64_ENCODE.value, value, "character outside Latin-1") from e
    return base64.b64encode(raw).decode("ascii")


def base64_decode(value: str) -> str:
    data = _BASE64_WHITESPACE.sub("", value)
    if len(data) % 4 == 0 and data.endswith("="):
        padded = data
    elif "=" in data or len(data) % 4 == 1:
        raise TransformError(ProcessKind.BASE64_DECODE.value, value, "invalid length or padding")
    else:
        padded = data + "=" * (-len(data) % 4)
    try:
        return base64.b64decode(padded, validate=True).decode("latin-1")
    except (binascii.Error, ValueError) as e:
        raise TransformError(ProcessKind.BASE64_DECODE.value, value, "invalid base64 alphabet") from e


_TRANSFORMS = {
    ProcessKind.URL_ENCODE.value: url_encode,
    ProcessKind.URL_DECODE.value: url_decode,
    ProcessKind.BASE64_ENCODE.value: base64_encode,
    ProcessKind.BASE64_DECODE.value: base64_decode,
}


def is_known_process(process: Optional[str]) -> bool:
    return process in _TRANSFORMS


def apply_process(process: Optional[str], value: str) -> str:
    """Apply the named transform; unknown names pass the text through unchanged."""
    transform = _TRANSFORMS.get(process)
    if transform is None:
        return value
    return transform(value)
