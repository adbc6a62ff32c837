"""
Issue grouping: derive a deterministic fingerprint from an error event.

Events with the same fingerprint hash belong to the same issue. The
fingerprint is built from the exception type, the message with its dynamic
parts removed, and the first in-app stack frame. SDKs can override grouping
by sending an explicit fingerprint array.
"""
import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from faultline.schemas import ErrorEventIn, StackFrame

# Components are joined with the ASCII unit separator before hashing
FINGERPRINT_DELIMITER = "\x1f"
MAX_MESSAGE_LENGTH = 200
FALLBACK_MESSAGE_LENGTH = 100

VENDORED_DIRS = (
    "node_modules",
    "site-packages",
    "dist-packages",
    "bower_components",
    "vendor",
    ".venv",
)
ANONYMOUS_FUNCTIONS = ("", "?", "<anonymous>", "<module>", "<lambda>", "anonymous")

_URL_RE = re.compile(r"[a-z][a-z0-9+.-]*://\S+", re.IGNORECASE)
_UUID_RE = re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE)
_HEX_RE = re.compile(r"\b(?:0x[0-9a-f]+|[0-9a-f]{16,})\b", re.IGNORECASE)
_PATH_RE = re.compile(r"(?<![\w.])/[^\s'\"`]+|\b[a-z]:\\[^\s'\"`]*", re.IGNORECASE)
_QUOTED_RE = re.compile(r"'[^']*'|\"[^\"]*\"|`[^`]*`")
_INT_RE = re.compile(r"\b\d+\b")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class FingerprintResult:
    fingerprint: List[str]
    hash: str
    culprit: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    explicit: bool = False


def hash_fingerprint(fingerprint: List[str]) -> str:
    """SHA-256 of the components joined by the unit separator."""
    joined = FINGERPRINT_DELIMITER.join(fingerprint)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def normalize_message(message: Optional[str]) -> str:
    """
    Remove the dynamic parts of an error message.

    "Cannot read property 'name' of undefined" -> "Cannot read property of undefined"
    "User 12345 not found" -> "User not found"
    """
    if not message:
        return ""
    text = _URL_RE.sub("", message)
    text = _UUID_RE.sub("", text)
    text = _HEX_RE.sub("", text)
    text = _PATH_RE.sub("", text)
    text = _QUOTED_RE.sub("", text)
    text = _INT_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return text[:MAX_MESSAGE_LENGTH]


def is_vendored(filename: Optional[str]) -> bool:
    if not filename:
        return False
    parts = re.split(r"[/\\]", filename)
    return any(part in VENDORED_DIRS for part in parts)


def is_anonymous(function: Optional[str]) -> bool:
    return (function or "").strip() in ANONYMOUS_FUNCTIONS


def select_app_frame(frames: List[StackFrame]) -> Optional[StackFrame]:
    """First frame outside vendored directories, else the very first frame."""
    if not frames:
        return None
    for frame in frames:
        if not is_vendored(frame.filename):
            return frame
    return frames[0]


def extract_culprit(frames: List[StackFrame]) -> Optional[str]:
    """Culprit as "function (file:line)"; None when there is no stack trace."""
    frame = select_app_frame(frames)
    if frame is None:
        return None
    culprit = frame.filename
    if frame.lineno is not None:
        culprit = f"{culprit}:{frame.lineno}"
    if not is_anonymous(frame.function):
        culprit = f"{frame.function} ({culprit})"
    return culprit


def extract_metadata(event: ErrorEventIn) -> Dict[str, Any]:
    exception = event.exception
    frames = exception.stacktrace if exception else []
    top_frame = frames[0] if frames else None
    return {
        "type": exception.type if exception else None,
        "value": (exception.value or "")[:500] if exception and exception.value else None,
        "filename": top_frame.filename if top_frame else None,
        "function": top_frame.function if top_frame else None,
    }


def generate_fingerprint(event: ErrorEventIn) -> FingerprintResult:
    """
    Generate the grouping fingerprint for an error event.
    """
    exception = event.exception
    frames = exception.stacktrace if exception else []
    culprit = extract_culprit(frames)
    metadata = extract_metadata(event)

    # Producer-supplied grouping wins over everything else
    if event.fingerprint:
        fingerprint = list(event.fingerprint)
        return FingerprintResult(
            fingerprint=fingerprint,
            hash=hash_fingerprint(fingerprint),
            culprit=culprit,
            metadata=metadata,
            explicit=True,
        )

    fingerprint: List[str] = []

    if exception and exception.type:
        fingerprint.append(exception.type)

    message = event.message or (exception.value if exception else None)
    normalized = normalize_message(message)
    if normalized:
        fingerprint.append(normalized)

    app_frame = select_app_frame(frames)
    if app_frame is not None:
        fingerprint.append(app_frame.filename)
        if not is_anonymous(app_frame.function):
            fingerprint.append(app_frame.function)

    if not fingerprint:
        fingerprint.append(event.platform or "unknown")
        fingerprint.append((event.message or "")[:FALLBACK_MESSAGE_LENGTH])

    return FingerprintResult(
        fingerprint=fingerprint,
        hash=hash_fingerprint(fingerprint),
        culprit=culprit,
        metadata=metadata,
    )


def generate_short_id(prefix: str, counter: int) -> str:
    """Short, human-friendly issue id, e.g. "FL-42"."""
    return f"{prefix}-{counter}"
