import re
from airc_core.constants import RESERVED_HANDLES
from airc_core.errors import ValidationError

_HANDLE_RE = re.compile(r"^[a-z0-9_-]{3,30}$")


def normalize_handle(raw) -> str:
    """Lower-case, trim and strip a leading '@'. Raises ValidationError if the result is not a legal handle."""
    if not isinstance(raw, str):
        raise ValidationError("Handle must be a string", code="invalid_handle")
    handle = raw.strip().lower()
    if handle.startswith("@"):
        handle = handle[1:]
    if not _HANDLE_RE.match(handle):
        raise ValidationError(
            "Handle must be 3-30 characters of letters, numbers, underscores or hyphens",
            code="invalid_handle",
        )
    return handle


def is_reserved(handle: str) -> bool:
    return handle in RESERVED_HANDLES
