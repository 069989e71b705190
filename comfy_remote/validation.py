"""
Comfy Remote - Input Validation and Sanitization
=================================================

Validation of user-supplied run parameters using Pydantic with:
- Backend URL normalization
- Prompt sanitization (control characters, length caps)
- Seed / step bounds checking
- Path traversal prevention for stored artifact names

Usage:
    from comfy_remote.validation import normalize_base_url, validate_seed

    base_url = normalize_base_url("192.168.1.10:8188/")  # http://192.168.1.10:8188
    seed = validate_seed("-1")                           # -1 (randomized later)
"""

import re
from pathlib import PurePosixPath, PureWindowsPath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import InvalidParameterError, SecurityError
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "normalize_base_url",
    "validate_prompt_text",
    "validate_seed",
    "validate_steps",
    "validate_stored_filename",
    "StatusCheckRequest",
    "RenameWorkflowRequest",
    "MAX_PROMPT_LENGTH",
    "MAX_SEED",
    "MAX_STEPS",
]

MAX_PROMPT_LENGTH = 10000
MAX_SEED = 2**64 - 1
MAX_STEPS = 1000

DANGEROUS_CHARS = [
    "\x00",  # Null byte
    "\x1b",  # Escape
]

PATH_TRAVERSAL_PATTERNS = [
    r"\.\./",
    r"\.\.\\",
    r"%2e%2e",
    r"%252e",
    r"\.\.%2f",
    r"\.\.%5c",
]

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


# =============================================================================
# BACKEND URL
# =============================================================================


def normalize_base_url(raw: str | None) -> str:
    """
    Normalize a user-entered backend URL.

    Adds http:// when no scheme is given and strips trailing slashes.

    Raises:
        InvalidParameterError: If the URL is empty
    """
    value = (raw or "").strip()
    if not value:
        raise InvalidParameterError("base_url", raw, "backend URL is required")
    if not _SCHEME_RE.match(value):
        value = f"http://{value}"
    scheme, _, rest = value.partition("://")
    rest = rest.rstrip("/")
    if not rest:
        raise InvalidParameterError("base_url", raw, "backend URL has no host")
    return f"{scheme}://{rest}"


# =============================================================================
# RUN PARAMETERS
# =============================================================================


def validate_prompt_text(text: str | None, *, name: str = "prompt") -> str | None:
    """
    Sanitize prompt text.

    None passes through (meaning "leave the graph's text alone"). Empty
    strings are allowed; an empty negative prompt is a normal request.
    """
    if text is None:
        return None
    if not isinstance(text, str):
        raise InvalidParameterError(name, text, "must be a string")
    for char in DANGEROUS_CHARS:
        text = text.replace(char, "")
    if len(text) > MAX_PROMPT_LENGTH:
        raise InvalidParameterError(
            name, f"{text[:40]}...", f"longer than {MAX_PROMPT_LENGTH} characters"
        )
    return text


def _coerce_int(value: Any, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidParameterError(name, value, "must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            return int(stripped)
        except ValueError:
            pass
    raise InvalidParameterError(name, value, "must be an integer")


def validate_seed(value: Any) -> int | None:
    """
    Parse a seed value. Blank means "keep the graph's seed"; -1 means random.
    """
    seed = _coerce_int(value, "seed")
    if seed is None:
        return None
    if seed < -1 or seed > MAX_SEED:
        raise InvalidParameterError("seed", seed, f"must be -1 or between 0 and {MAX_SEED}")
    return seed


def validate_steps(value: Any) -> int | None:
    """Parse a step count. Blank means "keep the graph's step count"."""
    steps = _coerce_int(value, "steps")
    if steps is None:
        return None
    if steps < 1 or steps > MAX_STEPS:
        raise InvalidParameterError("steps", steps, f"must be between 1 and {MAX_STEPS}")
    return steps


# =============================================================================
# PATH VALIDATION
# =============================================================================


def validate_stored_filename(name: str | None) -> str:
    """
    Validate a stored artifact name requested by a client.

    Only bare file names are accepted; any directory component or traversal
    pattern is rejected.

    Raises:
        SecurityError: If the name is not a plain basename
    """
    if not name:
        raise SecurityError("Missing file name")

    for pattern in PATH_TRAVERSAL_PATTERNS:
        if re.search(pattern, name, re.IGNORECASE):
            logger.warning("Path traversal attempt detected", extra={"file_name": name})
            raise SecurityError("Invalid file name: possible traversal attempt")

    if (
        PurePosixPath(name).name != name
        or PureWindowsPath(name).name != name
        or name in (".", "..")
    ):
        logger.warning("Rejected non-basename file request", extra={"file_name": name})
        raise SecurityError("Invalid file name")

    return name


# =============================================================================
# PYDANTIC MODELS
# =============================================================================


class StatusCheckRequest(BaseModel):
    """Body of a checkpointed status call; mirrors the ticket returned by /api/run."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    job_id: str = Field(..., min_length=1)
    base_url: str = Field(..., min_length=1)
    started_at: float = Field(..., ge=0)
    client_id: str | None = None
    workflow_id: str | None = None
    workflow_name: str | None = None
    positive_prompt: str | None = None
    negative_prompt: str | None = None
    seed: int | None = None
    steps: int | None = None
    input_filename: str | None = None

    @field_validator("base_url")
    @classmethod
    def _normalize_url(cls, v: str) -> str:
        try:
            return normalize_base_url(v)
        except InvalidParameterError as e:
            raise ValueError(e.user_message) from e


class RenameWorkflowRequest(BaseModel):
    """Body of a workflow rename call."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
