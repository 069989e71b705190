"""
Comfy Remote - Feature Flags
=============================

Detects which optional features are available based on installed dependencies.

Usage:
    from comfy_remote.feature_flags import FEATURES, ensure_feature

    ensure_feature("server")
    from comfy_remote.server import create_app

Installation commands for each feature:
    pip install comfy-remote                  # Core library (compiler, client, orchestrator)
    pip install comfy-remote[server]          # + FastAPI web proxy
    pip install comfy-remote[observability]   # + OpenTelemetry tracing
    pip install comfy-remote[full]            # Everything
"""

import functools
import importlib.util
import logging
from collections.abc import Callable
from typing import Any, TypeVar

# Use standard logging to avoid circular import with logging_config
logger = logging.getLogger(__name__)

__all__ = [
    "FEATURES",
    "FeatureNotAvailable",
    "check_feature",
    "require_feature",
    "ensure_feature",
    "get_install_hint",
    "list_available_features",
    "list_missing_features",
]

# Modules each feature needs
FEATURE_MODULES: dict[str, tuple[str, ...]] = {
    "server": ("fastapi", "uvicorn", "multipart"),
    "observability": ("opentelemetry",),
}

FEATURES: dict[str, bool] = {name: False for name in FEATURE_MODULES}

INSTALL_HINTS: dict[str, str] = {
    "server": "pip install comfy-remote[server]",
    "observability": "pip install comfy-remote[observability]",
}

FEATURE_DESCRIPTIONS: dict[str, str] = {
    "server": "Password-gated web proxy (FastAPI + uvicorn)",
    "observability": "OpenTelemetry distributed tracing",
}


# =============================================================================
# FEATURE DETECTION
# =============================================================================


def _detect_features() -> None:
    """Detect which optional features are available."""
    for feature, modules in FEATURE_MODULES.items():
        missing = [name for name in modules if importlib.util.find_spec(name) is None]
        FEATURES[feature] = not missing
        if missing:
            logger.debug(f"Feature '{feature}' unavailable: {', '.join(missing)} not installed")
        else:
            logger.debug(f"Feature '{feature}' available")


# Run detection on module load
_detect_features()


# =============================================================================
# PUBLIC API
# =============================================================================


def check_feature(feature: str) -> bool:
    """True if the feature's dependencies are installed."""
    return FEATURES.get(feature, False)


def get_install_hint(feature: str) -> str:
    return INSTALL_HINTS.get(feature, f"pip install comfy-remote[{feature}]")


def list_available_features() -> dict[str, str]:
    """Feature name -> description for installed features."""
    return {
        name: FEATURE_DESCRIPTIONS.get(name, "")
        for name, available in FEATURES.items()
        if available
    }


def list_missing_features() -> dict[str, str]:
    """Feature name -> install hint for missing features."""
    return {name: get_install_hint(name) for name, available in FEATURES.items() if not available}


class FeatureNotAvailable(ImportError):
    """Raised when trying to use a feature that isn't installed."""

    def __init__(self, feature: str, message: str = ""):
        self.feature = feature
        self.install_hint = get_install_hint(feature)
        if not message:
            message = f"Feature '{feature}' is not available. Install with: {self.install_hint}"
        super().__init__(message)


def ensure_feature(feature: str) -> None:
    """
    Raises:
        FeatureNotAvailable: If the feature is not installed
    """
    if not FEATURES.get(feature, False):
        raise FeatureNotAvailable(feature)


F = TypeVar("F", bound=Callable[..., Any])


def require_feature(feature: str) -> Callable[[F], F]:
    """
    Decorator raising FeatureNotAvailable when *feature* is missing.

    Usage:
        @require_feature("server")
        def serve():
            ...
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            ensure_feature(feature)
            return func(*args, **kwargs)

        return wrapper  # type: ignore

    return decorator
