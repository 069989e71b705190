"""
Comfy Remote - ComfyUI Remote Proxy
====================================

A password-gated proxy and local cache in front of a remote ComfyUI server.
Imported editor workflows are compiled into executable jobs, submitted with
per-run prompt / seed / step / input-image overrides, polled to completion,
and the resulting images are kept in a browsable history.

Installation:
    pip install comfy-remote                  # Core library
    pip install comfy-remote[server]          # + FastAPI web proxy
    pip install comfy-remote[observability]   # + OpenTelemetry tracing
    pip install comfy-remote[full]            # Everything

Features (Core):
- Editor-graph normalization and compilation to ComfyUI job descriptions
- Prompt, seed, step and input-image injection
- Async job client (upload, submit, poll, download) over httpx
- Run state machine, long-lived or checkpointed
- JSON-backed workflow and history stores
- Structured logging, tenacity retries

Usage:
    from comfy_remote import RunOrchestrator, RunRequest, WorkflowStore, HistoryStore

    orchestrator = RunOrchestrator(WorkflowStore(), HistoryStore())
    status = await orchestrator.run(
        RunRequest(workflow_id="portrait", base_url="192.168.1.10:8188",
                   positive_prompt="a lighthouse at dusk")
    )

    # Web proxy (requires [server] extra)
    from comfy_remote import create_app
    app = create_app()
"""

# Feature flags (detect available optional features)
from .feature_flags import (
    FEATURES,
    check_feature,
    require_feature,
    ensure_feature,
    get_install_hint,
    list_available_features,
    list_missing_features,
    FeatureNotAvailable,
)

# Configuration (import first - other modules depend on it)
from .config import (
    Settings,
    settings,
    get_settings,
    reload_settings,
)

# Exceptions
from .exceptions import (
    ComfyRemoteError,
    BackendError,
    BackendConnectionError,
    UploadError,
    SubmitError,
    NoResultFoundError,
    MalformedGraphError,
    WorkflowNotFoundError,
    HistoryItemNotFoundError,
    ValidationError,
    InvalidParameterError,
    SecurityError,
    AuthenticationError,
    RetryExhaustedError,
    ErrorLevel,
    format_error_for_user,
)

# Logging
from .logging_config import (
    get_logger,
    set_log_level,
    LogContext,
)

# Graph model and compilation
from .graph import (
    WorkflowGraph,
    Node,
    InputSlot,
    Link,
    JobDescription,
    JobNode,
    Scalar,
    Reference,
)
from .normalizer import normalize
from .compiler import (
    WIDGET_INPUT_TABLE,
    CompiledJob,
    compile_graph,
    compile_raw,
    validate_job,
)
from .overrides import (
    inject_prompts,
    inject_input_image,
    inject_sampler_params,
    resolve_seed,
)
from .extraction import ImageRef, extract_image, build_view_url, build_proxy_url

# Backend client and runs
from .client import RemoteJobClient, PollSnapshot, ConnectionCheck
from .orchestrator import (
    RunState,
    RunRequest,
    RunTicket,
    RunStatus,
    InputImage,
    RunOrchestrator,
)

# Stores
from .workflow_store import WorkflowStore, StoredWorkflow, WorkflowSummary, summarize_workflow
from .history import HistoryStore, RunRecord

__version__ = settings.version

# Lazy loading for optional features with helpful error messages
_LAZY_IMPORTS = {
    "create_app": ("server", ".server"),
}


def __getattr__(name: str):
    """
    Lazy loading for optional features with helpful error messages.

    When a user tries to import an optional feature that isn't installed,
    this provides a clear error message with installation instructions.
    """
    if name in _LAZY_IMPORTS:
        feature, module = _LAZY_IMPORTS[name]
        if not FEATURES.get(feature, False):
            hint = get_install_hint(feature)
            raise ImportError(
                f"'{name}' requires the [{feature}] feature. "
                f"Install with: {hint}"
            )

        import importlib
        mod = importlib.import_module(module, __package__)
        return getattr(mod, name)

    raise AttributeError(f"module 'comfy_remote' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Feature flags
    "FEATURES",
    "check_feature",
    "require_feature",
    "ensure_feature",
    "get_install_hint",
    "list_available_features",
    "list_missing_features",
    "FeatureNotAvailable",
    # Configuration
    "Settings",
    "settings",
    "get_settings",
    "reload_settings",
    # Exceptions
    "ComfyRemoteError",
    "BackendError",
    "BackendConnectionError",
    "UploadError",
    "SubmitError",
    "NoResultFoundError",
    "MalformedGraphError",
    "WorkflowNotFoundError",
    "HistoryItemNotFoundError",
    "ValidationError",
    "InvalidParameterError",
    "SecurityError",
    "AuthenticationError",
    "RetryExhaustedError",
    "ErrorLevel",
    "format_error_for_user",
    # Logging
    "get_logger",
    "set_log_level",
    "LogContext",
    # Graph
    "WorkflowGraph",
    "Node",
    "InputSlot",
    "Link",
    "JobDescription",
    "JobNode",
    "Scalar",
    "Reference",
    "normalize",
    "WIDGET_INPUT_TABLE",
    "CompiledJob",
    "compile_graph",
    "compile_raw",
    "validate_job",
    "inject_prompts",
    "inject_input_image",
    "inject_sampler_params",
    "resolve_seed",
    "ImageRef",
    "extract_image",
    "build_view_url",
    "build_proxy_url",
    # Client and runs
    "RemoteJobClient",
    "PollSnapshot",
    "ConnectionCheck",
    "RunState",
    "RunRequest",
    "RunTicket",
    "RunStatus",
    "InputImage",
    "RunOrchestrator",
    # Stores
    "WorkflowStore",
    "StoredWorkflow",
    "WorkflowSummary",
    "summarize_workflow",
    "HistoryStore",
    "RunRecord",
    # Server (lazy)
    "create_app",
]
