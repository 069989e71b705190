"""
Comfy Remote - CLI Entry Point
Run with: python -m comfy_remote
"""

import argparse
import os
import sys


def main():
    parser = argparse.ArgumentParser(description="Comfy Remote - ComfyUI remote proxy")
    parser.add_argument("--host", type=str, default=None, help="Bind address (default: 127.0.0.1)")
    parser.add_argument(
        "--port", "-p", type=int, default=None, help="Port to serve on (default: 3000)"
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Directory for workflows.json, history.json and outputs/ (default: ./data)",
    )
    parser.add_argument("--version", "-v", action="store_true", help="Show version and exit")
    parser.add_argument("--check", action="store_true", help="Check feature availability and exit")

    args = parser.parse_args()

    # Version check
    if args.version:
        from . import __version__

        print(f"comfy-remote v{__version__}")
        sys.exit(0)

    # Feature check
    if args.check:
        from . import list_available_features, list_missing_features

        print("Comfy Remote - Feature Check")
        print("=" * 40)
        print("\nInstalled features:")
        for name, desc in list_available_features().items():
            print(f"  [+] {name}: {desc}")
        missing = list_missing_features()
        if missing:
            print("\nMissing features:")
            for name, hint in missing.items():
                print(f"  [ ] {name}: {hint}")
        sys.exit(0)

    from .feature_flags import FEATURES, get_install_hint

    if not FEATURES.get("server", False):
        print("Error: server feature not installed.")
        print(f"Install with: {get_install_hint('server')}")
        sys.exit(1)

    # Settings are environment-driven; CLI flags override them before first use
    if args.data_dir:
        os.environ["COMFY_REMOTE_STORAGE__DATA_DIR"] = args.data_dir

    from .config import reload_settings

    cfg = reload_settings()
    host = args.host or cfg.server.host
    port = args.port or cfg.server.port

    import uvicorn

    from .server import create_app

    print(f"Starting Comfy Remote on http://{host}:{port}")
    print(f"ComfyUI URL: {cfg.backend.url}")
    print(f"Data directory: {cfg.storage.data_dir}")

    uvicorn.run(create_app(cfg), host=host, port=port)


if __name__ == "__main__":
    main()
