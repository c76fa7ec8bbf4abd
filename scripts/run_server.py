#!/usr/bin/env python3
"""
Start the sync API server (webhook receivers + dashboard read endpoints).
"""

import argparse
import sys
from pathlib import Path

import uvicorn

# Add the project root to sys.path so the package imports without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from sheetsync.core.config import API_HOST, API_PORT, debug_enabled, validate_config


def main():
    parser = argparse.ArgumentParser(description='Serve the sheet <-> database sync API')
    parser.add_argument('--port', type=int, default=API_PORT,
                        help=f'Port to serve on (default: {API_PORT})')
    parser.add_argument('--host', default=API_HOST,
                        help=f'Host to bind to (default: {API_HOST})')
    parser.add_argument('--reload', action='store_true',
                        help='Reload on code changes (development only)')

    args = parser.parse_args()

    issues = validate_config()
    if issues:
        print("❌ Configuration invalid:")
        for issue in issues:
            print(f"  - {issue}")
        sys.exit(1)

    print(f"🔄 Sheet sync API on http://{args.host}:{args.port}")
    print("   Sheet events: POST /sheet/webhook")
    print("   DB events:    POST /db/webhook")

    uvicorn.run(
        "sheetsync.api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="debug" if debug_enabled() else "info",
    )


if __name__ == "__main__":
    main()
