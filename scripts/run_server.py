#!/usr/bin/env python3
"""
Start the CRM assistant API.
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import uvicorn

from crm_assistant.core.config import debug_enabled


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the CRM assistant API server")
    parser.add_argument("--host", default="127.0.0.1", help="interface to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="port to listen on (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="reload on code changes")
    args = parser.parse_args(argv)

    uvicorn.run(
        "crm_assistant.api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="debug" if debug_enabled() else "info"
    )


if __name__ == "__main__":
    main()
