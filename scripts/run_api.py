#!/usr/bin/env python3
"""
Run the governor API with uvicorn.
Configuration comes from the environment / .env (see agentsafe.core.config).
"""

import argparse
import sys

import uvicorn

from agentsafe.core.config import validate_config


def main():
    parser = argparse.ArgumentParser(description="Run the AgentSafe governor API")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on (default: 8000)")
    parser.add_argument("--strict", action="store_true", help="Refuse to start on configuration issues")
    args = parser.parse_args()

    issues = validate_config()
    if issues:
        for issue in issues:
            print(f"Config issue: {issue}", file=sys.stderr)
        if args.strict:
            sys.exit(1)

    uvicorn.run("agentsafe.api.main:get_app", factory=True, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
