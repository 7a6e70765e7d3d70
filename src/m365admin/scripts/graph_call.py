"""CLI script to make a raw Microsoft Graph GET call.

Acquires an app-only token with the client credentials grant and prints the
JSON response, optionally following @odata.nextLink across pages.

Usage:
    uv run graph-call /users --param '$select=displayName,mail'
    uv run graph-call /groups --all-pages --output groups.json
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from m365admin.core.graph_rest import GraphRestClient, GraphRestError

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

# Silence verbose HTTP request logging
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


def parse_params(values: list[str] | None) -> dict[str, str]:
    """Parse repeated KEY=VALUE arguments into query parameters.

    Raises:
        ValueError: If a value has no "="
    """
    params: dict[str, str] = {}
    for value in values or []:
        key, sep, param_value = value.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid parameter '{value}', expected KEY=VALUE")
        params[key] = param_value
    return params


def run_call(
    endpoint: str,
    params: dict[str, str],
    all_pages: bool = False,
    max_pages: int | None = None,
    api_version: str = "v1.0",
) -> dict | list[dict]:
    """Call a Graph endpoint and return the decoded response."""
    with GraphRestClient(api_version=api_version) as client:
        if all_pages:
            return client.get_all(endpoint, params=params or None, max_pages=max_pages)
        return client.get(endpoint, params=params or None)


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Call a Microsoft Graph endpoint (GET)")
    parser.add_argument("endpoint", help="Relative endpoint (e.g. /users) or absolute Graph URL")
    parser.add_argument(
        "--param",
        action="append",
        metavar="KEY=VALUE",
        help="Query parameter (can be specified multiple times)",
    )
    parser.add_argument(
        "--all-pages",
        action="store_true",
        help="Follow @odata.nextLink and return every item",
    )
    parser.add_argument("--max-pages", type=int, help="Stop after this many pages")
    parser.add_argument("--beta", action="store_true", help="Use the beta endpoint")
    parser.add_argument("--output", "-o", type=Path, help="Write JSON to a file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        params = parse_params(args.param)
        data = run_call(
            args.endpoint,
            params,
            all_pages=args.all_pages,
            max_pages=args.max_pages,
            api_version="beta" if args.beta else "v1.0",
        )
    except (ValueError, GraphRestError) as e:
        logger.error(str(e))
        sys.exit(1)

    output = json.dumps(data, indent=2, default=str)
    if args.output:
        args.output.write_text(output + "\n", encoding="utf-8")
        count = len(data) if isinstance(data, list) else 1
        logger.info(f"Wrote {count} item(s) to {args.output}")
    else:
        print(output)

    sys.exit(0)


if __name__ == "__main__":
    main()
