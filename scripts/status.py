"""Print scheduler status and ledger statistics from a running instance."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for a quick health overview."""

    parser = argparse.ArgumentParser(description="Show cardrelay status and statistics.")
    parser.add_argument("--url", default="http://localhost:8080")
    parser.add_argument("--api-key", default=os.environ.get("API_KEY"))
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key} if args.api_key else {}
    with httpx.Client(base_url=args.url, headers=headers, timeout=10.0) as client:
        status = client.get("/status")
        status.raise_for_status()
        stats = client.get("/statistics")
        stats.raise_for_status()

    print(json.dumps({"status": status.json(), "statistics": stats.json()}, indent=2))


if __name__ == "__main__":
    main()
