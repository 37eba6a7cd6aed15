"""Queue a manual purchase, email check, or redemption sweep."""

import argparse
import json
import os

import httpx

PATHS = {
    "purchase": "/triggers/purchase",
    "email-check": "/triggers/email-check",
    "redemption": "/triggers/redemption",
}


def main() -> None:
    parser = argparse.ArgumentParser(description="Trigger one cardrelay cycle now.")
    parser.add_argument("action", choices=sorted(PATHS))
    parser.add_argument("--url", default="http://localhost:8080")
    parser.add_argument("--api-key", default=os.environ.get("API_KEY"))
    parser.add_argument("--include-failed", action="store_true", help="redemption only: retry failed codes too")
    args = parser.parse_args()

    params = {"include_failed": "true"} if args.action == "redemption" and args.include_failed else {}
    headers = {"x-api-key": args.api_key} if args.api_key else {}
    resp = httpx.post(f"{args.url}{PATHS[args.action]}", params=params, headers=headers, timeout=10.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
