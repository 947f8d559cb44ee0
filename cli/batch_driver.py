"""CLI driver for the coordinator's paginated maintenance endpoints.

Each maintenance call handles one page and answers ``{processed,
next_offset, done}``; this tool keeps calling until ``done``.
"""

from __future__ import annotations

import argparse
import getpass
import sys
import time
from datetime import date
from typing import Any
from urllib.parse import urlparse

import httpx

OPERATIONS = ("purge", "reclassify", "rebuild-style-groups")
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}
# Pages retried on 503 before giving up.
MAX_UNAVAILABLE_RETRIES = 5


class BatchDriver:
    """Runs one maintenance operation to completion against a coordinator."""

    def __init__(
        self,
        server_url: str,
        token: str | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        retry_delay: float = 2.0,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.Client(
            base_url=server_url.rstrip("/"),
            headers=headers,
            timeout=120.0,
            transport=transport,
        )
        self.retry_delay = retry_delay

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> BatchDriver:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def login(self, username: str, password: str) -> str:
        """Login and keep the access token for later calls."""
        resp = self.client.post(
            "/api/auth/login",
            json={"username": username, "password": password},
        )
        resp.raise_for_status()
        token: str = resp.json()["access_token"]
        self.client.headers["Authorization"] = f"Bearer {token}"
        return token

    def _post_page(self, operation: str, payload: dict[str, Any]) -> dict[str, Any]:
        for attempt in range(MAX_UNAVAILABLE_RETRIES + 1):
            resp = self.client.post(f"/api/admin/maintenance/{operation}", json=payload)
            if resp.status_code == 503 and attempt < MAX_UNAVAILABLE_RETRIES:
                time.sleep(self.retry_delay * (2**attempt))
                continue
            resp.raise_for_status()
            result: dict[str, Any] = resp.json()
            return result
        raise AssertionError("unreachable")

    def run(
        self,
        operation: str,
        *,
        limit: int | None = None,
        offset: int = 0,
        cutoff_date: date | None = None,
        verbose: bool = True,
    ) -> int:
        """Call ``operation`` page by page until it reports done.

        Returns the total number of rows processed.
        """
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation '{operation}'")
        fixed: dict[str, Any] = {}
        if limit is not None:
            fixed["limit"] = limit
        if operation == "purge":
            if cutoff_date is None:
                raise ValueError("purge requires a cutoff date")
            fixed["cutoff_date"] = cutoff_date.isoformat()

        total = 0
        while True:
            payload = dict(fixed)
            if operation != "purge":
                payload["offset"] = offset

            page = self._post_page(operation, payload)
            total += int(page["processed"])
            offset = int(page["next_offset"])
            if verbose:
                print(f"  {operation}: {page['processed']} processed (total {total})")
            if page["done"]:
                return total


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    if (
        parsed.scheme == "http"
        and not allow_insecure_http
        and parsed.hostname not in _LOCALHOST_HOSTS
    ):
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )
    return normalized


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="designdam-batch",
        description="Run a coordinator maintenance operation to completion",
    )
    parser.add_argument("--server", "-s", required=True, help="Coordinator URL")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--username", "-u", help="Operator username")
    parser.add_argument("--limit", type=int, help="Rows per page (server caps it)")
    parser.add_argument("--offset", type=int, default=0, help="Start offset")
    parser.add_argument("--cutoff", type=date.fromisoformat, help="Purge cutoff (YYYY-MM-DD)")
    parser.add_argument("operation", choices=OPERATIONS)

    args = parser.parse_args(argv)

    try:
        server_url = validate_server_url(args.server, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    if args.operation == "purge" and args.cutoff is None:
        print("Error: --cutoff required for purge")
        sys.exit(1)

    username = args.username or input("Username: ")
    password = getpass.getpass("Password: ")

    with BatchDriver(server_url) as driver:
        try:
            driver.login(username, password)
        except httpx.HTTPStatusError as exc:
            print(f"Error: Login failed ({exc.response.status_code})")
            sys.exit(1)
        try:
            total = driver.run(
                args.operation, limit=args.limit, offset=args.offset, cutoff_date=args.cutoff
            )
        except httpx.HTTPStatusError as exc:
            print(f"Error: {args.operation} failed ({exc.response.status_code})")
            sys.exit(1)
        print(f"{args.operation} complete. {total} row(s) processed.")


if __name__ == "__main__":
    main()
