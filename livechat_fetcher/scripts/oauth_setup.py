from __future__ import annotations

import argparse
import sys
from pathlib import Path

from livechat_fetcher.errors import FetcherError
from livechat_fetcher.repositories.token_store import FileTokenStore
from livechat_fetcher.services.credentials import OAUTH_CALLBACK_PORT, authorize_installed_app


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Authorize the live chat fetcher with a Google account and save the token.",
    )
    parser.add_argument("--client-id", required=True, help="Google OAuth client id.")
    parser.add_argument("--client-secret", required=True, help="Google OAuth client secret.")
    parser.add_argument(
        "--token-path",
        type=Path,
        required=True,
        help="Where to write the OAuth token record (mode 0600).",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=OAUTH_CALLBACK_PORT,
        help="Local port for the authorization callback.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    store = FileTokenStore(args.token_path.expanduser().resolve())

    try:
        record = authorize_installed_app(args.client_id, args.client_secret, port=args.port)
        store.save(record)
    except FetcherError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return exc.exit_code

    print(f"OAuth success. Token path: {store.path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
