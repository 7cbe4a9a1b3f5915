"""Command-line entry point for the live chat fetcher."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import click

from livechat_fetcher.config import FetcherSettings, load_settings
from livechat_fetcher.errors import FetcherError
from livechat_fetcher.logging_config import configure_logging
from livechat_fetcher.main import run_fetcher


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version="0.1.0")
@click.option("--video-id", help="YouTube video ID to fetch comments from (optional with --resume).")
@click.option(
    "--api-key-path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="File containing the API key used for authentication.",
)
@click.option(
    "--oauth-token-path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="OAuth token file; created on first use when client credentials are given.",
)
@click.option("--oauth-client-id", help="OAuth client ID (refresh and first-time auth).")
@click.option("--oauth-client-secret", help="OAuth client secret (refresh and first-time auth).")
@click.option(
    "--reconnect-wait-secs",
    type=click.FloatRange(min=0),
    help="Seconds to wait before reconnecting after a connection failure (default: 5).",
)
@click.option(
    "--output-file",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Append JSON pages to this file, one per line, instead of stdout.",
)
@click.option(
    "--resume/--no-resume",
    default=None,
    help="Resume streaming from the last record in --output-file.",
)
@click.option("--server-address", help="Live chat stream endpoint (env SERVER_ADDRESS).")
@click.option(
    "--stream-protocol",
    type=click.Choice(["grpc", "http"], case_sensitive=False),
    help="Stream over gRPC (default) or the HTTP streaming endpoint.",
)
@click.option("--rest-api-address", help="YouTube Data API base URL (env REST_API_ADDRESS).")
@click.option("--log-level", help="Console log level (default: INFO).")
def main(**options: Any) -> None:
    """Stream live chat messages from a YouTube broadcast as JSON lines."""
    try:
        settings = load_settings(settings_overrides(options))
        configure_logging(settings)
        run_fetcher(settings)
    except FetcherError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(exc.exit_code) from exc


def settings_overrides(options: dict[str, Any]) -> dict[str, Any]:
    """Map click options onto settings fields, leaving unset flags to env/defaults."""
    overrides = {
        key: value
        for key, value in options.items()
        if key in FetcherSettings.model_fields and value is not None
    }
    reconnect_wait = options.get("reconnect_wait_secs")
    if reconnect_wait is not None:
        overrides["reconnect_wait_seconds"] = reconnect_wait
    return overrides


if __name__ == "__main__":
    main()
