"""CLI command that follows generation progress for one username.

Rows arrive through two channels: the NDJSON event stream and a fallback
poll of the identities endpoint. Both feed the same ProgressReconciler, so a
dropped event only delays the view until the next poll.

Usage:
    python -m idforge.cli.watch_progress USERNAME [OPTIONS]

Examples:
    # Watch until every running stage settles
    python -m idforge.cli.watch_progress alice

    # Watch a stage that is about to start
    python -m idforge.cli.watch_progress alice --start anc

    # Against a remote API, polling only
    python -m idforge.cli.watch_progress alice --api-url https://api.example.com --no-events
"""

import asyncio
import json
import sys
from argparse import ArgumentParser, Namespace

import httpx
import structlog

from idforge.core.config import Settings, configure_logging
from idforge.models.identity import IdentitySource
from idforge.services.progress import ProgressReconciler

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Follow identity generation progress for a username")

    parser.add_argument("username", help="Instagram username whose stages are watched")

    parser.add_argument(
        "--api-url",
        default=None,
        help="Base URL of the API (default: PUBLIC_BASE_URL)",
    )

    parser.add_argument(
        "--start",
        choices=[src.value for src in IdentitySource],
        default=None,
        help="Treat this stage as generating from now on (request just sent)",
    )

    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Fallback poll interval in seconds (default: PROGRESS_POLL_INTERVAL_SECONDS)",
    )

    parser.add_argument(
        "--no-events",
        action="store_true",
        help="Do not subscribe to the event stream; rely on polling only",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up after this many seconds",
    )

    return parser.parse_args(argv)


async def poll_once(
    client: httpx.AsyncClient, reconciler: ProgressReconciler, username: str
) -> None:
    response = await client.get(
        "/api/identities", params={"instagram_username": username, "include_failed": "true"}
    )
    response.raise_for_status()
    reconciler.apply_poll(response.json()["identities"], username=username)


async def follow_events(client: httpx.AsyncClient, reconciler: ProgressReconciler) -> None:
    """Apply change events until the stream closes."""
    async with client.stream("GET", "/api/identities/events", timeout=None) as response:
        response.raise_for_status()
        async for line in response.aiter_lines():
            if not line.strip():
                continue
            message = json.loads(line)
            if message.get("type") == "change":
                reconciler.apply_event(message)


def report(reconciler: ProgressReconciler, username: str) -> None:
    for src, progress in reconciler.summary(username).items():
        if progress["state"] == "idle":
            continue
        logger.info(
            "watch_progress.stage",
            src=src,
            state=progress["state"],
            completed=progress["completed"],
            failed=progress["failed"],
            present=progress["present"],
            expected=progress["expected"],
        )


async def watch(
    client: httpx.AsyncClient,
    username: str,
    interval: float,
    start: str | None = None,
    use_events: bool = True,
) -> ProgressReconciler:
    """Poll (and optionally stream) until no stage of the username is generating."""
    reconciler = ProgressReconciler()

    response = await client.get(
        "/api/identities", params={"instagram_username": username, "include_failed": "true"}
    )
    response.raise_for_status()
    reconciler.restore_in_flight(response.json()["identities"])
    if start:
        reconciler.start(username, start)

    events_task = (
        asyncio.create_task(follow_events(client, reconciler)) if use_events else None
    )
    try:
        while username in reconciler.generating_usernames():
            report(reconciler, username)
            await asyncio.sleep(interval)
            await poll_once(client, reconciler, username)
    finally:
        if events_task is not None:
            events_task.cancel()
            await asyncio.gather(events_task, return_exceptions=True)

    report(reconciler, username)
    return reconciler


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (settled), 1 (error), 2 (timed out or interrupted)
    """
    args = parse_args(argv)
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    base_url = args.api_url or settings.public_base_url
    interval = args.interval or settings.progress_poll_interval_seconds

    try:
        async with httpx.AsyncClient(base_url=base_url, timeout=30.0) as client:
            await asyncio.wait_for(
                watch(client, args.username, interval, args.start, not args.no_events),
                timeout=args.timeout,
            )
        logger.info("watch_progress.settled", username=args.username)
        return 0

    except asyncio.TimeoutError:
        logger.warning("watch_progress.timeout", username=args.username)
        return 2

    except KeyboardInterrupt:
        logger.warning("watch_progress.interrupted")
        return 2

    except Exception as e:
        logger.error("watch_progress.fatal_error", error=str(e), exc_info=True)
        return 1


def main(argv: list[str] | None = None) -> int:
    """Synchronous wrapper for async main."""
    return asyncio.run(async_main(argv))


if __name__ == "__main__":
    sys.exit(main())
