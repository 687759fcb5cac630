import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from rebalance_core import (
    QueueMasterRebalancer,
    RebalanceConfig,
    RebalanceError,
    build_client,
)

logger = logging.getLogger("rebalance")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    # urllib3 connection chatter drowns the per-queue progress at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def install_cancel_handlers(cancel_event: threading.Event) -> None:
    """Turn SIGTERM and SIGINT into a cancellation so the in-flight temporary policy gets cleared."""
    def _handler(signum, frame):  # pylint: disable=unused-argument
        logger.warning("Received signal %s, cancelling after cleanup of the current queue", signum)
        cancel_event.set()

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def rebalance(
    config: RebalanceConfig,
    cancel_event: Optional[threading.Event] = None,
) -> int:
    settings = config.settings
    client = build_client(config.broker)
    try:
        rebalancer = QueueMasterRebalancer(client, settings, cancel_event=cancel_event)
        metrics = rebalancer.run()
    finally:
        client.close()

    summary = metrics.snapshot()
    print(json.dumps(summary, indent=2, default=str), flush=True)
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Spread classic mirrored queue masters round-robin across RabbitMQ cluster nodes.",
    )
    parser.add_argument("--config", default=None, help="Path to JSON configuration file.")
    parser.add_argument("-p", "--vhost", default=None, help="Virtual host to rebalance (default: /).")
    parser.add_argument(
        "-q",
        "--queue-pattern",
        default=None,
        help="Regex matched against the whole queue name (default: all queues).",
    )
    parser.add_argument(
        "--transport",
        choices=["http", "ctl"],
        default=None,
        help="Control plane: management HTTP API or rabbitmqctl (default: http).",
    )
    parser.add_argument("--url", default=None, help="Management API base URL (default: http://localhost:15672).")
    parser.add_argument("--username", default=None, help="Management API user.")
    parser.add_argument("--password", default=None, help="Management API password.")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between convergence checks.")
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help="Convergence checks per queue before giving up (0 = unbounded).",
    )
    parser.add_argument("--deadline", type=float, default=None, help="Seconds to wait per queue before giving up.")
    parser.add_argument(
        "--dry-run",
        action="store_const",
        const=True,
        default=None,
        help="Print the assignment plan without changing any policy.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> RebalanceConfig:
    config = RebalanceConfig(args.config)
    return config.with_overrides(
        broker={
            "transport": args.transport,
            "url": args.url.rstrip("/") if args.url else None,
            "username": args.username,
            "password": args.password,
        },
        settings={
            "vhost": args.vhost,
            "queue_pattern": args.queue_pattern,
            "poll_interval": args.poll_interval,
            "max_attempts": args.max_attempts,
            "deadline": args.deadline,
            "dry_run": args.dry_run,
        },
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)

    cancel_event = threading.Event()
    install_cancel_handlers(cancel_event)

    try:
        config = load_config(args)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    try:
        return rebalance(config, cancel_event=cancel_event)
    except RebalanceError as exc:
        logger.error("%s: %s", exc.__class__.__name__, exc)
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
