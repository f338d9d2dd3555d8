from __future__ import annotations

import argparse
import logging
import os
import signal
import threading

from .config import load_config
from .tracker import Tracker, build_tracker


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="gst", description="Game Server Tracker (polling + fanout notifications)")
    p.add_argument("--config", required=True, help="Path to JSON config file")
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG/INFO/WARNING/ERROR). Defaults to env GST_LOG_LEVEL or INFO",
    )

    mode = p.add_mutually_exclusive_group(required=False)
    mode.add_argument("--once", action="store_true", help="Run one poll round and exit")
    mode.add_argument("--daemon", action="store_true", help="Run forever with poll interval")
    return p


def _resolve_log_level(value: str | None) -> int:
    v = (value or "").strip().upper()
    if not v:
        return logging.INFO
    level = logging.getLevelNamesMapping().get(v)
    if isinstance(level, int):
        return level
    return logging.INFO


def _destinations_summary(tracker: Tracker) -> str:
    parts = [f"{d.destination_id}({d.type})" for d in tracker.config.destinations]
    return "; ".join(parts) if parts else "<none>"


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    log_level = _resolve_log_level(args.log_level or os.environ.get("GST_LOG_LEVEL"))
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger = logging.getLogger("gst")

    config = load_config(args.config)
    tracker = build_tracker(config)

    mode = "daemon" if args.daemon and not args.once else "once"
    logger.info("gst start: mode=%s config=%s", mode, args.config)
    logger.info(
        "config: poll_interval_seconds=%d query_timeout_seconds=%.1f max_workers=%d sqlite_path=%s",
        config.poll_interval_seconds,
        config.query_timeout_seconds,
        config.max_workers,
        config.sqlite_path,
    )
    logger.info("destinations: %s", _destinations_summary(tracker))
    if not config.destinations:
        logger.warning("no destinations configured; notifications will only be logged")

    for dest in config.destinations:
        tracker.register_guild_defaults(dest.destination_id)

    if mode == "once":
        tracker.load_report = tracker.instances.load_from_config(config.document)
        report = tracker.scheduler.run_once()
        if report is not None:
            logger.info(
                "once done: duration_ms=%d sources=%d ok=%d failed=%d notifications=%d delivery_failures=%d",
                report.duration_ms,
                len(report.results),
                report.successes,
                report.failures,
                report.dispatch.notifications,
                report.dispatch.delivery_failures,
            )
        tracker.stop()
        return 0

    stopping = threading.Event()

    def _on_signal(signum, _frame) -> None:  # noqa: ANN001
        logger.info("signal received: %s", signal.Signals(signum).name)
        stopping.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    tracker.on_ready()
    logger.info("daemon: poll_interval_seconds=%d", max(1, config.poll_interval_seconds))
    while not stopping.wait(1.0):
        pass

    drained = tracker.stop(timeout=config.query_timeout_seconds * 2 + 5)
    return 0 if drained else 1


if __name__ == "__main__":
    raise SystemExit(main())
