#!/usr/bin/env python
# main.py – Command-line entry for the integration-depth SNR analysis
import sys
import logging
import faulthandler
import argparse
import signal
import threading
from pathlib import Path

from core.pipeline import run_pipeline
from utils.config import load_config
from utils.logger import setup_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Measure how SNR grows with integration depth for a set of subframes."
    )
    parser.add_argument("input", type=Path, help="Folder holding TIFF subframes")
    parser.add_argument(
        "--config",
        type=Path,
        help="Project config YAML (default: <input>/config.yaml if present)",
    )
    parser.add_argument("--out", type=Path, help="Output folder (default: <input>/output)")
    parser.add_argument("--log-file", type=Path, help="Also write the log to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--no-faulthandler", action="store_true")
    return parser


def _print_summary(results) -> None:
    for name, res in results.items():
        print(f"== {name} ==")
        if res.needs_manual is not None:
            print(f"  ROI needs manual input: {res.needs_manual}")
            continue
        for job in res.jobs:
            print(f"  {job.label:>6}  {job.depth:4d} subs  SNR {job.snr:8.3f}")
        if res.dropped:
            print("  dropped: " + ", ".join(res.dropped))
        if res.insights is not None and res.insights.summary:
            print(res.insights.summary)
        for kind, path in res.outputs.items():
            print(f"  {kind}: {path}")


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(args.log_file, logging.DEBUG if args.verbose else logging.INFO)

    if not args.no_faulthandler:
        try:
            faulthandler.enable()
        except Exception as exc:  # pragma: no cover - fail safe
            logging.debug("Failed to enable faulthandler: %s", exc)

    cfg = load_config(args.config if args.config else args.input)
    if args.verbose:
        cfg.setdefault("logging", {})["level"] = "DEBUG"

    cancel = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel.set())

    logging.info("Application started")
    try:
        results = run_pipeline(args.input, cfg, out_dir=args.out, cancel=cancel)
    except (FileNotFoundError, RuntimeError, ValueError) as exc:
        logging.error("%s", exc)
        return 1
    _print_summary(results)
    if any(r.needs_manual is not None for r in results.values()):
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
