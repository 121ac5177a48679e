#!/usr/bin/env python3
"""
ScreenRecap v1.0.0 — Main entry point.

Commands:
    run                    start the analysis scheduler and block
    reprocess-day DAY      re-run analysis for a logical day (YYYY-MM-DD)
    reprocess-batches ID…  re-run analysis for specific batches
    diagnostics            print tool versions and pipeline health
    set-key [--delete]     store or remove the Gemini API key in the Keychain
"""

import sys
import os
import json
import time
import logging
import argparse
import getpass
import traceback
from pathlib import Path
from datetime import datetime

# ── Ensure Homebrew paths are in PATH ────────────────────────────────
# Launched from a LaunchAgent or .app, macOS does not source shell profiles,
# so ffmpeg/ffprobe from Homebrew are missing from PATH.
HOMEBREW_PATHS = [
    "/opt/homebrew/bin",          # Apple Silicon default
    "/opt/homebrew/sbin",
    "/usr/local/bin",             # Intel Mac default
    "/usr/local/sbin",
]

current_path = os.environ.get("PATH", "")
for p in HOMEBREW_PATHS:
    if os.path.isdir(p) and p not in current_path:
        current_path = p + ":" + current_path
os.environ["PATH"] = current_path

PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from recap.core.constants import APP_NAME, APP_VERSION, LOG_DIR

logger = logging.getLogger(APP_NAME)


def setup_logging(verbose: bool = False):
    """File log under ~/Library/Logs/ScreenRecap; --verbose adds the console."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    handlers = [logging.FileHandler(LOG_DIR / "app.log", encoding="utf-8")]
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
    # requests/urllib3 are noisy at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def check_prerequisites() -> bool:
    """Check that ffmpeg and ffprobe are available."""
    import shutil
    missing = [tool for tool in ("ffmpeg", "ffprobe") if not shutil.which(tool)]
    if missing:
        logger.error("Missing tools %s. PATH = %s", missing, os.environ.get("PATH", ""))
        print(f"Missing required tools: {', '.join(missing)} (install with: brew install ffmpeg)",
              file=sys.stderr)
        return False
    logger.info("ffmpeg found at: %s", shutil.which("ffmpeg"))
    return True


def build_services(config_path: Path | None = None, db_path: Path | None = None):
    """Construct each service once and wire them together."""
    from recap.core.config import AppConfig
    from recap.core.db_sqlite import Database
    from recap.core.chunk_store import ChunkStore
    from recap.core.llm_provider import create_provider
    from recap.core.scheduler import AnalysisScheduler
    from recap.core.reprocess import ReprocessingEngine

    config = AppConfig(config_path)
    db = Database(db_path)
    store = ChunkStore(db, quota_bytes=config.storage_quota_bytes)
    provider = create_provider(config)
    scheduler = AnalysisScheduler(db, provider, config)
    engine = ReprocessingEngine(db, scheduler)
    return config, db, store, scheduler, engine


def cmd_run(args, services) -> int:
    _config, _db, store, scheduler, _engine = services
    store.purge_if_needed()
    scheduler.start()
    print(f"{APP_NAME} analysis running. Press Ctrl-C to stop.")
    try:
        while scheduler.is_running():
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
    return 0


def _print_progress(message: str):
    print(message, flush=True)


def _run_reprocess(engine, start) -> int:
    """Run a reprocess on the engine's thread so Ctrl-C can cancel it."""
    outcome = {}

    def completion(result, error):
        outcome['result'], outcome['error'] = result, error

    worker = start(progress=_print_progress, completion=completion)
    try:
        while worker.is_alive():
            worker.join(0.5)
    except KeyboardInterrupt:
        print("Cancelling reprocessing...", file=sys.stderr)
        engine.cancel()
        worker.join()

    if outcome.get('error'):
        print(f"Reprocessing failed: {outcome['error']}", file=sys.stderr)
        return 1
    result = outcome['result']
    return 0 if result.processed == len(result.batch_ids) else 1


def cmd_reprocess_day(args, services) -> int:
    *_, engine = services
    return _run_reprocess(engine, lambda **kw: engine.reprocess_day_async(args.day, **kw))


def cmd_reprocess_batches(args, services) -> int:
    *_, engine = services
    return _run_reprocess(engine, lambda **kw: engine.reprocess_batches_async(args.batch_ids, **kw))


def cmd_set_key(args) -> int:
    """Store (or with --delete, remove) the Gemini API key in the Keychain."""
    from recap.core.security_utils import keychain_set_api_key, keychain_delete_api_key
    if args.delete:
        ok = keychain_delete_api_key()
        print("API key removed" if ok else "No API key was stored")
        return 0 if ok else 1
    api_key = getpass.getpass("Gemini API key: ").strip()
    if not api_key:
        print("No key entered", file=sys.stderr)
        return 1
    if not keychain_set_api_key(api_key):
        print("Failed to write the key to the Keychain", file=sys.stderr)
        return 1
    print("API key saved to Keychain")
    return 0


def cmd_diagnostics(args, services) -> int:
    from recap.core.diagnostics import get_diagnostics
    _config, db, store, _scheduler, _engine = services
    info = get_diagnostics(db, store.recordings_dir)
    print(json.dumps(info, indent=2))
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="screenrecap", description=f"{APP_NAME} analysis pipeline")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging to the console")
    parser.add_argument("--config", type=Path, help="path to config.json")
    parser.add_argument("--db", type=Path, help="path to the SQLite database")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="start the analysis scheduler").set_defaults(func=cmd_run)

    p = sub.add_parser("reprocess-day", help="re-run analysis for a logical day")
    p.add_argument("day", help="YYYY-MM-DD")
    p.set_defaults(func=cmd_reprocess_day)

    p = sub.add_parser("reprocess-batches", help="re-run analysis for specific batches")
    p.add_argument("batch_ids", type=int, nargs="+")
    p.set_defaults(func=cmd_reprocess_batches)

    sub.add_parser("diagnostics", help="print tool versions and pipeline health").set_defaults(func=cmd_diagnostics)

    p = sub.add_parser("set-key", help="store the Gemini API key in the Keychain")
    p.add_argument("--delete", action="store_true", help="remove the stored key instead")
    p.set_defaults(func=cmd_set_key)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Command: %s", args.command)
    logger.info("=" * 60)

    if args.command == "set-key":
        return args.func(args)

    if args.command != "diagnostics" and not check_prerequisites():
        return 1

    try:
        services = build_services(args.config, args.db)
        return args.func(args, services)
    except Exception as e:
        logger.critical("Fatal error: %s: %s\n%s", type(e).__name__, e, traceback.format_exc())
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
