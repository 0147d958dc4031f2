"""
Command-line front end.

    ultransc [--root DIR] [--config FILE] [-v] [run|doctor|status|blocks] ...

`run` (the default) performs one full pass over the queue.  Exit codes:
0 all units done, 1 some units failed, 2 run aborted.
"""

import sys
import logging
import argparse
from pathlib import Path

from ultransc.core.constants import (
    APP_NAME, APP_VERSION, JobStage, LOG_FORMAT, SYSTEM_LOG_NAME, ERROR_LOG_NAME,
    BLOCK_CONTEXT_BEFORE, BLOCK_CONTEXT_AFTER, BLOCK_SIMILARITY_THRESHOLD,
)
from ultransc.core.config import AppConfig
from ultransc.core.error_codes import RunAbort
from ultransc.core.paths import Layout
from ultransc.core.diagnostics import get_diagnostics, run_preflight
from ultransc.core.job_queue import QueueOrchestrator
from ultransc.core.state_store import list_jobs
from ultransc.core.keyword_blocks import extract_blocks, BlockSearchError
from ultransc.core.bootstrap import fetch_model, resolve_ytdlp, FetchError
from ultransc.core.model_select import write_model_list

logger = logging.getLogger("ultransc")

EXIT_OK = 0
EXIT_UNIT_FAILURES = 1
EXIT_ABORT = 2


def setup_logging(layout: Layout, verbose: bool = False):
    """Run-wide handlers: system.log, errors.log (ERROR and up) and stderr."""
    layout.logs_dir.mkdir(parents=True, exist_ok=True)
    errors = logging.FileHandler(layout.logs_dir / ERROR_LOG_NAME, encoding="utf-8")
    errors.setLevel(logging.ERROR)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(layout.logs_dir / SYSTEM_LOG_NAME, encoding="utf-8"),
            errors,
            logging.StreamHandler(sys.stderr),
        ],
        force=True,
    )


def load_config(args) -> AppConfig:
    layout = Layout(args.root)
    config = AppConfig(Path(args.config) if args.config else layout.config_path)
    config.ensure_saved()
    return config


# ── Commands ──────────────────────────────────────────────────────────

def cmd_run(args) -> int:
    layout = Layout(args.root)
    config = load_config(args).as_dict()
    if args.order:
        config['source_priority'] = [c.strip() for c in args.order.split(',') if c.strip()]

    logger.info("=" * 60)
    logger.info("%s v%s starting (root: %s)", APP_NAME, APP_VERSION, layout.root)
    try:
        run_preflight(layout, config)
        summary = QueueOrchestrator(layout, config).run_pass()
    except RunAbort as e:
        logger.error("Run aborted: %s", e)
        return EXIT_ABORT

    print(f"Completed: {summary.completed}  Failed: {summary.failed}  "
          f"Unit failures: {summary.unit_failures}")
    if summary.skipped_categories:
        print(f"Skipped unknown categories: {', '.join(summary.skipped_categories)}")
    return EXIT_UNIT_FAILURES if (summary.failed or summary.unit_failures) else EXIT_OK


def cmd_doctor(args) -> int:
    layout = Layout(args.root)
    load_config(args)

    if args.fetch_model:
        try:
            fetch_model(args.fetch_model, layout.models_dir)
        except (FetchError, ValueError) as e:
            logger.error("Model download failed: %s", e)
            return EXIT_UNIT_FAILURES
        write_model_list(layout.models_dir)
    if args.fetch_ytdlp:
        try:
            resolve_ytdlp(layout.bin_dir, auto_fetch=True)
        except RunAbort as e:
            logger.error("%s", e)
            return EXIT_UNIT_FAILURES

    info = get_diagnostics(layout)
    print(f"{APP_NAME} v{APP_VERSION} — setup check")
    print(f"  OS:        {info['os']} ({'supported' if info['os_supported'] else 'unsupported'})")
    print(f"  Root:      {info['root']} ({'writable' if info['root_writable'] else 'NOT writable'})")
    for tool, version in info['tools'].items():
        print(f"  {tool + ':':<10} {version}")
    print(f"  Models:    {', '.join(info['models']) or '(none)'}")
    if info['disk_free_gb'] is not None:
        print(f"  Disk free: {info['disk_free_gb']}GB")
    if info['resources']:
        res = info['resources']
        print(f"  RAM:       {res['total_ram_gb']}GB total, {res['free_ram_mb']}MB free, "
              f"{res['swap_used_mb']}MB swap used")
    for warning in info['warnings']:
        print(f"  [WARN]  {warning}")
    for error in info['errors']:
        print(f"  [ERROR] {error}")
    return EXIT_UNIT_FAILURES if info['errors'] else EXIT_OK


def cmd_status(args) -> int:
    layout = Layout(args.root)
    jobs = list_jobs(layout.workspace, include_recovered=True)
    if not jobs:
        print("No jobs.")
        return EXIT_OK
    print(f"{'JOB':<48} {'STAGE':<20} {'RETRIES':>7}  ERROR")
    for job in jobs:
        stage = job.stage
        if job.metadata.get('recovered'):
            stage += " (no record)"
        error = job.metadata.get('error_code', '') if job.stage == JobStage.FAILED else ''
        print(f"{job.job_id:<48} {stage:<20} {job.retry_count:>7}  {error}")
    return EXIT_OK


def cmd_blocks(args) -> int:
    layout = Layout(args.root)
    keywords = list(args.keyword or []) + list(args.trailing)
    if not args.patterns or not keywords:
        print("Usage: ultransc blocks PATTERN... -- KEYWORD...", file=sys.stderr)
        return EXIT_UNIT_FAILURES
    try:
        result = extract_blocks(layout.workspace, layout.blocks_dir, args.patterns, keywords,
                                before=args.before, after=args.after, threshold=args.threshold)
    except BlockSearchError as e:
        logger.error("%s", e)
        return EXIT_UNIT_FAILURES

    print(f"Saved {result.saved} block(s), skipped {result.skipped} similar.")
    for keyword in result.missing_keywords:
        print(f"No occurrences for keyword: {keyword}")
    print(f"TXT -> {result.txt_path}")
    print(f"MD  -> {result.md_path}")
    return EXIT_OK


# ── Parser ────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ultransc",
        description="Local, resumable batch transcription with whisper.cpp.",
    )
    p.add_argument("--root", type=Path, default=Path.cwd(),
                   help="Installation root holding queue/, workspace/, models/ (default: cwd).")
    p.add_argument("--config", default=None,
                   help="Config file (default: <root>/config/default.json).")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    p.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    p.set_defaults(func=cmd_run, order=None)

    sub = p.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Process the whole queue once (default).")
    run.add_argument("--order", default=None,
                     help="Comma-separated source order, e.g. 'urls,local'.")
    run.set_defaults(func=cmd_run)

    doctor = sub.add_parser("doctor", help="Check tools, models and host resources.")
    doctor.add_argument("--fetch-model", default=None, metavar="NAME",
                        help="Download a ggml model into models/ first.")
    doctor.add_argument("--fetch-ytdlp", action="store_true",
                        help="Download yt-dlp into bin/ when it is missing.")
    doctor.set_defaults(func=cmd_doctor)

    status = sub.add_parser("status", help="List job workspaces and their stage.")
    status.set_defaults(func=cmd_status)

    blocks = sub.add_parser("blocks", help="Extract keyword context blocks from a transcript.",
                            usage="ultransc blocks PATTERN... -- KEYWORD...")
    blocks.add_argument("patterns", nargs="*", help="Job name fragments, matched in order.")
    blocks.add_argument("-k", "--keyword", action="append", help="Keyword (repeatable).")
    blocks.add_argument("--before", type=int, default=BLOCK_CONTEXT_BEFORE)
    blocks.add_argument("--after", type=int, default=BLOCK_CONTEXT_AFTER)
    blocks.add_argument("--threshold", type=float, default=BLOCK_SIMILARITY_THRESHOLD,
                        help="Skip blocks at least this similar to a saved one (0-1).")
    blocks.set_defaults(func=cmd_blocks)

    return p


def split_trailing(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split argv at the first '--'; argparse would drop the marker itself."""
    if "--" in argv:
        idx = argv.index("--")
        return argv[:idx], argv[idx + 1:]
    return argv, []


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    argv, trailing = split_trailing(argv)
    parser = build_parser()
    args = parser.parse_args(argv)
    if trailing and args.func is not cmd_blocks:
        parser.error("'--' is only accepted by the blocks command")
    args.trailing = trailing
    args.root = args.root.expanduser().resolve()

    setup_logging(Layout(args.root), args.verbose)
    try:
        return args.func(args)
    except KeyboardInterrupt:
        logger.warning("Interrupted; state is saved and the next run resumes.")
        return EXIT_ABORT


if __name__ == "__main__":
    sys.exit(main())
