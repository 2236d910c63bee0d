import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

from . import config
from .core import MediaCleanupApp
from .exceptions import MediaCleanupError


def setup_logging(log_file: Optional[Path], verbose: bool):
    """Sets up logging to the console and, when given, a log file."""
    log_level = logging.DEBUG if verbose else logging.INFO

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )

    # Silence chatty libraries
    logging.getLogger("PIL").setLevel(logging.WARNING)


def parse_id_list(value: str) -> List[int]:
    try:
        return [abs(int(v)) for v in value.split(',') if v.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected comma-separated ids, got '{value}'")


def parse_type_list(value: str) -> List[str]:
    return [v.strip() for v in value.split(',') if v.strip()]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Media Cleanup: find and clean up unused, duplicate and oversized media")

    p.add_argument("--db", type=Path, default=Path("media_cleanup.db"), help="SQLite content store (default: ./media_cleanup.db)")
    p.add_argument("--upload-dir", type=Path, default=Path("uploads"), help="Directory holding attachment files")
    p.add_argument("--log-file", type=Path, default=None, help="Also write the log to this file")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("scan", help="Run a media scan")
    s.add_argument("--types", type=parse_type_list, default=None,
                   help=f"Comma-separated scan types ({', '.join(config.SCAN_TYPES)}); default: unused,duplicate")
    s.add_argument("--batch-size", type=int, default=None, help="Items per batch (default: settings)")
    s.add_argument("--async", dest="run_async", action="store_true", help="Queue the scan for the worker instead of running it now")

    w = sub.add_parser("worker", help="Process queued scan batches")
    w.add_argument("--once", action="store_true", help="Exit when the queue is empty")
    w.add_argument("--poll", type=float, default=config.WORKER_POLL_INTERVAL, help="Seconds between queue polls")

    sub.add_parser("status", help="Show scan progress")
    sub.add_parser("cancel", help="Cancel the running scan")
    sub.add_parser("reset", help="Cancel and clear all scan results")

    st = sub.add_parser("stats", help="Show result counts")
    st.add_argument("--format", choices=("table", "json"), default="table")

    ls = sub.add_parser("list", help="List results of one type")
    ls.add_argument("--type", default="unused", choices=config.RESULT_TYPES)
    ls.add_argument("--page", type=int, default=1)
    ls.add_argument("--per-page", type=int, default=config.RESULTS_PER_PAGE)
    ls.add_argument("--orderby", default="file_size", choices=config.RESULT_ORDERBY)
    ls.add_argument("--order", default="desc", choices=("asc", "desc"))
    ls.add_argument("--format", choices=("table", "json"), default="table")
    ls.add_argument("--csv", type=str, default=None, help="Export every item of this type to a CSV file")

    d = sub.add_parser("duplicates", help="List duplicate groups")
    d.add_argument("--page", type=int, default=1)
    d.add_argument("--per-page", type=int, default=config.GROUPS_PER_PAGE)
    d.add_argument("--format", choices=("table", "json"), default="table")

    sh = sub.add_parser("show", help="Show one attachment with its references")
    sh.add_argument("id", type=int)

    for name, help_text in (("archive", "Move media into the archive folder"),
                            ("trash", "Move media to the trash"),
                            ("delete", "Permanently delete media and files")):
        a = sub.add_parser(name, help=help_text)
        a.add_argument("--type", choices=config.SCAN_TYPES, default=None, help="Act on every result of this type")
        a.add_argument("--ids", type=parse_id_list, default=None, help="Comma-separated attachment ids")
        a.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    for name, help_text in (("restore", "Restore trashed media"),
                            ("flag", "Flag media for review"),
                            ("unflag", "Remove review flags")):
        a = sub.add_parser(name, help=help_text)
        a.add_argument("ids", type=int, nargs="+")

    sp = sub.add_parser("set-primary", help="Choose the copy to keep in a duplicate group")
    sp.add_argument("id", type=int)
    sp.add_argument("--group", type=parse_id_list, default=None, help="Group member ids (default: from scan results)")

    r = sub.add_parser("rehash", help="Recompute content hashes")
    r.add_argument("--ids", type=parse_id_list, default=None)
    r.add_argument("--batch-size", type=int, default=config.DEFAULT_BATCH_SIZE)

    cfg = sub.add_parser("settings", help="Show or change settings")
    cfg.add_argument("--set", dest="assignments", action="append", default=[], metavar="KEY=VALUE")

    imp = sub.add_parser("import", help="Register files in the upload directory as attachments")
    imp.add_argument("--root", type=Path, default=None, help="Subdirectory to import (default: whole upload dir)")

    return p


# --- Output helpers ---

def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def print_json(data):
    print(json.dumps(data, indent=2, default=str))


def confirm(message: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    answer = input(f"{message} [y/n] ").strip().lower()
    return answer in ("y", "yes")


def resolve_ids(app: MediaCleanupApp, args) -> List[int]:
    if args.ids:
        return args.ids
    if args.type:
        findings = app.orchestrator.get_results(args.type)[args.type]
        # The primary copy of each duplicate group is never a bulk target
        return [att_id for att_id, finding in findings.items() if not finding.is_primary]
    raise MediaCleanupError("Specify --type or --ids.")


# --- Commands ---

def cmd_scan(app: MediaCleanupApp, args) -> int:
    if args.run_async:
        if not app.orchestrator.start(args.types, args.batch_size):
            logging.error("A scan is already running. Use 'cancel' or 'reset' first.")
            return 1
        print("Scan queued. Run the 'worker' command to process it.")
        return 0

    with tqdm(total=0, desc="Scanning", unit="item") as bar:
        def on_batch(progress):
            bar.total = progress.total
            bar.set_postfix_str(progress.phase)
            bar.update(max(0, progress.processed - bar.n))

        progress = app.orchestrator.run_sync(args.types, args.batch_size, on_batch=on_batch)

    if progress is None:
        logging.error("A scan is already running. Use 'cancel' or 'reset' first.")
        return 1
    if progress.status != config.STATUS_COMPLETE:
        logging.error(f"Scan stopped in phase '{progress.phase}' ({app.queue.failed_count()} failed task(s)).")
        return 1

    print_stats(app.orchestrator.get_stats().to_dict())
    return 0


def cmd_worker(app: MediaCleanupApp, args) -> int:
    try:
        app.run_worker(poll_interval=args.poll, exit_when_idle=args.once)
    except KeyboardInterrupt:
        logging.warning("Worker stopped by user.")
    return 0


def cmd_status(app: MediaCleanupApp, args) -> int:
    for key, value in app.status().items():
        print(f"{key:<15} {value}")
    return 0


def cmd_cancel(app: MediaCleanupApp, args) -> int:
    if app.orchestrator.cancel():
        print("Scan cancelled.")
    else:
        print("No scan is running.")
    return 0


def cmd_reset(app: MediaCleanupApp, args) -> int:
    app.orchestrator.reset()
    print("Scan state reset.")
    return 0


def print_stats(stats: dict):
    for key, value in stats.items():
        print(f"{key:<18} {value}")


def cmd_stats(app: MediaCleanupApp, args) -> int:
    stats = app.orchestrator.get_stats().to_dict()
    if args.format == "json":
        print_json(stats)
    else:
        print_stats(stats)
    return 0


def cmd_list(app: MediaCleanupApp, args) -> int:
    if args.csv:
        count = app.query.export_csv(args.type, args.csv, args.orderby, args.order)
        print(f"Wrote {count} row(s) to {args.csv}")
        return 0

    page = app.query.get_results(args.type, args.page, args.per_page, args.orderby, args.order)
    if args.format == "json":
        print_json(page)
        return 0

    print(f"{'ID':>6}  {'Size':>10}  {'Uploaded':<25}  Filename")
    for item in page['items']:
        marks = "".join(m for m, on in (("F", item.get('is_flagged')), ("T", item.get('is_trashed'))) if on)
        print(f"{item['attachment_id']:>6}  {format_size(item.get('file_size', 0)):>10}  "
              f"{item.get('upload_date', ''):<25}  {item.get('filename', '')} {marks}".rstrip())
    print(f"Page {page['page']} of {page['total_pages']} ({page['total']} item(s))")
    return 0


def cmd_duplicates(app: MediaCleanupApp, args) -> int:
    page = app.query.get_duplicate_groups(args.page, args.per_page)
    if args.format == "json":
        print_json(page)
        return 0

    for group in page['groups']:
        print(f"Group {group['hash'][:12]} ({len(group['members'])} files)")
        for member in group['members']:
            role = "primary" if member.get('is_primary') else "copy"
            print(f"  {member['attachment_id']:>6}  {role:<8} refs={member['reference_count']:<3} {member.get('filename', '')}")
    print(f"Page {page['page']} of {page['total_pages']} ({page['total']} group(s))")
    return 0


def cmd_show(app: MediaCleanupApp, args) -> int:
    print_json(app.query.get_result_detail(args.id))
    return 0


def cmd_bulk(app: MediaCleanupApp, args) -> int:
    ids = resolve_ids(app, args)
    if not ids:
        logging.warning("No matching media items found.")
        return 0

    prompts = {
        'archive': f"Archive {len(ids)} media item(s) to the archive folder?",
        'trash': f"Move {len(ids)} media item(s) to trash?",
        'delete': f"Permanently delete {len(ids)} media item(s)? This cannot be undone.",
    }
    if not confirm(prompts[args.command], args.yes):
        print("Aborted.")
        return 1

    action = getattr(app.actions, args.command)
    result = action(ids, confirm=True)
    print(f"{args.command}: {result['success']} succeeded, {result['failed']} failed")
    return 0 if result['failed'] == 0 else 1


def cmd_simple_action(app: MediaCleanupApp, args) -> int:
    result = getattr(app.actions, args.command)(args.ids)
    print(f"{args.command}: {result['success']} succeeded, {result.get('failed', 0)} failed")
    return 0


def cmd_set_primary(app: MediaCleanupApp, args) -> int:
    group = args.group
    if not group:
        finding = app.orchestrator.get_results('duplicate')['duplicate'].get(args.id)
        if finding is None:
            raise MediaCleanupError(f"Attachment {args.id} is not in any duplicate group; pass --group.")
        group = finding.group_ids
    result = app.actions.set_primary(args.id, group)
    print(f"Attachment {result['primary_id']} is now primary of group {result['group_ids']}")
    return 0


def cmd_rehash(app: MediaCleanupApp, args) -> int:
    ids = args.ids
    if not ids:
        ids = app.db.fetch_attachment_ids(0, app.db.count_attachments())

    for attachment_id in ids:
        app.hash_service.clear_hash(attachment_id)

    hashed = 0
    batch_size = max(1, args.batch_size)
    with tqdm(total=len(ids), desc="Computing hashes") as bar:
        for start in range(0, len(ids), batch_size):
            chunk = ids[start:start + batch_size]
            hashed += app.hash_service.hash_batch(chunk, force=True)
            app.conn.commit()
            bar.update(len(chunk))

    print(f"Rehashed {hashed} of {len(ids)} attachment(s).")
    return 0


def parse_setting_value(raw: str):
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def cmd_settings(app: MediaCleanupApp, args) -> int:
    if args.assignments:
        params = {}
        for assignment in args.assignments:
            key, sep, value = assignment.partition("=")
            if not sep:
                raise MediaCleanupError(f"Expected KEY=VALUE, got '{assignment}'")
            params[key.strip()] = parse_setting_value(value)
        app.settings.update(params)

    print_json(app.settings.get())
    return 0


def cmd_import(app: MediaCleanupApp, args) -> int:
    root = args.root
    if root is not None and not root.is_absolute():
        root = app.upload_dir / root
    count = app.library.import_directory(root)
    print(f"Imported {count} new attachment(s).")
    return 0


COMMANDS = {
    'scan': cmd_scan,
    'worker': cmd_worker,
    'status': cmd_status,
    'cancel': cmd_cancel,
    'reset': cmd_reset,
    'stats': cmd_stats,
    'list': cmd_list,
    'duplicates': cmd_duplicates,
    'show': cmd_show,
    'archive': cmd_bulk,
    'trash': cmd_bulk,
    'delete': cmd_bulk,
    'restore': cmd_simple_action,
    'flag': cmd_simple_action,
    'unflag': cmd_simple_action,
    'set-primary': cmd_set_primary,
    'rehash': cmd_rehash,
    'settings': cmd_settings,
    'import': cmd_import,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file, args.verbose)

    logging.debug(f"Database: {args.db}, uploads: {args.upload_dir}")

    try:
        with MediaCleanupApp(args.db, args.upload_dir) as app:
            return COMMANDS[args.command](app, args)
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
        return 1
    except MediaCleanupError as e:
        logging.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
