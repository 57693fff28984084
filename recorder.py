#!/usr/bin/env python3
"""
StreamKeeper: supervised live stream captures.
- Polls monitored sources and starts one capture process per live source.
- Refuses new captures when the disk budget would be exceeded.
- Stops every capture cleanly on SIGTERM/SIGINT, leaving no record marked active.
"""

import argparse
import asyncio
import json
import logging
import sys

import anyio

from engine.disk_budget import format_bytes
from engine.paths import build_engine_paths, resolve_config_path
from engine.service import RecorderService, load_settings, setup_logging
from engine.supervisor import EVENT_CAPTURE_ENDED, CaptureError


def _print_json(payload):
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


async def _run_service(service):
    await service.start(install_signals=True)
    try:
        await service.wait_for_shutdown()
    finally:
        await service.shutdown(reason="exit")


async def _capture_one(service, username):
    await service.start(auto_scan=False, install_signals=True)
    try:
        source = await anyio.to_thread.run_sync(service.store.get_source_by_username, username)
        if source is None:
            source = await anyio.to_thread.run_sync(service.store.create_source, username)
            logging.info("Added source %s", source.username)
        ended = asyncio.Event()

        def _on_event(event):
            if event.kind == EVENT_CAPTURE_ENDED and event.source_id == source.id:
                ended.set()

        service.supervisor.subscribe(_on_event)
        capture_id = await service.supervisor.start(source.id)
        print(f"Capturing {source.username} (capture {capture_id}); Ctrl+C to stop")
        waiters = [
            asyncio.ensure_future(ended.wait()),
            asyncio.ensure_future(service.wait_for_shutdown()),
        ]
        _done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        capture = await anyio.to_thread.run_sync(service.store.get_capture, capture_id)
        return capture
    finally:
        await service.shutdown(reason="exit")


async def _probe(service, usernames):
    results = {}
    for name in usernames:
        result = await service.prober.probe(name)
        results[name] = {"live": result.live, "metadata": result.metadata, "error": result.error}
    return results


async def _scan_dry_run(service):
    await anyio.to_thread.run_sync(service.store.ensure_schema)
    sources = await anyio.to_thread.run_sync(service.store.list_auto_capture_sources)
    return await _probe(service, [source.username for source in sources])


async def _stats(service):
    await anyio.to_thread.run_sync(service.store.ensure_schema)
    return await service.supervisor.system_stats()


def main():
    parser = argparse.ArgumentParser(description="Supervised live stream captures.")
    parser.add_argument("--config", help="Path to config.json (default: config dir)")
    parser.add_argument("--recordings-dir", help="Override the recordings directory.")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the capture service headless until signalled.")

    serve = sub.add_parser("serve", help="Run the HTTP API (includes the capture service).")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8090)

    capture = sub.add_parser("capture", help="Capture one source in the foreground.")
    capture.add_argument("username")

    probe = sub.add_parser("probe", help="Check whether sources are live.")
    probe.add_argument("usernames", nargs="+")

    sub.add_parser("scan", help="Probe every auto-capture source once without starting captures.")
    sub.add_parser("stats", help="Print capture statistics.")

    sources = sub.add_parser("sources", help="Manage monitored sources.")
    sources_sub = sources.add_subparsers(dest="sources_command", required=True)
    add = sources_sub.add_parser("add")
    add.add_argument("username")
    add.add_argument("--display-name")
    add.add_argument("--quality", default=None)
    add.add_argument("--no-auto-capture", action="store_true")
    sources_sub.add_parser("list")

    captures = sub.add_parser("captures", help="List capture records.")
    captures.add_argument("--status")
    captures.add_argument("--limit", type=int, default=20)

    logs = sub.add_parser("logs", help="Show the capture log trail.")
    logs.add_argument("--source")
    logs.add_argument("--limit", type=int, default=50)

    args = parser.parse_args()

    paths = build_engine_paths(recordings_dir=args.recordings_dir)
    setup_logging(paths.log_dir, level=logging.DEBUG if args.verbose else logging.INFO)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("api.main:app", host=args.host, port=args.port)
        return

    config_path = resolve_config_path(args.config)
    try:
        settings = load_settings(config_path)
    except ValueError as exc:
        logging.error("%s", exc)
        sys.exit(1)
    service = RecorderService(settings, paths)
    store = service.store

    if args.command == "run":
        asyncio.run(_run_service(service))
    elif args.command == "capture":
        try:
            record = asyncio.run(_capture_one(service, args.username))
        except CaptureError as exc:
            print(f"Capture not started: {exc.message}", file=sys.stderr)
            sys.exit(1)
        if record is not None:
            print(
                f"Capture {record.id} {record.status}: {record.duration_seconds}s, "
                f"{format_bytes(record.file_size_bytes)} -> {record.file_path}"
            )
    elif args.command == "probe":
        _print_json(asyncio.run(_probe(service, args.usernames)))
    elif args.command == "scan":
        _print_json(asyncio.run(_scan_dry_run(service)))
    elif args.command == "stats":
        _print_json(asyncio.run(_stats(service)))
    elif args.command == "sources":
        store.ensure_schema()
        if args.sources_command == "add":
            if store.get_source_by_username(args.username) is not None:
                print(f"Source {args.username} already exists", file=sys.stderr)
                sys.exit(1)
            source = store.create_source(
                args.username,
                display_name=args.display_name,
                auto_capture=not args.no_auto_capture,
                quality_preference=args.quality,
            )
            _print_json(source.__dict__)
        else:
            _print_json([source.__dict__ for source in store.list_sources(include_inactive=True)])
    elif args.command == "captures":
        store.ensure_schema()
        _print_json([capture.to_dict() for capture in store.find_captures(status=args.status, limit=args.limit)])
    elif args.command == "logs":
        store.ensure_schema()
        entries = store.list_logs(source_name=args.source, limit=args.limit)
        for entry in reversed(entries):
            print(f"{entry.created_at} [{entry.level}] {entry.source_name or '-'}: {entry.message}")


if __name__ == "__main__":
    main()
