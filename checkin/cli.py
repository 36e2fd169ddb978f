"""
Check-in scanner command line
=============================

    checkin-scanner run    [--config PATH] [--event-id ID] [--source camera|mock|manual]
    checkin-scanner serve  [--config PATH] [--event-id ID] [--host H] [--port P]
    checkin-scanner export OUT.csv [--config PATH] [--event-id ID] [--status used|valid]

`run` is the headless station: scans are validated as they arrive and the
operator answers on stdin
    <Enter>   confirm the pending ticket
    s         print check-in stats
    q         quit
    anything else is treated as a manually typed token.

`serve` starts the operator API (checkin.server) under uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import config_loader as _config_module
from .config_loader import get_event_id, get_log_level, get_server_bind, load_config
from .feedback import SCAN_ERROR, SCAN_SUCCESS, BellFeedbackSink, FeedbackEvent
from .frame_source import CameraError
from .service import CheckinService


def _parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="checkin-scanner", description="Ticket check-in scanner")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    ap.add_argument("--event-id", help="Event to check in (overrides app.event.id)")
    sub = ap.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="headless scanning station")
    run.add_argument("--source", choices=("camera", "mock", "manual"), help="override scanner.source")
    run.add_argument("--no-bell", action="store_true", help="do not ring the terminal bell")

    serve = sub.add_parser("serve", help="operator API (uvicorn)")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    export = sub.add_parser("export", help="write the attendee list to CSV")
    export.add_argument("out", help="output CSV path")
    export.add_argument("--status", help="filter by ticket status (e.g. used, valid)")
    return ap.parse_args(argv)


def _print_event(evt: FeedbackEvent) -> None:
    d = evt.detail
    if evt.type == SCAN_SUCCESS:
        print(f"VALID  {d.get('buyer_name') or '-'} | {d.get('tier_name') or '-'} | {d.get('serial') or '-'}"
              "  -> press Enter to check in")
    elif evt.type == SCAN_ERROR:
        print(f"REJECT {d.get('status')}: {d.get('message')}")


async def _stdin_loop(svc: CheckinService, stop_evt: asyncio.Event) -> None:
    while not stop_evt.is_set():
        line = await asyncio.to_thread(sys.stdin.readline)
        if line == "":
            stop_evt.set()
            return
        cmd = line.strip()
        if cmd == "":
            if await svc.session.confirm():
                print("CHECKED IN")
            elif svc.session.last_error:
                print(f"CHECK-IN FAILED: {svc.session.last_error}")
            else:
                print(f"nothing to confirm (phase={svc.session.phase})")
        elif cmd.lower() == "q":
            stop_evt.set()
            return
        elif cmd.lower() == "s":
            stats = await svc.poller.refresh_once()
            if stats is None:
                print(f"stats unavailable: {svc.poller.last_error}")
            else:
                print(f"checked in {stats.checked_in}/{stats.total_tickets} ({stats.progress_pct}%), "
                      f"remaining {stats.remaining}")
        else:
            if not svc.session.submit(cmd):
                print("ignored (duplicate, in flight, or scanner not running)")


async def _run(args: argparse.Namespace, cfg: dict) -> int:
    svc = CheckinService.from_config(cfg, event_id=args.event_id, source=args.source)
    if not args.no_bell:
        svc.feedback.subscribe(BellFeedbackSink())
    svc.feedback.subscribe(_print_event)

    stop_evt = asyncio.Event()
    ready = asyncio.Event()
    runner = asyncio.create_task(svc.run(stop_evt, ready=ready), name="checkin_run")
    waiter = asyncio.create_task(ready.wait())
    await asyncio.wait({runner, waiter}, return_when=asyncio.FIRST_COMPLETED)
    if not ready.is_set():
        waiter.cancel()
        try:
            await runner
        except CameraError as err:
            logging.getLogger("checkin").error("camera_unavailable", extra={"kind": err.kind, "err": err.message})
            print(f"camera error ({err.kind}): {err.message}", file=sys.stderr)
            return 2
        return 1

    print(f"scanning event {svc.session.event_id} - Enter=confirm, s=stats, q=quit")
    try:
        await _stdin_loop(svc, stop_evt)
    finally:
        stop_evt.set()
        await runner
    return 0


async def _export(args: argparse.Namespace, cfg: dict) -> int:
    from .api_client import ApiError, ValidationClient
    from .config_loader import get_api_cfg
    from .export_csv import write_attendees_csv

    event_id = (args.event_id or get_event_id(cfg)).strip()
    if not event_id:
        print("No event configured. Set app.event.id or pass --event-id", file=sys.stderr)
        return 2
    out = Path(args.out).expanduser().resolve()
    async with ValidationClient.from_config(get_api_cfg(cfg)) as client:
        try:
            attendees = await client.fetch_attendees(event_id, status=args.status)
        except ApiError as e:
            print(f"export failed: {e}", file=sys.stderr)
            return 1
    n = write_attendees_csv(attendees, out)
    print(f"Wrote {n} rows to:", out)
    return 0


def _serve(args: argparse.Namespace, cfg: dict) -> int:
    import uvicorn

    from .server import create_app

    if args.event_id:
        cfg.setdefault("app", {}).setdefault("event", {})["id"] = args.event_id
    host, port = get_server_bind(cfg)
    uvicorn.run(create_app(cfg=cfg), host=args.host or host, port=args.port or port,
                log_level=get_log_level("INFO", cfg).lower())
    return 0


def main(argv: Optional[list] = None) -> int:
    args = _parse_args(argv)

    cfg = load_config(args.config) if args.config else load_config(None)
    _config_module.CONFIG = cfg  # ensure helper accessors read the same config

    logging.basicConfig(
        level=getattr(logging, get_log_level("INFO", cfg), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        return _serve(args, cfg)
    runner = _run if args.command == "run" else _export
    try:
        return asyncio.run(runner(args, cfg))
    except KeyboardInterrupt:
        return 130
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
