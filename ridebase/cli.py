import argparse
import logging
import sys
from pathlib import Path


def _load_config(args):
    from ridebase.config import default_config, load_config

    try:
        return load_config(args.config)
    except FileNotFoundError:
        if args.config:
            raise
        return default_config()


def _connect(config):
    from ridebase.db import ensure_schema, get_connection

    conn = get_connection(config)
    ensure_schema(conn)
    return conn


def cmd_db_init(args):
    from ridebase.db import init_db

    path = init_db(_load_config(args))
    print(f"Database ready: {path}")


def _print_batch_summary(batch, title: str = "Import"):
    print(f"\n{title} #{batch.import_id}: {batch.status}")
    for status in ("done", "duplicate", "skipped", "queued", "failed"):
        count = batch.count(status)
        if count:
            print(f"  {status.capitalize():<10} {count}")

    failed = [r for r in batch.results if r.status == "failed"]
    if failed:
        print("\nErrors:")
        for r in failed:
            print(f"  {r.filename}: {r.message}")


def cmd_import(args):
    from ridebase.ingest import service

    config = _load_config(args)
    conn = _connect(config)
    try:
        entries = [(str(p), Path(p).read_bytes()) for p in args.files]
        if args.watchfolder:
            for name, data in entries:
                _print_batch_summary(
                    service.enqueue_single_file(conn, config, name, data, source="watchfolder"),
                    "Queued")
        elif len(entries) == 1 and not Path(args.files[0]).suffix.lower() == ".zip":
            name, data = entries[0]
            if args.queue:
                _print_batch_summary(service.enqueue_single_file(conn, config, name, data), "Queued")
            else:
                _print_batch_summary(service.import_single_file(conn, config, name, data))
        elif args.queue:
            _print_batch_summary(service.enqueue_batch(conn, config, entries), "Queued batch")
        else:
            _print_batch_summary(service.import_batch(conn, config, entries), "Batch")
    finally:
        conn.close()


def cmd_import_export(args):
    from ridebase.ingest import service

    config = _load_config(args)
    conn = _connect(config)
    try:
        if args.queue:
            batch = service.enqueue_bulk_export(conn, config, args.archive, include_media=args.media)
            _print_batch_summary(batch, "Queued export")
        else:
            batch = service.import_bulk_export(conn, config, args.archive, include_media=args.media)
            _print_batch_summary(batch, "Export")
    finally:
        conn.close()


def cmd_retry(args):
    from ridebase.ingest.service import retry_failed_files

    config = _load_config(args)
    conn = _connect(config)
    try:
        batch = retry_failed_files(conn, config, args.run_id)
    except ValueError as e:
        print(e)
        sys.exit(1)
    finally:
        conn.close()
    _print_batch_summary(batch, "Retry of import")


def cmd_worker(args):
    from ridebase.db import get_connection
    from ridebase.queue.alerts import QueueAlertMonitor
    from ridebase.queue.worker import ImportQueueWorker

    config = _load_config(args)
    _connect(config).close()

    def connect():
        return get_connection(config)

    worker = ImportQueueWorker(config, connect)
    if args.once:
        totals = worker.run_until_idle()
        print(f"\nQueue drained: {totals['done']} done, {totals['retried']} retried, "
              f"{totals['failed']} failed")
        return

    handle = worker.start()
    if handle is None:
        print("Import queue is disabled in config (queue.enabled).")
        sys.exit(1)
    monitor = None
    if not args.no_alerts:
        monitor = QueueAlertMonitor(config, connect, worker.status)
        monitor.start()
    print(f"Worker running (poll={worker.poll_ms}ms, concurrency={worker.concurrency}). Ctrl-C to stop.")
    try:
        while not handle.wait(1.0):
            pass
    except KeyboardInterrupt:
        print("\nStopping worker after in-flight jobs finish...")
    finally:
        if monitor is not None:
            monitor.stop()
        worker.stop()


def _print_queue_stats(stats):
    print("\nImport queue:")
    print(f"  Queued:          {stats.queued} ({stats.ready} ready)")
    print(f"  Processing:      {stats.processing}")
    print(f"  Done:            {stats.done} ({stats.done_last_hour} in last hour)")
    print(f"  Failed:          {stats.failed} ({stats.failed_last_24h} in last 24h)")
    if stats.next_available_at:
        print(f"  Next available:  {stats.next_available_at}")


def cmd_queue(args):
    from ridebase.queue import jobs

    config = _load_config(args)
    conn = _connect(config)
    try:
        if args.queue_command == "status":
            _print_queue_stats(jobs.get_queue_stats(conn))
        elif args.queue_command == "failed":
            rows = jobs.list_failed_jobs(conn, limit=args.limit, import_id=args.import_id)
            if not rows:
                print("No failed jobs.")
            for r in rows:
                print(f"  job #{r['id']} run #{r['import_id']} {r['original_filename']} "
                      f"({r['attempt_count']}/{r['max_attempts']}): {r['last_error']}")
        elif args.queue_command == "requeue":
            ok = jobs.requeue_failed_job(conn, args.job_id)
            print(f"Job #{args.job_id} requeued." if ok else f"Job #{args.job_id} is not a failed job.")
        elif args.queue_command == "delete":
            ok = jobs.delete_failed_job(conn, args.job_id)
            print(f"Job #{args.job_id} deleted." if ok else f"Job #{args.job_id} is not a failed job.")
        elif args.queue_command == "purge":
            count = jobs.delete_failed_jobs(conn, limit=args.limit, import_id=args.import_id)
            print(f"Deleted {count} failed job(s).")
    finally:
        conn.close()


def _climb_tools(config):
    from ridebase.analysis.climbs import ClimbOptions
    from ridebase.analysis.naming import SegmentNamer, build_geocoder
    from ridebase.config import section

    return SegmentNamer(build_geocoder(config)), ClimbOptions.from_config(section(config, "segments"))


def cmd_climbs(args):
    from ridebase.analysis.local_segments import backfill_local_climbs, rebuild_local_climbs_for_activity

    config = _load_config(args)
    namer, options = _climb_tools(config)
    conn = _connect(config)
    try:
        if args.climbs_command == "rebuild":
            result = rebuild_local_climbs_for_activity(conn, args.activity_id, namer, options)
            if result["processed"]:
                print(f"Activity #{args.activity_id}: {result['climbs']} climb(s)")
            else:
                print(f"Activity #{args.activity_id} skipped: {result['reason']}")
        else:
            result = backfill_local_climbs(
                conn,
                limit=args.limit,
                offset=args.offset,
                include_strava=args.include_strava,
                include_imported=not args.no_imported,
                include_ride=not args.no_ride,
                include_run=not args.no_run,
                namer=namer,
                options=options,
            )
            print("\nClimb backfill complete:")
            print(f"  Scanned:    {result['scanned']}")
            print(f"  Processed:  {result['processed']}")
            print(f"  Climbs:     {result['climbs']}")
            print(f"  Errors:     {result['failed']}")
            if result["failed"]:
                print("\nErrors:")
                for d in result["details"]:
                    if d["status"] == "error":
                        print(f"  #{d['activity_id']}: {d['error']}")
    finally:
        conn.close()


def cmd_segments(args):
    from ridebase.analysis.local_segments import create_manual_segment, rename_local_segments
    from ridebase.config import section

    config = _load_config(args)
    namer, _ = _climb_tools(config)
    conn = _connect(config)
    try:
        if args.segments_command == "create":
            radius = args.radius or section(config, "segments").get("manual_match_radius_m")
            try:
                result = create_manual_segment(conn, args.activity_id, args.start, args.end,
                                               name=args.name, radius_m=radius, namer=namer)
            except ValueError as e:
                print(e)
                sys.exit(1)
            verb = "Created" if result["created"] else "Updated"
            print(f"{verb} segment #{result['segment_id']} '{result['name']}': "
                  f"matched in {result['matched_activities']} activit(ies)")
        else:
            result = rename_local_segments(conn, limit=args.limit, offset=args.offset,
                                           include_manual=args.include_manual,
                                           rename_manual_names=args.rename_manual, namer=namer)
            print(f"Scanned {result['scanned']} segment(s): "
                  f"{result['renamed']} renamed, {result['unchanged']} unchanged")
    finally:
        conn.close()


def main(argv=None):
    parser = argparse.ArgumentParser(prog="ridebase", description="RideBase: activity import and local segments")
    parser.add_argument("--config", help="Path to config.yaml (default: config/config.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command")

    # db subcommand with its own subcommands
    db_parser = subparsers.add_parser("db", help="Database operations")
    db_sub = db_parser.add_subparsers(dest="db_command")
    db_init = db_sub.add_parser("init", help="Initialize the database schema")
    db_init.set_defaults(func=cmd_db_init)

    import_parser = subparsers.add_parser("import", help="Import .fit/.gpx/.tcx/.zip/activities.csv files")
    import_parser.add_argument("files", nargs="+", help="Files to import")
    import_parser.add_argument("--queue", action="store_true", help="Queue for the background worker")
    import_parser.add_argument("--watchfolder", action="store_true",
                               help="Queue each file as a watch-folder import (lowest priority)")
    import_parser.set_defaults(func=cmd_import)

    export_parser = subparsers.add_parser("import-export", help="Import a bulk account export .zip")
    export_parser.add_argument("archive", help="Path to the export archive")
    export_parser.add_argument("--media", action="store_true", help="Attach images from media/")
    export_parser.add_argument("--queue", action="store_true", help="Queue for the background worker")
    export_parser.set_defaults(func=cmd_import_export)

    retry_parser = subparsers.add_parser("retry", help="Re-process the failed files of an import run")
    retry_parser.add_argument("run_id", type=int, metavar="RUN_ID")
    retry_parser.set_defaults(func=cmd_retry)

    worker_parser = subparsers.add_parser("worker", help="Run the import queue worker")
    worker_parser.add_argument("--once", action="store_true", help="Drain ready jobs and exit")
    worker_parser.add_argument("--no-alerts", action="store_true", help="Do not start the alert monitor")
    worker_parser.set_defaults(func=cmd_worker)

    # queue subcommand with sub-subcommands
    queue_parser = subparsers.add_parser("queue", help="Inspect and manage the import queue")
    queue_sub = queue_parser.add_subparsers(dest="queue_command")
    queue_sub.add_parser("status", help="Show queue statistics")
    failed_parser = queue_sub.add_parser("failed", help="List dead-lettered jobs")
    failed_parser.add_argument("--limit", type=int, default=50)
    failed_parser.add_argument("--import-id", type=int)
    requeue_parser = queue_sub.add_parser("requeue", help="Requeue a failed job")
    requeue_parser.add_argument("job_id", type=int, metavar="JOB_ID")
    delete_parser = queue_sub.add_parser("delete", help="Delete a failed job")
    delete_parser.add_argument("job_id", type=int, metavar="JOB_ID")
    purge_parser = queue_sub.add_parser("purge", help="Delete failed jobs in bulk")
    purge_parser.add_argument("--limit", type=int, default=100)
    purge_parser.add_argument("--import-id", type=int)
    queue_parser.set_defaults(func=cmd_queue)

    climbs_parser = subparsers.add_parser("climbs", help="Local climb detection")
    climbs_sub = climbs_parser.add_subparsers(dest="climbs_command")
    rebuild_parser = climbs_sub.add_parser("rebuild", help="Re-detect climbs for one activity")
    rebuild_parser.add_argument("activity_id", type=int, metavar="ACTIVITY_ID")
    backfill_parser = climbs_sub.add_parser("backfill", help="Re-detect climbs for many activities")
    backfill_parser.add_argument("--limit", type=int, default=100)
    backfill_parser.add_argument("--offset", type=int, default=0)
    backfill_parser.add_argument("--include-strava", action="store_true", help="Include synced activities")
    backfill_parser.add_argument("--no-imported", action="store_true", help="Skip file imports")
    backfill_parser.add_argument("--no-ride", action="store_true", help="Skip ride-like activities")
    backfill_parser.add_argument("--no-run", action="store_true", help="Skip run-like activities")
    climbs_parser.set_defaults(func=cmd_climbs)

    segments_parser = subparsers.add_parser("segments", help="Manual segments and naming")
    segments_sub = segments_parser.add_subparsers(dest="segments_command")
    create_parser = segments_sub.add_parser("create", help="Create a segment from an activity index range")
    create_parser.add_argument("activity_id", type=int, metavar="ACTIVITY_ID")
    create_parser.add_argument("start", type=int, metavar="START_INDEX")
    create_parser.add_argument("end", type=int, metavar="END_INDEX")
    create_parser.add_argument("--name", help="Segment name (default: derived)")
    create_parser.add_argument("--radius", type=float, help="Endpoint match radius in meters")
    rename_parser = segments_sub.add_parser("rename", help="Re-derive segment names")
    rename_parser.add_argument("--limit", type=int, default=200)
    rename_parser.add_argument("--offset", type=int, default=0)
    rename_parser.add_argument("--include-manual", action="store_true", help="Also scan manual segments")
    rename_parser.add_argument("--rename-manual", action="store_true", help="Overwrite manual segment names")
    segments_parser.set_defaults(func=cmd_segments)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not args.command:
        parser.print_help()
        sys.exit(1)
    subcommand_parsers = {
        "db": (db_parser, "db_command"),
        "queue": (queue_parser, "queue_command"),
        "climbs": (climbs_parser, "climbs_command"),
        "segments": (segments_parser, "segments_command"),
    }
    if args.command in subcommand_parsers:
        sub_parser, dest = subcommand_parsers[args.command]
        if not getattr(args, dest, None):
            sub_parser.print_help()
            sys.exit(1)
    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
