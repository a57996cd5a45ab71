import argparse
import json
import sys

from pydantic import ValidationError

from . import config as config_lib
from . import pipeline
from .errors import QueueUnavailable
from .log import configure_logging


def _add_db_arg(parser):
    parser.add_argument("--db", type=str, help="Queue database path")


def main():
    parser = argparse.ArgumentParser(
        prog="file-processor", description="Durable file digest job queue"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Submit stored files for processing")
    submit_parser.add_argument("paths", nargs="+", help="Files to process")
    _add_db_arg(submit_parser)
    submit_parser.add_argument("--max-attempts", type=int, help="Attempts before failing a job")

    # PROCESS
    process_parser = subparsers.add_parser("process", help="Run workers until the queue is idle")
    _add_db_arg(process_parser)
    process_parser.add_argument("--workers", "-w", type=int, help="Number of concurrent workers")
    process_parser.add_argument("--base-delay-ms", type=int, help="First retry delay (ms)")
    process_parser.add_argument("--job-timeout", type=float, help="Per-attempt timeout (s)")
    process_parser.add_argument("--timeout", type=float, help="Give up after N seconds")
    process_parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )

    # QUEUE subcommands (status, retry, clear)
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    status_parser = queue_subparsers.add_parser("status", help="Show queue status")
    _add_db_arg(status_parser)

    retry_parser = queue_subparsers.add_parser("retry", help="Retry failed jobs")
    _add_db_arg(retry_parser)

    clear_parser = queue_subparsers.add_parser("clear", help="Clear queue")
    _add_db_arg(clear_parser)

    # ITEM subcommands
    item_parser = subparsers.add_parser("item", help="Inspect item status records")
    item_subparsers = item_parser.add_subparsers(dest="item_command", help="Item commands")
    show_parser = item_subparsers.add_parser("show", help="Show one item record")
    show_parser.add_argument("item_id", help="Item identifier")
    _add_db_arg(show_parser)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        conf = config_lib.resolve_config(cli_dict)
    except ValidationError as e:
        parser.error(f"invalid configuration:\n{e}")
    configure_logging(conf.logging)
    db_path = conf.queue.db_path

    if args.command == "submit":
        stats = pipeline.enqueue_batch(
            args.paths, db_path=db_path, max_attempts=conf.retry.max_attempts
        )
        for item_id, job_id in stats["submitted"]:
            print(f"  + Submitted item {item_id} (job_id={job_id[:8]}...)")
        for path in stats["missing"]:
            print(f"  ! Not found (will fail): {path}")
        print(f"Submitted {len(stats['submitted'])} of {stats['total']} files")

    elif args.command == "process":
        try:
            process_stats = pipeline.process_queue(conf, timeout_s=cli_dict.get("timeout"))
        except QueueUnavailable as e:
            print(f"FATAL: queue unavailable: {e}", file=sys.stderr)
            sys.exit(2)
        except TimeoutError as e:
            print(f"Stopped: {e}", file=sys.stderr)
            sys.exit(1)

        print("\n" + "=" * 60)
        print("PROCESSING SUMMARY")
        print("=" * 60)
        print(f"Processed:            {process_stats['processed']}")
        print(f"Retried attempts:     {process_stats['retried']}")
        print(f"Failed:               {process_stats['failed']}")
        print(f"Peak concurrency:     {process_stats['peak_active']}")
        print("=" * 60)

    elif args.command == "queue":
        if args.queue_command == "status":
            stats = pipeline.get_queue_stats(db_path=db_path)
            print("\n" + "=" * 60)
            print("QUEUE STATUS")
            print("=" * 60)
            print(f"Waiting:              {stats['waiting']}")
            print(f"Active:               {stats['active']}")
            print(f"Completed:            {stats['completed']}")
            print(f"Failed:               {stats['failed']}")
            print(f"Total:                {stats['total']}")
            print("=" * 60)

        elif args.queue_command == "retry":
            count = pipeline.retry_failed(db_path=db_path)
            print(f"Marked {count} failed jobs for retry")

        elif args.queue_command == "clear":
            pipeline.clear_queue(db_path=db_path)
            print("Queue cleared")

        else:
            queue_parser.print_help()

    elif args.command == "item":
        if args.item_command == "show":
            record = pipeline.get_item(args.item_id, db_path=db_path)
            if record is None:
                print(f"Item not found: {args.item_id}")
                sys.exit(1)
            print(json.dumps(record.model_dump(mode="json"), indent=2))
        else:
            item_parser.print_help()


if __name__ == "__main__":
    main()
