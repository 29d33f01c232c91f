import argparse
import os
import sys
from collections import Counter

import httpx

from .config import resolve_config
from .ffmpeg_runner import check_ffmpeg
from .logging_utils import setup_logging
from .queue import JobStatus, JsonQueueStore, SQLiteAuditLog
from .services import build_queue, queue_dir_owner


def _print_header(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def _queue_status(config, user_id: str = None) -> None:
    queues = JsonQueueStore(config.storage.queue_dir).load()
    if user_id:
        queues = {user_id: queues.get(user_id, [])} if user_id in queues else {}
    _print_header("QUEUE STATUS")
    if not queues:
        print("No queued jobs.")
    for user_id, jobs in sorted(queues.items()):
        counts = Counter(job.status.value for job in jobs)
        summary = ", ".join(f"{status}={count}" for status, count in sorted(counts.items()))
        print(f"{user_id:<30} {len(jobs):>4} job(s)  {summary}")
    print("=" * 60)


def _queue_list(config, user_id: str) -> None:
    queues = JsonQueueStore(config.storage.queue_dir).load()
    jobs = sorted(queues.get(user_id, []), key=lambda j: j.scheduled_time)
    _print_header(f"QUEUE FOR {user_id}")
    if not jobs:
        print("No queued jobs.")
    for job in jobs:
        kind = "generate" if job.needs_generation else "upload"
        print(f"{job.scheduled_time:%Y-%m-%d %H:%M} UTC  {job.status.value:<16} {kind:<9} {job.title or job.file_name}")
    print("=" * 60)


def _queue_clear(config, user_id: str, api_url: str = None) -> None:
    if api_url:
        response = httpx.delete(f"{api_url.rstrip('/')}/users/{user_id}/jobs", timeout=30)
        response.raise_for_status()
        cleared = response.json()["cleared"]
    else:
        owner = queue_dir_owner(config.storage.queue_dir)
        if owner is not None:
            print(f"❌ A running server (pid {owner}) owns {config.storage.queue_dir}.")
            print("   Pass --api-url to clear through it, or stop it first.")
            sys.exit(1)

        services = build_queue(config)
        try:
            services.manager.load(record_recovery=False)
            cleared = services.manager.clear_all(user_id)
        finally:
            services.close()
    print(f"Cleared {cleared} job(s) for {user_id}.")


def _queue_history(config, user_id: str, status: str = None) -> None:
    audit = SQLiteAuditLog(config.storage.audit_db)
    try:
        jobs = audit.history(user_id, status=status)
    finally:
        audit.close()

    _print_header(f"HISTORY FOR {user_id}")
    if not jobs:
        print("No finished jobs.")
    for job in jobs:
        outcome = job.uploaded_url or job.error_message or ""
        print(f"{job.scheduled_time:%Y-%m-%d %H:%M} UTC  {job.status.value:<18} {job.title or job.file_name}  {outcome}")
    print("=" * 60)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="shorts-scheduler", description="Scheduled AI short-video generation and publishing"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the API and scheduler")
    serve_parser.add_argument("--host", type=str, default="0.0.0.0", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")

    # CHECK
    subparsers.add_parser("check", help="Verify dependencies and credentials")

    # QUEUE subcommands (status, list, clear, history)
    queue_parser = subparsers.add_parser("queue", help="Inspect and manage job queues")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    status_parser = queue_subparsers.add_parser("status", help="Show per-user queue counts")
    status_parser.add_argument("--user", "-u", type=str, help="Only this user")

    list_parser = queue_subparsers.add_parser("list", help="List a user's queued jobs")
    list_parser.add_argument("--user", "-u", type=str, required=True, help="User id")

    clear_parser = queue_subparsers.add_parser("clear", help="Cancel all of a user's queued jobs")
    clear_parser.add_argument("--user", "-u", type=str, required=True, help="User id")
    clear_parser.add_argument(
        "--api-url", type=str, help="Clear through a running server (e.g. http://127.0.0.1:8000)"
    )

    history_parser = queue_subparsers.add_parser("history", help="Show a user's finished jobs")
    history_parser.add_argument("--user", "-u", type=str, required=True, help="User id")
    history_parser.add_argument(
        "--status",
        choices=[s.value for s in JobStatus if s.is_terminal],
        help="Only jobs that ended in this state",
    )

    args = parser.parse_args(argv)
    config = resolve_config()
    setup_logging(config.logging.level, config.logging.format)

    if args.command == "serve":
        import uvicorn

        from .api.main import app

        uvicorn.run(app, host=args.host, port=args.port)

    elif args.command == "check":
        print("Checking dependencies...")
        ok = True
        version = check_ffmpeg()
        if version:
            print(f"✅ ffmpeg found: {version}")
        else:
            print("❌ ffmpeg NOT found.")
            ok = False

        for env_var in (
            config.generation.api_token_env,
            config.upload.client_id_env,
            config.upload.client_secret_env,
        ):
            if os.environ.get(env_var):
                print(f"✅ {env_var} is set.")
            else:
                print(f"❌ {env_var} is NOT set.")
                ok = False

        if not ok:
            sys.exit(1)

    elif args.command == "queue":
        if args.queue_command == "status":
            _queue_status(config, args.user)
        elif args.queue_command == "list":
            _queue_list(config, args.user)
        elif args.queue_command == "clear":
            _queue_clear(config, args.user, args.api_url)
        elif args.queue_command == "history":
            _queue_history(config, args.user, args.status)
        else:
            queue_parser.print_help()

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
