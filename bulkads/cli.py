"""
BULKADS COMMAND LINE

Opens bulk jobs, runs them, reports progress, rolls them back and drives the
deferred queue worker. Every command prints a JSON document on stdout.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import yaml

from .config import load_settings
from .engine.service import BulkCreationService
from .infrastructure.error_handling import JobNotFoundError, JobStateError, RemoteAPIError
from .infrastructure.scheduler import start_background_scheduler, stop_background_scheduler
from .infrastructure.utils import parse_any_datetime

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    configure_logging_filters()


def configure_logging_filters() -> None:
    """Reduce log noise from verbose dependencies while keeping key summaries."""
    noise_levels = {
        "urllib3": logging.WARNING,
        "requests": logging.WARNING,
        "schedule": logging.WARNING,
        "sqlalchemy.engine": logging.WARNING,
        "bulkads.integrations.meta_client": logging.WARNING,
    }
    for name, level in noise_levels.items():
        logging.getLogger(name).setLevel(level)


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _load_blueprint(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    with Path(path).open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError("Blueprint must be a mapping with root/parent/child sections.")
    return data


def _epoch(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    return parse_any_datetime(value).timestamp()


# -----------------------------------------------------
# Commands
# -----------------------------------------------------
def cmd_start(svc: BulkCreationService, args: argparse.Namespace) -> int:
    job_id = svc.start_job(
        args.owner,
        args.target,
        args.children,
        requested_parents=0 if args.parent_id else 1,
        label=args.label or "",
        blueprint=_load_blueprint(args.blueprint),
        remote_parent_id=args.parent_id,
    )
    _emit({"job_id": job_id})
    return 0


def cmd_run(svc: BulkCreationService, args: argparse.Namespace) -> int:
    if len(args.job_ids) == 1:
        reports = [svc.run_bulk_create(
            args.job_ids[0], high_throughput=args.high_throughput, payload_weight=args.payload_weight
        )]
    else:
        reports = svc.run_many(
            args.job_ids,
            parallel=not args.sequential,
            high_throughput=args.high_throughput,
            payload_weight=args.payload_weight,
        )
    _emit([r.to_dict() for r in reports])
    return 0


def cmd_progress(svc: BulkCreationService, args: argparse.Namespace) -> int:
    _emit(svc.get_progress(args.job_id))
    return 0


def cmd_rollback(svc: BulkCreationService, args: argparse.Namespace) -> int:
    if args.preview:
        _emit(svc.preview_rollback(args.job_id))
        return 0
    result = svc.rollback(args.job_id, args.reason)
    _emit(result.to_dict())
    return 0 if result.success else 2


def cmd_enqueue(svc: BulkCreationService, args: argparse.Namespace) -> int:
    payload = json.loads(args.payload) if args.payload else {}
    queue_id = svc.enqueue_deferred(
        args.owner,
        args.resource,
        payload,
        _epoch(args.not_before),
        action_type=args.action,
        priority=args.priority,
    )
    _emit({"queue_id": queue_id})
    return 0


def cmd_queue(svc: BulkCreationService, args: argparse.Namespace) -> int:
    _emit([r.to_dict() for r in svc.get_queue_status(args.owner, include_finished=args.all)])
    return 0


def cmd_credentials(svc: BulkCreationService, args: argparse.Namespace) -> int:
    if args.credentials_cmd == "add":
        cred = svc.credential_pool.add_credential(args.name, args.secret, call_limit=args.limit)
        _emit(cred.to_dict())
    else:
        _emit(svc.credential_pool.status_summary())
    return 0


def cmd_worker(svc: BulkCreationService, args: argparse.Namespace) -> int:
    if args.once:
        report = svc.process_queue()
        _emit({
            "picked": report.picked,
            "completed": report.completed,
            "requeued": report.requeued,
            "retried": report.retried,
            "failed": report.failed,
        })
        return 0

    done = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, stopping worker")
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    start_background_scheduler(svc.queue, svc.credential_pool, args.tick_seconds)
    try:
        done.wait()
    finally:
        stop_background_scheduler()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bulkads", description="Bulk ad entity creation engine")
    parser.add_argument("--settings", default=None, help="settings YAML (default config/settings.yaml)")
    parser.add_argument("--env-file", default=None)
    parser.add_argument("--db", default=None, help="override the SQLite path")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("start", help="open a bulk job")
    p.add_argument("--owner", required=True)
    p.add_argument("--target", required=True, help="ad account id")
    p.add_argument("--children", type=int, required=True, help="number of pairs to create")
    p.add_argument("--label", default=None)
    p.add_argument("--blueprint", default=None, help="YAML/JSON file with root/parent/child fields")
    p.add_argument("--parent-id", default=None, help="use an existing container instead of creating one")
    p.set_defaults(func=cmd_start)

    p = sub.add_parser("run", help="create whatever a job still lacks")
    p.add_argument("job_ids", nargs="+")
    p.add_argument("--high-throughput", action="store_true")
    p.add_argument("--payload-weight", choices=["light", "medium", "heavy"], default="light")
    p.add_argument("--sequential", action="store_true", help="run several jobs one after another")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("progress", help="job snapshot")
    p.add_argument("job_id")
    p.set_defaults(func=cmd_progress)

    p = sub.add_parser("rollback", help="delete everything a job created")
    p.add_argument("job_id")
    p.add_argument("--reason", default="manual rollback")
    p.add_argument("--preview", action="store_true")
    p.set_defaults(func=cmd_rollback)

    p = sub.add_parser("enqueue", help="defer a remote call")
    p.add_argument("--owner", required=True)
    p.add_argument("--resource", required=True)
    p.add_argument("--action", default=None, help="create_entity, delete_entity or run_bulk_create")
    p.add_argument("--payload", default=None, help="JSON payload")
    p.add_argument("--not-before", default=None, help="ISO timestamp")
    p.add_argument("--priority", type=int, default=None)
    p.set_defaults(func=cmd_enqueue)

    p = sub.add_parser("queue", help="pending deferred requests for an owner")
    p.add_argument("--owner", required=True)
    p.add_argument("--all", action="store_true", help="include finished requests")
    p.set_defaults(func=cmd_queue)

    p = sub.add_parser("credentials", help="manage the credential pool")
    creds = p.add_subparsers(dest="credentials_cmd", required=True)
    add = creds.add_parser("add")
    add.add_argument("--name", required=True)
    add.add_argument("--secret", required=True)
    add.add_argument("--limit", type=int, default=None)
    creds.add_parser("list")
    p.set_defaults(func=cmd_credentials)

    p = sub.add_parser("worker", help="drain the deferred queue")
    p.add_argument("--once", action="store_true", help="process one tick and exit")
    p.add_argument("--tick-seconds", type=int, default=None)
    p.set_defaults(func=cmd_worker)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging("DEBUG" if args.verbose else args.log_level)

    settings = load_settings(args.settings, env_file=args.env_file)
    if args.db:
        settings.db_path = args.db
    if settings.db_path != ":memory:":
        Path(settings.db_path).parent.mkdir(parents=True, exist_ok=True)

    svc = BulkCreationService.from_settings(settings)
    try:
        return args.func(svc, args)
    except JobNotFoundError as e:
        logger.error(f"Unknown job: {e}")
        return 1
    except (JobStateError, ValueError) as e:
        logger.error(str(e))
        return 1
    except RemoteAPIError as e:
        logger.error(f"Remote API error: {e}")
        _emit({"error": e.to_dict()})
        return 1
    finally:
        svc.close()


if __name__ == "__main__":
    sys.exit(main())
