"""
Command-line entry point (console script `skiptrace`).

    skiptrace init-db --db skiptrace.db
    skiptrace create  --csv leads.csv --db skiptrace.db [--label "March probate"] [--provider stub]
    skiptrace work    --run <run_id> --db skiptrace.db [--concurrency 4]
    skiptrace report  --run <run_id> --db skiptrace.db [--output run_reports]

Every command works against a local database file; no web server needed.
Exit code 1 on an unknown run or invalid input.
"""
import argparse
import csv
import json
import logging
import os
import sys

from sqlalchemy.orm import sessionmaker

from skiptrace.config import RUN_REPORTS_DIR, SKIP_TRACE_CONCURRENCY
from skiptrace.database import make_engine, sqlite_url, init_db
from skiptrace.errors import ValidationError, RunNotFoundError

logger = logging.getLogger('skiptrace.cli')


def _open_db(path):
    engine = make_engine(sqlite_url(path))
    return engine, sessionmaker(bind=engine)


def _redis_or_none():
    """Only publish guardrail snapshots when a Redis URL is explicitly configured."""
    if not os.getenv('REDIS_URL'):
        return None
    from skiptrace.extensions import redis_client
    return redis_client


# ── Commands ──────────────────────────────────────────────────────────────────

def cmd_init_db(args):
    engine, _ = _open_db(args.db)
    init_db(engine)
    print(f"Initialized schema in {args.db}")
    return 0


def cmd_create(args):
    from skiptrace.pipeline.manager import create_run

    engine, Session = _open_db(args.db)
    init_db(engine)
    with open(args.csv, newline='', encoding='utf-8-sig') as f:
        leads = list(csv.DictReader(f))

    try:
        run_id = create_run(leads, source_label=args.label or os.path.basename(args.csv),
                            provider_name=args.provider, session_factory=Session)
    except ValidationError as e:
        print(f"error: {e}", file=sys.stderr)
        for rej in e.rejected[:20]:
            print(f"  row {rej['index']}: {rej['reason']}", file=sys.stderr)
        return 1

    print(run_id)
    return 0


def cmd_work(args):
    from skiptrace.pipeline.manager import build_runtime, process_run
    from skiptrace.pipeline.run_manager import RunManager

    engine, Session = _open_db(args.db)
    try:
        run = RunManager(Session).get_status(args.run)
    except RunNotFoundError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    runtime = build_runtime(run.provider, session_factory=Session, bind=engine,
                            redis_client=_redis_or_none())
    stopped = process_run(args.run, concurrency=args.concurrency, runtime=runtime)
    print(json.dumps({'run_id': args.run, 'stopped': stopped,
                      'totals': runtime.run_manager.get_status(args.run).totals()}))
    return 0


def cmd_report(args):
    from skiptrace.pipeline.report import ReportGenerator, write_report

    engine, Session = _open_db(args.db)
    try:
        report = ReportGenerator(Session, bind=engine).generate(args.run)
    except RunNotFoundError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    path = write_report(report, args.output)
    print(path)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog='skiptrace', description='Skip-trace run engine')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('init-db', help='Create tables on a local database')
    p.add_argument('--db', required=True)
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser('create', help='Create a run from a CSV of leads')
    p.add_argument('--csv', required=True)
    p.add_argument('--db', required=True)
    p.add_argument('--label', default='')
    p.add_argument('--provider', default=None)
    p.set_defaults(func=cmd_create)

    p = sub.add_parser('work', help='Process (or resume) a run in-process')
    p.add_argument('--run', required=True)
    p.add_argument('--db', required=True)
    p.add_argument('--concurrency', type=int, default=SKIP_TRACE_CONCURRENCY)
    p.set_defaults(func=cmd_work)

    p = sub.add_parser('report', help='Write <output>/<run_id>/report.json')
    p.add_argument('--run', required=True)
    p.add_argument('--db', required=True)
    p.add_argument('--output', default=RUN_REPORTS_DIR)
    p.set_defaults(func=cmd_report)

    return parser


def main(argv=None):
    from skiptrace.logging_config import configure_logging

    args = build_parser().parse_args(argv)
    configure_logging()
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
