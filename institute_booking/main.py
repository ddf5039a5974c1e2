import os
import sys
import argparse
import time

import uvicorn
from fastapi import Request
from prometheus_client import Counter, Histogram
from alembic import command
from alembic.config import Config
import logging
from prometheus_fastapi_instrumentator import Instrumentator
from .app import create_app
from .app.config import DATABASE_URL
from .app.dependencies import SessionLocal, get_redis_client, make_engine
from .app.models import Base
from .app.notifications import KINDS, logging_sender, run_reminders_once

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

app = create_app()

# Custom Prometheus metrics for specific routes
ROUTE_REQUEST_COUNT = Counter("route_request_count", "Total number of requests per route", ["method", "endpoint"])
ROUTE_REQUEST_LATENCY = Histogram("route_request_latency_seconds", "Request latency in seconds per route", ["method", "endpoint"])


# Middleware to track custom metrics
@app.middleware("http")
async def add_metrics(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    ROUTE_REQUEST_COUNT.labels(method=request.method, endpoint=request.url.path).inc()
    ROUTE_REQUEST_LATENCY.labels(method=request.method, endpoint=request.url.path).observe(time.time() - start_time)

    return response


Instrumentator().instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')

REMINDER_KINDS = [kind.value for kind, kind_spec in KINDS.items() if kind_spec.lead_time]


def start_server():
    uvicorn.run(app, host="0.0.0.0", port=8000)


def create_tables():
    print(f"Using database URL: {DATABASE_URL}")
    engine = make_engine(DATABASE_URL)
    Base.metadata.create_all(engine)
    print("Database tables created successfully.")


def run_migrations(action, revision=None, message=None):
    alembic_cfg = Config()
    alembic_cfg.set_main_option('sqlalchemy.url', DATABASE_URL)
    alembic_cfg.set_main_option('script_location', MIGRATIONS_DIR)

    if action == "upgrade":
        command.upgrade(alembic_cfg, "head")
    elif action == "downgrade":
        if not revision:
            print("Please specify a revision to downgrade to.")
            return
        command.downgrade(alembic_cfg, revision)
    elif action == "revision":
        if not message:
            print("Please provide a message for the migration.")
            return
        command.revision(alembic_cfg, autogenerate=True, message=message)
    elif action == "current":
        command.current(alembic_cfg)
    else:
        print("Invalid action specified for migrations.")


def run_reminders(kinds):
    for kind in kinds:
        counts = run_reminders_once(SessionLocal, kind, logging_sender)
        if counts is None:
            print(f"{kind}: skipped")
        else:
            print(f"{kind}: {counts}")


def clear_redis_cache():
    redis_client = get_redis_client()
    keys = list(redis_client.scan_iter(match="free-starts:*"))
    if keys:
        redis_client.delete(*keys)
    print(f"Cleared {len(keys)} cached free-starts entries.")


def main():
    parser = argparse.ArgumentParser(description="Institute Booking Application")
    parser.add_argument(
        '--mode',
        type=str,
        choices=['server', 'create-tables', 'migrate', 'reminders', 'clear-cache'],
        required=True,
        help="Mode to run the application in. Choices are 'server' to start the FastAPI server, 'create-tables' to create the database tables, 'migrate' to manage database migrations, 'reminders' to run one sweep of the reminder jobs, or 'clear-cache' to drop the cached free starts."
    )

    parser.add_argument(
        '--action',
        type=str,
        choices=['upgrade', 'downgrade', 'revision', 'current'],
        help="Action to perform with Alembic migrations. Required if mode is 'migrate'."
    )

    parser.add_argument(
        '--revision',
        type=str,
        help="Specify the revision for downgrade or other Alembic commands where needed."
    )

    parser.add_argument(
        '--message',
        type=str,
        help="Message to use with the 'revision' action in Alembic."
    )

    parser.add_argument(
        '--kind',
        type=str,
        choices=REMINDER_KINDS,
        help="Reminder job to run in 'reminders' mode. Runs all of them when omitted."
    )

    args = parser.parse_args()

    if args.mode == 'server':
        start_server()
    elif args.mode == 'create-tables':
        create_tables()
    elif args.mode == 'migrate':
        if not args.action:
            print("Please specify an action for the 'migrate' mode.")
        else:
            run_migrations(args.action, args.revision, args.message)
    elif args.mode == 'reminders':
        run_reminders([args.kind] if args.kind else REMINDER_KINDS)
    elif args.mode == 'clear-cache':
        clear_redis_cache()


if __name__ == "__main__":
    main()
