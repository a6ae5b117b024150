"""Script to run one notification dispatch pass

For deployments that trigger delivery externally (cron, Task Scheduler)
instead of running the in-process scheduler.

Usage:
    python scripts/dispatch_notifications.py
    python scripts/dispatch_notifications.py --include-today   # also send today's admin digest
    python scripts/dispatch_notifications.py --skip-digest
"""
import argparse
import asyncio
import json
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from request_navigator.services.m365_token_manager import M365TokenManager
from request_navigator.services.graph_mail_client import GraphMailClient
from request_navigator.services.outbox_dispatcher import OutboxDispatcher
from request_navigator.services.admin_digest_service import AdminDigestService
from request_navigator.repositories.mongo_client import close_connection
from request_navigator.utils.logger import setup_logging, set_correlation_id
from request_navigator.utils.idgen import generate_correlation_id


async def run(include_today: bool, skip_digest: bool) -> dict:
    token_manager = M365TokenManager()
    mail_client = GraphMailClient()

    result = {}
    dispatcher = OutboxDispatcher(token_manager=token_manager, mail_client=mail_client)
    result["outbox"] = (await dispatcher.dispatch_once()).model_dump(by_alias=True)

    if not skip_digest:
        digest_service = AdminDigestService(token_manager=token_manager, mail_client=mail_client)
        summary = await digest_service.dispatch_once(include_today=include_today)
        result["digest"] = summary.model_dump(by_alias=True)
    return result


def main():
    parser = argparse.ArgumentParser(description="Run one notification dispatch pass")
    parser.add_argument(
        "--include-today",
        action="store_true",
        help="Also send today's admin digest groups (default: only closed days)"
    )
    parser.add_argument(
        "--skip-digest",
        action="store_true",
        help="Only dispatch the notification outbox"
    )
    args = parser.parse_args()

    setup_logging()
    set_correlation_id(generate_correlation_id())
    try:
        result = asyncio.run(run(args.include_today, args.skip_digest))
    finally:
        close_connection()

    print(json.dumps(result, indent=2))


if __name__ == '__main__':
    main()
