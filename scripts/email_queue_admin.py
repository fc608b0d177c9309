#!/usr/bin/env python3
"""
Email Queue Admin — inspect and repair the queue without starting workers.

Usage:
    # Queue depth, worker bounds and lifetime counters:
    python scripts/email_queue_admin.py stats

    # Move every dead-lettered email back to the ready queue:
    python scripts/email_queue_admin.py retry-failed

    # Drop the dead-letter list:
    python scripts/email_queue_admin.py clear-failed

    # Redis AOF / RDB status:
    python scripts/email_queue_admin.py persistence

    # Alternate config file:
    python scripts/email_queue_admin.py --config /etc/mailqueue.yaml stats
"""
import asyncio
import json
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

COMMANDS = ("stats", "retry-failed", "clear-failed", "persistence")


async def run_command(command: str, queue=None, config_path: str = None) -> dict:
    owns_queue = queue is None
    if owns_queue:
        from config.settings import load_settings
        from job_queue.email_queue import EmailQueue
        from job_queue.store import create_queue_store

        settings = load_settings(config_path)
        queue = EmailQueue(create_queue_store(settings.redis), settings.queue)
        await queue.connect()

    try:
        if command == "stats":
            return await queue.stats()
        if command == "retry-failed":
            return {"requeued": await queue.retry_failed_all()}
        if command == "clear-failed":
            return {"cleared": await queue.clear_failed_all()}
        if command == "persistence":
            return await queue.persistence_status()
        raise ValueError(f"Unknown command: {command}")
    finally:
        if owns_queue and queue.store is not None:
            await queue.store.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Email queue administration")
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args(argv)

    from job_queue.errors import QueueError

    try:
        result = asyncio.run(run_command(args.command, config_path=args.config))
    except QueueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
