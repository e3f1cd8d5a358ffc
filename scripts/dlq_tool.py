#!/usr/bin/env python3
"""
Dead-Letter Tool — inspect and replay quarantined messages.

Usage:
    python scripts/dlq_tool.py count
    python scripts/dlq_tool.py list --limit 50
    python scripts/dlq_tool.py replay --limit 10

Replay reads the record at the head of the dead-letter queue, re-admits its
payload through the producer (fresh timestamp, zeroed attempt counter) and
only then removes it. Records whose payload no longer validates are copied
to the tail before the head is removed. If the store fails midway the record
stays in the dead-letter queue; at worst it is admitted twice.
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def replay(store, producer, limit: int) -> dict[str, int]:
    from job_queue.errors import ValidationError
    from models.schemas import DeadLetterRecord

    stats = {"replayed": 0, "unreplayable": 0}
    # unreplayable records go back to the tail; don't visit them a second time
    limit = min(limit, await store.length(store.dead_letter_queue))
    for _ in range(limit):
        head = await store.peek(store.dead_letter_queue, 1)
        if not head:
            break
        raw = head[0]
        try:
            record = DeadLetterRecord.from_json(raw)
            original = record.original()
            if original is None:
                raise ValidationError(["original message does not parse"])
            # StoreUnavailable propagates; the record stays at the head
            await producer.submit(original.payload.model_dump(by_alias=True),
                                  owner_id=original.metadata.act_id)
        except (ValueError, ValidationError) as e:
            print(f"  cannot replay: {e}")
            await store.push(store.dead_letter_queue, raw)
            await store.blocking_pop(store.dead_letter_queue, timeout_ms=100)
            stats["unreplayable"] += 1
            continue
        await store.blocking_pop(store.dead_letter_queue, timeout_ms=100)
        stats["replayed"] += 1
    return stats


async def run(command: str, limit: int, config_path: str = None) -> int:
    from config.settings import load_settings
    from job_queue.dead_letter import DeadLetterSink
    from job_queue.errors import StoreUnavailable
    from job_queue.message_queue import create_message_queue
    from job_queue.producer import Producer

    settings = load_settings(config_path)
    store = create_message_queue(settings.queue)
    try:
        await store.connect()
    except StoreUnavailable as e:
        print(f"Queue store unavailable: {e}")
        return 1

    try:
        sink = DeadLetterSink(store)
        if command == "count":
            print(f"{store.dead_letter_queue}: {await sink.count()} records")
        elif command == "list":
            for record in await sink.inspect(limit):
                print(json.dumps({
                    "quarantined_at": record.quarantined_at.isoformat(),
                    "error": record.error,
                    "original": record.original_message,
                }))
        elif command == "replay":
            stats = await replay(store, Producer(store), limit)
            print(f"Replayed {stats['replayed']}, left {stats['unreplayable']} in place.")
    except StoreUnavailable as e:
        print(f"Queue store unavailable: {e}")
        return 1
    finally:
        await store.close()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Inspect or replay dead-lettered messages")
    parser.add_argument("command", choices=["count", "list", "replay"])
    parser.add_argument("--limit", type=int, default=20, help="Max records to list/replay")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    args = parser.parse_args()
    sys.exit(asyncio.run(run(args.command, args.limit, args.config)))


if __name__ == "__main__":
    main()
