#!/usr/bin/env python3
"""
Engagement Report — inspect the persisted engagement cache.

Reads the cache blob from the configured store and shows how many
conversations are inside the 24-hour window and which ones would need a
template to be reached.

Usage:
    python scripts/engagement_report.py                    # Summary
    python scripts/engagement_report.py --outside          # List conversations outside the window
    python scripts/engagement_report.py --json             # Machine-readable summary
    python scripts/engagement_report.py --prune            # Drop records past retention, then report
"""
import argparse
import json
import os
import sys
from datetime import datetime, timedelta, timezone

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.settings import load_settings
from core.stats import ActionCounters, StatsAggregator
from database.store_factory import create_store
from engagement.cache import EngagementCache
from engagement.window import WindowPolicy


def build_cache(settings) -> EngagementCache:
    cache = EngagementCache(
        create_store(settings.storage),
        key=settings.storage.cache_key,
        retention=timedelta(days=settings.messaging.retention_days),
    )
    cache.load_all()
    return cache


def print_summary(stats, policy: WindowPolicy):
    hours = policy.window / timedelta(hours=1)
    print("╔══════════════════════════════════════════╗")
    print("║          ENGAGEMENT WINDOW REPORT        ║")
    print("╠══════════════════════════════════════════╣")
    print(f"║  Window length:        {hours:>8.0f} h        ║")
    print(f"║  Conversations:        {stats.total_conversations:>8}          ║")
    print(f"║  Inside window:        {stats.within_window:>8}          ║")
    print(f"║  Outside window:       {stats.outside_window:>8}          ║")
    print("╚══════════════════════════════════════════╝")


def print_outside(cache: EngagementCache, ids: list[str], now: datetime):
    if not ids:
        print("\nEvery cached conversation is inside the window.")
        return
    print(f"\n{'Conversation':<24} {'Last inbound':<28} {'Days ago':>8}")
    print("─" * 62)
    for cid in ids:
        record = cache.get(cid)
        last = record.last_inbound_timestamp if record else None
        days = f"{(now - last) / timedelta(days=1):.1f}" if last else "never"
        print(f"{cid:<24} {last.isoformat() if last else '-':<28} {days:>8}")


def main():
    parser = argparse.ArgumentParser(description="Engagement window report")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--outside", action="store_true", help="List conversations outside the window")
    parser.add_argument("--limit", type=int, default=None, help="Max conversations to list")
    parser.add_argument("--prune", action="store_true", help="Drop records past retention first")
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    args = parser.parse_args()

    settings = load_settings(args.config)
    policy = WindowPolicy.from_hours(settings.messaging.window_hours)
    cache = build_cache(settings)
    now = datetime.now(timezone.utc)

    if args.prune:
        removed = cache.prune(now)
        print(f"Pruned {removed} record(s) older than {settings.messaging.retention_days} days")

    # Send counters live in the running service; this report only sees the cache
    aggregator = StatsAggregator(cache, ActionCounters(), policy)
    stats = aggregator.compute_stats(now)

    if args.json:
        summary = stats.model_dump(include={"total_conversations", "within_window", "outside_window"})
        if args.outside:
            summary["outside"] = aggregator.conversations_outside_window(now, args.limit)
        print(json.dumps(summary, indent=2))
        return

    print_summary(stats, policy)
    if args.outside:
        print_outside(cache, aggregator.conversations_outside_window(now, args.limit), now)


if __name__ == "__main__":
    main()
