#!/usr/bin/env python3
import argparse
import json
import os
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from plumbhub.models import Booking, BookingStatus
from plumbhub.services.entity_store import DEFAULT_DB_PATH, EntityStore


def build_report(bookings: List[Booking]) -> Dict[str, Any]:
    status_counts: Counter[str] = Counter()
    category_counts: Counter[str] = Counter()
    provider_assignments: Counter[str] = Counter()
    reassigned = 0
    orphaned = 0

    for booking in bookings:
        status_counts[booking.status.value] += 1
        category_counts[booking.category] += 1
        for entry in booking.assignment_history:
            provider_assignments[entry.provider_id] += 1
        if len(booking.assignment_history) > 1:
            reassigned += 1
        # Declined by every provider and waiting again.
        if booking.status == BookingStatus.PENDING and booking.assignment_history:
            orphaned += 1

    total = len(bookings)
    return {
        "total_bookings": total,
        "status_counts": dict(status_counts.most_common()),
        "category_counts": dict(category_counts.most_common()),
        "reassigned_bookings": reassigned,
        "reassignment_rate": round(reassigned / total, 4) if total else 0.0,
        "orphaned_pending": orphaned,
        "assignments_per_provider": dict(provider_assignments.most_common()),
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarise booking assignment outcomes.")
    parser.add_argument("--db", type=str, default=os.getenv("PLUMBHUB_DB_PATH", DEFAULT_DB_PATH), help="sqlite database path.")
    parser.add_argument("--status", type=str, default="", help="Only include bookings with this status.")
    parser.add_argument("--json-out", type=str, default="", help="Optional output path for machine-readable results.")
    args = parser.parse_args()

    status = None
    if args.status:
        try:
            status = BookingStatus(args.status)
        except ValueError:
            print(f"Unknown status: {args.status}")
            return 2

    store = EntityStore(db_path=args.db, seed_categories=False)
    report = build_report(store.list_bookings(status=status))

    print(
        f"bookings={report['total_bookings']} reassigned={report['reassigned_bookings']} "
        f"rate={report['reassignment_rate']:.2%} orphaned_pending={report['orphaned_pending']}"
    )
    for name, count in report["status_counts"].items():
        print(f"- {name}: {count}")

    if args.json_out:
        output_path = Path(args.json_out)
        output_path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
