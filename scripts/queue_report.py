"""
Queue Report Script

Prints queue depth and the most recent dead-lettered items.
Run from project root: python scripts/queue_report.py
"""

import argparse
import sys
from datetime import datetime

import httpx

API_BASE_URL = "http://localhost:8001"


def queue_report(base_url: str = API_BASE_URL, limit: int = 10) -> bool:
    """Print queue statistics and dead letters."""

    print("=" * 60)
    print("🔍 ORDER QUEUE REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"🎯 API: {base_url}")
    print("=" * 60)

    try:
        with httpx.Client(base_url=base_url, timeout=10.0) as client:
            stats = client.get("/api/queue/stats").json()
            dead = client.get(
                "/api/queue/items",
                params={"status": "dead_letter", "limit": limit},
            ).json()
    except httpx.HTTPError as e:
        print(f"\n❌ Could not reach the API: {e}")
        return False

    print(f"\n📊 STATISTICS:")
    for key in ("pending", "processing", "completed", "failed", "dead_letter", "total"):
        print(f"   {key:<12} {stats.get(key, 0)}")

    in_flight = stats.get("pending", 0) + stats.get("processing", 0)
    if in_flight:
        print(f"\n⏳ {in_flight} items still in flight")
    else:
        print(f"\n✅ Queue drained")

    items = dead.get("items", [])
    print(f"\n💀 DEAD LETTERS ({dead.get('total', 0)} shown):")
    print("-" * 60)
    if not items:
        print("   None")
    for item in items:
        order_number = item["order_data"].get("orderNumber", "?")
        print(f"   #{item['id']:<6} {order_number:<16} attempts={item['attempts']}")
        print(f"           {(item.get('error_message') or '')[:80]}")

    print("\n" + "=" * 60)
    print("✅ REPORT COMPLETE")
    print("=" * 60)

    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Order queue report")
    parser.add_argument("--url", default=API_BASE_URL, help="API base URL")
    parser.add_argument("--limit", type=int, default=10, help="Dead letters to show")
    args = parser.parse_args()

    sys.exit(0 if queue_report(args.url, args.limit) else 1)
