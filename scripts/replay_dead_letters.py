"""
Dead Letter Replay Script

Sends dead-lettered queue items back to pending with a fresh attempt count.
Run from project root: python scripts/replay_dead_letters.py [--id 42 ...]
"""

import argparse
import sys

import httpx

API_BASE_URL = "http://localhost:8001"


def replay(base_url: str, item_ids: list[int], dry_run: bool = False) -> int:
    """Replay the given items, or every dead letter when none are given."""
    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        if not item_ids:
            response = client.get("/api/queue/items", params={"status": "dead_letter", "limit": 500})
            response.raise_for_status()
            item_ids = [item["id"] for item in response.json()["items"]]

        if not item_ids:
            print("✅ No dead letters to replay")
            return 0

        replayed = 0
        for item_id in item_ids:
            if dry_run:
                print(f"   Would replay #{item_id}")
                continue
            response = client.post(f"/api/queue/items/{item_id}/replay")
            if response.status_code == 200:
                print(f"   🔁 Replayed #{item_id}")
                replayed += 1
            else:
                print(f"   ⚠️ #{item_id}: {response.json().get('detail')}")

    print(f"\n✅ Replayed {replayed}/{len(item_ids)} items")
    return replayed


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Replay dead-lettered orders")
    parser.add_argument("--url", default=API_BASE_URL, help="API base URL")
    parser.add_argument("--id", dest="ids", type=int, action="append", default=[], help="Queue item id")
    parser.add_argument("--dry-run", action="store_true", help="List without replaying")
    args = parser.parse_args()

    try:
        replay(args.url, args.ids, args.dry_run)
    except httpx.HTTPError as e:
        print(f"❌ Could not reach the API: {e}")
        sys.exit(1)
