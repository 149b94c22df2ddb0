"""
Order Burst Simulation Script

Fires a burst of concurrent orders at the ingestion endpoint, then polls the
queue until every accepted order has left ``pending``/``processing``.
Run from project root: python scripts/simulate.py

Version: 1.0.0
"""

import asyncio
import sys
import random
import time
import argparse
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 50

# Sample data for random orders
FIRST_NAMES = ["John", "Jane", "Mike", "Sarah", "Tom", "Emma", "David", "Lisa", "Chris", "Amy"]
LAST_NAMES = ["Smith", "Johnson", "Williams", "Brown", "Jones", "Garcia", "Miller", "Davis", "Wilson", "Taylor"]
RESTAURANTS = [
    {"restaurantId": "r1", "restaurantName": "Luigi's Trattoria"},
    {"restaurantId": "r2", "restaurantName": "Golden Dragon"},
    {"restaurantId": "r3", "restaurantName": "Burger Barn"},
]
MENU_ITEMS = [
    {"name": "Pizza Margherita", "unitPrice": 14.99},
    {"name": "Pepperoni Pizza", "unitPrice": 16.99},
    {"name": "Caesar Salad", "unitPrice": 8.99},
    {"name": "Garlic Bread", "unitPrice": 5.99},
    {"name": "Pasta Carbonara", "unitPrice": 13.99},
    {"name": "Tiramisu", "unitPrice": 7.99},
    {"name": "Coke", "unitPrice": 2.99},
    {"name": "Sparkling Water", "unitPrice": 3.49},
]


def generate_random_items() -> list[dict]:
    """Generate random order items."""
    num_items = random.randint(1, 4)
    items = []
    for _ in range(num_items):
        item = random.choice(MENU_ITEMS).copy()
        item["quantity"] = random.randint(1, 3)
        items.append(item)
    return items


def generate_order_payload(invalid: bool = False) -> dict[str, Any]:
    """Generate payload for the /api/orders endpoint."""
    first = random.choice(FIRST_NAMES)
    last = random.choice(LAST_NAMES)
    payload = {
        **random.choice(RESTAURANTS),
        "customerName": f"{first} {last}",
        "customerEmail": f"{first.lower()}.{last.lower()}@example.com",
        "items": generate_random_items(),
        "paymentMethod": random.choice(["online", "online", "window"]),
    }
    if invalid:
        payload["items"] = []
    return payload


async def send_order(
    client: httpx.AsyncClient,
    order_num: int,
    invalid: bool = False,
) -> dict[str, Any]:
    """Send one order and record the response."""
    payload = generate_order_payload(invalid=invalid)
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders",
            json=payload,
            timeout=30.0
        )
        elapsed = round(time.time() - start_time, 3)

        if response.status_code == 202:
            data = response.json()
            return {
                "order_num": order_num,
                "success": True,
                "order_number": data.get("order_number"),
                "queue_id": data.get("queue_id"),
                "time": elapsed,
            }
        return {
            "order_num": order_num,
            "success": False,
            "status_code": response.status_code,
            "error": response.text[:100],
            "time": elapsed,
        }
    except httpx.HTTPError as e:
        elapsed = round(time.time() - start_time, 3)
        return {
            "order_num": order_num,
            "success": False,
            "error": str(e)[:100],
            "time": elapsed,
        }


async def wait_for_queue(client: httpx.AsyncClient, timeout: float) -> dict[str, Any]:
    """Poll queue stats until nothing is pending or processing."""
    deadline = time.time() + timeout
    stats: dict[str, Any] = {}
    while time.time() < deadline:
        response = await client.get(f"{API_BASE_URL}/api/queue/stats")
        stats = response.json()
        in_flight = stats.get("pending", 0) + stats.get("processing", 0)
        print(f"   ⏳ In flight: {in_flight}  completed: {stats.get('completed', 0)}  "
              f"dead letter: {stats.get('dead_letter', 0)}")
        if in_flight == 0:
            break
        await asyncio.sleep(2)
    return stats


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(
    num_orders: int = TOTAL_ORDERS,
    invalid_ratio: float = 0.0,
    wait_timeout: float = 120.0,
) -> dict[str, Any]:
    """
    Run the burst simulation.

    Args:
        num_orders: Number of orders to simulate
        invalid_ratio: Share of orders sent with an empty cart
        wait_timeout: Seconds to wait for the queue to drain
    """
    print("=" * 70)
    print("🔥 ORDER BURST SIMULATION")
    print("=" * 70)
    print(f"📋 Total Orders: {num_orders}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()

    async with httpx.AsyncClient() as client:
        print("\n🚀 Firing orders...\n")
        tasks = [
            send_order(client, i + 1, invalid=random.random() < invalid_ratio)
            for i in range(num_orders)
        ]
        results = await asyncio.gather(*tasks)
        accept_time = round(time.time() - start_time, 2)

        print("\n⏳ Waiting for the queue to drain...\n")
        stats = await wait_for_queue(client, wait_timeout)

    total_time = round(time.time() - start_time, 2)

    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)

    print(f"\n✅ Accepted Orders: {len(successful)}/{num_orders}")
    print(f"❌ Rejected Orders: {len(failed)}/{num_orders}")
    print(f"⏱️  Accept Time: {accept_time}s")
    print(f"⏱️  Total Time: {total_time}s")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        print(f"\n📈 Performance Metrics:")
        print(f"   Average Response: {avg_time}s")
        print(f"   Fastest: {min(r['time'] for r in successful)}s")
        print(f"   Slowest: {max(r['time'] for r in successful)}s")

    print(f"\n📦 Queue: {stats}")

    if failed:
        print(f"\n⚠️  Rejected Order Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Order #{f['order_num']}: {f.get('error', 'Unknown error')}")

    print("\n" + "=" * 70)
    print("🔍 VERIFICATION STEPS")
    print("=" * 70)
    print("1. Run: python scripts/queue_report.py")
    print("2. Replay anything dead-lettered: python scripts/replay_dead_letters.py")
    print("=" * 70)

    return {
        "total": num_orders,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "queue": stats,
        "results": results,
    }


async def preflight_checks() -> bool:
    """Check the API is reachable before the burst."""
    print("\n" + "=" * 70)
    print("🧪 PRE-FLIGHT CHECKS")
    print("=" * 70)

    async with httpx.AsyncClient() as client:
        print("\n1️⃣ Health Check...")
        try:
            response = await client.get(f"{API_BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"   ❌ API unreachable: {e}")
            return False
        if response.status_code != 200:
            print(f"   ❌ Failed: {response.text}")
            return False

        data = response.json()
        print(f"   ✅ Status: {data.get('status')}")
        print(f"   Database: {data.get('database')}")
        print(f"   Payments: {data.get('payment_service')}")
        print(f"   Notifications: {data.get('notification_service')}")

        print("\n2️⃣ Single Order...")
        response = await client.post(f"{API_BASE_URL}/api/orders", json=generate_order_payload())
        if response.status_code == 202:
            print(f"   ✅ Order #{response.json().get('order_number')} queued")
        else:
            print(f"   ❌ Failed: {response.text[:100]}")
            return False

    print("\n" + "=" * 70)
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Order Burst Simulation Script")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--invalid-ratio", type=float, default=0.0, help="Share of malformed orders")
    parser.add_argument("--wait", type=float, default=120.0, help="Seconds to wait for the queue")
    parser.add_argument("--skip-tests", action="store_true", help="Skip pre-flight checks")
    args = parser.parse_args()

    if not args.skip_tests:
        if not asyncio.run(preflight_checks()):
            print("\n❌ Pre-flight checks failed. Fix issues before running simulation.")
            sys.exit(1)
        print("\n✅ Pre-flight checks passed!")

    asyncio.run(run_simulation(
        num_orders=args.orders,
        invalid_ratio=args.invalid_ratio,
        wait_timeout=args.wait,
    ))
