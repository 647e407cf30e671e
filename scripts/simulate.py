"""
Accept-Race Simulation Script

Creates orders, walks them to READY and lets a crowd of drivers accept
each one at the same time. Every order must end up with exactly one
driver; everybody else must be told the order was already taken.

Run from project root against a running API:
    python scripts/simulate.py --orders 20 --drivers 10
"""

import argparse
import asyncio
import random
import sys
import time
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
API_PREFIX = "/api"

CUSTOMERS = ["Amina B.", "Yacine K.", "Sara M.", "Karim L.", "Lina H.", "Omar T."]
STREETS = ["Rue Didouche Mourad", "Boulevard Zighoud Youcef", "Rue Larbi Ben M'hidi", "Avenue Pasteur"]
MENU_ITEMS = [
    {"productId": "prod-001", "name": "Chicken Shawarma", "unitPrice": 450.0},
    {"productId": "prod-002", "name": "Mint Tea", "unitPrice": 120.0},
    {"productId": "prod-003", "name": "Couscous Royal", "unitPrice": 1200.0},
    {"productId": "prod-004", "name": "Makroud", "unitPrice": 80.0},
]


def generate_order_payload() -> dict[str, Any]:
    """Generate a random order body."""
    items = []
    for item in random.sample(MENU_ITEMS, k=random.randint(1, 3)):
        items.append({**item, "quantity": random.randint(1, 3)})
    return {
        "items": items,
        "deliveryAddress": f"{random.randint(1, 200)} {random.choice(STREETS)}",
        "city": "Algiers",
        "customerName": random.choice(CUSTOMERS),
        "customerPhone": f"+213 555 {random.randint(10, 99)} {random.randint(10, 99)} {random.randint(10, 99)}",
    }


async def prepare_ready_order(client: httpx.AsyncClient) -> str:
    """Create an order and walk it to READY."""
    response = await client.post(f"{API_PREFIX}/orders", json=generate_order_payload())
    response.raise_for_status()
    order_id = response.json()["order"]["id"]

    for status in ("ACCEPTED", "PREPARING", "READY"):
        response = await client.patch(f"{API_PREFIX}/orders/{order_id}", json={"status": status})
        response.raise_for_status()
    return order_id


async def accept(client: httpx.AsyncClient, order_id: str, driver_id: str) -> dict[str, Any]:
    """One driver's accept attempt."""
    start_time = time.time()
    try:
        response = await client.post(
            f"{API_PREFIX}/orders/{order_id}/accept",
            json={"driverId": driver_id},
        )
        body = response.json()
        return {
            "driver_id": driver_id,
            "status_code": response.status_code,
            "error": body.get("error"),
            "assigned_to": (body.get("order") or {}).get("driverId"),
            "time": round(time.time() - start_time, 3),
        }
    except Exception as e:
        return {
            "driver_id": driver_id,
            "status_code": None,
            "error": str(e)[:100],
            "assigned_to": None,
            "time": round(time.time() - start_time, 3),
        }


async def race_for_order(client: httpx.AsyncClient, order_id: str, num_drivers: int) -> dict[str, Any]:
    """All drivers accept ``order_id`` at once; check the outcome."""
    attempts = await asyncio.gather(
        *(accept(client, order_id, f"driver-{n:03d}") for n in range(num_drivers))
    )
    winners = [a for a in attempts if a["status_code"] == 200]
    taken = [a for a in attempts if a["status_code"] == 409 and a["error"] == "AlreadyAssigned"]
    unexpected = [a for a in attempts if a not in winners and a not in taken]

    final = (await client.get(f"{API_PREFIX}/orders/{order_id}")).json()["order"]
    consistent = (
        len(winners) == 1
        and final["status"] == "ASSIGNED"
        and final["driverId"] == winners[0]["driver_id"]
    )
    return {
        "order_id": order_id,
        "winners": len(winners),
        "already_taken": len(taken),
        "unexpected": unexpected,
        "assigned_to": final["driverId"],
        "consistent": consistent,
        "slowest": max(a["time"] for a in attempts),
    }


async def run_simulation(num_orders: int, num_drivers: int) -> dict[str, Any]:
    print("\n" + "=" * 70)
    print("🏁 ACCEPT-RACE SIMULATION")
    print("=" * 70)
    print(f"📦 Orders: {num_orders}")
    print(f"🛵 Drivers per order: {num_drivers}")
    print(f"🌐 API: {API_BASE_URL}{API_PREFIX}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient(base_url=API_BASE_URL, timeout=30.0) as client:
        response = await client.get("/health")
        if response.status_code != 200:
            print(f"❌ Health check failed: {response.text}")
            return {"success": False}
        print(f"✅ Health: {response.json().get('status')}")

        print("\n⏳ Preparing READY orders...")
        order_ids = await asyncio.gather(*(prepare_ready_order(client) for _ in range(num_orders)))

        print("⚡ Racing drivers...")
        results = await asyncio.gather(
            *(race_for_order(client, order_id, num_drivers) for order_id in order_ids)
        )

    total_time = round(time.time() - start_time, 2)
    broken = [r for r in results if not r["consistent"] or r["unexpected"]]

    print("\n" + "=" * 70)
    print("📊 RESULTS")
    print("=" * 70)
    print(f"⏱️  Total Time: {total_time}s")
    print(f"✅ Orders with exactly one driver: {len(results) - len(broken)}/{len(results)}")
    print(f"🚫 'Already taken' answers: {sum(r['already_taken'] for r in results)}")
    print(f"🐢 Slowest accept: {max(r['slowest'] for r in results)}s")

    if broken:
        print("\n⚠️  Inconsistent orders (showing first 5):")
        for r in broken[:5]:
            print(f"   Order {r['order_id']}: winners={r['winners']} assigned_to={r['assigned_to']}")
            for attempt in r["unexpected"][:3]:
                print(f"      {attempt['driver_id']}: {attempt['status_code']} {attempt['error']}")

    print("=" * 70)
    return {"success": not broken, "total_time": total_time, "results": results}


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Accept-Race Simulation Script")
    parser.add_argument("--orders", type=int, default=20, help="Number of orders")
    parser.add_argument("--drivers", type=int, default=10, help="Concurrent drivers per order")
    parser.add_argument("--url", default=API_BASE_URL, help="API base URL")
    args = parser.parse_args()

    API_BASE_URL = args.url.rstrip("/")
    outcome = asyncio.run(run_simulation(args.orders, args.drivers))
    sys.exit(0 if outcome["success"] else 1)
