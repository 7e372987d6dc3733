"""
Callback Chaos Simulation Script

Creates orders against a running development server, then hammers the
notification endpoint the way a real gateway does: duplicated deliveries,
racing finish redirects and late out-of-order statuses. Afterwards every
order must sit in exactly one consistent state.

Run from project root (server in ENV_MODE=development, seeded menu):
    python scripts/seed.py
    python scripts/simulate.py --orders 30

Version: 1.0.0
"""

import asyncio
import sys
import os
import random
import time
import argparse
from datetime import datetime
from typing import Any

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from app.services.payment.mock import MockPaymentGateway  # noqa: E402

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 30
SERVER_KEY = os.getenv("MIDTRANS_SERVER_KEY") or "mock-server-key"

# Sample data for random orders
FIRST_NAMES = ["Budi", "Siti", "Agus", "Dewi", "Rudi", "Ayu", "Eko", "Rina", "Joko", "Lestari"]
LAST_NAMES = ["Santoso", "Wijaya", "Saputra", "Lestari", "Hidayat", "Pratama", "Kusuma", "Nugroho"]
MENU_ITEM_IDS = [1, 2, 3, 4, 5, 6, 7, 8]

# Final status each scenario should leave the order in
SCENARIOS = {
    "settle_twice": "processing",
    "settle_then_late_pending": "processing",
    "expire_then_late_settlement": "cancelled",
    "deny": "cancelled",
    "pending_only": "pending",
}

signer = MockPaymentGateway(failure_rate=0.0, min_latency=0, max_latency=0, server_key=SERVER_KEY)


def generate_random_customer() -> dict[str, str]:
    """Generate random customer info."""
    first = random.choice(FIRST_NAMES)
    last = random.choice(LAST_NAMES)
    return {
        "name": f"{first} {last}",
        "email": f"{first.lower()}.{last.lower()}@example.com",
        "phone": f"08{random.randint(1000000000, 9999999999)}",
    }


def generate_checkout_payload() -> dict[str, Any]:
    """Generate payload for /api/checkout."""
    return {
        "order_type": random.choice(["takeaway", "dine-in"]),
        "customer": generate_random_customer(),
        "items": [
            {"menu_item_id": menu_item_id, "quantity": random.randint(1, 2)}
            for menu_item_id in random.sample(MENU_ITEM_IDS, random.randint(1, 3))
        ],
    }


async def create_order(client: httpx.AsyncClient, order_num: int) -> dict[str, Any]:
    """Create one pending order via the storefront API."""
    start_time = time.time()
    try:
        response = await client.post(
            f"{API_BASE_URL}/api/checkout",
            json=generate_checkout_payload(),
            timeout=30.0
        )
        elapsed = round(time.time() - start_time, 3)
        if response.status_code == 200:
            data = response.json()
            return {
                "order_num": order_num,
                "success": True,
                "order_id": data["order_id"],
                "total": data["total_amount"],
                "time": elapsed,
            }
        return {
            "order_num": order_num,
            "success": False,
            "error": response.text[:100],
            "time": elapsed,
        }
    except httpx.HTTPError as e:
        return {
            "order_num": order_num,
            "success": False,
            "error": str(e)[:100],
            "time": round(time.time() - start_time, 3),
        }


async def notify(client: httpx.AsyncClient, payload: dict, finish: bool = False) -> int:
    path = "/payments/orders/finish" if finish else "/payments/notification"
    response = await client.post(f"{API_BASE_URL}{path}", json=payload, timeout=30.0)
    return response.status_code


async def play_scenario(client: httpx.AsyncClient, order: dict, scenario: str) -> None:
    """Deliver the notification sequence of one scenario."""
    reference = f"ORDER-{order['order_id']}"
    tx = f"sim-{order['order_id']}-{random.randint(1000, 9999)}"

    def build(status: str) -> dict:
        return signer.build_notification(reference, status, order["total"], transaction_id=tx)

    if scenario == "settle_twice":
        # Server retry racing the browser redirect; only the redirect's order_id
        # is used, the server asks its gateway for the state
        await asyncio.gather(
            notify(client, build("settlement")),
            notify(client, build("settlement")),
            notify(client, build("settlement"), finish=True),
        )
    elif scenario == "settle_then_late_pending":
        await notify(client, build("settlement"))
        await notify(client, build("pending"))
    elif scenario == "expire_then_late_settlement":
        await notify(client, build("expire"))
        await notify(client, build("settlement"))
    elif scenario == "deny":
        await notify(client, build("deny"))
    else:
        await notify(client, build("pending"))


async def verify_order(client: httpx.AsyncClient, order: dict, expected: str) -> dict[str, Any]:
    response = await client.get(f"{API_BASE_URL}/api/orders/{order['order_id']}")
    status = response.json().get("status") if response.status_code == 200 else None
    return {"order_id": order["order_id"], "expected": expected, "actual": status, "ok": status == expected}


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_orders: int = TOTAL_ORDERS) -> dict[str, Any]:
    """
    Run the callback chaos simulation.

    Args:
        num_orders: Number of orders to create and settle
    """
    print("=" * 70)
    print("🔥 CALLBACK CHAOS SIMULATION")
    print("=" * 70)
    print(f"📋 Total Orders: {num_orders}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()

    async with httpx.AsyncClient() as client:
        print("\n🚀 Creating orders...\n")
        created = await asyncio.gather(*[create_order(client, i + 1) for i in range(num_orders)])
        orders = [r for r in created if r["success"]]
        failed = [r for r in created if not r["success"]]

        print("📨 Delivering notifications...\n")
        plan = [(order, random.choice(list(SCENARIOS))) for order in orders]
        await asyncio.gather(*[play_scenario(client, order, scenario) for order, scenario in plan])

        checks = await asyncio.gather(*[
            verify_order(client, order, SCENARIOS[scenario]) for order, scenario in plan
        ])

    total_time = round(time.time() - start_time, 2)
    consistent = [c for c in checks if c["ok"]]
    inconsistent = [c for c in checks if not c["ok"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Orders created: {len(orders)}/{num_orders}")
    print(f"❌ Checkout failures: {len(failed)}/{num_orders}")
    print(f"🧮 Consistent final states: {len(consistent)}/{len(checks)}")
    print(f"⏱️  Total Time: {total_time}s")

    if failed:
        print("\n⚠️  Checkout failures (showing first 5):")
        for f in failed[:5]:
            print(f"   Order #{f['order_num']}: {f.get('error', 'Unknown error')}")

    if inconsistent:
        print("\n🚨 Inconsistent orders:")
        for c in inconsistent:
            print(f"   ORDER-{c['order_id']}: expected {c['expected']}, got {c['actual']}")

    print("=" * 70)

    return {
        "total": num_orders,
        "created": len(orders),
        "consistent": len(consistent),
        "inconsistent": len(inconsistent),
        "total_time": total_time,
    }


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Callback Chaos Simulation Script")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--url", default=API_BASE_URL, help="Server base URL")
    args = parser.parse_args()

    API_BASE_URL = args.url
    summary = asyncio.run(run_simulation(num_orders=args.orders))
    sys.exit(1 if summary["inconsistent"] else 0)
