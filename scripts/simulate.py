"""
Dining Room Chaos Simulation

Fills several tables with diners ordering concurrently through their QR
tokens, then fires racing close-account and settle calls at every table.
A correct server produces exactly one account per table and settles each
one exactly once.

Run from project root (API on localhost:8001): python scripts/simulate.py
"""

import argparse
import asyncio
import os
import random
import sys
import time
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from sqlalchemy import select

from tableside.database import async_session_maker, init_db
from tableside.models import Product

# Configuration
API_BASE_URL = "http://localhost:8001"
TABLE_COUNT = 5
DINERS_PER_TABLE = 4
RACERS = 3

MENU_ITEMS = [
    {"id": "sim-feijoada", "name": "Feijoada", "unit_price": Decimal("54.90"), "category": "mains"},
    {"id": "sim-moqueca", "name": "Moqueca", "unit_price": Decimal("62.00"), "category": "mains"},
    {"id": "sim-coxinha", "name": "Coxinha", "unit_price": Decimal("8.50"), "category": "starters"},
    {"id": "sim-pao-de-queijo", "name": "Pao de Queijo", "unit_price": Decimal("12.90"), "category": "starters"},
    {"id": "sim-guarana", "name": "Guarana", "unit_price": Decimal("6.50"), "category": "drinks"},
    {"id": "sim-caipirinha", "name": "Caipirinha", "unit_price": Decimal("22.00"), "category": "drinks"},
    {"id": "sim-brigadeiro", "name": "Brigadeiro", "unit_price": Decimal("4.75"), "category": "desserts"},
]
PAYMENT_METHODS = ["cash", "debit_card", "credit_card", "pix"]


async def seed_menu() -> None:
    """Insert the simulation products if the catalog does not have them yet."""
    await init_db()
    async with async_session_maker() as session:
        async with session.begin():
            existing = set(
                (await session.execute(select(Product.id).where(Product.id.like("sim-%")))).scalars()
            )
            for item in MENU_ITEMS:
                if item["id"] not in existing:
                    session.add(Product(**item, is_available=True))


def random_items() -> list[dict[str, Any]]:
    return [
        {"product_id": random.choice(MENU_ITEMS)["id"], "quantity": random.randint(1, 3)}
        for _ in range(random.randint(1, 4))
    ]


async def ensure_tables(client: httpx.AsyncClient, count: int) -> list[dict[str, Any]]:
    """Create tables 101.. if missing and return them."""
    for number in range(101, 101 + count):
        await client.post(f"{API_BASE_URL}/api/tables", json={"number": number, "capacity": DINERS_PER_TABLE})

    response = await client.get(f"{API_BASE_URL}/api/tables")
    response.raise_for_status()
    return [t for t in response.json() if 101 <= t["number"] < 101 + count]


async def timed(coro) -> tuple[httpx.Response | Exception, float]:
    start_time = time.time()
    try:
        response = await coro
    except Exception as e:
        response = e
    return response, round(time.time() - start_time, 3)


# =============================================================================
# PHASES
# =============================================================================

async def diner_orders(client: httpx.AsyncClient, table: dict[str, Any]) -> list[dict[str, Any]]:
    """Every diner at the table orders at once through the QR token."""
    calls = [
        timed(client.post(
            f"{API_BASE_URL}/api/orders",
            json={
                "owner": {"qr_token": table["qr_token"]},
                "order_kind": "dine-in",
                "items": random_items(),
                "notes": random.choice([None, "No onions", "Well done", "Share plates"]),
            },
            timeout=30.0,
        ))
        for _ in range(DINERS_PER_TABLE)
    ]
    results = []
    for response, elapsed in await asyncio.gather(*calls):
        ok = isinstance(response, httpx.Response) and response.status_code == 201
        results.append({
            "table": table["number"],
            "success": ok,
            "total": Decimal(response.json()["total"]) if ok else Decimal("0"),
            "time": elapsed,
            "error": None if ok else str(getattr(response, "text", response))[:100],
        })
    return results


async def racing_close(client: httpx.AsyncClient, table: dict[str, Any]) -> dict[str, Any]:
    """Several cashier terminals press "close bill" at the same time."""
    calls = [
        timed(client.post(f"{API_BASE_URL}/api/tables/{table['id']}/account", timeout=30.0))
        for _ in range(RACERS)
    ]
    outcomes = await asyncio.gather(*calls)
    accounts = [r.json() for r, _ in outcomes if isinstance(r, httpx.Response) and r.status_code == 201]
    rejected = [
        r.json().get("error") for r, _ in outcomes
        if isinstance(r, httpx.Response) and r.status_code == 409
    ]
    return {"table": table["number"], "accounts": accounts, "rejected": rejected}


async def racing_settle(client: httpx.AsyncClient, account: dict[str, Any]) -> dict[str, Any]:
    """A flaky card terminal retries the same payment."""
    method = random.choice(PAYMENT_METHODS)
    calls = [
        timed(client.post(
            f"{API_BASE_URL}/api/accounts/{account['id']}/settle",
            json={"payment_method": method},
            timeout=30.0,
        ))
        for _ in range(RACERS)
    ]
    outcomes = await asyncio.gather(*calls)
    paid = [r.json() for r, _ in outcomes if isinstance(r, httpx.Response) and r.status_code == 200]
    return {
        "account_id": account["id"],
        "responses": len(paid),
        "paid_at_values": {p["paid_at"] for p in paid},
        "method": method,
    }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(table_count: int = TABLE_COUNT) -> dict[str, Any]:
    print("=" * 70)
    print("DINING ROOM CHAOS SIMULATION")
    print("=" * 70)
    print(f"Tables: {table_count}  Diners per table: {DINERS_PER_TABLE}  Racers: {RACERS}")
    print(f"Target: {API_BASE_URL}")
    print(f"Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient() as client:
        tables = await ensure_tables(client, table_count)

        print("\nPhase 1: diners ordering...")
        order_results = [
            r for batch in await asyncio.gather(*(diner_orders(client, t) for t in tables)) for r in batch
        ]

        print("Phase 2: racing close-account calls...")
        closes = await asyncio.gather(*(racing_close(client, t) for t in tables))

        print("Phase 3: racing settle calls...")
        accounts = [c["accounts"][0] for c in closes if c["accounts"]]
        settles = await asyncio.gather(*(racing_settle(client, a) for a in accounts))

        final_tables = (await client.get(f"{API_BASE_URL}/api/tables")).json()

    total_time = round(time.time() - start_time, 2)

    successful = [r for r in order_results if r["success"]]
    failed = [r for r in order_results if not r["success"]]
    duplicate_closes = [c for c in closes if len(c["accounts"]) > 1]
    split_settles = [s for s in settles if len(s["paid_at_values"]) > 1]
    still_occupied = [
        t["number"] for t in final_tables
        if t["number"] in {c["table"] for c in closes if c["accounts"]} and t["status"] != "free"
    ]

    print("\n" + "=" * 70)
    print("SIMULATION RESULTS")
    print("=" * 70)
    print(f"Orders placed: {len(successful)}/{len(order_results)}  ({total_time}s total)")
    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        print(f"   Average response: {avg_time}s")
        print(f"   Order value: {sum(r['total'] for r in successful):.2f}")
    for f in failed[:5]:
        print(f"   Table #{f['table']} failed: {f['error']}")

    print(f"\nAccounts closed: {len(accounts)}/{len(tables)}")
    print(f"   Duplicate accounts: {len(duplicate_closes)}")
    print(f"   Rejected racers: {sum(len(c['rejected']) for c in closes)}")
    print(f"\nSettlements: {len(settles)}")
    print(f"   Divergent settle responses: {len(split_settles)}")
    print(f"   Tables not freed: {still_occupied or 'none'}")

    healthy = not duplicate_closes and not split_settles and not still_occupied
    print("\n" + ("PASS" if healthy else "FAIL") + ": one account and one settlement per table")
    print("=" * 70)
    print("Next: check the Celery worker, then run python scripts/verify.py")
    print("=" * 70)

    return {
        "orders": len(order_results),
        "successful": len(successful),
        "accounts": len(accounts),
        "healthy": healthy,
        "total_time": total_time,
    }


async def preflight() -> bool:
    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{API_BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"API not reachable: {e}")
            return False
        data = response.json()
        print(f"Health: {data.get('status')} (database: {data.get('database')}, redis: {data.get('redis')})")
        return response.status_code == 200


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Dining room chaos simulation")
    parser.add_argument("--tables", type=int, default=TABLE_COUNT, help="Number of tables")
    parser.add_argument("--skip-seed", action="store_true", help="Do not insert simulation products")
    args = parser.parse_args()

    if not asyncio.run(preflight()):
        sys.exit(1)
    if not args.skip_seed:
        asyncio.run(seed_menu())

    summary = asyncio.run(run_simulation(table_count=args.tables))
    sys.exit(0 if summary["healthy"] else 1)
