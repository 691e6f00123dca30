#!/usr/bin/env python3
"""
Seed brands, plans and activation keys from a JSON file.

File layout:
  {"brands": [
     {"name": "Vision", "description": "...",
      "plans": [{"name": "1 Month", "price": 299}],
      "keys": {"1 Month": ["AAAA-BBBB", "CCCC-DDDD"]}}
  ]}

Re-running with the same file is harmless: existing brands and plans are
reused, keys already in the store are skipped.

Usage:
  DATABASE_URL=sqlite:///./keyshop.db python init_catalog.py catalog.json
"""
import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict

from sqlalchemy import select

from keyshop.infra.sql import GatedAsyncSession, make_async_engine
from keyshop.model import catalog, keys
from keyshop.model.db import Base, Brand, Key


async def seed_catalog(db: GatedAsyncSession,
                       data: Dict[str, Any]) -> Dict[str, int]:
    counts = {"brands": 0, "plans": 0, "keys": 0, "skipped_keys": 0}
    async with db.transaction() as s:
        for b in data.get("brands", []):
            brand = (await s.execute(
                select(Brand).where(Brand.name == b["name"])
            )).scalar_one_or_none()
            if brand is None:
                brand = await catalog.add_brand(s, b["name"],
                                                b.get("description"))
                counts["brands"] += 1

            for p in b.get("plans", []):
                if catalog.plan_price(brand, p["name"]) is None:
                    await catalog.add_plan(s, brand.id, p["name"],
                                           float(p["price"]))
                    counts["plans"] += 1

            for plan, values in (b.get("keys") or {}).items():
                values = [v.strip() for v in values if v and v.strip()]
                known = set((await s.execute(
                    select(Key.key_value).where(Key.key_value.in_(values))
                )).scalars()) if values else set()
                fresh = list(dict.fromkeys(v for v in values
                                           if v not in known))
                counts["skipped_keys"] += len(values) - len(fresh)
                if fresh:
                    await keys.add_keys(s, brand.id, plan, fresh)
                    counts["keys"] += len(fresh)
    return counts


async def main(path: str, url: str) -> None:
    with open(path) as f:
        data = json.load(f)

    database = make_async_engine(url)
    try:
        async with database.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with database.sessionmaker() as session:
            counts = await seed_catalog(
                GatedAsyncSession(session=session, gated=database.gated),
                data,
            )
    finally:
        await database.dispose()

    print(f"✅ brands created: {counts['brands']}")
    print(f"✅ plans created:  {counts['plans']}")
    print(f"✅ keys added:     {counts['keys']} "
          f"(skipped {counts['skipped_keys']} already present)")


if __name__ == '__main__':
    ap = argparse.ArgumentParser(description="KeyShop catalog seeder")
    ap.add_argument("catalog", help="JSON file with brands, plans and keys")
    ap.add_argument("--database-url", default=os.getenv("DATABASE_URL"),
                    help="defaults to $DATABASE_URL")
    args = ap.parse_args()

    if not args.database_url:
        print("NEED DATABASE_URL! e.g. sqlite:///./keyshop.db")
        sys.exit(1)

    asyncio.run(main(args.catalog, args.database_url))
