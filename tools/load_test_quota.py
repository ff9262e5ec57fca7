#!/usr/bin/env python3
"""
Concurrency probe for the per-email generation quota.

Fires N simultaneous generation requests for one email and reports how many
were accepted vs. rejected by the quota. With the default limit of 2 and a fresh
email, exactly 2 requests should succeed no matter how many are sent.

Usage:
  python tools/load_test_quota.py \
      --base-url http://localhost:3000 \
      --email test@tolkogroup.com \
      --concurrency 8
"""

import argparse
import asyncio
import time
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional

import aiohttp


@dataclass
class RequestResult:
    status: int
    duration_ms: float
    artifact_id: Optional[int] = None
    error: Optional[str] = None


async def fire(session: aiohttp.ClientSession, base_url: str, email: str, index: int) -> RequestResult:
    payload = {
        "nombre": f"Prueba {index}",
        "gustos": "los tacos",
        "profesion": "ingeniería",
        "email": email,
        "tono": "divertido",
        "puesto": "QA",
    }
    started = time.perf_counter()
    try:
        async with session.post(
            f"{base_url}/api/generar-calavera",
            json=payload,
            timeout=aiohttp.ClientTimeout(total=120)
        ) as response:
            body = await response.json(content_type=None)
            elapsed = (time.perf_counter() - started) * 1000
            if response.status == 201:
                return RequestResult(response.status, elapsed, artifact_id=body.get("id"))
            detail = body.get("detail") if isinstance(body, dict) else None
            error = detail.get("error") if isinstance(detail, dict) else str(body)[:200]
            return RequestResult(response.status, elapsed, error=error)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        elapsed = (time.perf_counter() - started) * 1000
        return RequestResult(0, elapsed, error=str(e))


async def run(base_url: str, email: str, concurrency: int) -> List[RequestResult]:
    async with aiohttp.ClientSession() as session:
        tasks = [fire(session, base_url, email, i) for i in range(concurrency)]
        return await asyncio.gather(*tasks)


def main():
    parser = argparse.ArgumentParser(description="Quota concurrency probe")
    parser.add_argument("--base-url", default="http://localhost:3000")
    parser.add_argument("--email", required=True)
    parser.add_argument("--concurrency", type=int, default=8)
    parser.add_argument("--limit", type=int, default=2, help="Expected generations per email")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    print("=" * 60)
    print(f"Quota probe: {args.concurrency} concurrent requests for {args.email}")
    print("=" * 60)

    results = asyncio.run(run(base_url, args.email, args.concurrency))

    statuses = Counter(r.status for r in results)
    for status, count in sorted(statuses.items()):
        print(f"  HTTP {status}: {count}")
    for r in results:
        if r.error and r.status not in (201, 429):
            print(f"  error ({r.status}): {r.error}")

    created = sorted(r.artifact_id for r in results if r.status == 201)
    slowest = max((r.duration_ms for r in results), default=0.0)
    print(f"Created IDs: {created}")
    print(f"Slowest request: {slowest:.0f} ms")

    if len(created) > args.limit:
        print(f"FAIL: {len(created)} generations accepted, limit is {args.limit}")
        raise SystemExit(1)
    print("OK: quota held")


if __name__ == "__main__":
    main()
