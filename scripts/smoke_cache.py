"""Smoke test against a running SemCache server.

Creates a project, issues a key and sends a prompt twice: the first call
should miss (provider answer), the second should hit the cache.

    SEMCACHE_URL=http://127.0.0.1:8000 ADMIN_TOKEN=... python scripts/smoke_cache.py
"""
import asyncio
import os
import sys

import httpx

BASE_URL = os.environ.get("SEMCACHE_URL", "http://127.0.0.1:8000")
MODEL = os.environ.get("SEMCACHE_MODEL", "gpt-4o-mini")


async def main() -> int:
    admin_token = os.environ.get("ADMIN_TOKEN")
    if not admin_token:
        print("[FAIL] ADMIN_TOKEN must be set")
        return 1

    async with httpx.AsyncClient(base_url=BASE_URL, timeout=60.0) as client:
        health = await client.get("/health")
        print(f"Health: {health.json()['status']}")

        admin = {"X-Admin-Token": admin_token}
        project = (await client.post("/v1/admin/projects", json={"name": "smoke"}, headers=admin)).json()
        key = (await client.post(f"/v1/admin/projects/{project['id']}/keys", headers=admin)).json()
        print(f"[OK] Project {project['id']} with key {key['prefix']}...")

        headers = {"Authorization": f"Bearer {key['api_key']}"}
        for prompt in ("What is machine learning?", "What is ML?"):
            response = await client.post(
                "/v1/cache/query",
                json={"prompt": prompt, "model": MODEL, "include_debug": True},
                headers=headers,
            )
            if response.status_code != 200:
                print(f"[FAIL] {response.status_code}: {response.text}")
                return 1
            data = response.json()
            print(
                f"{prompt!r}: cache_hit={data['cache_hit']} score={data['similarity_score']} "
                f"provider={data['llm_provider']} total={data['debug']['total_time_ms']}ms"
            )
            print(f"   remaining={response.headers.get('X-RateLimit-Remaining')}")

        usage = (await client.get(f"/v1/projects/{project['id']}/usage", headers=headers)).json()
        print(f"Usage: {usage}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
