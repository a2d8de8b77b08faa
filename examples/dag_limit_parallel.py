"""
DAG: Bounded Parallel Execution

A fan-out/fan-in DAG run by the DagScheduler with at most two nodes in
flight. Independent nodes at the same level run concurrently up to the
admission bound.

```text
                ┌── mul_2 (20) ──┐
     ┌─ fetch_a ┤                ├── cross (620) ──┐
     │   (10)   └── mul_3 (30) ──┘                 │
start┤                                             ├── final (770)
     │          ┌── square (25) ───────────────────┤
     └─ fetch_b ┤                                  │
         (5)    └── cube (125) ────────────────────┘
```

Expected: final = 770

Run with:
```bash
PYTHONPATH=src python examples/dag_limit_parallel.py
```
"""

import asyncio
import logging
import time

from pyconductor import DagScheduler, NodeContext, WorkNode


async def pause() -> None:
    await asyncio.sleep(0.05)


async def start(ctx: NodeContext) -> None:
    print("[L0] start")
    await pause()


async def fetch_a(ctx: NodeContext) -> int:
    await pause()
    return 10


async def fetch_b(ctx: NodeContext) -> int:
    await pause()
    return 5


def times(dep: str, factor: int):
    async def work(ctx: NodeContext) -> int:
        await pause()
        result = ctx.dependency_results[dep] * factor
        print(f"[{ctx.node_id}] {ctx.dependency_results[dep]} x {factor} = {result}")
        return result

    return work


def power(dep: str, exponent: int):
    async def work(ctx: NodeContext) -> int:
        await pause()
        return ctx.dependency_results[dep] ** exponent

    return work


async def cross(ctx: NodeContext) -> int:
    await pause()
    deps = ctx.dependency_results
    return deps["mul_2"] * deps["mul_3"] + deps["mul_2"]


async def final(ctx: NodeContext) -> int:
    await pause()
    return sum(ctx.dependency_results.values())


async def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    nodes = [
        WorkNode("start", start),
        WorkNode("fetch_a", fetch_a, depends_on=["start"]),
        WorkNode("fetch_b", fetch_b, depends_on=["start"]),
        WorkNode("mul_2", times("fetch_a", 2), depends_on=["fetch_a"]),
        WorkNode("mul_3", times("fetch_a", 3), depends_on=["fetch_a"]),
        WorkNode("square", power("fetch_b", 2), depends_on=["fetch_b"]),
        WorkNode("cube", power("fetch_b", 3), depends_on=["fetch_b"]),
        WorkNode("cross", cross, depends_on=["mul_2", "mul_3"]),
        WorkNode("final", final, depends_on=["cross", "square", "cube"]),
    ]

    scheduler = DagScheduler().with_max_concurrent(2).with_timeout(5_000)

    t0 = time.perf_counter()
    result = await scheduler.orchestrate(nodes)
    elapsed = (time.perf_counter() - t0) * 1000

    print(f"\nCompletion order: {' -> '.join(result.order)}")
    print(f"final = {result['final'].result} (expected 770)")
    print(f"elapsed: {elapsed:.0f}ms")


if __name__ == "__main__":
    asyncio.run(main())
