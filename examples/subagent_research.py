"""
Sub-agents: research fan-out, then a writer that sees every result.

Three researcher tasks run in parallel (max 2 at a time); the writer
depends on all of them and receives their outputs in
``options["context"]``. One researcher is flaky and recovers through the
RecoveryPolicy.

Run with:
```bash
PYTHONPATH=src python examples/subagent_research.py
```
"""

import asyncio
import logging

from pyconductor import (
    ChatResponse,
    RecoveryConfig,
    RecoveryPolicy,
    SubAgentConfig,
    SubAgentManager,
    SubAgentManagerConfig,
    SubAgentTask,
    TokenUsage,
)


class CannedAgent:
    """Stands in for an LLM-backed agent."""

    def __init__(self, config: SubAgentConfig):
        self.config = config
        self.calls = 0

    async def chat(self, input: str, options: dict) -> ChatResponse:
        self.calls += 1
        await asyncio.sleep(0.05)
        if self.config.metadata.get("flaky") and self.calls == 1:
            raise ConnectionError("connection reset by peer")
        context = options.get("context") or {}
        text = f"[{self.config.name}] {input}"
        if context:
            text += f" using {sorted(context)}"
        return ChatResponse(content=text, usage=TokenUsage(10, 20, 30))


async def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    manager = SubAgentManager(
        CannedAgent,
        SubAgentManagerConfig(max_concurrent=2, default_timeout_ms=5_000),
        recovery=RecoveryPolicy(RecoveryConfig.API, name="subagents"),
        on_complete=lambda result: print(f"  done: {result.task_id} ({result.status})"),
    )
    manager.register(SubAgentConfig(id="docs", name="Docs researcher"))
    manager.register(SubAgentConfig(id="code", name="Code researcher", metadata={"flaky": True}))
    manager.register(SubAgentConfig(id="issues", name="Issue researcher"))
    manager.register(SubAgentConfig(id="writer", name="Writer"))

    results = await manager.orchestrate(
        [
            SubAgentTask("docs", "read the docs", task_id="docs"),
            SubAgentTask("code", "read the code", task_id="code"),
            SubAgentTask("issues", "read open issues", task_id="issues"),
            SubAgentTask(
                "writer",
                "write the overview",
                task_id="overview",
                depends_on=("docs", "code", "issues"),
            ),
        ]
    )

    print()
    for result in results:
        print(f"{result.task_id:>8}: {result.output}")


if __name__ == "__main__":
    asyncio.run(main())
