"""
Plan with a question for the user, resumed from a SQLite checkpoint.

The first run stops in WAITING_FOR_INPUT because the `choose_branch`
tool raises InputRequired. The session is then resumed from its
checkpoint by a fresh AgentStateMachine, as a restarted process would,
and the plan finishes without repeating the completed `list_branches`
step.

Run with:
```bash
PYTHONPATH=src python examples/plan_waiting_for_input.py
```
"""

import asyncio
import logging
import tempfile
from pathlib import Path

from pyconductor import AgentStateMachine, InputRequired, Plan, PlanRunner, PlanStep
from pyconductor.storage import SqliteCheckpointStorage

answers: list[str] = []


async def list_branches(repo: str) -> str:
    print(f"  listing branches of {repo}")
    await asyncio.sleep(0.01)
    return "main, develop, release/1.0"


async def choose_branch(question: str) -> str:
    if not answers:
        raise InputRequired(question)
    return answers[-1]


def build_plan() -> Plan:
    return Plan(
        goal="summarize a branch",
        steps=[
            PlanStep("list", "list branches", "list_branches", {"repo": "pyconductor"}),
            PlanStep(
                "choose",
                "ask which branch",
                "choose_branch",
                {"question": "Which branch should I summarize?"},
                depends_on=("list",),
            ),
        ],
    )


async def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    tools = {"list_branches": list_branches, "choose_branch": choose_branch}
    plan = build_plan()

    with tempfile.TemporaryDirectory() as tmp:
        storage = SqliteCheckpointStorage(str(Path(tmp) / "checkpoints.db"))
        await storage.connect()
        try:
            machine = AgentStateMachine(storage=storage)
            first = await PlanRunner(machine, tools=tools).run(plan)
            print(f"\nstatus: {first.status}, prompt: {first.prompt!r}")
            print(f"checkpoint: {first.checkpoint_id}")

            # A new process would only know the checkpoint id
            resumed = await AgentStateMachine.resume(storage, first.checkpoint_id)
            print(f"resumed session {resumed.session_id} in {resumed.status}")

            answers.append("develop")
            await resumed.input_received("develop")
            second = await PlanRunner(resumed, tools=tools).run(plan)
            print(f"\nstatus: {second.status}")
            for step_id, output in second.outputs.items():
                print(f"  {step_id}: {output}")
        finally:
            await storage.close()


if __name__ == "__main__":
    asyncio.run(main())
