"""Example showing how to run a workflow file and follow its progress.

Usage:
    GITHUB_TOKEN=... python guides/run_workflow_example.py octocat hello-world https://hooks.example.org/report
"""

import asyncio
import sys
from pathlib import Path

from apiflow import DirectoryWorkflowSource, WorkflowEngine
from apiflow.config import load_config

GUIDES = Path(__file__).parent


def print_progress(progress):
    print(
        f"[{progress.status.value}] {progress.completed_steps}/{progress.total_steps} steps "
        f"({progress.progress_percent}%)"
    )


async def main():
    owner, repo, webhook_url = sys.argv[1:4]

    engine = WorkflowEngine(
        config=load_config(str(GUIDES / "config.example.yaml")),
        workflows=DirectoryWorkflowSource(GUIDES / "workflows"),
    )
    engine.add_progress_listener(print_progress)

    try:
        execution_id = await engine.start_execution(
            "github_repo_report",
            triggered_by="guide",
            parameters={"owner": owner, "repo": repo, "webhook_url": webhook_url},
        )
        record = await engine.wait_for_completion(execution_id)
    finally:
        await engine.shutdown()

    print(f"Execution {record.id} finished: {record.status.value}")
    for result in record.step_results:
        print(f"  {result.name}: {result.status.value} ({result.attempts} attempts)")
    if record.error:
        print(f"  error: {record.error.type}: {record.error.message}")


if __name__ == "__main__":
    asyncio.run(main())
