"""
One-time Temporal schedule setup for Clawbox.

Run after deployment to create the gateway watchdog and backup sync schedules:
    python3 temporal_schedules.py

Env vars:
  TEMPORAL_HOST - Temporal gRPC address (default: 127.0.0.1:7233)
  INSTANCE_NAME - Sandbox instance name, used in schedule ids
"""

import asyncio
import os
from datetime import timedelta

from temporalio.client import (
    Client,
    Schedule,
    ScheduleActionStartWorkflow,
    ScheduleIntervalSpec,
    ScheduleSpec,
)
from temporalio.service import RPCError

from temporal_worker import TASK_QUEUE, BackupSyncWorkflow, GatewayWatchdogWorkflow

TEMPORAL_HOST = os.environ.get("TEMPORAL_HOST", "127.0.0.1:7233")
INSTANCE_NAME = os.environ.get("INSTANCE_NAME", "default")

SCHEDULES = [
    (f"gateway-watchdog-{INSTANCE_NAME}", GatewayWatchdogWorkflow.run, timedelta(minutes=5)),
    (f"backup-sync-{INSTANCE_NAME}", BackupSyncWorkflow.run, timedelta(minutes=5)),
]


async def ensure_schedule(client: Client, schedule_id: str, workflow_run, every: timedelta) -> bool:
    """Create an interval schedule unless it already exists. Returns True if created."""
    try:
        desc = await client.get_schedule_handle(schedule_id).describe()
        print(f"Schedule '{schedule_id}' already exists (next run: {desc.info.next_action_times})")
        return False
    except RPCError:
        pass  # Schedule doesn't exist yet

    await client.create_schedule(
        schedule_id,
        Schedule(
            action=ScheduleActionStartWorkflow(
                workflow_run,
                id=schedule_id,
                task_queue=TASK_QUEUE,
            ),
            spec=ScheduleSpec(intervals=[ScheduleIntervalSpec(every=every)]),
        ),
    )
    print(f"Schedule '{schedule_id}' created (every {every})")
    return True


async def main():
    client = await Client.connect(TEMPORAL_HOST)
    for schedule_id, workflow_run, every in SCHEDULES:
        await ensure_schedule(client, schedule_id, workflow_run, every)
    print("View in Temporal UI → Schedules tab")


if __name__ == "__main__":
    asyncio.run(main())
