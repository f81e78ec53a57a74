"""
Clawbox Temporal Worker

Timer-side triggers for the gateway: a watchdog that re-runs ensure-running
(a crashed gateway stops answering the liveness probe, so the next tick
bootstraps it again) and a periodic backup sync. Both go through the
controller's admin API.

Env vars:
  TEMPORAL_HOST        - Temporal gRPC address (default: 127.0.0.1:7233)
  CONTROLLER_URL       - Controller base URL (default: http://127.0.0.1:8080)
  CONTROLLER_API_TOKEN - Admin token for the controller
  INSTANCE_NAME        - Sandbox instance name
"""

import asyncio
import os
from datetime import timedelta
from pathlib import Path

from temporalio import activity, workflow
from temporalio.client import Client
from temporalio.common import RetryPolicy
from temporalio.worker import Worker

with workflow.unsafe.imports_passed_through():
    import httpx

TEMPORAL_HOST = os.environ.get("TEMPORAL_HOST", "127.0.0.1:7233")
CONTROLLER_URL = os.environ.get("CONTROLLER_URL", "http://127.0.0.1:8080")
CONTROLLER_API_TOKEN = os.environ.get("CONTROLLER_API_TOKEN", "")
INSTANCE_NAME = os.environ.get("INSTANCE_NAME", "default")
TASK_QUEUE = "clawbox"
KILLSWITCH_FILE = Path(f"/tmp/clawbox-watchdog/KILLSWITCH_{INSTANCE_NAME}")

# Cold bootstrap waits up to 3 minutes for the gateway port
ENSURE_TIMEOUT = 200
SYNC_TIMEOUT = 60


def _killswitch_active() -> bool:
    return KILLSWITCH_FILE.exists()


def controller_client(timeout: float) -> httpx.AsyncClient:
    headers = {}
    if CONTROLLER_API_TOKEN:
        headers["Authorization"] = f"Bearer {CONTROLLER_API_TOKEN}"
    return httpx.AsyncClient(base_url=CONTROLLER_URL, headers=headers, timeout=timeout)


@activity.defn
async def ensure_gateway() -> str:
    """Ask the controller to make sure the gateway is running."""
    if _killswitch_active():
        return f"Killswitch active for {INSTANCE_NAME}, not touching the gateway"

    async with controller_client(ENSURE_TIMEOUT) as client:
        resp = await client.post("/api/admin/gateway/ensure")
        resp.raise_for_status()
        return resp.json().get("status", "unknown")


@activity.defn
async def sync_backup() -> str:
    """Ask the controller to mirror local state into the backup store."""
    async with controller_client(SYNC_TIMEOUT) as client:
        resp = await client.post("/api/admin/storage/sync")
        resp.raise_for_status()
        return resp.json().get("lastSync", "")


@workflow.defn
class GatewayWatchdogWorkflow:
    """Re-invokes ensure-running; retries are left to the retry policy and the next schedule tick."""

    @workflow.run
    async def run(self) -> str:
        result = await workflow.execute_activity(
            ensure_gateway,
            start_to_close_timeout=timedelta(seconds=ENSURE_TIMEOUT + 10),
            retry_policy=RetryPolicy(
                initial_interval=timedelta(seconds=10),
                maximum_interval=timedelta(minutes=1),
                maximum_attempts=3,
            ),
        )
        workflow.logger.info(f"Gateway watchdog: {result}")
        return result


@workflow.defn
class BackupSyncWorkflow:
    """Periodic sync of local state to the backup store."""

    @workflow.run
    async def run(self) -> str:
        last_sync = await workflow.execute_activity(
            sync_backup,
            start_to_close_timeout=timedelta(seconds=SYNC_TIMEOUT + 10),
            retry_policy=RetryPolicy(
                initial_interval=timedelta(seconds=30),
                maximum_attempts=2,
            ),
        )
        workflow.logger.info(f"Backup synced at {last_sync}")
        return last_sync


async def main():
    client = await Client.connect(TEMPORAL_HOST)
    worker = Worker(
        client,
        task_queue=TASK_QUEUE,
        workflows=[GatewayWatchdogWorkflow, BackupSyncWorkflow],
        activities=[ensure_gateway, sync_backup],
    )
    print(f"[temporal-worker] Starting on {TEMPORAL_HOST}, queue={TASK_QUEUE}, controller={CONTROLLER_URL}")
    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
