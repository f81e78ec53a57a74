#!/usr/bin/env python3
"""
Clawbox Controller

Responsibilities:
- Trigger the bootstrap (ensure the gateway is running) on demand
- Gateway restart
- Device pairing (list / approve / approve all) via the gateway CLI
- Auth provider management (credential profiles in auth-profiles.json)
- Backup storage status and manual sync

Run with: uvicorn main:app --host 0.0.0.0 --port 8080
"""

import asyncio
import json
import os
import re
import secrets
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import docker
import uvicorn
from docker.errors import DockerException
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel

import backup
import config_patch
from bootstrap import gateway_listening
from gateway_lock import LockAcquisitionError
from scrub import scrub, scrub_dict

# Configuration from environment
CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/root/.openclaw"))
BACKUP_DIR = Path(os.environ.get("BACKUP_DIR", "/data/openclaw"))
WORKSPACE_DIR = Path(os.environ.get("WORKSPACE_DIR", "/root/clawd"))
SKILLS_DIR = Path(os.environ.get("SKILLS_DIR", "/root/clawd/skills"))
AUDIT_LOG = Path(os.environ.get("AUDIT_LOG", "/srv/audit/audit.jsonl"))
INSTANCE_NAME = os.environ.get("INSTANCE_NAME", "default")
GATEWAY_CONTAINER = os.environ.get("GATEWAY_CONTAINER", f"clawbox-{INSTANCE_NAME}-sandbox")
GATEWAY_HOST = os.environ.get("GATEWAY_HOST", "127.0.0.1")
GATEWAY_PORT = int(os.environ.get("GATEWAY_PORT", "18789"))
CONTROLLER_API_TOKEN = os.environ.get("CONTROLLER_API_TOKEN", "")
BOOTSTRAP_COMMAND = os.environ.get("BOOTSTRAP_COMMAND", "clawbox-start").split()

# Maximum time to wait for the gateway to start listening (3 minutes)
STARTUP_TIMEOUT = int(os.environ.get("STARTUP_TIMEOUT", "180"))
# CLI commands can take 10-15 seconds due to WebSocket connection overhead
CLI_TIMEOUT = 20
SYNC_TIMEOUT = 30
# bootstrap.main() exit code for a lock held by another bootstrap or gateway
BOOTSTRAP_LOCK_EXIT = 1

CONFIG_PATH = CONFIG_DIR / backup.CONFIG_FILENAME
AUTH_PROFILES_PATH = CONFIG_DIR / "agents" / "main" / "agent" / "auth-profiles.json"

# Local mode: GATEWAY_CONTAINER=local means the gateway runs next to the controller
IS_LOCAL_MODE = GATEWAY_CONTAINER == "local"

_REQUEST_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_PROFILE_ID_RE = re.compile(r"^[a-zA-Z0-9_:-]+$")

app = FastAPI(title="Clawbox Controller", version="1.0.0")

# Serializes bootstrap triggers from this controller; the bootstrap lock covers the rest
_bootstrap_lock = asyncio.Lock()


@app.on_event("startup")
async def log_startup():
    """Log controller startup."""
    audit_log("controller_started", {"version": app.version, "local_mode": IS_LOCAL_MODE})


# ============================================================
# Authentication
# ============================================================

def verify_token(token: str) -> bool:
    """Verify the API token."""
    if not CONTROLLER_API_TOKEN:
        return True  # No token configured = no auth required
    return secrets.compare_digest(token, CONTROLLER_API_TOKEN)


def check_auth(token: Optional[str] = None, auth_header: Optional[str] = None) -> bool:
    """
    Check if request is authenticated.

    Accepts:
    - ?token=... query parameter
    - Authorization: Bearer ... header
    """
    if not CONTROLLER_API_TOKEN:
        return True

    if token and verify_token(token):
        return True

    if auth_header and auth_header.startswith("Bearer "):
        if verify_token(auth_header[7:]):
            return True

    return False


# ============================================================
# Audit Logging
# ============================================================

def audit_log(event: str, details: dict):
    """Append an event to the audit log."""
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        **scrub_dict(details),
    }
    AUDIT_LOG.parent.mkdir(parents=True, exist_ok=True)
    with open(AUDIT_LOG, "a") as f:
        f.write(json.dumps(entry) + "\n")
    print(f"[audit] {event}: {entry}", flush=True)


# ============================================================
# Gateway process control
# ============================================================

def run_gateway_command(cmd: list[str], timeout: int = CLI_TIMEOUT) -> tuple[bool, str]:
    """Run a command next to the gateway (subprocess in local mode, docker exec otherwise)."""
    try:
        if IS_LOCAL_MODE:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
            return result.returncode == 0, result.stdout + result.stderr
        client = docker.from_env()
        sandbox = client.containers.get(GATEWAY_CONTAINER)
        exit_code, output = sandbox.exec_run(cmd, demux=False)
        return exit_code == 0, output.decode(errors="replace") if output else ""
    except subprocess.TimeoutExpired:
        return False, f"Command timed out after {timeout}s"
    except (OSError, DockerException) as e:
        return False, str(e)


def start_bootstrap() -> Callable[[], Optional[int]]:
    """Start the bootstrap entrypoint detached; it becomes the gateway process.

    Returns a poll function giving the bootstrap's exit code, or None while
    it (or the gateway it exec'd into) is still running.
    """
    if IS_LOCAL_MODE:
        proc = subprocess.Popen(
            BOOTSTRAP_COMMAND,
            stdin=subprocess.DEVNULL,
            stdout=sys.stdout,
            stderr=sys.stderr,
            start_new_session=True,
        )
        return proc.poll

    client = docker.from_env()
    sandbox = client.containers.get(GATEWAY_CONTAINER)
    exec_id = client.api.exec_create(sandbox.id, BOOTSTRAP_COMMAND)["Id"]
    client.api.exec_start(exec_id, detach=True)

    def poll() -> Optional[int]:
        info = client.api.exec_inspect(exec_id)
        return None if info.get("Running") else info.get("ExitCode")

    return poll


def check_bootstrap_exit(code: int) -> str:
    """Map a finished bootstrap's exit code to an ensure outcome, raising on failure."""
    if code == 0 and is_gateway_running():
        # Its own probe found the gateway listening
        return "running"
    if code == BOOTSTRAP_LOCK_EXIT:
        raise LockAcquisitionError("Bootstrap lock is held by another bootstrap or gateway process")
    raise RuntimeError(f"Bootstrap exited with code {code} before the gateway started listening")


def is_gateway_running() -> bool:
    return gateway_listening(GATEWAY_HOST, GATEWAY_PORT, timeout=2.0)


async def ensure_gateway(timeout: int = STARTUP_TIMEOUT) -> str:
    """Make sure the gateway is listening. Returns "running" or "started".

    Raises LockAcquisitionError if the bootstrap exits on a held lock,
    RuntimeError if it exits any other way before the gateway listens, and
    TimeoutError if the gateway does not come up within timeout seconds.
    """
    if is_gateway_running():
        return "running"

    async with _bootstrap_lock:
        if is_gateway_running():
            return "running"
        audit_log("gateway_bootstrap_started", {"container": GATEWAY_CONTAINER})
        poll_bootstrap = await asyncio.to_thread(start_bootstrap)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if await asyncio.to_thread(is_gateway_running):
                audit_log("gateway_bootstrap_ready", {"container": GATEWAY_CONTAINER})
                return "started"
            code = await asyncio.to_thread(poll_bootstrap)
            if code is not None:
                audit_log("gateway_bootstrap_exited", {"exitCode": code})
                return await asyncio.to_thread(check_bootstrap_exit, code)
            await asyncio.sleep(1)

    audit_log("gateway_bootstrap_timeout", {"timeout": timeout})
    raise TimeoutError(f"Gateway did not start listening on port {GATEWAY_PORT} within {timeout}s")


def kill_gateway() -> bool:
    """Kill the running gateway process. Returns True if one was found."""
    success, _ = run_gateway_command(["pkill", "-f", "openclaw gateway"], timeout=10)
    return success


async def restart_gateway_in_background():
    try:
        await ensure_gateway()
    except (RuntimeError, OSError, DockerException) as e:
        audit_log("gateway_restart_error", {"error": str(e)})


async def restart_gateway() -> bool:
    """Kill the gateway and give it a moment to die. The caller schedules the new start."""
    killed = await asyncio.to_thread(kill_gateway)
    if killed:
        await asyncio.sleep(2)
    audit_log("gateway_killed", {"found": killed})
    return killed


def extract_json(output: str) -> Optional[dict]:
    """Find the JSON object in CLI output that may contain other log lines."""
    match = re.search(r"\{[\s\S]*\}", output)
    if not match:
        return None
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError:
        return None


def gateway_cli(*args: str) -> list[str]:
    return ["openclaw", *args, "--url", f"ws://localhost:{GATEWAY_PORT}"]


async def _ensure_or_raise() -> str:
    try:
        return await ensure_gateway()
    except TimeoutError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except LockAcquisitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (RuntimeError, OSError, DockerException) as e:
        raise HTTPException(status_code=500, detail=f"Failed to start gateway: {e}")


# ============================================================
# Public endpoints
# ============================================================

@app.get("/health")
async def health():
    return {"status": "ok", "service": "clawbox", "gateway_port": GATEWAY_PORT}


@app.get("/api/status")
async def status():
    """Public gateway status (no auth required)."""
    if await asyncio.to_thread(is_gateway_running):
        return {"ok": True, "status": "running"}
    return {"ok": False, "status": "not_running"}


# ============================================================
# Gateway lifecycle
# ============================================================

@app.post("/api/admin/gateway/ensure")
async def gateway_ensure_endpoint(
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    """Start the gateway if it is not running and wait until it listens."""
    if not check_auth(token, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")

    result = await _ensure_or_raise()
    return {"status": result, "gateway_port": GATEWAY_PORT}


@app.post("/api/admin/gateway/restart")
async def gateway_restart_endpoint(
    background_tasks: BackgroundTasks,
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    """Kill the current gateway and start a new one in the background."""
    if not check_auth(token, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")

    audit_log("gateway_restart_requested", {"source": "api"})
    killed = await restart_gateway()
    background_tasks.add_task(restart_gateway_in_background)

    return {
        "success": True,
        "message": (
            "Gateway process killed, new instance starting..."
            if killed
            else "No existing process found, starting new instance..."
        ),
    }


# ============================================================
# Device pairing
# ============================================================

@app.get("/api/admin/devices")
async def devices_list(
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    """List pending and paired devices."""
    if not check_auth(token, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")

    await _ensure_or_raise()
    success, output = await asyncio.to_thread(run_gateway_command, gateway_cli("devices", "list", "--json"))
    data = extract_json(output)
    if data is not None:
        return data
    return {"pending": [], "paired": [], "raw": scrub(output[-3000:]), "success": success}


def approve_device(request_id: str) -> tuple[bool, str]:
    success, output = run_gateway_command(gateway_cli("devices", "approve", request_id))
    return success or "approved" in output.lower(), output


@app.post("/api/admin/devices/approve-all")
async def devices_approve_all(
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    """Approve every pending device."""
    if not check_auth(token, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")

    await _ensure_or_raise()
    _, output = await asyncio.to_thread(run_gateway_command, gateway_cli("devices", "list", "--json"))
    data = extract_json(output)
    if data is None:
        raise HTTPException(status_code=500, detail="Failed to parse device list")

    pending = data.get("pending") or []
    if not pending:
        return {"approved": [], "failed": [], "message": "No pending devices to approve"}

    approved, failed = [], []
    for device in pending:
        request_id = str(device.get("requestId", ""))
        if not _REQUEST_ID_RE.match(request_id):
            failed.append({"requestId": request_id, "success": False, "error": "Invalid requestId format"})
            continue
        success, output = await asyncio.to_thread(approve_device, request_id)
        if success:
            approved.append(request_id)
        else:
            failed.append({"requestId": request_id, "success": False, "error": scrub(output[-500:])})

    audit_log("devices_approve_all", {"approved": approved, "failed": len(failed)})
    return {
        "approved": approved,
        "failed": failed,
        "message": f"Approved {len(approved)} of {len(pending)} device(s)",
    }


@app.post("/api/admin/devices/{request_id}/approve")
async def devices_approve(
    request_id: str,
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    """Approve a pending device pairing request."""
    if not check_auth(token, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")

    if not _REQUEST_ID_RE.match(request_id):
        raise HTTPException(status_code=400, detail="Invalid requestId format")

    await _ensure_or_raise()
    success, output = await asyncio.to_thread(approve_device, request_id)
    audit_log("device_approve", {"requestId": request_id, "success": success})

    return {
        "success": success,
        "requestId": request_id,
        "message": "Device approved" if success else "Approval may have failed",
        "output": scrub(output[-3000:]),
    }


# ============================================================
# Auth providers
# ============================================================

class SetupTokenRequest(BaseModel):
    provider: str = "anthropic"
    token: str


def list_providers() -> list[dict]:
    """Credential profiles with a short preview of their secret."""
    profiles = config_patch.load_json(AUTH_PROFILES_PATH).get("profiles") or {}
    providers = []
    for profile_id, profile in profiles.items():
        if not isinstance(profile, dict):
            continue
        secret = profile.get("token") or profile.get("key") or profile.get("access") or ""
        entry = {
            "id": profile_id,
            "provider": profile.get("provider", "unknown"),
            "type": profile.get("type", "unknown"),
            "configured": True,
        }
        if secret:
            entry["tokenPreview"] = f"...{secret[-4:]}"
        providers.append(entry)
    return providers


def save_setup_token(provider: str, token: str):
    """Store a token profile (overwriting any previous one) and point the config at it."""
    profiles = config_patch.load_json(AUTH_PROFILES_PATH)
    profiles.setdefault("profiles", {})[config_patch.profile_id_for(provider)] = {
        "type": "token",
        "provider": provider,
        "token": token.strip(),
    }
    config_patch.write_json(AUTH_PROFILES_PATH, profiles)

    config = config_patch.register_token_profile(config_patch.load_json(CONFIG_PATH), provider)
    if provider == "anthropic":
        # Route requests through the new token
        agents = config.setdefault("agents", {})
        agents.setdefault("defaults", {})["model"] = {"primary": "anthropic/claude-sonnet-4-5"}
    config_patch.write_json(CONFIG_PATH, config)


def delete_provider(profile_id: str) -> bool:
    """Remove a credential profile. Returns False if it does not exist."""
    profiles = config_patch.load_json(AUTH_PROFILES_PATH)
    profile_map = profiles.get("profiles") or {}
    if profile_id not in profile_map:
        return False
    del profile_map[profile_id]
    profiles["profiles"] = profile_map
    config_patch.write_json(AUTH_PROFILES_PATH, profiles)

    if CONFIG_PATH.exists():
        config = config_patch.unregister_token_profile(config_patch.load_json(CONFIG_PATH), profile_id)
        config_patch.write_json(CONFIG_PATH, config)
    return True


@app.get("/api/admin/auth/providers")
async def auth_providers_list(
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    """List configured auth providers."""
    if not check_auth(token, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")

    return {"providers": list_providers()}


@app.post("/api/admin/auth/setup-token")
async def auth_setup_token(
    request: SetupTokenRequest,
    background_tasks: BackgroundTasks,
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    """Save a setup token for a provider and restart the gateway."""
    if not check_auth(token, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")

    if not request.token.strip():
        raise HTTPException(status_code=400, detail="Token is required")
    if not _PROFILE_ID_RE.match(request.provider):
        raise HTTPException(status_code=400, detail="Invalid provider format")

    try:
        save_setup_token(request.provider, request.token)
    except OSError as e:
        audit_log("auth_setup_token_error", {"provider": request.provider, "error": str(e)})
        raise HTTPException(status_code=500, detail=str(e))

    audit_log("auth_setup_token_saved", {"provider": request.provider})
    await restart_gateway()
    background_tasks.add_task(restart_gateway_in_background)

    return {
        "success": True,
        "message": f"Setup token saved for {request.provider}. Gateway is restarting...",
    }


@app.delete("/api/admin/auth/providers/{profile_id}")
async def auth_provider_delete(
    profile_id: str,
    background_tasks: BackgroundTasks,
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    """Remove an auth provider profile and restart the gateway."""
    if not check_auth(token, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")

    if not _PROFILE_ID_RE.match(profile_id):
        raise HTTPException(status_code=400, detail="Invalid profileId format")

    if not delete_provider(profile_id):
        raise HTTPException(status_code=404, detail=f'Profile "{profile_id}" not found')

    audit_log("auth_provider_deleted", {"profileId": profile_id})
    await restart_gateway()
    background_tasks.add_task(restart_gateway_in_background)

    return {"success": True, "message": f'Provider "{profile_id}" removed. Gateway is restarting...'}


# ============================================================
# Backup storage
# ============================================================

@app.get("/api/admin/storage")
async def storage_status(
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    """Backup storage status and last sync time."""
    if not check_auth(token, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")

    return backup.backup_status(BACKUP_DIR)


@app.post("/api/admin/storage/sync")
async def storage_sync(
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    """Trigger a manual sync of local state to the backup store."""
    if not check_auth(token, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")

    result = await asyncio.to_thread(
        backup.sync_to_backup, BACKUP_DIR, CONFIG_DIR, WORKSPACE_DIR, SKILLS_DIR, SYNC_TIMEOUT
    )
    audit_log("storage_sync", result.to_dict())

    if not result.success:
        status_code = 400 if "not configured" in (result.error or "") else 500
        raise HTTPException(status_code=status_code, detail=result.to_dict())

    return {"success": True, "message": "Sync completed successfully", "lastSync": result.last_sync}


def serve():
    """Run the controller with uvicorn."""
    uvicorn.run(app, host=os.environ.get("CONTROLLER_HOST", "0.0.0.0"), port=int(os.environ.get("CONTROLLER_PORT", "8080")))


if __name__ == "__main__":
    serve()
