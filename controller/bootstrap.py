#!/usr/bin/env python3
"""
Clawbox Bootstrap - OpenClaw gateway entrypoint for the sandbox container

Makes "the gateway is running with up-to-date config" idempotent under
concurrent callers:

  1. exit at once if something already listens on the gateway port
  2. take the bootstrap lock (recovering a stale one once, never waiting)
  3. restore config/workspace/skills from the backup store if it is newer
  4. run `openclaw onboard` if no config exists yet
  5. patch the config from environment variables (every boot)
  6. inject a one-time setup token if none is stored
  7. release the lock and exec the gateway in place of this process

Run with: clawbox-start  (or python3 bootstrap.py)
Exit codes: 0 already running, 1 lock not acquired. On success the process
becomes the gateway and its exit code is the gateway's.
"""

import os
import socket
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional

import backup
import config_patch
from gateway_lock import GatewayLock, LockAcquisitionError
from scrub import scrub_command

ALREADY_RUNNING = "already_running"
STARTED = "started"

GATEWAY_BINARY = "openclaw"


def _env_path(name: str, default: str) -> Callable[[], Path]:
    return lambda: Path(os.environ.get(name, default))


@dataclass
class BootstrapSettings:
    """Paths, port and timeouts for one bootstrap run."""

    config_dir: Path = field(default_factory=_env_path("CONFIG_DIR", "/root/.openclaw"))
    backup_dir: Path = field(default_factory=_env_path("BACKUP_DIR", "/data/openclaw"))
    workspace_dir: Path = field(default_factory=_env_path("WORKSPACE_DIR", "/root/clawd"))
    skills_dir: Path = field(default_factory=_env_path("SKILLS_DIR", "/root/clawd/skills"))
    lock_path: Path = field(default_factory=_env_path("LOCK_PATH", "/tmp/start-openclaw.lock"))
    gateway_host: str = field(default_factory=lambda: os.environ.get("GATEWAY_HOST", "127.0.0.1"))
    gateway_port: int = field(default_factory=lambda: int(os.environ.get("GATEWAY_PORT", "18789")))
    probe_timeout: float = 2.0
    restore_timeout: int = field(default_factory=lambda: int(os.environ.get("RESTORE_TIMEOUT", "60")))
    onboard_timeout: int = field(default_factory=lambda: int(os.environ.get("ONBOARD_TIMEOUT", "120")))

    @classmethod
    def from_env(cls) -> "BootstrapSettings":
        return cls()

    @property
    def config_file(self) -> Path:
        return self.config_dir / backup.CONFIG_FILENAME

    @property
    def auth_profiles_file(self) -> Path:
        return self.config_dir / "agents" / "main" / "agent" / "auth-profiles.json"

    @property
    def gateway_lock_files(self) -> list[Path]:
        """Lock files the gateway itself leaves behind when killed."""
        return [Path("/tmp/openclaw-gateway.lock"), self.config_dir / "gateway.lock"]


def log(message: str):
    print(f"[bootstrap] {message}", flush=True)


def warn(message: str):
    print(f"[bootstrap] WARNING: {message}", file=sys.stderr, flush=True)


def gateway_listening(host: str, port: int, timeout: float = 2.0) -> bool:
    """True if something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


# ============================================================
# Onboarding
# ============================================================

def onboard_auth_args(env: Mapping[str, str]) -> list[str]:
    """Pick onboarding credentials: AI Gateway > Anthropic > OpenAI > none."""
    gw_key = env.get("CLOUDFLARE_AI_GATEWAY_API_KEY")
    gw_account = env.get("CF_AI_GATEWAY_ACCOUNT_ID")
    gw_id = env.get("CF_AI_GATEWAY_GATEWAY_ID")
    if gw_key and gw_account and gw_id:
        return [
            "--auth-choice", "cloudflare-ai-gateway-api-key",
            "--cloudflare-ai-gateway-account-id", gw_account,
            "--cloudflare-ai-gateway-gateway-id", gw_id,
            "--cloudflare-ai-gateway-api-key", gw_key,
        ]
    if env.get("ANTHROPIC_API_KEY"):
        return ["--auth-choice", "apiKey", "--anthropic-api-key", env["ANTHROPIC_API_KEY"]]
    if env.get("OPENAI_API_KEY"):
        return ["--auth-choice", "openai-api-key", "--openai-api-key", env["OPENAI_API_KEY"]]
    return []


def onboard_command(env: Mapping[str, str], port: int) -> list[str]:
    return [
        GATEWAY_BINARY, "onboard", "--non-interactive", "--accept-risk",
        "--mode", "local",
        *onboard_auth_args(env),
        "--gateway-port", str(port),
        "--gateway-bind", "lan",
        "--skip-channels",
        "--skip-skills",
        "--skip-health",
    ]


def run_onboard(settings: BootstrapSettings, env: Mapping[str, str]) -> bool:
    """Run the one-time non-interactive onboarding. Failures are warnings."""
    cmd = onboard_command(env, settings.gateway_port)
    log(f"No existing config found, running: {scrub_command(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=settings.onboard_timeout)
    except subprocess.TimeoutExpired:
        warn(f"Onboarding timed out after {settings.onboard_timeout}s")
        return False
    except OSError as e:
        warn(f"Onboarding could not run: {e}")
        return False
    if result.returncode != 0:
        warn(f"Onboarding exited with code {result.returncode}: {result.stderr.strip()[-500:]}")
        return False
    log("Onboard completed")
    return True


# ============================================================
# Launch
# ============================================================

def gateway_command(env: Mapping[str, str], port: int) -> list[str]:
    cmd = [
        GATEWAY_BINARY, "gateway",
        "--port", str(port),
        "--verbose",
        "--allow-unconfigured",
        "--bind", "lan",
    ]
    token = env.get("OPENCLAW_GATEWAY_TOKEN")
    if token:
        cmd += ["--token", token]
    return cmd


def remove_gateway_lock_files(settings: BootstrapSettings):
    for path in settings.gateway_lock_files:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            warn(f"Could not remove gateway lock file {path}: {e}")


# ============================================================
# Coordinator
# ============================================================

def prepare_config(settings: BootstrapSettings, env: Mapping[str, str]) -> tuple[dict, Optional[dict]]:
    """Load the config once and run the patch and token steps over it.

    Returns (config, profiles); profiles is None when the credential store
    does not need to be written.
    """
    config = config_patch.load_json(settings.config_file)
    config = config_patch.patch_config(config, env, settings.gateway_port)

    profiles = None
    setup_token = env.get("CLAUDE_SETUP_TOKEN")
    if setup_token:
        log("Injecting setup token from CLAUDE_SETUP_TOKEN...")
        current = config_patch.load_json(settings.auth_profiles_file)
        config, current, injected = config_patch.inject_setup_token(config, current, setup_token)
        if injected:
            profiles = current
    return config, profiles


def ensure_running(
    settings: Optional[BootstrapSettings] = None,
    env: Optional[Mapping[str, str]] = None,
    probe: Optional[Callable[[], bool]] = None,
    exec_fn: Callable[[str, list[str]], object] = os.execvp,
) -> str:
    """Make sure exactly one gateway is running.

    Returns ALREADY_RUNNING when the gateway answers the probe, either up
    front or once the lock is held. On the launch path the lock is released
    and exec_fn replaces this process; with a non-replacing exec_fn (tests)
    STARTED is returned. Raises LockAcquisitionError if another live
    bootstrap holds the lock.
    """
    settings = settings or BootstrapSettings.from_env()
    env = os.environ if env is None else env
    if probe is None:
        probe = lambda: gateway_listening(settings.gateway_host, settings.gateway_port, settings.probe_timeout)

    # Liveness comes before any lock handling so a live gateway is never disturbed
    if probe():
        log(f"OpenClaw gateway is already running on port {settings.gateway_port}, exiting.")
        return ALREADY_RUNNING

    with GatewayLock(settings.lock_path):
        # A concurrent bootstrap may have launched between the probe and the lock
        if probe():
            log(f"OpenClaw gateway came up on port {settings.gateway_port} while acquiring the lock, exiting.")
            return ALREADY_RUNNING

        log(f"Config directory: {settings.config_dir}")
        log(f"Backup directory: {settings.backup_dir}")
        settings.config_dir.mkdir(parents=True, exist_ok=True)

        backup.restore_from_backup(
            settings.backup_dir,
            settings.config_dir,
            settings.workspace_dir,
            settings.skills_dir,
            timeout=settings.restore_timeout,
        )

        if settings.config_file.exists():
            log("Using existing config")
        else:
            run_onboard(settings, env)

        config, profiles = prepare_config(settings, env)
        if profiles is not None:
            config_patch.write_json(settings.auth_profiles_file, profiles)
        config_patch.write_json(settings.config_file, config)
        log(f"Configuration patched at {settings.config_file}")

        remove_gateway_lock_files(settings)
        cmd = gateway_command(env, settings.gateway_port)
        auth_mode = "token auth" if env.get("OPENCLAW_GATEWAY_TOKEN") else "device pairing (no token)"
        log(f"Dev mode: {env.get('OPENCLAW_DEV_MODE', 'false')}")
        log(f"Starting OpenClaw gateway on port {settings.gateway_port} with {auth_mode}: {scrub_command(cmd)}")

    # The lock is released here; its descriptor never reaches the gateway
    exec_fn(cmd[0], cmd)
    return STARTED


def main() -> int:
    """Entry point for the sandbox container."""
    try:
        ensure_running()
    except LockAcquisitionError as e:
        print(f"[bootstrap] Failed to acquire lock: {e}", file=sys.stderr, flush=True)
        return 1
    except OSError as e:
        print(f"[bootstrap] Failed to start gateway: {e}", file=sys.stderr, flush=True)
        return 127
    return 0


if __name__ == "__main__":
    sys.exit(main())
