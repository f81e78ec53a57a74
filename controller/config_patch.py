"""
Gateway config (openclaw.json) transformations.

The bootstrap loads the document once, passes it through the functions below
and writes it once before launching the gateway. Every function takes the
config dict plus the environment mapping and returns the patched dict; none
of them touch the filesystem, and applying any of them twice gives the same
document as applying it once.
"""

import copy
import json
from pathlib import Path
from typing import Any, Mapping

GATEWAY_PORT = 18789
TRUSTED_PROXIES = ["10.1.0.0"]

AI_GATEWAY_PROVIDER_PREFIX = "cf-ai-gw-"
SETUP_TOKEN_PROVIDER = "anthropic"

# Valid channel keys, from openclaw/src/config/types.{telegram,discord,slack}.ts (2026.2.6).
# Update these when upgrading OpenClaw: keys outside these sets fail its config validation.
VALID_TELEGRAM_KEYS = frozenset({
    "name", "capabilities", "markdown", "commands", "customCommands", "configWrites",
    "dmPolicy", "enabled", "botToken", "tokenFile", "replyToMode", "groups",
    "allowFrom", "groupAllowFrom", "groupPolicy", "historyLimit", "dmHistoryLimit", "dms",
    "textChunkLimit", "chunkMode", "blockStreaming", "draftChunk", "blockStreamingCoalesce",
    "streamMode", "mediaMaxMb", "timeoutSeconds", "retry", "network", "proxy",
    "webhookUrl", "webhookSecret", "webhookPath", "actions", "reactionNotifications",
    "reactionLevel", "heartbeat", "linkPreview", "responsePrefix", "accounts",
})

VALID_DISCORD_KEYS = frozenset({
    "name", "capabilities", "markdown", "commands", "configWrites", "enabled", "token",
    "allowBots", "groupPolicy", "textChunkLimit", "chunkMode", "blockStreaming",
    "blockStreamingCoalesce", "maxLinesPerMessage", "mediaMaxMb", "historyLimit",
    "dmHistoryLimit", "dms", "retry", "actions", "replyToMode", "dm", "guilds",
    "heartbeat", "execApprovals", "intents", "pluralkit", "responsePrefix", "accounts",
})

VALID_SLACK_KEYS = frozenset({
    "name", "capabilities", "markdown", "commands", "configWrites", "enabled",
    "botToken", "appToken", "userToken", "userTokenReadOnly", "allowBots",
    "requireMention", "groupPolicy", "historyLimit", "dmHistoryLimit", "dms",
    "textChunkLimit", "chunkMode", "blockStreaming", "blockStreamingCoalesce",
    "mediaMaxMb", "reactionNotifications", "reactionAllowlist", "replyToMode",
    "replyToModeByChatType", "thread", "actions", "slashCommand", "dm",
    "channels", "heartbeat", "responsePrefix", "accounts",
})


def log(message: str):
    print(f"[config] {message}", flush=True)


# ============================================================
# Document IO
# ============================================================

def load_json(path: Path) -> dict:
    """Read a JSON object from path. Missing or invalid files load as {}."""
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        log(f"Could not parse {path} ({e}), starting with empty document")
        return {}
    if not isinstance(data, dict):
        log(f"{path} does not hold a JSON object, starting with empty document")
        return {}
    return data


def write_json(path: Path, data: dict):
    """Write a JSON document, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)


def _section(parent: dict, key: str) -> dict:
    """Return parent[key] as a dict, replacing non-dict values."""
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


def filter_keys(block: Any, valid_keys: frozenset, channel: str) -> dict:
    """Keep only known-valid keys of a persisted channel block, logging each dropped key."""
    if not isinstance(block, dict):
        return {}
    filtered = {}
    for key, value in block.items():
        if key in valid_keys:
            filtered[key] = value
        else:
            log(f"Stripped unknown {channel} channel key: {key}")
    return filtered


# ============================================================
# Patch steps
# ============================================================

def patch_gateway(config: dict, env: Mapping[str, str], port: int = GATEWAY_PORT) -> dict:
    """Network bind parameters, auth token, and feature toggles."""
    gateway = _section(config, "gateway")
    gateway["port"] = port
    gateway["mode"] = "local"
    gateway["trustedProxies"] = list(TRUSTED_PROXIES)

    token = env.get("OPENCLAW_GATEWAY_TOKEN")
    if token:
        _section(gateway, "auth")["token"] = token

    if env.get("OPENCLAW_DEV_MODE") == "true":
        _section(gateway, "controlUi")["allowInsecureAuth"] = True

    # OpenAI-compatible REST endpoints for programmatic access
    endpoints = _section(_section(gateway, "http"), "endpoints")
    endpoints["chatCompletions"] = {"enabled": True}
    endpoints["responses"] = {"enabled": True}
    return config


def clear_stale_ai_gateway(config: dict, env: Mapping[str, str]) -> dict:
    """Drop AI Gateway providers, and a default model pointing at them, once their env vars are gone."""
    if env.get("CF_AI_GATEWAY_MODEL") or env.get("CLOUDFLARE_AI_GATEWAY_API_KEY"):
        return config

    providers = config.get("models", {}).get("providers") if isinstance(config.get("models"), dict) else None
    if isinstance(providers, dict):
        for key in [k for k in providers if k.startswith(AI_GATEWAY_PROVIDER_PREFIX)]:
            log(f"Removing stale AI Gateway provider: {key}")
            del providers[key]

    defaults = config.get("agents", {}).get("defaults") if isinstance(config.get("agents"), dict) else None
    if isinstance(defaults, dict) and isinstance(defaults.get("model"), dict):
        primary = defaults["model"].get("primary")
        if isinstance(primary, str) and primary.startswith(AI_GATEWAY_PROVIDER_PREFIX):
            log(f"Clearing stale default model: {primary}")
            del defaults["model"]
    return config


def ai_gateway_base_url(provider: str, env: Mapping[str, str]) -> str | None:
    account_id = env.get("CF_AI_GATEWAY_ACCOUNT_ID")
    gateway_id = env.get("CF_AI_GATEWAY_GATEWAY_ID")
    if account_id and gateway_id:
        base_url = f"https://gateway.ai.cloudflare.com/v1/{account_id}/{gateway_id}/{provider}"
        if provider == "workers-ai":
            base_url += "/v1"
        return base_url
    if provider == "workers-ai" and env.get("CF_ACCOUNT_ID"):
        return f"https://api.cloudflare.com/client/v4/accounts/{env['CF_ACCOUNT_ID']}/ai/v1"
    return None


def apply_ai_gateway_model(config: dict, env: Mapping[str, str]) -> dict:
    """CF_AI_GATEWAY_MODEL=provider/model-id registers a provider entry and makes it the default model."""
    raw = env.get("CF_AI_GATEWAY_MODEL")
    if not raw:
        return config

    provider, sep, model_id = raw.partition("/")
    if not sep or not provider or not model_id:
        log(f"CF_AI_GATEWAY_MODEL must be in provider/model-id format (e.g. \"anthropic/claude-sonnet-4-5\"), got: {raw}")
        return config

    base_url = ai_gateway_base_url(provider, env)
    api_key = env.get("CLOUDFLARE_AI_GATEWAY_API_KEY")
    if not base_url or not api_key:
        log("CF_AI_GATEWAY_MODEL set but missing required config (account ID, gateway ID, or API key)")
        return config

    provider_name = f"{AI_GATEWAY_PROVIDER_PREFIX}{provider}"
    providers = _section(_section(config, "models"), "providers")
    providers[provider_name] = {
        "baseUrl": base_url,
        "apiKey": api_key,
        "api": "anthropic-messages" if provider == "anthropic" else "openai-completions",
        "models": [{"id": model_id, "name": model_id, "contextWindow": 131072, "maxTokens": 8192}],
    }
    _section(_section(config, "agents"), "defaults")["model"] = {"primary": f"{provider_name}/{model_id}"}
    log(f"AI Gateway model override: provider={provider_name} model={model_id} via {base_url}")
    return config


def patch_channels(config: dict, env: Mapping[str, str]) -> dict:
    """Merge channel credentials from env into persisted channel blocks, filtered to valid keys."""
    channels = _section(config, "channels")

    if env.get("TELEGRAM_BOT_TOKEN"):
        telegram = filter_keys(channels.get("telegram"), VALID_TELEGRAM_KEYS, "telegram")
        telegram["botToken"] = env["TELEGRAM_BOT_TOKEN"]
        telegram["enabled"] = True
        if env.get("TELEGRAM_DM_POLICY"):
            telegram["dmPolicy"] = env["TELEGRAM_DM_POLICY"]
        if not telegram.get("dmPolicy"):
            telegram["dmPolicy"] = "pairing"
        if env.get("TELEGRAM_DM_ALLOW_FROM"):
            telegram["allowFrom"] = env["TELEGRAM_DM_ALLOW_FROM"].split(",")
        elif telegram["dmPolicy"] == "open" and not telegram.get("allowFrom"):
            telegram["allowFrom"] = ["*"]
        channels["telegram"] = telegram

    if env.get("DISCORD_BOT_TOKEN"):
        discord = filter_keys(channels.get("discord"), VALID_DISCORD_KEYS, "discord")
        discord["token"] = env["DISCORD_BOT_TOKEN"]
        discord["enabled"] = True
        dm = discord.get("dm") if isinstance(discord.get("dm"), dict) else {}
        if env.get("DISCORD_DM_POLICY"):
            dm["policy"] = env["DISCORD_DM_POLICY"]
        if not dm.get("policy"):
            dm["policy"] = "pairing"
        if dm["policy"] == "open" and not dm.get("allowFrom"):
            dm["allowFrom"] = ["*"]
        discord["dm"] = dm
        channels["discord"] = discord

    if env.get("SLACK_BOT_TOKEN") and env.get("SLACK_APP_TOKEN"):
        slack = filter_keys(channels.get("slack"), VALID_SLACK_KEYS, "slack")
        slack["botToken"] = env["SLACK_BOT_TOKEN"]
        slack["appToken"] = env["SLACK_APP_TOKEN"]
        slack["enabled"] = True
        channels["slack"] = slack

    return config


def patch_config(config: dict, env: Mapping[str, str], port: int = GATEWAY_PORT) -> dict:
    """Apply every env-derived patch. Runs on every boot; idempotent."""
    config = copy.deepcopy(config)
    config = patch_gateway(config, env, port)
    config = clear_stale_ai_gateway(config, env)
    config = apply_ai_gateway_model(config, env)
    config = patch_channels(config, env)
    return config


# ============================================================
# Credential profiles
# ============================================================

def profile_id_for(provider: str) -> str:
    return f"{provider}:default"


def register_token_profile(config: dict, provider: str) -> dict:
    """Reference a token profile in config.auth and make sure the provider is known to the gateway."""
    profile_id = profile_id_for(provider)
    _section(_section(config, "auth"), "profiles")[profile_id] = {"provider": provider, "mode": "token"}
    providers = _section(_section(config, "models"), "providers")
    if provider not in providers:
        # Without a provider entry the gateway cannot resolve the token's models
        providers[provider] = {"api": "anthropic-messages"} if provider == "anthropic" else {}
        log(f"Added default {provider} provider for token auth")
    return config


def unregister_token_profile(config: dict, profile_id: str) -> dict:
    profiles = config.get("auth", {}).get("profiles") if isinstance(config.get("auth"), dict) else None
    if isinstance(profiles, dict):
        profiles.pop(profile_id, None)
    return config


def inject_setup_token(
    config: dict,
    profiles: dict,
    token: str | None,
    provider: str = SETUP_TOKEN_PROVIDER,
) -> tuple[dict, dict, bool]:
    """Store a one-time setup token unless the profile already has one.

    Returns (config, profiles, injected). An operator-set token is never overwritten.
    """
    if not token or not token.strip():
        return config, profiles, False

    profile_id = profile_id_for(provider)
    existing = _section(profiles, "profiles").get(profile_id)
    if isinstance(existing, dict) and existing.get("token"):
        log("Existing token found, skipping setup token injection")
        return config, profiles, False

    profiles["profiles"][profile_id] = {"type": "token", "provider": provider, "token": token.strip()}
    config = register_token_profile(config, provider)
    log(f"Setup token stored for profile {profile_id}")
    return config, profiles, True
