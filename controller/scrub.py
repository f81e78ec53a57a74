"""
Regex scrubbing engine for redacting secrets from bootstrap and controller output.

Gateway launch commands, onboarding arguments and config documents carry API
keys and tokens. Anything printed or written to the audit log goes through
scrub() first. Extra rules can be added in SCRUB_RULES_PATH; built-in rules
can be disabled there but not deleted.
"""

import json
import os
import re
from pathlib import Path
from typing import Any

SCRUB_RULES_PATH = Path(os.environ.get("SCRUB_RULES_PATH", "/srv/audit/scrub_rules.json"))

REDACTED = "***REDACTED***"

# Built-in rules (can be disabled, never deleted)
BUILTIN_RULES = [
    {
        "id": "cli-secret-arg",
        "name": "Secret CLI arguments (--token, --*-api-key)",
        "pattern": r"(--(?:[a-z0-9-]*-)?(?:token|api-key)[ =])\S+",
        "replacement": r"\1***REDACTED***",
        "enabled": True,
        "builtin": True,
    },
    {
        "id": "api-key-sk",
        "name": "API Keys (sk-...)",
        "pattern": r"sk-[A-Za-z0-9_-]{20,}",
        "replacement": "sk-***REDACTED***",
        "enabled": True,
        "builtin": True,
    },
    {
        "id": "bearer-token",
        "name": "Bearer Tokens",
        "pattern": r"(?i)(Bearer\s+)[A-Za-z0-9_\-.]{20,}",
        "replacement": r"\1***REDACTED***",
        "enabled": True,
        "builtin": True,
    },
    {
        "id": "telegram-bot-token",
        "name": "Telegram Bot Tokens",
        "pattern": r"\b\d{6,12}:[A-Za-z0-9_-]{30,}\b",
        "replacement": REDACTED,
        "enabled": True,
        "builtin": True,
    },
    {
        "id": "slack-token",
        "name": "Slack Tokens (xoxb-/xapp-)",
        "pattern": r"\bx(?:ox[abpr]|app)-[A-Za-z0-9-]{10,}",
        "replacement": REDACTED,
        "enabled": True,
        "builtin": True,
    },
]

# Config keys whose values are always secret, whatever they look like
SECRET_KEYS = {"apiKey", "token", "botToken", "appToken", "userToken", "webhookSecret", "key", "access"}

_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")
MAX_PATTERN_LEN = 1000
MAX_REPLACEMENT_LEN = 500


def _validate_rule(rule: dict) -> str | None:
    """Validate a user rule dict. Returns error message or None if valid."""
    rule_id = rule.get("id", "")
    if not rule_id or not isinstance(rule_id, str):
        return "Rule must have a string 'id'"
    if not _ID_RE.match(rule_id):
        return f"Rule ID '{rule_id}' contains invalid characters (use a-z, 0-9, -, _)"
    pattern = rule.get("pattern", "")
    if not pattern:
        return "Rule must have a 'pattern'"
    if len(pattern) > MAX_PATTERN_LEN:
        return f"Pattern too long (max {MAX_PATTERN_LEN})"
    try:
        re.compile(pattern)
    except re.error as e:
        return f"Invalid regex pattern: {e}"
    if len(rule.get("replacement", "")) > MAX_REPLACEMENT_LEN:
        return f"Replacement too long (max {MAX_REPLACEMENT_LEN})"
    return None


def load_rules() -> list[dict]:
    """Load scrub rules from disk, merging with builtins."""
    user_rules = []
    builtin_overrides = {}

    if SCRUB_RULES_PATH.exists():
        try:
            with open(SCRUB_RULES_PATH) as f:
                data = json.load(f)
            user_rules = data.get("rules", [])
            builtin_overrides = {r["id"]: r for r in data.get("builtin_overrides", [])}
        except (OSError, ValueError, KeyError, TypeError) as e:
            print(f"[scrub] Ignoring unreadable rules file {SCRUB_RULES_PATH}: {e}", flush=True)

    rules = []
    for builtin in BUILTIN_RULES:
        rule = dict(builtin)
        if rule["id"] in builtin_overrides:
            rule["enabled"] = builtin_overrides[rule["id"]].get("enabled", rule["enabled"])
        rules.append(rule)

    for rule in user_rules:
        if not isinstance(rule, dict):
            continue
        error = _validate_rule(rule)
        if error:
            print(f"[scrub] Skipping rule {rule.get('id')!r}: {error}", flush=True)
            continue
        rules.append({**rule, "builtin": False})

    return rules


def _compile_rules() -> list[tuple[re.Pattern, str]]:
    """Compile enabled rules into regex patterns."""
    compiled = []
    for rule in load_rules():
        if not rule.get("enabled", True):
            continue
        compiled.append((re.compile(rule["pattern"]), rule.get("replacement", REDACTED)))
    return compiled


def scrub(text: str) -> str:
    """Apply all enabled scrub rules to a string."""
    if not text:
        return text
    for pattern, replacement in _compile_rules():
        text = pattern.sub(replacement, text)
    return text


def scrub_command(argv: list[str]) -> str:
    """Render a command line for logging with secret arguments redacted."""
    return scrub(" ".join(str(a) for a in argv))


def scrub_dict(d: Any) -> Any:
    """Recursively scrub a config document. Values under secret keys are always redacted."""
    if isinstance(d, str):
        return scrub(d)
    if isinstance(d, dict):
        return {
            k: (REDACTED if k in SECRET_KEYS and isinstance(v, str) and v else scrub_dict(v))
            for k, v in d.items()
        }
    if isinstance(d, list):
        return [scrub_dict(item) for item in d]
    return d
