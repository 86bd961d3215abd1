"""
Regex scrubbing engine for redacting secrets from command output.

Every piece of subprocess output that reaches an HTTP response passes
through scrub(). The wrapped CLI happily echoes configured API keys in
`config get`, `doctor` and log output, so there is no way to opt out.

Built-in rules always apply, in order. Operators may append extra rules in
a JSON file at SCRUB_RULES_PATH ({"rules": [{"id", "pattern", ...}]}).
"""

import json
import re
from typing import Any

import settings

PLACEHOLDER = "[REDACTED]"
CONTEXT_REPLACEMENT = r"\1" + PLACEHOLDER

# Order matters: earlier rules run first. Rules with "context": True keep
# capture group 1 (e.g. `api_key=`) and replace only the value after it.
BUILTIN_RULES = [
    {"id": "openai-key", "pattern": r"sk-[A-Za-z0-9_-]{10,}"},
    {"id": "openai-project-key", "pattern": r"sk-proj-[A-Za-z0-9_-]{10,}"},
    {"id": "anthropic-key", "pattern": r"sk-ant-[A-Za-z0-9_-]{10,}"},
    {"id": "github-pat-classic", "pattern": r"ghp_[A-Za-z0-9]{36,}"},
    {"id": "github-oauth", "pattern": r"gho_[A-Za-z0-9_]{10,}"},
    {"id": "github-server", "pattern": r"ghs_[A-Za-z0-9]{36,}"},
    {"id": "github-user", "pattern": r"ghu_[A-Za-z0-9]{36,}"},
    {"id": "github-pat", "pattern": r"github_pat_[A-Za-z0-9_]{22,}"},
    {"id": "slack-token", "pattern": r"xox[baprs]-[A-Za-z0-9-]{10,}"},
    {"id": "slack-app-token", "pattern": r"xapp-[A-Za-z0-9-]{10,}"},
    {"id": "telegram-aa-token", "pattern": r"AA[A-Za-z0-9_-]{10,}:\S{10,}"},
    {"id": "telegram-bot-token", "pattern": r"\d{8,12}:[A-Za-z0-9_-]{35,}"},
    {"id": "discord-token", "pattern": r"[A-Za-z0-9_-]{24}\.[A-Za-z0-9_-]{6}\.[A-Za-z0-9_-]{27,}"},
    {"id": "aws-akia", "pattern": r"AKIA[A-Z0-9]{16}"},
    {"id": "aws-abia", "pattern": r"ABIA[A-Z0-9]{16}"},
    {"id": "aws-acca", "pattern": r"ACCA[A-Z0-9]{16}"},
    {"id": "google-api-key", "pattern": r"AIza[A-Za-z0-9_-]{35}"},
    {"id": "azure-key", "pattern": r"[A-Za-z0-9+/]{86}=="},
    {"id": "jwt", "pattern": r"eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}"},
    {"id": "api-key-assignment", "pattern": r"""([Aa]pi[_-]?[Kk]ey["']?\s*[:=]\s*["']?)[A-Za-z0-9_-]{20,}""", "context": True},
    {"id": "secret-assignment", "pattern": r"""([Ss]ecret["']?\s*[:=]\s*["']?)[A-Za-z0-9_-]{20,}""", "context": True},
    {"id": "token-assignment", "pattern": r"""([Tt]oken["']?\s*[:=]\s*["']?)[A-Za-z0-9_-]{20,}""", "context": True},
    {"id": "password-assignment", "pattern": r"""([Pp]assword["']?\s*[:=]\s*["']?)[^\s"']{8,}""", "context": True},
    {"id": "private-key-header", "pattern": r"-----BEGIN [A-Z ]+PRIVATE KEY-----"},
    {"id": "bearer-token", "pattern": r"(?i)Bearer\s+[A-Za-z0-9_-]{20,}"},
]

_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")
MAX_PATTERN_LEN = 1000
MAX_REPLACEMENT_LEN = 500
MAX_RULES = 100


def _builtin_replacement(rule: dict) -> str:
    return CONTEXT_REPLACEMENT if rule.get("context") else PLACEHOLDER


_BUILTIN_COMPILED = [(re.compile(r["pattern"]), _builtin_replacement(r)) for r in BUILTIN_RULES]


def _validate_rule(rule: dict) -> str | None:
    """Validate an operator rule dict. Returns error message or None if valid."""
    rule_id = rule.get("id", "")
    if not rule_id or not isinstance(rule_id, str):
        return "Rule must have a string 'id'"
    if not _ID_RE.match(rule_id):
        return f"Rule ID '{rule_id}' contains invalid characters (use a-z, 0-9, -, _)"
    pattern = rule.get("pattern", "")
    if not pattern or not isinstance(pattern, str):
        return "Rule must have a 'pattern'"
    if len(pattern) > MAX_PATTERN_LEN:
        return f"Pattern too long (max {MAX_PATTERN_LEN})"
    try:
        re.compile(pattern)
    except re.error as e:
        return f"Invalid regex pattern: {e}"
    replacement = rule.get("replacement", PLACEHOLDER)
    if not isinstance(replacement, str) or len(replacement) > MAX_REPLACEMENT_LEN:
        return f"Replacement must be a string of at most {MAX_REPLACEMENT_LEN} chars"
    return None


def load_operator_rules() -> list[dict]:
    """Load extra rules from SCRUB_RULES_PATH. Invalid rules are skipped."""
    path = settings.SCRUB_RULES_PATH
    if not path or not path.exists():
        return []
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"[scrub] ignoring unreadable rules file {path}: {e}", flush=True)
        return []

    rules = []
    for rule in data.get("rules", [])[:MAX_RULES]:
        if not isinstance(rule, dict) or not rule.get("enabled", True):
            continue
        error = _validate_rule(rule)
        if error:
            print(f"[scrub] skipping rule: {error}", flush=True)
            continue
        rules.append(rule)
    return rules


def _compile_rules() -> list[tuple[re.Pattern, str]]:
    compiled = list(_BUILTIN_COMPILED)
    for rule in load_operator_rules():
        compiled.append((re.compile(rule["pattern"]), rule.get("replacement", PLACEHOLDER)))
    return compiled


def scrub(text: str) -> str:
    """Apply every builtin rule, then operator rules, to a string."""
    if not text:
        return text
    text = str(text)
    for pattern, replacement in _compile_rules():
        text = pattern.sub(replacement, text)
    return text


def scrub_dict(d: Any) -> Any:
    """Recursively scrub all string values in a dict/list."""
    if isinstance(d, str):
        return scrub(d)
    if isinstance(d, dict):
        return {k: scrub_dict(v) for k, v in d.items()}
    if isinstance(d, list):
        return [scrub_dict(item) for item in d]
    return d
