"""
Safe .env file parser.

Parses KEY=value files without shell execution and converts values to the
types the config layer needs. Rejects dangerous patterns that could enable
injection if the file is ever sourced by a shell.
"""

import math
import re
from pathlib import Path

# Shell constructs that would run code if the file were ever sourced
FORBIDDEN_VALUE = re.compile(
    r"`"         # backticks
    r"|\$\("     # command substitution
    r"|\$\{"     # variable expansion
    r"|;"        # command chaining
    r"|&&"       # AND chaining
    r"|\|"       # pipe and OR chaining
)

KEY_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')

TRUE_VALUES = {"true", "yes", "1", "on"}
FALSE_VALUES = {"false", "no", "0", "off"}
UNLIMITED_VALUES = {"inf", "infinity", "unlimited"}


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _parse_line(lineno: int, line: str) -> tuple[str, str] | None:
    """(key, value) for an assignment line, None for blanks and comments."""
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    # Tolerate "export KEY=value" so the same file can be sourced
    if line.startswith("export "):
        line = line[len("export "):].lstrip()

    key, sep, value = line.partition("=")
    if not sep:
        raise ValueError(f"Line {lineno}: Invalid syntax (no '=')")
    key = key.strip()
    if not KEY_PATTERN.match(key):
        raise ValueError(f"Line {lineno}: Invalid key '{key}'")

    value = _unquote(value.strip())
    if FORBIDDEN_VALUE.search(value):
        raise ValueError(f"Line {lineno}: Forbidden pattern in value for {key}")
    return key, value


def load_env(filepath: str) -> dict:
    """
    Parse a KEY=value file without executing it. Later keys win.

    Raises:
        FileNotFoundError: if file doesn't exist
        ValueError: if syntax invalid or forbidden pattern found
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Env file not found: {filepath}")

    env = {}
    for lineno, line in enumerate(path.read_text().splitlines(), 1):
        parsed = _parse_line(lineno, line)
        if parsed is not None:
            key, value = parsed
            env[key] = value
    return env


def parse_bool(env: dict, key: str, default: bool) -> bool:
    """Read a boolean value. Raises ValueError on anything unrecognized."""
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    lowered = raw.lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"{key}: expected true/false, got '{raw}'")


def parse_int(env: dict, key: str, default: int, minimum: int | None = None) -> int:
    """Read an integer value, optionally enforcing a lower bound."""
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{key}: expected an integer, got '{raw}'") from None
    if minimum is not None and value < minimum:
        raise ValueError(f"{key}: must be >= {minimum}, got {value}")
    return value


def parse_limit(env: dict, key: str, default: float) -> float:
    """Read a retry limit. 'inf' / 'unlimited' disable the limit (math.inf)."""
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    if raw.lower() in UNLIMITED_VALUES:
        return math.inf
    return parse_int(env, key, 0, minimum=0)
