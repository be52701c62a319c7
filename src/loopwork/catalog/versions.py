"""
Minimal semantic-version handling for skill and loop versions.

Supported constraints:
    "1.2.3" / "=1.2.3"   exact
    "^1.2.3"             same major (same minor when major is 0)
    "~1.2.3"             same major.minor
    ">=1.2", ">1", "<=2.0.0", "<2"
    "*" / "" / None      any version
"""

import re

_VERSION_RE = re.compile(r"^\s*v?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:[-+].*)?\s*$")
_CONSTRAINT_RE = re.compile(r"^\s*(\^|~|>=|<=|>|<|=)?\s*(.+?)\s*$")

Version = tuple[int, int, int]


def parse_version(value: str) -> Version:
    """Parse "1", "1.2" or "1.2.3" (optionally prefixed by "v") into a tuple.

    Raises:
        ValueError: If the string is not a version.
    """
    match = _VERSION_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid version '{value}'")
    major, minor, patch = (int(g) if g is not None else 0 for g in match.groups())
    return (major, minor, patch)


def is_valid_version(value: str) -> bool:
    try:
        parse_version(value)
    except ValueError:
        return False
    return True


def matches(version: str, constraint: str | None) -> bool:
    """Return True if version satisfies the constraint.

    Raises:
        ValueError: If the constraint or the version is malformed.
    """
    if constraint is None or constraint.strip() in ("", "*", "latest"):
        return True

    match = _CONSTRAINT_RE.match(constraint)
    if not match:
        raise ValueError(f"invalid version constraint '{constraint}'")
    op, raw = match.groups()
    target = parse_version(raw)
    current = parse_version(version)

    match op:
        case None | "=":
            return current == target
        case ">=":
            return current >= target
        case ">":
            return current > target
        case "<=":
            return current <= target
        case "<":
            return current < target
        case "~":
            return current >= target and current[:2] == target[:2]
        case "^":
            if current < target:
                return False
            if target[0] == 0:
                return current[:2] == target[:2]
            return current[0] == target[0]
    raise ValueError(f"invalid version constraint '{constraint}'")


def pick_latest(versions: list[str], constraint: str | None = None) -> str | None:
    """Return the highest version satisfying constraint, or None."""
    candidates = [v for v in versions if matches(v, constraint)]
    if not candidates:
        return None
    return max(candidates, key=parse_version)
