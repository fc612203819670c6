"""
Guard Policy
============

Loads and validates the guard policy: blacklist literals and executables,
the three risk-tier regex sets and the approval timeout.

The policy is read once at startup, validated eagerly, and kept as a frozen
dataclass with precompiled patterns. Anything malformed raises
PolicyLoadError so the process never starts with a half-valid policy.

Expected JSON layout:

    {
      "blacklist": {"patterns": [...], "executables": [...]},
      "classification": {
        "green":  {"patterns": [...], "allowedPaths": [...]},
        "yellow": {"patterns": [...]},
        "red":    {"patterns": [...], "requiresApproval": true, "approvalTimeout": 300}
      }
    }
"""

import json
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from execguard.errors import PolicyLoadError


DEFAULT_APPROVAL_TIMEOUT = 300
DEFAULT_POLICY_PATH = Path(__file__).parent / "policies" / "guard_policy.json"


def _compile_tier(
    patterns: tuple[str, ...], field_name: str, source: Optional[str]
) -> tuple[re.Pattern, ...]:
    compiled = []
    for pattern in patterns:
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            raise PolicyLoadError(f"invalid regex {pattern!r} in {field_name}: {e}", source) from None
        if regex.search("") is not None:
            raise PolicyLoadError(f"pattern {pattern!r} in {field_name} matches the empty string", source)
        compiled.append(regex)
    return tuple(compiled)


@dataclass(frozen=True)
class Policy:
    """Immutable guard policy."""

    blacklist_patterns: tuple[str, ...]
    blacklist_executables: tuple[str, ...]
    green_patterns: tuple[str, ...]
    yellow_patterns: tuple[str, ...]
    red_patterns: tuple[str, ...]
    allowed_paths: tuple[str, ...] = ()
    approval_timeout: float = DEFAULT_APPROVAL_TIMEOUT
    source: Optional[str] = None

    # Compiled forms, derived in __post_init__
    green_regexes: tuple[re.Pattern, ...] = field(default=(), init=False, repr=False, compare=False)
    yellow_regexes: tuple[re.Pattern, ...] = field(default=(), init=False, repr=False, compare=False)
    red_regexes: tuple[re.Pattern, ...] = field(default=(), init=False, repr=False, compare=False)

    def __post_init__(self):
        for name in ("blacklist_patterns", "blacklist_executables"):
            for entry in getattr(self, name):
                if not isinstance(entry, str) or not entry.strip():
                    raise PolicyLoadError(f"{name} entries must be non-empty strings", self.source)

        if isinstance(self.approval_timeout, bool) or not isinstance(self.approval_timeout, (int, float)):
            raise PolicyLoadError("red.approvalTimeout must be a number", self.source)
        if not math.isfinite(self.approval_timeout):
            raise PolicyLoadError("red.approvalTimeout must be finite", self.source)
        if self.approval_timeout <= 0:
            raise PolicyLoadError("red.approvalTimeout must be positive", self.source)

        object.__setattr__(self, "green_regexes", _compile_tier(self.green_patterns, "green.patterns", self.source))
        object.__setattr__(self, "yellow_regexes", _compile_tier(self.yellow_patterns, "yellow.patterns", self.source))
        object.__setattr__(self, "red_regexes", _compile_tier(self.red_patterns, "red.patterns", self.source))

    @classmethod
    def from_dict(cls, data: Any, source: Optional[str] = None) -> "Policy":
        """Build a policy from its JSON document, validating every field."""
        if not isinstance(data, dict):
            raise PolicyLoadError("policy must be a JSON object", source)

        blacklist = _require_object(data, "blacklist", source)
        classification = _require_object(data, "classification", source)
        green = _require_object(classification, "green", source, prefix="classification.")
        yellow = _require_object(classification, "yellow", source, prefix="classification.")
        red = _require_object(classification, "red", source, prefix="classification.")

        requires_approval = red.get("requiresApproval", True)
        if requires_approval is not True:
            raise PolicyLoadError("classification.red.requiresApproval must be true", source)

        return cls(
            blacklist_patterns=_string_list(blacklist, "patterns", "blacklist", source),
            blacklist_executables=_string_list(blacklist, "executables", "blacklist", source),
            green_patterns=_string_list(green, "patterns", "classification.green", source),
            yellow_patterns=_string_list(yellow, "patterns", "classification.yellow", source),
            red_patterns=_string_list(red, "patterns", "classification.red", source),
            allowed_paths=_string_list(green, "allowedPaths", "classification.green", source, required=False),
            approval_timeout=red.get("approvalTimeout", DEFAULT_APPROVAL_TIMEOUT),
            source=source,
        )

    def to_dict(self) -> dict:
        """Convert back to the JSON document layout."""
        return {
            "blacklist": {
                "patterns": list(self.blacklist_patterns),
                "executables": list(self.blacklist_executables),
            },
            "classification": {
                "green": {
                    "patterns": list(self.green_patterns),
                    "allowedPaths": list(self.allowed_paths),
                },
                "yellow": {"patterns": list(self.yellow_patterns)},
                "red": {
                    "patterns": list(self.red_patterns),
                    "requiresApproval": True,
                    "approvalTimeout": self.approval_timeout,
                },
            },
        }


def _require_object(data: dict, key: str, source: Optional[str], prefix: str = "") -> dict:
    value = data.get(key)
    if not isinstance(value, dict):
        raise PolicyLoadError(f"missing or invalid '{prefix}{key}' section", source)
    return value


def _string_list(
    section: dict,
    key: str,
    section_name: str,
    source: Optional[str],
    required: bool = True,
) -> tuple[str, ...]:
    if key not in section:
        if required:
            raise PolicyLoadError(f"missing '{section_name}.{key}'", source)
        return ()
    value = section[key]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PolicyLoadError(f"'{section_name}.{key}' must be a list of strings", source)
    return tuple(value)


def load_policy(path: Optional[Path] = None) -> Policy:
    """
    Load a policy from a JSON file.

    Args:
        path: Policy file. None loads the policy shipped with the package.

    Returns:
        Validated, immutable Policy

    Raises:
        PolicyLoadError: If the file is missing, unreadable or invalid
    """
    path = Path(path) if path is not None else DEFAULT_POLICY_PATH
    source = str(path)

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise PolicyLoadError("policy file not found", source) from None
    except json.JSONDecodeError as e:
        raise PolicyLoadError(f"invalid JSON: {e}", source) from None
    except OSError as e:
        raise PolicyLoadError(f"cannot read policy: {e}", source) from None

    return Policy.from_dict(data, source=source)
