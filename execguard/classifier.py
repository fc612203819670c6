"""
Command Classification
======================

Maps a raw shell command to a risk tier using the loaded Policy.

Evaluation order is fixed and the first match wins:

1. Blacklist literals (case-insensitive substring)     -> BLACKLISTED
2. Blacklisted executables (substring)                 -> BLACKLISTED
3. RED regexes                                         -> RED
4. YELLOW regexes                                      -> YELLOW
5. GREEN regexes                                       -> GREEN
6. Nothing matched                                     -> YELLOW

Blacklist entries are plain substrings while tier entries are regular
expressions. Classification is pure: no I/O, no state.
"""

import fnmatch
import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from execguard.policy import Policy, load_policy


class RiskTier(str, Enum):
    """Risk tiers, from harmless to never-allowed."""
    GREEN = "GREEN"              # Auto-execute silently
    YELLOW = "YELLOW"            # Auto-execute, logged to the approval channel
    RED = "RED"                  # Needs explicit human approval
    BLACKLISTED = "BLACKLISTED"  # Never executed


REASON_GREEN = "Safe operation - auto-executing"
REASON_YELLOW = "Sensitive operation - will be logged"
REASON_RED = "Critical operation - requires approval"
REASON_UNKNOWN = "Unknown command type - treating as sensitive"


@dataclass(frozen=True)
class ClassificationResult:
    """Verdict for a single command."""

    level: RiskTier
    command: str
    reason: str
    matched_pattern: Optional[str] = None
    requires_approval: bool = False
    auto_execute: bool = True
    log_to_channel: bool = True

    @property
    def is_blocked(self) -> bool:
        return self.level == RiskTier.BLACKLISTED

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "level": self.level.value,
            "command": self.command,
            "reason": self.reason,
            "matched_pattern": self.matched_pattern,
            "requires_approval": self.requires_approval,
            "auto_execute": self.auto_execute,
            "log_to_channel": self.log_to_channel,
        }


class CommandClassifier:
    """
    Classifies commands against an immutable Policy.

    One classifier can be shared by any number of guards; it never mutates
    the policy.
    """

    def __init__(self, policy: Policy):
        self.policy = policy
        # Blacklist literals are compared lower-cased, with doubled
        # backslashes from JSON-escaped Windows paths collapsed.
        self._blacklist = tuple(
            (p, p.lower().replace("\\\\", "\\")) for p in policy.blacklist_patterns
        )
        self._executables = tuple((e, e.lower()) for e in policy.blacklist_executables)
        self._allowed_path_regexes = tuple(
            re.compile(fnmatch.translate(_normalize_path(os.path.expanduser(g))), re.IGNORECASE)
            for g in policy.allowed_paths
        )

    @property
    def approval_timeout(self) -> float:
        """Seconds to wait for a RED approval."""
        return self.policy.approval_timeout

    def classify(self, command: str) -> ClassificationResult:
        """
        Classify a command.

        Args:
            command: Raw command string (leading/trailing whitespace ignored)

        Returns:
            ClassificationResult for the trimmed command
        """
        if not isinstance(command, str):
            raise TypeError(f"command must be a string, got {type(command).__name__}")

        command = command.strip()
        lowered = command.lower()

        for pattern, needle in self._blacklist:
            if needle in lowered:
                return self._blocked(command, f"Command matches blacklisted pattern: {pattern}", pattern)

        for executable, needle in self._executables:
            if needle in lowered:
                return self._blocked(
                    command,
                    f"Command attempts to run blacklisted executable: {executable}",
                    executable,
                )

        match = _first_match(self.policy.red_regexes, command)
        if match:
            return ClassificationResult(
                level=RiskTier.RED,
                command=command,
                reason=REASON_RED,
                matched_pattern=match,
                requires_approval=True,
                auto_execute=False,
                log_to_channel=True,
            )

        match = _first_match(self.policy.yellow_regexes, command)
        if match:
            return ClassificationResult(
                level=RiskTier.YELLOW,
                command=command,
                reason=REASON_YELLOW,
                matched_pattern=match,
            )

        match = _first_match(self.policy.green_regexes, command)
        if match:
            return ClassificationResult(
                level=RiskTier.GREEN,
                command=command,
                reason=REASON_GREEN,
                matched_pattern=match,
                log_to_channel=False,
            )

        return ClassificationResult(
            level=RiskTier.YELLOW,
            command=command,
            reason=REASON_UNKNOWN,
        )

    def is_path_allowed(self, path: str) -> bool:
        """Check a filesystem path against the green-tier allowed path globs."""
        normalized = _normalize_path(path)
        return any(regex.match(normalized) for regex in self._allowed_path_regexes)

    @staticmethod
    def _blocked(command: str, reason: str, matched: str) -> ClassificationResult:
        return ClassificationResult(
            level=RiskTier.BLACKLISTED,
            command=command,
            reason=reason,
            matched_pattern=matched,
            requires_approval=False,
            auto_execute=False,
            log_to_channel=True,
        )


def _first_match(regexes: tuple[re.Pattern, ...], command: str) -> Optional[str]:
    for regex in regexes:
        if regex.search(command):
            return regex.pattern
    return None


def _normalize_path(path: str) -> str:
    return path.replace("\\", "/")


def create_classifier(policy: Optional[Policy] = None) -> CommandClassifier:
    """Create a classifier, loading the packaged policy when none is given."""
    if policy is None:
        policy = load_policy()
    return CommandClassifier(policy)
