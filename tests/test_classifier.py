"""
Tests for Command Classification
================================

Tests for classifier.py - tier precedence, blacklist handling and the
allowed-path check.
"""

import pytest

from execguard.classifier import (
    REASON_GREEN,
    REASON_RED,
    REASON_UNKNOWN,
    REASON_YELLOW,
    CommandClassifier,
    RiskTier,
    create_classifier,
)


# =============================================================================
# Blacklist
# =============================================================================

class TestBlacklist:
    """Blacklisted commands win over every other tier."""

    def test_literal_pattern(self, classifier):
        result = classifier.classify("mkfs.ext4 /dev/sda1")
        assert result.level == RiskTier.BLACKLISTED
        assert result.reason == "Command matches blacklisted pattern: mkfs"
        assert result.matched_pattern == "mkfs"

    def test_case_insensitive(self, classifier):
        assert classifier.classify("MKFS /dev/sdb").level == RiskTier.BLACKLISTED

    def test_beats_red(self, classifier):
        result = classifier.classify("sudo mkfs.ext4 /dev/sda1")
        assert result.level == RiskTier.BLACKLISTED

    def test_beats_green(self, classifier):
        result = classifier.classify("echo ':(){ :|:& };:' > bomb.sh")
        assert result.level == RiskTier.BLACKLISTED

    def test_escaped_backslashes_collapsed(self, classifier):
        result = classifier.classify("DEL /S /Q C:\\Windows\\System32")
        assert result.level == RiskTier.BLACKLISTED

    def test_executable(self, classifier):
        result = classifier.classify("Mimikatz.exe privilege::debug")
        assert result.level == RiskTier.BLACKLISTED
        assert result.reason == "Command attempts to run blacklisted executable: mimikatz"
        assert result.matched_pattern == "mimikatz"

    def test_blocked_flags(self, classifier):
        result = classifier.classify("netcat -l 4444")
        assert result.is_blocked
        assert result.auto_execute is False
        assert result.requires_approval is False
        assert result.log_to_channel is True


# =============================================================================
# Tier Precedence
# =============================================================================

class TestTiers:
    """RED before YELLOW before GREEN; unmatched commands are YELLOW."""

    def test_red(self, classifier):
        result = classifier.classify("rm -rf ./build")
        assert result.level == RiskTier.RED
        assert result.reason == REASON_RED
        assert result.matched_pattern == "rm -rf"
        assert result.requires_approval is True
        assert result.auto_execute is False
        assert result.log_to_channel is True

    def test_red_is_case_insensitive(self, classifier):
        assert classifier.classify("SUDO apt update").level == RiskTier.RED

    def test_red_beats_green(self, classifier):
        result = classifier.classify("echo hi && sudo reboot")
        assert result.level == RiskTier.RED

    def test_red_beats_yellow(self, classifier):
        result = classifier.classify("git push origin main --force")
        assert result.level == RiskTier.RED
        assert result.matched_pattern == r"git\s+push\s+.*--force"

    def test_yellow(self, classifier):
        result = classifier.classify("git commit -m 'fix'")
        assert result.level == RiskTier.YELLOW
        assert result.reason == REASON_YELLOW
        assert result.matched_pattern == r"\bgit\s+(commit|push)\b"
        assert result.auto_execute is True
        assert result.requires_approval is False
        assert result.log_to_channel is True

    def test_yellow_beats_green(self, classifier):
        result = classifier.classify("ls && npm install express")
        assert result.level == RiskTier.YELLOW

    def test_green(self, classifier):
        result = classifier.classify("git status")
        assert result.level == RiskTier.GREEN
        assert result.reason == REASON_GREEN
        assert result.auto_execute is True
        assert result.requires_approval is False
        assert result.log_to_channel is False

    def test_unknown_defaults_to_yellow(self, classifier):
        result = classifier.classify("frobnicate --all")
        assert result.level == RiskTier.YELLOW
        assert result.reason == REASON_UNKNOWN
        assert result.matched_pattern is None
        assert result.auto_execute is True
        assert result.requires_approval is False

    def test_empty_command_is_unknown(self, classifier):
        result = classifier.classify("")
        assert result.level == RiskTier.YELLOW
        assert result.reason == REASON_UNKNOWN

    def test_whitespace_is_trimmed(self, classifier):
        result = classifier.classify("   ls -la  ")
        assert result.command == "ls -la"
        assert result.level == RiskTier.GREEN

    def test_classification_is_repeatable(self, classifier):
        first = classifier.classify("rm -rf /data")
        second = classifier.classify("rm -rf /data")
        assert first == second

    def test_rejects_non_string(self, classifier):
        with pytest.raises(TypeError):
            classifier.classify(None)

    def test_to_dict(self, classifier):
        data = classifier.classify("ls").to_dict()
        assert data["level"] == "GREEN"
        assert data["command"] == "ls"
        assert data["log_to_channel"] is False


# =============================================================================
# Allowed Paths
# =============================================================================

class TestAllowedPaths:
    """Tests for is_path_allowed()."""

    def test_inside_glob(self, classifier):
        assert classifier.is_path_allowed("/tmp/work/notes.txt")

    def test_outside_glob(self, classifier):
        assert not classifier.is_path_allowed("/etc/passwd")

    def test_windows_path_case_insensitive(self, classifier):
        assert classifier.is_path_allowed("c:\\users\\DEV\\projects\\app\\main.py")

    def test_no_globs(self, policy_data):
        from execguard.policy import Policy

        del policy_data["classification"]["green"]["allowedPaths"]
        classifier = CommandClassifier(Policy.from_dict(policy_data))
        assert not classifier.is_path_allowed("/tmp/anything")


# =============================================================================
# Packaged Policy
# =============================================================================

class TestDefaultPolicy:
    """Sanity checks against the policy shipped with the package."""

    @pytest.fixture
    def default_classifier(self):
        return create_classifier()

    @pytest.mark.parametrize("command,tier", [
        ("ls -la", RiskTier.GREEN),
        ("git status", RiskTier.GREEN),
        ("npm install express", RiskTier.YELLOW),
        ("git push --force origin main", RiskTier.RED),
        ("sudo apt update", RiskTier.RED),
        ("rm -rf /", RiskTier.BLACKLISTED),
        ("mkfs.ext4 /dev/sda1", RiskTier.BLACKLISTED),
    ])
    def test_tiers(self, default_classifier, command, tier):
        assert default_classifier.classify(command).level == tier

    def test_approval_timeout(self, default_classifier):
        assert default_classifier.approval_timeout == 300
