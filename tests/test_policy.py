"""
Tests for Policy Loading
========================

Tests for policy.py - validation, defaults and immutability.
"""

import dataclasses
import json

import pytest

from execguard.errors import PolicyLoadError
from execguard.policy import DEFAULT_APPROVAL_TIMEOUT, Policy, load_policy


def write_policy(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


# =============================================================================
# Loading
# =============================================================================

class TestLoadPolicy:
    """Tests for load_policy()."""

    def test_loads_packaged_default(self):
        policy = load_policy()
        assert policy.source.endswith("guard_policy.json")
        assert policy.red_patterns
        assert policy.blacklist_patterns
        assert policy.approval_timeout == 300

    def test_loads_from_file(self, temp_dir, policy_data):
        path = write_policy(temp_dir / "policy.json", policy_data)
        policy = load_policy(path)
        assert policy.red_patterns == ("rm -rf", r"git\s+push\s+.*--force", r"\bsudo\b")
        assert policy.blacklist_executables == ("mimikatz", "netcat")
        assert policy.approval_timeout == 5
        assert policy.source == str(path)

    def test_missing_file(self, temp_dir):
        with pytest.raises(PolicyLoadError, match="not found"):
            load_policy(temp_dir / "nope.json")

    def test_invalid_json(self, temp_dir):
        path = temp_dir / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(PolicyLoadError, match="invalid JSON"):
            load_policy(path)

    @pytest.mark.parametrize("token", ["Infinity", "NaN"])
    def test_rejects_non_finite_timeout_in_file(self, temp_dir, policy_data, token):
        policy_data["classification"]["red"]["approvalTimeout"] = 300
        text = json.dumps(policy_data).replace('"approvalTimeout": 300', f'"approvalTimeout": {token}')
        path = temp_dir / "policy.json"
        path.write_text(text, encoding="utf-8")
        with pytest.raises(PolicyLoadError, match="finite"):
            load_policy(path)

    def test_error_names_the_source(self, temp_dir):
        path = write_policy(temp_dir / "empty.json", {})
        with pytest.raises(PolicyLoadError) as exc_info:
            load_policy(path)
        assert exc_info.value.source == str(path)
        assert str(path) in str(exc_info.value)


# =============================================================================
# Validation
# =============================================================================

class TestPolicyValidation:
    """Tests for Policy.from_dict() validation."""

    def test_not_an_object(self):
        with pytest.raises(PolicyLoadError):
            Policy.from_dict(["not", "a", "dict"])

    def test_missing_blacklist(self, policy_data):
        del policy_data["blacklist"]
        with pytest.raises(PolicyLoadError, match="blacklist"):
            Policy.from_dict(policy_data)

    def test_missing_tier(self, policy_data):
        del policy_data["classification"]["yellow"]
        with pytest.raises(PolicyLoadError, match="yellow"):
            Policy.from_dict(policy_data)

    def test_missing_patterns(self, policy_data):
        del policy_data["classification"]["red"]["patterns"]
        with pytest.raises(PolicyLoadError, match="red.patterns"):
            Policy.from_dict(policy_data)

    def test_patterns_must_be_strings(self, policy_data):
        policy_data["classification"]["green"]["patterns"] = ["^ls", 42]
        with pytest.raises(PolicyLoadError, match="list of strings"):
            Policy.from_dict(policy_data)

    def test_invalid_regex(self, policy_data):
        policy_data["classification"]["red"]["patterns"].append("([unclosed")
        with pytest.raises(PolicyLoadError, match="invalid regex"):
            Policy.from_dict(policy_data)

    @pytest.mark.parametrize("pattern", ["", ".*", "a*", "^"])
    def test_rejects_empty_matching_pattern(self, policy_data, pattern):
        policy_data["classification"]["yellow"]["patterns"].append(pattern)
        with pytest.raises(PolicyLoadError, match="empty string"):
            Policy.from_dict(policy_data)

    def test_rejects_empty_blacklist_literal(self, policy_data):
        policy_data["blacklist"]["patterns"].append("   ")
        with pytest.raises(PolicyLoadError, match="non-empty"):
            Policy.from_dict(policy_data)

    def test_rejects_empty_executable(self, policy_data):
        policy_data["blacklist"]["executables"].append("")
        with pytest.raises(PolicyLoadError, match="non-empty"):
            Policy.from_dict(policy_data)

    def test_red_must_require_approval(self, policy_data):
        policy_data["classification"]["red"]["requiresApproval"] = False
        with pytest.raises(PolicyLoadError, match="requiresApproval"):
            Policy.from_dict(policy_data)

    def test_approval_timeout_defaults(self, policy_data):
        del policy_data["classification"]["red"]["approvalTimeout"]
        assert Policy.from_dict(policy_data).approval_timeout == DEFAULT_APPROVAL_TIMEOUT

    @pytest.mark.parametrize("timeout", [0, -5, "300", True, float("inf"), float("nan")])
    def test_rejects_bad_approval_timeout(self, policy_data, timeout):
        policy_data["classification"]["red"]["approvalTimeout"] = timeout
        with pytest.raises(PolicyLoadError, match="approvalTimeout"):
            Policy.from_dict(policy_data)

    def test_allowed_paths_optional(self, policy_data):
        del policy_data["classification"]["green"]["allowedPaths"]
        assert Policy.from_dict(policy_data).allowed_paths == ()


# =============================================================================
# Immutability
# =============================================================================

class TestPolicyImmutability:
    """The policy never changes after load."""

    def test_frozen(self, policy):
        with pytest.raises(dataclasses.FrozenInstanceError):
            policy.red_patterns = ("anything",)

    def test_pattern_lists_are_tuples(self, policy):
        assert isinstance(policy.blacklist_patterns, tuple)
        assert isinstance(policy.green_patterns, tuple)
        assert isinstance(policy.red_regexes, tuple)

    def test_to_dict_reloads_equal(self, policy):
        assert Policy.from_dict(policy.to_dict()) == policy
