"""
Shared fixtures for execguard tests.
"""

import copy
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from execguard.classifier import CommandClassifier
from execguard.db import init_db
from execguard.knowledge import KnowledgeBase
from execguard.policy import Policy


POLICY_DATA = {
    "blacklist": {
        "patterns": ["mkfs", ":(){ :|:& };:", "del /s /q c:\\\\windows"],
        "executables": ["mimikatz", "netcat"],
    },
    "classification": {
        "green": {
            "patterns": [r"^ls\b", r"^echo\b", r"^git\s+status\b", r"^cat\b"],
            "allowedPaths": ["/tmp/**", "C:\\Users\\dev\\projects\\**"],
        },
        "yellow": {
            "patterns": [r"\bgit\s+(commit|push)\b", r"\bnpm\s+install\b"],
        },
        "red": {
            "patterns": ["rm -rf", r"git\s+push\s+.*--force", r"\bsudo\b"],
            "requiresApproval": True,
            "approvalTimeout": 5,
        },
    },
}


@pytest.fixture
def policy_data():
    """A fresh, mutable copy of the test policy document."""
    return copy.deepcopy(POLICY_DATA)


@pytest.fixture
def policy(policy_data):
    return Policy.from_dict(policy_data)


@pytest.fixture
def classifier(policy):
    return CommandClassifier(policy)


@pytest.fixture
def temp_dir():
    """Create a temporary working directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest_asyncio.fixture
async def database(temp_dir):
    """An initialized SQLite database in a temporary directory."""
    db = await init_db(temp_dir / "knowledge.db")
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def knowledge_base(database):
    return KnowledgeBase(database)
