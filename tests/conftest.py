"""
Pytest configuration and shared fixtures.
"""

import copy
import tempfile
from pathlib import Path

import pytest
import yaml

from adlab.definition import load_lab, parse_lab
from adlab.remote import Connections
from adlab.workspace import SAMPLE_LAB, Workspace

ADMIN_PASSWORD = "Adm1n-Passw0rd!"
DSRM_PASSWORD = "Dsrm-Passw0rd!"


@pytest.fixture
def lab_env(monkeypatch):
    """Set the password variables the sample lab refers to."""
    monkeypatch.setenv("ADLAB_ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setenv("ADLAB_DSRM_PASSWORD", DSRM_PASSWORD)
    return {"admin": ADMIN_PASSWORD, "dsrm": DSRM_PASSWORD}


@pytest.fixture
def temp_workspace():
    """Create a temporary workspace (with the sample lab.yaml) for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace_path = Path(tmpdir)
        workspace = Workspace(workspace_path)
        workspace.initialize()
        yield workspace
        # Cleanup happens automatically when context exits


@pytest.fixture
def lab_data():
    """The sample lab as a plain dict, safe to modify."""
    return copy.deepcopy(yaml.safe_load(SAMPLE_LAB))


@pytest.fixture
def sample_lab(lab_data):
    """The sample lab parsed into a LabDefinition."""
    return parse_lab(lab_data)


@pytest.fixture
def workspace_lab(temp_workspace):
    """LabDefinition loaded from the temporary workspace's lab.yaml."""
    return load_lab(temp_workspace.lab_file)


@pytest.fixture
def dry_connections(sample_lab):
    """Connections whose executors only record scripts."""
    return Connections(sample_lab, Workspace.DEFAULT_CONFIG["transport"], dry_run=True)
