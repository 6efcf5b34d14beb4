"""Shared test fixtures and configuration."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Enable mock data mode for all tests
os.environ["PBS_NODES_USE_MOCK_DATA"] = "1"

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

SNAPSHOT_DIR = Path(__file__).parent / "snapshots"
if not (SNAPSHOT_DIR / "command_map.json").exists():
    msg = f"Mock data snapshots not found at {SNAPSHOT_DIR}."
    raise FileNotFoundError(msg)

import pbs_nodes  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_config_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point XDG_CONFIG_HOME at an empty directory so no user config leaks in."""
    config_home = tmp_path / "xdg"
    config_home.mkdir()
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    return config_home


@pytest.fixture
def config() -> pbs_nodes.Config:
    """Config with colours for two of the snapshot queues."""
    return pbs_nodes.Config(queue_colors={"day": "yellow", "week": "magenta"})


@pytest.fixture
def pbsnodes_text() -> str:
    return (SNAPSHOT_DIR / "pbsnodes_output.txt").read_text()


@pytest.fixture
def qstat_text() -> str:
    return (SNAPSHOT_DIR / "qstat_output.txt").read_text()


@pytest.fixture
def job_directory(qstat_text: str) -> dict[str, pbs_nodes.JobRecord]:
    return pbs_nodes.build_job_directory(qstat_text)


@pytest.fixture
def annotated_nodes(
    pbsnodes_text: str,
    job_directory: dict[str, pbs_nodes.JobRecord],
    config: pbs_nodes.Config,
) -> dict[str, pbs_nodes.AnnotatedNode]:
    """All snapshot nodes reconciled against the snapshot job listing, by name."""
    nodes = pbs_nodes.parse_pbsnodes(pbsnodes_text)
    return {node.name: pbs_nodes.annotate_node(node, job_directory, config) for node in nodes}
