"""Test parsing of the pbsnodes, qstat and getent feeds."""
# ruff: noqa: PLR2004

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Enable mock data mode for all tests
os.environ["PBS_NODES_USE_MOCK_DATA"] = "1"

import pbs_nodes


class TestParsingHelpers:
    """Test small parsing helpers."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("16777216kb", 16777216),
            ("16777216KB", 16777216),
            ("64gb", 64 * 1024 * 1024),
            ("512mb", 512 * 1024),
            ("1tb", 1024**3),
            ("2048b", 2),
            ("1048576", 1024),
            ("0kb", 0),
            ("", 0),
            ("lots", 0),
        ],
    )
    def test_parse_memory_kb(self, value: str, expected: int) -> None:
        assert pbs_nodes._parse_memory_kb(value) == expected

    def test_parse_int(self) -> None:
        assert pbs_nodes._parse_int("32") == 32
        assert pbs_nodes._parse_int("") == 0
        assert pbs_nodes._parse_int("n/a") == 0

    @pytest.mark.parametrize(
        ("job_id", "expected"),
        [
            ("100.pbsserver/0", "100"),
            ("100.pbsserver", "100"),
            ("100", "100"),
            ("200[3].pbsserver/12", "200[3]"),
            ("200[].pbsserver", "200[]"),
        ],
    )
    def test_short_job_id(self, job_id: str, expected: str) -> None:
        assert pbs_nodes.short_job_id(job_id) == expected

    @pytest.mark.parametrize(
        ("job_id", "expected"),
        [
            ("200[1]", "200[]"),
            ("200[4711]", "200[]"),
            ("200[]", "200[]"),
            ("100", "100"),
            ("12345", "12345"),
        ],
    )
    def test_template_id(self, job_id: str, expected: str) -> None:
        """Array indices collapse to the template, everything else is unchanged."""
        assert pbs_nodes.template_id(job_id) == expected

    def test_parse_job_ids_collapses_duplicates(self) -> None:
        """A job on several slots of a node is listed once, in first-seen order."""
        value = "300.pbsserver/0, 300.pbsserver/1, 400[7].pbsserver/2, 300.pbsserver/3"
        assert pbs_nodes.parse_job_ids(value) == ["300", "400[7]"]

    def test_parse_job_ids_space_separated(self) -> None:
        assert pbs_nodes.parse_job_ids("200[1].server 200[2].server") == ["200[1]", "200[2]"]

    def test_parse_job_ids_empty(self) -> None:
        assert pbs_nodes.parse_job_ids("") == []


class TestStateClassification:
    """Test the raw state -> report state table."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("free", "free"),
            ("job-busy", "busy"),
            ("job-exclusive", "busy"),
            ("resv-exclusive", "busy"),
            ("job-exclusive,busy", "busy"),
            ("offline", "offl"),
            ("down", "down"),
            ("down,offline", "down"),
            ("offline,job-busy", "offl"),
            ("state-unknown", "UNKN"),
            ("state-unknown,down", "down"),
            ("sleep", "pwrdn"),
            ("wait-provisioning", "UNKN"),
            ("free,some-new-state", "UNKN"),
            ("", "UNKN"),
        ],
    )
    def test_classify_state(self, raw: str, expected: str) -> None:
        assert pbs_nodes.classify_state(raw) == expected

    @pytest.mark.parametrize("raw", ["free", "down", "job-busy", "state-unknown", ""])
    def test_power_state_overrides(self, raw: str) -> None:
        """A powered-off node is pwrdn whatever its state says."""
        assert pbs_nodes.classify_state(raw, "powered-off") == "pwrdn"

    def test_other_power_state_ignored(self) -> None:
        assert pbs_nodes.classify_state("free", "powered-on") == "free"

    def test_table_values_are_ranked(self) -> None:
        """Every classification in the table has a precedence."""
        assert set(pbs_nodes.NODE_STATE_TABLE.values()) <= set(pbs_nodes.STATE_PRECEDENCE)

    def test_excl_never_leaves_classification(self) -> None:
        for raw in pbs_nodes.NODE_STATE_TABLE:
            assert pbs_nodes.classify_state(raw) in pbs_nodes.STATE_RENDER


class TestParsePbsnodes:
    """Test the node dump parser."""

    def test_parse_snapshot(self, pbsnodes_text: str) -> None:
        nodes = {node.name: node for node in pbs_nodes.parse_pbsnodes(pbsnodes_text)}
        assert list(nodes) == ["n1", "n2", "n3", "n4", "n5", "n6", "n7"]

        n1 = nodes["n1"]
        assert n1.state == "free"
        assert n1.cpu_total == 8
        assert n1.cpu_assigned == 1
        assert n1.mem_total_kb == 16777216
        assert n1.mem_assigned_kb == 0
        assert n1.job_ids == ["100"]
        assert n1.unique_job_count == 1

        n2 = nodes["n2"]
        assert n2.raw_state == "job-exclusive,busy"
        assert n2.state == "busy"
        assert n2.job_ids == ["200[1]", "200[2]"]
        assert n2.unique_job_count == 1

        assert nodes["n4"].job_ids == ["301"]
        assert nodes["n5"].state == "pwrdn"
        assert nodes["n5"].power_state == "powered-off"
        assert nodes["n6"].unique_job_count == 2
        assert nodes["n7"].state == "UNKN"

    def test_node_without_jobs(self, pbsnodes_text: str) -> None:
        """A block without a jobs attribute yields an empty job list."""
        n3 = next(node for node in pbs_nodes.parse_pbsnodes(pbsnodes_text) if node.name == "n3")
        assert n3.job_ids == []
        assert n3.unique_job_count == 0

    def test_blocks_without_blank_separator(self) -> None:
        """A new node name line also ends the previous block."""
        text = "a1\n     state = free\n     resources_available.ncpus = 4\nb2\n     state = down\n"
        nodes = pbs_nodes.parse_pbsnodes(text)
        assert [(n.name, n.state, n.cpu_total) for n in nodes] == [("a1", "free", 4), ("b2", "down", 0)]

    def test_missing_attributes_default(self) -> None:
        """Missing attributes never fail: no state is UNKN, numbers are zero."""
        (node,) = pbs_nodes.parse_pbsnodes("lonely\n     Mom = lonely\n")
        assert node.state == "UNKN"
        assert node.cpu_total == 0
        assert node.mem_total_kb == 0
        assert node.job_ids == []

    def test_value_with_spaces_and_empty_value(self) -> None:
        text = "n9\n     comment = drained for disk swap\n     jobs =\n     state = offline\n"
        (node,) = pbs_nodes.parse_pbsnodes(text)
        assert node.job_ids == []
        assert node.state == "offl"

    def test_empty_dump(self) -> None:
        assert pbs_nodes.parse_pbsnodes("") == []
        assert pbs_nodes.parse_pbsnodes("\n\n") == []


class TestJobDirectory:
    """Test building the job directory from qstat."""

    def test_build_from_snapshot(self, qstat_text: str) -> None:
        directory = pbs_nodes.build_job_directory(qstat_text)
        assert set(directory) == {"200[]", "300", "301", "302", "303"}
        assert directory["200[]"] == pbs_nodes.JobRecord("200[]", "alice", "day")
        assert directory["300"].user == "bob"
        assert directory["301"].queue == "long"

    def test_long_names_kept_whole(self, qstat_text: str) -> None:
        """Wide rows carry user and queue names longer than 8 characters intact."""
        directory = pbs_nodes.build_job_directory(qstat_text)
        assert directory["303"] == pbs_nodes.JobRecord("303", "christopher", "longqueue_gpu")

    def test_long_username_matches_user_filter(self, qstat_text: str, config: pbs_nodes.Config) -> None:
        directory = pbs_nodes.build_job_directory(qstat_text)
        node = pbs_nodes.NodeRecord(name="g1", state="busy", job_ids=["303"])
        annotated = pbs_nodes.annotate_node(node, directory, config, pbs_nodes.user_predicate("christopher"))
        assert annotated.jobs[0].user == "christopher"
        assert annotated.matches_identity

    def test_header_lines_are_skipped(self) -> None:
        """Banner, column titles and separators are not mistaken for jobs."""
        text = "\npbsserver:\nJob ID   Username Queue\n-------- -------- -----\n"
        assert pbs_nodes.build_job_directory(text) == {}

    def test_short_lines_are_skipped(self) -> None:
        text = "17.server alice\n18.server bob day\n"
        assert list(pbs_nodes.build_job_directory(text)) == ["18"]

    def test_idle_cluster(self) -> None:
        assert pbs_nodes.build_job_directory("") == {}

    def test_truncated_job_id(self) -> None:
        """qstat -a truncates long ids with a '*'; the number survives."""
        directory = pbs_nodes.build_job_directory("1234567.pbsse* carol long md 1 1 1 1gb 01:00 R 00:01\n")
        assert directory["1234567"].user == "carol"

    def test_from_line(self) -> None:
        assert pbs_nodes.JobRecord.from_line("Job ID Username Queue") is None
        record = pbs_nodes.JobRecord.from_line("300.pbsserver   bob      week     relax")
        assert record == pbs_nodes.JobRecord("300", "bob", "week")


class TestGroupIndex:
    """Test the group table index."""

    GROUPS = "root:x:0:\nusers:x:100:\nchem:x:200:carol\nphysics:x:300:alice,dave\n"
    PASSWD = "alice:x:1001:100:Alice:/home/alice:/bin/bash\nbob:x:1002:200:Bob:/home/bob:/bin/bash\n"

    def test_index_by_gid(self) -> None:
        index = pbs_nodes.GroupIndex.from_getent(self.GROUPS)
        assert index.gid_to_name == {"0": "root", "100": "users", "200": "chem", "300": "physics"}
        assert index.has_group("chem")
        assert not index.has_group("biology")

    def test_secondary_members(self) -> None:
        index = pbs_nodes.GroupIndex.from_getent(self.GROUPS)
        assert index.is_member("carol", "chem")
        assert index.members("physics") == {"alice", "dave"}
        assert not index.is_member("bob", "chem")

    def test_primary_members(self) -> None:
        """Users whose passwd GID is the group's GID are members too."""
        index = pbs_nodes.GroupIndex.from_getent(self.GROUPS, self.PASSWD)
        assert index.is_member("bob", "chem")
        assert index.is_member("alice", "users")
        assert index.is_member("alice", "physics")
        assert index.members("chem") == {"bob", "carol"}

    def test_malformed_lines_skipped(self) -> None:
        index = pbs_nodes.GroupIndex.from_getent("garbage\nchem:x:200:carol\n", "short:x\n")
        assert index.gid_to_name == {"200": "chem"}
        assert "short" not in index.user_to_groups
