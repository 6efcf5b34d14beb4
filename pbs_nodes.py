#!/usr/bin/env python
"""PBS Node Summary - one line per node, with occupancy and anomaly flags.

Reconciles the node dump (``pbsnodes -a``) with the job listing (``qstat -a -w``)
and prints a filtered, flagged and sorted overview of the cluster.

Part of the [pbs-nodes](https://github.com/basnijholt/pbs-nodes) tool.
"""
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "typer>=0.9",
#     "pydantic>=2.0",
#     "rich>=13.0",
#     "polars>=0.20.5",
#     "pyyaml>=6.0",
# ]
# ///

from __future__ import annotations

import json
import os
import re
import subprocess
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Annotated, Any, Literal, NamedTuple

import polars as pl
import typer
import yaml
from pydantic import BaseModel, Field, computed_field, field_validator
from rich import box
from rich.color import ColorParseError
from rich.console import Console
from rich.errors import StyleError
from rich.markup import escape
from rich.style import Style
from rich.table import Table

__version__ = "1.0.0"

app = typer.Typer(help="PBS Node Summary - per-node occupancy and health overview")
console = Console(highlight=False, soft_wrap=True)
err_console = Console(stderr=True, highlight=False)

# Answer scheduler/directory commands from tests/snapshots instead
USE_MOCK_DATA = os.environ.get("PBS_NODES_USE_MOCK_DATA")


def _version_callback(value: bool) -> None:  # noqa: FBT001
    if value:
        console.print(f"pbs-nodes {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: Annotated[  # noqa: ARG001
        bool,
        typer.Option("--version", "-V", callback=_version_callback, is_eager=True, help="Show version and exit"),
    ] = False,
    color: Annotated[
        bool | None,
        typer.Option("--color/--no-color", envvar="PBS_NODES_COLOR", help="Force colours on or off (default: auto)"),
    ] = None,
) -> None:
    """PBS Node Summary - displays the per-node report by default.

    Use 'pbs_nodes.py COMMAND --help' for more information on a specific command.
    """
    if ctx.invoked_subcommand is None:
        # Run the report with default options
        show(color=color)


# Sentinel username for jobs bound to a node but missing from the job listing
ORPHAN_USER = "NONE*"

# Value of resources_available.pwr_mgt_power_state for a powered-down node
POWERED_OFF = "powered-off"

# Memory pressure (percent of assigned over total) above which a node is flagged
MEM_PRESSURE_LIMIT = 50.0

FLAG_GLYPH = "*"
OVERFLOW_GLYPH = "+"

# Raw PBS node state (one comma separated component) -> classified state.
# Anything not listed classifies as UNKN.
NODE_STATE_TABLE: dict[str, str] = {
    "free": "free",
    "job-busy": "busy",
    "busy": "busy",
    "job-sharing": "busy",
    "job-exclusive": "excl",
    "resv-exclusive": "excl",
    "offline": "offl",
    "maintenance": "offl",
    "down": "down",
    "sleep": "pwrdn",
    "state-unknown": "UNKN",
    "stale": "UNKN",
    "unresolvable": "UNKN",
}

# Most severe first; the most severe component of a combined state wins
STATE_PRECEDENCE = ("down", "offl", "UNKN", "pwrdn", "busy", "excl", "free")

NodeState = Literal["free", "busy", "offl", "down", "pwrdn", "UNKN"]
Severity = Literal["ok", "info", "error"]

PALETTE: dict[str, str] = {
    "alert": "red",
    "info": "cyan",
    "success": "green",
    "neutral": "",
    "error": "bold red reverse",
}


class StateRender(NamedTuple):
    """How a classified node state is drawn."""

    state_color: str
    job_color: str
    glyph: str


STATE_RENDER: dict[str, StateRender] = {
    "busy": StateRender("alert", "alert", ""),
    "down": StateRender("alert", "neutral", FLAG_GLYPH),
    "offl": StateRender("alert", "neutral", FLAG_GLYPH),
    "UNKN": StateRender("alert", "neutral", FLAG_GLYPH),
    "pwrdn": StateRender("info", "neutral", ""),
    "free": StateRender("success", "success", ""),
}

FLAGGED_STATES = frozenset({"offl", "down", "UNKN"})


# ============================================================================
# Errors
# ============================================================================


class NodeReportError(Exception):
    """A user input problem; reported with a message and a non-zero exit."""


class UnknownUserError(NodeReportError):
    """The requested user does not exist in the directory."""

    def __init__(self, user: str) -> None:
        super().__init__(f"Unknown user '{user}'")
        self.user = user


class UnknownGroupError(NodeReportError):
    """The requested group does not exist in the directory."""

    def __init__(self, group: str) -> None:
        super().__init__(f"Unknown group '{group}'")
        self.group = group


class ConflictingFiltersError(NodeReportError):
    """Both a user and a group filter were requested."""

    def __init__(self) -> None:
        super().__init__("--user and --group are mutually exclusive")


class CommandFailedError(RuntimeError):
    """A scheduler or directory command exited with an error."""


# ============================================================================
# Configuration Management
# ============================================================================


def _get_config_path() -> Path | None:
    """Get the first existing configuration file path.

    Searches in priority order:
    1. $XDG_CONFIG_HOME/pbs-nodes/config.yaml
    2. ~/.config/pbs-nodes/config.yaml
    3. /etc/pbs-nodes/config.yaml

    Returns the first existing path, or None if none exist.
    """
    config_paths = []

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        config_paths.append(Path(xdg_config_home) / "pbs-nodes" / "config.yaml")
    else:
        config_paths.append(Path.home() / ".config" / "pbs-nodes" / "config.yaml")

    # Global system configuration
    config_paths.append(Path("/etc/pbs-nodes/config.yaml"))

    for config_path in config_paths:
        if config_path.exists():
            return config_path
    return None


def _load_config_file() -> tuple[dict[str, Any], Path | None]:
    """Load configuration from the first existing config file.

    Returns a tuple of (config dict, config file path).
    Returns ({}, None) if no configuration file is found.
    """
    config_path = _get_config_path()
    if config_path is None:
        return {}, None

    try:
        with open(config_path) as f:
            config = yaml.safe_load(f)
            if isinstance(config, dict):
                return config, config_path
            err_console.print(f"[yellow]Warning: Empty configuration file at {config_path}[/yellow]")
            return {}, config_path
    except (OSError, yaml.YAMLError) as e:
        err_console.print(f"[yellow]Warning: Failed to load {config_path}: {e}[/yellow]")
        return {}, None


class Config(BaseModel):
    """Display configuration for the node report."""

    queue_colors: dict[str, str] = Field(default_factory=dict)
    node_width: int = Field(default=14, ge=4)
    max_jobs_shown: int = Field(default=12, ge=1)

    @field_validator("queue_colors")
    @classmethod
    def _drop_invalid_styles(cls, queue_colors: dict[str, str]) -> dict[str, str]:
        """Keep only queue colours that rich can render; warn about the rest."""
        valid = {}
        for queue, style in queue_colors.items():
            try:
                Style.parse(style)
            except (StyleError, ColorParseError) as e:
                err_console.print(
                    f"[yellow]Warning: Ignoring colour {escape(repr(style))} for queue {escape(repr(queue))}: {escape(str(e))}[/yellow]",
                )
                continue
            valid[queue] = style
        return valid

    @classmethod
    def create(cls, queue_colors: dict[str, str] | None = None) -> Config:
        """Create a Config from the config file, with explicit overrides.

        Args:
            queue_colors: Explicit queue -> style mapping (overrides config file)

        Returns:
            Configured Config instance

        """
        file_config, _ = _load_config_file()

        if queue_colors is None:
            queue_colors = file_config.get("queue_colors") or {}

        settings = {key: file_config[key] for key in ("node_width", "max_jobs_shown") if file_config.get(key) is not None}
        return cls(queue_colors=queue_colors, **settings)

    def queue_style(self, queue: str) -> str | None:
        """Style for a queue, or None if the queue is not mapped."""
        return self.queue_colors.get(queue)


# ============================================================================
# PBS and Directory Commands
# ============================================================================


class CommandResult(NamedTuple):
    """Result from a command execution."""

    stdout: str
    stderr: str
    returncode: int
    command: str = ""  # The command that was executed


def _run(cmd: list[str]) -> CommandResult:
    """Run a command or return mock data if configured."""
    if (r := _maybe_run_mock(cmd)) is not None:
        return r

    cmd_str = " ".join(cmd)
    result = subprocess.run(cmd, capture_output=True, text=True, check=False)  # noqa: S603
    return CommandResult(result.stdout, result.stderr, result.returncode, cmd_str)


def _check_result(result: CommandResult) -> CommandResult:
    """Raise CommandFailedError if a feed command did not succeed."""
    if result.returncode != 0:
        msg = f"'{result.command}' failed with exit code {result.returncode}: {result.stderr.strip()}"
        raise CommandFailedError(msg)
    return result


def run_pbsnodes() -> CommandResult:
    """Run pbsnodes to dump the attributes of every node.

    Returns:
        CommandResult with stdout, stderr, and return code

    """
    return _run(["pbsnodes", "-a"])


def run_qstat() -> CommandResult:
    """Run qstat to list the current jobs with owner and queue.

    Wide output, plain ``qstat -a`` truncates user and queue names to 8 characters.

    Returns:
        CommandResult with stdout, stderr, and return code

    """
    return _run(["qstat", "-a", "-w"])


def run_getent_passwd(user: str | None = None) -> CommandResult:
    """Look up one user, or the whole passwd table when user is None."""
    cmd = ["getent", "passwd"]
    if user is not None:
        cmd.append(user)
    return _run(cmd)


def run_getent_group() -> CommandResult:
    """Dump the whole group table."""
    return _run(["getent", "group"])


# ============================================================================
# Mock Data Handling from tests/snapshots
# ============================================================================


def _maybe_run_mock(cmd: list[str]) -> CommandResult | None:
    if USE_MOCK_DATA:
        cmd_str = " ".join(cmd)
        snapshot_dir = Path(__file__).parent / "tests" / "snapshots"
        command_map_file = snapshot_dir / "command_map.json"
        with command_map_file.open() as f:
            command_map = json.load(f)

        file_prefix = command_map.get(cmd_str)
        if file_prefix is None:
            # Command not found in map
            return CommandResult("", "", 1, cmd_str)

        stdout = (snapshot_dir / f"{file_prefix}_output.txt").read_text()
        stderr = (snapshot_dir / f"{file_prefix}_stderr.txt").read_text()
        returncode = int((snapshot_dir / f"{file_prefix}_returncode.txt").read_text().strip())
        return CommandResult(stdout, stderr, returncode, cmd_str)
    return None


# ============================================================================
# Parsing and Utility Functions
# ============================================================================

_MEMORY_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([kmgtp]?b?)$", re.IGNORECASE)
_MEMORY_FACTORS_KB = {"": 1 / 1024, "b": 1 / 1024, "k": 1, "m": 1024, "g": 1024**2, "t": 1024**3, "p": 1024**4}

# A qstat job id: digits, optional array brackets, optional .server suffix
_JOB_ROW_ID_RE = re.compile(r"^\d+(\[\d*\])?(\.\S*)?$")
_ARRAY_INDEX_RE = re.compile(r"\[\d+\]")


def _parse_memory_kb(mem_str: str) -> int:
    """Parse a PBS size ("16777216kb", "64gb", "1024") to KiB."""
    match = _MEMORY_RE.match(mem_str.strip()) if mem_str else None
    if match is None:
        return 0
    value, unit = match.groups()
    factor = _MEMORY_FACTORS_KB[unit.lower()[:1]]
    return int(float(value) * factor)


def _parse_int(value: str) -> int:
    """Safely parse string to int."""
    if value and value.isdigit():
        return int(value)
    return 0


def short_job_id(job_id: str) -> str:
    """Strip the exec slot and server suffix: "100.server/3" -> "100"."""
    return job_id.split("/")[0].split(".")[0]


def template_id(job_id: str) -> str:
    """Collapse an array index to the array template: "200[4]" -> "200[]"."""
    return _ARRAY_INDEX_RE.sub("[]", job_id)


def parse_job_ids(value: str) -> list[str]:
    """Parse the pbsnodes ``jobs`` attribute into distinct short job ids.

    Handles both "100.server/0, 100.server/1" and "200[1].server 200[2].server".
    """
    job_ids: list[str] = []
    for token in re.split(r"[,\s]+", value):
        if not token:
            continue
        job_id = short_job_id(token)
        if job_id and job_id not in job_ids:
            job_ids.append(job_id)
    return job_ids


def classify_state(raw_state: str, power_state: str = "") -> NodeState:
    """Reduce a raw PBS state string to the report vocabulary.

    Every comma separated component is looked up in NODE_STATE_TABLE (unknown
    components are UNKN) and the most severe one wins. ``excl`` collapses into
    ``busy``. A powered-off node is ``pwrdn`` whatever its state says.
    """
    if power_state.strip() == POWERED_OFF:
        return "pwrdn"
    components = [c.strip() for c in raw_state.split(",") if c.strip()]
    if not components:
        return "UNKN"
    classified = min((NODE_STATE_TABLE.get(c, "UNKN") for c in components), key=STATE_PRECEDENCE.index)
    if classified == "excl":
        return "busy"
    return classified  # type: ignore[return-value]


# ============================================================================
# Job Directory (via qstat)
# ============================================================================


class JobRecord(NamedTuple):
    """Represents a PBS job with its owner and queue."""

    job_id: str
    user: str
    queue: str

    @classmethod
    def from_line(cls, line: str) -> JobRecord | None:
        """Create a JobRecord from a ``qstat -a -w`` row, or None for other lines."""
        tokens = line.split()
        if len(tokens) < 3 or not _JOB_ROW_ID_RE.match(tokens[0]):  # noqa: PLR2004
            return None
        return cls(short_job_id(tokens[0]), tokens[1], tokens[2])


def build_job_directory(text: str) -> dict[str, JobRecord]:
    """Build the job id -> JobRecord lookup from ``qstat -a -w`` output."""
    directory: dict[str, JobRecord] = {}
    for line in text.splitlines():
        record = JobRecord.from_line(line)
        if record is not None:
            directory[record.job_id] = record
    return directory


# ============================================================================
# Identity Resolution (via getent)
# ============================================================================


class GroupIndex(BaseModel):
    """Group table indexed by GID and by member username."""

    gid_to_name: dict[str, str] = Field(default_factory=dict)
    user_to_groups: dict[str, set[str]] = Field(default_factory=dict)

    @classmethod
    def from_getent(cls, group_text: str, passwd_text: str = "") -> GroupIndex:
        """Index ``getent group`` output, adding primary members from ``getent passwd``."""
        gid_to_name: dict[str, str] = {}
        user_to_groups: dict[str, set[str]] = {}
        for line in group_text.splitlines():
            fields = line.strip().split(":")
            if len(fields) < 3:  # noqa: PLR2004
                continue
            name, gid = fields[0], fields[2]
            gid_to_name[gid] = name
            members = fields[3].split(",") if len(fields) > 3 else []  # noqa: PLR2004
            for member in filter(None, (m.strip() for m in members)):
                user_to_groups.setdefault(member, set()).add(name)

        for line in passwd_text.splitlines():
            fields = line.strip().split(":")
            if len(fields) < 4:  # noqa: PLR2004
                continue
            user, gid = fields[0], fields[3]
            if gid in gid_to_name:
                user_to_groups.setdefault(user, set()).add(gid_to_name[gid])

        return cls(gid_to_name=gid_to_name, user_to_groups=user_to_groups)

    def has_group(self, group: str) -> bool:
        return group in self.gid_to_name.values()

    def is_member(self, user: str, group: str) -> bool:
        return group in self.user_to_groups.get(user, set())

    def members(self, group: str) -> set[str]:
        return {user for user, groups in self.user_to_groups.items() if group in groups}


def resolve_user(user: str) -> str:
    """Check that a user exists in the directory.

    Raises:
        UnknownUserError: if the directory has no entry for the user

    """
    result = run_getent_passwd(user)
    if result.returncode != 0 or not result.stdout.strip():
        raise UnknownUserError(user)
    return user


def resolve_group(group: str) -> GroupIndex:
    """Build the group index and check that the group exists.

    Raises:
        UnknownGroupError: if no group of that name is in the group table

    """
    index = GroupIndex.from_getent(
        _check_result(run_getent_group()).stdout,
        _check_result(run_getent_passwd()).stdout,
    )
    if not index.has_group(group):
        raise UnknownGroupError(group)
    return index


# ============================================================================
# Node Records (via pbsnodes)
# ============================================================================


class NodeRecord(BaseModel):
    """One node block of the ``pbsnodes -a`` dump."""

    name: str
    raw_state: str = ""
    power_state: str = ""
    state: NodeState = "UNKN"
    cpu_total: int = Field(default=0, ge=0)
    cpu_assigned: int = Field(default=0, ge=0)
    mem_total_kb: int = Field(default=0, ge=0)
    mem_assigned_kb: int = Field(default=0, ge=0)
    job_ids: list[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def unique_job_count(self) -> int:
        """Number of distinct jobs, counting an array job once."""
        return len({template_id(job_id) for job_id in self.job_ids})

    @classmethod
    def from_attributes(cls, name: str, attributes: Mapping[str, str]) -> NodeRecord:
        """Create a NodeRecord from the ``key = value`` attributes of a block."""
        raw_state = attributes.get("state", "")
        power_state = attributes.get("resources_available.pwr_mgt_power_state", "")
        return cls(
            name=name,
            raw_state=raw_state,
            power_state=power_state,
            state=classify_state(raw_state, power_state),
            cpu_total=_parse_int(attributes.get("resources_available.ncpus", "")),
            cpu_assigned=_parse_int(attributes.get("resources_assigned.ncpus", "")),
            mem_total_kb=_parse_memory_kb(attributes.get("resources_available.mem", "")),
            mem_assigned_kb=_parse_memory_kb(attributes.get("resources_assigned.mem", "")),
            job_ids=parse_job_ids(attributes.get("jobs", "")),
        )


def parse_pbsnodes(text: str) -> list[NodeRecord]:
    """Parse ``pbsnodes -a`` output into one NodeRecord per node block."""
    nodes: list[NodeRecord] = []
    name: str | None = None
    attributes: dict[str, str] = {}

    for line in text.splitlines():
        if not line.strip():
            # Blank line ends the block
            if name is not None:
                nodes.append(NodeRecord.from_attributes(name, attributes))
            name = None
            continue

        if not line[0].isspace():
            if name is not None:
                nodes.append(NodeRecord.from_attributes(name, attributes))
            name = line.strip()
            attributes = {}
            continue

        if name is None:
            continue
        parts = line.split(None, 2)
        if len(parts) >= 2 and parts[1] == "=":  # noqa: PLR2004
            attributes[parts[0]] = parts[2].strip() if len(parts) > 2 else ""  # noqa: PLR2004

    if name is not None:
        nodes.append(NodeRecord.from_attributes(name, attributes))
    return nodes


# ============================================================================
# Reconciliation and Flagging
# ============================================================================


class JobAnnotation(BaseModel):
    """A job id on a node, resolved against the job directory."""

    job_id: str
    template_id: str
    user: str
    queue: str | None = None
    orphaned: bool = False
    severity: Severity = "ok"
    style: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_array_instance(self) -> bool:
        return self.job_id != self.template_id


class AnnotatedNode(NodeRecord):
    """A NodeRecord with its jobs resolved and its anomaly flags derived."""

    jobs: list[JobAnnotation] = Field(default_factory=list)
    matches_identity: bool = True

    @computed_field  # type: ignore[prop-decorator]
    @property
    def mem_pressure_pct(self) -> float:
        """Assigned memory as a percentage of total (+1 avoids division by zero)."""
        return 100 * self.mem_assigned_kb / (self.mem_total_kb + 1)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_pressure_flagged(self) -> bool:
        return self.mem_pressure_pct > MEM_PRESSURE_LIMIT

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_orphan_error(self) -> bool:
        """A non-array job on the node is missing from the job listing."""
        return any(job.severity == "error" for job in self.jobs)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_flagged(self) -> bool:
        """Node warrants operator attention."""
        return self.state in FLAGGED_STATES or self.has_orphan_error or self.is_pressure_flagged


def annotate_job(job_id: str, jobs: Mapping[str, JobRecord], node_state: str, config: Config) -> JobAnnotation:
    """Resolve a job id against the job directory."""
    template = template_id(job_id)
    record = jobs.get(template)
    if record is None:
        # Array templates can lag behind their running instances
        severity: Severity = "error" if job_id == template else "info"
        return JobAnnotation(
            job_id=job_id,
            template_id=template,
            user=ORPHAN_USER,
            orphaned=True,
            severity=severity,
            style=PALETTE[severity],
        )

    style = config.queue_style(record.queue)
    if style is None:
        style = PALETTE[STATE_RENDER[node_state].job_color]
    return JobAnnotation(job_id=job_id, template_id=template, user=record.user, queue=record.queue, style=style)


def annotate_node(
    node: NodeRecord,
    jobs: Mapping[str, JobRecord],
    config: Config,
    identity: Callable[[str], bool] | None = None,
) -> AnnotatedNode:
    """Resolve every job on a node and record whether it matches the identity filter.

    Args:
        node: Parsed node record
        jobs: Job directory from build_job_directory
        config: Display configuration (queue colours)
        identity: Predicate on usernames for an active user/group filter

    Returns:
        The annotated node

    """
    annotations = [annotate_job(job_id, jobs, node.state, config) for job_id in node.job_ids]
    matches = True
    if identity is not None:
        matches = any(not job.orphaned and identity(job.user) for job in annotations)
    return AnnotatedNode.model_validate(
        {**node.model_dump(exclude={"unique_job_count"}), "jobs": annotations, "matches_identity": matches},
    )


def user_predicate(user: str) -> Callable[[str], bool]:
    return lambda job_user: job_user == user


def group_predicate(group: str, index: GroupIndex) -> Callable[[str], bool]:
    return lambda job_user: index.is_member(job_user, group)


# ============================================================================
# Selection
# ============================================================================


class Selection(BaseModel):
    """Filters applied to annotated nodes; all of them must hold."""

    user: str | None = None
    group: str | None = None
    min_jobs: int = Field(default=0, ge=0)
    include_down: bool = False
    flagged_only: bool = False

    @property
    def filters_identity(self) -> bool:
        return self.user is not None or self.group is not None


def validate_filters(user: str | None, group: str | None) -> None:
    """Raise ConflictingFiltersError if both user and group are requested."""
    if user is not None and group is not None:
        raise ConflictingFiltersError


def node_is_selected(node: AnnotatedNode, selection: Selection) -> bool:
    if node.state == "down" and not selection.include_down:
        return False
    if node.unique_job_count < selection.min_jobs:
        return False
    if selection.filters_identity and not node.matches_identity:
        return False
    return not (selection.flagged_only and not node.is_flagged)


def select_nodes(nodes: Iterable[AnnotatedNode], selection: Selection) -> list[AnnotatedNode]:
    """Keep the nodes for which every active filter holds, in input order."""
    return [node for node in nodes if node_is_selected(node, selection)]


# ============================================================================
# Rendering
# ============================================================================


def _styled(text: str, style: str) -> str:
    """Escape feed text and wrap it in rich markup if a style is given."""
    if not style:
        return escape(text)
    return f"[{style}]{escape(text)}[/]"


def format_header(config: Config) -> list[str]:
    """Three header lines: two rows of column titles and a separator."""
    w = config.node_width
    header = [
        f"{'node':<{w}} {'state':<6} {'cpu':>4} {'jobs':>4}  {'mem':>5} {'mem%':>6}   jobs",
        f"{'':<{w}} {'':<6} {'':>4} {'':>4}  {'(GiB)':>5} {'used':>6}   (id[:user])",
        f"{'-' * w} {'-' * 6} {'-' * 4} {'-' * 5} {'-' * 5} {'-' * 7}  {'-' * 16}",
    ]
    return [escape(line) for line in header]


def format_node_line(node: AnnotatedNode, config: Config, *, show_users: bool = False) -> str:
    """Render one annotated node as a rich markup line."""
    render = STATE_RENDER[node.state]
    state_color = PALETTE[render.state_color]
    job_color = PALETTE[render.job_color]

    name = f"{node.name:<{config.node_width}}"
    state = _styled(f"{node.state:<5}", state_color)
    state += _styled(render.glyph, state_color) if render.glyph else " "

    overflow = OVERFLOW_GLYPH if len(node.job_ids) > config.max_jobs_shown else " "
    mem_gib = node.mem_total_kb // (1024 * 1024)
    pressure = f"{node.mem_pressure_pct:>5.0f}%"
    if node.is_pressure_flagged:
        pressure = _styled(pressure, PALETTE["alert"]) + _styled(FLAG_GLYPH, PALETTE["alert"])
    else:
        pressure += " "

    entries = []
    for job in node.jobs[: config.max_jobs_shown]:
        id_style = job_color if show_users else job.style
        entry = _styled(job.job_id, id_style)
        if show_users:
            entry += ":" + _styled(job.user, job.style)
        entries.append(entry)

    return (
        f"{escape(name)} {state} {node.cpu_total:>4} {len(node.job_ids):>4}{overflow} "
        f"{mem_gib:>5} {pressure}  {' '.join(entries)}"
    ).rstrip()


def _make_console(color: bool | None) -> Console:
    """Console honouring --color/--no-color; None leaves terminal detection to rich."""
    if color is None:
        return Console(highlight=False, soft_wrap=True)
    if color:
        # Skip terminal capability detection, it reports no colours for TERM=dumb
        return Console(highlight=False, soft_wrap=True, force_terminal=True, no_color=False, color_system="256")
    return Console(highlight=False, soft_wrap=True, no_color=True, color_system=None)


# ============================================================================
# Cluster Summary
# ============================================================================


def summarize_nodes(nodes: Iterable[AnnotatedNode]) -> pl.DataFrame:
    """Aggregate annotated nodes per classified state."""
    rows = [
        {
            "state": node.state,
            "flagged": node.is_flagged,
            "cpus": node.cpu_total,
            "cpus_free": max(node.cpu_total - node.cpu_assigned, 0),
            "mem_gib": node.mem_total_kb / (1024 * 1024),
            "jobs": node.unique_job_count,
        }
        for node in nodes
    ]
    if not rows:
        return pl.DataFrame()

    return (
        pl.DataFrame(rows)
        .group_by("state")
        .agg(
            [
                pl.len().alias("nodes"),
                pl.col("flagged").sum().alias("flagged"),
                pl.col("cpus").sum().alias("cpus"),
                pl.col("cpus_free").sum().alias("cpus_free"),
                pl.col("mem_gib").sum().alias("mem_gib"),
                pl.col("jobs").sum().alias("jobs"),
            ],
        )
        .sort("state")
    )


def _display_summary(summary: pl.DataFrame, out: Console) -> None:
    if summary.is_empty():
        out.print("[yellow]No nodes reported[/yellow]")
        return

    table = Table(title="PBS cluster summary", box=box.SIMPLE, show_footer=True)
    table.add_column("State", "Total", style="cyan")
    table.add_column("Nodes", str(summary["nodes"].sum()), justify="right")
    table.add_column("Flagged", str(summary["flagged"].sum()), justify="right", style="red")
    table.add_column("CPUs", f"{summary['cpus'].sum():,}", justify="right")
    table.add_column("Free CPUs", f"{summary['cpus_free'].sum():,}", justify="right", style="green")
    table.add_column("Memory (GiB)", f"{summary['mem_gib'].sum():,.0f}", justify="right")
    table.add_column("Jobs", str(summary["jobs"].sum()), justify="right")

    for row in summary.iter_rows(named=True):
        table.add_row(
            row["state"],
            str(row["nodes"]),
            str(row["flagged"]),
            f"{row['cpus']:,}",
            f"{row['cpus_free']:,}",
            f"{row['mem_gib']:,.0f}",
            str(row["jobs"]),
        )
    out.print(table)


# ============================================================================
# Report
# ============================================================================


def collect_nodes(
    config: Config,
    identity: Callable[[str], bool] | None = None,
) -> list[AnnotatedNode]:
    """Read both feeds and reconcile every node.

    The job directory is built completely before any node is resolved.
    """
    jobs = build_job_directory(_check_result(run_qstat()).stdout)
    nodes = parse_pbsnodes(_check_result(run_pbsnodes()).stdout)
    return [annotate_node(node, jobs, config, identity) for node in nodes]


def build_report(selection: Selection, config: Config, *, show_users: bool = False) -> list[str]:
    """Produce the header and the sorted node lines for a selection.

    Raises:
        ConflictingFiltersError: if both user and group filters are set
        UnknownUserError: if the user filter names an unknown user
        UnknownGroupError: if the group filter names an unknown group

    """
    validate_filters(selection.user, selection.group)

    identity = None
    if selection.user is not None:
        identity = user_predicate(resolve_user(selection.user))
    elif selection.group is not None:
        identity = group_predicate(selection.group, resolve_group(selection.group))

    selected = select_nodes(collect_nodes(config, identity), selection)
    lines = [format_node_line(node, config, show_users=show_users) for node in sorted(selected, key=lambda n: n.name)]
    return format_header(config) + lines


@app.command()
def show(
    users: Annotated[bool, typer.Option("--users", "-U", help="Show the owner of every job")] = False,
    flagged: Annotated[bool, typer.Option("--flagged", "-f", help="Only show flagged nodes")] = False,
    down: Annotated[bool, typer.Option("--down", "-d", help="Include nodes that are down")] = False,
    color: Annotated[
        bool | None,
        typer.Option("--color/--no-color", envvar="PBS_NODES_COLOR", help="Force colours on or off (default: auto)"),
    ] = None,
    user: Annotated[str | None, typer.Option("--user", "-u", help="Only nodes running jobs of this user")] = None,
    group: Annotated[str | None, typer.Option("--group", "-g", help="Only nodes running jobs of this group")] = None,
    min_jobs: Annotated[int, typer.Option("--min-jobs", "-m", min=0, help="Only nodes with at least this many jobs")] = 0,
) -> None:
    """Display one line per node with state, load and jobs."""
    out = _make_console(color)
    config = Config.create()
    selection = Selection(user=user, group=group, min_jobs=min_jobs, include_down=down, flagged_only=flagged)

    try:
        lines = build_report(selection, config, show_users=users)
    except NodeReportError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1) from e

    for line in lines:
        out.print(line)


@app.command()
def summary(
    down: Annotated[bool, typer.Option("--down", "-d", help="Include nodes that are down")] = False,
    color: Annotated[
        bool | None,
        typer.Option("--color/--no-color", envvar="PBS_NODES_COLOR", help="Force colours on or off (default: auto)"),
    ] = None,
) -> None:
    """Display node, CPU and memory totals per node state."""
    out = _make_console(color)
    nodes = select_nodes(collect_nodes(Config.create()), Selection(include_down=down))
    _display_summary(summarize_nodes(nodes), out)


if __name__ == "__main__":
    app()
