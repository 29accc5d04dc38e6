"""Data models for the TI service client.

All models use Pydantic v2. Wire models (request and response bodies) are
passed through to the service unchanged: unknown fields are ignored on the
way in, and bodies are serialized by alias on the way out.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class WireModel(BaseModel):
    """Base for request/response bodies exchanged with the TI service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# =============================================================================
# Enumerations
# =============================================================================


class Status(str, Enum):
    """Outcome of a single test case."""

    PASSED = "passed"
    SKIPPED = "skipped"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED_BY_TI = "skipped_by_ti"


class Selection(str, Enum):
    """Why a test was selected to run."""

    SOURCE_CODE = "source_code"
    NEW_TEST = "new_test"
    UPDATED_TEST = "updated_test"
    PREVIOUS_FAILURE = "previous_failure"
    FLAKY_TEST = "flaky_test"
    ALWAYS_RUN_TEST = "always_run_test"


class FileStatus(str, Enum):
    """Change status of a file in the diff under test."""

    MODIFIED = "modified"
    ADDED = "added"
    DELETED = "deleted"


def convert_to_file_status(value: str) -> FileStatus:
    """Map a raw status string to FileStatus; anything unknown is MODIFIED.

    Matching is exact and case sensitive.
    """
    try:
        return FileStatus(value)
    except ValueError:
        return FileStatus.MODIFIED


class SavingsFeature(str, Enum):
    BUILD_CACHE = "build_cache"
    TI = "test_intelligence"
    DLC = "docker_layer_caching"


class IntelligenceExecutionState(str, Enum):
    FULL_RUN = "FULL_RUN"
    OPTIMIZED = "OPTIMIZED"
    DISABLED = "DISABLED"


class TestState(str, Enum):
    """Execution outcome recorded on a callgraph chain."""

    __test__ = False  # not a pytest test class

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    FLAKY = "FLAKY"
    UNKNOWN = "UNKNOWN"


# =============================================================================
# Test Results
# =============================================================================


class Result(WireModel):
    status: Status = Field(description="Outcome of the test case")
    message: str = Field(default="", description="Failure message")
    type: str = Field(default="", description="Failure type, e.g. exception class")
    desc: str = Field(default="", description="Failure description")


class TestCase(WireModel):
    """One executed test case as parsed from a report (e.g. junit)."""

    __test__ = False

    name: str
    class_name: str = ""
    suite_name: str = ""
    file_name: str = ""
    result: Result
    duration_ms: int = 0
    system_out: str = Field(default="", alias="stdout")
    system_err: str = Field(default="", alias="stderr")


# =============================================================================
# Test Selection
# =============================================================================


class File(WireModel):
    """A changed file in the commit range under test."""

    name: str
    status: FileStatus = FileStatus.MODIFIED
    package: str = ""


class RunnableTest(WireModel):
    """A test chosen by the service, identified by package/class/method."""

    pkg: str = ""
    class_: str = Field(default="", alias="class")
    method: str = ""
    selection: Selection | None = None
    autodetect: dict[str, Any] = Field(default_factory=dict)


class SelectTestsReq(WireModel):
    select_all: bool = False
    files: list[File] = Field(default_factory=list)
    ti_config: dict[str, Any] = Field(default_factory=dict)
    test_globs: list[str] = Field(default_factory=list)


class SelectTestsResp(WireModel):
    total_tests: int = 0
    selected_tests: int = 0
    new_tests: int = 0
    updated_tests: int = 0
    src_code_tests: int = 0
    select_all: bool = False
    tests: list[RunnableTest] = Field(default_factory=list)


class MLSelectTestsRequest(WireModel):
    files: list[File] = Field(default_factory=list)
    test_globs: list[str] = Field(default_factory=list)


# =============================================================================
# Agent Downloads, Timing and Commit Info
# =============================================================================


class DownloadLink(WireModel):
    url: str
    rel_path: str = ""


class GetTestTimesReq(WireModel):
    include_filename: bool = False
    include_test_suite: bool = False
    include_test_case: bool = False
    include_classname: bool = False


class GetTestTimesResp(WireModel):
    file_time_map: dict[str, int] = Field(default_factory=dict)
    suite_time_map: dict[str, int] = Field(default_factory=dict)
    test_time_map: dict[str, int] = Field(default_factory=dict)
    class_time_map: dict[str, int] = Field(default_factory=dict)


class CommitInfoResp(WireModel):
    """Last commit of a branch for which a callgraph exists."""

    last_successful_commit_id: str = Field(default="", alias="commit_id")


# =============================================================================
# Report Summaries
# =============================================================================


class SummaryRequest(WireModel):
    """Scope of a report summary; blank fields default to the client config."""

    all_stages: bool = False
    org_id: str = ""
    project_id: str = ""
    pipeline_id: str = ""
    build_id: str = ""
    stage_id: str = ""
    step_id: str = ""
    report_type: str = ""


class SummaryResponse(WireModel):
    total_tests: int = 0
    failed_tests: int = 0
    successful_tests: int = 0
    skipped_tests: int = 0
    time_ms: int = Field(default=0, alias="duration_ms")


class TestCasesRequest(WireModel):
    __test__ = False

    basic_info: SummaryRequest = Field(default_factory=SummaryRequest)
    test_case_search_term: str = ""
    sort: str = ""
    order: str = ""
    page_index: str = ""
    page_size: str = ""
    suite_name: str = ""


class ResponseMetadata(WireModel):
    total_pages: int = Field(default=0, alias="totalPages")
    total_items: int = Field(default=0, alias="totalItems")
    page_item_count: int = Field(default=0, alias="pageItemCount")
    page_size: int = Field(default=0, alias="pageSize")


class TestCases(WireModel):
    __test__ = False

    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata, alias="data")
    tests: list[TestCase] = Field(default_factory=list, alias="content")


# =============================================================================
# Savings
# =============================================================================


class GradleTask(WireModel):
    name: str = ""
    time_ms: int = 0
    state: str = ""


class GradleGoal(WireModel):
    name: str = ""
    time_ms: int = 0
    tasks: list[GradleTask] = Field(default_factory=list)


class GradleProfile(WireModel):
    goals: list[GradleGoal] = Field(default_factory=list)
    cmd: str = Field(default="", alias="command")
    build_time_ms: int = 0
    task_execution_time_ms: int = 0


class GradleMetrics(WireModel):
    profiles: list[GradleProfile] = Field(default_factory=list)


class SavingsRequest(WireModel):
    gradle_metrics: GradleMetrics = Field(default_factory=GradleMetrics)
    dlc_metrics: dict[str, Any] = Field(default_factory=dict)


class SavingsOverview(WireModel):
    feature_name: SavingsFeature
    time_taken_ms: int = 0
    time_saved_ms: int = 0
    baseline_ms: int = 0
    feature_state: IntelligenceExecutionState


class SavingsResponse(WireModel):
    overview: list[SavingsOverview] = Field(default_factory=list)
    dlc_metrics: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Callgraph Upload (v2 JSON format)
# =============================================================================


class Identifier(WireModel):
    """Scope under which tests and chains of a callgraph are stored."""

    id: str = Field(default="", alias="_id")
    account_id: str = Field(default="", alias="accountId")
    org_id: str = Field(default="", alias="orgId")
    project_id: str = Field(default="", alias="projectId")
    repo: str = ""
    created_at: datetime | None = Field(default=None, alias="createdAt")
    expires_at: datetime | None = Field(default=None, alias="expiresAt")
    extra_info: dict[str, str] = Field(default_factory=dict, alias="extraInfo")
    parent_unique_id: str = Field(default="", alias="parentUniqueId")
    unique_id: str = Field(default="", alias="uniqueId")


class IndicativeChain(WireModel):
    source_paths: list[str] = Field(default_factory=list)


class Test(WireModel):
    __test__ = False

    id: str = Field(default="", alias="_id")
    key: str = ""
    path: str = ""
    indicative_chains: list[IndicativeChain] = Field(default_factory=list, alias="indicativeChains")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    expire_at: datetime | None = Field(default=None, alias="expireAt")


class Chain(WireModel):
    id: str = Field(default="", alias="_id")
    key: str = ""
    path: str = ""
    test_checksum: str = Field(default="", alias="testChecksum")
    checksum: str = ""
    state: TestState = TestState.UNKNOWN
    extra_info: dict[str, str] = Field(default_factory=dict, alias="extraInfo")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    expire_at: datetime | None = Field(default=None, alias="expireAt")


class UploadCgRequest(WireModel):
    identifier: Identifier = Field(default_factory=Identifier)
    tests: list[Test] = Field(default_factory=list)
    chains: list[Chain] = Field(default_factory=list)
    path_to_test_num_map: dict[str, int] = Field(default_factory=dict, alias="pathToTestNumMap")
    total_tests: int = Field(default=0, alias="totalTests")
    failed_tests: list[str] = Field(default_factory=list, alias="failedTests")


@dataclass(frozen=True)
class RawJSONText:
    """Callgraph payload that is already serialized JSON; sent verbatim."""

    text: str


@dataclass(frozen=True)
class UnsupportedPayload:
    """Any payload shape the v2 upload does not accept."""

    value: Any


CgPayload = Union[RawJSONText, UnsupportedPayload]


def cg_payload(value: Any) -> CgPayload:
    """Tag an arbitrary upload value: strings are raw JSON, the rest unsupported."""
    if isinstance(value, (RawJSONText, UnsupportedPayload)):
        return value
    if isinstance(value, str):
        return RawJSONText(value)
    return UnsupportedPayload(value)


# =============================================================================
# Runtime Configuration Models
# =============================================================================


class ClientConfig(BaseModel):
    """Immutable settings of one TI service client.

    Created once per client. Per-call values (step ID, branches) are passed
    to the operations instead of being stored here.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    endpoint: str = Field(default="", description="TI service base URL, e.g. https://ti.example.com")
    token: str = Field(default="", repr=False, description="Shared secret sent as X-Harness-Token")
    account_id: str = Field(default="", description="Account identifier")
    org_id: str = Field(default="", description="Organization identifier")
    project_id: str = Field(default="", description="Project identifier")
    pipeline_id: str = Field(default="", description="Pipeline identifier")
    build_id: str = Field(default="", description="Build (execution) identifier")
    stage_id: str = Field(default="", description="Stage identifier")
    repo: str = Field(default="", description="Repository URL")
    sha: str = Field(default="", description="Commit SHA under test")
    commit_link: str = Field(default="", description="Link to the commit")
    skip_verify: bool = Field(default=False, description="Disable TLS verification")
    additional_certs_dir: str = Field(default="", description="Directory of extra PEM trust roots")
    mtls_client_cert: str = Field(default="", repr=False, description="Base64 PEM client certificate")
    mtls_client_key: str = Field(default="", repr=False, description="Base64 PEM client key")
    request_timeout: float = Field(default=60.0, gt=0, description="Per-attempt timeout in seconds")

    @field_validator("endpoint")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.removesuffix("/")
