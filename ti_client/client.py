"""TI service client - one method per remote operation.

Every operation follows the same steps: validate the arguments it needs,
build the endpoint URL from the configured scope and the call parameters
(query parameters in a fixed order), then run the request through the
executor, either once or with a fresh backoff schedule.

Usage:
    config = ClientConfig(endpoint="https://ti.example.com", token="...", ...)
    with TIClient(config) as client:
        resp = client.select_tests("step", "feature", "main", SelectTestsReq())
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence, TypeVar, runtime_checkable
from urllib.parse import quote, urlencode

import httpx

from ti_client import validation
from ti_client.backoff import CALLGRAPH_BUDGET, LOOKUP_BUDGET, RESULTS_BUDGET, new_backoff
from ti_client.cancellation import CancellationToken
from ti_client.certs import (
    DEFAULT_MTLS_CERT_PATH,
    DEFAULT_MTLS_KEY_PATH,
    resolve_client_certificate,
    resolve_trust_roots,
)
from ti_client.errors import HealthCheckError, UnsupportedPayloadError
from ti_client.executor import RequestExecutor, RequestOutcome
from ti_client.models import (
    CgPayload,
    ClientConfig,
    CommitInfoResp,
    DownloadLink,
    GetTestTimesReq,
    GetTestTimesResp,
    IntelligenceExecutionState,
    MLSelectTestsRequest,
    RawJSONText,
    SavingsFeature,
    SavingsRequest,
    SelectTestsReq,
    SelectTestsResp,
    SummaryRequest,
    SummaryResponse,
    TestCase,
    TestCases,
    TestCasesRequest,
)
from ti_client.transport import needs_custom_transport, transport_for

logger = logging.getLogger(__name__)

T = TypeVar("T")

WRITE_PATH = "/reports/write"
SELECT_TESTS_PATH = "/tests/select"
UPLOAD_CG_PATH = "/tests/uploadcg"
UPLOAD_CG_V2_PATH = "/v2/uploadcg"
TEST_TIMES_PATH = "/tests/timedata"
AGENT_LINK_PATH = "/agents/link"
COMMIT_INFO_PATH = "/vcs/commitinfo"
ML_SELECT_TESTS_PATH = "/ml/tests/select"
SUMMARY_PATH = "/reports/summary"
TEST_CASES_PATH = "/reports/test_cases"
HEALTHZ_PATH = "/healthz"
SAVINGS_PATH = "/savings"

DEFAULT_REPORT_TYPE = "junit"


@runtime_checkable
class TIService(Protocol):
    """Operations offered by the TI service."""

    def write(self, step_id: str, report: str, tests: Sequence[TestCase], *, cancel: CancellationToken | None = None) -> None:
        """Write test results."""

    def select_tests(
        self,
        step_id: str,
        source: str,
        target: str,
        request: SelectTestsReq,
        failed_test_rerun_enabled: bool = False,
        *,
        cancel: CancellationToken | None = None,
    ) -> SelectTestsResp:
        """Return the tests which should run for the change."""

    def upload_cg(
        self,
        step_id: str,
        source: str,
        target: str,
        time_ms: int,
        cg: bytes,
        failed_test_rerun_enabled: bool = False,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Upload an avro encoded callgraph."""

    def upload_cg_failed_test(
        self,
        step_id: str,
        source: str,
        target: str,
        time_ms: int,
        cg: bytes,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Upload a callgraph without advancing the last successful commit."""

    def upload_cg_v2(self, payload: CgPayload, *, cancel: CancellationToken | None = None) -> None:
        """Upload a JSON callgraph."""

    def download_link(
        self,
        language: str,
        os_name: str,
        arch: str,
        framework: str,
        version: str,
        env: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[DownloadLink]:
        """Return where the agent artifacts can be downloaded."""

    def download_agent(self, url: str, *, cancel: CancellationToken | None = None) -> httpx.Response:
        """Stream an agent artifact."""

    def get_test_times(
        self, step_id: str, request: GetTestTimesReq, *, cancel: CancellationToken | None = None
    ) -> GetTestTimesResp:
        """Return test timing data."""

    def commit_info(self, step_id: str, branch: str, *, cancel: CancellationToken | None = None) -> CommitInfoResp:
        """Return the last commit of a branch for which there is a callgraph."""

    def ml_select_tests(
        self,
        step_id: str,
        ml_key: str,
        source: str,
        target: str,
        request: MLSelectTestsRequest,
        *,
        cancel: CancellationToken | None = None,
    ) -> SelectTestsResp:
        """Return the tests which should run, chosen by the ML model."""

    def summary(self, request: SummaryRequest, *, cancel: CancellationToken | None = None) -> SummaryResponse:
        """Return a summary of the test executions of a build."""

    def get_test_cases(self, request: TestCasesRequest, *, cancel: CancellationToken | None = None) -> TestCases:
        """Return the test cases executed in a build."""

    def write_savings(
        self,
        step_id: str,
        feature_name: SavingsFeature,
        feature_state: IntelligenceExecutionState,
        time_taken_ms: int,
        request: SavingsRequest,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Write the time saved by a feature in a step."""

    def healthz(self, *, cancel: CancellationToken | None = None) -> None:
        """Ping the service."""


def _or_default(outcome: RequestOutcome, default: Callable[[], T]) -> T:
    # A 204 carries no body; callers get the empty result instead.
    return outcome.value if outcome.value is not None else default()


class TIClient:
    """HTTP client for the TI service.

    The client is safe to share between threads: it only holds the immutable
    config, the resolved credentials and the HTTP transport.

    Args:
        config: Endpoint, token, scope identifiers and security settings.
        http_client: Transport to use instead of the one derived from the
            security settings (e.g. an httpx.Client over MockTransport).
        mtls_cert_path: Certificate file used when no inline certificate is set.
        mtls_key_path: Key file used when no inline certificate is set.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        http_client: httpx.Client | None = None,
        mtls_cert_path: str | Path = DEFAULT_MTLS_CERT_PATH,
        mtls_key_path: str | Path = DEFAULT_MTLS_KEY_PATH,
    ) -> None:
        self.config = config
        self.client_cert = resolve_client_certificate(
            config.mtls_client_cert,
            config.mtls_client_key,
            mtls_cert_path,
            mtls_key_path,
        )
        self.trust_roots = resolve_trust_roots(config.additional_certs_dir)

        self._owns_http_client = http_client is None and needs_custom_transport(
            config.skip_verify, self.trust_roots, self.client_cert
        )
        if http_client is None:
            http_client = transport_for(config.skip_verify, self.trust_roots, self.client_cert)
        self._http_client = http_client
        self._executor = RequestExecutor(http_client, config.token, config.request_timeout)

        logger.debug(
            "TI client for %s (custom transport: %s, mTLS: %s)",
            config.endpoint,
            self._owns_http_client,
            self.client_cert is not None,
        )

    def __enter__(self) -> TIClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the transport if this client created a custom one.

        The shared default transport and injected clients are left open.
        """
        if self._owns_http_client:
            self._http_client.close()

    @property
    def endpoint(self) -> str:
        return self.config.endpoint

    @property
    def http_client(self) -> httpx.Client:
        return self._http_client

    # -------------------------------------------------------------------------
    # URL construction
    # -------------------------------------------------------------------------

    def _url(self, path: str, params: Sequence[tuple[str, Any]] = ()) -> str:
        url = self.config.endpoint + path
        if params:
            url += "?" + urlencode([(k, str(v)) for k, v in params], quote_via=quote)
        return url

    def _step_params(self, step_id: str) -> list[tuple[str, Any]]:
        c = self.config
        return [
            ("accountId", c.account_id),
            ("orgId", c.org_id),
            ("projectId", c.project_id),
            ("pipelineId", c.pipeline_id),
            ("buildId", c.build_id),
            ("stageId", c.stage_id),
            ("stepId", step_id),
        ]

    def _summary_params(self, request: SummaryRequest) -> list[tuple[str, Any]]:
        return [
            ("accountId", self.config.account_id),
            ("orgId", request.org_id),
            ("projectId", request.project_id),
            ("pipelineId", request.pipeline_id),
            ("buildId", request.build_id),
            ("stageId", request.stage_id),
            ("stepId", request.step_id),
            ("report", request.report_type),
        ]

    def with_basic_arguments(self, request: SummaryRequest) -> SummaryRequest:
        """Fill blank summary scope fields from the config.

        The report type defaults to junit. A request for all stages drops the
        stage and step filters. Returns a new request; the argument is not
        modified.
        """
        c = self.config
        update: dict[str, Any] = {
            "org_id": request.org_id or c.org_id,
            "project_id": request.project_id or c.project_id,
            "pipeline_id": request.pipeline_id or c.pipeline_id,
            "build_id": request.build_id or c.build_id,
            "report_type": request.report_type or DEFAULT_REPORT_TYPE,
        }
        if request.all_stages:
            update["stage_id"] = ""
            update["step_id"] = ""
        return request.model_copy(update=update)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def write(
        self,
        step_id: str,
        report: str,
        tests: Sequence[TestCase],
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Write test results of a step to the TI service."""
        validation.validate_write(self.config, step_id, report)
        c = self.config
        url = self._url(
            WRITE_PATH,
            self._step_params(step_id)
            + [("report", report), ("repo", c.repo), ("sha", c.sha), ("commitLink", c.commit_link)],
        )
        self._executor.retry(
            url,
            "POST",
            c.sha,
            list(tests),
            backoff=new_backoff(RESULTS_BUDGET),
            retry_on_server_error=False,
            cancel=cancel,
        )

    def select_tests(
        self,
        step_id: str,
        source: str,
        target: str,
        request: SelectTestsReq,
        failed_test_rerun_enabled: bool = False,
        *,
        cancel: CancellationToken | None = None,
    ) -> SelectTestsResp:
        """Return the tests which should run for the changes between branches."""
        validation.validate_select_tests(self.config, step_id, source, target)
        c = self.config
        params = self._step_params(step_id) + [
            ("repo", c.repo),
            ("sha", c.sha),
            ("source", source),
            ("target", target),
        ]
        if failed_test_rerun_enabled:
            params.append(("failedTestRerunEnabled", "true"))
        outcome = self._executor.retry(
            self._url(SELECT_TESTS_PATH, params),
            "POST",
            c.sha,
            request,
            backoff=new_backoff(RESULTS_BUDGET),
            retry_on_server_error=False,
            result=SelectTestsResp,
            cancel=cancel,
        )
        return _or_default(outcome, SelectTestsResp)

    def upload_cg(
        self,
        step_id: str,
        source: str,
        target: str,
        time_ms: int,
        cg: bytes,
        failed_test_rerun_enabled: bool = False,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Upload an avro encoded callgraph and advance the last good commit."""
        extra: list[tuple[str, Any]] = [("schemaVersion", "1.1")]
        if failed_test_rerun_enabled:
            extra.append(("failedTestRerunEnabled", "true"))
        self._upload_cg(step_id, source, target, time_ms, cg, extra, cancel)

    def upload_cg_failed_test(
        self,
        step_id: str,
        source: str,
        target: str,
        time_ms: int,
        cg: bytes,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Upload a callgraph of a run with failed tests.

        The service stores the graph but keeps the last successful commit.
        """
        self._upload_cg(step_id, source, target, time_ms, cg, [("hasFailedTests", "true")], cancel)

    def _upload_cg(
        self,
        step_id: str,
        source: str,
        target: str,
        time_ms: int,
        cg: bytes,
        extra: list[tuple[str, Any]],
        cancel: CancellationToken | None,
    ) -> None:
        validation.validate_upload_cg(self.config, step_id, source, target)
        c = self.config
        params = self._step_params(step_id) + [
            ("repo", c.repo),
            ("sha", c.sha),
            ("source", source),
            ("target", target),
            ("timeMs", time_ms),
        ] + extra
        # The avro bytes travel as a JSON string holding their base64 form.
        body = base64.b64encode(cg).decode("ascii")
        self._executor.retry(
            self._url(UPLOAD_CG_PATH, params),
            "POST",
            c.sha,
            body,
            backoff=new_backoff(CALLGRAPH_BUDGET),
            retry_on_server_error=True,
            cancel=cancel,
        )

    def upload_cg_v2(self, payload: CgPayload, *, cancel: CancellationToken | None = None) -> None:
        """Upload a JSON callgraph (see models.cg_payload for tagging raw values).

        Raises:
            UnsupportedPayloadError: If the payload is not RawJSONText.
        """
        validation.validate_service(self.config)
        if not isinstance(payload, RawJSONText):
            raise UnsupportedPayloadError()
        self._executor.retry(
            self._url(UPLOAD_CG_V2_PATH),
            "POST",
            content=payload.text.encode("utf-8"),
            backoff=new_backoff(CALLGRAPH_BUDGET),
            retry_on_server_error=True,
            cancel=cancel,
        )

    def download_link(
        self,
        language: str,
        os_name: str,
        arch: str,
        framework: str,
        version: str,
        env: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[DownloadLink]:
        """Return the links where the agent artifacts for a platform live."""
        validation.validate_download_link(self.config, language)
        url = self._url(
            AGENT_LINK_PATH,
            [
                ("accountId", self.config.account_id),
                ("language", language),
                ("os", os_name),
                ("arch", arch),
                ("framework", framework),
                ("version", version),
                ("buildenv", env),
            ],
        )
        outcome = self._executor.retry(
            url,
            "GET",
            backoff=new_backoff(LOOKUP_BUDGET),
            retry_on_server_error=True,
            result=list[DownloadLink],
            cancel=cancel,
        )
        return _or_default(outcome, list)

    def download_agent(self, url: str, *, cancel: CancellationToken | None = None) -> httpx.Response:
        """Open a streaming download of an agent artifact.

        ``url`` is absolute (taken from a DownloadLink). The response is
        returned unread; the caller must close it.
        """
        validation.validate_service(self.config)
        return self._executor.open(url, "GET", cancel=cancel)

    def get_test_times(
        self,
        step_id: str,
        request: GetTestTimesReq,
        *,
        cancel: CancellationToken | None = None,
    ) -> GetTestTimesResp:
        validation.validate_pipeline(self.config)
        outcome = self._executor.retry(
            self._url(TEST_TIMES_PATH, self._step_params(step_id)),
            "POST",
            "",
            request,
            backoff=new_backoff(RESULTS_BUDGET),
            retry_on_server_error=True,
            result=GetTestTimesResp,
            cancel=cancel,
        )
        return _or_default(outcome, GetTestTimesResp)

    def commit_info(
        self,
        step_id: str,
        branch: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> CommitInfoResp:
        """Return the last commit of ``branch`` that has a callgraph."""
        validation.validate_commit_info(self.config, step_id, branch)
        url = self._url(
            COMMIT_INFO_PATH,
            self._step_params(step_id) + [("repo", self.config.repo), ("branch", branch)],
        )
        outcome = self._executor.retry(
            url,
            "GET",
            backoff=new_backoff(LOOKUP_BUDGET),
            retry_on_server_error=True,
            result=CommitInfoResp,
            cancel=cancel,
        )
        return _or_default(outcome, CommitInfoResp)

    def ml_select_tests(
        self,
        step_id: str,
        ml_key: str,
        source: str,
        target: str,
        request: MLSelectTestsRequest,
        *,
        cancel: CancellationToken | None = None,
    ) -> SelectTestsResp:
        """Select tests with the ML model. Single attempt, never retried."""
        validation.validate_pipeline(self.config)
        c = self.config
        params = self._step_params(step_id) + [
            ("repo", c.repo),
            ("sha", c.sha),
            ("source", source),
            ("target", target),
            ("mlKey", ml_key),
            ("commitLink", c.commit_link),
        ]
        if cancel is not None:
            cancel.raise_if_cancelled()
        outcome = self._executor.do(
            self._url(ML_SELECT_TESTS_PATH, params),
            "POST",
            "",
            request,
            result=SelectTestsResp,
            cancel=cancel,
        )
        return _or_default(outcome, SelectTestsResp)

    def summary(self, request: SummaryRequest, *, cancel: CancellationToken | None = None) -> SummaryResponse:
        validation.validate_pipeline(self.config)
        request = self.with_basic_arguments(request)
        outcome = self._executor.retry(
            self._url(SUMMARY_PATH, self._summary_params(request)),
            "GET",
            backoff=new_backoff(LOOKUP_BUDGET),
            retry_on_server_error=True,
            result=SummaryResponse,
            cancel=cancel,
        )
        return _or_default(outcome, SummaryResponse)

    def get_test_cases(self, request: TestCasesRequest, *, cancel: CancellationToken | None = None) -> TestCases:
        """Return one page of the test cases executed in a build."""
        validation.validate_pipeline(self.config)
        basic = self.with_basic_arguments(request.basic_info)
        params = self._summary_params(basic) + [
            ("testCaseSearchTerm", request.test_case_search_term),
            ("sort", request.sort),
            ("order", request.order),
            ("pageIndex", request.page_index),
            ("pageSize", request.page_size),
            ("suite_name", request.suite_name),
        ]
        outcome = self._executor.retry(
            self._url(TEST_CASES_PATH, params),
            "GET",
            backoff=new_backoff(LOOKUP_BUDGET),
            retry_on_server_error=True,
            result=TestCases,
            cancel=cancel,
        )
        return _or_default(outcome, TestCases)

    def write_savings(
        self,
        step_id: str,
        feature_name: SavingsFeature,
        feature_state: IntelligenceExecutionState,
        time_taken_ms: int,
        request: SavingsRequest,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Report time saved by a feature. Fire-and-forget: one attempt only."""
        validation.validate_write_savings(self.config, step_id)
        params = self._step_params(step_id) + [
            ("repo", self.config.repo),
            ("featureName", SavingsFeature(feature_name).value),
            ("featureState", IntelligenceExecutionState(feature_state).value),
            ("timeMs", int(time_taken_ms)),
        ]
        if cancel is not None:
            cancel.raise_if_cancelled()
        self._executor.do(self._url(SAVINGS_PATH, params), "POST", "", request, cancel=cancel)

    def healthz(self, *, cancel: CancellationToken | None = None) -> None:
        """Ping the service; anything but HTTP 200 raises.

        Raises:
            HealthCheckError: If the service answered 2xx other than 200.
            DomainError: If the service answered with an error status.
        """
        validation.validate_service(self.config)
        if cancel is not None:
            cancel.raise_if_cancelled()
        outcome = self._executor.do(self._url(HEALTHZ_PATH), "GET", cancel=cancel)
        if outcome.status_code != httpx.codes.OK:
            raise HealthCheckError(
                outcome.status_code,
                f"TI Healthz Ping failed. Status Code:{outcome.status_code}",
            )
