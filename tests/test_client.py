"""Tests for the TIClient operation façade.

Tests cover:
- Construction (endpoint normalization, transport ownership)
- URL paths and query parameter order per operation
- Request bodies and headers per operation
- Retry policy per operation (retried, not retried, single attempt)
- Validation failures never reach the network
"""

import base64
import json
from pathlib import Path
from typing import Callable
from unittest.mock import MagicMock

import httpx
import pytest

from ti_client.cancellation import CancellationToken
from ti_client.client import TIClient, TIService
from ti_client.errors import (
    CancelledError,
    HealthCheckError,
    ServerError,
    UnsupportedPayloadError,
    ValidationError,
)
from ti_client.models import (
    ClientConfig,
    CommitInfoResp,
    GetTestTimesReq,
    IntelligenceExecutionState,
    MLSelectTestsRequest,
    RawJSONText,
    Result,
    SavingsFeature,
    SavingsRequest,
    SelectTestsReq,
    SelectTestsResp,
    Status,
    SummaryRequest,
    TestCase,
    TestCasesRequest,
    UnsupportedPayload,
    cg_payload,
)
from ti_client.transport import default_transport
from tests.conftest import ENDPOINT, StubService, make_response, query_items

MakeClient = Callable[..., tuple[TIClient, StubService]]

STEP_SCOPE = [
    ("accountId", "acct"),
    ("orgId", "org"),
    ("projectId", "proj"),
    ("pipelineId", "pipe"),
    ("buildId", "42"),
    ("stageId", "stage"),
    ("stepId", "step"),
]
REPO = "https://github.com/example/repo"
COMMIT_LINK = "https://github.com/example/repo/commit/abc123"


class TestConstruction:
    def test_trailing_slash_stripped(self, make_client: MakeClient) -> None:
        client, _ = make_client(config=ClientConfig(endpoint="https://svc.example.com/", token="t"))
        assert client.endpoint == "https://svc.example.com"

    def test_satisfies_service_protocol(self, make_client: MakeClient) -> None:
        client, _ = make_client()
        assert isinstance(client, TIService)

    def test_injected_client_not_closed(self, make_client: MakeClient) -> None:
        """Only transports built by the TI client are closed by it."""
        client, _ = make_client()
        client.close()
        assert not client.http_client.is_closed

    def test_default_settings_use_shared_transport(self, client_config: ClientConfig, tmp_path: Path) -> None:
        with TIClient(
            client_config,
            mtls_cert_path=tmp_path / "a.crt",
            mtls_key_path=tmp_path / "a.key",
        ) as client:
            assert client.http_client is default_transport()
        assert not default_transport().is_closed

    def test_skip_verify_builds_owned_transport(self, client_config: ClientConfig, tmp_path: Path) -> None:
        config = client_config.model_copy(update={"skip_verify": True})
        client = TIClient(config, mtls_cert_path=tmp_path / "a.crt", mtls_key_path=tmp_path / "a.key")
        assert client.http_client is not default_transport()
        client.close()
        assert client.http_client.is_closed


class TestHealthz:
    def test_ok(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200)])
        client.healthz()
        assert stub.last_request.url == httpx.URL(f"{ENDPOINT}/healthz")
        assert stub.last_request.method == "GET"

    def test_server_error(self, make_client: MakeClient) -> None:
        """Healthz is a single attempt; a 503 fails immediately."""
        client, stub = make_client([make_response(503)])
        with pytest.raises(ServerError):
            client.healthz()
        assert stub.calls == 1

    def test_non_200_success_is_an_error(self, make_client: MakeClient) -> None:
        client, _ = make_client([make_response(202)])
        with pytest.raises(HealthCheckError) as exc_info:
            client.healthz()
        assert exc_info.value.message == "TI Healthz Ping failed. Status Code:202"

    def test_missing_token(self, make_client: MakeClient) -> None:
        client, stub = make_client(config=ClientConfig(endpoint=ENDPOINT))
        with pytest.raises(ValidationError, match="ti token is not set"):
            client.healthz()
        assert stub.calls == 0


class TestWrite:
    def test_request(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(204)])
        tests = [
            TestCase(name="test_a", class_name="A", result=Result(status=Status.PASSED), system_out="hi")
        ]
        client.write("step", "junit", tests)

        request = stub.last_request
        assert request.method == "POST"
        assert request.url.path == "/reports/write"
        assert query_items(request) == STEP_SCOPE + [
            ("report", "junit"),
            ("repo", REPO),
            ("sha", "abc123"),
            ("commitLink", COMMIT_LINK),
        ]
        assert request.headers["X-Request-ID"] == "abc123"
        body = json.loads(request.content)
        assert body[0]["name"] == "test_a"
        assert body[0]["result"]["status"] == "passed"
        assert body[0]["stdout"] == "hi"

    def test_server_error_not_retried(self, make_client: MakeClient, no_sleep: MagicMock) -> None:
        client, stub = make_client([make_response(500), make_response(204)])
        with pytest.raises(ServerError):
            client.write("step", "junit", [])
        assert stub.calls == 1

    def test_missing_report(self, make_client: MakeClient) -> None:
        client, stub = make_client()
        with pytest.raises(ValidationError, match="report is not set"):
            client.write("step", "", [])
        assert stub.calls == 0


class TestSelectTests:
    def test_request_and_response(self, make_client: MakeClient) -> None:
        client, stub = make_client(
            [make_response(200, json={"selected_tests": 2, "tests": [{"pkg": "p", "class": "C", "method": "m"}]})]
        )
        resp = client.select_tests("step", "feature", "main", SelectTestsReq(select_all=True))

        assert resp.selected_tests == 2
        assert resp.tests[0].class_ == "C"
        request = stub.last_request
        assert request.url.path == "/tests/select"
        assert query_items(request) == STEP_SCOPE + [
            ("repo", REPO),
            ("sha", "abc123"),
            ("source", "feature"),
            ("target", "main"),
        ]
        assert request.headers["X-Request-ID"] == "abc123"
        assert json.loads(request.content)["select_all"] is True

    def test_failed_test_rerun_flag(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200, json={})])
        client.select_tests("step", "feature", "main", SelectTestsReq(), failed_test_rerun_enabled=True)
        assert query_items(stub.last_request)[-1] == ("failedTestRerunEnabled", "true")

    def test_no_content_returns_empty_response(self, make_client: MakeClient) -> None:
        client, _ = make_client([make_response(204)])
        assert client.select_tests("step", "f", "m", SelectTestsReq()) == SelectTestsResp()

    def test_missing_target(self, make_client: MakeClient) -> None:
        client, stub = make_client()
        with pytest.raises(ValidationError, match="target branch is not set"):
            client.select_tests("step", "feature", "", SelectTestsReq())
        assert stub.calls == 0


class TestUploadCg:
    def test_body_is_base64_json_string(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200)])
        client.upload_cg("step", "feature", "main", 1234, b"\x00avro\xff")

        request = stub.last_request
        assert request.url.path == "/tests/uploadcg"
        assert json.loads(request.content) == base64.b64encode(b"\x00avro\xff").decode("ascii")
        assert query_items(request)[-3:] == [("target", "main"), ("timeMs", "1234"), ("schemaVersion", "1.1")]
        assert request.headers["X-Request-ID"] == "abc123"

    def test_failed_test_rerun_flag(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200)])
        client.upload_cg("step", "feature", "main", 1, b"", failed_test_rerun_enabled=True)
        assert query_items(stub.last_request)[-2:] == [
            ("schemaVersion", "1.1"),
            ("failedTestRerunEnabled", "true"),
        ]

    def test_failed_test_variant(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200)])
        client.upload_cg_failed_test("step", "feature", "main", 1, b"cg")
        items = query_items(stub.last_request)
        assert items[-1] == ("hasFailedTests", "true")
        assert ("schemaVersion", "1.1") not in items

    def test_server_errors_retried(self, make_client: MakeClient, no_sleep: MagicMock) -> None:
        """Callgraph uploads retry 5xx: 503, 503, 200 is three attempts."""
        client, stub = make_client([make_response(503), make_response(503), make_response(200)])
        client.upload_cg("step", "feature", "main", 1, b"cg")
        assert stub.calls == 3


class TestUploadCgV2:
    def test_raw_json_sent_verbatim(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200)])
        client.upload_cg_v2(RawJSONText('{"tests": []}'))

        request = stub.last_request
        assert request.url == httpx.URL(f"{ENDPOINT}/v2/uploadcg")
        assert request.content == b'{"tests": []}'
        assert request.headers["Content-Type"] == "application/json"

    def test_string_tagged_as_raw_json(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200)])
        client.upload_cg_v2(cg_payload("{}"))
        assert stub.last_request.content == b"{}"

    def test_unsupported_payload(self, make_client: MakeClient) -> None:
        """Any other payload shape fails before any I/O."""
        client, stub = make_client()
        with pytest.raises(UnsupportedPayloadError, match="payload type not supported"):
            client.upload_cg_v2(UnsupportedPayload({"tests": []}))
        with pytest.raises(UnsupportedPayloadError):
            client.upload_cg_v2(cg_payload(b"bytes"))
        assert stub.calls == 0

    def test_server_errors_retried(self, make_client: MakeClient, no_sleep: MagicMock) -> None:
        client, stub = make_client([make_response(502), make_response(200)])
        client.upload_cg_v2(RawJSONText("{}"))
        assert stub.calls == 2


class TestDownloads:
    def test_download_link(self, make_client: MakeClient) -> None:
        client, stub = make_client(
            [make_response(200, json=[{"url": "https://cdn.example.com/agent.zip", "rel_path": "java/agent.zip"}])]
        )
        links = client.download_link("java", "linux", "amd64", "maven", "1.0", "cloud")

        assert links[0].url == "https://cdn.example.com/agent.zip"
        assert links[0].rel_path == "java/agent.zip"
        request = stub.last_request
        assert request.url.path == "/agents/link"
        assert query_items(request) == [
            ("accountId", "acct"),
            ("language", "java"),
            ("os", "linux"),
            ("arch", "amd64"),
            ("framework", "maven"),
            ("version", "1.0"),
            ("buildenv", "cloud"),
        ]

    def test_download_link_no_content(self, make_client: MakeClient) -> None:
        client, _ = make_client([make_response(204)])
        assert client.download_link("java", "linux", "amd64", "", "", "") == []

    def test_download_link_requires_language(self, make_client: MakeClient) -> None:
        client, stub = make_client()
        with pytest.raises(ValidationError, match="language is not set"):
            client.download_link("", "linux", "amd64", "", "", "")
        assert stub.calls == 0

    def test_download_agent_streams(self, make_client: MakeClient) -> None:
        """The response is handed over unread; the caller closes it."""
        client, stub = make_client([make_response(200, content=b"agent-bytes")])
        response = client.download_agent("https://cdn.example.com/agent.zip")
        try:
            assert response.status_code == 200
            assert response.read() == b"agent-bytes"
        finally:
            response.close()
        assert stub.last_request.headers["X-Harness-Token"] == "secret-token"


class TestLookups:
    def test_get_test_times(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200, json={"file_time_map": {"a.py": 10}})])
        resp = client.get_test_times("step", GetTestTimesReq(include_filename=True))

        assert resp.file_time_map == {"a.py": 10}
        request = stub.last_request
        assert request.method == "POST"
        assert request.url.path == "/tests/timedata"
        assert query_items(request) == STEP_SCOPE
        assert json.loads(request.content)["include_filename"] is True

    def test_commit_info(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200, json={"commit_id": "deadbeef"})])
        resp = client.commit_info("step", "main")

        assert resp == CommitInfoResp(last_successful_commit_id="deadbeef")
        assert query_items(stub.last_request) == STEP_SCOPE + [("repo", REPO), ("branch", "main")]

    def test_commit_info_retries_server_errors(self, make_client: MakeClient, no_sleep: MagicMock) -> None:
        client, stub = make_client([make_response(500), make_response(200, json={"commit_id": "x"})])
        assert client.commit_info("step", "main").last_successful_commit_id == "x"
        assert stub.calls == 2

    def test_query_values_encoded(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200, json={})])
        client.commit_info("step", "feature/a b&c")
        assert ("branch", "feature/a b&c") in query_items(stub.last_request)
        assert "feature%2Fa%20b%26c" in str(stub.last_request.url)


class TestMLSelectTests:
    def test_request(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200, json={"selected_tests": 1})])
        resp = client.ml_select_tests("step", "key-1", "feature", "main", MLSelectTestsRequest())

        assert resp.selected_tests == 1
        assert stub.last_request.url.path == "/ml/tests/select"
        assert query_items(stub.last_request) == STEP_SCOPE + [
            ("repo", REPO),
            ("sha", "abc123"),
            ("source", "feature"),
            ("target", "main"),
            ("mlKey", "key-1"),
            ("commitLink", COMMIT_LINK),
        ]

    def test_single_attempt(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(503), make_response(200, json={})])
        with pytest.raises(ServerError):
            client.ml_select_tests("step", "k", "f", "m", MLSelectTestsRequest())
        assert stub.calls == 1


class TestReports:
    def test_summary_defaults_from_config(self, make_client: MakeClient) -> None:
        client, stub = make_client(
            [make_response(200, json={"total_tests": 3, "failed_tests": 1, "duration_ms": 99})]
        )
        request = SummaryRequest(stage_id="s1", step_id="st1")
        resp = client.summary(request)

        assert resp.total_tests == 3
        assert resp.time_ms == 99
        assert stub.last_request.url.path == "/reports/summary"
        assert query_items(stub.last_request) == [
            ("accountId", "acct"),
            ("orgId", "org"),
            ("projectId", "proj"),
            ("pipelineId", "pipe"),
            ("buildId", "42"),
            ("stageId", "s1"),
            ("stepId", "st1"),
            ("report", "junit"),
        ]
        # The caller's request is left untouched.
        assert request.report_type == ""

    def test_with_basic_arguments(self, make_client: MakeClient) -> None:
        client, _ = make_client()
        filled = client.with_basic_arguments(
            SummaryRequest(all_stages=True, org_id="other", stage_id="s", step_id="x", report_type="xunit")
        )
        assert filled.org_id == "other"
        assert filled.project_id == "proj"
        assert filled.build_id == "42"
        assert filled.stage_id == ""
        assert filled.step_id == ""
        assert filled.report_type == "xunit"

    def test_stage_not_defaulted(self, make_client: MakeClient) -> None:
        client, _ = make_client()
        assert client.with_basic_arguments(SummaryRequest()).stage_id == ""

    def test_get_test_cases(self, make_client: MakeClient) -> None:
        client, stub = make_client(
            [
                make_response(
                    200,
                    json={
                        "data": {"totalPages": 2, "totalItems": 3, "pageItemCount": 2, "pageSize": 2},
                        "content": [{"name": "t1", "result": {"status": "failed"}}],
                    },
                )
            ]
        )
        request = TestCasesRequest(
            basic_info=SummaryRequest(all_stages=True),
            test_case_search_term="t",
            sort="name",
            order="ASC",
            page_index="0",
            page_size="2",
            suite_name="suite",
        )
        cases = client.get_test_cases(request)

        assert cases.metadata.total_pages == 2
        assert cases.tests[0].result.status == Status.FAILED
        assert stub.last_request.url.path == "/reports/test_cases"
        assert query_items(stub.last_request)[5:] == [
            ("stageId", ""),
            ("stepId", ""),
            ("report", "junit"),
            ("testCaseSearchTerm", "t"),
            ("sort", "name"),
            ("order", "ASC"),
            ("pageIndex", "0"),
            ("pageSize", "2"),
            ("suite_name", "suite"),
        ]


class TestWriteSavings:
    def test_request(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200)])
        client.write_savings(
            "step",
            SavingsFeature.TI,
            IntelligenceExecutionState.OPTIMIZED,
            1500,
            SavingsRequest(),
        )
        assert stub.last_request.url.path == "/savings"
        assert query_items(stub.last_request) == STEP_SCOPE + [
            ("repo", REPO),
            ("featureName", "test_intelligence"),
            ("featureState", "OPTIMIZED"),
            ("timeMs", "1500"),
        ]

    def test_single_attempt(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(500), make_response(200)])
        with pytest.raises(ServerError):
            client.write_savings(
                "step", SavingsFeature.DLC, IntelligenceExecutionState.FULL_RUN, 1, SavingsRequest()
            )
        assert stub.calls == 1


class TestCancellation:
    def test_cancelled_call_makes_no_request(self, make_client: MakeClient) -> None:
        client, stub = make_client([make_response(200)])
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancelledError):
            client.commit_info("step", "main", cancel=token)
        with pytest.raises(CancelledError):
            client.healthz(cancel=token)
        assert stub.calls == 0


def _write_savings(step_id: str) -> Callable[[TIClient], object]:
    return lambda c: c.write_savings(
        step_id, SavingsFeature.TI, IntelligenceExecutionState.OPTIMIZED, 1, SavingsRequest()
    )


class TestValidationBeforeIO:
    """Every operation rejects incomplete input without touching the network."""

    @pytest.mark.parametrize(
        "blank,call,message",
        [
            pytest.param(
                {"stage_id": ""},
                lambda c: c.upload_cg("step", "feature", "main", 1, b"{}"),
                "stageID is not set",
                id="upload_cg-stage",
            ),
            pytest.param(
                {},
                lambda c: c.upload_cg("step", "feature", "", 1, b"{}"),
                "target branch is not set",
                id="upload_cg-target",
            ),
            pytest.param(
                {"build_id": ""},
                lambda c: c.upload_cg_failed_test("step", "feature", "main", 1, b"{}"),
                "buildID is not set",
                id="upload_cg_failed_test-build",
            ),
            pytest.param(
                {},
                lambda c: c.upload_cg_failed_test("step", "", "main", 1, b"{}"),
                "source branch is not set",
                id="upload_cg_failed_test-source",
            ),
            pytest.param(
                {"endpoint": ""},
                lambda c: c.upload_cg_v2(RawJSONText("{}")),
                "ti endpoint is not set",
                id="upload_cg_v2-endpoint",
            ),
            pytest.param(
                {},
                lambda c: c.commit_info("step", ""),
                "source branch is not set",
                id="commit_info-branch",
            ),
            pytest.param(
                {},
                lambda c: c.commit_info("", "main"),
                "stepID is not set",
                id="commit_info-step",
            ),
            pytest.param(
                {"pipeline_id": ""},
                lambda c: c.get_test_times("step", GetTestTimesReq()),
                "pipelineID is not set",
                id="get_test_times-pipeline",
            ),
            pytest.param(
                {"project_id": ""},
                lambda c: c.ml_select_tests("step", "k", "feature", "main", MLSelectTestsRequest()),
                "projectID is not set",
                id="ml_select_tests-project",
            ),
            pytest.param(
                {"org_id": ""},
                lambda c: c.summary(SummaryRequest()),
                "orgID is not set",
                id="summary-org",
            ),
            pytest.param(
                {"account_id": ""},
                lambda c: c.get_test_cases(TestCasesRequest()),
                "accountID is not set",
                id="get_test_cases-account",
            ),
            pytest.param({}, _write_savings(""), "stepID is not set", id="write_savings-step"),
            pytest.param(
                {"stage_id": ""}, _write_savings("step"), "stageID is not set", id="write_savings-stage"
            ),
            pytest.param(
                {"token": ""},
                lambda c: c.download_agent(ENDPOINT + "/agent.zip"),
                "ti token is not set",
                id="download_agent-token",
            ),
        ],
    )
    def test_rejected_without_request(
        self,
        make_client: MakeClient,
        client_config: ClientConfig,
        blank: dict[str, str],
        call: Callable[[TIClient], object],
        message: str,
    ) -> None:
        client, stub = make_client(config=client_config.model_copy(update=blank))
        with pytest.raises(ValidationError, match=f"^{message}$"):
            call(client)
        assert stub.calls == 0
