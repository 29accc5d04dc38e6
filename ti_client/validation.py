"""Per-operation argument checks, run before any network activity.

Each check walks its fields in a fixed order and raises ValidationError for
the first empty one. Messages are the literal "<field> is not set".
"""

from __future__ import annotations

from ti_client.errors import ValidationError
from ti_client.models import ClientConfig


def _require(*fields: tuple[str, str]) -> None:
    for value, name in fields:
        if not value:
            raise ValidationError(f"{name} is not set")


def validate_service(config: ClientConfig) -> None:
    """Endpoint and token are needed by every operation."""
    _require(
        (config.endpoint, "ti endpoint"),
        (config.token, "ti token"),
    )


def validate_scope(config: ClientConfig) -> None:
    """Account/org/project/pipeline, needed by pipeline-bound operations."""
    _require(
        (config.account_id, "accountID"),
        (config.org_id, "orgID"),
        (config.project_id, "projectID"),
        (config.pipeline_id, "pipelineID"),
    )


def validate_step(config: ClientConfig, step_id: str) -> None:
    """Service, scope, build, stage and step."""
    validate_service(config)
    validate_scope(config)
    _require(
        (config.build_id, "buildID"),
        (config.stage_id, "stageID"),
        (step_id, "stepID"),
    )


def validate_write(config: ClientConfig, step_id: str, report: str) -> None:
    validate_step(config, step_id)
    _require((report, "report"))


def validate_write_savings(config: ClientConfig, step_id: str) -> None:
    validate_step(config, step_id)


def validate_select_tests(config: ClientConfig, step_id: str, source: str, target: str) -> None:
    validate_step(config, step_id)
    _require(
        (source, "source branch"),
        (target, "target branch"),
    )


def validate_upload_cg(config: ClientConfig, step_id: str, source: str, target: str) -> None:
    validate_select_tests(config, step_id, source, target)


def validate_commit_info(config: ClientConfig, step_id: str, branch: str) -> None:
    validate_step(config, step_id)
    _require((branch, "source branch"))


def validate_download_link(config: ClientConfig, language: str) -> None:
    validate_service(config)
    _require((language, "language"))


def validate_pipeline(config: ClientConfig) -> None:
    """Service and scope only (test times, ML selection, summaries)."""
    validate_service(config)
    validate_scope(config)
