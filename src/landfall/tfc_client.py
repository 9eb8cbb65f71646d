"""Terraform Cloud v2 API client.

Only the handful of endpoints the run-approval workflow needs. Reads that
fail on the transport, with a 5xx, or with an unparseable body raise
:class:`TerraformCloudPollingError` so a polling caller can retry on the
next tick; everything else raises :class:`TerraformCloudError`.
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import cast

import httpx

from landfall.models import AutomationRun, Workspace
from landfall.observability import log_event
from landfall.poll_loop import TransientFetchError


LOGGER = logging.getLogger("landfall.tfc_client")

DEFAULT_API_URL = "https://app.terraform.io/api/v2"
_JSON_API = "application/vnd.api+json"


class TerraformCloudError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TerraformCloudPollingError(TransientFetchError):
    """Recoverable Terraform Cloud read failure."""


class TerraformCloudClient:
    def __init__(
        self,
        token: str,
        *,
        api_url: str = DEFAULT_API_URL,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._transport = transport
        self._timeout = timeout
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": _JSON_API,
                "Accept": _JSON_API,
            },
            transport=transport,
            timeout=timeout,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TerraformCloudClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def list_workspaces(self, organization: str) -> tuple[Workspace, ...]:
        workspaces: list[Workspace] = []
        page: int | None = 1
        while page is not None:
            payload = self._get(
                f"/organizations/{organization}/workspaces",
                params={"page[size]": 100, "page[number]": page},
            )
            for item in _as_list(payload.get("data")):
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    workspaces.append(_parse_workspace(item_obj, organization=organization))
            page = _next_page(payload)
        log_event(
            LOGGER,
            "tfc_read",
            endpoint="workspaces",
            organization=organization,
            count=len(workspaces),
        )
        return tuple(workspaces)

    def get_workspace(self, workspace_id: str) -> Workspace:
        payload = self._get(f"/workspaces/{workspace_id}")
        data = _as_object_dict(payload.get("data"))
        if data is None:
            raise TerraformCloudPollingError(f"Workspace {workspace_id} response had no data")
        return _parse_workspace(data, organization=None)

    def latest_run(self, workspace_id: str) -> AutomationRun | None:
        payload = self._get(f"/workspaces/{workspace_id}/runs", params={"page[size]": 1})
        runs = _as_list(payload.get("data"))
        if not runs:
            return None
        first = _as_object_dict(runs[0])
        if first is None:
            raise TerraformCloudPollingError("Run list entry was not an object")
        return _parse_run(first, workspace_id=workspace_id)

    def get_run(self, run_id: str) -> AutomationRun:
        payload = self._get(f"/runs/{run_id}")
        data = _as_object_dict(payload.get("data"))
        if data is None:
            raise TerraformCloudPollingError(f"Run {run_id} response had no data")
        return _parse_run(data, workspace_id=None)

    def apply_run(self, run_id: str, comment: str) -> None:
        try:
            response = self._client.post(
                f"/runs/{run_id}/actions/apply", json={"comment": comment}
            )
        except httpx.HTTPError as exc:
            raise TerraformCloudError(f"Apply request for {run_id} failed: {exc}") from exc
        if response.status_code not in {200, 202}:
            detail = _error_detail(response)
            log_event(
                LOGGER,
                "tfc_apply_failed",
                run_id=run_id,
                status_code=response.status_code,
                detail=detail,
            )
            raise TerraformCloudError(
                f"Apply for {run_id} rejected (HTTP {response.status_code}): {detail}",
                status_code=response.status_code,
            )
        log_event(LOGGER, "tfc_apply_requested", run_id=run_id)

    def plan_error_message(self, plan_id: str) -> str | None:
        try:
            payload = self._get(f"/plans/{plan_id}/json-output")
        except (TerraformCloudError, TerraformCloudPollingError):
            return None
        message = payload.get("error_message")
        if isinstance(message, str) and message.strip():
            return message.strip()
        return None

    def plan_log_tail(self, plan_id: str, max_lines: int) -> str | None:
        try:
            payload = self._get(f"/plans/{plan_id}")
        except (TerraformCloudError, TerraformCloudPollingError):
            return None
        data = _as_object_dict(payload.get("data")) or {}
        attributes = _as_object_dict(data.get("attributes")) or {}
        log_url = attributes.get("log-read-url")
        if not isinstance(log_url, str) or not log_url:
            return None

        # The archivist URL is pre-signed; it must not receive the API token.
        with httpx.Client(transport=self._transport, timeout=self._timeout) as raw_client:
            try:
                response = raw_client.get(log_url)
            except httpx.HTTPError as exc:
                log_event(LOGGER, "tfc_plan_log_failed", plan_id=plan_id, error=str(exc))
                return None
        if response.status_code != 200:
            return None
        lines = [line for line in response.text.splitlines() if line.strip()]
        if not lines:
            return None
        return "\n".join(lines[-max_lines:])

    def _get(self, path: str, *, params: dict[str, int] | None = None) -> dict[str, object]:
        try:
            response = self._client.get(path, params=params)
        except httpx.HTTPError as exc:
            log_event(LOGGER, "tfc_get_failed", path=path, error_type=type(exc).__name__)
            raise TerraformCloudPollingError(f"GET {path} failed: {exc}") from exc

        if response.status_code >= 500:
            log_event(LOGGER, "tfc_get_failed", path=path, status_code=response.status_code)
            raise TerraformCloudPollingError(f"GET {path} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise TerraformCloudError(
                f"GET {path} returned HTTP {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TerraformCloudPollingError(f"GET {path} returned malformed JSON") from exc
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise TerraformCloudPollingError(f"GET {path} returned a non-object body")
        return payload_obj


def _parse_workspace(data: dict[str, object], *, organization: str | None) -> Workspace:
    attributes = _as_object_dict(data.get("attributes")) or {}
    vcs_repo = _as_object_dict(attributes.get("vcs-repo"))
    identifier = vcs_repo.get("identifier") if vcs_repo is not None else None
    if organization is None:
        organization = _relationship_id(data, "organization")
    return Workspace(
        workspace_id=str(data.get("id", "")),
        name=str(attributes.get("name", "")),
        repo_identifier=identifier if isinstance(identifier, str) else None,
        organization=organization,
    )


def _parse_run(data: dict[str, object], *, workspace_id: str | None) -> AutomationRun:
    attributes = _as_object_dict(data.get("attributes")) or {}
    permissions = _as_object_dict(attributes.get("permissions")) or {}
    commit_sha = attributes.get("commit-sha")
    status = attributes.get("status")
    if not isinstance(status, str) or not status:
        raise TerraformCloudPollingError(f"Run {data.get('id')} has no status")
    return AutomationRun(
        run_id=str(data.get("id", "")),
        workspace_id=_relationship_id(data, "workspace") or workspace_id,
        status=status,
        is_confirmable=attributes.get("is-confirmable") is True,
        commit_sha=commit_sha if isinstance(commit_sha, str) else None,
        plan_id=_relationship_id(data, "plan"),
        can_apply=permissions.get("can-apply") is True,
    )


def _relationship_id(data: dict[str, object], name: str) -> str | None:
    relationships = _as_object_dict(data.get("relationships")) or {}
    relation = _as_object_dict(relationships.get(name)) or {}
    target = _as_object_dict(relation.get("data")) or {}
    value = target.get("id")
    return value if isinstance(value, str) and value else None


def _next_page(payload: dict[str, object]) -> int | None:
    meta = _as_object_dict(payload.get("meta")) or {}
    pagination = _as_object_dict(meta.get("pagination")) or {}
    value = pagination.get("next-page")
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or "no detail"
    payload_obj = _as_object_dict(payload) or {}
    for error in _as_list(payload_obj.get("errors")):
        error_obj = _as_object_dict(error)
        if error_obj is None:
            continue
        for key in ("detail", "title"):
            value = error_obj.get(key)
            if isinstance(value, str) and value:
                return value
    return response.text.strip() or "no detail"


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_list(value: object) -> list[object]:
    if isinstance(value, list):
        return cast(list[object], value)
    return []
