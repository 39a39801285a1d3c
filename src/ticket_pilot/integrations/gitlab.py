from __future__ import annotations

from urllib.parse import quote

import httpx

from ticket_pilot.errors import TransportError
from ticket_pilot.observability import get_logger

_log = get_logger('ticket_pilot.integrations.gitlab')


class GitLabPublisher:
    """Opens merge requests; a publisher without credentials publishes nothing."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        token: str | None = None,
        project_id: str | None = None,
        timeout_seconds: float = 30,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url or '').rstrip('/') or None
        self.token = token
        self.project_id = project_id
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @classmethod
    def from_settings(cls, settings, *, transport: httpx.BaseTransport | None = None) -> 'GitLabPublisher':
        return cls(
            base_url=settings.gitlab_base_url,
            token=settings.gitlab_token,
            project_id=settings.gitlab_project_id,
            timeout_seconds=settings.http_timeout_seconds,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.token and self.project_id)

    def create_merge_request(
        self,
        *,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str,
    ) -> str | None:
        if not self.configured:
            _log.info('merge_request_skipped reason=gitlab_not_configured branch=%s', source_branch)
            return None
        url = f'{self.base_url}/api/v4/projects/{quote(str(self.project_id), safe="")}/merge_requests'
        body = {
            'source_branch': source_branch,
            'target_branch': target_branch,
            'title': title,
            'description': description,
            'remove_source_branch': False,
        }
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = client.post(
                    url,
                    json=body,
                    headers={'PRIVATE-TOKEN': str(self.token), 'Accept': 'application/json'},
                )
        except httpx.HTTPError as exc:
            raise TransportError(f'Failed creating merge request: {exc}') from exc
        if response.status_code >= 400:
            raise TransportError(
                f'Failed creating merge request: {response.status_code} {response.reason_phrase} {response.text}'
            )
        try:
            data = response.json()
        except ValueError:
            data = {}
        web_url = data.get('web_url') if isinstance(data, dict) else None
        _log.info('merge_request_created branch=%s url=%s', source_branch, web_url)
        return web_url
