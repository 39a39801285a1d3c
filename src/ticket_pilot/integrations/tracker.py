from __future__ import annotations

from collections import deque
from urllib.parse import quote

import httpx

from ticket_pilot.domain.models import TrackerKind, TrackerTask
from ticket_pilot.errors import ConfigurationError, TransportError
from ticket_pilot.observability import get_logger

_log = get_logger('ticket_pilot.integrations.tracker')


def flatten_adf_text(document: object) -> str:
    """Collect the text nodes of an Atlassian document breadth-first, joined by spaces."""
    if not isinstance(document, dict):
        return ''
    queue: deque[object] = deque([document])
    chunks: list[str] = []
    while queue:
        node = queue.popleft()
        if not isinstance(node, dict):
            continue
        text = node.get('text')
        if isinstance(text, str):
            chunks.append(text)
        content = node.get('content')
        if isinstance(content, list):
            queue.extend(content)
    return ' '.join(chunks)


def _labels(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value if str(item).strip())


class TrackerClient:
    def __init__(
        self,
        *,
        jira_base_url: str | None = None,
        jira_email: str | None = None,
        jira_api_token: str | None = None,
        gitlab_base_url: str | None = None,
        gitlab_token: str | None = None,
        gitlab_project_id: str | None = None,
        timeout_seconds: float = 30,
        transport: httpx.BaseTransport | None = None,
    ):
        self.jira_base_url = (jira_base_url or '').rstrip('/') or None
        self.jira_email = jira_email
        self.jira_api_token = jira_api_token
        self.gitlab_base_url = (gitlab_base_url or '').rstrip('/') or None
        self.gitlab_token = gitlab_token
        self.gitlab_project_id = gitlab_project_id
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @classmethod
    def from_settings(cls, settings, *, transport: httpx.BaseTransport | None = None) -> 'TrackerClient':
        return cls(
            jira_base_url=settings.jira_base_url,
            jira_email=settings.jira_email,
            jira_api_token=settings.jira_api_token,
            gitlab_base_url=settings.gitlab_base_url,
            gitlab_token=settings.gitlab_token,
            gitlab_project_id=settings.gitlab_project_id,
            timeout_seconds=settings.http_timeout_seconds,
            transport=transport,
        )

    def fetch_task(self, tracker: TrackerKind | str, task_id: str) -> TrackerTask:
        if TrackerKind(tracker) == TrackerKind.JIRA:
            return self._fetch_jira_task(task_id)
        return self._fetch_gitlab_issue(task_id)

    def _get_json(
        self,
        url: str,
        *,
        source: str,
        task_id: str,
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> dict:
        request_headers = {'Accept': 'application/json', **(headers or {})}
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = client.get(url, headers=request_headers, auth=auth)
        except httpx.HTTPError as exc:
            raise TransportError(f'Failed to load {source} issue {task_id}: {exc}') from exc
        if response.status_code >= 400:
            raise TransportError(
                f'Failed to load {source} issue {task_id}: {response.status_code} {response.reason_phrase}'
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(f'Failed to load {source} issue {task_id}: response is not JSON') from exc
        if not isinstance(data, dict):
            raise TransportError(f'Failed to load {source} issue {task_id}: unexpected response shape')
        return data

    def _fetch_jira_task(self, task_id: str) -> TrackerTask:
        if not (self.jira_base_url and self.jira_email and self.jira_api_token):
            raise ConfigurationError('Missing Jira configuration (JIRA_BASE_URL, JIRA_EMAIL, JIRA_API_TOKEN)')
        data = self._get_json(
            f'{self.jira_base_url}/rest/api/3/issue/{quote(task_id, safe="")}',
            source='Jira',
            task_id=task_id,
            auth=(self.jira_email, self.jira_api_token),
        )
        fields = data.get('fields') or {}
        key = str(data.get('key') or task_id)
        priority = fields.get('priority') if isinstance(fields.get('priority'), dict) else {}
        _log.info('tracker_task_loaded tracker=jira task_id=%s', key)
        return TrackerTask(
            id=key,
            title=str(fields.get('summary') or ''),
            description=flatten_adf_text(fields.get('description')),
            labels=_labels(fields.get('labels')),
            priority=priority.get('name'),
            url=f'{self.jira_base_url}/browse/{key}',
        )

    def _fetch_gitlab_issue(self, task_id: str) -> TrackerTask:
        if not (self.gitlab_base_url and self.gitlab_token and self.gitlab_project_id):
            raise ConfigurationError('Missing GitLab configuration (GITLAB_BASE_URL, GITLAB_TOKEN, GITLAB_PROJECT_ID)')
        project = quote(self.gitlab_project_id, safe='')
        data = self._get_json(
            f'{self.gitlab_base_url}/api/v4/projects/{project}/issues/{quote(task_id, safe="")}',
            source='GitLab',
            task_id=task_id,
            headers={'PRIVATE-TOKEN': self.gitlab_token},
        )
        _log.info('tracker_task_loaded tracker=gitlab task_id=%s', data.get('iid'))
        return TrackerTask(
            id=str(data.get('iid') if data.get('iid') is not None else task_id),
            title=str(data.get('title') or ''),
            description=str(data.get('description') or ''),
            labels=_labels(data.get('labels')),
            priority=data.get('severity'),
            url=data.get('web_url'),
        )
