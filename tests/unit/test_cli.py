from __future__ import annotations

import json

import pytest

import ticket_pilot.cli as cli_module
from ticket_pilot.cli import DEFAULT_TIMEOUT_SECONDS, build_parser


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, text='ok'):
        self.status_code = int(status_code)
        self._payload = payload if payload is not None else {'ok': True}
        self.text = text

    def json(self):
        return self._payload


class _FakeClient:
    def __init__(self, response=None):
        self.calls = []
        self.init_kwargs = {}
        self._response = response or _FakeResponse()

    def __call__(self, **kwargs):
        self.init_kwargs = kwargs
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def get(self, url, params=None):
        self.calls.append(('GET', url, params, None))
        return self._response

    def post(self, url, json=None):
        self.calls.append(('POST', url, None, json))
        return self._response


def test_cli_parser_run_defaults_to_dry_run():
    args = build_parser().parse_args(['run', '--task-id', 'PROJ-7', '--tracker', 'jira'])
    assert args.dry_run is True
    assert args.repo_path == '.'
    assert args.target_branch == 'develop'
    assert args.timeout == DEFAULT_TIMEOUT_SECONDS


def test_cli_parser_run_accepts_no_dry_run():
    args = build_parser().parse_args(
        ['run', '--task-id', '42', '--tracker', 'gitlab', '--repo-path', '/work/app', '--no-dry-run']
    )
    assert args.dry_run is False
    assert args.tracker == 'gitlab'


def test_cli_parser_rejects_unknown_tracker():
    with pytest.raises(SystemExit):
        build_parser().parse_args(['run', '--task-id', '1', '--tracker', 'github'])


def test_cli_parser_decide_requires_exactly_one_choice():
    parser = build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(['decide', 'run-1'])
    with pytest.raises(SystemExit):
        parser.parse_args(['decide', 'run-1', '--approve', '--reject'])
    args = parser.parse_args(['decide', 'run-1', '--reject', '--feedback', 'too broad'])
    assert args.reject is True
    assert args.approve is False


def test_cli_main_routes_http_commands(monkeypatch, capsys):
    fake = _FakeClient(response=_FakeResponse(payload={'ok': True}))
    monkeypatch.setattr(cli_module.httpx, 'Client', fake)
    base = ['--api-base', 'http://localhost:9000/']

    assert cli_module.main([*base, 'status', 'run-1']) == 0
    assert cli_module.main([*base, 'runs', '--limit', '5']) == 0
    assert cli_module.main([*base, 'events', 'run-1']) == 0
    assert cli_module.main([*base, 'decide', 'run-1', '--approve']) == 0
    assert cli_module.main([*base, 'decide', 'run-1', '--reject', '--feedback', '  wrong module  ']) == 0

    assert fake.calls == [
        ('GET', 'http://localhost:9000/api/runs/run-1', None, None),
        ('GET', 'http://localhost:9000/api/runs', {'limit': 5}, None),
        ('GET', 'http://localhost:9000/api/runs/run-1/events', None, None),
        ('POST', 'http://localhost:9000/api/runs/run-1/decision', None, {'approved': True, 'feedback': None}),
        ('POST', 'http://localhost:9000/api/runs/run-1/decision', None, {'approved': False, 'feedback': 'wrong module'}),
    ]
    assert '"ok": true' in capsys.readouterr().out.lower()


def test_cli_main_run_posts_start_body_and_prints_record(monkeypatch, capsys):
    fake = _FakeClient(response=_FakeResponse(payload={'run_id': 'abc', 'status': 'awaiting_approval'}))
    monkeypatch.setattr(cli_module.httpx, 'Client', fake)

    code = cli_module.main([
        '--token', 'secret', '--timeout', '30',
        'run', '--task-id', 'PROJ-7', '--tracker', 'jira', '--repo-path', '/work/app',
        '--target-branch', 'main', '--no-dry-run',
    ])

    assert code == 0
    assert fake.calls == [(
        'POST',
        'http://127.0.0.1:8000/api/runs',
        None,
        {
            'task_id': 'PROJ-7',
            'tracker': 'jira',
            'repo_path': '/work/app',
            'target_branch': 'main',
            'dry_run': False,
        },
    )]
    assert fake.init_kwargs == {'timeout': 30.0, 'headers': {'x-ticket-pilot-token': 'secret'}}
    assert json.loads(capsys.readouterr().out) == {'run_id': 'abc', 'status': 'awaiting_approval'}


def test_cli_main_http_error_returns_non_zero(monkeypatch, capsys):
    fake = _FakeClient(response=_FakeResponse(status_code=409, payload={}, text='{"code":"invalid_state"}'))
    monkeypatch.setattr(cli_module.httpx, 'Client', fake)

    assert cli_module.main(['decide', 'run-1', '--approve']) == 1
    captured = capsys.readouterr()
    assert 'HTTP 409: {"code":"invalid_state"}' in captured.err
    assert captured.out == ''
    assert fake.init_kwargs['headers'] is None
