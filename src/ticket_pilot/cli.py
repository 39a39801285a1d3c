from __future__ import annotations

import argparse
import json
import sys

import httpx

# A run request blocks until the drafting sequence reaches the review gate.
DEFAULT_TIMEOUT_SECONDS = 1800.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='ticket-pilot', description='Drive ticket-to-change runs through the review gate')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='Ticket pilot API base URL')
    parser.add_argument('--token', default='', help='Shared API token sent as x-ticket-pilot-token')
    parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT_SECONDS, help='HTTP timeout in seconds')

    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Start a run for a tracker ticket')
    run.add_argument('--task-id', required=True, help='Jira issue key or GitLab issue iid')
    run.add_argument('--tracker', required=True, choices=['jira', 'gitlab'])
    run.add_argument('--repo-path', default='.', help='Target repository path')
    run.add_argument('--target-branch', default='develop')
    run.add_argument(
        '--dry-run',
        action=argparse.BooleanOptionalAction,
        default=True,
        help='Write and diff edits locally without commit, push or merge request (default: on)',
    )

    status = sub.add_parser('status', help='Show one run')
    status.add_argument('run_id', help='Run id')

    runs = sub.add_parser('runs', help='List runs')
    runs.add_argument('--limit', type=int, default=20)

    events = sub.add_parser('events', help='List run events')
    events.add_argument('run_id', help='Run id')

    decide = sub.add_parser('decide', help='Approve or reject a run awaiting approval')
    decide.add_argument('run_id', help='Run id')
    choice = decide.add_mutually_exclusive_group(required=True)
    choice.add_argument('--approve', action='store_true', help='Apply the staged edits')
    choice.add_argument('--reject', action='store_true', help='Reject the run')
    decide.add_argument('--feedback', default='', help='Optional reviewer feedback')

    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')
    headers = {'x-ticket-pilot-token': args.token} if args.token else None

    with httpx.Client(timeout=args.timeout, headers=headers) as client:
        if args.command == 'run':
            response = client.post(
                f'{base}/api/runs',
                json={
                    'task_id': args.task_id,
                    'tracker': args.tracker,
                    'repo_path': args.repo_path,
                    'target_branch': args.target_branch,
                    'dry_run': bool(args.dry_run),
                },
            )
        elif args.command == 'status':
            response = client.get(f'{base}/api/runs/{args.run_id}')
        elif args.command == 'runs':
            response = client.get(f'{base}/api/runs', params={'limit': int(args.limit)})
        elif args.command == 'events':
            response = client.get(f'{base}/api/runs/{args.run_id}/events')
        elif args.command == 'decide':
            response = client.post(
                f'{base}/api/runs/{args.run_id}/decision',
                json={
                    'approved': bool(args.approve),
                    'feedback': (args.feedback.strip() or None),
                },
            )
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
