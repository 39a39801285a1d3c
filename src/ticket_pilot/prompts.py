from __future__ import annotations

from dataclasses import asdict
import difflib
import json
from pathlib import Path
from typing import Any, Sequence

from ticket_pilot.domain.models import DesignProposal, DraftEdit, EditPayload, RepoSnapshot, TrackerTask
from ticket_pilot.errors import ResponseFormatError
from ticket_pilot.response_parsing import preview_text
from ticket_pilot.tools.repo_scan import is_inside_repo, read_file_if_exists

INITIAL_DRAFT_FEEDBACK = 'Initial implementation draft for human review.'
NO_FEEDBACK = 'No additional feedback'
HYDRATED_FILES_LIMIT = 12
PROMPT_SAMPLE_FILES_LIMIT = 120
PREVIEW_EDITS_LIMIT = 20

PROPOSAL_SCHEMA = {
    'requirements': ['string'],
    'assumptions': ['string'],
    'implementationPlan': ['string'],
    'testsAndGrounding': ['string'],
    'proposedEdits': [{'path': 'string', 'summary': 'string'}],
    'branchNameSuggestion': 'string',
    'commitTitle': 'string',
    'prTitle': 'string',
}

EDIT_SCHEMA = {
    'edits': [
        {
            'path': 'relative/path.ext',
            'content': 'full file content',
            'rationale': 'short reason',
        }
    ],
    'summary': 'string',
    'commitTitle': 'string',
    'prDescription': 'string',
}


def _repo_payload(repo: RepoSnapshot) -> dict[str, Any]:
    return {
        'fileCount': repo.file_count,
        'topLevelEntries': list(repo.top_level_entries),
        'languageSummary': dict(repo.language_summary),
        'sampleFiles': list(repo.sample_files),
        'techStack': list(repo.tech_stack),
        'testingGuidance': list(repo.testing_guidance),
    }


def _proposal_payload(proposal: DesignProposal) -> dict[str, Any]:
    return {
        'requirements': list(proposal.requirements),
        'assumptions': list(proposal.assumptions),
        'implementationPlan': list(proposal.implementation_plan),
        'testsAndGrounding': list(proposal.tests_and_grounding),
        'proposedEdits': [asdict(item) for item in proposal.proposed_edits],
        'branchNameSuggestion': proposal.branch_name_suggestion,
        'commitTitle': proposal.commit_title,
        'prTitle': proposal.pr_title,
    }


def build_proposal_prompt(
    *,
    task: TrackerTask,
    repo: RepoSnapshot,
    feedback_bias: str,
    target_branch: str,
    grounding: Sequence[str],
    instructions: str = '',
) -> str:
    sections = [
        'You are a senior software engineer planning implementation from a tracker ticket.',
        'Return JSON only with this schema:',
        json.dumps(PROPOSAL_SCHEMA, indent=2),
        'Focus on robust implementation and grounding checks. Support polyglot repositories.',
        'Every proposed change to a source file must include a matching unit test file in proposedEdits.',
        f'Task id: {task.id}',
        f'Task title: {task.title}',
        f'Task description: {task.description}',
        f'Task labels: {", ".join(task.labels)}',
        f'Target branch: {target_branch}',
        'Repository summary:',
        json.dumps(_repo_payload(repo), indent=2),
        'Human feedback memory:',
        feedback_bias,
        'Grounding baseline checks:',
        '\n'.join(f'{index}. {item}' for index, item in enumerate(grounding, start=1)),
    ]
    if instructions:
        sections.extend(['Engineering instructions:', instructions])
    sections.append('Respect requirement clarity first. Keep assumptions explicit.')
    return '\n\n'.join(sections)


def build_edit_prompt(
    *,
    repo_path: str | Path,
    task: TrackerTask,
    repo: RepoSnapshot,
    proposal: DesignProposal,
    feedback: str | None = None,
    instructions: str = '',
) -> str:
    """Edit request followed by the current content of the first proposed files."""
    sections = [
        'Create concrete file edits to implement the approved task.',
        'Return JSON only with schema:',
        json.dumps(EDIT_SCHEMA, indent=2),
        'Rules:',
        '\n'.join([
            '- Edit only files listed in proposal.proposedEdits unless absolutely necessary.',
            '- Provide complete file content for each edited file.',
            '- Include unit test files for every changed source file.',
            '- Keep security and backwards compatibility in mind.',
        ]),
        f'Task: {task.id} - {task.title}',
        f'Task details: {task.description}',
        f'Proposal: {json.dumps(_proposal_payload(proposal), indent=2)}',
        f'Reviewer feedback: {feedback or NO_FEEDBACK}',
        f'Repository files sample: {json.dumps(list(repo.sample_files[:PROMPT_SAMPLE_FILES_LIMIT]), indent=2)}',
    ]
    if instructions:
        sections.extend(['Engineering instructions:', instructions])
    sections.append('For each proposed file, use the latest existing file content below:')
    for item in proposal.proposed_edits[:HYDRATED_FILES_LIMIT]:
        if not is_inside_repo(repo_path, item.path):
            continue
        current = read_file_if_exists(repo_path, item.path)
        sections.append('\n'.join([
            f'FILE: {item.path}',
            'CURRENT_CONTENT_START',
            current or '',
            'CURRENT_CONTENT_END',
        ]))
    return '\n\n'.join(sections)


def coerce_proposal(payload: dict) -> DesignProposal:
    return DesignProposal.from_dict(payload)


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text or None


def coerce_edit_payload(payload: dict, repo_path: str | Path) -> EditPayload:
    """Validate a decoded edit response.

    Entries must carry a string path inside the repository and string content.
    Repeated paths keep their first position and their last content.
    """
    raw_edits = payload.get('edits')
    if not isinstance(raw_edits, list):
        raise ResponseFormatError(
            'edit payload has no edits list',
            preview=preview_text(json.dumps(payload, default=str)),
        )
    edits: dict[str, DraftEdit] = {}
    for item in raw_edits:
        if not isinstance(item, dict):
            continue
        path = item.get('path')
        content = item.get('content')
        if not isinstance(path, str) or not path.strip() or not isinstance(content, str):
            continue
        normalized = path.strip().replace('\\', '/')
        if not is_inside_repo(repo_path, normalized):
            raise ResponseFormatError(f'edit path resolves outside the repository: {normalized}', preview=normalized)
        rationale = item.get('rationale')
        edits[normalized] = DraftEdit(
            path=normalized,
            content=content,
            rationale=rationale if isinstance(rationale, str) else '',
        )
    return EditPayload(
        edits=tuple(edits.values()),
        summary=str(payload.get('summary') or '') if isinstance(payload.get('summary'), str) else '',
        commit_title=_optional_text(payload.get('commitTitle', payload.get('commit_title'))),
        pr_description=_optional_text(payload.get('prDescription', payload.get('pr_description'))),
    )


def build_preview_diff(repo_path: str | Path, edits: Sequence[DraftEdit]) -> str:
    chunks: list[str] = []
    for edit in edits[:PREVIEW_EDITS_LIMIT]:
        before = read_file_if_exists(repo_path, edit.path) or ''
        patch = difflib.unified_diff(
            before.splitlines(keepends=True),
            edit.content.splitlines(keepends=True),
            fromfile=f'{edit.path}\tbefore',
            tofile=f'{edit.path}\tstaged',
        )
        chunks.append(f'Index: {edit.path}\n' + ''.join(patch))
    return '\n'.join(chunks)
