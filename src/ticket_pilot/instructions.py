from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from ticket_pilot.domain.models import RepoSnapshot
from ticket_pilot.observability import get_logger

_log = get_logger('ticket_pilot.instructions')


@dataclass(frozen=True)
class InstructionSpec:
    key: str
    file: str
    match: Callable[[RepoSnapshot], bool]


_JVM_STACK_PREFIXES = ('Java (', 'Java/Kotlin (')


def _is_jvm_stack(repo: RepoSnapshot) -> bool:
    return any(item == 'Java' or item.startswith(_JVM_STACK_PREFIXES) for item in repo.tech_stack)


INSTRUCTION_SPECS = (
    InstructionSpec('java', 'java.md', _is_jvm_stack),
    InstructionSpec('javascript', 'javascript.md', lambda repo: bool(repo.language_summary.get('JavaScript'))),
    InstructionSpec('typescript', 'typescript.md', lambda repo: bool(repo.language_summary.get('TypeScript'))),
    InstructionSpec('nodejs', 'nodejs.md', lambda repo: 'JavaScript/Node.js' in repo.tech_stack),
    InstructionSpec('nextjs', 'nextjs.md', lambda repo: 'Next.js' in repo.tech_stack),
    InstructionSpec('python', 'python.md', lambda repo: bool(repo.language_summary.get('Python'))),
    InstructionSpec('go', 'go.md', lambda repo: bool(repo.language_summary.get('Go'))),
)


class InstructionLibrary:
    def __init__(self, root: Path):
        self.root = Path(root)

    def files_for(self, repo: RepoSnapshot) -> list[str]:
        return ['common.md', *(spec.file for spec in INSTRUCTION_SPECS if spec.match(repo))]

    def load_bundle(self, repo: RepoSnapshot) -> str:
        chunks: list[str] = []
        for name in self.files_for(repo):
            try:
                chunks.append((self.root / name).read_text(encoding='utf-8').strip())
            except OSError:
                _log.warning('instruction_file_missing file=%s root=%s', name, self.root)
                chunks.append(f'# Missing Instruction File\n{name} could not be loaded.')
        return '\n\n'.join(chunks)
