from __future__ import annotations

from ticket_pilot.domain.models import RepoSnapshot


def build_grounding_checklist(repo: RepoSnapshot) -> list[str]:
    languages = repo.language_summary
    checks: list[str] = []
    if languages.get('TypeScript') or languages.get('JavaScript'):
        checks.append('Run lint and tests: npm run lint && npm test (or pnpm/yarn equivalent)')
    if languages.get('Python'):
        checks.append('Run static checks and tests: ruff check . && pytest')
    if languages.get('Go'):
        checks.append('Run go validation: go test ./... and go vet ./...')
    if languages.get('Java') or languages.get('Kotlin'):
        checks.append('Run JVM validation: ./gradlew test (or mvn test)')
    if not checks:
        checks.append('Run project-specific build/test checks from CI pipeline.')
    checks.append('Compare generated diff against task acceptance criteria and non-functional requirements.')
    checks.append('Verify security-sensitive changes and dependency updates with trusted sources.')
    return checks
