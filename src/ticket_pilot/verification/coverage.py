from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import os
from pathlib import Path, PurePosixPath
import re
from typing import Iterable
import xml.etree.ElementTree as ET

from ticket_pilot.domain.models import FileCoverage
from ticket_pilot.observability import get_logger

_log = get_logger('ticket_pilot.verification.coverage')

_GO_PROFILE_RE = re.compile(r'^(?P<path>.+):(\d+)\.(\d+),(\d+)\.(\d+)\s+(?P<statements>\d+)\s+(?P<count>\d+)$')
_GO_MODULE_RE = re.compile(r'^\s*module\s+(?P<module>\S+)', re.MULTILINE)
_WINDOWS_DRIVE_RE = re.compile(r'^[A-Za-z]:/')


class CoverageFormat(str, Enum):
    LCOV = 'lcov'
    GO_PROFILE = 'go_profile'
    COBERTURA_XML = 'cobertura_xml'
    JACOCO_XML = 'jacoco_xml'


@dataclass(frozen=True)
class CoverageAggregate:
    covered_lines: int
    total_lines: int


def line_coverage_percent(covered: int, total: int) -> float | None:
    if total <= 0:
        return None
    return round(100.0 * covered / total, 2)


def _posix(path: str) -> str:
    text = str(path or '').strip().replace('\\', '/')
    while text.startswith('./'):
        text = text[2:]
    return text


def _is_absolute(text: str) -> bool:
    return text.startswith('/') or bool(_WINDOWS_DRIVE_RE.match(text))


def _relative_to_root(text: str, root: Path) -> str | None:
    root_text = _posix(str(root)).rstrip('/')
    if not root_text:
        return None
    if os.name == 'nt':
        if text.lower().startswith(root_text.lower() + '/'):
            return text[len(root_text) + 1:]
        return None
    if text.startswith(root_text + '/'):
        return text[len(root_text) + 1:]
    return None


def normalize_report_path(raw: str, repo_path: Path, *, base_dirs: Iterable[Path] = ()) -> str:
    """Resolve a path found in a coverage report to repository-relative form.

    Absolute paths under the repository are made relative. Relative paths are
    tried against each base directory (report directory, declared source
    roots) and kept as-is when none of them lands inside the repository.
    """
    text = _posix(raw)
    if not text:
        return ''
    repo_root = Path(repo_path).resolve()
    if _is_absolute(text):
        relative = _relative_to_root(text, repo_root)
        if relative is None:
            relative = _relative_to_root(_posix(str(Path(text).resolve(strict=False))), repo_root)
        return _posix(relative) if relative is not None else text
    for base in base_dirs:
        candidate = (Path(base) / text).resolve(strict=False)
        relative = _relative_to_root(_posix(str(candidate)), repo_root)
        if relative is not None and candidate.exists():
            return _posix(relative)
    return str(PurePosixPath(text))


def _accumulate(target: dict[str, CoverageAggregate], path: str, covered: int, total: int) -> None:
    if not path:
        return
    current = target.get(path)
    if current is None:
        target[path] = CoverageAggregate(covered_lines=covered, total_lines=total)
        return
    target[path] = CoverageAggregate(
        covered_lines=current.covered_lines + covered,
        total_lines=current.total_lines + total,
    )


def parse_lcov(text: str, repo_path: Path, *, report_dir: Path | None = None) -> dict[str, CoverageAggregate]:
    out: dict[str, CoverageAggregate] = {}
    bases = [Path(repo_path)] + ([report_dir] if report_dir is not None else [])
    current: str | None = None
    covered = 0
    total = 0
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if line.startswith('SF:'):
            current = normalize_report_path(line[3:], repo_path, base_dirs=bases)
            covered = 0
            total = 0
        elif line.startswith('DA:') and current is not None:
            parts = line[3:].split(',')
            if len(parts) < 2:
                continue
            try:
                hits = int(float(parts[1]))
            except ValueError:
                continue
            total += 1
            if hits > 0:
                covered += 1
        elif line == 'end_of_record' and current is not None:
            _accumulate(out, current, covered, total)
            current = None
    return out


def read_go_module(repo_path: Path) -> str | None:
    go_mod = Path(repo_path) / 'go.mod'
    if not go_mod.is_file():
        return None
    match = _GO_MODULE_RE.search(go_mod.read_text(encoding='utf-8', errors='replace'))
    return match.group('module') if match else None


def parse_go_profile(text: str, repo_path: Path, *, module: str | None = None) -> dict[str, CoverageAggregate]:
    out: dict[str, CoverageAggregate] = {}
    prefix = f'{module.rstrip("/")}/' if module else ''
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith('mode:'):
            continue
        match = _GO_PROFILE_RE.match(line)
        if match is None:
            continue
        path = match.group('path')
        if prefix and path.startswith(prefix):
            path = path[len(prefix):]
        else:
            path = normalize_report_path(path, repo_path)
        statements = int(match.group('statements'))
        count = int(match.group('count'))
        _accumulate(out, _posix(path), statements if count > 0 else 0, statements)
    return out


def _hit_count(value: str | None) -> int:
    try:
        return int(float(str(value or '0')))
    except ValueError:
        return 0


def parse_cobertura_xml(text: str, repo_path: Path, *, report_dir: Path | None = None) -> dict[str, CoverageAggregate]:
    root = ET.fromstring(text)
    bases: list[Path] = []
    for source in root.iter('source'):
        source_text = str(source.text or '').strip()
        if not source_text:
            continue
        source_path = Path(source_text)
        if not source_path.is_absolute() and report_dir is not None:
            source_path = report_dir / source_path
        bases.append(source_path)
    if report_dir is not None:
        bases.append(report_dir)
    bases.append(Path(repo_path))

    out: dict[str, CoverageAggregate] = {}
    for cls in root.iter('class'):
        filename = cls.get('filename')
        if not filename:
            continue
        path = normalize_report_path(filename, repo_path, base_dirs=bases)
        covered = 0
        total = 0
        for line in cls.findall('./lines/line'):
            total += 1
            if _hit_count(line.get('hits')) > 0:
                covered += 1
        _accumulate(out, path, covered, total)
    return out


def parse_jacoco_xml(text: str, repo_path: Path) -> dict[str, CoverageAggregate]:
    root = ET.fromstring(text)
    out: dict[str, CoverageAggregate] = {}
    for package in root.iter('package'):
        package_name = _posix(package.get('name') or '').strip('/')
        for source_file in package.findall('sourcefile'):
            name = source_file.get('name')
            if not name:
                continue
            path = f'{package_name}/{name}' if package_name else name
            counter = next(
                (item for item in source_file.findall('counter') if item.get('type') == 'LINE'),
                None,
            )
            if counter is not None:
                covered = _hit_count(counter.get('covered'))
                missed = _hit_count(counter.get('missed'))
                _accumulate(out, path, covered, covered + missed)
                continue
            covered = 0
            total = 0
            for line in source_file.findall('line'):
                total += 1
                if _hit_count(line.get('ci')) > 0:
                    covered += 1
            _accumulate(out, path, covered, total)
    return out


def parse_coverage_report(fmt: CoverageFormat, report_path: Path, repo_path: Path) -> dict[str, CoverageAggregate]:
    """Parse *report_path* with the parser for *fmt*; a missing or unreadable report yields no data."""
    if not report_path.is_file():
        return {}
    text = report_path.read_text(encoding='utf-8', errors='replace')
    try:
        if fmt is CoverageFormat.LCOV:
            return parse_lcov(text, repo_path, report_dir=report_path.parent)
        if fmt is CoverageFormat.GO_PROFILE:
            return parse_go_profile(text, repo_path, module=read_go_module(repo_path))
        if fmt is CoverageFormat.COBERTURA_XML:
            return parse_cobertura_xml(text, repo_path, report_dir=report_path.parent)
        if fmt is CoverageFormat.JACOCO_XML:
            return parse_jacoco_xml(text, repo_path)
    except ET.ParseError:
        _log.warning('coverage_report_unreadable format=%s path=%s', fmt.value, report_path, exc_info=True)
        return {}
    raise ValueError(f'unsupported coverage format: {fmt}')


def _match_aggregate(path: str, aggregates: dict[str, CoverageAggregate]) -> CoverageAggregate | None:
    normalized = _posix(path)
    exact = aggregates.get(normalized)
    if exact is not None:
        return exact
    # Reports for package-based layouts (JaCoCo, Go without go.mod) carry only a
    # path suffix of the repository file; accept a single unambiguous suffix match.
    matches = [
        aggregate
        for key, aggregate in aggregates.items()
        if normalized.endswith('/' + key) or key.endswith('/' + normalized)
    ]
    if len(matches) == 1:
        return matches[0]
    return None


def map_coverage_to_edits(aggregates: dict[str, CoverageAggregate], edit_paths: Iterable[str]) -> list[FileCoverage]:
    out: list[FileCoverage] = []
    seen: set[str] = set()
    for path in edit_paths:
        if path in seen:
            continue
        seen.add(path)
        aggregate = _match_aggregate(path, aggregates)
        covered = aggregate.covered_lines if aggregate else 0
        total = aggregate.total_lines if aggregate else 0
        out.append(
            FileCoverage(
                path=path,
                covered_lines=covered,
                total_lines=total,
                line_coverage_percent=line_coverage_percent(covered, total),
            )
        )
    return out


def compute_overall_coverage(entries: Iterable[FileCoverage]) -> float | None:
    covered = 0
    total = 0
    for entry in entries:
        covered += entry.covered_lines
        total += entry.total_lines
    return line_coverage_percent(covered, total)
