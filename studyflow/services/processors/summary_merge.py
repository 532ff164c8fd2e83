"""
Summary batch merge.

Large content is summarized batch by batch; every batch answers with
markdown where ``## `` headings mark topical sections. Because batches
overlap, the same section (and the same lines) show up more than once.

Two independent steps:

1. ``parse_summary`` turns one batch into an ordered list of
   ``SummarySection(heading, lines)``.
2. ``merge_documents`` folds any number of parsed batches into one document:
   sections are keyed by normalized heading across all batches, exact
   duplicate lines are dropped, first-seen order is kept everywhere, and
   sections left empty are dropped with a warning.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from studyflow.core.logging import get_logger

logger = get_logger(__name__)

SECTION_DIVIDER = "\n\n---\n\n"
MIN_TITLE_CHARS = 2
MIN_LINE_CHARS = 6
CHARS_PER_EXPECTED_SECTION = 50000
MIN_LINES_PER_SECTION = 2

_HEADING = re.compile(r"^##\s+(.*)$")
_ENUMERATION = re.compile(r"^[\d.\-\s)]+")


@dataclass
class SummarySection:
    heading: str
    lines: List[str] = field(default_factory=list)


@dataclass
class SummaryDocument:
    sections: List[SummarySection] = field(default_factory=list)

    @property
    def line_count(self) -> int:
        return sum(len(s.lines) for s in self.sections)

    def render(self) -> str:
        blocks = []
        for section in self.sections:
            body = "\n".join(section.lines)
            blocks.append(f"## {section.heading}\n{body}" if section.heading else body)
        return SECTION_DIVIDER.join(blocks)


@dataclass
class MergeResult:
    document: SummaryDocument
    warnings: List[str] = field(default_factory=list)
    dropped_sections: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.document.render()


def normalize_heading(title: str) -> str:
    """Key used to coalesce headings: '2. Cell Division' == 'Cell Division'."""
    stripped = _ENUMERATION.sub("", title.strip())
    return re.sub(r"\s+", " ", stripped).strip().lower()


def parse_summary(text: str) -> SummaryDocument:
    """
    Parse one batch's markdown.

    Lines before the first heading belong to an untitled section. Headings
    whose title is shorter than two characters are ignored. Content lines
    of five characters or fewer (bullets, separators) are skipped.
    """
    document = SummaryDocument()
    current: Optional[SummarySection] = None

    for raw_line in text.splitlines():
        line = raw_line.strip()
        heading = _HEADING.match(line)
        if heading:
            title = heading.group(1).strip().strip("#").strip()
            if len(title) < MIN_TITLE_CHARS:
                continue
            current = SummarySection(heading=title)
            document.sections.append(current)
            continue

        if len(line) < MIN_LINE_CHARS:
            continue
        if current is None:
            current = SummarySection(heading="")
            document.sections.append(current)
        current.lines.append(line)

    return document


def merge_documents(documents: Iterable[SummaryDocument]) -> MergeResult:
    """Coalesce sections by normalized heading, dropping repeated lines."""
    merged: dict[str, SummarySection] = {}
    seen_lines: dict[str, set[str]] = {}

    for document in documents:
        for section in document.sections:
            key = normalize_heading(section.heading)
            if key not in merged:
                merged[key] = SummarySection(heading=section.heading)
                seen_lines[key] = set()
            target = merged[key]
            for line in section.lines:
                if line in seen_lines[key]:
                    continue
                seen_lines[key].add(line)
                target.lines.append(line)

    result = MergeResult(document=SummaryDocument())
    for section in merged.values():
        if not section.lines:
            result.dropped_sections.append(section.heading)
            logger.warning("summary_section_dropped_empty", heading=section.heading)
            continue
        result.document.sections.append(section)

    return result


def merge_summaries(batches: Sequence[str], source_chars: Optional[int] = None) -> MergeResult:
    """
    Parse and merge batch summaries, then run non-fatal sanity checks.

    Args:
        batches: Raw markdown answers, in batch order
        source_chars: Size of the summarized input, used to judge whether the
                      section count is plausible (defaults to summary size)
    """
    result = merge_documents(parse_summary(batch) for batch in batches)

    total_chars = source_chars if source_chars is not None else sum(len(b) for b in batches)
    section_count = len(result.document.sections)
    line_count = result.document.line_count

    expected_sections = total_chars / CHARS_PER_EXPECTED_SECTION
    if section_count < expected_sections:
        result.warnings.append(
            f"Only {section_count} sections for {total_chars} characters of input"
        )
    if line_count < section_count * MIN_LINES_PER_SECTION:
        result.warnings.append(
            f"Only {line_count} lines across {section_count} sections"
        )

    for warning in result.warnings:
        logger.warning("summary_merge_sanity_check", detail=warning)

    logger.info(
        "summary_batches_merged",
        batches=len(batches),
        sections=section_count,
        lines=line_count,
        dropped=len(result.dropped_sections),
    )
    return result
