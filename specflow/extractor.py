"""Requirements document → ordered Requirement sequence."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import yaml

from .config import Config
from .errors import MalformedDocument
from .models import Category, Requirement, RequirementsDocument

logger = logging.getLogger(__name__)

OVERVIEW = "overview"
OUT_OF_SCOPE = "out-of-scope"

_REQUIREMENT_KINDS = {c.value for c in Category}

_SECTION_ALIASES: dict[str, str] = {
    "overview": OVERVIEW,
    "summary": OVERVIEW,
    "introduction": OVERVIEW,
    "background": OVERVIEW,
    "purpose": OVERVIEW,
    "purpose & scope": OVERVIEW,
    "goals": OVERVIEW,
    "context": OVERVIEW,
    "motivation": OVERVIEW,
    "requirements": "functional",
    "functional requirements": "functional",
    "features": "functional",
    "user stories": "functional",
    "capabilities": "functional",
    "non-functional requirements": "non-functional",
    "nonfunctional requirements": "non-functional",
    "non functional requirements": "non-functional",
    "non-functional": "non-functional",
    "constraints": "non-functional",
    "quality attributes": "non-functional",
    "performance": "non-functional",
    "performance requirements": "non-functional",
    "security": "non-functional",
    "security requirements": "non-functional",
    "reliability": "non-functional",
    "edge cases": "edge-case",
    "edge case": "edge-case",
    "boundary conditions": "edge-case",
    "error handling": "edge-case",
    "error cases": "edge-case",
    "failure modes": "edge-case",
    "acceptance criteria": "acceptance",
    "acceptance": "acceptance",
    "acceptance tests": "acceptance",
    "definition of done": "acceptance",
    "non-goals": OUT_OF_SCOPE,
    "non goals": OUT_OF_SCOPE,
    "out of scope": OUT_OF_SCOPE,
    "out-of-scope": OUT_OF_SCOPE,
}


# -------------------------------------------------------------------
# Frontmatter parsing
# -------------------------------------------------------------------

_FM_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n(.*)", re.DOTALL)


def parse_frontmatter(content: str) -> tuple[dict, str, int]:
    """Parse YAML frontmatter from markdown content.

    Returns (metadata_dict, body_text, body_offset).
    """
    match = _FM_RE.match(content)
    if match:
        meta = yaml.safe_load(match.group(1))
        if not isinstance(meta, dict):
            meta = {}
        return meta, match.group(2), match.start(2)
    return {}, content, 0


# -------------------------------------------------------------------
# Section tokenizer
# -------------------------------------------------------------------

_HEADING_RE = re.compile(r"^\s{0,3}(#{1,6})\s+(.+?)\s*#*\s*$")
_SETEXT_RE = re.compile(r"^\s{0,3}(=+|-+)\s*$")
_HR_RE = re.compile(r"^\s{0,3}([-*_])(\s*\1){2,}\s*$")
_ITEM_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?(.*)$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_NUMBERING_RE = re.compile(r"^(?:§\s*)?\d+(?:\.\d+)*\.?\s+")

_LEAD_ID_RE = re.compile(r"^\[([A-Za-z][\w.-]*)\]\s*:?\s*|^([A-Z][A-Z0-9_]*-?\d+)\s*:\s+")
_ITEM_ID_RE = re.compile(
    r"^\s*(?:(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?)?"
    r"(?:\[([A-Za-z][\w.-]*)\]|([A-Z][A-Z0-9_]*-?\d+)\s*:\s)"
)
_REF_RE = re.compile(r"(?<![\w\]])\[([A-Za-z][\w.-]*)\](?!\()")
_CODE_RE = re.compile(r"(```|~~~).*?(?:\1|\Z)|`[^`\n]*`", re.DOTALL)
_PROVIDES_RE = re.compile(r"\b(?:provides|produces|creates|defines)\s+`([^`]+)`", re.IGNORECASE)
_CONSUMES_RE = re.compile(r"\b(?:uses|consumes|reads|needs)\s+`([^`]+)`", re.IGNORECASE)
_TAG_RE = re.compile(r"(?<![\w@])@([A-Za-z][\w-]*)")


def normalise_heading(title: str) -> str:
    title = title.strip().strip("*_").strip()
    title = _NUMBERING_RE.sub("", title)
    title = title.rstrip(":").strip().lower()
    return re.sub(r"\s+", " ", title)


def classify_heading(title: str, aliases: dict[str, str] | None = None) -> str | None:
    """Map a heading to a section kind, or None when unrecognised.

    Exact alias matches win; otherwise the longest alias that appears as a
    whole phrase in the heading is used.
    """
    table = aliases if aliases is not None else _SECTION_ALIASES
    norm = normalise_heading(title)
    if norm in table:
        return table[norm]
    best: tuple[str, str] | None = None
    for alias, kind in table.items():
        if re.search(rf"(?<![\w-]){re.escape(alias)}(?![\w-])", norm):
            if best is None or len(alias) > len(best[0]):
                best = (alias, kind)
    return best[1] if best else None


def _stage_for(title: str, stages: dict[str, list[str]]) -> str | None:
    norm = normalise_heading(title)
    for stage, names in stages.items():
        if norm == stage or norm in names:
            return stage
    return None


@dataclass
class _Section:
    level: int
    kind: str | None
    stage: str
    title: str


@dataclass
class _Span:
    kind: str | None
    stage: str
    section: str
    text: str
    offset: int


def _tokenize(
    body: str,
    base_offset: int,
    aliases: dict[str, str],
    stages: dict[str, list[str]],
) -> Iterator[_Span]:
    """Yield text spans tagged with the section they appear in."""
    stack: list[_Section] = []
    buf: list[str] = []
    buf_offset = 0
    fenced = False
    in_fence = False
    in_comment = False

    def _flush():
        nonlocal buf, fenced
        span = None
        if buf:
            text = ("\n" if fenced else " ").join(buf).strip()
            if text:
                current = stack[-1] if stack else None
                span = _Span(
                    kind=current.kind if current else None,
                    stage=current.stage if current else "core",
                    section=current.title if current else "",
                    text=text,
                    offset=buf_offset,
                )
        buf = []
        fenced = False
        return span

    def _open_section(level: int, title: str):
        while stack and stack[-1].level >= level:
            stack.pop()
        parent = stack[-1] if stack else None
        stage = parent.stage if parent else "core"
        kind = None
        if parent and parent.kind in _REQUIREMENT_KINDS:
            sub_stage = _stage_for(title, stages)
            if sub_stage:
                kind, stage = parent.kind, sub_stage
        if kind is None:
            kind = classify_heading(title, aliases)
        if kind is None and parent:
            kind = parent.kind
        stack.append(_Section(level=level, kind=kind, stage=stage, title=title.strip()))

    lines = body.splitlines(keepends=True)
    offset = base_offset
    i = 0
    while i < len(lines):
        raw = lines[i]
        line = raw.rstrip("\r\n")
        pos = offset
        offset += len(raw)
        i += 1

        # HTML comments are not document text
        if in_comment:
            if "-->" in line:
                in_comment = False
            continue
        if not in_fence and line.lstrip().startswith("<!--"):
            in_comment = "-->" not in line
            continue

        if _FENCE_RE.match(line):
            if not buf:
                buf_offset = pos
            buf.append(line)
            fenced = True
            in_fence = not in_fence
            continue
        if in_fence:
            buf.append(line)
            continue

        m = _HEADING_RE.match(line)
        if m:
            span = _flush()
            if span:
                yield span
            _open_section(len(m.group(1)), m.group(2))
            continue

        if (
            line.strip()
            and not buf
            and not _ITEM_RE.match(line)
            and i < len(lines)
            and _SETEXT_RE.match(lines[i].rstrip("\r\n"))
        ):
            underline = lines[i].strip()
            offset += len(lines[i])
            i += 1
            _open_section(1 if underline.startswith("=") else 2, line.strip())
            continue

        if not line.strip() or _HR_RE.match(line):
            span = _flush()
            if span:
                yield span
            continue

        item = _ITEM_RE.match(line)
        if item:
            span = _flush()
            if span:
                yield span
            buf_offset = pos
            buf.append(item.group(1).strip())
            continue

        if not buf:
            buf_offset = pos
        buf.append(line.strip())

    span = _flush()
    if span:
        yield span


# -------------------------------------------------------------------
# Requirement sequence
# -------------------------------------------------------------------

def _dedupe(values) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


class RequirementSequence:
    """Lazy, restartable sequence of Requirements over one document.

    Every iteration re-reads the original text; nothing is cached, so a
    caller holding an updated document simply extracts again.
    """

    def __init__(self, text: str, config: Config | None = None):
        config = config or Config()
        self.text = text
        self._aliases = {**_SECTION_ALIASES, **config.extraction.heading_aliases}
        self._stages = config.planning.stages
        self.metadata, self._body, self._body_offset = parse_frontmatter(text)
        self._check_structure()

    def _check_structure(self) -> None:
        def _marks(title: str) -> bool:
            return classify_heading(title, self._aliases) not in (None, OUT_OF_SCOPE)

        lines = self._body.splitlines()
        for line in lines:
            m = _HEADING_RE.match(line)
            if m and _marks(m.group(2)):
                return
        for prev, line in zip(lines, lines[1:]):
            if prev.strip() and _SETEXT_RE.match(line) and _marks(prev):
                return
        raise MalformedDocument(
            "No recognisable sections found (expected headings such as "
            "Overview, Requirements, Acceptance Criteria or Edge Cases)"
        )

    def _spans(self) -> Iterator[_Span]:
        return _tokenize(self._body, self._body_offset, self._aliases, self._stages)

    def __iter__(self) -> Iterator[Requirement]:
        explicit = set()
        for line in self._body.splitlines():
            m = _ITEM_ID_RE.match(line)
            if m:
                explicit.add(m.group(1) or m.group(2))

        seen: set[str] = set()
        counter = 0
        for span in self._spans():
            if span.kind in (OVERVIEW, OUT_OF_SCOPE):
                continue

            text = span.text
            m = _LEAD_ID_RE.match(text)
            if m:
                req_id = m.group(1) or m.group(2)
                text = text[m.end():].strip()
                if not text:
                    raise MalformedDocument(
                        f"Requirement '{req_id}' at offset {span.offset} has an id but no text"
                    )
                if req_id in seen:
                    raise MalformedDocument(
                        f"Requirement id '{req_id}' is declared more than once"
                    )
            else:
                counter += 1
                while f"R{counter}" in explicit or f"R{counter}" in seen:
                    counter += 1
                req_id = f"R{counter}"
            seen.add(req_id)

            low_confidence = span.kind not in _REQUIREMENT_KINDS
            if low_confidence:
                logger.debug(
                    f"Unclassified span at offset {span.offset} "
                    f"(section {span.section!r}) defaulted to functional"
                )
            category = Category.FUNCTIONAL if low_confidence else Category(span.kind)

            tags = _dedupe(t.lower() for t in _TAG_RE.findall(text))
            stage = span.stage
            for tag in tags:
                if tag in self._stages:
                    stage = tag

            yield Requirement(
                id=req_id,
                text=text,
                category=category,
                source_offset=span.offset,
                section=span.section,
                stage=stage,
                low_confidence=low_confidence,
                references=_dedupe(
                    r for r in _REF_RE.findall(_CODE_RE.sub(" ", text)) if r != req_id
                ),
                provides=_dedupe(_PROVIDES_RE.findall(text)),
                consumes=_dedupe(_CONSUMES_RE.findall(text)),
                tags=tags,
            )

    def document(self) -> RequirementsDocument:
        """Parse the full document: requirements plus overview and non-goals."""
        overview: list[str] = []
        non_goals: list[str] = []
        for span in self._spans():
            if span.kind == OVERVIEW:
                overview.append(span.text)
            elif span.kind == OUT_OF_SCOPE:
                non_goals.append(span.text)
        return RequirementsDocument(
            requirements=list(self),
            overview="\n\n".join(overview),
            non_goals=non_goals,
            metadata=dict(self.metadata),
        )


def extract(document_text: str, config: Config | None = None) -> RequirementSequence:
    """Segment a requirements document into classified Requirements.

    Raises MalformedDocument when no recognisable section marker exists.
    """
    return RequirementSequence(document_text, config)


def extract_file(path: str | Path, config: Config | None = None) -> RequirementSequence:
    return extract(Path(path).read_text(encoding="utf-8"), config)
