"""
Link Insertion Engine — Article Engine
======================================

Weaves internal and external reference links into generated HTML under
placement constraints:

    - at most ``max_internal_links`` internal and ``max_external_links``
      external anchors per document,
    - at most ``max_links_per_url`` anchors pointing at the same URL,
    - at least ``min_distance_between_links`` characters between any two
      inserted anchors,
    - at most ``max_links_per_section`` anchors per H2 section,
    - never inside an existing ``<a>``, a heading, a tag, or code/script/style,
    - never on the primary subject phrase itself.

Each anchor phrase of a candidate is matched on word boundaries; every viable
occurrence is scored against its section and the best one wins.  A best match
scoring below ``min_semantic_score`` is counted under ``rejected_low_score``
and the next phrase is tried.  A candidate contributes at most one anchor.

The engine is pure: every call threads its own ``_InsertionState`` accumulator
and nothing survives between calls.

Usage:
    from article_engine.link_engine import LinkCandidate, LinkInsertionEngine

    engine = LinkInsertionEngine()
    result = engine.insert(html, internal_links=[LinkCandidate(...)],
                           external_links=[], subject_phrase="coffee makers")
    result.markup, result.stats.total_inserted
"""

from __future__ import annotations

import html as html_lib
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger("link_engine")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

INTERNAL = "internal"
EXTERNAL = "external"

MAX_REFERENCE_KEYWORDS = 12

_STOP_WORDS = frozenset({
    "的", "是", "在", "和", "了", "與", "或", "及", "等", "這", "那",
    "關於", "參考", "來源",
    "the", "a", "an", "and", "or", "is", "are", "for", "to", "in", "on",
    "at", "by", "with",
})

_TECHNICAL_TERMS = frozenset({
    "h1", "h2", "h3", "h4", "h5", "h6", "https", "http", "www", "html",
    "php", "asp", "jsp", "index", "page", "post", "article", "blog", "news",
    "id", "ref", "src", "img", "css", "js",
})

_GENERIC_TLD_PARTS = frozenset({"com", "tw", "org", "net"})

# Whole elements whose text must never receive an anchor
_PROTECTED_ELEMENT_RE = re.compile(
    r"<(a|h[1-6]|script|style|code|pre|button)\b[^>]*>.*?</\1\s*>",
    re.IGNORECASE | re.DOTALL,
)
_TAG_RE = re.compile(r"<[^>]+>")
_ENTITY_RE = re.compile(r"&(?:#\d+|#x[0-9a-f]+|\w+);", re.IGNORECASE)
_H2_RE = re.compile(r"<h2\b[^>]*>(.*?)</h2\s*>", re.IGNORECASE | re.DOTALL)
_HEADING_BEFORE_RE = re.compile(r"<(h[23])\b[^>]*>(.*?)</\1\s*>", re.IGNORECASE | re.DOTALL)
_WORD_SPLIT_RE = re.compile(r"[\s,.;:!?()\"'，、。：；！？]+")
_CJK_PHRASE_RE = re.compile(r"[一-龥]{3,10}")


def _strip_tags(text: str) -> str:
    return _TAG_RE.sub(" ", text)


# ===================================================================
# DATA CLASSES
# ===================================================================


@dataclass
class LinkEngineConfig:
    max_internal_links: int = 5
    max_external_links: int = 3
    max_links_per_url: int = 2
    min_distance_between_links: int = 500
    max_links_per_section: int = 2
    min_semantic_score: float = 0.4

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> LinkEngineConfig:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class LinkCandidate:
    """A destination plus the phrases that may become its anchor."""
    url: str
    title: str = ""
    anchors: List[str] = field(default_factory=list)
    kind: str = INTERNAL

    def phrases(self) -> List[str]:
        return list(self.anchors) if self.anchors else ([self.title] if self.title else [])

    @classmethod
    def from_dict(cls, data: Dict[str, Any], kind: str = INTERNAL) -> LinkCandidate:
        anchors = data.get("anchors") or data.get("keywords") or []
        return cls(
            url=data["url"],
            title=data.get("title", ""),
            anchors=[str(a) for a in anchors],
            kind=data.get("kind", kind),
        )

    @classmethod
    def from_reference(cls, ref: Dict[str, Any]) -> LinkCandidate:
        """External candidate from a research source {url, title, description, domain}."""
        return cls(
            url=ref["url"],
            title=ref.get("title", ""),
            anchors=extract_reference_keywords(ref),
            kind=EXTERNAL,
        )


@dataclass
class InsertedLink:
    kind: str
    anchor: str
    url: str
    offset: int              # index of the opening <a in the returned markup
    section: str             # owning H2 heading, or "main"
    score: float
    position: str = ""       # human-readable context, e.g. "near H2: Brewing"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LinkStats:
    internal_inserted: int = 0
    external_inserted: int = 0
    total_inserted: int = 0
    avg_relevance_score: float = 0.0
    rejected_low_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LinkInsertionResult:
    markup: str
    stats: LinkStats
    inserted_links: List[InsertedLink] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "markup": self.markup,
            "stats": self.stats.to_dict(),
            "inserted_links": [link.to_dict() for link in self.inserted_links],
        }


@dataclass
class _Section:
    index: int
    heading: str
    start: int
    end: int


@dataclass
class _Match:
    start: int
    text: str
    section: _Section
    score: float


@dataclass
class _InsertionState:
    """Everything one ``insert`` call mutates."""
    markup: str
    url_usage: Dict[str, int] = field(default_factory=dict)
    positions: List[int] = field(default_factory=list)
    section_links: Dict[int, int] = field(default_factory=dict)
    inserted: List[InsertedLink] = field(default_factory=list)
    rejected_low_score: int = 0
    score_sum: float = 0.0

    def count(self, kind: str) -> int:
        return sum(1 for link in self.inserted if link.kind == kind)


# ===================================================================
# KEYWORD EXTRACTION
# ===================================================================


def _is_valid_keyword(word: str) -> bool:
    lower = word.lower()
    return (
        3 <= len(word) <= 30
        and lower not in _STOP_WORDS
        and lower not in _TECHNICAL_TERMS
        and not word.isdigit()
    )


def extract_reference_keywords(ref: Dict[str, Any]) -> List[str]:
    """Candidate anchor phrases for an external reference.

    Taken, in order, from the full title, title words, CJK phrases and words
    of the description, and the meaningful parts of the domain.  Duplicates
    are dropped and at most MAX_REFERENCE_KEYWORDS are returned.
    """
    keywords: List[str] = []
    title = (ref.get("title") or "").strip()
    description = (ref.get("description") or "").strip()
    domain = (ref.get("domain") or "").strip()

    if title:
        if len(title) >= 4 and _is_valid_keyword(title):
            keywords.append(title)
        words = [w for w in re.split(r"[\s,，、。：:]+", title) if _is_valid_keyword(w)]
        keywords.extend(words[:5])

    if len(description) > 20:
        phrases = [p for p in _CJK_PHRASE_RE.findall(description) if p not in _STOP_WORDS]
        keywords.extend(phrases[:5])
        words = [
            w for w in re.split(r"[\s,，、。：:；;！!？?]+", description)
            if _is_valid_keyword(w)
        ]
        keywords.extend(words[:5])

    if domain:
        parts = [
            p for p in re.sub(r"^www\.", "", domain).split(".")
            if len(p) >= 3 and p not in _GENERIC_TLD_PARTS
        ]
        keywords.extend(parts[:2])

    seen = set()
    unique: List[str] = []
    for kw in keywords:
        if kw not in seen:
            seen.add(kw)
            unique.append(kw)
    return unique[:MAX_REFERENCE_KEYWORDS]


# ===================================================================
# SCORING
# ===================================================================


def _title_words(title: str) -> List[str]:
    return [w for w in _WORD_SPLIT_RE.split(title.lower()) if len(w) > 2]


def _thematic_overlap(section_text: str, title: str) -> bool:
    words = _title_words(title)
    if not words:
        return False
    content_words = {w for w in _WORD_SPLIT_RE.split(section_text.lower()) if len(w) > 2}
    overlap = sum(1 for w in words if w in content_words)
    return overlap / len(words) >= 0.3


def relevance_score(section_text: str, title: str, phrases: Sequence[str]) -> float:
    """Score in [0, 1] of how well a link fits the text of its section.

    Half comes from the share of title words present in the section, 0.2 per
    anchor phrase present, and 0.3 for thematic word overlap.
    """
    lower = section_text.lower()
    score = 0.0

    words = _title_words(title)
    if words:
        score += sum(1 for w in words if w in lower) / len(words) * 0.5

    for phrase in phrases:
        if phrase and phrase.lower() in lower:
            score += 0.2

    if _thematic_overlap(section_text, title):
        score += 0.3

    return min(score, 1.0)


# ===================================================================
# ENGINE
# ===================================================================


class LinkInsertionEngine:
    """Pure link placement over HTML markup."""

    def __init__(self, config: Optional[LinkEngineConfig] = None) -> None:
        self.config = config or LinkEngineConfig()

    # -- structure -----------------------------------------------------------

    @staticmethod
    def _sections(markup: str) -> List[_Section]:
        heads = list(_H2_RE.finditer(markup))
        if not heads:
            return [_Section(index=0, heading="main", start=0, end=len(markup))]

        sections = []
        if heads[0].start() > 0:
            sections.append(_Section(index=-1, heading="intro", start=0, end=heads[0].start()))
        for i, head in enumerate(heads):
            end = heads[i + 1].start() if i + 1 < len(heads) else len(markup)
            sections.append(_Section(
                index=i,
                heading=_strip_tags(head.group(1)).strip(),
                start=head.start(),
                end=end,
            ))
        return sections

    @staticmethod
    def _section_at(sections: List[_Section], pos: int) -> _Section:
        for section in sections:
            if section.start <= pos < section.end:
                return section
        return sections[-1]

    @staticmethod
    def _protected_spans(markup: str) -> List[Tuple[int, int]]:
        spans = [(m.start(), m.end()) for m in _PROTECTED_ELEMENT_RE.finditer(markup)]
        spans.extend((m.start(), m.end()) for m in _TAG_RE.finditer(markup))
        spans.extend((m.start(), m.end()) for m in _ENTITY_RE.finditer(markup))
        return spans

    @staticmethod
    def _position_context(markup: str, index: int) -> str:
        before = markup[max(0, index - 200):index]
        heads = list(_HEADING_BEFORE_RE.finditer(before))
        for level in ("h3", "h2"):
            found = [h for h in heads if h.group(1).lower() == level]
            if found:
                text = _strip_tags(found[-1].group(2)).strip()
                return f"near {level.upper()}: {text[:30]}"
        return f"position: {index}"

    # -- matching ------------------------------------------------------------

    def _find_best_match(
        self,
        state: _InsertionState,
        phrase: str,
        title: str,
        scoring_phrases: Sequence[str],
    ) -> Optional[_Match]:
        markup = state.markup
        sections = self._sections(markup)
        protected = self._protected_spans(markup)
        pattern = re.compile(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)", re.IGNORECASE)

        best: Optional[_Match] = None
        for m in pattern.finditer(markup):
            start, end = m.start(), m.end()
            if any(s < end and start < e for s, e in protected):
                continue

            min_distance = self.config.min_distance_between_links
            if min_distance > 0 and any(abs(start - p) < min_distance for p in state.positions):
                logger.debug("Skip '%s' at %d: too close to an inserted link", phrase, start)
                continue

            section = self._section_at(sections, start)
            if state.section_links.get(section.index, 0) >= self.config.max_links_per_section:
                logger.debug("Skip '%s' at %d: section '%s' is full", phrase, start, section.heading)
                continue

            section_text = _strip_tags(markup[section.start:section.end])
            score = relevance_score(section_text, title, scoring_phrases)
            if best is None or score > best.score:
                best = _Match(start=start, text=m.group(0), section=section, score=score)
        return best

    def _apply(
        self, state: _InsertionState, match: _Match, candidate: LinkCandidate,
    ) -> InsertedLink:
        url = html_lib.escape(candidate.url, quote=True)
        title = html_lib.escape(candidate.title, quote=True)
        if candidate.kind == EXTERNAL:
            opening = f'<a href="{url}" target="_blank" rel="noopener noreferrer" title="{title}">'
        else:
            opening = f'<a href="{url}" rel="internal" title="{title}">'
        replacement = f"{opening}{match.text}</a>"

        markup = state.markup
        position = self._position_context(markup, match.start)
        state.markup = markup[:match.start] + replacement + markup[match.start + len(match.text):]

        shift = len(replacement) - len(match.text)
        state.positions = [p + shift if p > match.start else p for p in state.positions]
        for link in state.inserted:
            if link.offset > match.start:
                link.offset += shift
        state.positions.append(match.start)
        state.section_links[match.section.index] = state.section_links.get(match.section.index, 0) + 1
        state.url_usage[candidate.url] = state.url_usage.get(candidate.url, 0) + 1
        state.score_sum += match.score

        inserted = InsertedLink(
            kind=candidate.kind,
            anchor=match.text,
            url=candidate.url,
            offset=match.start,
            section=match.section.heading,
            score=round(match.score, 4),
            position=position,
        )
        state.inserted.append(inserted)
        return inserted

    def _place(
        self,
        state: _InsertionState,
        candidates: Sequence[LinkCandidate],
        limit: int,
        subject_phrase: str,
    ) -> None:
        subject = subject_phrase.strip().casefold()
        for candidate in candidates:
            kind = candidate.kind
            if state.count(kind) >= limit:
                break
            if state.url_usage.get(candidate.url, 0) >= self.config.max_links_per_url:
                logger.debug("Skip %s: url already used %d times", candidate.url,
                             state.url_usage[candidate.url])
                continue

            for phrase in candidate.phrases():
                phrase = phrase.strip()
                if len(phrase) < 2 or (subject and phrase.casefold() == subject):
                    continue

                scoring = candidate.anchors if kind == INTERNAL and candidate.anchors else [phrase]
                match = self._find_best_match(state, phrase, candidate.title, scoring)
                if match is None:
                    continue
                if match.score < self.config.min_semantic_score:
                    state.rejected_low_score += 1
                    logger.debug(
                        "Rejected low-score %s link '%s' (score: %.2f)", kind, phrase, match.score,
                    )
                    continue

                link = self._apply(state, match, candidate)
                logger.debug(
                    "Inserted %s link '%s' -> %s (score: %.2f)", kind, link.anchor, link.url, link.score,
                )
                break

    def insert(
        self,
        markup: str,
        internal_links: Sequence[LinkCandidate] = (),
        external_links: Sequence[LinkCandidate] = (),
        subject_phrase: str = "",
    ) -> LinkInsertionResult:
        """Rewrite *markup* with a bounded, spread-out set of anchors.

        Args:
            markup: HTML to enrich.  Returned unchanged when nothing qualifies.
            internal_links: Site-internal candidates, tried first.
            external_links: External reference candidates.
            subject_phrase: Primary subject of the document; never used as an anchor.

        Returns:
            LinkInsertionResult with the rewritten markup, stats and inserted links.
        """
        state = _InsertionState(markup=markup or "")

        internal = [
            LinkCandidate(c.url, c.title, list(c.anchors), INTERNAL) for c in internal_links
        ]
        external = [
            LinkCandidate(c.url, c.title, list(c.anchors), EXTERNAL) for c in external_links
        ]
        self._place(state, internal, self.config.max_internal_links, subject_phrase)
        self._place(state, external, self.config.max_external_links, subject_phrase)

        total = len(state.inserted)
        stats = LinkStats(
            internal_inserted=state.count(INTERNAL),
            external_inserted=state.count(EXTERNAL),
            total_inserted=total,
            avg_relevance_score=round(state.score_sum / total, 4) if total else 0.0,
            rejected_low_score=state.rejected_low_score,
        )
        logger.info(
            "Link insertion done: internal=%d external=%d rejected_low_score=%d avg=%.2f",
            stats.internal_inserted, stats.external_inserted,
            stats.rejected_low_score, stats.avg_relevance_score,
        )
        return LinkInsertionResult(
            markup=state.markup,
            stats=stats,
            inserted_links=sorted(state.inserted, key=lambda link: link.offset),
        )
