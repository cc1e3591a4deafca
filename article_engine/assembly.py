"""
Article assembly — Article Engine
=================================

Turns the phase outputs of a finished job into the stored article:

    - body HTML from link enrichment when it ran, else from writing,
    - featured image right after the first paragraph,
    - content images spread over H2 headings (H3 headings take the overflow),
    - title/slug/description from meta, falling back to strategy and subject.
"""

from __future__ import annotations

import html as html_lib
import logging
import math
import re
from typing import Any, Dict, List, Optional

from article_engine.duplicate_guard import CompletedWork
from article_engine.job_state import (
    CategoryOutput,
    ImageOutput,
    JobState,
    LinkEnrichmentOutput,
    MetaOutput,
    Phase,
    PublishOutput,
    StrategyOutput,
    WritingOutput,
)

logger = logging.getLogger("assembly")

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

_H2_END_RE = re.compile(r"<h2\b[^>]*>.*?</h2\s*>", re.IGNORECASE | re.DOTALL)
_H3_END_RE = re.compile(r"<h3\b[^>]*>.*?</h3\s*>", re.IGNORECASE | re.DOTALL)


def slugify(text: str) -> str:
    """Lowercase, hyphen-separated slug keeping letters and digits of any script."""
    words = re.findall(r"\w+", (text or "").lower())
    return "-".join(w.strip("_") for w in words if w.strip("_"))[:80]


def _figure(image: Dict[str, Any]) -> str:
    url = html_lib.escape(str(image.get("url", "")), quote=True)
    alt = html_lib.escape(str(image.get("alt_text", "")), quote=True)
    width = image.get("width") or 1024
    height = image.get("height") or 1024
    return (
        '<figure class="wp-block-image size-large">\n'
        f'  <img src="{url}" alt="{alt}" width="{width}" height="{height}" />\n'
        "</figure>"
    )


def _content_image_positions(html: str, image_count: int) -> List[int]:
    h2_ends = [m.end() for m in _H2_END_RE.finditer(html)]
    h3_ends = [m.end() for m in _H3_END_RE.finditer(html)]
    h2_count = len(h2_ends)

    if image_count == 0 or (h2_count == 0 and not h3_ends):
        return []
    if h2_count and image_count <= math.ceil(h2_count / 2):
        # Sparse: every other heading
        step = max(1, h2_count // image_count)
        return [h2_ends[i * step] for i in range(image_count) if i * step < h2_count]
    if image_count <= h2_count:
        return h2_ends[:image_count]
    return sorted(h2_ends + h3_ends[:image_count - h2_count])


def insert_images_into_html(
    html: str,
    featured_image: Optional[Dict[str, Any]],
    content_images: List[Dict[str, Any]],
) -> str:
    """Place the featured image after the first ``</p>`` and content images after headings.

    Images without a heading slot are dropped.  A document without a
    paragraph keeps no featured image.
    """
    result = html or ""

    if featured_image and featured_image.get("url"):
        first_p = result.find("</p>")
        if first_p != -1:
            cut = first_p + len("</p>")
            result = f"{result[:cut]}\n{_figure(featured_image)}\n{result[cut:]}"

    images = [img for img in content_images or [] if img.get("url")]
    positions = _content_image_positions(result, len(images))
    # Back to front so earlier offsets stay valid
    for index in range(min(len(positions), len(images)) - 1, -1, -1):
        pos = positions[index]
        result = f"{result[:pos]}\n{_figure(images[index])}\n{result[pos:]}"

    if len(images) > len(positions):
        logger.debug("Dropped %d content images without a heading slot",
                     len(images) - len(positions))
    return result


def assemble_article(state: JobState) -> CompletedWork:
    """Build the completed work record from a job's phase outputs."""
    writing: Optional[WritingOutput] = state.get_typed(Phase.WRITING)
    enriched: Optional[LinkEnrichmentOutput] = state.get_typed(Phase.LINK_ENRICHMENT)
    images: Optional[ImageOutput] = state.get_typed(Phase.IMAGE)
    meta: Optional[MetaOutput] = state.get_typed(Phase.META)
    strategy: Optional[StrategyOutput] = state.get_typed(Phase.STRATEGY)
    category: Optional[CategoryOutput] = state.get_typed(Phase.CATEGORY)
    publish: Optional[PublishOutput] = state.get_typed(Phase.PUBLISH)

    body = enriched.html if enriched and enriched.html else (writing.html if writing else "")
    if images:
        body = insert_images_into_html(body, images.featured_image, images.content_images)

    title = (
        (meta.title if meta else "")
        or (strategy.selected_title if strategy else "")
        or state.subject_key
    )
    slug = (meta.slug if meta else "") or slugify(title)

    metadata: Dict[str, Any] = {
        "description": meta.description if meta else "",
        "focus_keyword": meta.focus_keyword if meta else "",
        "word_count": writing.word_count if writing else 0,
        "categories": list(category.categories) if category else [],
        "tags": list(category.tags) if category else [],
        "link_stats": dict(enriched.stats) if enriched else {},
        "featured_image": images.featured_image if images else None,
        "warnings": [w.to_dict() for w in state.warnings],
        "completed_phases": [p.value for p in state.completed_phases],
    }
    if publish:
        metadata["publish"] = publish.to_dict()

    return CompletedWork(
        scope=state.scope,
        subject_key=state.subject_key,
        job_id=state.job_id,
        title=title,
        slug=slug,
        html=body,
        metadata=metadata,
    )
