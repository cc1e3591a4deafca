"""Test assembly — Article Engine."""
from __future__ import annotations

import pytest

from article_engine.assembly import assemble_article, insert_images_into_html, slugify
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

FOUR_SECTIONS = "".join(f"<h2>{name}</h2><p>{name} text</p>" for name in "ABCD")


def _img(name: str) -> dict:
    return {"url": f"https://cdn.test/{name}.png", "alt_text": name}


# ===================================================================
# Slugs & images
# ===================================================================

class TestSlugify:

    @pytest.mark.unit
    def test_ascii(self):
        assert slugify("Best Coffee Makers 2026!") == "best-coffee-makers-2026"

    @pytest.mark.unit
    def test_non_latin(self):
        assert slugify("咖啡 機") == "咖啡-機"

    @pytest.mark.unit
    def test_empty(self):
        assert slugify("") == ""


class TestInsertImages:

    @pytest.mark.unit
    def test_featured_after_first_paragraph(self):
        html = "<p>Intro</p><p>More</p>"
        result = insert_images_into_html(html, _img("f"), [])
        assert result.startswith("<p>Intro</p>\n<figure")
        assert result.index("f.png") < result.index("<p>More</p>")

    @pytest.mark.unit
    def test_featured_dropped_without_paragraph(self):
        html = "<h2>A</h2>"
        assert insert_images_into_html(html, _img("f"), []) == html

    @pytest.mark.unit
    def test_sparse_images_skip_headings(self):
        result = insert_images_into_html(FOUR_SECTIONS, None, [_img("i1"), _img("i2")])
        assert result.index("<h2>A</h2>") < result.index("i1.png") < result.index("<h2>B</h2>")
        assert result.index("<h2>C</h2>") < result.index("i2.png") < result.index("<h2>D</h2>")

    @pytest.mark.unit
    def test_one_image_per_heading(self):
        html = "<h2>A</h2><p>a</p><h2>B</h2><p>b</p>"
        result = insert_images_into_html(html, None, [_img("i1"), _img("i2")])
        assert result.index("i1.png") < result.index("<h2>B</h2>") < result.index("i2.png")

    @pytest.mark.unit
    def test_h3_headings_take_overflow(self):
        html = "<h2>A</h2><p>a</p><h3>A1</h3><p>x</p><h3>A2</h3><p>y</p>"
        result = insert_images_into_html(html, None, [_img("i1"), _img("i2"), _img("i3")])
        assert result.count("<figure") == 3
        assert result.index("<h3>A2</h3>") < result.index("i3.png")

    @pytest.mark.unit
    def test_no_headings_drops_content_images(self):
        html = "<p>only text</p>"
        assert insert_images_into_html(html, None, [_img("i1")]) == html

    @pytest.mark.unit
    def test_images_without_url_ignored(self):
        html = "<h2>A</h2><p>a</p>"
        assert insert_images_into_html(html, {"alt_text": "x"}, [{"alt_text": "y"}]) == html

    @pytest.mark.unit
    def test_alt_text_escaped(self):
        result = insert_images_into_html("<p>x</p>", {"url": "u", "alt_text": 'a "b"'}, [])
        assert 'alt="a &quot;b&quot;"' in result


# ===================================================================
# Assembly
# ===================================================================

class TestAssembleArticle:

    def _state(self) -> JobState:
        state = JobState.new("job-1", "site-1", "Best Coffee Makers")
        state.record_output(Phase.STRATEGY, StrategyOutput(selected_title="Top Coffee Makers"))
        state.record_output(Phase.WRITING, WritingOutput(html="<p>Body</p><h2>A</h2>", word_count=900))
        return state

    @pytest.mark.unit
    def test_full_article(self):
        state = self._state()
        state.record_output(Phase.IMAGE, ImageOutput(featured_image=_img("f")))
        state.record_output(Phase.LINK_ENRICHMENT, LinkEnrichmentOutput(
            html='<p>Body <a href="/x">x</a></p><h2>A</h2>', stats={"total_inserted": 1},
        ))
        state.record_output(Phase.META, MetaOutput(title="Meta Title", slug="meta-slug",
                                                   description="desc", focus_keyword="coffee"))
        state.record_output(Phase.CATEGORY, CategoryOutput(categories=["Kitchen"], tags=["coffee"]))
        state.record_output(Phase.PUBLISH, PublishOutput(post_id="42", status="draft"))

        work = assemble_article(state)

        assert work.title == "Meta Title"
        assert work.slug == "meta-slug"
        assert '<a href="/x">x</a>' in work.html
        assert "f.png" in work.html
        assert work.job_id == "job-1"
        assert work.metadata["description"] == "desc"
        assert work.metadata["word_count"] == 900
        assert work.metadata["categories"] == ["Kitchen"]
        assert work.metadata["link_stats"] == {"total_inserted": 1}
        assert work.metadata["publish"]["post_id"] == "42"

    @pytest.mark.unit
    def test_fallbacks_when_optional_phases_degraded(self):
        state = self._state()
        state.complete_phase(Phase.IMAGE, reason="image service down")
        state.complete_phase(Phase.LINK_ENRICHMENT, reason="skipped")
        state.add_warning(Phase.IMAGE, "image failed")

        work = assemble_article(state)

        assert work.title == "Top Coffee Makers"
        assert work.slug == "top-coffee-makers"
        assert work.html == "<p>Body</p><h2>A</h2>"
        assert work.metadata["featured_image"] is None
        assert work.metadata["warnings"][0]["message"] == "image failed"
        assert "publish" not in work.metadata

    @pytest.mark.unit
    def test_subject_is_last_title_fallback(self):
        state = JobState.new("job-2", "site-1", "Pour Over Kettles")
        work = assemble_article(state)
        assert work.title == "Pour Over Kettles"
        assert work.html == ""
