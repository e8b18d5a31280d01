from bookfetch.workflows.canonical import canonicalize
from bookfetch.workflows.cascade import ExtractionCascade, FieldSpec, PageContext, Strategy, Tier
from bookfetch.workflows.extract_utils import normalize_title

ADDRESS = canonicalize("https://www.amazon.co.jp/dp/B00TESTID1")


def _page(head="", body=""):
    return f"<html><head><title>Store Page</title>{head}</head><body>{body}</body></html>"


def _ld(payload):
    return f'<script type="application/ld+json">{payload}</script>'


def test_structured_data_beats_semantic_markup():
    html = _page(
        head=_ld('{"@context": "https://schema.org", "@type": "Book", "name": "Structured Title",'
                 ' "author": {"@type": "Person", "name": "Jane Doe"}}'),
        body='<span id="productTitle">Semantic Title</span>',
    )
    result = ExtractionCascade().extract(html, ADDRESS)
    title = result["title"]
    assert title.value == "Structured Title"
    assert title.tier == Tier.STRUCTURED_DATA
    assert title.confidence == 0.95
    assert title.source == "structured-data"
    assert result["author"].value == "Jane Doe"


def test_semantic_markup_used_when_no_structured_data():
    html = _page(body='<h1><span id="productTitle">  Semantic   Title </span></h1>')
    title = ExtractionCascade().extract(html, ADDRESS)["title"]
    assert title.value == "Semantic Title"
    assert title.tier == Tier.SEMANTIC_MARKUP
    assert title.confidence == 0.8
    assert title.source == "semantic-markup"


def test_document_title_candidates_are_scored():
    html = (
        "<html><head><title>Amazon.co.jp | Kindle Store</title>"
        '<meta property="og:title" content="The Long Road Home: A Novel">'
        "</head><body></body></html>"
    )
    title = ExtractionCascade().extract(html)["title"]
    assert title.value == "The Long Road Home: A Novel"
    assert title.tier == Tier.TEXT_PATTERN


def test_author_list_is_deduplicated():
    html = _page(head='<meta name="author" content="Jane Doe, Jane   Doe, John Smith">')
    author = ExtractionCascade().extract(html, ADDRESS)["author"]
    assert author.value == "Jane Doe, John Smith"
    assert author.tier == Tier.STRUCTURED_DATA


def test_byline_contributors_skip_follow_widgets():
    html = _page(
        body=(
            '<div id="bylineInfo" class="a-section">'
            '<span class="author notFaded"><a class="a-link-normal contributorNameID" href="/e/B000APY0KI">村上 春樹</a>'
            '<span class="contribution">(著)</span></span>'
            '<span class="author notFaded"><a class="a-link-normal" href="/s?field-author=x">'
            "Jay Rubin</a></span>"
            '<button class="follow-button">フォロー</button>'
            "</div>"
        )
    )
    author = ExtractionCascade().extract(html, ADDRESS)["author"]
    assert author.value == "村上 春樹, Jay Rubin"
    assert author.tier == Tier.SEMANTIC_MARKUP


def test_labelled_author_text():
    html = _page(body="<div><span>著者: 山田 太郎</span></div>")
    author = ExtractionCascade().extract(html, ADDRESS)["author"]
    assert author.value == "山田 太郎"
    assert author.tier == Tier.TEXT_PATTERN
    assert author.source == "text-pattern"


def test_review_count_from_semantic_element():
    html = _page(body='<span id="acrCustomerReviewText">5,432個の評価</span>')
    count = ExtractionCascade().extract(html, ADDRESS)["review_count"]
    assert (count.value, count.tier, count.source) == (5432, Tier.SEMANTIC_MARKUP, "semantic-markup")


def test_review_count_structured_fallback():
    html = _page(
        head=_ld('{"@type": "Product", "name": "Fallback Book",'
                 ' "aggregateRating": {"@type": "AggregateRating", "ratingValue": "4.4", "reviewCount": "1292"}}'),
    )
    count = ExtractionCascade().extract(html, ADDRESS)["review_count"]
    assert count.value == 1292
    assert count.source == "structured-data-fallback"
    assert count.tier == Tier.STRUCTURED_DATA


def test_review_count_contextual_scan():
    html = _page(body="<div><span>1,292 global ratings</span></div>")
    count = ExtractionCascade().extract(html, ADDRESS)["review_count"]
    assert count.value == 1292
    assert count.source == "contextual-scan"
    assert count.tier == Tier.STRUCTURAL


def test_no_reviews_marker_is_zero():
    html = _page(body="<div>No customer reviews</div>")
    count = ExtractionCascade().extract(html, ADDRESS)["review_count"]
    assert count.value == 0
    assert count.tier == Tier.TEXT_PATTERN


def test_manual_override_wins_and_invalid_override_is_ignored():
    html = _page(head=_ld('{"@type": "Book", "name": "Structured Title", "author": "Jane Doe"}'))
    cascade = ExtractionCascade()
    result = cascade.extract(html, ADDRESS, overrides={"author": "Override Author", "title": "!!"})
    assert result["author"].value == "Override Author"
    assert result["author"].tier == Tier.MANUAL_OVERRIDE
    assert result["author"].confidence == 1.0
    assert result["author"].source == "manual-override"
    assert result["title"].value == "Structured Title"


def test_cover_prefers_largest_dynamic_image():
    html = _page(
        body=(
            '<div id="imgTagWrapperId">'
            '<img id="landingImage" src="https://m.media-amazon.com/images/I/81abc._SX38_.jpg"'
            ' data-old-hires="https://m.media-amazon.com/images/I/81abc._SL1500_.jpg"'
            ' data-a-dynamic-image=\'{"https://m.media-amazon.com/images/I/81abc._SX300_.jpg":[300,450],'
            '"https://m.media-amazon.com/images/I/81abc._SX600_.jpg":[600,900]}\'>'
            "</div>"
        )
    )
    cover = ExtractionCascade().extract(html, ADDRESS)["cover_url"]
    assert cover.value == "https://m.media-amazon.com/images/I/81abc._SX600_.jpg"
    assert cover.tier == Tier.STRUCTURED_DATA


def test_cover_skips_banners_and_falls_back_to_preview_meta():
    html = _page(
        head='<meta property="og:image" content="https://m.media-amazon.com/images/I/51xyz.jpg">',
        body='<img id="landingImage" src="https://m.media-amazon.com/images/G/09/Digital_Video/banner.jpg">',
    )
    cover = ExtractionCascade().extract(html, ADDRESS)["cover_url"]
    assert cover.value == "https://m.media-amazon.com/images/I/51xyz.jpg"
    assert cover.tier == Tier.TEXT_PATTERN


def test_rating_price_and_identifier():
    html = _page(
        body=(
            '<span id="acrPopover" title="5つ星のうち4.3"></span>'
            '<span class="a-price"><span class="a-offscreen">￥1,540</span></span>'
            '<input type="hidden" name="ASIN" value="4061234567">'
        )
    )
    result = ExtractionCascade().extract(html, ADDRESS)
    assert result["rating"].value == 4.3
    assert result["price"].value == 1540.0
    assert result["identifier"].value == "4061234567"
    assert result["identifier"].tier == Tier.SEMANTIC_MARKUP


def test_identifier_falls_back_to_address():
    identifier = ExtractionCascade().extract(_page(), ADDRESS)["identifier"]
    assert identifier.value == "B00TESTID1"
    assert identifier.source == "canonical-address"


def test_missing_fields_are_absent_not_none():
    result = ExtractionCascade().extract(_page())
    assert "cover_url" not in result
    assert "rating" not in result


def test_broken_strategy_is_a_miss():
    def explode(ctx):
        raise RuntimeError("boom")
        yield  # pragma: no cover

    def fallback(ctx):
        yield "Recovered Title"

    spec = FieldSpec(
        "title",
        normalize_title,
        (Strategy("explodes", Tier.STRUCTURED_DATA, explode), Strategy("works", Tier.STRUCTURAL, fallback)),
    )
    result = ExtractionCascade([spec]).extract(_page())
    assert result["title"].value == "Recovered Title"
    assert result["title"].tier == Tier.STRUCTURAL


def test_page_context_regions():
    ctx = PageContext("x" * 300 + '<div id="bylineInfo"><a>Name</a></div>')
    assert ctx.byline.startswith("x")
    assert "Name" in ctx.byline
    assert PageContext("<html></html>").byline == ""


def test_surnames_resembling_ui_words_survive_every_path():
    html = _page(
        body=(
            '<div id="bylineInfo"><span class="author notFaded">'
            '<a class="a-link-normal contributorNameID" href="/e/B000000001">Thomas More</a></span></div>'
        )
    )
    assert ExtractionCascade().extract(html, ADDRESS)["author"].value == "Thomas More"

    result = ExtractionCascade().extract(_page(), ADDRESS, overrides={"author": "Richard Price"})
    assert result["author"].value == "Richard Price"
    assert result["author"].source == "manual-override"


def test_review_count_with_european_thousands_separators():
    semantic = _page(body='<span id="acrCustomerReviewText">1.292 Sternebewertungen</span>')
    count = ExtractionCascade().extract(semantic, ADDRESS)["review_count"]
    assert (count.value, count.source) == (1292, "semantic-markup")

    contextual = _page(body="<div><span>1 292 évaluations globales</span></div>")
    assert ExtractionCascade().extract(contextual, ADDRESS)["review_count"].value == 1292

    scanned = _page(body="<div><span>2.345 globale Bewertungen</span></div>")
    count = ExtractionCascade().extract(scanned, ADDRESS)["review_count"]
    assert (count.value, count.source) == (2345, "contextual-scan")


def test_split_price_markup_reads_offscreen_total():
    html = _page(
        body=(
            '<span class="a-price aok-align-center" data-a-size="xl">'
            '<span class="a-offscreen">$12.99</span>'
            '<span aria-hidden="true"><span class="a-price-symbol">$</span>'
            '<span class="a-price-whole">12<span class="a-price-decimal">.</span></span>'
            '<span class="a-price-fraction">99</span></span></span>'
        )
    )
    price = ExtractionCascade().extract(html, ADDRESS)["price"]
    assert price.value == 12.99
    assert price.tier == Tier.SEMANTIC_MARKUP
