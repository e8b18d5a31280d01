from bookfetch.workflows.cascade import Tier
from bookfetch.workflows.metadata import METADATA_SOURCE, MetadataExtractor

BOOK_LD = """
<html><head><title>The Quiet Book</title>
<script type="application/ld+json">
{"@context": "https://schema.org", "@type": "Book", "name": "The Quiet Book",
 "author": [{"@type": "Person", "name": "Jane Doe"}, {"@type": "Person", "name": "John Smith"}],
 "sku": "B00TESTID1", "isbn": "9784061234567",
 "publisher": {"@type": "Organization", "name": "Kodansha"},
 "datePublished": "2020-01-15", "numberOfPages": 256, "inLanguage": "ja",
 "aggregateRating": {"@type": "AggregateRating", "ratingValue": 4.5, "reviewCount": 321},
 "offers": {"@type": "Offer", "price": "1540", "priceCurrency": "jpy"}}
</script>
<script type="application/ld+json">
{"@type": "BreadcrumbList", "itemListElement": [
  {"@type": "ListItem", "position": 1, "name": "Books"},
  {"@type": "ListItem", "position": 2, "item": {"@id": "/fiction", "name": "Fiction"}}]}
</script>
</head><body></body></html>
"""

DETAIL_BULLETS = """
<html><head><title>静かな本</title></head><body>
<div id="wayfinding-breadcrumbs_feature_div"><ul>
<li><a href="/b?node=1">本</a></li><li>›</li><li><a href="/b?node=2">文学・評論</a></li>
</ul></div>
<ul><li><a href="/other">Unrelated Link</a></li></ul>
<span class="a-price"><span class="a-offscreen">￥1,540</span></span>
<div id="detailBullets_feature_div"><ul>
<li><span class="a-list-item"><span class="a-text-bold">出版社 &rlm; : &lrm;</span><span>講談社 (2020/1/15)</span></span></li>
<li><span class="a-list-item"><span class="a-text-bold">言語 &rlm; : &lrm;</span><span>日本語</span></span></li>
<li><span class="a-list-item"><span class="a-text-bold">文庫 &rlm; : &lrm;</span><span>256ページ</span></span></li>
<li><span class="a-list-item"><span class="a-text-bold">ISBN-13 &rlm; : &lrm;</span><span>978-4061234567</span></span></li>
</ul></div>
</body></html>
"""


def test_json_ld_book_fields_are_structured_candidates():
    result = MetadataExtractor().extract_all(BOOK_LD)
    values = {name: candidate.value for name, candidate in result.candidates.items()}
    assert values == {
        "title": "The Quiet Book",
        "author": "Jane Doe, John Smith",
        "identifier": "B00TESTID1",
        "review_count": 321,
        "rating": 4.5,
        "price": 1540.0,
    }
    for candidate in result.candidates.values():
        assert candidate.source == METADATA_SOURCE
        assert candidate.tier == Tier.STRUCTURED_DATA


def test_json_ld_book_details():
    details = MetadataExtractor().extract_all(BOOK_LD).details
    assert details == {
        "isbn": "9784061234567",
        "publisher": "Kodansha",
        "publication_date": "2020-01-15",
        "page_count": 256,
        "language": "ja",
        "currency": "JPY",
        "categories": ["Books", "Fiction"],
    }


def test_detail_bullets_fill_details_without_structured_data():
    result = MetadataExtractor().extract_all(DETAIL_BULLETS)
    assert result.candidates == {}
    details = result.details
    assert details["publisher"] == "講談社"
    assert details["publication_date"] == "2020/1/15"
    assert details["page_count"] == 256
    assert details["language"] == "日本語"
    assert details["isbn"] == "9784061234567"
    assert details["currency"] == "JPY"
    assert details["categories"] == ["本", "文学・評論"]


def test_microdata_counts_are_used_without_json_ld():
    html = (
        '<html><body><div itemscope itemtype="https://schema.org/Product">'
        '<meta itemprop="ratingValue" content="4.2">'
        '<meta itemprop="reviewCount" content="87">'
        '<meta itemprop="price" content="12.99">'
        "</div></body></html>"
    )
    candidates = MetadataExtractor().extract_all(html).candidates
    assert candidates["review_count"].value == 87
    assert candidates["rating"].value == 4.2
    assert candidates["price"].value == 12.99
    assert "title" not in candidates


def test_empty_markup_yields_nothing():
    result = MetadataExtractor().extract_all("")
    assert result.candidates == {}
    assert result.details == {}


def test_non_string_json_ld_name_is_ignored():
    html = (
        '<script type="application/ld+json">'
        '{"@type": "Book", "name": ["A Title"], "author": "Jane Doe"}'
        "</script>"
    )
    candidates = MetadataExtractor().extract_all(html).candidates
    assert "title" not in candidates
    assert candidates["author"].value == "Jane Doe"


def test_malformed_breadcrumb_list_is_skipped():
    html = (
        '<script type="application/ld+json">'
        '{"@type": "Book", "name": "The Quiet Book", "isbn": "9784061234567"}'
        "</script>"
        '<script type="application/ld+json">{"@type": "BreadcrumbList", "itemListElement": 3}</script>'
    )
    result = MetadataExtractor().extract_all(html)
    assert result.candidates["title"].value == "The Quiet Book"
    assert result.details == {"isbn": "9784061234567"}


def test_failing_detail_section_is_a_miss(monkeypatch):
    def explode(context):
        raise TypeError("bad breadcrumb")

    monkeypatch.setattr(MetadataExtractor, "_categories", staticmethod(explode))
    result = MetadataExtractor().extract_all(BOOK_LD)
    assert result.details["isbn"] == "9784061234567"
    assert "categories" not in result.details
    assert result.candidates["title"].value == "The Quiet Book"


def test_failing_structured_section_keeps_details(monkeypatch):
    def explode(self, context, products):
        raise ValueError("unexpected shape")

    monkeypatch.setattr(MetadataExtractor, "_structured_fields", explode)
    result = MetadataExtractor().extract_all(BOOK_LD)
    assert result.candidates == {}
    assert result.details["publisher"] == "Kodansha"
