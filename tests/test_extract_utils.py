import pytest

from bookfetch.workflows.extract_utils import (
    clean_author,
    json_ld_nodes,
    normalize_authors,
    normalize_cover_url,
    normalize_identifier,
    normalize_isbn,
    normalize_title,
    parse_count,
    parse_price,
    parse_rating,
    person_names,
    split_authors,
    validate_author,
)


def test_author_dedup_collapses_whitespace_variants():
    assert normalize_authors("Jane Doe, Jane   Doe, John Smith") == "Jane Doe, John Smith"


def test_split_authors_handles_native_separators_and_follow_text():
    assert split_authors("村上 春樹 (著)、 田中 一郎 (翻訳)") == ["村上 春樹", "田中 一郎"]
    assert split_authors("Jane Doe (Author) Follow") == ["Jane Doe"]
    assert split_authors("Jane Doe and John Smith") == ["Jane Doe", "John Smith"]


def test_katakana_middle_dot_stays_inside_one_name():
    assert normalize_authors("スティーヴン・キング") == "スティーヴン・キング"
    assert split_authors("スティーヴン・キング、白石 朗") == ["スティーヴン・キング", "白石 朗"]
    assert normalize_authors("J・R・R・トールキン") == "J・R・R・トールキン"


@pytest.mark.parametrize("name", ["Richard Price", "Thomas More", "Anthony Price", "Lucy Prime"])
def test_surnames_that_look_like_ui_words_are_kept(name):
    assert validate_author(name)
    assert normalize_authors(name) == name


@pytest.mark.parametrize(
    "raw",
    ["Follow", "See all formats", "Kindle Edition", "12345", "Jo", "フォローする", "Price", "Learn more", "Visit Amazon's Jane Doe Page"],
)
def test_validate_author_rejects_ui_text(raw):
    assert not validate_author(clean_author(raw))


def test_clean_author_strips_labels():
    assert clean_author("著者: 山田 太郎") == "山田 太郎"
    assert clean_author("by Jane Doe") == "Jane Doe"


def test_normalize_title_removes_store_suffix_and_rejects_placeholders():
    assert normalize_title("A Quiet Book | Amazon.co.jp: 本") == "A Quiet Book"
    assert normalize_title("Amazon.com") is None
    assert normalize_title("  ") is None
    assert normalize_title("<span>Spaced   Title</span>") == "Spaced Title"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1,292 global ratings", 1292),
        ("5,432個の評価", 5432),
        ("1.292 Sternebewertungen", 1292),
        ("1 292 évaluations", 1292),
        ("1\u00a0292 valutazioni", 1292),
        ("12\u202f345 ratings", 12345),
        ("2.345.678 valoraciones", 2345678),
        ("4 ratings", 4),
        (42, 42),
        ("No customer reviews", 0),
        ("レビューはありません", 0),
        ("", None),
        ("lots", None),
        (-1, None),
        (True, None),
    ],
)
def test_parse_count(raw, expected):
    assert parse_count(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("5つ星のうち4.3", 4.3),
        ("4.5 out of 5 stars", 4.5),
        ("4,2 von 5 Sternen", 4.2),
        ("7.5", None),
        (4, 4.0),
    ],
)
def test_parse_rating(raw, expected):
    assert parse_rating(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("￥1,540", 1540.0),
        ("$12.99", 12.99),
        ("12,99 €", 12.99),
        ("1.234,56 €", 1234.56),
        ("1,540円", 1540.0),
        ("free", None),
    ],
)
def test_parse_price(raw, expected):
    assert parse_price(raw) == expected


def test_identifier_and_isbn_normalisation():
    assert normalize_identifier("b00testid1") == "B00TESTID1"
    assert normalize_identifier("ABCDEFGHIJ") is None
    assert normalize_isbn("978-4-06-123456-7") == "9784061234567"
    assert normalize_isbn("4-06-123456-X") == "406123456X"
    assert normalize_isbn("not an isbn") is None


def test_cover_url_accepts_product_images_only():
    good = "https://m.media-amazon.com/images/I/81abc._SL1500_.jpg"
    assert normalize_cover_url(good) == good
    assert normalize_cover_url("//m.media-amazon.com/images/I/81abc.jpg") == "https://m.media-amazon.com/images/I/81abc.jpg"
    assert normalize_cover_url("https://m.media-amazon.com/images/G/09/banner.jpg") is None
    assert normalize_cover_url("https://m.media-amazon.com/images/I/81abc.gif") is None
    assert normalize_cover_url("data:image/png;base64,xx") is None


def test_json_ld_nodes_walks_graphs_and_skips_malformed_blocks():
    html = """
    <script type="application/ld+json">{"@graph": [{"@type": "Book", "name": "T",
      "author": [{"@type": "Person", "name": "A"}, "B"]}]}</script>
    <script type="application/ld+json">{broken</script>
    """
    nodes = json_ld_nodes(html)
    book = next(node for node in nodes if node.get("@type") == "Book")
    assert person_names(book["author"]) == ["A", "B"]
