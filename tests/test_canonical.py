import pytest

from bookfetch.workflows.canonical import CanonicalAddress, canonicalize, find_identifier
from bookfetch.workflows.errors import BookFetchError, InvalidAddress


def test_canonicalize_strips_path_query_and_fragment():
    address = canonicalize("https://www.amazon.co.jp/Some-Title/dp/b08xyz1234/ref=sr_1_1?keywords=x&qid=1#reviews")
    assert address == CanonicalAddress("https", "www.amazon.co.jp", "B08XYZ1234")
    assert address.url == "https://www.amazon.co.jp/dp/B08XYZ1234"
    assert str(address) == address.url


def test_canonicalize_is_idempotent():
    first = canonicalize("amazon.com/gp/product/0123456789?th=1")
    second = canonicalize(first.url)
    assert first == second
    assert first.url == "https://amazon.com/dp/0123456789"


def test_noise_variants_share_one_canonical_form():
    variants = [
        "https://www.amazon.com/dp/B00TESTID1",
        "  https://WWW.Amazon.com./dp/B00TESTID1/?tag=abc  ",
        "https://www.amazon.com/Book-Name/dp/b00testid1#frag",
    ]
    assert {canonicalize(item).url for item in variants} == {"https://www.amazon.com/dp/B00TESTID1"}


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("https://amazon.de/exec/obidos/ASIN/3161484100", "3161484100"),
        ("https://amazon.fr/o/ASIN/B012345678/", "B012345678"),
        ("https://amazon.ca/product-reviews/x?ASIN=B0ABCDEF12", "B0ABCDEF12"),
        ("https://amazon.co.uk/product/B0ABCDEF34", "B0ABCDEF34"),
    ],
)
def test_identifier_shapes(raw, expected):
    assert canonicalize(raw).identifier == expected


def test_dp_shape_wins_over_later_shapes():
    assert find_identifier("/dp/B000000001/?ASIN=B000000002") == "B000000001"


def test_subdomains_of_allowed_hosts_are_accepted():
    assert canonicalize("https://smile.amazon.com/dp/B00TESTID1").host == "smile.amazon.com"


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "   ",
        "https://evilamazon.com/dp/B00TESTID1",
        "https://example.org/dp/B00TESTID1",
        "ftp://amazon.com/dp/B00TESTID1",
        "https://www.amazon.com/s?k=books",
        "https://www.amazon.com/dp/SHORT",
    ],
)
def test_rejects_unusable_addresses(raw):
    with pytest.raises(InvalidAddress) as excinfo:
        canonicalize(raw)
    assert isinstance(excinfo.value, BookFetchError)
    assert isinstance(excinfo.value, ValueError)
    assert excinfo.value.retryable is False


def test_custom_allow_list():
    address = canonicalize("example.host/dp/B00TESTID1", allowed_hosts=("example.host",))
    assert address.url == "https://example.host/dp/B00TESTID1"
    with pytest.raises(InvalidAddress):
        canonicalize("https://www.amazon.com/dp/B00TESTID1", allowed_hosts=("example.host",))
