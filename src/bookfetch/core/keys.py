"""Shared record keys to avoid magic strings across bookfetch modules."""

from __future__ import annotations

# Extracted fields (cascade + assembler)
K_TITLE = "title"
K_AUTHOR = "author"
K_COVER_URL = "cover_url"
K_REVIEW_COUNT = "review_count"
K_RATING = "rating"
K_PRICE = "price"
K_IDENTIFIER = "identifier"

# Record envelope
K_CANONICAL_ADDRESS = "canonical_address"
K_FETCHED_AT = "fetched_at"
K_PROVENANCE = "provenance"
K_DETAILS = "details"

# Supplementary metadata (details)
K_ISBN = "isbn"
K_PUBLISHER = "publisher"
K_PUBLICATION_DATE = "publication_date"
K_PAGE_COUNT = "page_count"
K_LANGUAGE = "language"
K_CURRENCY = "currency"
K_CATEGORIES = "categories"

# Fetch outcome
K_ROUTE = "route"
K_METHOD = "method"
K_ATTEMPTS = "attempts"
