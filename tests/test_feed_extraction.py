import feedparser
import pytest

from fetcher import ShelfFetcher
from models import EntryKind


SAMPLE_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
<channel>
  <title>Jane's Updates</title>
  <link>https://www.goodreads.com/user/show/135088892</link>
  <item>
    <guid>Review1</guid>
    <pubDate>Mon, 13 Oct 2025 10:00:00 +0000</pubDate>
    <title>Jane is currently reading 'Norwegian Wood' by Haruki Murakami</title>
    <link>https://www.goodreads.com/review/show/1</link>
    <description><![CDATA[<a href="https://www.goodreads.com/book/show/11297"><img alt="Norwegian Wood" src="http://i.gr-assets.com/images/S/compressed.photo.goodreads.com/books/1699682395l/11297._SY75_.jpg" /></a> Jane is on page 87 of 288 of Norwegian Wood]]></description>
  </item>
  <item>
    <guid>Review2</guid>
    <pubDate>Sun, 12 Oct 2025 09:00:00 +0000</pubDate>
    <title>Jane rated 'Kafka on the Shore' by Haruki Murakami 5 of 5 stars</title>
    <link>https://www.goodreads.com/review/show/2</link>
    <description><![CDATA[<img src="https://i.gr-assets.com/images/S/compressed.photo.goodreads.com/books/1429638085l/4929._SX50_.jpg" />]]></description>
  </item>
  <item>
    <guid>Review3</guid>
    <title>Jane wants to read 'The Buried Giant' by Kazuo Ishiguro</title>
    <link>https://www.goodreads.com/review/show/3</link>
    <description><![CDATA[<img src="https://i.gr-assets.com/images/S/x/22522805.jpg" />]]></description>
  </item>
  <item>
    <guid>Review4</guid>
    <title>Jane is currently reading 'As I Lay Dying' by William Faulkner</title>
    <link>https://www.goodreads.com/review/show/4</link>
    <description><![CDATA[Jane is 40% done with As I Lay Dying]]></description>
  </item>
  <item>
    <guid>Review5</guid>
    <title>Jane finished reading 'The Remains of the Day' by Kazuo Ishiguro</title>
    <link>https://www.goodreads.com/review/show/5</link>
    <book_large_image_url>https://i.gr-assets.com/images/S/compressed.photo.goodreads.com/books/1327128714l/28921._SX318_.jpg</book_large_image_url>
    <user_rating>4</user_rating>
    <description><![CDATA[<img src="https://i.gr-assets.com/images/S/x/small.jpg" /> ★★]]></description>
  </item>
</channel>
</rss>
"""


@pytest.fixture
def fetcher():
    return ShelfFetcher()


def test_parse_feed_keeps_order_and_drops_unclassified(fetcher):
    entries = fetcher.parse_feed(SAMPLE_FEED)

    assert [e.title for e in entries] == [
        "Norwegian Wood",
        "Kafka on the Shore",
        "As I Lay Dying",
        "The Remains of the Day",
    ]
    assert [e.kind for e in entries] == [
        EntryKind.CURRENTLY_READING,
        EntryKind.FINISHED,
        EntryKind.CURRENTLY_READING,
        EntryKind.FINISHED,
    ]


def test_currently_reading_entry_fields(fetcher):
    entry = fetcher.parse_feed(SAMPLE_FEED)[0]

    assert entry.author == "Haruki Murakami"
    assert entry.progress == "page 87 of 288"
    assert entry.rating is None
    assert entry.link == "https://www.goodreads.com/review/show/1"
    assert entry.cover_url_raw == (
        "http://i.gr-assets.com/images/S/compressed.photo.goodreads.com/books/1699682395l/11297._SY75_.jpg"
    )
    assert entry.cover_url_normalized == (
        "https://i.gr-assets.com/images/S/compressed.photo.goodreads.com/books/1699682395l/11297.jpg"
    )
    assert entry.published == "2025-10-13T10:00:00+00:00"


def test_finished_entry_rating_from_title(fetcher):
    entry = fetcher.parse_feed(SAMPLE_FEED)[1]

    assert entry.kind is EntryKind.FINISHED
    assert entry.title == "Kafka on the Shore"
    assert entry.author == "Haruki Murakami"
    assert entry.rating == 5
    assert entry.progress is None


def test_entry_without_cover_degrades_to_none(fetcher):
    entry = fetcher.parse_feed(SAMPLE_FEED)[2]

    assert entry.cover_url_raw is None
    assert entry.cover_url_normalized is None
    assert entry.progress == "40%"
    assert "coverUrlRaw" not in entry.to_dict()


def test_structured_fields_win_over_description(fetcher):
    entry = fetcher.parse_feed(SAMPLE_FEED)[3]

    assert entry.cover_url_raw == (
        "https://i.gr-assets.com/images/S/compressed.photo.goodreads.com/books/1327128714l/28921._SX318_.jpg"
    )
    assert entry.rating == 4


def test_reading_and_rated_titles(fetcher):
    reading = fetcher.extract_entry(feedparser.FeedParserDict({
        "title": "Jane is currently reading 'Norwegian Wood' by Haruki Murakami",
    }))
    assert reading.kind is EntryKind.CURRENTLY_READING
    assert reading.title == "Norwegian Wood"
    assert reading.author == "Haruki Murakami"

    rated = fetcher.extract_entry(feedparser.FeedParserDict({
        "title": "Jane rated 'Kafka on the Shore' by Haruki Murakami 5 of 5 stars",
    }))
    assert rated.kind is EntryKind.FINISHED
    assert rated.rating == 5


@pytest.mark.parametrize("title, expected", [
    ("Jane is currently reading 'Dune'", EntryKind.CURRENTLY_READING),
    ("Jane rated 'Dune' 4 of 5 stars", EntryKind.FINISHED),
    ("Jane finished reading 'Dune'", EntryKind.FINISHED),
    ("Jane wants to read 'Underrated'", None),
    ("Jane narrated a podcast", None),
    ("Jane O'Brien is currently reading 'Ender's Game'", EntryKind.CURRENTLY_READING),
])
def test_classify(fetcher, title, expected):
    assert fetcher.classify(title) is expected


def test_title_and_author_fallbacks(fetcher):
    # No quotes: text after the status phrase up to " by "
    assert fetcher.extract_title("Jane is currently reading Dune by Frank Herbert") == "Dune"
    assert fetcher.extract_author("Jane is currently reading Dune by Frank Herbert (Goodreads Author)") == "Frank Herbert"
    # Apostrophes inside the quoted title
    assert fetcher.extract_title("Jane O'Brien is currently reading 'Ender's Game' by Orson Scott Card") == "Ender's Game"
    assert fetcher.extract_author("Jane is currently reading 'Dune'") is None

    entry = fetcher.extract_entry(feedparser.FeedParserDict({"title": "currently reading"}))
    assert entry.title == "currently reading"


@pytest.mark.parametrize("description, expected", [
    ("Jane is on page 87 of 288", "page 87 of 288"),
    ("Jane is 62% done", "62%"),
    ("Jane is on page 120", "page 120"),
    ("No progress here", None),
])
def test_extract_progress(fetcher, description, expected):
    assert fetcher.extract_progress(description, "Jane is currently reading 'Dune'") == expected


def test_extract_rating_strategies(fetcher):
    title = "Jane finished reading 'The Buried Giant' by Kazuo Ishiguro"
    assert fetcher.extract_rating({"user_rating": "3"}, title, "") == 3
    # 0 means unrated; fall through to the star glyphs
    assert fetcher.extract_rating({"user_rating": "0"}, title, "★★★☆☆") == 3
    assert fetcher.extract_rating({}, title + " 2 of 5 stars", "★★★★★") == 2
    assert fetcher.extract_rating({"user_rating": "n/a"}, title, "") is None
    assert fetcher.extract_rating({}, title, "★★★★★★★") is None


def test_cover_from_escaped_src(fetcher):
    description = '<img src=\\"https:\\/\\/i.gr-assets.com\\/images\\/S\\/x\\/42._SY75_.jpg\\">'
    assert fetcher.extract_cover_url({}, description) == "https://i.gr-assets.com/images/S/x/42._SY75_.jpg"


def test_cover_from_direct_url(fetcher):
    description = "Cover at https://i.gr-assets.com/images/S/x/77.jpg for this book"
    assert fetcher.extract_cover_url({}, description) == "https://i.gr-assets.com/images/S/x/77.jpg"


def test_cover_missing(fetcher):
    assert fetcher.extract_cover_url({}, "no images here") is None
    assert fetcher.extract_cover_url({}, "") is None


def test_medium_field_used_when_large_missing(fetcher):
    item = {
        "book_large_image_url": "",
        "book_medium_image_url": "https://i.gr-assets.com/images/S/x/9m.jpg",
        "book_small_image_url": "https://i.gr-assets.com/images/S/x/9s.jpg",
    }
    assert fetcher.extract_cover_url(item, "") == "https://i.gr-assets.com/images/S/x/9m.jpg"
