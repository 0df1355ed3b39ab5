from maps_extractor.extractors.document import SoupDocument
from maps_extractor.extractors.rendered import (
    FIELD_PROBES,
    collect_images,
    collect_reviews,
    extract_from_document,
    first_value,
    text_probe,
)
from maps_extractor.etl.normalize import parse_rating

PLACE_URL = "https://www.google.com/maps/place/City+Heart+Clinic/@39.78,-89.65,17z"

PLACE_HTML = """
<html>
<head><meta property="og:title" content="Fallback Name · 1 Main St"></head>
<body>
<div role="main" aria-label="City Heart Clinic">
  <h1>  City Heart Clinic ⭐ </h1>
  <button jsaction="pane.rating.category">Cardiologist</button>
  <div class="F7nice"><span aria-hidden="true">4,7</span><span>(1,234)</span></div>
  <button data-item-id="address">  123 Main St, Springfield  </button>
  <button data-item-id="phone:tel:+15550100">+1 555-0100</button>
  <a data-item-id="authority" href="https://cityheart.example">cityheart.example</a>
  <button data-item-id="hours" aria-label="Monday, 9 AM to 5 PM · See more hours"></button>
  <button aria-label="Photo of City Heart Clinic"><img src="https://lh5.example/p1.jpg"></button>
  <div role="img"><img src="/relative.jpg"></div>
  <div role="img" style="background-image: url(&quot;https://lh5.example/bg1.jpg&quot;)"></div>
</div>
</body>
</html>
"""


def test_extract_from_document_reads_every_field():
    record = extract_from_document(SoupDocument(PLACE_HTML, PLACE_URL))

    assert record.source == "rendered_dom"
    assert record.name == "City Heart Clinic"
    assert record.category == "Cardiologist"
    assert record.rating == 4.7
    assert record.review_count == 1234
    assert record.address == "123 Main St, Springfield"
    assert record.phone == "+1 555-0100"
    assert record.website == "https://cityheart.example"
    assert record.hours == "Monday, 9 AM to 5 PM"
    assert record.images == ["https://lh5.example/p1.jpg", "https://lh5.example/bg1.jpg"]


def test_extract_from_document_skips_images_when_disabled():
    record = extract_from_document(SoupDocument(PLACE_HTML), include_images=False)
    assert record.images == []


def test_name_falls_back_to_later_probes():
    html = '<div role="main" aria-label="Corner Bakery"><h1>   </h1></div>'
    assert extract_from_document(SoupDocument(html)).name == "Corner Bakery"

    html = '<html><head><meta property="og:title" content="Corner Bakery · 5 Elm St"></head></html>'
    assert extract_from_document(SoupDocument(html)).name == "Corner Bakery"


def test_document_without_name_yields_empty_record():
    record = extract_from_document(SoupDocument("<html><body><div>Nothing here</div></body></html>"))

    assert record.name is None
    assert record.rating is None
    assert record.images == []


def test_out_of_range_rating_moves_on_to_next_probe():
    html = """
    <div role="article"><span aria-hidden="true">7.5</span></div>
    <span class="MW4etd">4.2</span>
    """
    assert first_value(SoupDocument(html), FIELD_PROBES["rating"], parse_rating) == 4.2


def test_hours_fall_back_to_nested_text_then_pattern():
    nested = '<div data-item-id="hours-x"><div class="fontBodyMedium">Open · Closes 9 PM</div></div>'
    assert extract_from_document(SoupDocument(nested)).hours == "Closes 9 PM"

    loose = '<div role="region"><span>Mon 9AM-5PM</span></div>'
    assert extract_from_document(SoupDocument(loose)).hours == "Mon 9AM-5PM"


def test_first_value_survives_broken_probe():
    def broken(document):
        raise RuntimeError("detached")

    document = SoupDocument("<h1>Cafe X</h1>")
    assert first_value(document, (broken, text_probe("h1"))) == "Cafe X"


def test_collect_images_caps_and_requires_absolute_urls():
    tags = "".join(f'<button aria-label="Photo {i}"><img src="https://img.example/{i}.jpg"></button>' for i in range(7))
    html = f'<div role="img"><img src="//cdn.example/x.jpg"></div>{tags}'

    images = collect_images(SoupDocument(html))

    assert images == [f"https://img.example/{i}.jpg" for i in range(5)]


class ClickableDocument(SoupDocument):
    def __init__(self, html):
        super().__init__(html)
        self.clicked = []
        self.waited = []

    def click(self, selector, timeout_ms=None):
        self.clicked.append(selector)
        return True

    def wait(self, ms):
        self.waited.append(ms)


def test_collect_reviews_opens_tab_and_dedupes():
    reviews = "".join(
        f'<div data-review-id="r{i}"><span lang="en">{text}</span></div>'
        for i, text in enumerate(["Great care ⭐", "Great care", "Short wait"])
    )
    document = ClickableDocument(reviews)

    assert collect_reviews(document, limit=10) == ["Great care", "Short wait"]
    assert document.clicked == ['button[aria-label*="Reviews"]']
    assert document.waited == [2000]


def test_collect_reviews_respects_limit_without_tab():
    reviews = "".join(f'<div data-review-id="r{i}"><span class="wiI7pd">Review {i}</span></div>' for i in range(12))
    assert collect_reviews(SoupDocument(reviews), limit=3) == ["Review 0", "Review 1", "Review 2"]
