from datetime import datetime, timezone

from maps_extractor.etl.transform import build_record, to_dataset_item, to_failure_item
from maps_extractor.models import ExtractionRequest, FailureRecord, PartialRecord

SCRAPED_AT = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
PLACE_URL = "https://www.google.com/maps/place/City+Heart+Clinic/@39.78,-89.65,17z"


def _request(**overrides):
    values = {"identifier": PLACE_URL, "query": "cardiologists", "include_reviews": True}
    values.update(overrides)
    return ExtractionRequest(**values)


def test_build_record_normalizes_fields():
    partial = PartialRecord(
        name="  City Heart Clinic ⭐ ",
        phone=" +1 555-0100 ",
        rating="4,6",
        review_count="(1,204)",
        hours="Mon 9-5 · See more hours",
        images=["https://img.example/1.jpg", "/relative.jpg", "https://img.example/1.jpg"],
        reviews=["Great ⭐", "Great", "  "],
        source="rendered_dom",
    )

    record = build_record(partial, _request(), scraped_at=SCRAPED_AT)

    assert record.name == "City Heart Clinic"
    assert record.phone == "+1 555-0100"
    assert record.rating == 4.6
    assert record.review_count == 1204
    assert record.hours == "Mon 9-5"
    assert record.images == ["https://img.example/1.jpg"]
    assert record.reviews == ["Great"]
    assert (record.latitude, record.longitude) == (39.78, -89.65)
    assert record.strategy == "rendered_dom"
    assert record.url == PLACE_URL
    assert record.search_query == "cardiologists"


def test_build_record_caps_lists_and_honours_flags():
    partial = PartialRecord(
        name="Cafe",
        images=[f"https://img.example/{i}.jpg" for i in range(8)],
        reviews=[f"Review {i}" for i in range(15)],
    )

    record = build_record(partial, _request(), scraped_at=SCRAPED_AT)
    assert len(record.images) == 5
    assert len(record.reviews) == 10

    record = build_record(partial, _request(include_reviews=False, include_images=False), scraped_at=SCRAPED_AT)
    assert record.images == []
    assert record.reviews == []


def test_build_record_drops_out_of_range_values():
    partial = PartialRecord(name="Cafe", rating=9.1, latitude=91.0, longitude=10.0)

    record = build_record(partial, _request(identifier="https://www.google.com/maps/place/Cafe"), scraped_at=SCRAPED_AT)

    assert record.rating is None
    assert record.latitude is None and record.longitude is None


def test_build_record_prefers_final_url_coordinates():
    partial = PartialRecord(name="Cafe")
    record = build_record(
        partial,
        _request(),
        final_url="https://www.google.com/maps/place/Cafe/data=!3d10.5!4d20.25",
        scraped_at=SCRAPED_AT,
    )
    assert (record.latitude, record.longitude) == (10.5, 20.25)


def test_build_record_without_name():
    assert build_record(PartialRecord(name=" ⭐ "), _request()) is None
    assert build_record(None, _request()) is None


def test_to_dataset_item_omits_missing_fields():
    record = build_record(PartialRecord(name="Cafe", rating=4.0, source="structured"), _request(), scraped_at=SCRAPED_AT)

    item = to_dataset_item(record)

    assert item == {
        "name": "Cafe",
        "rating": 4.0,
        "latitude": 39.78,
        "longitude": -89.65,
        "url": PLACE_URL,
        "searchQuery": "cardiologists",
        "scrapedAt": "2024-05-01T12:30:00Z",
        "strategy": "structured",
    }


def test_to_failure_item():
    failure = FailureRecord(identifier=PLACE_URL, query="cardiologists", reason="timeout", timestamp=SCRAPED_AT)

    assert to_failure_item(failure) == {
        "error": True,
        "url": PLACE_URL,
        "query": "cardiologists",
        "errorMessage": "timeout",
        "timestamp": "2024-05-01T12:30:00Z",
    }
