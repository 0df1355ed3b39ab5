from maps_extractor.etl.geo import Coordinates, decode_coords, valid_pair

PLACE = "https://www.google.com/maps/place/City+Heart+Clinic"


def test_decode_coords_from_viewport_segment():
    assert decode_coords(f"{PLACE}/@37.7749,-122.4194,17z") == Coordinates(37.7749, -122.4194)


def test_decode_coords_from_data_directive():
    assert decode_coords(f"{PLACE}/data=!4m7!3m6!3d40.7128!4d-74.006") == (40.7128, -74.006)


def test_viewport_segment_wins_when_both_present():
    url = f"{PLACE}/@1.5,2.5,17z/data=!3d10.0!4d20.0"
    assert decode_coords(url) == (1.5, 2.5)


def test_out_of_range_pair_falls_through_to_next_pattern():
    url = f"{PLACE}/@95.0,10.0,17z/data=!3d10.0!4d20.0"
    assert decode_coords(url) == (10.0, 20.0)


def test_decode_coords_handles_percent_encoding():
    assert decode_coords(f"{PLACE}/%4037.1%2C-122.2,15z") == (37.1, -122.2)


def test_decode_coords_without_coordinates():
    assert decode_coords(PLACE) is None
    assert decode_coords(f"{PLACE}/@95.0,200.0,17z") is None
    assert decode_coords(None) is None
    assert decode_coords("") is None


def test_valid_pair_requires_both_values_in_range():
    assert valid_pair("1.5", "2") == (1.5, 2.0)
    assert valid_pair(90, -180) == (90.0, -180.0)
    assert valid_pair(91, 0) is None
    assert valid_pair(0, 181) is None
    assert valid_pair(1.0, None) is None
    assert valid_pair("north", "east") is None
