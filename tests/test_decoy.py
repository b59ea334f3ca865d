import collections

import pytest

from websock.config import CONFIG
from websock.decoy import (
    Handshake,
    SessionData,
    build_parameters,
    classify,
    random_text,
    sentinel_key,
    sentinel_set,
    session_key,
)
from websock.envelope import b64decode, b64encode

SID = "0123456789abcdef0123456789abcdef"


def _no_sessions(_sid):
    return False


def test_random_text_bounds():
    for _ in range(200):
        text = random_text(2, 5)
        assert 2 <= len(text) <= 5
        assert text.isalnum()


def test_sentinel_key_decodes_to_one_sentinel():
    sentinels = sentinel_set(CONFIG)
    for _ in range(50):
        assert b64decode(sentinel_key(CONFIG)).decode() in sentinels


@pytest.mark.parametrize("sentinel", list(CONFIG["SENTINEL_CHARSET"]))
def test_every_sentinel_is_recognised(sentinel):
    real_key = b64encode(sentinel.encode())
    form = build_parameters(real_key, "blob", CONFIG, count=6)
    found = classify(form, sentinel_set(CONFIG), _no_sessions)
    assert found == Handshake(key=real_key, value="blob")


def test_parameter_count_and_uniqueness():
    real_key = sentinel_key(CONFIG)
    for count in (3, 7, 12):
        form = build_parameters(real_key, "v", CONFIG, count=count)
        assert len(form) == count + 1
        keys = [k for k, _ in form]
        assert len(set(keys)) == len(keys)
        assert keys.count(real_key) == 1


def test_default_count_within_configured_range():
    for _ in range(50):
        form = build_parameters(sentinel_key(CONFIG), "v", CONFIG)
        assert CONFIG["DECOY_MIN_PARAMETERS"] + 1 <= len(form) <= CONFIG["DECOY_MAX_PARAMETERS"] + 1


def test_decoys_never_match_a_sentinel():
    sentinels = sentinel_set(CONFIG)
    real_key = sentinel_key(CONFIG)
    for _ in range(300):
        for key, value in build_parameters(real_key, "v", CONFIG, count=5):
            if key == real_key:
                continue
            decoded = b64decode(key).decode()
            assert len(decoded) >= 2
            assert decoded not in sentinels
            assert b64decode(value)


def test_real_parameter_position_is_uniform():
    count = 3
    trials = 4000
    real_key = sentinel_key(CONFIG)
    positions = collections.Counter()
    for _ in range(trials):
        form = build_parameters(real_key, "v", CONFIG, count=count)
        positions[[k for k, _ in form].index(real_key)] += 1
    expected = trials / (count + 1)
    assert set(positions) == set(range(count + 1))
    for slot in range(count + 1):
        assert abs(positions[slot] - expected) < expected * 0.25


def test_session_data_is_classified():
    form = build_parameters(session_key(SID), "envelope", CONFIG, count=5)
    found = classify(form, sentinel_set(CONFIG), lambda sid: sid == SID)
    assert found == SessionData(key=session_key(SID), session_id=SID, value="envelope")


def test_unknown_session_is_not_classified():
    form = build_parameters(session_key(SID), "envelope", CONFIG, count=5)
    assert classify(form, sentinel_set(CONFIG), _no_sessions) is None


def test_handshake_wins_over_session_key():
    form = [(session_key(SID), "data"), (b64encode(b"Q"), "hello")]
    found = classify(form, sentinel_set(CONFIG), lambda sid: True)
    assert isinstance(found, Handshake)
    assert found.value == "hello"


def test_first_sentinel_in_form_order_wins():
    form = [(b64encode(b"Z"), "first"), (b64encode(b"A"), "second")]
    assert classify(form, sentinel_set(CONFIG), _no_sessions).value == "first"


def test_invalid_keys_are_skipped():
    form = [("%%%", "x"), ("é", "y"), (b64encode(b"\xff\xfe"), "z"), (b64encode(b"B"), "blob")]
    assert classify(form, sentinel_set(CONFIG), _no_sessions) == Handshake(key=b64encode(b"B"), value="blob")


def test_mapping_forms_are_accepted():
    form = {"ZGVjb3k=": ["x"], b64encode(b"C"): ["blob", "ignored"]}
    assert classify(form, sentinel_set(CONFIG), _no_sessions).value == "blob"


def test_custom_charset():
    cfg = dict(CONFIG)
    cfg["SENTINEL_CHARSET"] = "xy"
    form = [(b64encode(b"A"), "no"), (b64encode(b"y"), "yes")]
    assert classify(form, sentinel_set(cfg), _no_sessions).value == "yes"


def test_empty_form():
    assert classify([], sentinel_set(CONFIG), _no_sessions) is None
