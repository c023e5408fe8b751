import pytest

from blindtest.services.matcher import is_correct_answer, normalize


@pytest.mark.parametrize("raw, expected", [
    ("SQUEEZIE!!", "squeezie"),
    ("  Top   1 ", "top 1"),
    ("Beyoncé", "beyonce"),
    ("AC/DC", "ac dc"),
    ("", ""),
    (None, ""),
])
def test_normalize(raw, expected):
    assert normalize(raw) == expected


@pytest.fixture()
def top1(make_track):
    return make_track(title="Top 1", artist="Squeezie")


def test_title_and_artist(top1):
    assert is_correct_answer("top 1 squeezie", top1)


def test_artist_only_ignores_case_and_punctuation(top1):
    assert is_correct_answer("SQUEEZIE!!", top1)


def test_partial_title_is_wrong(top1):
    assert not is_correct_answer("top", top1)


def test_verbose_answer_containing_key(top1):
    assert is_correct_answer("I think it's Top 1 by Squeezie", top1)


def test_artist_then_title(top1):
    assert is_correct_answer("squeezie - top 1", top1)


def test_empty_answer_is_wrong(top1):
    assert not is_correct_answer("   ", top1)
    assert not is_correct_answer("?!", top1)


def test_accents_on_either_side(make_track):
    track = make_track(title="Déjà vu", artist="Beyoncé")
    assert is_correct_answer("deja vu", track)
    assert is_correct_answer("BEYONCE", track)


def test_no_track_is_never_correct():
    assert not is_correct_answer("anything", None)
