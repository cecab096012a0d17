"""
Tests for the default title normalizer.
"""

import pytest

from wikidag.identity.normalize import EMPTY_TITLE, normalize_title


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Mercury (planet)", "Mercury"),
        ("Mercury_(planet)", "Mercury"),
        ("Mercury_(disambiguation)", "Mercury"),
        ("Football  history", "Football_history"),
        ("The_Beatles", "Beatles"),
        ("An_Apple", "Apple"),
        ("Theatre", "Theatre"),
        ("Physics_category", "Physics"),
        ("Physics_Category", "Physics"),
        ("Main_page", "Main"),
        ("Mercury_disambiguation", "Mercury"),
        ("Rock—Roll", "Rock-Roll"),
        ("Rock – Roll", "Rock_-_Roll"),
        ("It’s", "It's"),
        ("“Quoted”", '"Quoted"'),
        ("Price_in_€", "Price_in_Euro"),
        ("US$", "USDollar"),
        ("£_and_¥", "Pound_and_Yen"),
        ("Brand™", "Brand"),
        ("AT&T", "AT_T"),
        ("C++", "C"),
        ("Why?!", "Why"),
        ("__Padded__", "Padded"),
    ],
)
def test_normalize_title(raw, expected):
    assert normalize_title(raw) == expected


@pytest.mark.parametrize("raw", ["", "(only)", "___", "!!!"])
def test_empty_results_get_placeholder(raw):
    assert normalize_title(raw) == EMPTY_TITLE


def test_variants_share_normal_form():
    variants = ["Quantum mechanics", "Quantum_mechanics", "Quantum_mechanics_(physics)", "Quantum mechanics category"]
    assert {normalize_title(v) for v in variants} == {"Quantum_mechanics"}
