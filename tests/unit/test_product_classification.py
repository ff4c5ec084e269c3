"""Tests for animal, flavor and rankable-tag extraction."""

from __future__ import annotations

import pytest

from jerkyrank.products.animal import extract_animal
from jerkyrank.products.flavor import extract_flavors
from jerkyrank.products.processor import derive_metadata, has_rankable_tag
from jerkyrank.webhooks.schemas import ProductPayload


class TestExtractAnimal:
    @pytest.mark.parametrize(
        ("title", "animal_type", "display"),
        [
            ("Original Beef Jerky", "cattle", "Beef"),
            ("Buffalo Style Chicken Jerky", "poultry", "Chicken"),
            ("Hot Honey Bacon Jerky", "pork", "Pork"),
            ("Ahi Tuna Teriyaki", "fish", "Fish"),
            ("Smoked Salmon Jerky", "fish", "Fish"),
            ("Rainbow Trout Jerky", "fish", "Fish"),
            ("Wild Boar Jerky", "game", "Wild Boar"),
            ("Kangaroo Jerky", "exotic", "Kangaroo"),
            ("Buffalo Jerky", "cattle", "Buffalo"),
        ],
    )
    def test_titles(self, title: str, animal_type: str, display: str) -> None:
        animal = extract_animal(title)
        assert animal is not None
        assert animal.type == animal_type
        assert animal.display == display

    def test_no_match(self) -> None:
        assert extract_animal("Mystery Meat Sticks") is None

    def test_empty(self) -> None:
        assert extract_animal(None) is None
        assert extract_animal("") is None


class TestExtractFlavors:
    def test_primary_by_priority(self) -> None:
        flavors = extract_flavors("Spicy Sweet Beef Jerky")
        assert flavors is not None
        assert flavors.primary == "sweet"
        assert flavors.secondary == ["spicy"]
        assert flavors.display == "Sweet & Spicy"

    def test_multi_word_keyword(self) -> None:
        flavors = extract_flavors("Ghost Pepper Beef Jerky")
        assert flavors is not None
        assert flavors.primary == "spicy"
        assert flavors.secondary == ["peppery"]

    def test_one_entry_per_type(self) -> None:
        flavors = extract_flavors("Hickory Smoked BBQ Beef")
        assert flavors is not None
        assert flavors.primary == "smoky"
        assert flavors.secondary == []

    def test_no_flavor(self) -> None:
        assert extract_flavors("Plain Beef Jerky") is None


class TestRankableTag:
    @pytest.mark.parametrize(
        ("tags", "expected"),
        [
            ("rankable", True),
            ("beef, Rankable, spicy", True),
            ("beef rankable", True),
            ("unrankable", False),
            ("rankable-beef", False),
            ("", False),
            (None, False),
        ],
    )
    def test_tags(self, tags: str | None, expected: bool) -> None:
        assert has_rankable_tag(tags) is expected


class TestDeriveMetadata:
    def test_full_title(self) -> None:
        product = ProductPayload.model_validate({
            "id": 42,
            "title": "Teriyaki Beef Jerky",
            "vendor": "Jerky.com",
            "tags": "rankable",
        })
        values = derive_metadata(product)
        assert values["animal_type"] == "cattle"
        assert values["animal_display"] == "Beef"
        assert values["primary_flavor"] == "sweet"
        assert values["secondary_flavors"] == []
        assert values["vendor"] == "Jerky.com"

    def test_unclassifiable_title(self) -> None:
        values = derive_metadata(ProductPayload.model_validate({"id": 1, "title": "Gift Card"}))
        assert values["animal_type"] is None
        assert values["primary_flavor"] is None
        assert values["secondary_flavors"] is None


class TestJerkKeyword:
    def test_jerky_is_not_jerk_seasoning(self) -> None:
        flavors = extract_flavors("Original Beef Jerky")
        assert flavors is not None
        assert flavors.primary == "savory"
        assert flavors.secondary == []

    def test_jerk_seasoning_as_a_word(self) -> None:
        flavors = extract_flavors("Jerk Chicken Jerky")
        assert flavors is not None
        assert flavors.primary == "exotic"
