"""Flavor profile extraction from product titles."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

# keyword -> (flavor type, icon)
FLAVOR_MAPPING: dict[str, tuple[str, str]] = {
    # Sweet
    "maple": ("sweet", "🍁"),
    "honey": ("sweet", "🍯"),
    "sweet": ("sweet", "🍬"),
    "teriyaki": ("sweet", "🍯"),
    "brown sugar": ("sweet", "🍬"),
    # Spicy
    "hot": ("spicy", "🌶️"),
    "spicy": ("spicy", "🌶️"),
    "jalapeño": ("spicy", "🌶️"),
    "jalapeno": ("spicy", "🌶️"),
    "sriracha": ("spicy", "🌶️"),
    "habanero": ("spicy", "🌶️"),
    "ghost pepper": ("spicy", "🌶️"),
    "cayenne": ("spicy", "🌶️"),
    "chipotle": ("spicy", "🌶️"),
    # Savory
    "savory": ("savory", "🥩"),
    "original": ("savory", "🥩"),
    "classic": ("savory", "🥩"),
    "traditional": ("savory", "🥩"),
    "au jus": ("savory", "🥩"),
    "salt": ("savory", "🧂"),
    "sea salt": ("savory", "🧂"),
    # Smoky
    "barbecue": ("smoky", "🔥"),
    "bbq": ("smoky", "🔥"),
    "hickory": ("smoky", "🔥"),
    "mesquite": ("smoky", "🔥"),
    "smoked": ("smoky", "🔥"),
    "smoke": ("smoky", "🔥"),
    # Peppery
    "pepper": ("peppery", "🌿"),
    "black pepper": ("peppery", "🌿"),
    "cracked pepper": ("peppery", "🌿"),
    "peppered": ("peppery", "🌿"),
    # Garlic / herb
    "garlic": ("garlic", "🧄"),
    "herb": ("garlic", "🌿"),
    "rosemary": ("garlic", "🌿"),
    # Tangy
    "citrus": ("tangy", "🍋"),
    "lime": ("tangy", "🍋"),
    "lemon": ("tangy", "🍋"),
    "vinegar": ("tangy", "🍋"),
    # Exotic / international
    "korean": ("exotic", "🌏"),
    "thai": ("exotic", "🌏"),
    "jamaican": ("exotic", "🌏"),
    "jerk": ("exotic", "🌏"),
    "asian": ("exotic", "🌏"),
    "cajun": ("exotic", "🌏"),
}

# flavor type -> (display name, priority); lower priority wins
FLAVOR_TYPES: dict[str, tuple[str, int]] = {
    "sweet": ("Sweet", 1),
    "spicy": ("Spicy", 2),
    "savory": ("Savory", 3),
    "smoky": ("Smoky", 4),
    "peppery": ("Peppery", 5),
    "garlic": ("Garlic/Herb", 6),
    "tangy": ("Tangy", 7),
    "exotic": ("Exotic", 8),
}

MULTI_WORD_FLAVORS = ("ghost pepper", "brown sugar", "black pepper", "cracked pepper", "sea salt", "au jus")

# Keywords that also occur inside "jerky", which nearly every title contains.
WHOLE_WORD_FLAVORS = {"jerk": re.compile(r"\bjerk\b")}


@dataclass(frozen=True)
class FlavorProfile:
    primary: str
    secondary: list[str] = field(default_factory=list)
    display: str = ""
    icon: str = ""


def _priority(flavor_type: str) -> int:
    return FLAVOR_TYPES.get(flavor_type, (flavor_type, 99))[1]


def _display(flavor_type: str) -> str:
    return FLAVOR_TYPES.get(flavor_type, (flavor_type, 99))[0]


def _matches(keyword: str, lower: str) -> bool:
    pattern = WHOLE_WORD_FLAVORS.get(keyword)
    if pattern is not None:
        return pattern.search(lower) is not None
    return keyword in lower


def extract_flavors(title: str | None) -> FlavorProfile | None:
    """Primary and secondary flavor types from a title, one per type."""
    if not title:
        return None
    lower = title.lower()
    found: list[tuple[str, str]] = []  # (type, icon) in discovery order
    seen: set[str] = set()

    def _add(keyword: str) -> None:
        flavor_type, icon = FLAVOR_MAPPING[keyword]
        if flavor_type not in seen:
            seen.add(flavor_type)
            found.append((flavor_type, icon))

    for keyword in MULTI_WORD_FLAVORS:
        if keyword in lower:
            _add(keyword)

    for keyword in FLAVOR_MAPPING:
        if keyword not in MULTI_WORD_FLAVORS and _matches(keyword, lower):
            _add(keyword)

    if not found:
        return None

    found.sort(key=lambda f: _priority(f[0]))
    primary_type, icon = found[0]
    secondary = [f[0] for f in found[1:]]
    display = " & ".join(_display(t) for t in [primary_type, *secondary])
    return FlavorProfile(primary=primary_type, secondary=secondary, display=display, icon=icon)
