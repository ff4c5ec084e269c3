"""Animal classification from product titles."""

from __future__ import annotations

from typing import NamedTuple


class Animal(NamedTuple):
    type: str
    display: str
    icon: str


ANIMAL_MAPPING: dict[str, Animal] = {
    # Fish species all display as "Fish"
    "ahi tuna": Animal("fish", "Fish", "🐟"),
    "tuna": Animal("fish", "Fish", "🐟"),
    "salmon": Animal("fish", "Fish", "🐟"),
    "rainbow trout": Animal("fish", "Fish", "🐟"),
    "trout": Animal("fish", "Fish", "🐟"),
    # Cattle
    "beef": Animal("cattle", "Beef", "🐄"),
    "steak": Animal("cattle", "Beef", "🐄"),
    "brisket": Animal("cattle", "Beef", "🐄"),
    "buffalo": Animal("cattle", "Buffalo", "🦬"),
    # Poultry
    "chicken": Animal("poultry", "Chicken", "🐔"),
    "turkey": Animal("poultry", "Turkey", "🦃"),
    # Pork
    "pork": Animal("pork", "Pork", "🐷"),
    "bacon": Animal("pork", "Pork", "🐷"),
    # Game
    "elk": Animal("game", "Elk", "🦌"),
    "venison": Animal("game", "Venison", "🦌"),
    "deer": Animal("game", "Deer", "🦌"),
    "antelope": Animal("game", "Antelope", "🦌"),
    "wild boar": Animal("game", "Wild Boar", "🐗"),
    "boar": Animal("game", "Wild Boar", "🐗"),
    # Exotic
    "alligator": Animal("exotic", "Alligator", "🐊"),
    "alpaca": Animal("exotic", "Alpaca", "🦙"),
    "kangaroo": Animal("exotic", "Kangaroo", "🦘"),
    "ostrich": Animal("exotic", "Ostrich", "🦢"),
    "lamb": Animal("exotic", "Lamb", "🐑"),
}

# The meat a jerky is made of usually leads the title, ahead of flavor words
# that happen to name other animals ("Buffalo Style Chicken").
PRIMARY_MEAT_TYPES = ("chicken", "turkey", "beef", "steak", "pork", "bacon", "venison", "elk")
MULTI_WORD_ANIMALS = ("ahi tuna", "rainbow trout", "wild boar")


def extract_animal(title: str | None) -> Animal | None:
    """Classify the animal in a product title, or None if nothing matches."""
    if not title:
        return None
    lower = title.lower()

    for meat in PRIMARY_MEAT_TYPES:
        if meat in lower:
            return ANIMAL_MAPPING[meat]

    for animal in MULTI_WORD_ANIMALS:
        if animal in lower:
            return ANIMAL_MAPPING[animal]

    for name, animal in ANIMAL_MAPPING.items():
        if name not in PRIMARY_MEAT_TYPES and name in lower:
            return animal

    return None
