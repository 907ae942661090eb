"""Bundled studio hierarchy for zero-latency expansion lookups."""

from __future__ import annotations

from dataclasses import dataclass

from .utils import normalize_name, slugify


@dataclass(frozen=True)
class StudioInfo:
    """Display name and RAWG developer slug of a studio."""

    display_name: str
    slug: str

    @classmethod
    def named(cls, display_name: str) -> "StudioInfo":
        return cls(display_name=display_name, slug=slugify(display_name))


def _studios(*names: str) -> tuple[StudioInfo, ...]:
    return tuple(StudioInfo.named(name) for name in names)


_XBOX = (
    "Xbox Game Studios",
    "343 Industries",
    "The Coalition",
    "Playground Games",
    "Turn 10 Studios",
    "Rare",
    "Ninja Theory",
    "Obsidian Entertainment",
    "inXile Entertainment",
    "Double Fine Productions",
    "Compulsion Games",
    "Undead Labs",
)
_BETHESDA = (
    "Bethesda Softworks",
    "Bethesda Game Studios",
    "id Software",
    "Arkane Studios",
    "Tango Gameworks",
    "MachineGames",
    "ZeniMax Online Studios",
)

STUDIO_HIERARCHY: dict[str, tuple[StudioInfo, ...]] = {
    "bethesda": _studios(*_BETHESDA),
    "xbox game studios": _studios(*_XBOX),
    "microsoft": _studios(*_XBOX, *_BETHESDA),
    "playstation studios": _studios(
        "Naughty Dog",
        "Santa Monica Studio",
        "Guerrilla Games",
        "Insomniac Games",
        "Sucker Punch Productions",
        "Polyphony Digital",
        "Media Molecule",
        "Bend Studio",
        "Housemarque",
        "Bluepoint Games",
    ),
    "electronic arts": _studios(
        "Electronic Arts",
        "EA DICE",
        "Respawn Entertainment",
        "BioWare",
        "Motive Studios",
        "Criterion Games",
        "Codemasters",
    ),
    "ubisoft": _studios(
        "Ubisoft",
        "Ubisoft Montreal",
        "Ubisoft Toronto",
        "Ubisoft Paris",
        "Ubisoft Quebec",
        "Massive Entertainment",
    ),
    "activision blizzard": _studios(
        "Activision",
        "Blizzard Entertainment",
        "Treyarch",
        "Infinity Ward",
        "Sledgehammer Games",
        "Raven Software",
        "High Moon Studios",
    ),
    "take-two interactive": _studios(
        "Rockstar Games",
        "Rockstar North",
        "2K Games",
        "Firaxis Games",
        "Gearbox Software",
        "Hangar 13",
        "Visual Concepts",
    ),
    "nintendo": _studios(
        "Nintendo",
        "Nintendo EPD",
        "Retro Studios",
        "Monolith Soft",
        "HAL Laboratory",
        "Intelligent Systems",
        "Game Freak",
    ),
    "sega": _studios(
        "Sega",
        "Ryu Ga Gotoku Studio",
        "Creative Assembly",
        "Sports Interactive",
        "Atlus",
    ),
    "square enix": _studios("Square Enix", "Crystal Dynamics", "Eidos Montreal"),
    "bandai namco": _studios("Bandai Namco Entertainment", "FromSoftware"),
    "warner bros": _studios(
        "Warner Bros. Interactive Entertainment",
        "Rocksteady Studios",
        "NetherRealm Studios",
        "Monolith Productions",
        "TT Games",
        "Avalanche Software",
    ),
    "thq nordic": _studios(
        "THQ Nordic",
        "Deep Silver",
        "Volition",
        "4A Games",
        "Coffee Stain Studios",
    ),
    "devolver digital": _studios("Devolver Digital", "Croteam"),
    "paradox interactive": _studios(
        "Paradox Interactive",
        "Paradox Development Studio",
        "Colossal Order",
    ),
}


def static_subsidiaries(parent_name: str) -> tuple[StudioInfo, ...] | None:
    """Return bundled subsidiaries for ``parent_name`` or ``None`` when unknown."""

    return STUDIO_HIERARCHY.get(normalize_name(parent_name))
