"""
City catalog — the single lookup table for campaign-managed cities.

Free-text city input ("Barbacena/MG", "CARANAIBA", "Carandaí") is resolved
to a canonical key by stripping a trailing "/UF", removing diacritics and
lower-casing, then comparing against each city's normalized variants.
A text that resolves to no key is outside the campaign.
"""
from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Optional

from config.settings import CampaignConfig


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_city(text: str) -> str:
    """'Caranaíba/MG ' -> 'caranaiba'"""
    city = (text or "").split("/")[0].strip()
    return " ".join(strip_accents(city).lower().split())


@dataclass(frozen=True)
class CampaignCity:
    key: str
    name: str
    state: str
    limit: int
    variants: tuple[str, ...]           # spellings as stored by registrants

    @property
    def normalized_variants(self) -> frozenset[str]:
        return frozenset(normalize_city(v) for v in self.variants)


class CityCatalog:

    def __init__(self, cities: dict[str, CampaignCity]):
        self._cities = dict(cities)
        self._index: dict[str, str] = {}
        for key, city in self._cities.items():
            for variant in city.normalized_variants:
                self._index.setdefault(variant, key)

    @classmethod
    def from_config(cls, config: CampaignConfig) -> "CityCatalog":
        cities = {}
        for key, c in config.cities.items():
            spellings = [c.name, *c.variants]
            # keep the accent-free spelling too so substring counts match both forms
            spellings += [strip_accents(s) for s in spellings]
            # SQLite lower() folds ASCII only; "CARANAÍBA" needs its own pattern
            spellings += [s.upper() for s in spellings if not s.isascii()]
            variants = tuple(dict.fromkeys(s.strip() for s in spellings if s and s.strip()))
            cities[key] = CampaignCity(key=key, name=c.name, state=c.state,
                                       limit=c.limit, variants=variants)
        return cls(cities)

    def resolve(self, text: str) -> Optional[str]:
        if not text:
            return None
        return self._index.get(normalize_city(text))

    def get(self, key: str) -> Optional[CampaignCity]:
        return self._cities.get(key)

    def all(self) -> list[CampaignCity]:
        return list(self._cities.values())

    def __contains__(self, key: str) -> bool:
        return key in self._cities

    def __len__(self) -> int:
        return len(self._cities)
