from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

REGIONS = ["us", "eu", "kr", "tw"]

# The vendor period index endpoint is unreliable for this title, so periods are
# walked from a known list instead of discovered.
PRIMARY_PERIOD = "1034"


@dataclass(frozen=True)
class DungeonInfo:
    id: int
    name: str
    slug: str


@dataclass(frozen=True)
class RealmInfo:
    id: int
    region: str
    name: str
    slug: str
    parent_realm_slug: Optional[str] = None


DUNGEONS: List[DungeonInfo] = [
    DungeonInfo(2, "Temple of the Jade Serpent", "temple-of-the-jade-serpent"),
    DungeonInfo(56, "Stormstout Brewery", "stormstout-brewery"),
    DungeonInfo(57, "Gate of the Setting Sun", "gate-of-the-setting-sun"),
    DungeonInfo(58, "Shado-Pan Monastery", "shado-pan-monastery"),
    DungeonInfo(59, "Siege of Niuzao Temple", "siege-of-niuzao-temple"),
    DungeonInfo(60, "Mogu'shan Palace", "mogu-shan-palace"),
    DungeonInfo(76, "Scholomance", "scholomance"),
    DungeonInfo(77, "Scarlet Halls", "scarlet-halls"),
    DungeonInfo(78, "Scarlet Monastery", "scarlet-monastery"),
]

DUNGEON_SHORT_NAMES: Dict[str, str] = {
    "temple-of-the-jade-serpent": "TJS",
    "stormstout-brewery": "SB",
    "shado-pan-monastery": "SPM",
    "mogu-shan-palace": "MSP",
    "siege-of-niuzao-temple": "SNT",
    "gate-of-the-setting-sun": "GSS",
    "scarlet-halls": "SH",
    "scarlet-monastery": "SM",
    "scholomance": "SCHOLO",
}

_STANDARD_PERIODS = [str(p) for p in range(1034, 1019, -1)]

FALLBACK_PERIODS: List[str] = list(_STANDARD_PERIODS)

GLOBAL_PERIODS: List[str] = [str(p) for p in range(1034, 1022, -1)]

# Per-region order of periods to try, newest first. The EU list repeats 1030
# as observed upstream.
REGION_FALLBACK_PERIODS: Dict[str, List[str]] = {
    "eu": ["1034", "1033", "1032", "1030", "1030", "1029", "1028", "1027",
           "1026", "1025", "1024", "1023", "1022", "1021", "1020"],
    "us": list(_STANDARD_PERIODS),
    "kr": list(_STANDARD_PERIODS),
    "tw": list(_STANDARD_PERIODS),
}

# US OCE realms moved to -au slugs.
REALM_SLUG_ALIASES: Dict[str, Dict[str, str]] = {
    "us": {
        "arugal": "arugal-au",
        "remulos": "remulos-au",
        "yojamba": "yojamba-au",
    },
}

# child slug -> parent slug for realms merged upstream.
MERGED_REALMS: Dict[str, Dict[str, str]] = {
    "us": {
        "nazgrim": "pagle",
        "galakras": "pagle",
        "raden": "pagle",
        "ra-den": "pagle",
        "lei-shen": "pagle",
        "leishen": "pagle",
        "immerseus": "pagle",
    },
    "eu": {
        "shekzeer": "mirage-raceway",
        "garalon": "mirage-raceway",
        "norushen": "mirage-raceway",
        "hoptallus": "mirage-raceway",
        "hotallus": "mirage-raceway",
        "ook-ook": "everlook",
        "ookook": "everlook",
    },
}

# Keys disambiguate slugs that collide across regions; RealmInfo.slug is the
# vendor slug.
REALMS: Dict[str, RealmInfo] = {
    # us
    "atiesh": RealmInfo(4372, "us", "Atiesh", "atiesh"),
    "myzrael": RealmInfo(4373, "us", "Myzrael", "myzrael"),
    "old-blanchy": RealmInfo(4374, "us", "Old Blanchy", "old-blanchy"),
    "azuresong": RealmInfo(4376, "us", "Azuresong", "azuresong"),
    "mankrik": RealmInfo(4384, "us", "Mankrik", "mankrik"),
    "pagle": RealmInfo(4385, "us", "Pagle", "pagle"),
    "ashkandi": RealmInfo(4387, "us", "Ashkandi", "ashkandi"),
    "westfall": RealmInfo(4388, "us", "Westfall", "westfall"),
    "whitemane": RealmInfo(4395, "us", "Whitemane", "whitemane"),
    "faerlina": RealmInfo(4408, "us", "Faerlina", "faerlina"),
    "grobbulus": RealmInfo(4647, "us", "Grobbulus", "grobbulus"),
    "bloodsail-buccaneers": RealmInfo(4648, "us", "Bloodsail Buccaneers", "bloodsail-buccaneers"),
    "remulos-au": RealmInfo(4667, "us", "Remulos (AU)", "remulos-au"),
    "arugal-au": RealmInfo(4669, "us", "Arugal (AU)", "arugal-au"),
    "yojamba-au": RealmInfo(4670, "us", "Yojamba (AU)", "yojamba-au"),
    "skyfury": RealmInfo(4725, "us", "Skyfury", "skyfury"),
    "sulfuras": RealmInfo(4726, "us", "Sulfuras", "sulfuras"),
    "windseeker": RealmInfo(4727, "us", "Windseeker", "windseeker"),
    "benediction": RealmInfo(4728, "us", "Benediction", "benediction"),
    "earthfury": RealmInfo(4731, "us", "Earthfury", "earthfury"),
    "maladath": RealmInfo(4738, "us", "Maladath", "maladath"),
    "angerforge": RealmInfo(4795, "us", "Angerforge", "angerforge"),
    "eranikus": RealmInfo(4800, "us", "Eranikus", "eranikus"),
    "nazgrim": RealmInfo(6359, "us", "Nazgrim", "nazgrim"),
    "galakras": RealmInfo(6360, "us", "Galakras", "galakras"),
    "raden": RealmInfo(6361, "us", "Ra-den", "raden"),
    "lei-shen": RealmInfo(6362, "us", "Lei Shen", "lei-shen"),
    "immerseus": RealmInfo(6363, "us", "Immerseus", "immerseus"),
    # eu
    "everlook": RealmInfo(4440, "eu", "Everlook", "everlook"),
    "auberdine": RealmInfo(4441, "eu", "Auberdine", "auberdine"),
    "lakeshire": RealmInfo(4442, "eu", "Lakeshire", "lakeshire"),
    "chromie": RealmInfo(4452, "eu", "Chromie", "chromie"),
    "pyrewood-village": RealmInfo(4453, "eu", "Pyrewood Village", "pyrewood-village"),
    "mirage-raceway": RealmInfo(4454, "eu", "Mirage Raceway", "mirage-raceway"),
    "razorfen": RealmInfo(4455, "eu", "Razorfen", "razorfen"),
    "nethergarde-keep": RealmInfo(4456, "eu", "Nethergarde Keep", "nethergarde-keep"),
    "sulfuron": RealmInfo(4464, "eu", "Sulfuron", "sulfuron"),
    "golemagg": RealmInfo(4465, "eu", "Golemagg", "golemagg"),
    "patchwerk": RealmInfo(4466, "eu", "Patchwerk", "patchwerk"),
    "firemaw": RealmInfo(4467, "eu", "Firemaw", "firemaw"),
    "flamegor": RealmInfo(4474, "eu", "Flamegor", "flamegor"),
    "gehennas": RealmInfo(4476, "eu", "Gehennas", "gehennas"),
    "venoxis": RealmInfo(4477, "eu", "Venoxis", "venoxis"),
    "hydraxian-waterlords": RealmInfo(4678, "eu", "Hydraxian Waterlords", "hydraxian-waterlords"),
    "mograine": RealmInfo(4701, "eu", "Mograine", "mograine"),
    "amnennar": RealmInfo(4703, "eu", "Amnennar", "amnennar"),
    "ashbringer": RealmInfo(4742, "eu", "Ashbringer", "ashbringer"),
    "transcendence": RealmInfo(4745, "eu", "Transcendence", "transcendence"),
    "earthshaker": RealmInfo(4749, "eu", "Earthshaker", "earthshaker"),
    "giantstalker": RealmInfo(4811, "eu", "Giantstalker", "giantstalker"),
    "mandokir": RealmInfo(4813, "eu", "Mandokir", "mandokir"),
    "thekal": RealmInfo(4815, "eu", "Thekal", "thekal"),
    "jindo": RealmInfo(4816, "eu", "Jin'do", "jindo"),
    "shekzeer": RealmInfo(6364, "eu", "Shek'zeer", "shekzeer"),
    "garalon": RealmInfo(6365, "eu", "Garalon", "garalon"),
    "norushen": RealmInfo(6366, "eu", "Norushen", "norushen"),
    "hoptallus": RealmInfo(6367, "eu", "Hoptallus", "hoptallus"),
    "ook-ook": RealmInfo(6368, "eu", "Ook Ook", "ook-ook"),
    # kr
    "shimmering-flats": RealmInfo(4417, "kr", "Shimmering Flats", "shimmering-flats"),
    "lokholar": RealmInfo(4419, "kr", "Lokholar", "lokholar"),
    "iceblood": RealmInfo(4420, "kr", "Iceblood", "iceblood"),
    "ragnaros": RealmInfo(4421, "kr", "Ragnaros", "ragnaros"),
    "frostmourne": RealmInfo(4840, "kr", "Frostmourne", "frostmourne"),
    # tw
    "maraudon": RealmInfo(4485, "tw", "Maraudon", "maraudon"),
    "ivus": RealmInfo(4487, "tw", "Ivus", "ivus"),
    "wushoolay": RealmInfo(4488, "tw", "Wushoolay", "wushoolay"),
    "zeliek": RealmInfo(4489, "tw", "Zeliek", "zeliek"),
    "arathi-basin": RealmInfo(5740, "tw", "Arathi Basin", "arathi-basin"),
    "murloc": RealmInfo(5741, "tw", "Murloc", "murloc"),
    "golemagg-tw": RealmInfo(5742, "tw", "Golemagg", "golemagg"),
    "windseeker-tw": RealmInfo(5743, "tw", "Windseeker", "windseeker"),
}


def realms_for_region(region: str) -> List[RealmInfo]:
    return sorted((r for r in REALMS.values() if r.region == region), key=lambda r: r.slug)
