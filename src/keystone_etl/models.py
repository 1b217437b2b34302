"""Typed envelopes for the vendor game-data and profile endpoints.

Leaderboard members arrive in two shapes: the flat form
``{id, name, realm_slug, spec_id, faction: "ALLIANCE"}`` and the older nested
form ``{profile: {id, name, realm: {slug}}, specialization: {id},
faction: {type}}``. ``Member`` projects both into the flat form while
validating, so nothing downstream carries the nested fields.
"""

from __future__ import annotations

from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")


class KeyRef(_Envelope):
    href: str = ""


class IdRef(_Envelope):
    id: int
    key: Optional[KeyRef] = None


class Member(_Envelope):
    id: Optional[int] = None
    name: Optional[str] = None
    realm_slug: Optional[str] = None
    spec_id: Optional[int] = None
    faction: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        flat = {k: v for k, v in data.items() if v is not None}
        profile = flat.pop("profile", None)
        if isinstance(profile, dict):
            flat.setdefault("id", profile.get("id"))
            flat.setdefault("name", profile.get("name"))
            realm = profile.get("realm")
            if isinstance(realm, dict):
                flat.setdefault("realm_slug", realm.get("slug"))
        spec = flat.pop("specialization", None)
        if isinstance(spec, dict):
            flat.setdefault("spec_id", spec.get("id"))
        faction = flat.get("faction")
        if isinstance(faction, dict):
            flat["faction"] = faction.get("type")
        return flat

    def get_player_id(self) -> Tuple[int, bool]:
        return (self.id, True) if self.id is not None else (0, False)

    def get_player_name(self) -> Tuple[str, bool]:
        return (self.name, True) if self.name is not None else ("", False)

    def get_realm_slug(self) -> Tuple[str, bool]:
        return (self.realm_slug, True) if self.realm_slug is not None else ("", False)

    def get_spec_id(self) -> Tuple[int, bool]:
        return (self.spec_id, True) if self.spec_id is not None else (0, False)

    def get_faction(self) -> Tuple[str, bool]:
        return (self.faction, True) if self.faction is not None else ("", False)


class ChallengeRun(_Envelope):
    duration: int
    completed_timestamp: int
    keystone_level: int = 1
    members: List[Member] = Field(default_factory=list)


class LeaderboardResponse(_Envelope):
    leading_groups: List[ChallengeRun] = Field(default_factory=list)
    period: Optional[int] = None
    period_start_timestamp: Optional[int] = None
    period_end_timestamp: Optional[int] = None


class SeasonIndexResponse(_Envelope):
    seasons: List[IdRef] = Field(default_factory=list)
    current_season: Optional[IdRef] = None


class SeasonDetailResponse(_Envelope):
    id: int
    start_timestamp: Optional[int] = None
    end_timestamp: Optional[int] = None
    season_name: Optional[str] = None
    periods: List[IdRef] = Field(default_factory=list)


class NamedRef(_Envelope):
    id: int = 0
    name: str = ""


class TypeRef(_Envelope):
    type: str = ""


class GuildRef(_Envelope):
    name: str = ""


class CharacterSummary(_Envelope):
    id: int
    name: str
    level: int = 0
    race: NamedRef = Field(default_factory=NamedRef)
    character_class: NamedRef = Field(default_factory=NamedRef)
    active_spec: NamedRef = Field(default_factory=NamedRef)
    gender: TypeRef = Field(default_factory=TypeRef)
    guild: Optional[GuildRef] = None
    average_item_level: int = 0
    equipped_item_level: int = 0
    last_login_timestamp: Optional[int] = None


class EnchantSlot(_Envelope):
    id: int
    type: str = ""


class SourceItem(_Envelope):
    id: int
    name: str = ""


class SpellDetail(_Envelope):
    id: int


class SpellInfo(_Envelope):
    spell: SpellDetail


class ItemEnchantment(_Envelope):
    enchantment_id: Optional[int] = None
    enchantment_slot: Optional[EnchantSlot] = None
    display_string: Optional[str] = None
    source_item: Optional[SourceItem] = None
    spell: Optional[SpellInfo] = None


class ItemRef(_Envelope):
    id: int


class EquippedItem(_Envelope):
    item: ItemRef
    slot: TypeRef
    name: str = ""
    quality: TypeRef = Field(default_factory=TypeRef)
    upgrade_id: Optional[int] = None
    enchantments: List[ItemEnchantment] = Field(default_factory=list)


class CharacterEquipment(_Envelope):
    equipped_items: List[EquippedItem] = Field(default_factory=list)


class MediaAsset(_Envelope):
    key: str
    value: str


class CharacterMedia(_Envelope):
    assets: List[MediaAsset] = Field(default_factory=list)

    @property
    def avatar_url(self) -> str:
        for asset in self.assets:
            if asset.key == "avatar":
                return asset.value
        return ""


class RealmBrief(_Envelope):
    id: int = 0
    name: str = ""
    slug: str = ""


class CharacterReference(_Envelope):
    id: int = 0
    name: str = ""
    realm: RealmBrief = Field(default_factory=RealmBrief)


class CharacterStatus(_Envelope):
    is_valid: bool
    reason: str = ""
    character: CharacterReference = Field(default_factory=CharacterReference)


class AchievementCriteria(_Envelope):
    id: int = 0
    is_completed: bool = False


class CharacterAchievement(_Envelope):
    id: int
    completed_timestamp: Optional[int] = None
    criteria: AchievementCriteria = Field(default_factory=AchievementCriteria)


class CharacterAchievements(_Envelope):
    achievements: List[CharacterAchievement] = Field(default_factory=list)
    character: CharacterReference = Field(default_factory=CharacterReference)
