from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    UNSPECIFIED = "unspecified"


class GenderPreference(str, Enum):
    MALE = "male"
    FEMALE = "female"
    EVERYONE = "everyone"


class LocationPreference(str, Enum):
    LOCAL = "local"
    WORLDWIDE = "worldwide"


def _coerce_enum(enum_cls: type[Enum], v: Any, default: Enum) -> Enum:
    if isinstance(v, enum_cls):
        return v
    try:
        return enum_cls(str(v).strip().lower())
    except ValueError:
        return default


class UserProfile(BaseModel):
    """The slice of a user document the matching core reads."""

    user_id: str
    display_name: str = "User"
    photo_url: str = ""
    interests: set[str] = Field(default_factory=set)
    gender: Gender = Gender.UNSPECIFIED
    gender_preference: GenderPreference = GenderPreference.EVERYONE
    location: str = ""
    location_preference: LocationPreference = LocationPreference.WORLDWIDE

    @field_validator("gender", mode="before")
    @classmethod
    def _unknown_gender_is_unspecified(cls, v: Any) -> Any:
        # Free-text or blank genders cannot be matched on, so they read as unset.
        return _coerce_enum(Gender, v, Gender.UNSPECIFIED)

    @field_validator("gender_preference", mode="before")
    @classmethod
    def _unknown_preference_is_everyone(cls, v: Any) -> Any:
        return _coerce_enum(GenderPreference, v, GenderPreference.EVERYONE)

    @field_validator("location_preference", mode="before")
    @classmethod
    def _unknown_location_preference_is_worldwide(cls, v: Any) -> Any:
        return _coerce_enum(LocationPreference, v, LocationPreference.WORLDWIDE)

    @field_validator("location", "display_name", "photo_url", mode="before")
    @classmethod
    def _none_is_blank(cls, v: Any) -> Any:
        return "" if v is None else str(v)

    @field_validator("interests", mode="before")
    @classmethod
    def _stringify_interests(cls, v: Any) -> Any:
        if not isinstance(v, (list, tuple, set, frozenset)):
            return set()
        return {str(item) for item in v}

    @classmethod
    def from_document(cls, user_id: str, doc: dict) -> "UserProfile":
        """Build a profile from a ``users`` document, reading legacy shapes.

        Older documents carry ``favorites`` (an id list) or
        ``favourite_animes`` (objects with ``mal_id``) instead of
        ``interests``.
        """
        interests = doc.get("interests")
        if interests is None:
            interests = legacy_interests(doc)
        return cls(
            user_id=user_id,
            display_name=doc.get("display_name") or "User",
            photo_url=doc.get("photo_url"),
            interests=interests,
            gender=doc.get("gender"),
            gender_preference=doc.get("gender_preference"),
            location=doc.get("location"),
            location_preference=doc.get("location_preference"),
        )


def legacy_interests(doc: dict) -> set[str]:
    """Interests recorded under the pre-migration field names."""
    if doc.get("favorites") is not None:
        return {str(item) for item in doc["favorites"]}
    items = set()
    for entry in doc.get("favourite_animes") or []:
        if isinstance(entry, dict) and entry.get("mal_id") is not None:
            items.add(str(entry["mal_id"]))
    return items
