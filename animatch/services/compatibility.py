"""
AniMatch — Mutual-preference compatibility filter.

A pure two-sided predicate over two already-fetched profiles.  Every rule is
written in terms of both parties, so ``is_compatible(a, b)`` always equals
``is_compatible(b, a)``.

Gender: each side's preference must accept the other side's gender
(``everyone`` accepts anyone).  When either gender is unset the rule passes,
since an unknown gender cannot be excluded.

Location:
  * worldwide / worldwide  -> compatible
  * worldwide / local      -> compatible (one-sided local tolerance)
  * local / local          -> compatible iff both locations are equal and set
"""

from __future__ import annotations

from animatch.schemas.profile import (
    Gender,
    GenderPreference,
    LocationPreference,
    UserProfile,
)


class CompatibilityFilter:

    @staticmethod
    def _accepts(preference: GenderPreference, gender: Gender) -> bool:
        return (
            preference == GenderPreference.EVERYONE
            or preference.value == gender.value
        )

    def gender_compatible(self, a: UserProfile, b: UserProfile) -> bool:
        if a.gender == Gender.UNSPECIFIED or b.gender == Gender.UNSPECIFIED:
            return True
        return (
            self._accepts(a.gender_preference, b.gender)
            and self._accepts(b.gender_preference, a.gender)
        )

    def location_compatible(self, a: UserProfile, b: UserProfile) -> bool:
        a_local = a.location_preference == LocationPreference.LOCAL
        b_local = b.location_preference == LocationPreference.LOCAL
        if not (a_local and b_local):
            return True
        location_a = a.location.strip()
        location_b = b.location.strip()
        return bool(location_a) and location_a == location_b

    def is_compatible(self, a: UserProfile, b: UserProfile) -> bool:
        return self.gender_compatible(a, b) and self.location_compatible(a, b)
