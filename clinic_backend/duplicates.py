from __future__ import annotations

from typing import Iterable, Optional

from .entities import Pet, PetFields


def _same_text(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").lower() == (b or "").lower()


def is_same_pet(candidate: PetFields, existing: PetFields) -> bool:
    """
    - same microchip (both present, case-sensitive), or
    - same name, species and breed (case-insensitive) and exactly the same date of birth
    """
    if candidate.microchip_id and existing.microchip_id and candidate.microchip_id == existing.microchip_id:
        return True
    return (
        _same_text(candidate.name, existing.name)
        and _same_text(candidate.species, existing.species)
        and _same_text(candidate.breed, existing.breed)
        and candidate.date_of_birth == existing.date_of_birth
    )


def find_duplicate_pet(candidate: PetFields, existing: Iterable[Pet]) -> Optional[Pet]:
    """First pet in ``existing`` that ``candidate`` duplicates, if any."""
    return next((p for p in existing if is_same_pet(candidate, p)), None)
