"""Match detected references against hand-labeled face rectangles."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from facecluster.types import IdentifiedContact, Reference


def mutually_contained(reference: Reference, identified: IdentifiedContact) -> bool:
    """Each shape's center must fall inside the other shape.

    Plain overlap is not enough: a small face centered near a much larger one
    would otherwise match.
    """
    if not identified.rect.contains(reference.box.normalized_center()):
        return False
    return reference.box.contains_normalized(identified.rect.center)


def find_owner(
    reference: Reference,
    identified_contacts: Iterable[IdentifiedContact],
) -> Optional[IdentifiedContact]:
    """Return the first identified contact whose rectangle mutually contains the reference."""
    for identified in identified_contacts:
        if mutually_contained(reference, identified):
            return identified
    return None


def is_identified_contact_in_references(
    identified: IdentifiedContact,
    references: Sequence[Reference],
) -> bool:
    return any(mutually_contained(reference, identified) for reference in references)
