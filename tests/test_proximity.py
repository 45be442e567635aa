from facecluster.recognition.proximity import (
    find_owner,
    is_identified_contact_in_references,
    mutually_contained,
)
from facecluster.types import Contact, IdentifiedContact, NormalizedRect

ALICE = Contact(key="alice", name="Alice")
BOB = Contact(key="bob", name="Bob")


def _label(contact, top, left, right, bottom):
    return IdentifiedContact(
        face_hash=contact.key,
        rect=NormalizedRect(top=top, left=left, right=right, bottom=bottom),
        contact=contact,
    )


def test_reference_under_label_is_owned(make_reference):
    # Box spans 0.1..0.4 of a 1000px image.
    reference = make_reference([0.1])
    label = _label(ALICE, 0.12, 0.08, 0.38, 0.42)
    assert mutually_contained(reference, label)
    assert find_owner(reference, [label]) is label


def test_disjoint_boxes_never_match(make_reference):
    reference = make_reference([0.1])
    label = _label(ALICE, 0.6, 0.6, 0.9, 0.9)
    assert not mutually_contained(reference, label)
    assert find_owner(reference, [label]) is None


def test_small_face_inside_large_label_is_not_matched(make_reference):
    small = make_reference([0.1], x=100, y=100, size=40)
    large_label = _label(ALICE, 0.0, 0.0, 0.8, 0.8)
    # The small face's center is inside the label, but not the other way around.
    assert not mutually_contained(small, large_label)


def test_first_matching_label_wins(make_reference):
    reference = make_reference([0.1])
    first = _label(BOB, 0.1, 0.1, 0.4, 0.4)
    second = _label(ALICE, 0.1, 0.1, 0.4, 0.4)
    assert find_owner(reference, [first, second]).contact == BOB


def test_label_matched_against_any_reference(make_reference):
    label = _label(ALICE, 0.1, 0.1, 0.4, 0.4)
    far = make_reference([0.1], x=700, y=700, size=200)
    near = make_reference([0.1])
    assert is_identified_contact_in_references(label, [far, near])
    assert not is_identified_contact_in_references(label, [far])
    assert not is_identified_contact_in_references(label, [])
