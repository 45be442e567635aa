from facecluster.config import QualityThresholds
from facecluster.recognition.quality import Purpose, is_useful_reference
from facecluster.types import Pose


def test_large_confident_face_is_useful_for_both_purposes(make_reference):
    reference = make_reference([0.1, 0.2])
    assert is_useful_reference(reference, Purpose.ROOT)
    assert is_useful_reference(reference, Purpose.MEMBER)


def test_member_thresholds_are_looser_than_root_thresholds(make_reference):
    low_score = make_reference([0.1], score=0.8)
    small = make_reference([0.1], size=100)
    assert not is_useful_reference(low_score, Purpose.ROOT)
    assert is_useful_reference(low_score, Purpose.MEMBER)
    assert not is_useful_reference(small, Purpose.ROOT)
    assert is_useful_reference(small, Purpose.MEMBER)


def test_tiny_or_unconfident_faces_are_rejected(make_reference):
    assert not is_useful_reference(make_reference([0.1], size=40), Purpose.MEMBER)
    assert not is_useful_reference(make_reference([0.1], score=0.5), Purpose.MEMBER)


def test_angles_are_checked_against_purpose_ceiling(make_reference):
    turned = make_reference([0.1], pose=Pose(yaw=70.0))
    assert not is_useful_reference(turned, Purpose.ROOT)
    assert is_useful_reference(turned, Purpose.MEMBER)

    rolled = make_reference([0.1], pose=Pose(roll=-85.0))
    assert not is_useful_reference(rolled, Purpose.MEMBER)


def test_pitch_ceiling_is_half_the_angle_ceiling(make_reference):
    assert not is_useful_reference(make_reference([0.1], pose=Pose(pitch=35.0)), Purpose.ROOT)
    assert is_useful_reference(make_reference([0.1], pose=Pose(pitch=35.0)), Purpose.MEMBER)
    assert not is_useful_reference(make_reference([0.1], pose=Pose(pitch=45.0)), Purpose.MEMBER)


def test_unknown_angles_are_not_checked(make_reference):
    reference = make_reference([0.1], pose=Pose(roll=None, yaw=0.0, pitch=None))
    assert is_useful_reference(reference, Purpose.ROOT)


def test_blurry_faces_are_rejected_only_when_sharpness_is_known(make_reference):
    assert not is_useful_reference(make_reference([0.1], sharpness=1.5), Purpose.MEMBER)
    assert is_useful_reference(make_reference([0.1], sharpness=2.0), Purpose.ROOT)
    assert is_useful_reference(make_reference([0.1], sharpness=None), Purpose.ROOT)


def test_explicit_thresholds_override_defaults(make_reference):
    strict = QualityThresholds(min_score=0.995, min_size_px=10, max_angle_deg=90, min_sharpness=None)
    assert not is_useful_reference(make_reference([0.1], score=0.99), Purpose.MEMBER, strict)
    assert is_useful_reference(make_reference([0.1], score=0.999, sharpness=0.1), Purpose.MEMBER, strict)
