import pytest

from agents.collaborators import Decision, Snapshot, fingerprint


def test_fingerprint_depends_on_image_and_app():
    base = Snapshot(image=b"pixels", current_app="settings")

    assert fingerprint(base) == fingerprint(Snapshot(image=b"pixels", current_app="settings"))
    assert fingerprint(base) != fingerprint(Snapshot(image=b"pixels", current_app="camera"))
    assert fingerprint(base) != fingerprint(Snapshot(image=b"other", current_app="settings"))


def test_fingerprint_accepts_raw_values_and_custom_hook():
    class Screen:
        def fingerprint(self):
            return "abc"

    assert fingerprint(b"raw") == fingerprint(bytearray(b"raw"))
    assert fingerprint("text") != fingerprint("other")
    assert fingerprint(Screen()) == "abc"


def test_decision_action_type():
    assert Decision(action={"_metadata": "do", "action": "Tap"}).action_type == "do"
    assert Decision(action={"swipe": [1, 2]}).action_type == "swipe"
    assert Decision(action='do(action="Tap", element=[1, 2])').action_type == "do"
    assert Decision().action_type is None


def test_fingerprint_rejects_identity_equality():
    class Screen:
        pass

    with pytest.raises(TypeError):
        fingerprint(Screen())


def test_fingerprint_accepts_value_types():
    assert fingerprint(("settings", 3)) == fingerprint(("settings", 3))
    assert fingerprint(("settings", 3)) != fingerprint(("camera", 3))
