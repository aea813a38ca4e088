from __future__ import annotations

from datetime import datetime, timezone

from conduit.session_state import SessionStateManager
from conduit.wire import NewSessionResult


def _setup(**payload) -> NewSessionResult:
    return NewSessionResult.model_validate(payload)


FULL = _setup(
    sessionId="s1",
    modes={
        "availableModes": [{"id": "default", "name": "Default"}, {"id": "plan", "name": "Plan"}],
        "currentModeId": "default",
    },
    models={"availableModels": [{"modelId": "sonnet", "name": "Sonnet"}], "currentModelId": "sonnet"},
    configOptions=[
        {
            "id": "effort",
            "name": "Effort",
            "type": "select",
            "currentValue": "low",
            "options": [{"group": "g", "name": "Levels", "options": [{"value": "low", "name": "Low"}]}],
        },
        {
            "id": "speed",
            "name": "Speed",
            "type": "select",
            "currentValue": "high",
            "options": [{"value": "high", "name": "High"}],
        },
    ],
)


def test_establish_populates_everything():
    manager = SessionStateManager()

    session = manager.establish("s1", "/work", FULL)

    assert manager.current is session
    assert session.is_active
    assert session.created_at.tzinfo is timezone.utc
    assert [mode.id for mode in session.available_modes] == ["default", "plan"]
    assert session.current_mode.mode_id == "default"
    assert session.available_models[0].id == "sonnet"
    assert session.current_model.model_id == "sonnet"
    (group,) = session.config_options[0].options
    (choice,) = session.config_options[1].options
    assert group.is_group and group.option_ids == ["low"]
    assert not choice.is_group and choice.id == "high"


def test_establish_replaces_previous_state_wholesale():
    manager = SessionStateManager()
    manager.establish("s1", "/work", FULL)
    manager.apply_session_info("s1", "Old title", None)

    session = manager.establish("s2", "/other", _setup(sessionId="s2"))

    assert session.id == "s2"
    assert session.available_modes == []
    assert session.current_mode is None
    assert session.config_options == []
    assert session.title is None


def test_patches_apply_only_to_the_current_session():
    manager = SessionStateManager()
    manager.establish("s1", "/work", FULL)

    assert manager.apply_current_mode("s1", "plan")
    assert not manager.apply_current_mode("s2", "default")
    assert manager.current.current_mode.mode_id == "plan"


def test_session_info_keeps_fields_that_are_not_sent():
    manager = SessionStateManager()
    manager.establish("s1", "/work", FULL)
    stamp = datetime(2025, 1, 1, tzinfo=timezone.utc)

    manager.apply_session_info("s1", "Title", stamp)
    manager.apply_session_info("s1", None, None)

    assert manager.current.title == "Title"
    assert manager.current.last_updated == stamp


def test_patches_without_a_session_are_dropped():
    manager = SessionStateManager()

    assert not manager.apply_current_mode(None, "plan")
    assert not manager.apply_config_options(None, [])
    assert not manager.apply_commands(None, [])
    manager.set_current_model("opus")
    assert manager.current is None


def test_local_setters_and_lifecycle():
    manager = SessionStateManager()
    manager.establish("s1", "/work", FULL)

    manager.set_current_mode("plan")
    manager.set_current_model("opus")
    assert manager.current.current_mode.mode_id == "plan"
    assert manager.current.current_model.model_id == "opus"

    manager.deactivate()
    assert manager.current is not None and not manager.current.is_active
    manager.clear()
    assert manager.current is None
