"""Authoritative view of the current session.

Session-establishing RPC results replace modes, models and config options
wholesale. Notifications patch single fields and are dropped when no session
exists yet.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from conduit.log_utils import log_event
from conduit.models import AvailableCommand, ConfigOption, Mode, ModelInfo, ModelRef, ModeRef
from conduit.wire import SessionSetupResponse, to_config_options, to_models, to_modes

logger = logging.getLogger(__name__)


@dataclass
class Session:
    id: str
    cwd: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_active: bool = True
    available_modes: list[Mode] = field(default_factory=list)
    current_mode: ModeRef | None = None
    available_models: list[ModelInfo] = field(default_factory=list)
    current_model: ModelRef | None = None
    config_options: list[ConfigOption] = field(default_factory=list)
    title: str | None = None
    last_updated: datetime | None = None
    available_commands: list[AvailableCommand] = field(default_factory=list)


class SessionStateManager:
    """Single writer for :class:`Session`; everything else reads ``current``."""

    def __init__(self) -> None:
        self._current: Session | None = None

    @property
    def current(self) -> Session | None:
        return self._current

    def establish(self, session_id: str, cwd: str, response: SessionSetupResponse) -> Session:
        session = Session(id=session_id, cwd=cwd)
        if response.modes is not None:
            session.available_modes = to_modes(response.modes)
            if response.modes.current_mode_id:
                session.current_mode = ModeRef(mode_id=response.modes.current_mode_id)
        if response.models is not None:
            session.available_models = to_models(response.models)
            if response.models.current_model_id:
                session.current_model = ModelRef(model_id=response.models.current_model_id)
        if response.config_options is not None:
            session.config_options = to_config_options(response.config_options)
        self._current = session
        log_event(
            logger,
            "session.established",
            session_id=session_id,
            modes=len(session.available_modes),
            models=len(session.available_models),
            config_options=len(session.config_options),
        )
        return session

    def _target(self, session_id: str | None, field_name: str) -> Session | None:
        session = self._current
        if session is None:
            log_event(logger, "session.update.no_session", level=logging.WARNING, field=field_name)
            return None
        if session_id is not None and session_id != session.id:
            log_event(
                logger,
                "session.update.foreign_session",
                level=logging.WARNING,
                field=field_name,
                session_id=session_id,
                current=session.id,
            )
            return None
        return session

    def apply_current_mode(self, session_id: str | None, mode_id: str) -> bool:
        session = self._target(session_id, "current_mode")
        if session is None:
            return False
        session.current_mode = ModeRef(mode_id=mode_id)
        return True

    def apply_config_options(self, session_id: str | None, options: list[ConfigOption]) -> bool:
        session = self._target(session_id, "config_options")
        if session is None:
            return False
        session.config_options = list(options)
        return True

    def apply_session_info(
        self, session_id: str | None, title: str | None, last_updated: datetime | None
    ) -> bool:
        session = self._target(session_id, "session_info")
        if session is None:
            return False
        if title is not None:
            session.title = title
        if last_updated is not None:
            session.last_updated = last_updated
        return True

    def apply_commands(self, session_id: str | None, commands: list[AvailableCommand]) -> bool:
        session = self._target(session_id, "available_commands")
        if session is None:
            return False
        session.available_commands = list(commands)
        return True

    def set_current_mode(self, mode_id: str) -> None:
        self.apply_current_mode(None, mode_id)

    def set_current_model(self, model_id: str) -> None:
        session = self._target(None, "current_model")
        if session is not None:
            session.current_model = ModelRef(model_id=model_id)

    def deactivate(self) -> None:
        if self._current is not None and self._current.is_active:
            self._current.is_active = False
            log_event(logger, "session.deactivated", session_id=self._current.id)

    def clear(self) -> None:
        self.deactivate()
        self._current = None
