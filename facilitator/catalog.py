"""
catalog.py -- Static program configuration.

Loads the five week definitions, conversation-mode and session-length
modifiers, fortune-telling types and image scenes from facilitator/data/*.json.
Everything here is immutable after load and shared by every session.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

from facilitator.errors import (
    UnknownConversationModeError,
    UnknownFortuneTypeError,
    UnknownSessionLengthError,
    UnknownWeekError,
)
from facilitator.models import ConversationMode, SessionLength, WeekDefinition

logger = logging.getLogger(__name__)

DATA_DIR: Path = Path(__file__).resolve().parent / "data"

DEFAULT_CONVERSATION_MODE: str = "standard"
DEFAULT_SESSION_LENGTH: str = "medium"


def _read_json(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _join_lines(lines: list[str] | str) -> str:
    """Prompt text is stored one line per array item to keep the JSON readable."""
    if isinstance(lines, str):
        return lines
    return "\n".join(lines)


class Catalog:
    """Week definitions, modifiers and fortune tables."""

    def __init__(
        self,
        weeks: dict[int, WeekDefinition],
        modes: dict[str, ConversationMode],
        lengths: dict[str, SessionLength],
        fortune_types: dict[str, str],
        fortune_categories: dict[str, list[str]],
        image_style: str,
        image_scenes: dict[str, str],
    ) -> None:
        self.weeks = weeks
        self.modes = modes
        self.lengths = lengths
        self.fortune_types = fortune_types
        self.fortune_categories = fortune_categories
        self.image_style = image_style
        self.image_scenes = image_scenes

    @property
    def valid_weeks(self) -> list[int]:
        return sorted(self.weeks)

    def get_week(self, week: Any) -> WeekDefinition:
        definition = None
        if isinstance(week, int) and not isinstance(week, bool):
            definition = self.weeks.get(week)
        if definition is None:
            raise UnknownWeekError(week, self.valid_weeks)
        return definition

    def get_mode(self, key: str) -> ConversationMode:
        mode = self.modes.get(key)
        if mode is None:
            raise UnknownConversationModeError(key, sorted(self.modes))
        return mode

    def get_length(self, key: str) -> SessionLength:
        length = self.lengths.get(key)
        if length is None:
            raise UnknownSessionLengthError(key, sorted(self.lengths))
        return length

    def fortune_name(self, key: str) -> str:
        name = self.fortune_types.get(key)
        if name is None:
            raise UnknownFortuneTypeError(key)
        return name


def load_catalog(data_dir: Path = DATA_DIR) -> Catalog:
    """Read and validate the JSON tables under data_dir."""
    weeks_doc = _read_json(data_dir / "weeks.json")
    modifiers_doc = _read_json(data_dir / "modifiers.json")
    fortunes_doc = _read_json(data_dir / "fortunes.json")

    weeks: dict[int, WeekDefinition] = {}
    for entry in weeks_doc["weeks"]:
        definition = WeekDefinition(
            week=entry["week"],
            theme=entry["theme"],
            perspective=entry["perspective"],
            system_prompt=_join_lines(entry["systemPrompt"]),
        )
        weeks[definition.week] = definition

    modes = {
        key: ConversationMode(
            key=key,
            name=entry["name"],
            description=entry["description"],
            prompt_modifier=_join_lines(entry.get("modifier", [])),
        )
        for key, entry in modifiers_doc["conversationModes"].items()
    }
    lengths = {
        key: SessionLength(
            key=key,
            name=entry["name"],
            description=entry["description"],
            target_minutes=entry["targetMinutes"],
            prompt_modifier=_join_lines(entry.get("modifier", [])),
        )
        for key, entry in modifiers_doc["sessionLengths"].items()
    }

    fortune_types: dict[str, str] = dict(fortunes_doc["fortuneTypes"])
    categories: dict[str, list[str]] = {
        name: [k for k in keys if k in fortune_types]
        for name, keys in fortunes_doc.get("categories", {}).items()
    }

    logger.info(
        "Catalog loaded: %d weeks, %d modes, %d lengths, %d fortune types",
        len(weeks), len(modes), len(lengths), len(fortune_types),
    )
    return Catalog(
        weeks=weeks,
        modes=modes,
        lengths=lengths,
        fortune_types=fortune_types,
        fortune_categories=categories,
        image_style=weeks_doc.get("imageStyle", ""),
        image_scenes=dict(weeks_doc.get("imageScenes", {})),
    )


@lru_cache(maxsize=1)
def default_catalog() -> Catalog:
    """Process-wide catalog, loaded on first use."""
    return load_catalog()
