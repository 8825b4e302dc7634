"""Per-target prompt modifications.

A PromptModification customizes a target's system message, either replacing
it or prepending to it. ``build_prompt_modifier`` turns a modification into
the pure message transform carried by a DispatchDescriptor, and the
PromptModificationStore keeps the saved modifications (persisted through the
SettingsStore when one is configured).
"""

from __future__ import annotations

import json
import time
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from comparison.cloner import Messages, PromptModifier
from comparison.errors import PromptModificationImportError

if TYPE_CHECKING:
    from models.database import SettingsStore

logger = structlog.get_logger(__name__)

STORAGE_KEY = "prompt_modifications"


class PromptModification(BaseModel):
    """A saved customization of one target's system message."""

    custom_system_message: str | None = Field(
        default=None,
        description="Text to prepend to (or replace) the system message",
        examples=["Answer in the style of a senior reviewer."],
    )
    replace_system_message: bool = Field(
        default=False,
        description="Replace the system message instead of prepending to it",
    )
    last_modified: float | None = Field(
        default=None,
        description="Unix timestamp of the last update",
    )


def build_prompt_modifier(modification: PromptModification | None) -> PromptModifier | None:
    """Turn a modification into a message transform.

    Returns None when there is nothing to apply, which means "use the
    target's default prompt".
    """
    if modification is None or not modification.custom_system_message:
        return None

    custom = modification.custom_system_message
    replace = modification.replace_system_message

    def modify(messages: Messages) -> Messages:
        result = [dict(m) for m in messages]
        for message in result:
            if message.get("role") == "system":
                original = message.get("content") or ""
                message["content"] = custom if replace or not original else f"{custom}\n\n{original}"
                return result
        return [{"role": "system", "content": custom}, *result]

    return modify


def format_prompt_for_display(messages: Messages) -> str:
    """Render messages as readable text, one block per message."""
    blocks = []
    for message in messages:
        content = message.get("content")
        if not isinstance(content, str):
            content = json.dumps(content, default=str)
        blocks.append(f"[{message.get('role', 'unknown')}]\n{content}")
    return "\n\n".join(blocks)


def analyze_prompt(messages: Messages) -> dict[str, Any]:
    """Size and shape summary of a rendered prompt."""
    roles: dict[str, int] = {}
    total_chars = 0
    system_chars = 0
    for message in messages:
        role = str(message.get("role", "unknown"))
        roles[role] = roles.get(role, 0) + 1
        length = len(str(message.get("content") or ""))
        total_chars += length
        if role == "system":
            system_chars += length
    return {
        "message_count": len(messages),
        "roles": roles,
        "total_chars": total_chars,
        "system_chars": system_chars,
        # Rough: 4 chars per token
        "estimated_tokens": total_chars // 4,
    }


class PromptModificationStore:
    """In-memory cache of prompt modifications, persisted to the settings store."""

    def __init__(self, settings_store: SettingsStore | None = None) -> None:
        self.settings_store = settings_store
        self._modifications: dict[str, PromptModification] = {}

    async def load(self) -> None:
        """Populate the cache from the settings store."""
        if self.settings_store is None:
            return
        stored = await self.settings_store.get_json(STORAGE_KEY)
        self._modifications.clear()
        if isinstance(stored, dict):
            for target_id, raw in stored.items():
                try:
                    self._modifications[target_id] = PromptModification.model_validate(raw)
                except ValidationError as e:
                    logger.warning(
                        "prompt_modification_load_skipped",
                        target_id=target_id,
                        error=str(e),
                    )
        logger.info("prompt_modifications_loaded", count=len(self._modifications))

    async def _save(self) -> None:
        if self.settings_store is None:
            return
        await self.settings_store.set_json(STORAGE_KEY, self._as_dict())

    def _as_dict(self) -> dict[str, Any]:
        return {
            target_id: modification.model_dump()
            for target_id, modification in self._modifications.items()
        }

    def get(self, target_id: str) -> PromptModification | None:
        return self._modifications.get(target_id)

    def get_all(self) -> dict[str, PromptModification]:
        return dict(self._modifications)

    def has(self, target_id: str) -> bool:
        return target_id in self._modifications

    async def set(self, target_id: str, modification: PromptModification) -> PromptModification:
        """Save a modification for a target, stamping ``last_modified``."""
        stored = modification.model_copy(update={"last_modified": time.time()})
        self._modifications[target_id] = stored
        await self._save()
        logger.info(
            "prompt_modification_saved",
            target_id=target_id,
            replaces=stored.replace_system_message,
        )
        return stored

    async def remove(self, target_id: str) -> bool:
        """Reset a target to its default prompt. Returns True if one was stored."""
        removed = self._modifications.pop(target_id, None) is not None
        if removed:
            await self._save()
        return removed

    async def clear_all(self) -> None:
        self._modifications.clear()
        await self._save()

    def export_as_json(self) -> str:
        return json.dumps(self._as_dict(), indent=2)

    async def import_from_json(self, payload: str) -> int:
        """Replace all modifications with the ones in a JSON document.

        Returns:
            Number of imported modifications.

        Raises:
            PromptModificationImportError: If the payload is not a JSON object
                of target id -> modification.
        """
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise PromptModificationImportError(
                "Invalid JSON format for prompt modifications"
            ) from e
        if not isinstance(data, dict):
            raise PromptModificationImportError(
                "Prompt modifications must be a JSON object keyed by target id"
            )

        try:
            imported = {
                str(target_id): PromptModification.model_validate(raw)
                for target_id, raw in data.items()
            }
        except ValidationError as e:
            raise PromptModificationImportError(
                f"Invalid prompt modification: {e.error_count()} validation error(s)"
            ) from e

        self._modifications = imported
        await self._save()
        logger.info("prompt_modifications_imported", count=len(imported))
        return len(imported)

    def get_summary(self) -> list[dict[str, Any]]:
        return [
            {
                "target_id": target_id,
                "has_custom_message": bool(modification.custom_system_message),
                "replaces": modification.replace_system_message,
                "last_modified": modification.last_modified,
            }
            for target_id, modification in self._modifications.items()
        ]

    def modifications_for(
        self, target_ids: Iterable[str]
    ) -> dict[str, PromptModification | None]:
        """Stored modification (or None for the default) for each target."""
        return {target_id: self._modifications.get(target_id) for target_id in target_ids}
