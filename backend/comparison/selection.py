"""Target catalog and the user's saved target selection."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

import structlog

from comparison.errors import SelectionError
from config import settings

if TYPE_CHECKING:
    from models.database import SettingsStore

logger = structlog.get_logger(__name__)

STORAGE_KEY = "selected_targets"


@dataclass(frozen=True)
class TargetMetadata:
    """A comparable target.

    Attributes:
        id: Stable target id used throughout the comparison core.
        name: Display name.
        provider: Provider family (openai, anthropic, gemini).
        model: LiteLLM model string the target is invoked with.
    """

    id: str
    name: str
    provider: str
    model: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_CATALOG: tuple[TargetMetadata, ...] = (
    TargetMetadata("gpt-5", "GPT-5", "openai", "openai/gpt-5"),
    TargetMetadata(
        "claude-sonnet-4",
        "Claude Sonnet 4",
        "anthropic",
        "anthropic/claude-sonnet-4-20250514",
    ),
    TargetMetadata("gpt-4.1", "GPT-4.1", "openai", "openai/gpt-4.1"),
    TargetMetadata("gemini-2.5-pro", "Gemini 2.5 Pro", "gemini", "gemini/gemini-2.5-pro"),
    TargetMetadata("gpt-4-turbo", "GPT-4 Turbo", "openai", "openai/gpt-4-turbo"),
)


class TargetSelectionService:
    """Keeps the selected targets within the catalog and the count limits.

    Attributes:
        settings_store: Optional persistence for the selection.
        max_targets: Upper bound on the selection size.
    """

    def __init__(
        self,
        settings_store: SettingsStore | None = None,
        catalog: Sequence[TargetMetadata] = DEFAULT_CATALOG,
        defaults: Sequence[str] | None = None,
        max_targets: int | None = None,
    ) -> None:
        self.settings_store = settings_store
        self._catalog: dict[str, TargetMetadata] = {target.id: target for target in catalog}
        self.max_targets = max_targets if max_targets is not None else settings.max_targets

        configured = list(defaults) if defaults is not None else list(settings.default_targets)
        self._defaults = [t for t in configured if t in self._catalog][: self.max_targets]
        if not self._defaults and self._catalog:
            self._defaults = [next(iter(self._catalog))]
        self._selected: list[str] = list(self._defaults)

    async def load(self) -> list[str]:
        """Restore the saved selection, dropping ids no longer in the catalog."""
        if self.settings_store is None:
            return self.selected_targets()

        stored = await self.settings_store.get_json(STORAGE_KEY)
        if isinstance(stored, list):
            known = [t for t in stored if isinstance(t, str) and t in self._catalog]
            dropped = len(stored) - len(known)
            if dropped:
                logger.warning("selection_unknown_targets_dropped", dropped=dropped)
            self._selected = known[: self.max_targets] or list(self._defaults)
        else:
            self._selected = list(self._defaults)

        logger.info("selection_loaded", selected=self._selected)
        return self.selected_targets()

    async def _save(self) -> None:
        if self.settings_store is not None:
            await self.settings_store.set_json(STORAGE_KEY, self._selected)

    def _validate(self, target_ids: Sequence[str]) -> list[str]:
        unknown = [t for t in target_ids if t not in self._catalog]
        if unknown:
            raise SelectionError(f"Unknown target(s): {', '.join(unknown)}")
        if len(set(target_ids)) != len(target_ids):
            raise SelectionError("Target selection contains duplicates")
        if not 1 <= len(target_ids) <= self.max_targets:
            raise SelectionError(
                f"Select between 1 and {self.max_targets} targets (got {len(target_ids)})"
            )
        return list(target_ids)

    def available_targets(self) -> list[TargetMetadata]:
        return list(self._catalog.values())

    def selected_targets(self) -> list[str]:
        return list(self._selected)

    def selected_metadata(self) -> list[TargetMetadata]:
        return [self._catalog[t] for t in self._selected]

    def is_selected(self, target_id: str) -> bool:
        return target_id in self._selected

    def get_metadata(self, target_id: str) -> TargetMetadata | None:
        return self._catalog.get(target_id)

    def validate_targets(self, target_ids: Iterable[str]) -> list[str]:
        """Check an ad-hoc target list against the catalog and limits.

        Raises:
            SelectionError: On unknown ids, duplicates, or a bad count.
        """
        return self._validate(list(target_ids))

    async def set_selected(self, target_ids: Iterable[str]) -> list[str]:
        """Replace the selection.

        Raises:
            SelectionError: On unknown ids, duplicates, or a bad count.
        """
        self._selected = self._validate(list(target_ids))
        await self._save()
        logger.info("selection_updated", selected=self._selected)
        return self.selected_targets()

    async def add(self, target_id: str) -> list[str]:
        if target_id in self._selected:
            return self.selected_targets()
        return await self.set_selected([*self._selected, target_id])

    async def remove(self, target_id: str) -> list[str]:
        if target_id not in self._selected:
            return self.selected_targets()
        return await self.set_selected([t for t in self._selected if t != target_id])

    async def toggle(self, target_id: str) -> list[str]:
        if target_id in self._selected:
            return await self.remove(target_id)
        return await self.add(target_id)

    async def reset_to_defaults(self) -> list[str]:
        self._selected = list(self._defaults)
        await self._save()
        logger.info("selection_reset", selected=self._selected)
        return self.selected_targets()

    def resolve_model(self, target_id: str) -> str:
        """LiteLLM model string for a target. Unknown ids are passed through."""
        target = self._catalog.get(target_id)
        return target.model if target is not None else target_id
