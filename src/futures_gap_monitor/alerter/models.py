"""Data models for operator notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class FormattedAlert:
    """One notification rendered for every channel."""

    title: str
    body: str
    discord_embed: dict[str, Any]
    telegram_text: str
    plain_text: str


@dataclass
class DispatchResult:
    """Outcome of sending one notification to all channels."""

    success_count: int = 0
    failure_count: int = 0
    failed_channels: list[str] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return self.failure_count == 0 and self.success_count > 0
