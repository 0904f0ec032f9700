"""Best-effort side effects dispatched after a primary document write."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SideEffect:
    name: str
    run: Callable[[], Any]


class SideEffectOutbox:
    """Ordered secondary effects; failures are logged and reported, never raised."""

    def __init__(self) -> None:
        self._effects: list[SideEffect] = []

    def add(self, name: str, run: Callable[[], Any]) -> None:
        self._effects.append(SideEffect(name=name, run=run))

    def __len__(self) -> int:
        return len(self._effects)

    def dispatch(self) -> list[dict[str, Any]]:
        report: list[dict[str, Any]] = []
        effects, self._effects = self._effects, []
        for effect in effects:
            try:
                effect.run()
            except Exception as exc:
                logger.warning(
                    "secondary effect %s failed: %s",
                    effect.name,
                    exc,
                    extra={"effect": effect.name},
                )
                report.append({"effect": effect.name, "status": "failed", "error": str(exc)})
                continue
            report.append({"effect": effect.name, "status": "applied"})
        return report
