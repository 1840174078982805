# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/orchestrator/phase.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

if TYPE_CHECKING:
    from .engine import PhaseContext


class PhaseKind(str, Enum):
    FORM = "form"                    # operator input, then auto-advance
    BACKGROUND = "background"        # async work, completes itself
    INFORMATIONAL = "informational"  # instructions for the operator


EntryAction = Callable[["PhaseContext"], Awaitable[None]]


@dataclass
class Phase:
    """
    One step of the bootstrap run.

    ``completed`` only ever goes False -> True through ``complete``;
    ``restore`` is the one way to set it directly, used when resuming.
    """
    name: str
    title: str
    kind: PhaseKind
    entry_action: Optional[EntryAction] = None
    auto_advance: bool = True
    body: str = ""
    completed: bool = field(default=False, init=False)
    entered: bool = field(default=False, init=False)

    def complete(self) -> bool:
        """Mark done. Returns True only on the first call."""
        if self.completed:
            return False
        self.completed = True
        return True

    def restore(self, completed: bool) -> None:
        self.completed = completed
