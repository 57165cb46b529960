from __future__ import annotations

import uuid
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field

from bulk_import.classifier import classify
from bulk_import.grouping import GroupDraft
from bulk_import.schema import (
    Classification,
    ConversionState,
    ConversionStatus,
    PipelineStage,
    RawItem,
)


@dataclass
class PipelineSession:
    """Everything one submitted batch owns; discarded on reset."""

    raw_items: list[RawItem]
    states: list[ConversionState]
    classifications: list[Classification]
    stage: PipelineStage = PipelineStage.CONVERTING
    drafts: list[GroupDraft] = field(default_factory=list)
    closed: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_items(cls, items: Iterable[RawItem]) -> PipelineSession:
        raw_items = list(items)
        return cls(
            raw_items=raw_items,
            states=[ConversionState() for _ in raw_items],
            classifications=[classify(item.original_filename) for item in raw_items],
        )

    def __len__(self) -> int:
        return len(self.raw_items)

    def indices_with_status(self, status: ConversionStatus) -> list[int]:
        return [i for i, state in enumerate(self.states) if state.status is status]

    def counts(self) -> Counter[ConversionStatus]:
        return Counter(state.status for state in self.states)

    @property
    def all_terminal(self) -> bool:
        return all(state.is_terminal for state in self.states)

    @property
    def done_count(self) -> int:
        return self.counts()[ConversionStatus.DONE]

    def done_entries(self) -> list[tuple[int, str, str, Classification]]:
        return [
            (
                index,
                self.raw_items[index].original_filename,
                state.output_url,
                self.classifications[index],
            )
            for index, state in enumerate(self.states)
            if state.status is ConversionStatus.DONE and state.output_url
        ]
